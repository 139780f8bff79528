"""
Payments API - Stripe checkout, offline receipts, history and the Stripe webhook.
"""
from fastapi import APIRouter, Depends, Query, Request, Form, File, UploadFile, status
from fastapi.responses import FileResponse
from sqlalchemy.ext.asyncio import AsyncSession
from pydantic import BaseModel, Field
from typing import Optional
import logging

from app.api.auth import get_current_user
from app.config import settings
from app.db.connection import get_db_session
from app.db.models import User
from app.services.payment_service import PaymentService, payment_to_dict
from app.services.stripe_service import StripeService, get_stripe_service

logger = logging.getLogger(__name__)

router = APIRouter()


class CreateSessionRequest(BaseModel):
    participation_id: int
    amount: Optional[float] = Field(None, gt=0)


class CreateSessionResponse(BaseModel):
    session_id: str
    url: str
    payment_id: int


# ============================================
# Endpoints
# ============================================

@router.post("/payments/stripe/create-session", response_model=CreateSessionResponse)
async def create_stripe_session(
    request: CreateSessionRequest,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
    stripe_service: StripeService = Depends(get_stripe_service)
):
    """Open a Stripe Checkout session for the caller's contribution."""
    return await PaymentService.create_stripe_session(
        db, current_user, request.participation_id, request.amount, stripe_service
    )


@router.get("/payments/stripe/session/{session_id}")
async def get_stripe_session_status(
    session_id: str,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
    stripe_service: StripeService = Depends(get_stripe_service)
):
    """Checkout status shown on the payment success page."""
    return await PaymentService.get_stripe_session_status(db, session_id, current_user, stripe_service)


@router.post("/payments/upload-receipt", status_code=status.HTTP_201_CREATED)
async def upload_receipt(
    participation_id: int = Form(...),
    file: UploadFile = File(...),
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session)
):
    """
    Upload proof of an offline payment (JPEG, PNG or PDF).

    The payment waits in 'uploaded' until an admin validates it.
    """
    # one byte past the limit is enough for the size check to reject it
    content = await file.read(settings.max_receipt_size + 1)
    payment = await PaymentService.upload_receipt(
        db, current_user, participation_id, file.filename, content, file.content_type
    )
    return {"message": "Receipt uploaded successfully", "payment": payment_to_dict(payment)}


@router.get("/payments/history")
async def get_payment_history(
    status_filter: Optional[str] = Query(None, alias="status"),
    method: Optional[str] = Query(None),
    limit: int = Query(100, ge=1, le=500),
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session)
):
    return await PaymentService.get_payment_history(db, current_user.id, status_filter, method, limit)


@router.get("/payments/{payment_id}")
async def get_payment(
    payment_id: int,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session)
):
    return await PaymentService.get_payment(db, payment_id, current_user)


@router.get("/payments/{payment_id}/receipt")
async def download_receipt(
    payment_id: int,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session)
):
    path = await PaymentService.get_receipt_file(db, payment_id, current_user)
    return FileResponse(path, filename=path.name)


@router.post("/payments/webhook")
async def stripe_webhook(
    request: Request,
    db: AsyncSession = Depends(get_db_session),
    stripe_service: StripeService = Depends(get_stripe_service)
):
    """
    Stripe webhook endpoint (no bearer auth).

    Security: the Stripe-Signature header is verified against the raw body.
    Once the signature is valid Stripe always gets {"received": true}; a failure
    while handling the event is logged and its changes are rolled back.
    """
    raw_body = await request.body()
    event = stripe_service.construct_event(raw_body, request.headers.get("Stripe-Signature"))

    try:
        await PaymentService.handle_webhook_event(db, event)
    except Exception as e:
        logger.error(f"❌ Error handling Stripe event {event.get('type')}: {e}", exc_info=True)
        await db.rollback()

    return {"received": True}
