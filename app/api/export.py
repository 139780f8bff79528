"""
Export API - CSV and PDF downloads.

Members only ever export their own payments; admins may export everything
or pick a member with user_id.
"""
from fastapi import APIRouter, Depends, Query, Response
from sqlalchemy.ext.asyncio import AsyncSession
from datetime import datetime
from typing import Optional
import logging

from app.api.auth import get_current_user
from app.db.connection import get_db_session
from app.db.models import User, PaymentMethod, PaymentStatus
from app.services.export_service import ExportService
from app.services.pdf_service import METHOD_LABELS, STATUS_LABELS
from app.services.sol_service import SolService

logger = logging.getLogger(__name__)

router = APIRouter()

CSV_MEDIA_TYPE = "text/csv; charset=utf-8"
PDF_MEDIA_TYPE = "application/pdf"


def _attachment(content: bytes, media_type: str, filename: str) -> Response:
    return Response(
        content=content,
        media_type=media_type,
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


def _today() -> str:
    return datetime.now().strftime("%Y-%m-%d")


def _payment_filters(
    user: User,
    user_id: Optional[int],
    sol_id: Optional[int],
    status: Optional[str],
    method: Optional[str],
    start_date: Optional[datetime],
    end_date: Optional[datetime],
) -> dict:
    return {
        # non-admins are pinned to their own payments whatever they ask for
        "user_id": user_id if user.is_admin else user.id,
        "sol_id": sol_id,
        "status": status,
        "method": method,
        "start_date": start_date,
        "end_date": end_date,
    }


@router.get("/export/options")
async def get_export_options(current_user: User = Depends(get_current_user)):
    return {
        "formats": ["csv", "pdf"],
        "statuses": [{"value": s.value, "label": STATUS_LABELS[s.value]} for s in PaymentStatus],
        "methods": [{"value": m.value, "label": METHOD_LABELS[m.value]} for m in PaymentMethod],
        "can_export_all": current_user.is_admin,
    }


@router.get("/export/payments/csv")
async def export_payments_csv(
    user_id: Optional[int] = Query(None),
    sol_id: Optional[int] = Query(None),
    status_filter: Optional[str] = Query(None, alias="status"),
    method: Optional[str] = Query(None),
    start_date: Optional[datetime] = Query(None),
    end_date: Optional[datetime] = Query(None),
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session)
):
    filters = _payment_filters(current_user, user_id, sol_id, status_filter, method, start_date, end_date)
    content = await ExportService.export_payments_csv(db, filters)
    return _attachment(content.encode("utf-8"), CSV_MEDIA_TYPE, f"paiements_{_today()}.csv")


@router.get("/export/payments/pdf")
async def export_payments_pdf(
    user_id: Optional[int] = Query(None),
    sol_id: Optional[int] = Query(None),
    status_filter: Optional[str] = Query(None, alias="status"),
    method: Optional[str] = Query(None),
    start_date: Optional[datetime] = Query(None),
    end_date: Optional[datetime] = Query(None),
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session)
):
    filters = _payment_filters(current_user, user_id, sol_id, status_filter, method, start_date, end_date)
    content = await ExportService.export_payments_pdf(db, filters)
    return _attachment(content, PDF_MEDIA_TYPE, f"paiements_{_today()}.pdf")


@router.get("/export/sols/{sol_id}/participants/csv")
async def export_sol_participants_csv(
    sol_id: int,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session)
):
    sol = await SolService.get_sol_or_404(db, sol_id)
    await SolService.ensure_can_view(db, sol, current_user)

    content = await ExportService.export_sol_participants_csv(db, sol_id)
    return _attachment(content.encode("utf-8"), CSV_MEDIA_TYPE, f"participants_sol_{sol_id}_{_today()}.csv")


@router.get("/export/sols/{sol_id}/monthly-report")
async def export_monthly_report(
    sol_id: int,
    month: str = Query(..., description="YYYY-MM"),
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session)
):
    sol = await SolService.get_sol_or_404(db, sol_id)
    await SolService.ensure_can_view(db, sol, current_user)

    content = await ExportService.generate_monthly_report(db, sol_id, month)
    return _attachment(content, PDF_MEDIA_TYPE, f"rapport_sol_{sol_id}_{month}.pdf")
