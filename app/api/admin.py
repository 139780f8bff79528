"""
Admin API - back office.

Every route depends on require_admin. Receipt validation is the entry point
of offline payments into the rotation, so its response carries the tour
check result.
"""
from fastapi import APIRouter, Depends, Query, Response, status
from sqlalchemy.ext.asyncio import AsyncSession
from pydantic import BaseModel, Field
from datetime import datetime
from typing import Optional, List
import logging

from app.api.auth import require_admin
from app.api.users import UserResponse, user_to_response, EMAIL_PATTERN
from app.core.exceptions import ValidationError
from app.db.connection import get_db_session
from app.db.models import User, UserRole
from app.services.admin_service import AdminService
from app.services.audit_service import AuditService
from app.services.export_service import ExportService
from app.services.payment_service import PaymentService, payment_to_dict
from app.services.stripe_service import StripeService, get_stripe_service
from app.services.tour_detection_service import TourDetectionService
from app.services.user_service import UserService

logger = logging.getLogger(__name__)

router = APIRouter()


# ============================================
# Pydantic Models
# ============================================

class ValidateReceiptRequest(BaseModel):
    status: str = Field(..., description="validated or rejected")
    notes: Optional[str] = Field(None, max_length=2000)


class NotesRequest(BaseModel):
    notes: Optional[str] = Field(None, max_length=2000)


class GenerateReceiptRequest(BaseModel):
    payment_id: int


class RefundRequest(BaseModel):
    amount: Optional[float] = Field(None, gt=0)


class CreateUserRequest(BaseModel):
    firstname: str = Field(..., min_length=2, max_length=100)
    lastname: str = Field(..., min_length=2, max_length=100)
    email: str = Field(..., pattern=EMAIL_PATTERN, max_length=255)
    password: str = Field(..., min_length=8, max_length=128)
    phone: Optional[str] = Field(None, max_length=30)
    role: UserRole = UserRole.MEMBER


class UpdateUserRequest(BaseModel):
    firstname: Optional[str] = Field(None, min_length=2, max_length=100)
    lastname: Optional[str] = Field(None, min_length=2, max_length=100)
    email: Optional[str] = Field(None, pattern=EMAIL_PATTERN, max_length=255)
    phone: Optional[str] = Field(None, max_length=30)
    role: Optional[UserRole] = None


class UserStatusRequest(BaseModel):
    is_active: bool


class AdminUserResponse(UserResponse):
    sols_count: int = 0


class AuditLogResponse(BaseModel):
    id: int
    action: str
    user_id: Optional[int] = None
    details: Optional[dict] = None
    created_at: datetime

    class Config:
        from_attributes = True


# ============================================
# Dashboard & payments
# ============================================

@router.get("/admin/dashboard-stats")
@router.get("/admin/dashboard")
async def get_dashboard_stats(
    admin: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db_session)
):
    return await AdminService.get_dashboard_stats(db)


@router.get("/admin/payments")
async def list_payments(
    status_filter: Optional[str] = Query(None, alias="status"),
    method: Optional[str] = Query(None),
    sol_id: Optional[int] = Query(None),
    limit: int = Query(500, ge=1, le=5000),
    admin: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db_session)
):
    return await PaymentService.search_payments(
        db, sol_id=sol_id, status=status_filter, method=method, limit=limit
    )


@router.get("/admin/receipts/pending")
async def list_pending_receipts(
    admin: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db_session)
):
    return await AdminService.list_pending_receipts(db)


@router.post("/admin/receipts/{payment_id}/validate")
async def validate_receipt(
    payment_id: int,
    request: ValidateReceiptRequest,
    admin: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db_session)
):
    """Accept or reject an uploaded offline receipt."""
    result = await AdminService.validate_receipt(db, payment_id, admin, request.status, request.notes)
    return {"message": f"Receipt {request.status} successfully", **result}


@router.put("/admin/payments/{payment_id}/validate")
async def validate_payment(
    payment_id: int,
    request: NotesRequest,
    admin: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db_session)
):
    result = await AdminService.validate_payment(db, payment_id, admin, request.notes)
    return {"message": "Payment validated successfully", **result}


@router.put("/admin/payments/{payment_id}/reject")
async def reject_payment(
    payment_id: int,
    request: NotesRequest,
    admin: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db_session)
):
    result = await AdminService.reject_payment(db, payment_id, admin, request.notes)
    return {"message": "Payment rejected", **result}


@router.post("/admin/payments/{payment_id}/refund")
async def refund_payment(
    payment_id: int,
    request: RefundRequest,
    admin: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db_session),
    stripe_service: StripeService = Depends(get_stripe_service)
):
    """Refund a card payment (in full unless an amount is given)."""
    result = await PaymentService.request_refund(db, payment_id, admin, request.amount, stripe_service)
    return {"message": "Refund requested", **result}


@router.post("/admin/receipts/generate-receipt")
async def generate_receipt(
    request: GenerateReceiptRequest,
    admin: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db_session)
):
    """Render the PDF receipt and email it to the member."""
    result = await AdminService.generate_and_send_receipt(db, request.payment_id, admin)
    message = "Receipt sent" if result["sent"] else "Receipt generated but the email could not be sent"
    return {"message": message, **result}


# ============================================
# Payouts
# ============================================

@router.get("/admin/transfers/pending")
async def list_pending_transfers(
    admin: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db_session)
):
    return await AdminService.list_pending_transfers(db)


@router.post("/admin/transfers/{payment_id}/complete")
async def complete_transfer(
    payment_id: int,
    request: NotesRequest,
    admin: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db_session)
):
    payment = await AdminService.complete_transfer(db, payment_id, admin, request.notes)
    return {"message": "Transfer recorded", "payment": payment}


# ============================================
# Users
# ============================================

def _admin_user_response(row: dict) -> AdminUserResponse:
    return AdminUserResponse(**user_to_response(row["user"]).model_dump(), sols_count=row["sols_count"])


@router.get("/admin/users", response_model=List[AdminUserResponse])
async def list_users(
    role: Optional[str] = Query(None),
    search: Optional[str] = Query(None, max_length=100),
    is_active: Optional[bool] = Query(None),
    admin: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db_session)
):
    rows = await UserService.list_users(db, role=role, search=search, is_active=is_active)
    return [_admin_user_response(row) for row in rows]


@router.get("/admin/users/stats")
async def get_users_stats(
    admin: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db_session)
):
    return await UserService.get_users_overview(db)


@router.get("/admin/users/{user_id}")
async def get_user(
    user_id: int,
    admin: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db_session)
):
    detail = await UserService.get_user_detail(db, user_id)
    return {
        "user": user_to_response(detail["user"]),
        "participations": detail["participations"],
        "recent_payments": [payment_to_dict(p) for p in detail["recent_payments"]],
    }


@router.post("/admin/users", response_model=UserResponse, status_code=status.HTTP_201_CREATED)
async def create_user(
    request: CreateUserRequest,
    admin: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db_session)
):
    user = await UserService.create_user(
        db,
        firstname=request.firstname,
        lastname=request.lastname,
        email=request.email,
        password=request.password,
        phone=request.phone,
        role=request.role,
    )
    await AuditService.log(db, "user_created", admin.id, {"createdUserId": user.id, "role": user.role.value})
    return user_to_response(user)


@router.put("/admin/users/{user_id}", response_model=UserResponse)
async def update_user(
    user_id: int,
    request: UpdateUserRequest,
    admin: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db_session)
):
    user = await UserService.get_user(db, user_id)
    data = request.model_dump(exclude_none=True)
    user = await UserService.update_profile(db, user, data)
    await AuditService.log(db, "user_updated", admin.id, {"updatedUserId": user_id, "fields": sorted(data)})
    return user_to_response(user)


@router.patch("/admin/users/{user_id}/status", response_model=UserResponse)
async def set_user_status(
    user_id: int,
    request: UserStatusRequest,
    admin: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db_session)
):
    if user_id == admin.id and not request.is_active:
        raise ValidationError("You cannot deactivate your own account")

    user = await UserService.set_active(db, user_id, request.is_active)
    await AuditService.log(db, "user_status_changed", admin.id, {"targetUserId": user_id, "is_active": request.is_active})
    return user_to_response(user)


@router.delete("/admin/users/{user_id}")
async def delete_user(
    user_id: int,
    admin: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db_session)
):
    await UserService.delete_user(db, user_id, admin.id)
    return {"message": "User deactivated successfully", "user_id": user_id}


# ============================================
# Reports & maintenance
# ============================================

@router.get("/admin/reports")
async def get_reports(
    start_date: Optional[datetime] = Query(None, alias="startDate"),
    end_date: Optional[datetime] = Query(None, alias="endDate"),
    sol_id: Optional[int] = Query(None),
    status_filter: Optional[str] = Query(None, alias="status"),
    admin: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db_session)
):
    return await AdminService.get_reports(db, start_date, end_date, sol_id, status_filter)


@router.get("/admin/reports/export/{export_format}")
async def export_report(
    export_format: str,
    start_date: Optional[datetime] = Query(None, alias="startDate"),
    end_date: Optional[datetime] = Query(None, alias="endDate"),
    sol_id: Optional[int] = Query(None),
    status_filter: Optional[str] = Query(None, alias="status"),
    admin: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db_session)
):
    if export_format != "csv":
        raise ValidationError("Unsupported export format. Only csv is available")

    content = await ExportService.export_payments_csv(db, {
        "sol_id": sol_id,
        "status": status_filter,
        "start_date": start_date,
        "end_date": end_date,
    })
    filename = f"rapport_paiements_{datetime.now().strftime('%Y-%m-%d')}.csv"
    return Response(
        content=content.encode("utf-8"),
        media_type="text/csv; charset=utf-8",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


@router.post("/admin/tours/check-all")
async def check_all_tours(
    admin: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db_session)
):
    """Run the tour check on every active sol."""
    return await TourDetectionService.check_all_active_sols(db)


@router.get("/admin/audit-logs", response_model=List[AuditLogResponse])
async def list_audit_logs(
    limit: int = Query(100, ge=1, le=1000),
    action: Optional[str] = Query(None),
    admin: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db_session)
):
    return await AuditService.list_recent(db, limit, action)
