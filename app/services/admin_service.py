"""
Admin Service - back-office workflows.

Payment validation is where offline contributions enter the rotation: a
validated payment flips its participation to `valide`, may make the tour's
transfer ready, and triggers a tour check whose outcome is returned to the
admin as tour_result.
"""
import asyncio
from datetime import datetime, timezone
from typing import Optional, List
import logging

from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, func

from app.core.exceptions import NotFoundError, ValidationError
from app.db.models import (
    User, Sol, SolStatus, Participation, TourStatus, Payment, PaymentMethod,
    PaymentStatus, COUNTED_PAYMENT_STATUSES,
)
from app.services.audit_service import AuditService
from app.services.email_service import get_email_service
from app.services.encryption_service import masked_bank_account
from app.services.pdf_service import PdfService
from app.services.payment_service import PaymentService, payment_to_dict
from app.services.tour_detection_service import TourDetectionService
from app.services.transfer_service import TransferService

logger = logging.getLogger(__name__)

VALIDATABLE_STATUSES = (PaymentStatus.PENDING, PaymentStatus.UPLOADED)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _month_start() -> datetime:
    return _utcnow().replace(day=1, hour=0, minute=0, second=0, microsecond=0)


class AdminService:
    """Dashboard numbers, payment validation and payouts"""

    @staticmethod
    async def get_dashboard_stats(db: AsyncSession) -> dict:
        month_start = _month_start()

        total_users = await db.scalar(select(func.count(User.id)).where(User.is_active.is_(True)))
        active_sols = await db.scalar(select(func.count(Sol.id)).where(Sol.statut == SolStatus.ACTIVE))
        pending_receipts = await db.scalar(
            select(func.count(Payment.id)).where(Payment.status == PaymentStatus.UPLOADED)
        )
        validated_payments = await db.scalar(
            select(func.count(Payment.id)).where(Payment.status == PaymentStatus.VALIDATED)
        )
        total_collected = await db.scalar(
            select(func.coalesce(func.sum(Payment.amount), 0))
            .where(Payment.status.in_(COUNTED_PAYMENT_STATUSES))
        )
        new_users = await db.scalar(select(func.count(User.id)).where(User.created_at >= month_start))
        payments_this_month = await db.scalar(
            select(func.count(Payment.id)).where(
                Payment.created_at >= month_start,
                Payment.status.in_(COUNTED_PAYMENT_STATUSES),
            )
        )

        return {
            "total_users": total_users or 0,
            "active_sols": active_sols or 0,
            "pending_receipts": pending_receipts or 0,
            "validated_payments": validated_payments or 0,
            "total_collected": float(total_collected or 0),
            "new_users_this_month": new_users or 0,
            "payments_this_month": payments_this_month or 0,
        }

    @staticmethod
    async def list_pending_receipts(db: AsyncSession) -> List[dict]:
        return await PaymentService.search_payments(
            db, status=PaymentStatus.UPLOADED.value, method=PaymentMethod.OFFLINE.value,
        )

    # ============================================
    # Validation
    # ============================================

    @staticmethod
    async def _get_payment(db: AsyncSession, payment_id: int) -> Payment:
        payment = await db.get(Payment, payment_id)
        if not payment:
            raise NotFoundError("Payment", payment_id)
        return payment

    @staticmethod
    async def _apply_validation(db: AsyncSession, payment: Payment, admin: User, notes: Optional[str]) -> dict:
        """Mark validated and run the rotation side effects; returns the tour check result."""
        payment.status = PaymentStatus.VALIDATED
        payment.validated_by = admin.id
        payment.validated_at = _utcnow()
        if notes:
            payment.notes = notes

        participation = await db.get(Participation, payment.participation_id)
        participation.statut_tour = TourStatus.VALIDE
        await db.flush()

        await AuditService.log(db, "payment_validated", admin.id, {
            "paymentId": payment.id, "solId": participation.sol_id, "tour": payment.tour_number,
        })
        logger.info(f"✅ Payment {payment.id} validated by admin {admin.id}")

        await TransferService.check_if_ready(db, participation.sol_id, payment.tour_number)
        tour_result = await TourDetectionService.check_and_advance_tour(db, participation.sol_id)

        member = await db.get(User, payment.user_id)
        sol = await db.get(Sol, participation.sol_id)
        await get_email_service().send_payment_validated_email(member, sol.nom, payment)
        return tour_result

    @staticmethod
    async def _apply_rejection(db: AsyncSession, payment: Payment, admin: User, notes: Optional[str]) -> None:
        payment.status = PaymentStatus.REJECTED
        payment.validated_by = admin.id
        payment.validated_at = _utcnow()
        if notes:
            payment.notes = notes
        await db.flush()

        await AuditService.log(db, "payment_rejected", admin.id, {"paymentId": payment.id, "notes": notes})
        logger.info(f"❌ Payment {payment.id} rejected by admin {admin.id}")

    @staticmethod
    async def validate_receipt(db: AsyncSession, payment_id: int, admin: User, status: str, notes: Optional[str]) -> dict:
        """
        Decide on an uploaded offline receipt.

        Raises:
            ValidationError: bad status, not an offline payment, or not 'uploaded'
        """
        if status not in (PaymentStatus.VALIDATED.value, PaymentStatus.REJECTED.value):
            raise ValidationError("Status must be 'validated' or 'rejected'")

        payment = await AdminService._get_payment(db, payment_id)
        if payment.method != PaymentMethod.OFFLINE or payment.status != PaymentStatus.UPLOADED:
            raise ValidationError("Only uploaded offline receipts can be reviewed")

        tour_result = None
        if status == PaymentStatus.VALIDATED.value:
            tour_result = await AdminService._apply_validation(db, payment, admin, notes)
        else:
            await AdminService._apply_rejection(db, payment, admin, notes)

        return {"payment": payment_to_dict(payment), "tour_result": tour_result}

    @staticmethod
    async def validate_payment(db: AsyncSession, payment_id: int, admin: User, notes: Optional[str] = None) -> dict:
        payment = await AdminService._get_payment(db, payment_id)
        if payment.status not in VALIDATABLE_STATUSES:
            raise ValidationError(f"Cannot validate a '{payment.status.value}' payment")

        tour_result = await AdminService._apply_validation(db, payment, admin, notes)
        return {"payment": payment_to_dict(payment), "tour_result": tour_result}

    @staticmethod
    async def reject_payment(db: AsyncSession, payment_id: int, admin: User, notes: Optional[str] = None) -> dict:
        payment = await AdminService._get_payment(db, payment_id)
        if payment.status not in VALIDATABLE_STATUSES:
            raise ValidationError(f"Cannot reject a '{payment.status.value}' payment")

        await AdminService._apply_rejection(db, payment, admin, notes)
        return {"payment": payment_to_dict(payment)}

    @staticmethod
    async def generate_and_send_receipt(db: AsyncSession, payment_id: int, admin: User) -> dict:
        """Render the PDF receipt and email it to the member."""
        context = await PaymentService.get_payment_context(db, payment_id)
        if not context:
            raise NotFoundError("Payment", payment_id)

        payment = context["payment"]
        pdf = await asyncio.to_thread(PdfService.generate_receipt, PaymentService.build_receipt_data(context))
        sent = await get_email_service().send_receipt_email(context["user"], payment, context["sol"].nom, pdf)
        if sent:
            payment.receipt_sent = True
            payment.receipt_sent_at = _utcnow()
            await db.flush()

        await AuditService.log(db, "receipt_sent", admin.id, {"paymentId": payment.id, "sent": sent})
        return {"payment_id": payment.id, "sent": sent, "email": context["user"].email}

    # ============================================
    # Payouts
    # ============================================

    @staticmethod
    async def list_pending_transfers(db: AsyncSession) -> List[dict]:
        """Validated payments waiting to be paid out, with the tour's beneficiary."""
        payments = await PaymentService.search_payments(db, status=PaymentStatus.VALIDATED.value)

        beneficiaries = {}
        rows = []
        for payment in payments:
            key = (payment["sol_id"], payment["tour_number"])
            if key not in beneficiaries:
                result = await db.execute(
                    select(User)
                    .join(Participation, Participation.user_id == User.id)
                    .where(Participation.sol_id == key[0], Participation.ordre == key[1])
                )
                beneficiaries[key] = result.scalar_one_or_none()
            beneficiary = beneficiaries[key]
            rows.append({
                **payment,
                "beneficiary_id": beneficiary.id if beneficiary else None,
                "beneficiary_name": beneficiary.full_name if beneficiary else None,
                "beneficiary_bank_account": (
                    masked_bank_account(beneficiary.bank_account_encrypted)
                    if beneficiary else None
                ),
            })
        return rows

    @staticmethod
    async def complete_transfer(db: AsyncSession, payment_id: int, admin: User, notes: Optional[str] = None) -> dict:
        payment = await AdminService._get_payment(db, payment_id)
        if payment.status != PaymentStatus.VALIDATED:
            raise ValidationError("Only validated payments can be marked as paid out")

        payment.status = PaymentStatus.COMPLETED
        if notes:
            payment.notes = notes
        participation = await db.get(Participation, payment.participation_id)
        participation.statut_tour = TourStatus.COMPLETE
        await db.flush()

        await AuditService.log(db, "transfer_completed", admin.id, {"paymentId": payment.id, "notes": notes})
        logger.info(f"💸 Payout recorded for payment {payment.id} by admin {admin.id}")
        return payment_to_dict(payment)

    # ============================================
    # Reports
    # ============================================

    @staticmethod
    async def get_reports(
        db: AsyncSession,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
        sol_id: Optional[int] = None,
        status: Optional[str] = None,
    ) -> dict:
        payments = await PaymentService.search_payments(
            db, sol_id=sol_id, status=status, start_date=start_date, end_date=end_date,
        )
        counted = [p for p in payments if p["status"] in COUNTED_PAYMENT_STATUSES]
        return {
            "payments": payments,
            "summary": {
                "count": len(payments),
                "total_amount": float(sum(p["amount"] or 0 for p in payments)),
                "validated_count": len(counted),
                "validated_amount": float(sum(p["amount"] or 0 for p in counted)),
            },
        }
