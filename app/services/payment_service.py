"""
Payment Service - contributions paid online (Stripe) or offline (receipt upload).

Every payment is pinned to the sol's tour_actuel at creation time. Stripe
payments move through the webhook handlers below; offline payments wait in
'uploaded' for an admin (see AdminService).
"""
import asyncio
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional, List, Tuple
import logging

from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, or_
from sqlalchemy.orm import aliased

from app.core.exceptions import (
    ConflictError, NotFoundError, PermissionDeniedError, ValidationError,
)
from app.db.models import (
    User, Sol, SolStatus, Participation, TourStatus, Payment, PaymentMethod,
    PaymentStatus,
)
from app.services.audit_service import AuditService
from app.services.email_service import get_email_service
from app.services.pdf_service import PdfService
from app.services.storage_service import StorageService, get_storage_service
from app.services.stripe_service import StripeService, get_stripe_service
from app.services.tour_detection_service import TourDetectionService

logger = logging.getLogger(__name__)

# A new receipt is refused while one of these exists for the same tour
BLOCKING_PAYMENT_STATUSES = (
    PaymentStatus.PENDING,
    PaymentStatus.UPLOADED,
    PaymentStatus.VALIDATED,
    PaymentStatus.COMPLETED,
)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def payment_to_dict(payment: Payment, sol_id: Optional[int] = None, sol_name: Optional[str] = None,
                    member: Optional[User] = None) -> dict:
    return {
        "id": payment.id,
        "participation_id": payment.participation_id,
        "user_id": payment.user_id,
        "amount": payment.amount,
        "method": payment.method,
        "status": payment.status,
        "tour_number": payment.tour_number,
        "receipt_path": payment.receipt_path,
        "stripe_session_id": payment.stripe_session_id,
        "stripe_payment_intent_id": payment.stripe_payment_intent_id,
        "notes": payment.notes,
        "validated_by": payment.validated_by,
        "validated_at": payment.validated_at,
        "receipt_sent": payment.receipt_sent,
        "created_at": payment.created_at,
        "sol_id": sol_id,
        "sol_name": sol_name,
        "member_name": member.full_name if member else None,
        "member_email": member.email if member else None,
    }


class PaymentService:
    """Payment creation, lookups and Stripe webhook handling"""

    # ============================================
    # Helpers
    # ============================================

    @staticmethod
    async def _get_user_participation(db: AsyncSession, user: User, participation_id: int) -> Tuple[Participation, Sol]:
        """
        Raises:
            NotFoundError: participation missing or not the user's
            ValidationError: sol not active
        """
        result = await db.execute(
            select(Participation, Sol)
            .join(Sol, Sol.id == Participation.sol_id)
            .where(Participation.id == participation_id, Participation.user_id == user.id)
        )
        row = result.first()
        if not row:
            raise NotFoundError("Participation", participation_id)
        participation, sol = row
        if sol.statut != SolStatus.ACTIVE:
            raise ValidationError("This sol is not active")
        return participation, sol

    @staticmethod
    async def get_payment_context(db: AsyncSession, payment_id: int) -> Optional[dict]:
        """Payment with its participation, sol and member (for receipts and emails)."""
        result = await db.execute(
            select(Payment, Participation, Sol, User)
            .join(Participation, Participation.id == Payment.participation_id)
            .join(Sol, Sol.id == Participation.sol_id)
            .join(User, User.id == Payment.user_id)
            .where(Payment.id == payment_id)
        )
        row = result.first()
        if not row:
            return None
        payment, participation, sol, user = row
        return {"payment": payment, "participation": participation, "sol": sol, "user": user}

    @staticmethod
    def build_receipt_data(context: dict) -> dict:
        payment = context["payment"]
        return {
            "payment_id": payment.id,
            "member_name": context["user"].full_name,
            "member_email": context["user"].email,
            "sol_name": context["sol"].nom,
            "amount": payment.amount,
            "method": payment.method,
            "date": payment.validated_at or payment.updated_at or payment.created_at or _utcnow(),
            "ordre": context["participation"].ordre,
            "transaction_id": payment.stripe_payment_intent_id,
        }

    # ============================================
    # Creation
    # ============================================

    @staticmethod
    async def create_stripe_session(
        db: AsyncSession,
        user: User,
        participation_id: int,
        amount: Optional[float] = None,
        stripe_service: Optional[StripeService] = None,
    ) -> dict:
        """
        Open a Stripe Checkout session and record a pending payment for it.

        Returns:
            {"session_id", "url", "payment_id"}
        """
        stripe_service = stripe_service or get_stripe_service()
        participation, sol = await PaymentService._get_user_participation(db, user, participation_id)

        amount = float(amount if amount is not None else sol.montant_par_periode)
        if amount <= 0:
            raise ValidationError("Amount must be positive")

        session = await stripe_service.create_checkout_session(
            amount=amount,
            participation_id=participation.id,
            user_id=user.id,
            sol_name=sol.nom,
            user_email=user.email,
        )

        payment = Payment(
            participation_id=participation.id,
            user_id=user.id,
            amount=amount,
            method=PaymentMethod.STRIPE,
            status=PaymentStatus.PENDING,
            tour_number=sol.tour_actuel,
            stripe_session_id=session["session_id"],
        )
        db.add(payment)
        await db.flush()

        return {**session, "payment_id": payment.id}

    @staticmethod
    async def get_stripe_session_status(
        db: AsyncSession,
        session_id: str,
        user: User,
        stripe_service: Optional[StripeService] = None,
    ) -> dict:
        """
        Live Checkout status for the success page, next to the local payment.

        Raises:
            NotFoundError: no payment for this session, or not the caller's
        """
        stripe_service = stripe_service or get_stripe_service()
        payment = await db.scalar(select(Payment).where(Payment.stripe_session_id == session_id))
        if payment is None or (payment.user_id != user.id and not user.is_admin):
            raise NotFoundError("Payment")

        session = await stripe_service.retrieve_session(session_id)
        return {
            "session_id": session_id,
            "status": session.status,
            "payment_status": session.payment_status,
            "payment": payment_to_dict(payment),
        }

    @staticmethod
    async def request_refund(
        db: AsyncSession,
        payment_id: int,
        admin: User,
        amount: Optional[float] = None,
        stripe_service: Optional[StripeService] = None,
    ) -> dict:
        """
        Ask Stripe to refund a card payment.

        The payment only turns 'refunded' when the charge.refunded webhook lands.

        Raises:
            NotFoundError: unknown payment
            ValidationError: not a paid Stripe payment, or amount above the payment
        """
        stripe_service = stripe_service or get_stripe_service()
        payment = await db.get(Payment, payment_id)
        if not payment:
            raise NotFoundError("Payment", payment_id)
        if payment.method != PaymentMethod.STRIPE or not payment.stripe_payment_intent_id:
            raise ValidationError("Only Stripe payments can be refunded")
        if payment.status not in (PaymentStatus.COMPLETED, PaymentStatus.VALIDATED):
            raise ValidationError(f"Cannot refund a {payment.status.value} payment")
        if amount is not None and amount > float(payment.amount):
            raise ValidationError("Refund amount exceeds the payment amount")

        refund = await stripe_service.refund_payment(payment.stripe_payment_intent_id, amount)

        await AuditService.log(db, "refund_requested", admin.id, {
            "paymentId": payment.id, "refundId": refund.id, "amount": amount,
        })
        logger.info(f"🔄 Refund requested for payment {payment.id} by admin {admin.id}")
        return {"refund_id": refund.id, "refund_status": refund.status, "payment": payment_to_dict(payment)}

    @staticmethod
    async def upload_receipt(
        db: AsyncSession,
        user: User,
        participation_id: int,
        filename: Optional[str],
        content: bytes,
        content_type: Optional[str],
        storage: Optional[StorageService] = None,
    ) -> Payment:
        """
        Store a transfer receipt and create an offline payment in 'uploaded'.

        Raises:
            ValidationError: bad file, or sol not active
            NotFoundError: participation not the user's
            ConflictError: a payment for this tour is already in progress or done
        """
        storage = storage or get_storage_service()
        storage.validate_receipt(content, content_type)

        participation, sol = await PaymentService._get_user_participation(db, user, participation_id)

        existing = await db.scalar(
            select(Payment.id).where(
                Payment.participation_id == participation.id,
                Payment.tour_number == sol.tour_actuel,
                Payment.status.in_(BLOCKING_PAYMENT_STATUSES),
            ).limit(1)
        )
        if existing:
            raise ConflictError("A payment for this tour already exists")

        stored = storage.save_receipt(filename, content, content_type)

        payment = Payment(
            participation_id=participation.id,
            user_id=user.id,
            amount=sol.montant_par_periode,
            method=PaymentMethod.OFFLINE,
            status=PaymentStatus.UPLOADED,
            tour_number=sol.tour_actuel,
            receipt_path=stored.filename,
        )
        try:
            db.add(payment)
            await db.flush()
        except Exception:
            # no orphan file for a payment row that never made it
            storage.delete_file(stored.filename)
            raise

        await AuditService.log(db, "receipt_uploaded", user.id, {
            "paymentId": payment.id, "participationId": participation.id, "tour": sol.tour_actuel,
        })
        logger.info(f"🧾 Receipt uploaded - payment: {payment.id}, user: {user.id}, file: {stored.filename}")
        return payment

    # ============================================
    # Lookups
    # ============================================

    @staticmethod
    async def get_payment_history(
        db: AsyncSession,
        user_id: int,
        status: Optional[str] = None,
        method: Optional[str] = None,
        limit: int = 100,
    ) -> List[dict]:
        query = (
            select(Payment, Sol.id, Sol.nom)
            .join(Participation, Participation.id == Payment.participation_id)
            .join(Sol, Sol.id == Participation.sol_id)
            .where(Payment.user_id == user_id)
        )
        if status:
            query = query.where(Payment.status == status)
        if method:
            query = query.where(Payment.method == method)
        query = query.order_by(Payment.created_at.desc(), Payment.id.desc()).limit(limit)

        result = await db.execute(query)
        return [payment_to_dict(p, sol_id, nom) for p, sol_id, nom in result.all()]

    @staticmethod
    async def search_payments(
        db: AsyncSession,
        user_id: Optional[int] = None,
        sol_id: Optional[int] = None,
        status: Optional[str] = None,
        method: Optional[str] = None,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
        limit: Optional[int] = None,
    ) -> List[dict]:
        """Filtered payments with member, sol and validator names (admin lists, reports, exports)."""
        validator = aliased(User)
        query = (
            select(Payment, Sol.id, Sol.nom, User, validator.firstname, validator.lastname)
            .join(Participation, Participation.id == Payment.participation_id)
            .join(Sol, Sol.id == Participation.sol_id)
            .join(User, User.id == Payment.user_id)
            .outerjoin(validator, validator.id == Payment.validated_by)
        )
        if user_id:
            query = query.where(Payment.user_id == user_id)
        if sol_id:
            query = query.where(Sol.id == sol_id)
        if status:
            query = query.where(Payment.status == status)
        if method:
            query = query.where(Payment.method == method)
        if start_date:
            query = query.where(Payment.created_at >= start_date)
        if end_date:
            query = query.where(Payment.created_at < end_date)
        query = query.order_by(Payment.created_at.desc(), Payment.id.desc())
        if limit:
            query = query.limit(limit)

        result = await db.execute(query)
        rows = []
        for payment, pay_sol_id, sol_name, member, v_first, v_last in result.all():
            row = payment_to_dict(payment, pay_sol_id, sol_name, member)
            row["validated_by_name"] = f"{v_first} {v_last}" if v_first else None
            rows.append(row)
        return rows

    @staticmethod
    async def get_payment(db: AsyncSession, payment_id: int, user: User) -> dict:
        """
        Raises:
            NotFoundError: unknown payment
            PermissionDeniedError: neither owner nor admin
        """
        context = await PaymentService.get_payment_context(db, payment_id)
        if not context:
            raise NotFoundError("Payment", payment_id)
        if context["payment"].user_id != user.id and not user.is_admin:
            raise PermissionDeniedError("You do not have access to this payment")
        return payment_to_dict(context["payment"], context["sol"].id, context["sol"].nom, context["user"])

    @staticmethod
    async def get_receipt_file(
        db: AsyncSession,
        payment_id: int,
        user: User,
        storage: Optional[StorageService] = None,
    ) -> Path:
        storage = storage or get_storage_service()
        payment = await db.get(Payment, payment_id)
        if not payment:
            raise NotFoundError("Payment", payment_id)
        if payment.user_id != user.id and not user.is_admin:
            raise PermissionDeniedError("You do not have access to this receipt")
        if not payment.receipt_path:
            raise NotFoundError("Receipt")

        if not storage.file_exists(payment.receipt_path):
            logger.error(f"Receipt file missing on disk for payment {payment_id}: {payment.receipt_path}")
            raise NotFoundError("Receipt file")
        return storage.get_file_path(payment.receipt_path)

    # ============================================
    # Stripe webhook
    # ============================================

    @staticmethod
    async def handle_webhook_event(db: AsyncSession, event: dict) -> None:
        """Dispatch a verified Stripe event."""
        event_type = event.get("type")
        obj = (event.get("data") or {}).get("object") or {}

        handlers = {
            "checkout.session.completed": PaymentService.handle_checkout_completed,
            "payment_intent.succeeded": PaymentService.handle_payment_succeeded,
            "payment_intent.payment_failed": PaymentService.handle_payment_failed,
            "charge.refunded": PaymentService.handle_charge_refunded,
        }
        handler = handlers.get(event_type)
        if handler is None:
            logger.info(f"Unhandled Stripe event type: {event_type}")
            return

        logger.info(f"📨 Stripe event {event_type} ({event.get('id')})")
        await handler(db, obj)

    @staticmethod
    async def handle_checkout_completed(db: AsyncSession, session: dict, storage: Optional[StorageService] = None) -> Optional[Payment]:
        session_id = session.get("id")
        metadata = session.get("metadata") or {}
        intent_id = session.get("payment_intent")

        payment = await db.scalar(select(Payment).where(Payment.stripe_session_id == session_id))
        if payment is None:
            participation_id = metadata.get("participationId")
            participation = await db.get(Participation, int(participation_id)) if participation_id else None
            if participation is None:
                logger.error(f"❌ checkout.session.completed for unknown session {session_id}")
                return None
            sol = await db.get(Sol, participation.sol_id)
            payment = Payment(
                participation_id=participation.id,
                user_id=participation.user_id,
                amount=(session.get("amount_total") or 0) / 100,
                method=PaymentMethod.STRIPE,
                status=PaymentStatus.PENDING,
                tour_number=sol.tour_actuel,
                stripe_session_id=session_id,
            )
            db.add(payment)
            await db.flush()

        if payment.status != PaymentStatus.PENDING:
            logger.info(f"Payment {payment.id} already processed ({payment.status.value}), skipping")
            return payment

        payment.status = PaymentStatus.COMPLETED
        payment.stripe_payment_intent_id = intent_id
        participation = await db.get(Participation, payment.participation_id)
        participation.statut_tour = TourStatus.PAYE
        await db.flush()

        await AuditService.log(db, "stripe_payment_completed", payment.user_id, {
            "paymentId": payment.id, "sessionId": session_id, "paymentIntent": intent_id,
        })
        logger.info(f"🎉 Stripe payment completed - payment: {payment.id}, session: {session_id}")

        context = await PaymentService.get_payment_context(db, payment.id)
        receipt_pdf = await asyncio.to_thread(PdfService.generate_receipt, PaymentService.build_receipt_data(context))
        stored = (storage or get_storage_service()).save_generated(f"recu-{payment.id}", receipt_pdf)
        payment.receipt_path = stored.filename

        sent = await get_email_service().send_payment_confirmation(
            context["user"], context["sol"].nom, payment.amount, intent_id, receipt_pdf
        )
        if sent:
            payment.receipt_sent = True
            payment.receipt_sent_at = _utcnow()
        await db.flush()

        await TourDetectionService.check_and_advance_tour(db, context["sol"].id)
        return payment

    @staticmethod
    async def handle_payment_succeeded(db: AsyncSession, intent: dict) -> None:
        payment = await db.scalar(select(Payment).where(Payment.stripe_payment_intent_id == intent.get("id")))
        if payment and intent.get("latest_charge"):
            payment.stripe_charge_id = intent["latest_charge"]
            await db.flush()

        await AuditService.log(db, "payment_intent_succeeded", None, {
            "paymentIntentId": intent.get("id"),
            "amount": (intent.get("amount") or 0) / 100,
            "status": intent.get("status"),
        })

    @staticmethod
    async def handle_payment_failed(db: AsyncSession, intent: dict) -> Optional[Payment]:
        intent_id = intent.get("id")
        reason = (intent.get("last_payment_error") or {}).get("message") or "Erreur inconnue"
        logger.error(f"❌ Stripe payment failed - intent: {intent_id}, reason: {reason}")

        payment = await db.scalar(select(Payment).where(Payment.stripe_payment_intent_id == intent_id))
        if payment is None:
            participation_id = (intent.get("metadata") or {}).get("participationId")
            if participation_id:
                payment = await db.scalar(
                    select(Payment)
                    .where(
                        Payment.participation_id == int(participation_id),
                        Payment.method == PaymentMethod.STRIPE,
                        Payment.status == PaymentStatus.PENDING,
                    )
                    .order_by(Payment.created_at.desc(), Payment.id.desc())
                    .limit(1)
                )
        if payment is None:
            logger.warning(f"No payment found for failed intent {intent_id}")
            return None

        payment.status = PaymentStatus.FAILED
        payment.stripe_payment_intent_id = intent_id
        payment.notes = reason
        await db.flush()

        await AuditService.log(db, "stripe_payment_failed", payment.user_id, {
            "paymentId": payment.id, "paymentIntent": intent_id, "reason": reason,
        })
        user = await db.get(User, payment.user_id)
        await get_email_service().send_payment_failed(user, reason)
        return payment

    @staticmethod
    async def handle_charge_refunded(db: AsyncSession, charge: dict) -> Optional[Payment]:
        charge_id = charge.get("id")
        intent_id = charge.get("payment_intent")
        amount = (charge.get("amount_refunded") or 0) / 100
        logger.info(f"🔄 Stripe charge refunded - charge: {charge_id}, amount: {amount}")

        criteria = [Payment.stripe_charge_id == charge_id]
        if intent_id:
            criteria.append(Payment.stripe_payment_intent_id == intent_id)
        payment = await db.scalar(select(Payment).where(or_(*criteria)).limit(1))
        if payment is None:
            logger.warning(f"No payment found for refunded charge {charge_id}")
            return None

        payment.status = PaymentStatus.REFUNDED
        payment.stripe_charge_id = charge_id
        participation = await db.get(Participation, payment.participation_id)
        participation.statut_tour = TourStatus.EN_ATTENTE
        await db.flush()

        await AuditService.log(db, "stripe_payment_refunded", payment.user_id, {
            "paymentId": payment.id, "chargeId": charge_id, "amount": amount,
        })
        user = await db.get(User, payment.user_id)
        await get_email_service().send_refund_email(user, amount)
        return payment
