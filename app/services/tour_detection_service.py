"""
Tour Detection Service - the rotation state machine.

A tour (round) is complete when every participant of the sol has a counted
payment (validated, completed or transferred) for that tour number. Completing
a tour marks its beneficiary's participation `complete` and then either moves
`tour_actuel` forward or, on the last tour, completes the sol.

Advancing is a compare-and-set on (id, tour_actuel, statut): the UPDATE only
matches while the sol is still active on the tour we inspected. When it
matches zero rows another request got there first; the caller reports
already_advanced and performs no side effects, so a round can never be
advanced twice.
"""
from datetime import datetime, timezone
from typing import Optional
import logging

from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, update, func

from app.core.exceptions import NotFoundError, ValidationError
from app.db.models import (
    User, Sol, SolStatus, Participation, TourStatus, Payment, PaymentStatus,
    Transfer, TransferStatus, COUNTED_PAYMENT_STATUSES,
)
from app.services.audit_service import AuditService
from app.services.email_service import get_email_service
from app.services.encryption_service import masked_bank_account
from app.services.sol_service import SolService
from app.services.transfer_service import TransferService

logger = logging.getLogger(__name__)

ADVANCED = "advanced"
COMPLETED = "completed"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


class TourDetectionService:
    """Detect completed tours and move the rotation forward"""

    # ============================================
    # Building blocks
    # ============================================

    @staticmethod
    async def _load_sol(db: AsyncSession, sol_id: int) -> Sol:
        # populate_existing: never decide on a stale identity-map copy
        sol = await db.get(Sol, sol_id, populate_existing=True)
        if not sol:
            raise NotFoundError("Sol", sol_id)
        return sol

    @staticmethod
    async def get_beneficiary(db: AsyncSession, sol_id: int, tour: int) -> Optional[dict]:
        """Participant whose ordre equals `tour`."""
        result = await db.execute(
            select(Participation, User)
            .join(User, User.id == Participation.user_id)
            .where(Participation.sol_id == sol_id, Participation.ordre == tour)
        )
        row = result.first()
        if not row:
            return None
        participation, user = row
        return {
            "participation_id": participation.id,
            "user_id": user.id,
            "ordre": participation.ordre,
            "statut_tour": participation.statut_tour,
            "firstname": user.firstname,
            "lastname": user.lastname,
            "email": user.email,
        }

    @staticmethod
    async def count_validated_participations(db: AsyncSession, sol_id: int, tour: int) -> int:
        """Distinct participations holding a counted payment for `tour`."""
        count = await db.scalar(
            select(func.count(func.distinct(Payment.participation_id)))
            .join(Participation, Participation.id == Payment.participation_id)
            .where(
                Participation.sol_id == sol_id,
                Payment.tour_number == tour,
                Payment.status.in_(COUNTED_PAYMENT_STATUSES),
            )
        )
        return count or 0

    @staticmethod
    async def advance_from(db: AsyncSession, sol_id: int, tour: int, total_participants: int) -> Optional[str]:
        """
        Compare-and-set step from `tour`.

        Returns:
            "completed" when the sol was closed (last tour), "advanced" when
            tour_actuel moved to tour + 1, None when the sol was no longer
            active on `tour`
        """
        guard = (Sol.id == sol_id, Sol.tour_actuel == tour, Sol.statut == SolStatus.ACTIVE)
        if tour >= total_participants:
            stmt = update(Sol).where(*guard).values(statut=SolStatus.COMPLETED, updated_at=_utcnow())
            outcome = COMPLETED
        else:
            stmt = update(Sol).where(*guard).values(tour_actuel=tour + 1, updated_at=_utcnow())
            outcome = ADVANCED

        result = await db.execute(stmt.execution_options(synchronize_session=False))
        if result.rowcount != 1:
            logger.info(f"⏭️  Sol {sol_id} tour {tour} already advanced by another request")
            return None

        # reload so callers holding the Sol see the new tour/statut
        await db.get(Sol, sol_id, populate_existing=True)
        return outcome

    @staticmethod
    async def _mark_participation_complete(db: AsyncSession, participation_id: int) -> None:
        participation = await db.get(Participation, participation_id)
        participation.statut_tour = TourStatus.COMPLETE
        await db.flush()

    @staticmethod
    async def _notify_after_advance(db: AsyncSession, sol: Sol, outcome: str, tour: int, beneficiary: dict, total: int) -> None:
        email_service = get_email_service()
        if outcome == COMPLETED:
            participants = await db.execute(
                select(User)
                .join(Participation, Participation.user_id == User.id)
                .where(Participation.sol_id == sol.id)
            )
            for user in participants.scalars().all():
                await email_service.send_sol_completed_email(user, sol)
            return

        next_beneficiary = await TourDetectionService.get_beneficiary(db, sol.id, tour + 1)
        if next_beneficiary:
            user = await db.get(User, next_beneficiary["user_id"])
            await email_service.send_your_turn_email(
                user, sol, tour + 1, float(sol.montant_par_periode) * (total - 1)
            )
        creator = await db.get(User, sol.created_by)
        if creator:
            beneficiary_user = await db.get(User, beneficiary["user_id"])
            await email_service.send_tour_completed_email(creator, sol, tour, beneficiary_user)

    # ============================================
    # Detection
    # ============================================

    @staticmethod
    async def check_and_advance_tour(db: AsyncSession, sol_id: int) -> dict:
        """
        Advance the sol if its current tour is fully paid.

        Raises:
            NotFoundError: unknown sol
        """
        sol = await TourDetectionService._load_sol(db, sol_id)
        if sol.statut != SolStatus.ACTIVE:
            return {"success": False, "message": "Sol is not active"}

        tour = sol.tour_actuel or 1
        beneficiary = await TourDetectionService.get_beneficiary(db, sol_id, tour)
        if not beneficiary:
            return {"success": False, "message": f"No beneficiary found for tour {tour}"}

        total = await SolService.count_participants(db, sol_id)
        validated = await TourDetectionService.count_validated_participations(db, sol_id, tour)

        logger.info(f"🔍 Tour check - sol: {sol_id}, tour: {tour}, validated: {validated}/{total}")

        if validated < total:
            return {
                "success": False,
                "tour_complete": False,
                "message": f"Tour {tour} in progress ({validated}/{total} payments validated)",
                "validated_payments": validated,
                "total_participants": total,
                "remaining": total - validated,
            }

        outcome = await TourDetectionService.advance_from(db, sol_id, tour, total)
        if outcome is None:
            return {
                "success": False,
                "already_advanced": True,
                "message": f"Tour {tour} was already advanced",
            }

        await TourDetectionService._mark_participation_complete(db, beneficiary["participation_id"])

        if outcome == COMPLETED:
            await AuditService.log(db, "sol_completed", None, {"solId": sol_id, "tour": tour})
            logger.info(f"🏁 Sol {sol_id} completed after tour {tour}")
            await TourDetectionService._notify_after_advance(db, sol, outcome, tour, beneficiary, total)
            return {
                "success": True,
                "tour_complete": True,
                "sol_complete": True,
                "message": "Tour complete - sol complete!",
                "beneficiary": beneficiary,
                "next_tour": None,
            }

        next_beneficiary = await TourDetectionService.get_beneficiary(db, sol_id, tour + 1)
        await AuditService.log(db, "tour_advanced", None, {
            "solId": sol_id,
            "fromTour": tour,
            "toTour": tour + 1,
            "nextBeneficiary": next_beneficiary["user_id"] if next_beneficiary else None,
        })
        logger.info(f"➡️  Sol {sol_id} advanced from tour {tour} to {tour + 1}")
        await TourDetectionService._notify_after_advance(db, sol, outcome, tour, beneficiary, total)

        return {
            "success": True,
            "tour_complete": True,
            "sol_complete": False,
            "message": f"Tour {tour} complete - moving to tour {tour + 1}",
            "beneficiary": beneficiary,
            "next_tour": tour + 1,
            "next_beneficiary": next_beneficiary,
        }

    @staticmethod
    async def get_tour_status(db: AsyncSession, sol_id: int) -> dict:
        sol = await TourDetectionService._load_sol(db, sol_id)
        tour = sol.tour_actuel or 1

        beneficiary = await TourDetectionService.get_beneficiary(db, sol_id, tour)
        total = await SolService.count_participants(db, sol_id)
        validated = await TourDetectionService.count_validated_participations(db, sol_id, tour)

        pending = await db.execute(
            select(Payment, User.firstname, User.lastname)
            .join(Participation, Participation.id == Payment.participation_id)
            .join(User, User.id == Participation.user_id)
            .where(
                Participation.sol_id == sol_id,
                Payment.tour_number == tour,
                Payment.status.notin_(COUNTED_PAYMENT_STATUSES),
            )
            .order_by(Payment.created_at)
        )

        return {
            "sol_id": sol_id,
            "tour_actuel": tour,
            "total_tours": total,
            "beneficiary": beneficiary,
            "validated_payments": validated,
            "total_participants": total,
            "remaining": max(total - validated, 0),
            "progress": round(validated / total * 100) if total else 0,
            "is_complete": total > 0 and validated >= total,
            "pending_payments": [
                {
                    "id": payment.id,
                    "amount": payment.amount,
                    "status": payment.status,
                    "method": payment.method,
                    "firstname": firstname,
                    "lastname": lastname,
                }
                for payment, firstname, lastname in pending.all()
            ],
            "sol_statut": sol.statut,
        }

    @staticmethod
    async def check_all_active_sols(db: AsyncSession) -> dict:
        """Sweep every active sol; one failing sol doesn't stop the others."""
        result = await db.execute(select(Sol.id).where(Sol.statut == SolStatus.ACTIVE).order_by(Sol.id))
        sol_ids = list(result.scalars().all())
        logger.info(f"🔄 Checking {len(sol_ids)} active sol(s)")

        results = []
        for sol_id in sol_ids:
            try:
                # savepoint: a failing sol only rolls back its own changes
                async with db.begin_nested():
                    outcome = await TourDetectionService.check_and_advance_tour(db, sol_id)
            except Exception as e:
                logger.error(f"Error checking sol {sol_id}: {e}", exc_info=True)
                continue
            if outcome.get("tour_complete"):
                results.append({"sol_id": sol_id, **outcome})

        return {"checked": len(sol_ids), "advanced": len(results), "results": results}

    @staticmethod
    async def get_current_beneficiary(db: AsyncSession, sol_id: int) -> Optional[dict]:
        """Current beneficiary with masked payout account and expected amount."""
        sol = await TourDetectionService._load_sol(db, sol_id)
        beneficiary = await TourDetectionService.get_beneficiary(db, sol_id, sol.tour_actuel or 1)
        if not beneficiary:
            return None

        user = await db.get(User, beneficiary["user_id"])
        total = await SolService.count_participants(db, sol_id)
        return {
            **beneficiary,
            "sol_id": sol_id,
            "tour_number": sol.tour_actuel,
            "phone": user.phone,
            "bank_account": masked_bank_account(user.bank_account_encrypted),
            "expected_amount": float(sol.montant_par_periode) * max(total - 1, 0),
        }

    # ============================================
    # Manual controls
    # ============================================

    @staticmethod
    async def force_advance_tour(db: AsyncSession, sol_id: int, admin_id: int) -> dict:
        """Admin override: close the current tour regardless of payments."""
        sol = await TourDetectionService._load_sol(db, sol_id)
        if sol.statut != SolStatus.ACTIVE:
            raise ValidationError("Sol is not active")

        tour = sol.tour_actuel or 1
        total = await SolService.count_participants(db, sol_id)
        outcome = await TourDetectionService.advance_from(db, sol_id, tour, total)
        if outcome is None:
            return {"success": False, "already_advanced": True, "message": f"Tour {tour} was already advanced"}

        beneficiary = await TourDetectionService.get_beneficiary(db, sol_id, tour)
        if beneficiary:
            await TourDetectionService._mark_participation_complete(db, beneficiary["participation_id"])

        await AuditService.log(db, "tour_force_advanced", admin_id, {
            "solId": sol_id, "fromTour": tour, "outcome": outcome,
        })
        logger.warning(f"⚠️  Tour {tour} of sol {sol_id} force-advanced by admin {admin_id}")

        if outcome == COMPLETED:
            return {"success": True, "sol_complete": True, "message": "Sol marked as completed"}
        return {"success": True, "sol_complete": False, "next_tour": tour + 1, "message": f"Forced move to tour {tour + 1}"}

    @staticmethod
    async def start_tour(db: AsyncSession, sol_id: int, user: User, date_debut: Optional[datetime] = None) -> Sol:
        """Stamp date_debut and make sure payout rows exist."""
        sol = await TourDetectionService._load_sol(db, sol_id)
        SolService.ensure_can_manage(sol, user)
        if sol.statut != SolStatus.ACTIVE:
            raise ValidationError("Sol is not active")

        if sol.date_debut is None:
            sol.date_debut = date_debut or _utcnow()
        await TransferService.initialize_transfers_for_sol(db, sol_id)
        await db.flush()

        await AuditService.log(db, "tour_started", user.id, {"solId": sol_id, "tour": sol.tour_actuel})
        logger.info(f"🚀 Tour {sol.tour_actuel} started for sol {sol_id}")
        return sol

    @staticmethod
    async def are_all_payments_transferred(db: AsyncSession, sol_id: int, tour: int) -> bool:
        base = (
            select(func.count(Payment.id))
            .join(Participation, Participation.id == Payment.participation_id)
            .where(Participation.sol_id == sol_id, Payment.tour_number == tour)
        )
        total = await db.scalar(base)
        if not total:
            return False
        not_transferred = await db.scalar(
            base.where(Payment.status.in_((PaymentStatus.VALIDATED, PaymentStatus.COMPLETED)))
        )
        return not not_transferred

    @staticmethod
    async def get_closing_tour(db: AsyncSession, sol: Sol) -> int:
        """
        Oldest tour up to tour_actuel with counted payments whose transfer is
        not completed yet; tour_actuel when there is none.
        """
        closed_tours = select(Transfer.tour_number).where(
            Transfer.sol_id == sol.id,
            Transfer.status == TransferStatus.COMPLETED,
        )
        tour = await db.scalar(
            select(func.min(Payment.tour_number))
            .join(Participation, Participation.id == Payment.participation_id)
            .where(
                Participation.sol_id == sol.id,
                Payment.tour_number <= sol.tour_actuel,
                Payment.status.in_(COUNTED_PAYMENT_STATUSES),
                Payment.tour_number.notin_(closed_tours),
            )
        )
        return tour or sol.tour_actuel or 1

    @staticmethod
    async def complete_tour(db: AsyncSession, sol_id: int, user: User, tour_number: Optional[int] = None) -> dict:
        """
        Close a tour once its pooled payments were paid out.

        The tour defaults to get_closing_tour(). A tour that is still current is
        advanced with the usual guard; one the rotation already moved past
        (every participant paid, so it advanced on its own) only gets its
        transfer and beneficiary closed.

        Raises:
            ValidationError: sol cancelled, tour out of range, or payments not all transferred
        """
        sol = await TourDetectionService._load_sol(db, sol_id)
        SolService.ensure_can_manage(sol, user)
        if sol.statut == SolStatus.CANCELLED:
            raise ValidationError("Sol is not active")

        tour = tour_number or await TourDetectionService.get_closing_tour(db, sol)
        if tour < 1 or tour > (sol.tour_actuel or 1):
            raise ValidationError(f"Tour {tour} has not started yet")
        if not await TourDetectionService.are_all_payments_transferred(db, sol_id, tour):
            raise ValidationError("All payments must be transferred before completing the tour")

        outcome = None
        if sol.statut == SolStatus.ACTIVE and tour == sol.tour_actuel:
            total = await SolService.count_participants(db, sol_id)
            outcome = await TourDetectionService.advance_from(db, sol_id, tour, total)
            if outcome is None:
                return {"success": False, "already_advanced": True, "message": f"Tour {tour} was already advanced"}

        transfer = await TransferService.get_transfer_for_tour(db, sol_id, tour)
        if transfer and transfer.status != TransferStatus.COMPLETED:
            await TransferService.update_status(db, transfer, TransferStatus.COMPLETED.value, user.id, None)

        beneficiary = await TourDetectionService.get_beneficiary(db, sol_id, tour)
        if beneficiary:
            await TourDetectionService._mark_participation_complete(db, beneficiary["participation_id"])

        await AuditService.log(db, "tour_completed", user.id, {"solId": sol_id, "tour": tour, "outcome": outcome})
        logger.info(f"✅ Tour {tour} of sol {sol_id} completed by user {user.id}")

        sol_complete = sol.statut == SolStatus.COMPLETED
        return {
            "success": True,
            "tour_number": tour,
            "sol_complete": sol_complete,
            "next_tour": None if sol_complete else sol.tour_actuel,
        }

    @staticmethod
    async def next_tour(db: AsyncSession, sol_id: int, user: User, tour_number: Optional[int] = None) -> dict:
        result = await TourDetectionService.complete_tour(db, sol_id, user, tour_number)
        sol = await TourDetectionService._load_sol(db, sol_id)
        if result.get("success") and sol.statut == SolStatus.ACTIVE:
            await TourDetectionService.start_tour(db, sol_id, user)
        return {**result, "tour_actuel": sol.tour_actuel, "sol_statut": sol.statut}
