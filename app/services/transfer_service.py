"""
Transfer Service - payouts of pooled contributions.

One transfer per (sol, tour). Lifecycle:

    pending -> ready         every non-beneficiary participant paid the tour
    pending|ready -> transferring   admin marked the money as sent
    transferring -> completed       receiver confirmed reception
    any -> disputed                 receiver reports a problem
"""
from datetime import datetime, timezone
from typing import Optional, List
import logging

from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, update, func, case

from app.core.exceptions import NotFoundError, PermissionDeniedError, ValidationError
from app.db.models import (
    User, Sol, SolStatus, Participation, Payment, PaymentStatus, Transfer,
    TransferStatus, COUNTED_PAYMENT_STATUSES,
)
from app.services.audit_service import AuditService

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def transfer_to_dict(transfer: Transfer, sol_name: Optional[str] = None, receiver: Optional[User] = None) -> dict:
    return {
        "id": transfer.id,
        "sol_id": transfer.sol_id,
        "tour_number": transfer.tour_number,
        "receiver_id": transfer.receiver_id,
        "amount": transfer.amount,
        "status": transfer.status,
        "marked_by": transfer.marked_by,
        "marked_at": transfer.marked_at,
        "confirmed_by": transfer.confirmed_by,
        "confirmed_at": transfer.confirmed_at,
        "notes": transfer.notes,
        "created_at": transfer.created_at,
        "updated_at": transfer.updated_at,
        "sol_name": sol_name,
        "receiver_name": receiver.full_name if receiver else None,
        "receiver_email": receiver.email if receiver else None,
    }


class TransferService:
    """Payout records and their status transitions"""

    @staticmethod
    async def initialize_transfers_for_sol(db: AsyncSession, sol_id: int) -> List[Transfer]:
        """
        Create one pending transfer per participant, tour = position in the rotation.

        Existing (sol, tour) rows are left alone, so this is safe to call again.

        Returns:
            Newly created transfers only
        """
        sol = await db.get(Sol, sol_id)
        if not sol:
            raise NotFoundError("Sol", sol_id)

        participations = (await db.execute(
            select(Participation)
            .where(Participation.sol_id == sol_id)
            .order_by(Participation.ordre)
        )).scalars().all()

        existing_tours = set((await db.execute(
            select(Transfer.tour_number).where(Transfer.sol_id == sol_id)
        )).scalars().all())

        amount = float(sol.montant_par_periode) * (len(participations) - 1)
        created = []
        for index, participation in enumerate(participations):
            tour_number = index + 1
            if tour_number in existing_tours:
                continue
            transfer = Transfer(
                sol_id=sol_id,
                tour_number=tour_number,
                receiver_id=participation.user_id,
                amount=amount,
                status=TransferStatus.PENDING,
            )
            db.add(transfer)
            created.append(transfer)

        await db.flush()
        if created:
            logger.info(f"💸 Initialized {len(created)} transfer(s) for sol {sol_id}")
        return created

    @staticmethod
    async def sync_with_rotation(db: AsyncSession, sol_id: int) -> None:
        """
        Realign pending transfers after participants joined, left or were reordered.

        Only untouched (pending) rows change: their receiver follows the current
        ordre, their amount the current participant count, rows past the last
        ordre are dropped and missing tours are created. Sols whose transfers
        were never initialized are left alone.
        """
        transfers = (await db.execute(
            select(Transfer).where(Transfer.sol_id == sol_id)
        )).scalars().all()
        if not transfers:
            return

        sol = await db.get(Sol, sol_id)
        receivers = dict((await db.execute(
            select(Participation.ordre, Participation.user_id).where(Participation.sol_id == sol_id)
        )).all())
        amount = float(sol.montant_par_periode) * (len(receivers) - 1)

        for transfer in transfers:
            if transfer.status != TransferStatus.PENDING:
                continue
            if transfer.tour_number not in receivers:
                await db.delete(transfer)
                continue
            transfer.receiver_id = receivers[transfer.tour_number]
            transfer.amount = amount
        await db.flush()

        await TransferService.initialize_transfers_for_sol(db, sol_id)
        logger.info(f"🔁 Pending transfers of sol {sol_id} realigned with the rotation")

    @staticmethod
    async def get_transfer(db: AsyncSession, transfer_id: int) -> Transfer:
        transfer = await db.get(Transfer, transfer_id)
        if not transfer:
            raise NotFoundError("Transfer", transfer_id)
        return transfer

    @staticmethod
    async def get_transfer_for_tour(db: AsyncSession, sol_id: int, tour_number: int) -> Optional[Transfer]:
        result = await db.execute(
            select(Transfer).where(Transfer.sol_id == sol_id, Transfer.tour_number == tour_number)
        )
        return result.scalar_one_or_none()

    @staticmethod
    async def get_current_transfer_by_sol(db: AsyncSession, sol_id: int) -> Optional[dict]:
        sol = await db.get(Sol, sol_id)
        if not sol:
            raise NotFoundError("Sol", sol_id)
        transfer = await TransferService.get_transfer_for_tour(db, sol_id, sol.tour_actuel)
        if not transfer:
            return None
        receiver = await db.get(User, transfer.receiver_id)
        return transfer_to_dict(transfer, sol.nom, receiver)

    @staticmethod
    async def _list(db: AsyncSession, *criteria, limit: int = 500) -> List[dict]:
        result = await db.execute(
            select(Transfer, Sol.nom, User)
            .join(Sol, Sol.id == Transfer.sol_id)
            .join(User, User.id == Transfer.receiver_id)
            .where(*criteria)
            .order_by(Transfer.sol_id, Transfer.tour_number)
            .limit(limit)
        )
        return [transfer_to_dict(t, nom, u) for t, nom, u in result.all()]

    @staticmethod
    async def list_by_sol(db: AsyncSession, sol_id: int) -> List[dict]:
        return await TransferService._list(db, Transfer.sol_id == sol_id)

    @staticmethod
    async def find_pending(db: AsyncSession) -> List[dict]:
        """Transfers still to be paid out or confirmed."""
        return await TransferService._list(db, Transfer.status.in_((
            TransferStatus.PENDING, TransferStatus.READY, TransferStatus.TRANSFERRING,
        )))

    @staticmethod
    async def update_status(
        db: AsyncSession,
        transfer: Transfer,
        status: str,
        user_id: Optional[int],
        notes: Optional[str] = None,
    ) -> Transfer:
        """
        Set a transfer status, stamping who/when for transferring and completed.

        Raises:
            ValidationError: unknown status
        """
        try:
            new_status = TransferStatus(status)
        except ValueError:
            raise ValidationError(
                f"Invalid transfer status. Allowed: {', '.join(s.value for s in TransferStatus)}"
            )

        transfer.status = new_status
        if new_status == TransferStatus.TRANSFERRING:
            transfer.marked_by = user_id
            transfer.marked_at = _utcnow()
        elif new_status == TransferStatus.COMPLETED:
            transfer.confirmed_by = user_id
            transfer.confirmed_at = _utcnow()
        if notes:
            transfer.notes = notes
        await db.flush()

        logger.info(f"💸 Transfer {transfer.id} -> {new_status.value} (by user {user_id})")
        return transfer

    @staticmethod
    async def mark_as_transferred(db: AsyncSession, transfer_id: int, admin_id: int, notes: Optional[str] = None) -> Transfer:
        transfer = await TransferService.get_transfer(db, transfer_id)
        if transfer.status not in (TransferStatus.PENDING, TransferStatus.READY):
            raise ValidationError(f"Cannot mark a '{transfer.status.value}' transfer as transferred")

        await TransferService.update_status(db, transfer, TransferStatus.TRANSFERRING.value, admin_id, notes)
        await AuditService.log(db, "transfer_marked", admin_id, {
            "transferId": transfer.id, "solId": transfer.sol_id, "tour": transfer.tour_number,
        })
        return transfer

    @staticmethod
    async def confirm_receipt(db: AsyncSession, transfer_id: int, user_id: int) -> Transfer:
        """
        Receiver confirms the money arrived.

        Raises:
            PermissionDeniedError: caller is not the receiver
            ValidationError: transfer not in 'transferring'
        """
        transfer = await TransferService.get_transfer(db, transfer_id)
        if transfer.receiver_id != user_id:
            raise PermissionDeniedError("Only the receiver can confirm this transfer")
        if transfer.status != TransferStatus.TRANSFERRING:
            raise ValidationError("Transfer has not been sent yet")

        await TransferService.update_status(db, transfer, TransferStatus.COMPLETED.value, user_id)
        await AuditService.log(db, "transfer_confirmed", user_id, {"transferId": transfer.id})
        return transfer

    @staticmethod
    async def mark_as_disputed(db: AsyncSession, transfer_id: int, user_id: int, notes: Optional[str]) -> Transfer:
        transfer = await TransferService.get_transfer(db, transfer_id)
        if transfer.receiver_id != user_id:
            raise PermissionDeniedError("Only the receiver can dispute this transfer")
        if not notes or not notes.strip():
            raise ValidationError("Please describe the problem")

        await TransferService.update_status(db, transfer, TransferStatus.DISPUTED.value, user_id, notes.strip())
        await AuditService.log(db, "transfer_disputed", user_id, {"transferId": transfer.id, "notes": notes.strip()})
        logger.warning(f"⚠️  Transfer {transfer.id} disputed by user {user_id}")
        return transfer

    @staticmethod
    async def check_if_ready(db: AsyncSession, sol_id: int, tour_number: int) -> bool:
        """Flip a pending transfer to ready once every other participant has paid."""
        transfer = await TransferService.get_transfer_for_tour(db, sol_id, tour_number)
        if not transfer or transfer.status != TransferStatus.PENDING:
            return False

        expected = await db.scalar(
            select(func.count(Participation.id)).where(
                Participation.sol_id == sol_id,
                Participation.user_id != transfer.receiver_id,
            )
        ) or 0
        paid = await db.scalar(
            select(func.count(func.distinct(Payment.participation_id)))
            .join(Participation, Participation.id == Payment.participation_id)
            .where(
                Participation.sol_id == sol_id,
                Participation.user_id != transfer.receiver_id,
                Payment.tour_number == tour_number,
                Payment.status.in_(COUNTED_PAYMENT_STATUSES),
            )
        ) or 0

        if paid < expected:
            return False

        transfer.status = TransferStatus.READY
        await db.flush()
        logger.info(f"✅ Transfer {transfer.id} ready (sol {sol_id}, tour {tour_number})")
        return True

    @staticmethod
    async def get_payout_tour(db: AsyncSession, sol: Sol) -> int:
        """
        Oldest tour holding counted payments that were not paid out yet.

        A fully paid tour advances tour_actuel right away, so the round
        waiting for its payout is usually behind tour_actuel.
        """
        tour = await db.scalar(
            select(func.min(Payment.tour_number))
            .join(Participation, Participation.id == Payment.participation_id)
            .where(
                Participation.sol_id == sol.id,
                Payment.status.in_((PaymentStatus.VALIDATED, PaymentStatus.COMPLETED)),
            )
        )
        return tour or sol.tour_actuel

    @staticmethod
    async def transfer_all_payments(
        db: AsyncSession,
        sol_id: int,
        admin_id: int,
        tour_number: Optional[int] = None,
    ) -> dict:
        """
        Mark every counted payment of a tour as transferred and the tour's
        transfer as sent.

        Args:
            tour_number: tour to pay out; defaults to get_payout_tour()

        Raises:
            NotFoundError: unknown sol
            ValidationError: cancelled sol, or nothing left to transfer for the tour
        """
        sol = await db.get(Sol, sol_id)
        if not sol:
            raise NotFoundError("Sol", sol_id)
        if sol.statut == SolStatus.CANCELLED:
            raise ValidationError("Sol is cancelled")

        tour = tour_number or await TransferService.get_payout_tour(db, sol)
        participation_ids = select(Participation.id).where(Participation.sol_id == sol_id)
        result = await db.execute(
            update(Payment)
            .where(
                Payment.participation_id.in_(participation_ids),
                Payment.tour_number == tour,
                Payment.status.in_((PaymentStatus.VALIDATED, PaymentStatus.COMPLETED)),
            )
            .values(status=PaymentStatus.TRANSFERRED, updated_at=_utcnow())
            .execution_options(synchronize_session=False)
        )
        transferred = result.rowcount or 0
        if not transferred:
            raise ValidationError(f"No validated payments to transfer for tour {tour}")

        transfer = await TransferService.get_transfer_for_tour(db, sol_id, tour)
        if transfer and transfer.status in (TransferStatus.PENDING, TransferStatus.READY):
            await TransferService.update_status(db, transfer, TransferStatus.TRANSFERRING.value, admin_id)

        await AuditService.log(db, "payments_transferred", admin_id, {
            "solId": sol_id, "tour": tour, "count": transferred,
        })
        logger.info(f"💸 {transferred} payment(s) of sol {sol_id} tour {tour} marked transferred")
        return {
            "tour_number": tour,
            "transferred_count": transferred,
            "transfer": transfer_to_dict(transfer, sol.nom) if transfer else None,
        }

    @staticmethod
    async def get_user_transfer_history(db: AsyncSession, user_id: int) -> dict:
        received = await TransferService._list(db, Transfer.receiver_id == user_id)
        sol_transfers = await TransferService._list(
            db,
            Transfer.sol_id.in_(select(Participation.sol_id).where(Participation.user_id == user_id)),
            Transfer.receiver_id != user_id,
        )
        return {"received": received, "sol_transfers": sol_transfers}

    @staticmethod
    async def get_transfer_stats(db: AsyncSession, sol_id: Optional[int] = None) -> dict:
        def count_of(status: TransferStatus):
            return func.sum(case((Transfer.status == status, 1), else_=0))

        query = select(
            func.count(Transfer.id),
            count_of(TransferStatus.COMPLETED),
            count_of(TransferStatus.TRANSFERRING),
            count_of(TransferStatus.READY),
            count_of(TransferStatus.PENDING),
            count_of(TransferStatus.DISPUTED),
            func.sum(case((Transfer.status == TransferStatus.COMPLETED, Transfer.amount), else_=0)),
        )
        if sol_id:
            query = query.where(Transfer.sol_id == sol_id)
        row = (await db.execute(query)).one()

        return {
            "total": row[0] or 0,
            "completed": row[1] or 0,
            "in_progress": row[2] or 0,
            "ready": row[3] or 0,
            "pending": row[4] or 0,
            "disputed": row[5] or 0,
            "total_amount": float(row[6] or 0),
        }
