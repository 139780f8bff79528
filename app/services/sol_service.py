"""
Sol Service - groups, membership and rotation order.

Rotation order invariant: the `ordre` values of a sol's participants are
always exactly 1..n. Every rewrite goes through _renumber(), which moves rows
to negative placeholders first so UNIQUE(sol_id, ordre) never trips mid-flush.
"""
import random
import logging
from typing import Optional, List, Sequence
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, func, or_

from app.core.exceptions import (
    ConflictError, NotFoundError, PermissionDeniedError, ValidationError,
)
from app.db.models import (
    User, Sol, SolStatus, SolFrequency, Participation, TourStatus, Payment,
    COUNTED_PAYMENT_STATUSES, OPEN_PAYMENT_STATUSES,
)
from app.services.audit_service import AuditService
from app.services.email_service import get_email_service
from app.services.transfer_service import TransferService

logger = logging.getLogger(__name__)


def _participants_count_subquery():
    return (
        select(func.count(Participation.id))
        .where(Participation.sol_id == Sol.id)
        .correlate(Sol)
        .scalar_subquery()
    )


class SolService:
    """Service for sols and their participants"""

    # ============================================
    # Lookups & access checks
    # ============================================

    @staticmethod
    async def get_sol_or_404(db: AsyncSession, sol_id: int) -> Sol:
        sol = await db.get(Sol, sol_id)
        if not sol:
            raise NotFoundError("Sol", sol_id)
        return sol

    @staticmethod
    async def get_participation(db: AsyncSession, sol_id: int, user_id: int) -> Optional[Participation]:
        result = await db.execute(
            select(Participation).where(
                Participation.sol_id == sol_id,
                Participation.user_id == user_id,
            )
        )
        return result.scalar_one_or_none()

    @staticmethod
    async def get_ordered_participations(db: AsyncSession, sol_id: int) -> List[Participation]:
        result = await db.execute(
            select(Participation)
            .where(Participation.sol_id == sol_id)
            .order_by(Participation.ordre)
        )
        return list(result.scalars().all())

    @staticmethod
    async def count_participants(db: AsyncSession, sol_id: int) -> int:
        count = await db.scalar(
            select(func.count(Participation.id)).where(Participation.sol_id == sol_id)
        )
        return count or 0

    @staticmethod
    def ensure_can_manage(sol: Sol, user: User) -> None:
        """Creator or admin, else PermissionDeniedError."""
        if sol.created_by != user.id and not user.is_admin:
            logger.warning(f"🔒 User {user.id} tried to manage sol {sol.id} without rights")
            raise PermissionDeniedError("Only the sol creator or an admin can do this")

    @staticmethod
    async def ensure_can_view(db: AsyncSession, sol: Sol, user: User) -> Optional[Participation]:
        """
        Participant, creator or admin.

        Returns:
            The caller's participation (None for a non-participating creator/admin)
        """
        participation = await SolService.get_participation(db, sol.id, user.id)
        if participation is None and sol.created_by != user.id and not user.is_admin:
            raise PermissionDeniedError("You do not have access to this sol")
        return participation

    # ============================================
    # Queries
    # ============================================

    @staticmethod
    async def _sol_rows(db: AsyncSession, query) -> List[dict]:
        result = await db.execute(query)
        return [
            {
                "sol": sol,
                "participants_count": count or 0,
                "creator_name": f"{firstname} {lastname}",
            }
            for sol, count, firstname, lastname in result.all()
        ]

    @staticmethod
    def _base_query():
        return (
            select(Sol, _participants_count_subquery().label("participants_count"), User.firstname, User.lastname)
            .join(User, User.id == Sol.created_by)
        )

    @staticmethod
    async def get_sol(db: AsyncSession, sol_id: int) -> dict:
        """
        Sol with participant count and creator name.

        Raises:
            NotFoundError: unknown sol
        """
        rows = await SolService._sol_rows(db, SolService._base_query().where(Sol.id == sol_id))
        if not rows:
            raise NotFoundError("Sol", sol_id)
        return rows[0]

    @staticmethod
    async def list_sols(
        db: AsyncSession,
        statut: Optional[str] = None,
        created_by: Optional[int] = None,
        user_id: Optional[int] = None,
        search: Optional[str] = None,
        limit: int = 100,
    ) -> List[dict]:
        query = SolService._base_query()
        if statut:
            query = query.where(Sol.statut == statut)
        if created_by:
            query = query.where(Sol.created_by == created_by)
        if user_id:
            query = query.where(
                Sol.id.in_(select(Participation.sol_id).where(Participation.user_id == user_id))
            )
        if search:
            term = f"%{search.lower()}%"
            query = query.where(or_(
                func.lower(Sol.nom).like(term),
                func.lower(Sol.description).like(term),
            ))
        query = query.order_by(Sol.created_at.desc(), Sol.id.desc()).limit(limit)
        return await SolService._sol_rows(db, query)

    @staticmethod
    async def list_user_sols(db: AsyncSession, user_id: int) -> List[dict]:
        """Sols the user takes part in, with their own ordre / statut_tour."""
        result = await db.execute(
            select(
                Sol,
                _participants_count_subquery().label("participants_count"),
                Participation.id,
                Participation.ordre,
                Participation.statut_tour,
            )
            .join(Participation, Participation.sol_id == Sol.id)
            .where(Participation.user_id == user_id)
            .order_by(Sol.created_at.desc(), Sol.id.desc())
        )
        return [
            {
                "sol": sol,
                "participants_count": count or 0,
                "participation_id": participation_id,
                "ordre": ordre,
                "statut_tour": statut_tour,
                "is_beneficiary": sol.statut == SolStatus.ACTIVE and ordre == sol.tour_actuel,
            }
            for sol, count, participation_id, ordre, statut_tour in result.all()
        ]

    @staticmethod
    async def list_available_sols(db: AsyncSession, user_id: int) -> List[dict]:
        """Active, not full, and the user is not already in."""
        count = _participants_count_subquery()
        query = (
            SolService._base_query()
            .where(
                Sol.statut == SolStatus.ACTIVE,
                count < Sol.max_participants,
                Sol.id.notin_(select(Participation.sol_id).where(Participation.user_id == user_id)),
            )
            .order_by(Sol.created_at.desc(), Sol.id.desc())
        )
        return await SolService._sol_rows(db, query)

    @staticmethod
    async def get_participants(db: AsyncSession, sol_id: int) -> List[dict]:
        """Participants ordered by ordre with names and contact."""
        await SolService.get_sol_or_404(db, sol_id)
        result = await db.execute(
            select(Participation, User)
            .join(User, User.id == Participation.user_id)
            .where(Participation.sol_id == sol_id)
            .order_by(Participation.ordre)
        )
        return [
            {
                "participation_id": p.id,
                "user_id": u.id,
                "ordre": p.ordre,
                "statut_tour": p.statut_tour,
                "firstname": u.firstname,
                "lastname": u.lastname,
                "email": u.email,
                "phone": u.phone,
                "joined_at": p.created_at,
            }
            for p, u in result.all()
        ]

    @staticmethod
    async def get_statistics(db: AsyncSession, sol_id: int) -> dict:
        await SolService.get_sol_or_404(db, sol_id)

        total_participants = await SolService.count_participants(db, sol_id)
        completed_turns = await db.scalar(
            select(func.count(Participation.id)).where(
                Participation.sol_id == sol_id,
                Participation.statut_tour == TourStatus.COMPLETE,
            )
        ) or 0
        total_collected = await db.scalar(
            select(func.coalesce(func.sum(Payment.amount), 0))
            .join(Participation, Participation.id == Payment.participation_id)
            .where(Participation.sol_id == sol_id, Payment.status.in_(COUNTED_PAYMENT_STATUSES))
        )
        pending_payments = await db.scalar(
            select(func.count(Payment.id))
            .join(Participation, Participation.id == Payment.participation_id)
            .where(Participation.sol_id == sol_id, Payment.status.in_(OPEN_PAYMENT_STATUSES))
        ) or 0

        progress = round(completed_turns / total_participants * 100) if total_participants else 0
        return {
            "total_collected": float(total_collected or 0),
            "completed_turns": completed_turns,
            "pending_payments": pending_payments,
            "total_participants": total_participants,
            "progress_percentage": progress,
        }

    @staticmethod
    async def get_sol_details(db: AsyncSession, sol_id: int, user: User) -> dict:
        """
        Sol + participants + statistics for its members.

        Raises:
            NotFoundError, PermissionDeniedError
        """
        sol_row = await SolService.get_sol(db, sol_id)
        participation = await SolService.ensure_can_view(db, sol_row["sol"], user)

        return {
            **sol_row,
            "participants": await SolService.get_participants(db, sol_id),
            "statistics": await SolService.get_statistics(db, sol_id),
            "is_creator": sol_row["sol"].created_by == user.id,
            "is_participant": participation is not None,
        }

    # ============================================
    # Mutations
    # ============================================

    @staticmethod
    async def create_sol(db: AsyncSession, data: dict, creator: User) -> Sol:
        """Insert a sol; its creator becomes participant #1."""
        sol = Sol(
            nom=data["nom"].strip(),
            description=data.get("description"),
            montant_par_periode=data["montant_par_periode"],
            frequence=SolFrequency(data["frequence"]),
            max_participants=data.get("max_participants") or 12,
            tour_actuel=1,
            statut=SolStatus.ACTIVE,
            created_by=creator.id,
        )
        db.add(sol)
        await db.flush()

        db.add(Participation(
            sol_id=sol.id,
            user_id=creator.id,
            ordre=1,
            statut_tour=TourStatus.EN_ATTENTE,
        ))
        await db.flush()

        await AuditService.log(db, "sol_created", creator.id, {"solId": sol.id, "nom": sol.nom})
        logger.info(f"✅ Sol created: {sol.id} '{sol.nom}' by user {creator.id}")
        return sol

    @staticmethod
    async def add_participant(db: AsyncSession, sol_id: int, user_id: int) -> Participation:
        """
        Join a sol at the end of the rotation.

        Raises:
            NotFoundError: unknown sol
            ValidationError: sol not active or full
            ConflictError: already a participant
        """
        sol = await SolService.get_sol_or_404(db, sol_id)
        if sol.statut != SolStatus.ACTIVE:
            raise ValidationError("This sol is not accepting participants")

        if await SolService.get_participation(db, sol_id, user_id):
            raise ConflictError("You are already a participant in this sol")

        count = await SolService.count_participants(db, sol_id)
        if count >= sol.max_participants:
            raise ValidationError("This sol is full")

        max_ordre = await db.scalar(
            select(func.coalesce(func.max(Participation.ordre), 0)).where(Participation.sol_id == sol_id)
        )
        participation = Participation(
            sol_id=sol_id,
            user_id=user_id,
            ordre=(max_ordre or 0) + 1,
            statut_tour=TourStatus.EN_ATTENTE,
        )
        db.add(participation)
        await db.flush()
        await TransferService.sync_with_rotation(db, sol_id)

        await AuditService.log(db, "sol_joined", user_id, {"solId": sol_id, "ordre": participation.ordre})
        logger.info(f"👥 User {user_id} joined sol {sol_id} at position {participation.ordre}")

        email_service = get_email_service()
        member = await db.get(User, user_id)
        creator = await db.get(User, sol.created_by)
        await email_service.send_sol_joined_email(member, sol, participation.ordre)
        if creator and creator.id != user_id:
            await email_service.send_new_participant_email(creator, sol, member)

        return participation

    @staticmethod
    async def remove_participant(db: AsyncSession, sol_id: int, user_id: int) -> None:
        """
        Leave a sol; remaining participants are renumbered 1..n.

        Raises:
            ValidationError: creator leaving, open payments, or the rotation already started
            NotFoundError: not a participant
        """
        sol = await SolService.get_sol_or_404(db, sol_id)
        if sol.created_by == user_id:
            raise ValidationError("The creator cannot leave the sol")

        participation = await SolService.get_participation(db, sol_id, user_id)
        if not participation:
            raise NotFoundError("Participation")

        open_payments = await db.scalar(
            select(func.count(Payment.id)).where(
                Payment.participation_id == participation.id,
                Payment.status.in_(OPEN_PAYMENT_STATUSES),
            )
        )
        if open_payments:
            raise ValidationError("You have pending payments in this sol")

        # leaving renumbers the rotation, same guard as a reorder
        await SolService._ensure_order_editable(db, sol)

        await db.delete(participation)
        await db.flush()

        remaining = await SolService.get_ordered_participations(db, sol_id)
        await SolService._renumber(db, remaining)
        await TransferService.sync_with_rotation(db, sol_id)

        await AuditService.log(db, "sol_left", user_id, {"solId": sol_id})
        logger.info(f"👋 User {user_id} left sol {sol_id}")

    @staticmethod
    async def update_sol(db: AsyncSession, sol_id: int, user: User, data: dict) -> Sol:
        sol = await SolService.get_sol_or_404(db, sol_id)
        SolService.ensure_can_manage(sol, user)

        if data.get("nom") is not None:
            if not data["nom"].strip():
                raise ValidationError("Name cannot be empty")
            sol.nom = data["nom"].strip()
        if data.get("description") is not None:
            sol.description = data["description"]
        if data.get("statut") is not None:
            try:
                sol.statut = SolStatus(data["statut"])
            except ValueError:
                raise ValidationError(
                    f"Invalid status. Allowed: {', '.join(s.value for s in SolStatus)}"
                )

        await db.flush()
        await AuditService.log(db, "sol_updated", user.id, {"solId": sol_id, "fields": sorted(k for k, v in data.items() if v is not None)})
        return sol

    @staticmethod
    async def delete_sol(db: AsyncSession, sol_id: int, user: User) -> Sol:
        """Cancel a sol that never received a payment."""
        sol = await SolService.get_sol_or_404(db, sol_id)
        SolService.ensure_can_manage(sol, user)

        payments_count = await db.scalar(
            select(func.count(Payment.id))
            .join(Participation, Participation.id == Payment.participation_id)
            .where(Participation.sol_id == sol_id)
        )
        if payments_count:
            raise ValidationError("Cannot delete a sol that already has payments")

        sol.statut = SolStatus.CANCELLED
        await db.flush()

        await AuditService.log(db, "sol_cancelled", user.id, {"solId": sol_id})
        logger.info(f"🗑️  Sol {sol_id} cancelled by user {user.id}")
        return sol

    # ============================================
    # Rotation order
    # ============================================

    @staticmethod
    async def _renumber(db: AsyncSession, ordered: Sequence[Participation]) -> None:
        """Rewrite ordre to 1..n following `ordered`."""
        for index, participation in enumerate(ordered):
            participation.ordre = -(index + 1)
        await db.flush()
        for index, participation in enumerate(ordered):
            participation.ordre = index + 1
        await db.flush()

    @staticmethod
    async def _ensure_order_editable(db: AsyncSession, sol: Sol) -> None:
        """
        The rotation can only be reshaped before it starts moving.

        Once tour_actuel left 1 (even through a forced advance) a change in
        the participant list would push it outside 1..n.
        """
        if (sol.tour_actuel or 1) > 1:
            raise ValidationError("Cannot change the order after a tour has been completed")

        completed = await db.scalar(
            select(func.count(Participation.id)).where(
                Participation.sol_id == sol.id,
                Participation.statut_tour == TourStatus.COMPLETE,
            )
        )
        if completed:
            raise ValidationError("Cannot change the order after a tour has been completed")

        payments = await db.scalar(
            select(func.count(Payment.id))
            .join(Participation, Participation.id == Payment.participation_id)
            .where(Participation.sol_id == sol.id)
        )
        if payments:
            raise ValidationError("Cannot change the order once payments have been made")

    @staticmethod
    async def update_participants_order(db: AsyncSession, sol_id: int, user: User, order: List[int]) -> List[dict]:
        """
        Apply a new rotation order.

        Args:
            order: participation ids (or user ids) from first to last

        Raises:
            ValidationError: not a permutation, or the rotation already started
        """
        sol = await SolService.get_sol_or_404(db, sol_id)
        SolService.ensure_can_manage(sol, user)
        await SolService._ensure_order_editable(db, sol)

        participations = await SolService.get_ordered_participations(db, sol_id)
        by_id = {p.id: p for p in participations}
        by_user = {p.user_id: p for p in participations}

        if sorted(order) == sorted(by_id):
            lookup = by_id
        elif sorted(order) == sorted(by_user):
            lookup = by_user
        else:
            raise ValidationError("Order must list every current participant exactly once")

        await SolService._renumber(db, [lookup[key] for key in order])
        await TransferService.sync_with_rotation(db, sol_id)

        await AuditService.log(db, "sol_order_updated", user.id, {"solId": sol_id, "order": list(order)})
        logger.info(f"🔀 Order updated for sol {sol_id}")
        return await SolService.get_participants(db, sol_id)

    @staticmethod
    async def randomize_order(db: AsyncSession, sol_id: int, user: User) -> List[dict]:
        sol = await SolService.get_sol_or_404(db, sol_id)
        SolService.ensure_can_manage(sol, user)
        await SolService._ensure_order_editable(db, sol)

        participations = await SolService.get_ordered_participations(db, sol_id)
        shuffled = list(participations)
        random.shuffle(shuffled)
        await SolService._renumber(db, shuffled)
        await TransferService.sync_with_rotation(db, sol_id)

        await AuditService.log(db, "sol_order_randomized", user.id, {"solId": sol_id})
        logger.info(f"🎲 Order randomized for sol {sol_id}")
        return await SolService.get_participants(db, sol_id)
