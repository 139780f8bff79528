"""
User Service - account management for members and admins.

Passwords are bcrypt-hashed (app.utils.password_hash) and bank accounts are
Fernet-encrypted (app.services.encryption_service). Emails are always stored
lower-cased; uniqueness is checked case-insensitively through that invariant.
"""
from typing import Optional, List
from datetime import datetime, timezone
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, func, or_, and_, case
import logging

from app.core.exceptions import ConflictError, NotFoundError, ValidationError
from app.db.models import (
    User, UserRole, Sol, SolStatus, Participation, Payment,
    Transfer, TransferStatus, COUNTED_PAYMENT_STATUSES, OPEN_PAYMENT_STATUSES,
)
from app.services.audit_service import AuditService
from app.services.encryption_service import encrypt_bank_account
from app.utils.password_hash import hash_password, verify_password, is_strong_password

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    # Naive UTC, matching DateTime columns without timezone
    return datetime.now(timezone.utc).replace(tzinfo=None)


class UserService:
    """Service for managing users and authentication"""

    @staticmethod
    async def create_user(
        db: AsyncSession,
        firstname: str,
        lastname: str,
        email: str,
        password: str,
        phone: Optional[str] = None,
        bank_account: Optional[str] = None,
        role: UserRole = UserRole.MEMBER,
    ) -> User:
        """
        Create a new user in the database.

        Args:
            db: Database session
            firstname, lastname: Display name parts
            email: Login email (lower-cased before storage)
            password: Plain text password (will be hashed)
            phone: Optional phone number
            bank_account: Optional account number (will be encrypted)
            role: member or admin

        Returns:
            User model

        Raises:
            ConflictError: If the email is already registered
        """
        email = email.strip().lower()
        existing_user = await UserService.get_user_by_email(db, email, include_inactive=True)
        if existing_user:
            raise ConflictError("Email already registered")

        user = User(
            firstname=firstname.strip(),
            lastname=lastname.strip(),
            email=email,
            password_hash=hash_password(password),
            phone=phone,
            bank_account_encrypted=encrypt_bank_account(bank_account) if bank_account else None,
            role=role,
            is_active=True,
        )
        db.add(user)
        await db.flush()

        logger.info(f"Created user: {user.id} (email: {email}, role: {UserRole(role).value})")
        return user

    @staticmethod
    async def get_user_by_email(
        db: AsyncSession,
        email: str,
        include_inactive: bool = False
    ) -> Optional[User]:
        query = select(User).where(User.email == email.strip().lower())
        if not include_inactive:
            query = query.where(User.is_active.is_(True))
        result = await db.execute(query)
        return result.scalar_one_or_none()

    @staticmethod
    async def get_active_user(db: AsyncSession, user_id: int) -> Optional[User]:
        result = await db.execute(
            select(User).where(User.id == user_id, User.is_active.is_(True))
        )
        return result.scalar_one_or_none()

    @staticmethod
    async def get_user(db: AsyncSession, user_id: int) -> User:
        """
        Get a user by id, active or not.

        Raises:
            NotFoundError: If no such user
        """
        user = await db.get(User, user_id)
        if not user:
            raise NotFoundError("User", user_id)
        return user

    @staticmethod
    async def validate_credentials(
        db: AsyncSession,
        email: str,
        password: str
    ) -> Optional[User]:
        """
        Validate email and password credentials.

        Returns:
            User object if credentials are valid and user is active, None otherwise
        """
        user = await UserService.get_user_by_email(db, email, include_inactive=True)

        if not user:
            logger.warning(f"Login attempt failed: {email.lower()} not found")
            return None

        if not user.is_active:
            logger.warning(f"Login attempt failed: user {user.id} is deactivated")
            return None

        if not verify_password(password, user.password_hash):
            logger.warning(f"Login attempt failed: invalid password for user {user.id}")
            return None

        logger.info(f"User authenticated successfully: {user.id}")
        return user

    @staticmethod
    async def update_profile(db: AsyncSession, user: User, data: dict) -> User:
        """
        Update profile fields.

        Accepted keys: firstname, lastname, phone, email, compte_bancaire.
        None values are ignored.

        Raises:
            ConflictError: If the new email belongs to another user
        """
        if data.get("email"):
            new_email = data["email"].strip().lower()
            if new_email != user.email:
                other = await UserService.get_user_by_email(db, new_email, include_inactive=True)
                if other and other.id != user.id:
                    raise ConflictError("Email already in use")
                user.email = new_email

        for field in ("firstname", "lastname", "phone"):
            if data.get(field) is not None:
                setattr(user, field, data[field].strip() if isinstance(data[field], str) else data[field])

        if data.get("compte_bancaire"):
            user.bank_account_encrypted = encrypt_bank_account(data["compte_bancaire"])

        if data.get("role") is not None:
            user.role = data["role"]

        user.updated_at = _utcnow()
        await db.flush()

        logger.info(f"Profile updated for user {user.id}")
        return user

    @staticmethod
    async def set_bank_account(db: AsyncSession, user: User, account_number: str) -> User:
        """Encrypt and store the account used for payouts."""
        cleaned = "".join(account_number.split())
        if not (10 <= len(cleaned) <= 34):
            raise ValidationError("Bank account must be between 10 and 34 characters")

        user.bank_account_encrypted = encrypt_bank_account(cleaned)
        user.updated_at = _utcnow()
        await db.flush()

        await AuditService.log(db, "bank_account_updated", user.id)
        return user

    @staticmethod
    async def change_password(
        db: AsyncSession,
        user: User,
        current_password: str,
        new_password: str
    ) -> None:
        """
        Change a user's password after checking the current one.

        Raises:
            ValidationError: wrong current password or weak new password
        """
        if not verify_password(current_password, user.password_hash):
            raise ValidationError("Current password is incorrect")

        if not is_strong_password(new_password):
            raise ValidationError(
                "Password must be 8-128 characters and contain upper-case, lower-case and a digit"
            )

        user.password_hash = hash_password(new_password)
        user.updated_at = _utcnow()
        await db.flush()

        await AuditService.log(db, "password_changed", user.id)
        logger.info(f"Password updated for user: {user.id}")

    @staticmethod
    async def update_password(db: AsyncSession, user_id: int, new_password: str) -> bool:
        """
        Reset a password without the current one (CLI only).

        Returns:
            True if updated successfully, False if user not found
        """
        user = await db.get(User, user_id)
        if not user:
            logger.warning(f"Password update failed: User {user_id} not found")
            return False

        user.password_hash = hash_password(new_password)
        user.updated_at = _utcnow()
        await db.flush()

        logger.info(f"Password updated for user: {user.id}")
        return True

    @staticmethod
    async def set_active(db: AsyncSession, user_id: int, is_active: bool) -> User:
        """Activate or deactivate a user."""
        user = await UserService.get_user(db, user_id)
        user.is_active = is_active
        user.updated_at = _utcnow()
        await db.flush()

        logger.info(f"{'Activated' if is_active else 'Deactivated'} user: {user.id}")
        return user

    @staticmethod
    async def delete_user(db: AsyncSession, user_id: int, acting_user_id: int) -> User:
        """
        Soft delete a user.

        Raises:
            ValidationError: deleting yourself, or the user is in an active sol
            NotFoundError: unknown user
        """
        if user_id == acting_user_id:
            raise ValidationError("You cannot delete your own account")

        user = await UserService.get_user(db, user_id)

        active_participations = await db.scalar(
            select(func.count(Participation.id))
            .join(Sol, Sol.id == Participation.sol_id)
            .where(Participation.user_id == user_id, Sol.statut == SolStatus.ACTIVE)
        )
        if active_participations:
            raise ValidationError(
                f"User participates in {active_participations} active sol(s) and cannot be deleted"
            )

        user.is_active = False
        user.updated_at = _utcnow()
        await db.flush()

        await AuditService.log(db, "user_deleted", acting_user_id, {"deletedUserId": user_id})
        return user

    @staticmethod
    async def list_users(
        db: AsyncSession,
        role: Optional[str] = None,
        search: Optional[str] = None,
        is_active: Optional[bool] = None,
        limit: int = 200
    ) -> List[dict]:
        """Users with their participation count, newest first."""
        participations_count = (
            select(func.count(Participation.id))
            .where(Participation.user_id == User.id)
            .correlate(User)
            .scalar_subquery()
        )
        query = select(User, participations_count.label("sols_count"))

        if role:
            query = query.where(User.role == role)
        if is_active is not None:
            query = query.where(User.is_active.is_(is_active))
        if search:
            term = f"%{search.lower()}%"
            query = query.where(or_(
                func.lower(User.firstname).like(term),
                func.lower(User.lastname).like(term),
                User.email.like(term),
            ))

        query = query.order_by(User.created_at.desc(), User.id.desc()).limit(limit)
        result = await db.execute(query)
        return [{"user": user, "sols_count": count or 0} for user, count in result.all()]

    @staticmethod
    async def get_user_detail(db: AsyncSession, user_id: int) -> dict:
        """Admin view: user + participations + last 20 payments."""
        user = await UserService.get_user(db, user_id)

        participations = await db.execute(
            select(Participation, Sol.nom, Sol.statut)
            .join(Sol, Sol.id == Participation.sol_id)
            .where(Participation.user_id == user_id)
            .order_by(Participation.created_at.desc())
        )
        payments = await db.execute(
            select(Payment)
            .where(Payment.user_id == user_id)
            .order_by(Payment.created_at.desc(), Payment.id.desc())
            .limit(20)
        )

        return {
            "user": user,
            "participations": [
                {
                    "participation_id": p.id,
                    "sol_id": p.sol_id,
                    "sol_nom": nom,
                    "sol_statut": statut,
                    "ordre": p.ordre,
                    "statut_tour": p.statut_tour,
                }
                for p, nom, statut in participations.all()
            ],
            "recent_payments": list(payments.scalars().all()),
        }

    @staticmethod
    async def get_user_stats(db: AsyncSession, user_id: int) -> dict:
        """Dashboard numbers for /users/me/stats."""
        total_sols = await db.scalar(
            select(func.count(Participation.id)).where(Participation.user_id == user_id)
        )
        active_sols = await db.scalar(
            select(func.count(Participation.id))
            .join(Sol, Sol.id == Participation.sol_id)
            .where(Participation.user_id == user_id, Sol.statut == SolStatus.ACTIVE)
        )
        total_paid = await db.scalar(
            select(func.coalesce(func.sum(Payment.amount), 0))
            .where(Payment.user_id == user_id, Payment.status.in_(COUNTED_PAYMENT_STATUSES))
        )
        total_received = await db.scalar(
            select(func.coalesce(func.sum(Transfer.amount), 0))
            .where(Transfer.receiver_id == user_id, Transfer.status == TransferStatus.COMPLETED)
        )
        pending_payments = await db.scalar(
            select(func.count(Payment.id))
            .where(Payment.user_id == user_id, Payment.status.in_(OPEN_PAYMENT_STATUSES))
        )

        return {
            "total_sols": total_sols or 0,
            "active_sols": active_sols or 0,
            "total_paid": float(total_paid or 0),
            "total_received": float(total_received or 0),
            "pending_payments": pending_payments or 0,
        }

    @staticmethod
    async def get_users_overview(db: AsyncSession) -> dict:
        """Aggregate counts for the admin users page."""
        today_start = _utcnow().replace(hour=0, minute=0, second=0, microsecond=0)
        row = (await db.execute(
            select(
                func.count(User.id),
                func.sum(case((User.role == UserRole.ADMIN, 1), else_=0)),
                func.sum(case((User.role == UserRole.MEMBER, 1), else_=0)),
                func.sum(case((User.is_active.is_(True), 1), else_=0)),
                func.sum(case((and_(User.last_login_at.isnot(None), User.last_login_at >= today_start), 1), else_=0)),
            )
        )).one()

        return {
            "total_users": row[0] or 0,
            "admins": row[1] or 0,
            "members": row[2] or 0,
            "active_users": row[3] or 0,
            "today_logins": row[4] or 0,
        }

    @staticmethod
    async def ensure_admin(db: AsyncSession, email: str, password: str) -> User:
        """
        Make sure an admin account exists for `email`.

        Creates it when missing; promotes and re-activates an existing account.
        The password of an existing account is left untouched.
        """
        user = await UserService.get_user_by_email(db, email, include_inactive=True)
        if user:
            if user.role != UserRole.ADMIN or not user.is_active:
                user.role = UserRole.ADMIN
                user.is_active = True
                await db.flush()
                logger.info(f"✅ Promoted existing user {user.id} to admin")
            return user

        user = await UserService.create_user(
            db,
            firstname="Admin",
            lastname="Sol Numérique",
            email=email,
            password=password,
            role=UserRole.ADMIN,
        )
        logger.info(f"✅ Bootstrap admin created: {user.email}")
        return user
