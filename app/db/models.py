"""
SQLAlchemy ORM models for database tables.

Tables: users, sols, participations, payments, transfers, audit_logs.

Status columns are stored as their string values (VARCHAR) so that raw SQL,
CSV exports and migrations all see 'active', 'validated', ... rather than
enum member names.

Every mapper uses eager_defaults: func.now() timestamps are read back during
the flush, so they never need a lazy load from async code.
"""
from sqlalchemy import (
    Column, String, Text, DateTime, Index, ForeignKey, Boolean, Integer,
    Numeric, JSON, UniqueConstraint, Enum,
)
from sqlalchemy.orm import declarative_base
from sqlalchemy.sql import func
import enum

Base = declarative_base()


# ============================================
# Enums
# ============================================

class UserRole(str, enum.Enum):
    """User roles"""
    MEMBER = "member"
    ADMIN = "admin"


class SolStatus(str, enum.Enum):
    """Lifecycle of a sol"""
    ACTIVE = "active"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class SolFrequency(str, enum.Enum):
    """Contribution period"""
    HEBDOMADAIRE = "hebdomadaire"
    MENSUEL = "mensuel"
    TRIMESTRIEL = "trimestriel"
    ANNUEL = "annuel"


class TourStatus(str, enum.Enum):
    """Per-participation status for the rotation"""
    EN_ATTENTE = "en_attente"
    PAYE = "paye"  # paid online, awaiting nothing else
    VALIDE = "valide"  # offline receipt validated by an admin
    COMPLETE = "complete"  # this participant's tour is done


class PaymentMethod(str, enum.Enum):
    """How a contribution was paid"""
    STRIPE = "stripe"
    OFFLINE = "offline"


class PaymentStatus(str, enum.Enum):
    """Payment lifecycle"""
    PENDING = "pending"
    UPLOADED = "uploaded"
    VALIDATED = "validated"
    REJECTED = "rejected"
    COMPLETED = "completed"
    TRANSFERRED = "transferred"
    FAILED = "failed"
    REFUNDED = "refunded"


class TransferStatus(str, enum.Enum):
    """Payout lifecycle"""
    PENDING = "pending"
    READY = "ready"
    TRANSFERRING = "transferring"
    COMPLETED = "completed"
    DISPUTED = "disputed"


# Payments that count toward a completed tour
COUNTED_PAYMENT_STATUSES = (
    PaymentStatus.VALIDATED,
    PaymentStatus.COMPLETED,
    PaymentStatus.TRANSFERRED,
)

# Payments still waiting on the member or an admin
OPEN_PAYMENT_STATUSES = (
    PaymentStatus.PENDING,
    PaymentStatus.UPLOADED,
)


def _str_enum(enum_cls):
    """Store enum values (not names) in a VARCHAR column."""
    return Enum(
        enum_cls,
        values_callable=lambda members: [m.value for m in members],
        native_enum=False,
        length=20,
    )


class User(Base):
    """
    Members and admins.

    Bank account numbers are stored Fernet-encrypted (see EncryptionService).
    Deleting a user only flips is_active.
    """
    __tablename__ = "users"
    __mapper_args__ = {"eager_defaults": True}

    id = Column(Integer, primary_key=True, autoincrement=True)
    firstname = Column(String(100), nullable=False)
    lastname = Column(String(100), nullable=False)
    email = Column(String(255), unique=True, nullable=False)  # always lower-cased
    password_hash = Column(String(255), nullable=False)  # bcrypt hash
    phone = Column(String(30), nullable=True)
    bank_account_encrypted = Column(Text, nullable=True)
    role = Column(_str_enum(UserRole), nullable=False, default=UserRole.MEMBER)
    is_active = Column(Boolean, nullable=False, default=True)
    is_verified = Column(Boolean, nullable=False, default=False)
    last_login_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, nullable=False, default=func.now())
    updated_at = Column(DateTime, nullable=False, default=func.now(), onupdate=func.now())

    __table_args__ = (
        Index('idx_users_role', 'role'),
        Index('idx_users_is_active', 'is_active'),
    )

    @property
    def full_name(self) -> str:
        return f"{self.firstname} {self.lastname}"

    @property
    def is_admin(self) -> bool:
        return self.role == UserRole.ADMIN


class Sol(Base):
    """
    A rotating savings group.

    tour_actuel is the 1-based index of the current round; the beneficiary
    of a round is the participation whose ordre equals tour_actuel.
    """
    __tablename__ = "sols"
    __mapper_args__ = {"eager_defaults": True}

    id = Column(Integer, primary_key=True, autoincrement=True)
    nom = Column(String(200), nullable=False)
    description = Column(Text, nullable=True)
    montant_par_periode = Column(Numeric(12, 2, asdecimal=False), nullable=False)
    frequence = Column(_str_enum(SolFrequency), nullable=False)
    max_participants = Column(Integer, nullable=False, default=12)
    tour_actuel = Column(Integer, nullable=False, default=1)
    statut = Column(_str_enum(SolStatus), nullable=False, default=SolStatus.ACTIVE)
    date_debut = Column(DateTime, nullable=True)
    created_by = Column(Integer, ForeignKey('users.id'), nullable=False)
    created_at = Column(DateTime, nullable=False, default=func.now())
    updated_at = Column(DateTime, nullable=False, default=func.now(), onupdate=func.now())

    __table_args__ = (
        Index('idx_sols_statut', 'statut'),
        Index('idx_sols_created_by', 'created_by'),
    )


class Participation(Base):
    """Membership of a user in a sol, with rotation order"""
    __tablename__ = "participations"
    __mapper_args__ = {"eager_defaults": True}

    id = Column(Integer, primary_key=True, autoincrement=True)
    sol_id = Column(Integer, ForeignKey('sols.id', ondelete='CASCADE'), nullable=False)
    user_id = Column(Integer, ForeignKey('users.id'), nullable=False)
    ordre = Column(Integer, nullable=False)
    statut_tour = Column(_str_enum(TourStatus), nullable=False, default=TourStatus.EN_ATTENTE)
    created_at = Column(DateTime, nullable=False, default=func.now())
    updated_at = Column(DateTime, nullable=False, default=func.now(), onupdate=func.now())

    __table_args__ = (
        UniqueConstraint('sol_id', 'user_id', name='uq_participation_sol_user'),
        UniqueConstraint('sol_id', 'ordre', name='uq_participation_sol_ordre'),
        Index('idx_participations_user', 'user_id'),
    )


class Payment(Base):
    """
    A contribution for one tour.

    tour_number is copied from sols.tour_actuel when the payment is created
    and never changes afterwards.
    """
    __tablename__ = "payments"
    __mapper_args__ = {"eager_defaults": True}

    id = Column(Integer, primary_key=True, autoincrement=True)
    participation_id = Column(Integer, ForeignKey('participations.id'), nullable=False)
    user_id = Column(Integer, ForeignKey('users.id'), nullable=False)
    amount = Column(Numeric(12, 2, asdecimal=False), nullable=False)
    method = Column(_str_enum(PaymentMethod), nullable=False)
    status = Column(_str_enum(PaymentStatus), nullable=False, default=PaymentStatus.PENDING)
    tour_number = Column(Integer, nullable=False, default=1)
    receipt_path = Column(String(255), nullable=True)  # filename inside UPLOAD_DIR
    stripe_session_id = Column(String(255), nullable=True)
    stripe_payment_intent_id = Column(String(255), nullable=True)
    stripe_charge_id = Column(String(255), nullable=True)
    notes = Column(Text, nullable=True)
    validated_by = Column(Integer, ForeignKey('users.id'), nullable=True)
    validated_at = Column(DateTime, nullable=True)
    receipt_sent = Column(Boolean, nullable=False, default=False)
    receipt_sent_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, nullable=False, default=func.now())
    updated_at = Column(DateTime, nullable=False, default=func.now(), onupdate=func.now())

    __table_args__ = (
        Index('idx_payments_participation_tour', 'participation_id', 'tour_number'),
        Index('idx_payments_user', 'user_id'),
        Index('idx_payments_status', 'status'),
        Index('idx_payments_stripe_session', 'stripe_session_id'),
    )


class Transfer(Base):
    """Payout of one tour's pooled contributions to its beneficiary"""
    __tablename__ = "transfers"
    __mapper_args__ = {"eager_defaults": True}

    id = Column(Integer, primary_key=True, autoincrement=True)
    sol_id = Column(Integer, ForeignKey('sols.id', ondelete='CASCADE'), nullable=False)
    tour_number = Column(Integer, nullable=False)
    receiver_id = Column(Integer, ForeignKey('users.id'), nullable=False)
    amount = Column(Numeric(12, 2, asdecimal=False), nullable=False)
    status = Column(_str_enum(TransferStatus), nullable=False, default=TransferStatus.PENDING)
    marked_by = Column(Integer, ForeignKey('users.id'), nullable=True)
    marked_at = Column(DateTime, nullable=True)
    confirmed_by = Column(Integer, ForeignKey('users.id'), nullable=True)
    confirmed_at = Column(DateTime, nullable=True)
    notes = Column(Text, nullable=True)
    created_at = Column(DateTime, nullable=False, default=func.now())
    updated_at = Column(DateTime, nullable=False, default=func.now(), onupdate=func.now())

    __table_args__ = (
        UniqueConstraint('sol_id', 'tour_number', name='uq_transfer_sol_tour'),
        Index('idx_transfers_receiver', 'receiver_id'),
        Index('idx_transfers_status', 'status'),
    )


class AuditLog(Base):
    """Append-only trail of sensitive actions"""
    __tablename__ = "audit_logs"
    __mapper_args__ = {"eager_defaults": True}

    id = Column(Integer, primary_key=True, autoincrement=True)
    action = Column(String(100), nullable=False)
    user_id = Column(Integer, ForeignKey('users.id', ondelete='SET NULL'), nullable=True)
    details = Column(JSON, nullable=True)
    created_at = Column(DateTime, nullable=False, default=func.now())

    __table_args__ = (
        Index('idx_audit_logs_action', 'action'),
        Index('idx_audit_logs_created_at', 'created_at'),
    )
