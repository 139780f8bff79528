"""create sol numerique schema

Revision ID: 5c1e2a7b9d40
Revises:
Create Date: 2026-10-19 09:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '5c1e2a7b9d40'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _timestamps():
    return [
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
    ]


def _create_missing_indexes(inspector, table: str, indexes: list) -> None:
    existing = [idx['name'] for idx in inspector.get_indexes(table)]
    for name, columns in indexes:
        if name not in existing:
            op.create_index(name, table, columns, unique=False)


def upgrade() -> None:
    # Idempotent - tables may already exist when the app created them at startup
    from sqlalchemy import inspect

    bind = op.get_bind()
    inspector = inspect(bind)
    tables = inspector.get_table_names()

    if 'users' not in tables:
        op.create_table('users',
            sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
            sa.Column('firstname', sa.String(length=100), nullable=False),
            sa.Column('lastname', sa.String(length=100), nullable=False),
            sa.Column('email', sa.String(length=255), nullable=False),
            sa.Column('password_hash', sa.String(length=255), nullable=False),
            sa.Column('phone', sa.String(length=30), nullable=True),
            sa.Column('bank_account_encrypted', sa.Text(), nullable=True),
            sa.Column('role', sa.String(length=20), nullable=False, server_default='member'),
            sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
            sa.Column('is_verified', sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column('last_login_at', sa.DateTime(), nullable=True),
            *_timestamps(),
            sa.PrimaryKeyConstraint('id'),
            sa.UniqueConstraint('email')
        )

    if 'sols' not in tables:
        op.create_table('sols',
            sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
            sa.Column('nom', sa.String(length=200), nullable=False),
            sa.Column('description', sa.Text(), nullable=True),
            sa.Column('montant_par_periode', sa.Numeric(12, 2), nullable=False),
            sa.Column('frequence', sa.String(length=20), nullable=False),
            sa.Column('max_participants', sa.Integer(), nullable=False, server_default='12'),
            sa.Column('tour_actuel', sa.Integer(), nullable=False, server_default='1'),
            sa.Column('statut', sa.String(length=20), nullable=False, server_default='active'),
            sa.Column('date_debut', sa.DateTime(), nullable=True),
            sa.Column('created_by', sa.Integer(), nullable=False),
            *_timestamps(),
            sa.ForeignKeyConstraint(['created_by'], ['users.id']),
            sa.PrimaryKeyConstraint('id')
        )

    if 'participations' not in tables:
        op.create_table('participations',
            sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
            sa.Column('sol_id', sa.Integer(), nullable=False),
            sa.Column('user_id', sa.Integer(), nullable=False),
            sa.Column('ordre', sa.Integer(), nullable=False),
            sa.Column('statut_tour', sa.String(length=20), nullable=False, server_default='en_attente'),
            *_timestamps(),
            sa.ForeignKeyConstraint(['sol_id'], ['sols.id'], ondelete='CASCADE'),
            sa.ForeignKeyConstraint(['user_id'], ['users.id']),
            sa.PrimaryKeyConstraint('id'),
            sa.UniqueConstraint('sol_id', 'user_id', name='uq_participation_sol_user'),
            sa.UniqueConstraint('sol_id', 'ordre', name='uq_participation_sol_ordre')
        )

    if 'payments' not in tables:
        op.create_table('payments',
            sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
            sa.Column('participation_id', sa.Integer(), nullable=False),
            sa.Column('user_id', sa.Integer(), nullable=False),
            sa.Column('amount', sa.Numeric(12, 2), nullable=False),
            sa.Column('method', sa.String(length=20), nullable=False),
            sa.Column('status', sa.String(length=20), nullable=False, server_default='pending'),
            sa.Column('tour_number', sa.Integer(), nullable=False, server_default='1'),
            sa.Column('receipt_path', sa.String(length=255), nullable=True),
            sa.Column('stripe_session_id', sa.String(length=255), nullable=True),
            sa.Column('stripe_payment_intent_id', sa.String(length=255), nullable=True),
            sa.Column('stripe_charge_id', sa.String(length=255), nullable=True),
            sa.Column('notes', sa.Text(), nullable=True),
            sa.Column('validated_by', sa.Integer(), nullable=True),
            sa.Column('validated_at', sa.DateTime(), nullable=True),
            sa.Column('receipt_sent', sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column('receipt_sent_at', sa.DateTime(), nullable=True),
            *_timestamps(),
            sa.ForeignKeyConstraint(['participation_id'], ['participations.id']),
            sa.ForeignKeyConstraint(['user_id'], ['users.id']),
            sa.ForeignKeyConstraint(['validated_by'], ['users.id']),
            sa.PrimaryKeyConstraint('id')
        )

    if 'transfers' not in tables:
        op.create_table('transfers',
            sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
            sa.Column('sol_id', sa.Integer(), nullable=False),
            sa.Column('tour_number', sa.Integer(), nullable=False),
            sa.Column('receiver_id', sa.Integer(), nullable=False),
            sa.Column('amount', sa.Numeric(12, 2), nullable=False),
            sa.Column('status', sa.String(length=20), nullable=False, server_default='pending'),
            sa.Column('marked_by', sa.Integer(), nullable=True),
            sa.Column('marked_at', sa.DateTime(), nullable=True),
            sa.Column('confirmed_by', sa.Integer(), nullable=True),
            sa.Column('confirmed_at', sa.DateTime(), nullable=True),
            sa.Column('notes', sa.Text(), nullable=True),
            *_timestamps(),
            sa.ForeignKeyConstraint(['sol_id'], ['sols.id'], ondelete='CASCADE'),
            sa.ForeignKeyConstraint(['receiver_id'], ['users.id']),
            sa.ForeignKeyConstraint(['marked_by'], ['users.id']),
            sa.ForeignKeyConstraint(['confirmed_by'], ['users.id']),
            sa.PrimaryKeyConstraint('id'),
            sa.UniqueConstraint('sol_id', 'tour_number', name='uq_transfer_sol_tour')
        )

    if 'audit_logs' not in tables:
        op.create_table('audit_logs',
            sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
            sa.Column('action', sa.String(length=100), nullable=False),
            sa.Column('user_id', sa.Integer(), nullable=True),
            sa.Column('details', sa.JSON(), nullable=True),
            sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
            sa.ForeignKeyConstraint(['user_id'], ['users.id'], ondelete='SET NULL'),
            sa.PrimaryKeyConstraint('id')
        )

    # Refresh inspector after potential table creation
    inspector = inspect(bind)
    _create_missing_indexes(inspector, 'users', [
        ('idx_users_role', ['role']),
        ('idx_users_is_active', ['is_active']),
    ])
    _create_missing_indexes(inspector, 'sols', [
        ('idx_sols_statut', ['statut']),
        ('idx_sols_created_by', ['created_by']),
    ])
    _create_missing_indexes(inspector, 'participations', [
        ('idx_participations_user', ['user_id']),
    ])
    _create_missing_indexes(inspector, 'payments', [
        ('idx_payments_participation_tour', ['participation_id', 'tour_number']),
        ('idx_payments_user', ['user_id']),
        ('idx_payments_status', ['status']),
        ('idx_payments_stripe_session', ['stripe_session_id']),
    ])
    _create_missing_indexes(inspector, 'transfers', [
        ('idx_transfers_receiver', ['receiver_id']),
        ('idx_transfers_status', ['status']),
    ])
    _create_missing_indexes(inspector, 'audit_logs', [
        ('idx_audit_logs_action', ['action']),
        ('idx_audit_logs_created_at', ['created_at']),
    ])


def downgrade() -> None:
    op.drop_table('audit_logs')
    op.drop_table('transfers')
    op.drop_table('payments')
    op.drop_table('participations')
    op.drop_table('sols')
    op.drop_table('users')
