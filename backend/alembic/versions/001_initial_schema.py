"""Initial rental payments schema

Revision ID: 001_initial
Revises:
Create Date: 2026-10-18

Rentals, payment ledger, idempotency keys, booking history, blocked dates,
deposit payouts and the jobs outbox. Money as NUMERIC(10, 2) pesos.
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = '001_initial'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

# Enum labels are the Python member names (SQLAlchemy's default)
PAYMENT_PROVIDER = ('PAYMONGO', 'PAYMONGO_SOURCE', 'PAYPAL')
PAYMENT_OUTCOME = ('PENDING', 'CHARGEABLE', 'SUCCEEDED', 'FAILED', 'SUPERSEDED')


def upgrade() -> None:
    # === USERS ===
    op.create_table(
        'users',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('firebase_uid', sa.String(128), unique=True, nullable=False, index=True),
        sa.Column('email', sa.String(255), unique=True, nullable=False),
        sa.Column('first_name', sa.String(100), nullable=True),
        sa.Column('last_name', sa.String(100), nullable=True),
        sa.Column('role', sa.Enum('USER', 'SHOP_OWNER', 'ADMIN', name='userrole'), nullable=False),
        sa.Column('payment_details', postgresql.JSONB(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
    )

    # === RENTAL SHOPS ===
    op.create_table(
        'rental_shops',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('owner_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('users.id', ondelete='SET NULL'), nullable=True, index=True),
        sa.Column('name', sa.String(255), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
    )

    # === RENTALS ===
    op.create_table(
        'rentals',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('vehicle_id', postgresql.UUID(as_uuid=True), nullable=False, index=True),
        sa.Column('shop_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('rental_shops.id', ondelete='RESTRICT'), nullable=False, index=True),
        sa.Column('user_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('users.id', ondelete='SET NULL'), nullable=True, index=True),
        sa.Column('customer_name', sa.String(255), nullable=True),
        sa.Column('start_date', sa.Date(), nullable=False),
        sa.Column('end_date', sa.Date(), nullable=False),
        sa.Column('total_price', sa.Numeric(10, 2), nullable=False),
        sa.Column('deposit_required', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('deposit_amount', sa.Numeric(10, 2), nullable=False, server_default='0'),
        sa.Column('deposit_paid', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('deposit_processed', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('deposit_payment_id', postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column('payment_status', sa.Enum('PENDING', 'PAID', 'FAILED', 'CANCELLED', name='paymentstatus'), nullable=False, index=True),
        sa.Column('payment_date', sa.DateTime(), nullable=True),
        sa.Column('status', sa.Enum('PENDING', 'CONFIRMED', 'CANCELLED', 'COMPLETED', 'REJECTED', 'AUTO_CANCELLED', 'NO_SHOW', name='rentalstatus'), nullable=False, index=True),
        sa.Column('cancellation_reason', sa.String(500), nullable=True),
        sa.Column('pickup_time', sa.DateTime(), nullable=True),
        sa.Column('grace_period_minutes', sa.Integer(), nullable=False, server_default='30'),
        sa.Column('auto_cancel_enabled', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('auto_cancel_override', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.CheckConstraint('start_date <= end_date', name='ck_rentals_date_range'),
        sa.CheckConstraint('NOT deposit_paid OR deposit_required', name='ck_rentals_deposit_paid_requires_deposit'),
    )

    # === PAYMENT LEDGER ===
    op.create_table(
        'payment_records',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('rental_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('rentals.id', ondelete='RESTRICT'), nullable=False, index=True),
        sa.Column('provider', sa.Enum(*PAYMENT_PROVIDER, name='paymentprovider'), nullable=False),
        sa.Column('external_id', sa.String(255), nullable=False),
        sa.Column('amount', sa.Numeric(10, 2), nullable=False),
        sa.Column('currency', sa.String(3), nullable=False, server_default='PHP'),
        sa.Column('is_deposit', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('provider_status', sa.String(50), nullable=False),
        sa.Column('outcome', sa.Enum(*PAYMENT_OUTCOME, name='paymentoutcome'), nullable=False, index=True),
        sa.Column('metadata', postgresql.JSONB(), nullable=False, server_default='{}'),
        sa.Column('event_log', postgresql.JSONB(), nullable=False, server_default='[]'),
        sa.Column('client_key', sa.String(255), nullable=True),
        sa.Column('checkout_url', sa.Text(), nullable=True),
        sa.Column('payment_method_id', sa.String(255), nullable=True),
        sa.Column('payment_id', sa.String(255), nullable=True),
        sa.Column('capture_id', sa.String(255), nullable=True, unique=True),
        sa.Column('last_event_at', sa.DateTime(), nullable=True),
        sa.Column('last_error', sa.Text(), nullable=True),
        sa.Column('active_key', sa.String(100), nullable=True, unique=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.UniqueConstraint('provider', 'external_id', name='uq_payment_records_provider_external_id'),
    )

    # === IDEMPOTENCY KEYS ===
    op.create_table(
        'processed_webhook_events',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('event_key', sa.String(500), nullable=False, unique=True),
        sa.Column('provider', postgresql.ENUM(*PAYMENT_PROVIDER, name='paymentprovider', create_type=False), nullable=False),
        sa.Column('external_id', sa.String(255), nullable=False, index=True),
        sa.Column('outcome', postgresql.ENUM(*PAYMENT_OUTCOME, name='paymentoutcome', create_type=False), nullable=False),
        sa.Column('response', postgresql.JSONB(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
    )

    # === BOOKING HISTORY (append-only) ===
    op.create_table(
        'booking_history',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('rental_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('rentals.id', ondelete='RESTRICT'), nullable=False, index=True),
        sa.Column('event_type', sa.Enum(
            'PAYMENT_SUCCEEDED', 'PAYMENT_FAILED', 'DEPOSIT_PAID', 'DEPOSIT_FAILED',
            'LATE_PAYMENT', 'DATES_BLOCKED', 'DEPOSIT_PAYOUT',
            'STATUS_CHANGED', 'AUTO_CANCEL_OVERRIDE',
            name='historyeventtype',
        ), nullable=False, index=True),
        sa.Column('status', sa.String(50), nullable=False),
        sa.Column('notes', sa.Text(), nullable=True),
        sa.Column('created_by', postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
    )

    # === BLOCKED DATES ===
    op.create_table(
        'vehicle_blocked_dates',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('vehicle_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('date', sa.Date(), nullable=False),
        sa.Column('reason', sa.String(255), nullable=True),
        sa.Column('rental_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('rentals.id', ondelete='SET NULL'), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.UniqueConstraint('vehicle_id', 'date', name='uq_vehicle_blocked_dates_vehicle_date'),
    )

    # === DEPOSIT PAYOUTS ===
    op.create_table(
        'deposit_payouts',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('rental_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('rentals.id', ondelete='RESTRICT'), nullable=False, unique=True),
        sa.Column('shop_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('rental_shops.id', ondelete='RESTRICT'), nullable=False, index=True),
        sa.Column('amount', sa.Numeric(10, 2), nullable=False),
        sa.Column('status', sa.Enum('PENDING', 'PROCESSING', 'COMPLETED', 'FAILED', name='payoutstatus'), nullable=False, index=True),
        sa.Column('reason', sa.String(500), nullable=False),
        sa.Column('processed_by', postgresql.UUID(as_uuid=True), sa.ForeignKey('users.id', ondelete='SET NULL'), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
    )

    # === JOBS OUTBOX ===
    op.create_table(
        'jobs_outbox',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('type', sa.String(100), nullable=False, index=True),
        sa.Column('payload', postgresql.JSONB(), nullable=False),
        sa.Column('status', sa.Enum('PENDING', 'PROCESSING', 'COMPLETED', 'FAILED', 'DEAD_LETTER', name='jobstatus'), nullable=False, index=True),
        sa.Column('unique_scope', sa.String(500), nullable=False, unique=True),
        sa.Column('attempts', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('max_attempts', sa.Integer(), nullable=False, server_default='5'),
        sa.Column('last_error', sa.Text(), nullable=True),
        sa.Column('run_after', sa.DateTime(), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('started_at', sa.DateTime(), nullable=True),
        sa.Column('completed_at', sa.DateTime(), nullable=True),
    )
    op.create_index(
        'ix_jobs_outbox_pending',
        'jobs_outbox',
        ['status', 'run_after'],
        postgresql_where=sa.text("status = 'PENDING'"),
    )


def downgrade() -> None:
    op.drop_index('ix_jobs_outbox_pending', table_name='jobs_outbox')
    op.drop_table('jobs_outbox')
    op.drop_table('deposit_payouts')
    op.drop_table('vehicle_blocked_dates')
    op.drop_table('booking_history')
    op.drop_table('processed_webhook_events')
    op.drop_table('payment_records')
    op.drop_table('rentals')
    op.drop_table('rental_shops')
    op.drop_table('users')

    for enum_name in (
        'jobstatus', 'payoutstatus', 'historyeventtype', 'paymentoutcome',
        'paymentprovider', 'rentalstatus', 'paymentstatus', 'userrole',
    ):
        sa.Enum(name=enum_name).drop(op.get_bind(), checkfirst=True)
