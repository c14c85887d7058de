"""Add affiliate attribution tables (merchants, clicks, commissions, ledger).

Revision ID: 20260101_000001
Revises:
Create Date: 2026-01-01 12:00:00.000000

WHAT:
    Creates the webhook attribution schema:
    - merchants: Store owners with their Salla/Zid store ids
    - click_trackings: Referral clicks plus conversion aggregates
    - commissions: One row per (merchant, order)
    - fraud_signals: Heuristic flags attached to commissions
    - webhook_events: Idempotency ledger for inbound deliveries
    - webhook_logs: Audit sink for processed order webhooks

WHY:
    Salla and Zid deliver webhooks at-least-once and out of order. The unique
    constraints here are what make attribution idempotent under retries and
    concurrent deliveries.

REFERENCES:
    - raff/models.py
    - raff/services/attribution/
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision = '20260101_000001'
down_revision = None
branch_labels = None
depends_on = None


PLATFORM_VALUES = ('salla', 'zid')
COMMISSION_STATUS_VALUES = ('PENDING', 'APPROVED', 'ON_HOLD', 'CANCELLED', 'PAID')
PROCESSING_STATUS_VALUES = ('RECEIVED', 'PROCESSED', 'FAILED')
FRAUD_SIGNAL_VALUES = (
    'SELF_PURCHASE_SUSPECTED',
    'HIGH_FREQUENCY_ORDERS',
    'MANY_ORDERS_SAME_IP',
    'MANY_ORDERS_SAME_USER_AGENT',
    'UNUSUAL_ORDER_VALUE',
    'REFERRER_REUSED_ACROSS_MERCHANTS',
)
FRAUD_SEVERITY_VALUES = ('LOW', 'MEDIUM', 'HIGH')


def upgrade() -> None:
    # =========================================================================
    # STEP 1: Enum types
    # =========================================================================
    platform_enum = postgresql.ENUM(*PLATFORM_VALUES, name='platformenum')
    commission_status_enum = postgresql.ENUM(*COMMISSION_STATUS_VALUES, name='commissionstatusenum')
    processing_status_enum = postgresql.ENUM(*PROCESSING_STATUS_VALUES, name='webhookprocessingstatusenum')
    fraud_signal_enum = postgresql.ENUM(*FRAUD_SIGNAL_VALUES, name='fraudsignaltypeenum')
    fraud_severity_enum = postgresql.ENUM(*FRAUD_SEVERITY_VALUES, name='fraudseverityenum')

    bind = op.get_bind()
    for enum_type in (
        platform_enum,
        commission_status_enum,
        processing_status_enum,
        fraud_signal_enum,
        fraud_severity_enum,
    ):
        enum_type.create(bind, checkfirst=True)

    # Reference the created types without re-creating them per column
    platform = postgresql.ENUM(*PLATFORM_VALUES, name='platformenum', create_type=False)
    commission_status = postgresql.ENUM(*COMMISSION_STATUS_VALUES, name='commissionstatusenum', create_type=False)
    processing_status = postgresql.ENUM(*PROCESSING_STATUS_VALUES, name='webhookprocessingstatusenum', create_type=False)
    fraud_signal = postgresql.ENUM(*FRAUD_SIGNAL_VALUES, name='fraudsignaltypeenum', create_type=False)
    fraud_severity = postgresql.ENUM(*FRAUD_SEVERITY_VALUES, name='fraudseverityenum', create_type=False)

    # =========================================================================
    # STEP 2: merchants
    # =========================================================================
    # WHAT: Local merchant per connected store
    # WHY: Webhooks only carry the platform store id
    op.create_table(
        'merchants',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True,
                  server_default=sa.text('gen_random_uuid()')),
        sa.Column('name', sa.String(), nullable=False),
        sa.Column('salla_store_id', sa.String(), nullable=True),
        sa.Column('zid_store_id', sa.String(), nullable=True),
        sa.Column('commission_rate', sa.Numeric(5, 2), nullable=False, server_default='5'),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.text('true')),
        sa.Column('last_synced_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), server_default=sa.text('NOW()')),
        sa.Column('updated_at', sa.DateTime(), server_default=sa.text('NOW()')),
    )
    op.create_index('ix_merchants_salla_store_id', 'merchants', ['salla_store_id'], unique=True)
    op.create_index('ix_merchants_zid_store_id', 'merchants', ['zid_store_id'], unique=True)

    # =========================================================================
    # STEP 3: click_trackings
    # =========================================================================
    op.create_table(
        'click_trackings',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True,
                  server_default=sa.text('gen_random_uuid()')),
        sa.Column('tracking_id', sa.String(), nullable=False),
        sa.Column('merchant_id', postgresql.UUID(as_uuid=True),
                  sa.ForeignKey('merchants.id'), nullable=False),
        sa.Column('platform', platform, nullable=True),
        sa.Column('product_id', sa.String(), nullable=True),
        # Rate snapshot at click time; NULL = merchant default
        sa.Column('commission_rate', sa.Numeric(5, 2), nullable=True),
        sa.Column('clicked_at', sa.DateTime(), server_default=sa.text('NOW()')),
        sa.Column('expires_at', sa.DateTime(), nullable=False),

        # Conversion aggregates
        sa.Column('converted', sa.Boolean(), nullable=False, server_default=sa.text('false')),
        sa.Column('converted_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('conversion_value', sa.Numeric(10, 2), nullable=False, server_default='0'),
        sa.Column('commission_value', sa.Numeric(10, 2), nullable=False, server_default='0'),
        sa.Column('converted_at', sa.DateTime(), nullable=True),
        sa.Column('last_converted_at', sa.DateTime(), nullable=True),
    )
    op.create_index('ix_click_trackings_tracking_id', 'click_trackings', ['tracking_id'], unique=True)
    op.create_index('ix_click_trackings_merchant_id', 'click_trackings', ['merchant_id'])

    # =========================================================================
    # STEP 4: commissions
    # =========================================================================
    # WHAT: One commission per (merchant, order)
    # WHY: The unique pair is what concurrent deliveries race on
    op.create_table(
        'commissions',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True,
                  server_default=sa.text('gen_random_uuid()')),
        sa.Column('click_tracking_id', postgresql.UUID(as_uuid=True),
                  sa.ForeignKey('click_trackings.id'), nullable=False),
        sa.Column('merchant_id', postgresql.UUID(as_uuid=True),
                  sa.ForeignKey('merchants.id'), nullable=False),
        sa.Column('platform', platform, nullable=False),
        sa.Column('order_id', sa.String(), nullable=False),
        sa.Column('order_total', sa.Numeric(10, 2), nullable=False, server_default='0'),
        sa.Column('order_currency', sa.String(), nullable=False, server_default='SAR'),
        sa.Column('commission_rate', sa.Numeric(5, 2), nullable=False),
        sa.Column('commission_amount', sa.Numeric(10, 2), nullable=False),
        sa.Column('status', commission_status, nullable=False, server_default='PENDING'),
        sa.Column('paid_at', sa.DateTime(), nullable=True),
        sa.Column('notes', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(), server_default=sa.text('NOW()')),
        sa.Column('updated_at', sa.DateTime(), server_default=sa.text('NOW()')),
        sa.UniqueConstraint('merchant_id', 'order_id', name='uq_commission_merchant_order'),
    )
    # Fraud heuristics count recent commissions per click
    op.create_index('ix_commissions_click_created', 'commissions', ['click_tracking_id', 'created_at'])

    # =========================================================================
    # STEP 5: fraud_signals
    # =========================================================================
    op.create_table(
        'fraud_signals',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True,
                  server_default=sa.text('gen_random_uuid()')),
        sa.Column('merchant_id', postgresql.UUID(as_uuid=True),
                  sa.ForeignKey('merchants.id'), nullable=False),
        sa.Column('platform', platform, nullable=False),
        sa.Column('store_id', sa.String(), nullable=True),
        sa.Column('click_tracking_id', postgresql.UUID(as_uuid=True),
                  sa.ForeignKey('click_trackings.id'), nullable=True),
        sa.Column('order_id', sa.String(), nullable=True),
        sa.Column('commission_id', postgresql.UUID(as_uuid=True),
                  sa.ForeignKey('commissions.id'), nullable=True),
        sa.Column('signal_type', fraud_signal, nullable=False),
        sa.Column('severity', fraud_severity, nullable=False),
        sa.Column('score', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('reason', sa.Text(), nullable=True),
        sa.Column('metadata', postgresql.JSONB(), nullable=True),
        sa.Column('created_at', sa.DateTime(), server_default=sa.text('NOW()')),
        sa.UniqueConstraint('commission_id', 'signal_type', name='uq_fraud_signal_commission_type'),
    )
    op.create_index('ix_fraud_signals_commission_id', 'fraud_signals', ['commission_id'])

    # =========================================================================
    # STEP 6: webhook_events (idempotency ledger)
    # =========================================================================
    # WHAT: One row per accepted delivery
    # WHY: Unique idempotency_key turns dedup into a single insert
    op.create_table(
        'webhook_events',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True,
                  server_default=sa.text('gen_random_uuid()')),
        sa.Column('platform', platform, nullable=False),
        sa.Column('store_id', sa.String(), nullable=True),
        sa.Column('event_type', sa.String(), nullable=False),
        sa.Column('idempotency_key', sa.String(), nullable=False),
        sa.Column('delivery_header_id', sa.String(), nullable=True),
        sa.Column('payload', postgresql.JSONB(), nullable=True),
        sa.Column('processing_status', processing_status, nullable=False, server_default='RECEIVED'),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('attempt_count', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('created_at', sa.DateTime(), server_default=sa.text('NOW()')),
        sa.Column('received_at', sa.DateTime(), nullable=False, server_default=sa.text('NOW()')),
        sa.Column('processed_at', sa.DateTime(), nullable=True),
        sa.UniqueConstraint('idempotency_key', name='uq_webhook_events_idempotency_key'),
    )
    op.create_index(
        'ix_webhook_events_platform_delivery',
        'webhook_events',
        ['platform', 'delivery_header_id'],
        postgresql_where=sa.text('delivery_header_id IS NOT NULL')
    )

    # =========================================================================
    # STEP 7: webhook_logs (audit)
    # =========================================================================
    op.create_table(
        'webhook_logs',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True,
                  server_default=sa.text('gen_random_uuid()')),
        sa.Column('idempotency_key', sa.String(), nullable=False),
        sa.Column('event', sa.String(), nullable=False),
        sa.Column('order_id', sa.String(), nullable=True),
        sa.Column('order_key', sa.String(), nullable=True),
        sa.Column('platform', platform, nullable=False),
        sa.Column('store_id', sa.String(), nullable=True),
        sa.Column('merchant_id', postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column('processed', sa.Boolean(), nullable=False, server_default=sa.text('false')),
        sa.Column('error', sa.Text(), nullable=True),
        sa.Column('payload', postgresql.JSONB(), nullable=True),
        sa.Column('processed_at', sa.DateTime(), server_default=sa.text('NOW()')),
        sa.UniqueConstraint('idempotency_key', name='uq_webhook_logs_idempotency_key'),
    )
    op.create_index('ix_webhook_logs_order_key', 'webhook_logs', ['order_key'])


def downgrade() -> None:
    # Drop tables in reverse order (respect foreign keys)
    op.drop_table('webhook_logs')
    op.drop_table('webhook_events')
    op.drop_table('fraud_signals')
    op.drop_table('commissions')
    op.drop_table('click_trackings')
    op.drop_table('merchants')

    bind = op.get_bind()
    for name in (
        'fraudseverityenum',
        'fraudsignaltypeenum',
        'webhookprocessingstatusenum',
        'commissionstatusenum',
        'platformenum',
    ):
        postgresql.ENUM(name=name).drop(bind, checkfirst=True)
