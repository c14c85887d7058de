"""SQLAlchemy ORM models and enums.

This module defines the affiliate attribution schema using UUID primary keys
and explicit relationships. Merchants and clicks are written by other parts of
the storefront; the webhook engine reads them and owns commissions, fraud
signals, and the webhook ledger.
"""

import uuid
from datetime import datetime
import enum

from sqlalchemy import (
    Column, String, DateTime, Enum, Integer, ForeignKey, Numeric, JSON, Text, Boolean,
    UniqueConstraint, Index,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship, declarative_base


# Single Base used by the entire application
Base = declarative_base()


def _enum_values(obj):
    return [e.value for e in obj]


# Enums ---------------------------------------------------------

class PlatformEnum(str, enum.Enum):
    salla = "salla"
    zid = "zid"


class CommissionStatusEnum(str, enum.Enum):
    """Commission lifecycle.

    PENDING -> APPROVED -> PAID is the happy path. CANCELLED is reachable from
    any non-paid state, ON_HOLD when fraud scoring flags the order.
    """
    pending = "PENDING"
    approved = "APPROVED"
    on_hold = "ON_HOLD"
    cancelled = "CANCELLED"
    paid = "PAID"


class WebhookProcessingStatusEnum(str, enum.Enum):
    received = "RECEIVED"
    processed = "PROCESSED"
    failed = "FAILED"


class FraudSignalTypeEnum(str, enum.Enum):
    self_purchase_suspected = "SELF_PURCHASE_SUSPECTED"
    high_frequency_orders = "HIGH_FREQUENCY_ORDERS"
    many_orders_same_ip = "MANY_ORDERS_SAME_IP"
    many_orders_same_user_agent = "MANY_ORDERS_SAME_USER_AGENT"
    unusual_order_value = "UNUSUAL_ORDER_VALUE"
    referrer_reused_across_merchants = "REFERRER_REUSED_ACROSS_MERCHANTS"


class FraudSeverityEnum(str, enum.Enum):
    low = "LOW"
    medium = "MEDIUM"
    high = "HIGH"


# Merchants & clicks ---------------------------------------------

class Merchant(Base):
    """A store owner connected through Salla or Zid.

    WHAT: Maps external store ids to a local merchant and its default rate
    WHY: Webhooks only carry the platform store id; commissions need the merchant
    """
    __tablename__ = "merchants"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    name = Column(String, nullable=False)

    # External store identifiers (one per connected platform)
    salla_store_id = Column(String, nullable=True, unique=True, index=True)
    zid_store_id = Column(String, nullable=True, unique=True, index=True)

    # Default commission rate in percent, used when the click has no snapshot
    commission_rate = Column(Numeric(5, 2), nullable=False, default=5)
    is_active = Column(Boolean, nullable=False, default=True)

    # Stamped by the store-info sync trigger (app.installed cooldown)
    last_synced_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    clicks = relationship("ClickTracking", back_populates="merchant")

    def __str__(self):
        return f"{self.name}"


class ClickTracking(Base):
    """One referral click.

    WHAT: Stores the tracking id embedded in an outbound affiliate link plus
          running conversion aggregates
    WHY: Orders carry the tracking id back as a referrer code; the aggregates
         power merchant dashboards without re-summing commissions
    """
    __tablename__ = "click_trackings"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    tracking_id = Column(String, nullable=False, unique=True, index=True)
    merchant_id = Column(UUID(as_uuid=True), ForeignKey("merchants.id"), nullable=False, index=True)
    platform = Column(
        Enum(PlatformEnum, name="platformenum", values_callable=_enum_values),
        nullable=True,
    )
    product_id = Column(String, nullable=True)

    # Rate snapshot at click time (percent); falls back to merchant default
    commission_rate = Column(Numeric(5, 2), nullable=True)

    clicked_at = Column(DateTime, default=datetime.utcnow)
    expires_at = Column(DateTime, nullable=False)

    # Conversion aggregates (mutated only by the conversion aggregator)
    converted = Column(Boolean, nullable=False, default=False)
    converted_count = Column(Integer, nullable=False, default=0)
    conversion_value = Column(Numeric(10, 2), nullable=False, default=0)
    commission_value = Column(Numeric(10, 2), nullable=False, default=0)
    converted_at = Column(DateTime, nullable=True)
    last_converted_at = Column(DateTime, nullable=True)

    merchant = relationship("Merchant", back_populates="clicks")
    commissions = relationship("Commission", back_populates="click_tracking")

    def __str__(self):
        return f"Click {self.tracking_id}"


# Commissions ----------------------------------------------------

class Commission(Base):
    """Commission owed for one attributed order.

    WHAT: One row per (merchant, order), updated in place by every webhook
    WHY: The unique pair is the idempotency key for financial attribution and
         the anchor that concurrent deliveries race on
    """
    __tablename__ = "commissions"
    __table_args__ = (
        UniqueConstraint("merchant_id", "order_id", name="uq_commission_merchant_order"),
        Index("ix_commissions_click_created", "click_tracking_id", "created_at"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    click_tracking_id = Column(UUID(as_uuid=True), ForeignKey("click_trackings.id"), nullable=False)
    merchant_id = Column(UUID(as_uuid=True), ForeignKey("merchants.id"), nullable=False)
    platform = Column(
        Enum(PlatformEnum, name="platformenum", values_callable=_enum_values),
        nullable=False,
    )

    # Platform-native order id, kept as a string
    order_id = Column(String, nullable=False)
    order_total = Column(Numeric(10, 2), nullable=False, default=0)
    order_currency = Column(String, nullable=False, default="SAR")

    commission_rate = Column(Numeric(5, 2), nullable=False)
    commission_amount = Column(Numeric(10, 2), nullable=False)
    status = Column(
        Enum(CommissionStatusEnum, name="commissionstatusenum", values_callable=_enum_values),
        nullable=False,
        default=CommissionStatusEnum.pending,
    )
    paid_at = Column(DateTime, nullable=True)
    notes = Column(Text, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    click_tracking = relationship("ClickTracking", back_populates="commissions")
    merchant = relationship("Merchant")
    fraud_signals = relationship("FraudSignal", back_populates="commission")

    def __str__(self):
        return f"Commission {self.order_id} ({self.status.value if self.status else '-'})"


class FraudSignal(Base):
    """Heuristic fraud flag attached to a commission.

    WHAT: Append-only record of a triggered risk heuristic
    WHY: ON_HOLD commissions need an auditable reason for manual review
    """
    __tablename__ = "fraud_signals"
    __table_args__ = (
        UniqueConstraint("commission_id", "signal_type", name="uq_fraud_signal_commission_type"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    merchant_id = Column(UUID(as_uuid=True), ForeignKey("merchants.id"), nullable=False)
    platform = Column(
        Enum(PlatformEnum, name="platformenum", values_callable=_enum_values),
        nullable=False,
    )
    store_id = Column(String, nullable=True)
    click_tracking_id = Column(UUID(as_uuid=True), ForeignKey("click_trackings.id"), nullable=True)
    order_id = Column(String, nullable=True)
    commission_id = Column(UUID(as_uuid=True), ForeignKey("commissions.id"), nullable=True, index=True)

    signal_type = Column(
        Enum(FraudSignalTypeEnum, name="fraudsignaltypeenum", values_callable=_enum_values),
        nullable=False,
    )
    severity = Column(
        Enum(FraudSeverityEnum, name="fraudseverityenum", values_callable=_enum_values),
        nullable=False,
    )
    score = Column(Integer, nullable=False, default=0)
    reason = Column(Text, nullable=True)
    # "metadata" is reserved on declarative classes
    signal_metadata = Column("metadata", JSON, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow)

    commission = relationship("Commission", back_populates="fraud_signals")

    def __str__(self):
        return f"{self.signal_type.value} ({self.severity.value}, {self.score})"


# Webhook ledger -------------------------------------------------

class WebhookEvent(Base):
    """Idempotency ledger for inbound webhook deliveries.

    WHAT: One row per accepted delivery, keyed by a content-derived key
    WHY: Platforms deliver at-least-once; the unique key lets redeliveries
         short-circuit before any side effect runs
    """
    __tablename__ = "webhook_events"
    __table_args__ = (
        Index("ix_webhook_events_platform_delivery", "platform", "delivery_header_id"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    platform = Column(
        Enum(PlatformEnum, name="platformenum", values_callable=_enum_values),
        nullable=False,
    )
    store_id = Column(String, nullable=True)
    event_type = Column(String, nullable=False)
    idempotency_key = Column(String, nullable=False, unique=True)
    delivery_header_id = Column(String, nullable=True)

    # Redacted payload snapshot (no customer PII, no tokens)
    payload = Column(JSON, nullable=True)

    processing_status = Column(
        Enum(WebhookProcessingStatusEnum, name="webhookprocessingstatusenum", values_callable=_enum_values),
        nullable=False,
        default=WebhookProcessingStatusEnum.received,
    )
    error_message = Column(Text, nullable=True)
    attempt_count = Column(Integer, nullable=False, default=1)

    created_at = Column(DateTime, default=datetime.utcnow)
    # Start of the current attempt (reset when a FAILED or stale row is reclaimed)
    received_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    processed_at = Column(DateTime, nullable=True)

    def __str__(self):
        return f"{self.platform.value}:{self.event_type} ({self.processing_status.value})"


class WebhookLog(Base):
    """Audit sink for processed order webhooks.

    Written by the order worker when processing ends; never read by the engine.
    """
    __tablename__ = "webhook_logs"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    idempotency_key = Column(String, nullable=False, unique=True)
    event = Column(String, nullable=False)
    order_id = Column(String, nullable=True)
    order_key = Column(String, nullable=True, index=True)
    platform = Column(
        Enum(PlatformEnum, name="platformenum", values_callable=_enum_values),
        nullable=False,
    )
    store_id = Column(String, nullable=True)
    merchant_id = Column(UUID(as_uuid=True), nullable=True)
    processed = Column(Boolean, nullable=False, default=False)
    error = Column(Text, nullable=True)
    payload = Column(JSON, nullable=True)
    processed_at = Column(DateTime, default=datetime.utcnow)

    def __str__(self):
        return f"{self.event} {self.order_id or ''}".strip()
