"""
Order Event Processor.

WHAT:
    Runs one normalized order event through attribution as a single atomic
    unit: match click -> score risk -> upsert commission -> adjust click
    aggregates -> record fraud signals.

WHY:
    A crash halfway must never leave click aggregates incremented without the
    commission row (or the reverse). Everything below happens inside one
    transaction_scope; any failure rolls all of it back.

CONCURRENCY:
    Two deliveries for a new order race on uq_commission_merchant_order. The
    loser's flush raises IntegrityError; the whole unit is retried once, and
    on retry the matcher finds the winner's commission and merges into it.

REFERENCES:
    - raff/routers/platform_webhooks.py (caller, via run_order_event)
    - raff/database.py (transaction_scope)
"""

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any, Callable, Optional

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from ...database import get_sync_session, transaction_scope
from ...errors import NotFoundError, TransientStoreError
from ...models import CommissionStatusEnum, Merchant
from . import ledger, matcher
from .aggregator import ConversionAggregator
from .fraud import FraudSignalDetector, RiskContext
from .normalizer import DEFAULT_REFERRER_PATTERN, NormalizedOrderEvent
from .state_machine import CommissionStateMachine, derive_desired_status, resolve_commission_rate

logger = logging.getLogger(__name__)

_MAX_ATTEMPTS = 2


@dataclass(frozen=True)
class ProcessingOptions:
    """Tunables for attribution, built from Settings by the router."""

    referrer_pattern: str = DEFAULT_REFERRER_PATTERN
    risk_scoring_enabled: bool = True
    risk_score_threshold: int = 70
    risk_window_minutes: int = 10
    risk_order_threshold: int = 3

    @classmethod
    def from_settings(cls, settings) -> "ProcessingOptions":
        return cls(
            referrer_pattern=settings.REFERRER_CODE_PATTERN,
            risk_scoring_enabled=settings.RISK_SCORING_ENABLED,
            risk_score_threshold=settings.RISK_SCORE_THRESHOLD,
            risk_window_minutes=settings.RISK_TRACKING_WINDOW_MINUTES,
            risk_order_threshold=settings.RISK_TRACKING_ORDER_THRESHOLD,
        )


@dataclass
class AttributionResult:
    attributed: bool
    message: str
    commission_id: Optional[uuid.UUID] = None
    status: Optional[CommissionStatusEnum] = None
    commission_amount: Optional[Decimal] = None
    changed: bool = False
    risk_score: int = 0


def process_order_event(
    db: Session,
    event: NormalizedOrderEvent,
    merchant: Merchant,
    options: Optional[ProcessingOptions] = None,
    *,
    now: Optional[datetime] = None,
) -> AttributionResult:
    """Attribute one order event and drive its commission.

    Args:
        db: Session with no pending work
        event: Normalized order event
        merchant: Owning merchant
        options: Attribution tunables
        now: Clock override (tests)

    Returns:
        AttributionResult (attributed=False for organic/expired/unknown clicks)

    Raises:
        TransientStoreError: Database failure; transaction rolled back
    """
    options = options or ProcessingOptions()
    now = now or datetime.utcnow()

    if not merchant.is_active:
        logger.info(f"[ATTRIBUTION] Merchant {merchant.id} inactive; order {event.order_id} ignored")
        return AttributionResult(attributed=False, message="Merchant is inactive")

    for attempt in range(1, _MAX_ATTEMPTS + 1):
        try:
            with transaction_scope(db):
                return _attribute(db, event, merchant, options, now)
        except IntegrityError as e:
            if attempt == _MAX_ATTEMPTS:
                raise TransientStoreError(f"Commission write conflict for order {event.order_id}") from e
            logger.info(
                f"[ATTRIBUTION] Concurrent write for order {event.order_id}; retrying as merge",
                extra={"idempotency_key": event.idempotency_key},
            )
        except SQLAlchemyError as e:
            logger.error(f"[ATTRIBUTION] Database error for order {event.order_id}: {e}", exc_info=True)
            raise TransientStoreError("Database unavailable") from e

    raise TransientStoreError(f"Commission write conflict for order {event.order_id}")


def _attribute(
    db: Session,
    event: NormalizedOrderEvent,
    merchant: Merchant,
    options: ProcessingOptions,
    now: datetime,
) -> AttributionResult:
    match = matcher.match(
        db, event.referrer_code, merchant.id, event.order_id, now=now, pattern=options.referrer_pattern
    )
    if not match.matched:
        logger.info(f"[ATTRIBUTION] Order {event.order_id}: {match.message}")
        return AttributionResult(attributed=False, message=match.message)

    click = match.click
    rate = resolve_commission_rate(click, merchant)

    detector = None
    assessment = None
    context = RiskContext(
        click=click,
        merchant_id=merchant.id,
        platform=event.platform,
        store_id=event.store_id,
        order_id=event.order_id,
        is_new_commission=match.commission is None,
        now=now,
    )
    if options.risk_scoring_enabled:
        detector = FraudSignalDetector.default(
            window_minutes=options.risk_window_minutes,
            order_threshold=options.risk_order_threshold,
            threshold=options.risk_score_threshold,
        )
        assessment = detector.evaluate(db, context)

    desired = derive_desired_status(
        payment_confirmed=event.payment_confirmed,
        order_cancelled=event.order_cancelled,
        on_hold=assessment.on_hold if assessment else False,
    )

    transition = CommissionStateMachine().apply(
        db,
        existing=match.commission,
        merchant=merchant,
        click=click,
        event=event,
        rate=rate,
        desired=desired,
        now=now,
    )
    ConversionAggregator().apply(db, click, transition, now=now)

    if detector is not None and assessment.signals:
        detector.record(db, assessment, transition.commission, context)

    if transition.created:
        message = "Commission created"
    elif transition.changed:
        message = "Commission updated"
    else:
        message = "Commission unchanged"

    logger.info(
        f"[ATTRIBUTION] Order {event.order_id} -> {transition.next_status.value} ({message})",
        extra={
            "tracking_id": click.tracking_id,
            "merchant_id": str(merchant.id),
            "risk_score": assessment.score if assessment else 0,
        },
    )
    return AttributionResult(
        attributed=True,
        message=message,
        commission_id=transition.commission.id,
        status=transition.next_status,
        commission_amount=Decimal(transition.commission.commission_amount),
        changed=transition.changed,
        risk_score=assessment.score if assessment else 0,
    )


def run_order_event(
    session_factory: Callable[[], Session],
    event: NormalizedOrderEvent,
    merchant_id: uuid.UUID,
    ledger_event_id: Optional[uuid.UUID],
    options: Optional[ProcessingOptions] = None,
    *,
    audit_payload: Any = None,
) -> AttributionResult:
    """Process an order event in its own session and close out the ledger row.

    WHAT:
        Entry point for the router's worker thread. Marks the ledger row
        PROCESSED or FAILED and writes the webhook_logs audit record.

    WHY:
        The router may stop waiting (timeout) while this keeps running, so it
        must not share the request session. The ledger and audit outcomes are
        written here for the same reason: only this function knows how
        processing ended.
    """
    with get_sync_session(session_factory) as db:
        try:
            merchant = db.get(Merchant, merchant_id)
            if merchant is None:
                raise NotFoundError("Merchant not found", platform=event.platform.value)
            result = process_order_event(db, event, merchant, options)
        except Exception as e:
            error = str(e) or e.__class__.__name__
            db.rollback()
            ledger.mark_failed(db, ledger_event_id, error)
            ledger.log_processed_webhook(
                session_factory, _audit_record(event, merchant_id, audit_payload, processed=False, error=error)
            )
            raise

        ledger.mark_processed(db, ledger_event_id)

    ledger.log_processed_webhook(session_factory, _audit_record(event, merchant_id, audit_payload, processed=True))
    return result


def _audit_record(
    event: NormalizedOrderEvent,
    merchant_id: uuid.UUID,
    payload: Any,
    *,
    processed: bool,
    error: Optional[str] = None,
) -> ledger.WebhookAuditRecord:
    return ledger.WebhookAuditRecord(
        idempotency_key=event.idempotency_key,
        event=event.event_type,
        platform=event.platform,
        store_id=event.store_id,
        order_id=event.order_id,
        order_key=event.order_key,
        merchant_id=merchant_id,
        processed=processed,
        error=error,
        payload=payload,
    )
