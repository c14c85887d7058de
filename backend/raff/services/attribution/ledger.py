"""
Webhook Idempotency Ledger.

WHAT:
    Records every accepted webhook delivery under a content-derived key and
    reports redeliveries as duplicates. Also hosts the audit sink that logs
    processed order webhooks.

WHY:
    Salla and Zid deliver at-least-once. The unique constraint on
    webhook_events.idempotency_key turns "have we seen this?" into a single
    insert, which is race-free across concurrent deliveries.

LIFECYCLE:
    register()      -> RECEIVED (committed immediately, visible to racers)
    mark_processed  -> PROCESSED   (best-effort)
    mark_failed     -> FAILED      (best-effort)

    register() on an existing key:
        PROCESSED          -> duplicate (200, platform stops retrying)
        RECEIVED           -> in progress (500, platform retries later)
        FAILED             -> reclaimed back to RECEIVED, attempt_count + 1
        RECEIVED but stale -> reclaimed (the worker that held it died)

    Only a PROCESSED row is ever reported as a duplicate, so a delivery the
    platform was told to retry cannot be acknowledged before it succeeds.

REFERENCES:
    - raff/models.py (WebhookEvent, WebhookLog)
    - raff/routers/platform_webhooks.py (caller)
"""

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Optional

from sqlalchemy import and_, or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ...models import PlatformEnum, WebhookEvent, WebhookLog, WebhookProcessingStatusEnum

logger = logging.getLogger(__name__)

_MAX_ERROR_LENGTH = 2000

NEW = "new"
RECLAIMED = "reclaimed"
IN_PROGRESS = "in_progress"
DUPLICATE_KEY = "duplicate_key"
DUPLICATE_DELIVERY = "duplicate_delivery"


@dataclass(frozen=True)
class LedgerRegistration:
    """Outcome of registering a delivery.

    Attributes:
        accepted: True when the caller should run side effects
        event_id: Ledger row id
        reason: new | reclaimed | in_progress | duplicate_key | duplicate_delivery
    """

    accepted: bool
    event_id: Optional[uuid.UUID]
    reason: str

    @property
    def duplicate(self) -> bool:
        return self.reason in (DUPLICATE_KEY, DUPLICATE_DELIVERY)

    @property
    def in_progress(self) -> bool:
        return self.reason == IN_PROGRESS


def _is_stale(received_at: Optional[datetime], stale_after: Optional[timedelta], now: datetime) -> bool:
    if stale_after is None or received_at is None:
        return False
    return received_at < now - stale_after


def register(
    db: Session,
    *,
    platform: PlatformEnum,
    store_id: Optional[str],
    event_type: str,
    idempotency_key: str,
    delivery_header_id: Optional[str] = None,
    payload: Any = None,
    stale_after: Optional[timedelta] = None,
) -> LedgerRegistration:
    """Insert a ledger row for this delivery, or report why it cannot run.

    WHAT:
        Commits a RECEIVED row keyed by idempotency_key. A unique violation
        means another delivery already holds the key; what happens next
        depends on that row's status (see LIFECYCLE above).

    WHY:
        Committing right away (outside the attribution transaction) makes the
        claim visible to concurrent deliveries of the same event.

    Args:
        db: Session (must have no pending work)
        platform: Sending platform
        store_id: Platform store id
        event_type: Normalized event name
        idempotency_key: Content-derived key
        delivery_header_id: Platform delivery id header, if sent
        payload: Redacted payload snapshot
        stale_after: Age after which a RECEIVED claim is considered abandoned
            (None = never)

    Returns:
        LedgerRegistration
    """
    now = datetime.utcnow()

    if delivery_header_id:
        seen = (
            db.query(WebhookEvent.id, WebhookEvent.processing_status, WebhookEvent.received_at)
            .filter(
                WebhookEvent.platform == platform,
                WebhookEvent.delivery_header_id == delivery_header_id,
            )
            .first()
        )
        if seen is not None and seen.processing_status == WebhookProcessingStatusEnum.processed:
            logger.info(
                f"[WEBHOOK_LEDGER] Duplicate delivery id {delivery_header_id} ({platform.value})",
                extra={"event_type": event_type},
            )
            return LedgerRegistration(accepted=False, event_id=seen.id, reason=DUPLICATE_DELIVERY)
        if (
            seen is not None
            and seen.processing_status == WebhookProcessingStatusEnum.received
            and not _is_stale(seen.received_at, stale_after, now)
        ):
            logger.info(
                f"[WEBHOOK_LEDGER] Delivery id {delivery_header_id} still in progress ({platform.value})",
                extra={"event_type": event_type},
            )
            return LedgerRegistration(accepted=False, event_id=seen.id, reason=IN_PROGRESS)

    event_id = uuid.uuid4()
    db.add(WebhookEvent(
        id=event_id,
        platform=platform,
        store_id=store_id,
        event_type=event_type,
        idempotency_key=idempotency_key,
        delivery_header_id=delivery_header_id,
        payload=payload,
        processing_status=WebhookProcessingStatusEnum.received,
        attempt_count=1,
        received_at=now,
    ))
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        return _reclaim_or_reject(db, idempotency_key, event_type, stale_after, now)

    logger.info(
        f"[WEBHOOK_LEDGER] Registered {platform.value} {event_type}",
        extra={"idempotency_key": idempotency_key, "store_id": store_id},
    )
    return LedgerRegistration(accepted=True, event_id=event_id, reason=NEW)


def _reclaim_or_reject(
    db: Session,
    idempotency_key: str,
    event_type: str,
    stale_after: Optional[timedelta],
    now: datetime,
) -> LedgerRegistration:
    claimable = WebhookEvent.processing_status == WebhookProcessingStatusEnum.failed
    if stale_after is not None:
        claimable = or_(
            claimable,
            and_(
                WebhookEvent.processing_status == WebhookProcessingStatusEnum.received,
                WebhookEvent.received_at < now - stale_after,
            ),
        )

    # Conditional UPDATE: only one racer can flip the row back to RECEIVED
    reclaimed = (
        db.query(WebhookEvent)
        .filter(WebhookEvent.idempotency_key == idempotency_key, claimable)
        .update(
            {
                WebhookEvent.processing_status: WebhookProcessingStatusEnum.received,
                WebhookEvent.error_message: None,
                WebhookEvent.attempt_count: WebhookEvent.attempt_count + 1,
                WebhookEvent.received_at: now,
            },
            synchronize_session=False,
        )
    )
    db.commit()

    row = (
        db.query(WebhookEvent.id, WebhookEvent.processing_status)
        .filter(WebhookEvent.idempotency_key == idempotency_key)
        .first()
    )
    event_id = row.id if row is not None else None

    if reclaimed:
        logger.info(f"[WEBHOOK_LEDGER] Retrying {event_type}", extra={"idempotency_key": idempotency_key})
        return LedgerRegistration(accepted=True, event_id=event_id, reason=RECLAIMED)

    if row is not None and row.processing_status == WebhookProcessingStatusEnum.processed:
        logger.info(f"[WEBHOOK_LEDGER] Duplicate {event_type} ignored", extra={"idempotency_key": idempotency_key})
        return LedgerRegistration(accepted=False, event_id=event_id, reason=DUPLICATE_KEY)

    logger.info(
        f"[WEBHOOK_LEDGER] {event_type} still in progress; asking platform to retry",
        extra={"idempotency_key": idempotency_key},
    )
    return LedgerRegistration(accepted=False, event_id=event_id, reason=IN_PROGRESS)


def _finish(db: Session, event_id: uuid.UUID, status: WebhookProcessingStatusEnum, error: Optional[str]) -> None:
    try:
        db.query(WebhookEvent).filter(WebhookEvent.id == event_id).update(
            {
                WebhookEvent.processing_status: status,
                WebhookEvent.error_message: error[:_MAX_ERROR_LENGTH] if error else None,
                WebhookEvent.processed_at: datetime.utcnow(),
            },
            synchronize_session=False,
        )
        db.commit()
    except Exception as e:
        db.rollback()
        logger.error(f"[WEBHOOK_LEDGER] Failed to mark {event_id} as {status.value}: {e}", exc_info=True)


def mark_processed(db: Session, event_id: Optional[uuid.UUID]) -> None:
    """Best-effort; never raises."""
    if event_id is not None:
        _finish(db, event_id, WebhookProcessingStatusEnum.processed, None)


def mark_failed(db: Session, event_id: Optional[uuid.UUID], error: str) -> None:
    """Best-effort; never raises."""
    if event_id is not None:
        _finish(db, event_id, WebhookProcessingStatusEnum.failed, error)


# =============================================================================
# AUDIT SINK
# =============================================================================

@dataclass(frozen=True)
class WebhookAuditRecord:
    idempotency_key: str
    event: str
    platform: PlatformEnum
    store_id: Optional[str] = None
    order_id: Optional[str] = None
    order_key: Optional[str] = None
    merchant_id: Optional[uuid.UUID] = None
    processed: bool = False
    error: Optional[str] = None
    payload: Any = None


def log_processed_webhook(session_factory: Callable[[], Session], record: WebhookAuditRecord) -> None:
    """Upsert the audit row for a processed order webhook.

    WHAT:
        Fire-and-forget write to webhook_logs in its own session.

    WHY:
        Called by the order worker when processing ends, including after a
        timed-out request; an audit failure must never change the outcome.
    """
    db = session_factory()
    try:
        row = db.query(WebhookLog).filter(WebhookLog.idempotency_key == record.idempotency_key).first()
        if row is None:
            row = WebhookLog(idempotency_key=record.idempotency_key)
            db.add(row)
        row.event = record.event
        row.platform = record.platform
        row.store_id = record.store_id
        row.order_id = record.order_id
        row.order_key = record.order_key
        row.merchant_id = record.merchant_id
        row.processed = record.processed
        row.error = record.error[:_MAX_ERROR_LENGTH] if record.error else None
        row.payload = record.payload
        row.processed_at = datetime.utcnow()
        db.commit()
    except Exception as e:
        db.rollback()
        logger.warning(f"[WEBHOOK_LEDGER] Audit log write failed for {record.event}: {e}", exc_info=True)
    finally:
        db.close()
