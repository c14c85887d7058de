"""Salla and Zid webhooks for commission attribution.

WHAT:
    Receives commerce-platform webhooks and routes them by event kind:
    1. Order lifecycle -> idempotency ledger -> attribution/commission engine
    2. Product lifecycle -> catalog sync trigger
    3. App install/uninstall, authorization grant -> store sync trigger

WHY:
    - Orders are how referral clicks turn into commissions
    - Platforms retry anything that is not 2xx, so every logically complete
      outcome (organic order, duplicate, unhandled event) answers 200

FLOW:
    verify signature -> parse JSON -> classify event -> normalize
    -> resolve merchant -> register in ledger -> process (worker thread, timeout)
    -> respond (worker writes ledger outcome and audit log)

REFERENCES:
    - https://docs.salla.dev/doc-421117 (Salla webhooks)
    - https://docs.zid.sa/docs/webhooks (Zid webhooks)
    - raff/services/attribution/ (engine)
"""

import asyncio
import json
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, Optional

from fastapi import APIRouter, Depends, Request
from sqlalchemy.orm import Session

from ..database import get_db, get_session_factory
from ..deps import Settings, get_settings, get_sync_enqueuer
from ..errors import NotFoundError, TransientStoreError, ValidationError, WebhookError
from ..models import Merchant, PlatformEnum
from ..schemas import WebhookErrorResponse, WebhookResponse
from ..services.attribution import ledger
from ..services.attribution.normalizer import (
    EventKind,
    classify_event,
    extract_event_type,
    get_normalizer,
    redact_payload,
)
from ..services.attribution.processor import ProcessingOptions, run_order_event
from ..services.attribution.signature import verify_request
from ..services.merchants import find_merchant_by_external_store_id
from ..telemetry.sentry import capture_exception
from ..workers.arq_enqueue import (
    DEACTIVATE_PRODUCT_JOB,
    DISCONNECT_STORE_JOB,
    STORE_AUTHORIZED_JOB,
    SYNC_PRODUCT_JOB,
    SYNC_STORE_INFO_JOB,
    JobEnqueuer,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks", tags=["Webhooks"])

_ERROR_RESPONSES = {
    400: {"model": WebhookErrorResponse, "description": "Payload cannot be normalized"},
    401: {"model": WebhookErrorResponse, "description": "Signature or security strategy invalid"},
    404: {"model": WebhookErrorResponse, "description": "Store is not linked to a merchant"},
    500: {"model": WebhookErrorResponse, "description": "Misconfiguration or processing failure"},
}


@dataclass
class WebhookContext:
    """Everything an event handler needs for one delivery."""

    platform: PlatformEnum
    payload: Dict[str, Any]
    event_type: str
    kind: EventKind
    delivery_id: Optional[str]
    db: Session
    session_factory: Callable[[], Session]
    settings: Settings
    enqueue: JobEnqueuer

    @property
    def tag(self) -> str:
        return f"[{self.platform.value.upper()}_WEBHOOK]"


# =============================================================================
# ENDPOINTS
# =============================================================================

@router.post(
    "/salla",
    response_model=WebhookResponse,
    response_model_exclude_none=True,
    responses=_ERROR_RESPONSES,
    summary="Salla webhook receiver",
)
async def salla_webhook(
    request: Request,
    db: Session = Depends(get_db),
    session_factory: Callable[[], Session] = Depends(get_session_factory),
    settings: Settings = Depends(get_settings),
    enqueue: JobEnqueuer = Depends(get_sync_enqueuer),
):
    """Handle Salla order, product and app events.

    Signed with X-Salla-Signature; X-Salla-Security-Strategy is enforced when
    SALLA_WEBHOOK_STRATEGY is configured.
    """
    return await _handle_webhook(
        PlatformEnum.salla, request, db, session_factory, settings, enqueue
    )


@router.post(
    "/zid",
    response_model=WebhookResponse,
    response_model_exclude_none=True,
    responses=_ERROR_RESPONSES,
    summary="Zid webhook receiver",
)
async def zid_webhook(
    request: Request,
    db: Session = Depends(get_db),
    session_factory: Callable[[], Session] = Depends(get_session_factory),
    settings: Settings = Depends(get_settings),
    enqueue: JobEnqueuer = Depends(get_sync_enqueuer),
):
    """Handle Zid order, product and app events."""
    return await _handle_webhook(
        PlatformEnum.zid, request, db, session_factory, settings, enqueue
    )


async def _handle_webhook(
    platform: PlatformEnum,
    request: Request,
    db: Session,
    session_factory: Callable[[], Session],
    settings: Settings,
    enqueue: JobEnqueuer,
) -> WebhookResponse:
    """Verify, parse, classify and dispatch one delivery.

    Raises:
        ConfigurationError / AuthenticationError: From signature verification
        ValidationError: Body is not a JSON object
    """
    config = settings.webhook_config(platform)
    raw_body = await request.body()

    # Verify before parsing; the signature covers the exact bytes
    verify_request(
        config,
        request.headers,
        raw_body,
        is_production=settings.is_production,
        skip_verification=settings.SKIP_WEBHOOK_VERIFICATION,
    )

    payload = _parse_json(raw_body, platform)
    event_type = extract_event_type(payload)
    kind = classify_event(event_type)

    ctx = WebhookContext(
        platform=platform,
        payload=payload,
        event_type=event_type,
        kind=kind,
        delivery_id=request.headers.get(config.delivery_header) if config.delivery_header else None,
        db=db,
        session_factory=session_factory,
        settings=settings,
        enqueue=enqueue,
    )
    logger.info(f"{ctx.tag} Received {event_type or '<no event>'} ({kind.value})")

    handler = EVENT_HANDLERS[kind]
    return await handler(ctx)


def _parse_json(raw_body: bytes, platform: PlatformEnum) -> Dict[str, Any]:
    try:
        payload = json.loads(raw_body or b"")
    except (ValueError, UnicodeDecodeError):
        raise ValidationError("Invalid JSON payload", platform=platform.value)
    if not isinstance(payload, dict):
        raise ValidationError("Payload must be a JSON object", platform=platform.value)
    return payload


# =============================================================================
# EVENT HANDLERS
# =============================================================================

async def _handle_order_event(ctx: WebhookContext) -> WebhookResponse:
    """Attribute an order event.

    WHAT:
        Normalize -> merchant -> ledger -> commission engine in a worker thread.

    WHY:
        The engine does blocking database work; running it off the event loop
        under asyncio.wait_for lets us answer 500 before the platform's own
        timeout fires, so the platform retries instead of giving up. The
        worker closes out the ledger row and writes the audit record itself,
        since it may finish after we stopped waiting.
    """
    event = get_normalizer(ctx.platform).normalize_order(ctx.payload, ctx.event_type)

    merchant = find_merchant_by_external_store_id(ctx.db, ctx.platform, event.store_id)
    if merchant is None:
        raise NotFoundError("Merchant not found", platform=ctx.platform.value)
    merchant_id = merchant.id

    redacted = redact_payload(ctx.payload)
    registration = _register(ctx, event.store_id, event.idempotency_key, redacted)
    if registration.duplicate:
        return WebhookResponse(success=True, duplicate=True, message="Duplicate delivery ignored")

    timeout = ctx.settings.WEBHOOK_PROCESSING_TIMEOUT_SECONDS
    try:
        result = await asyncio.wait_for(
            asyncio.to_thread(
                run_order_event,
                ctx.session_factory,
                event,
                merchant_id,
                registration.event_id,
                ProcessingOptions.from_settings(ctx.settings),
                audit_payload=redacted,
            ),
            timeout=timeout,
        )
    except asyncio.TimeoutError:
        logger.error(f"{ctx.tag} Order {event.order_id} processing exceeded {timeout}s")
        raise TransientStoreError("Webhook processing timed out", platform=ctx.platform.value)
    except WebhookError:
        raise
    except Exception as e:
        logger.exception(f"{ctx.tag} Unexpected failure for order {event.order_id}")
        capture_exception(e, extra={"platform": ctx.platform.value, "event": ctx.event_type})
        raise TransientStoreError("Internal error", platform=ctx.platform.value) from e

    return WebhookResponse(
        success=True,
        message=result.message,
        commission=float(result.commission_amount) if result.commission_amount is not None else None,
        status=result.status.value if result.status else None,
    )


async def _handle_product_event(ctx: WebhookContext) -> WebhookResponse:
    event = get_normalizer(ctx.platform).normalize_lifecycle(ctx.payload, ctx.event_type, ctx.kind)

    merchant = find_merchant_by_external_store_id(ctx.db, ctx.platform, event.store_id)
    if merchant is None:
        raise NotFoundError("Merchant not found", platform=ctx.platform.value)
    merchant_id = merchant.id

    registration = _register(ctx, event.store_id, event.idempotency_key, redact_payload(ctx.payload))
    if registration.duplicate:
        return WebhookResponse(success=True, duplicate=True, message="Duplicate delivery ignored")

    job_name = SYNC_PRODUCT_JOB if ctx.kind == EventKind.product_upsert else DEACTIVATE_PRODUCT_JOB
    _, message = await _trigger(
        ctx, registration, job_name, ctx.platform.value, str(merchant_id), event.store_id, event.entity_id
    )
    return WebhookResponse(success=True, message=message)


_APP_JOBS = {
    EventKind.app_installed: SYNC_STORE_INFO_JOB,
    EventKind.app_uninstalled: DISCONNECT_STORE_JOB,
    EventKind.authorize: STORE_AUTHORIZED_JOB,
}


async def _handle_app_event(ctx: WebhookContext) -> WebhookResponse:
    """App install/uninstall and authorization grants.

    The merchant may not be linked yet when the app is first installed,
    so an unknown store is acknowledged rather than rejected.
    """
    event = get_normalizer(ctx.platform).normalize_lifecycle(ctx.payload, ctx.event_type, ctx.kind)

    merchant = find_merchant_by_external_store_id(ctx.db, ctx.platform, event.store_id)
    if merchant is None:
        logger.info(f"{ctx.tag} {ctx.event_type} for unlinked store {event.store_id}")
        return WebhookResponse(success=True, message="Store not linked to a merchant yet")

    registration = _register(ctx, event.store_id, event.idempotency_key, redact_payload(ctx.payload))
    if registration.duplicate:
        return WebhookResponse(success=True, duplicate=True, message="Duplicate delivery ignored")

    now = datetime.utcnow()

    if ctx.kind == EventKind.app_installed and _recently_synced(merchant, now, ctx.settings):
        ledger.mark_processed(ctx.db, registration.event_id)
        logger.info(f"{ctx.tag} Store {event.store_id} synced recently; skipping store info sync")
        return WebhookResponse(success=True, message="Store info recently synced")

    ok, message = await _trigger(
        ctx, registration, _APP_JOBS[ctx.kind], ctx.platform.value, str(merchant.id), event.store_id
    )
    if ok and ctx.kind in (EventKind.app_installed, EventKind.authorize):
        merchant.last_synced_at = now
        ctx.db.commit()
    return WebhookResponse(success=True, message=message)


async def _handle_unhandled_event(ctx: WebhookContext) -> WebhookResponse:
    logger.info(f"{ctx.tag} Ignoring unhandled event '{ctx.event_type}'")
    return WebhookResponse(success=True, message="Event received but not processed")


EVENT_HANDLERS: Dict[EventKind, Callable[[WebhookContext], Awaitable[WebhookResponse]]] = {
    EventKind.order: _handle_order_event,
    EventKind.product_upsert: _handle_product_event,
    EventKind.product_delete: _handle_product_event,
    EventKind.app_installed: _handle_app_event,
    EventKind.app_uninstalled: _handle_app_event,
    EventKind.authorize: _handle_app_event,
    EventKind.unhandled: _handle_unhandled_event,
}


# =============================================================================
# HELPERS
# =============================================================================

def _recently_synced(merchant: Merchant, now: datetime, settings: Settings) -> bool:
    if merchant.last_synced_at is None:
        return False
    return now - merchant.last_synced_at < timedelta(seconds=settings.STORE_SYNC_COOLDOWN_SECONDS)


async def _trigger(ctx: WebhookContext, registration: ledger.LedgerRegistration, job_name: str, *args: Any):
    """Fire a sync trigger; its failure never fails the webhook.

    Returns:
        (ok, message) tuple
    """
    try:
        outcome = await ctx.enqueue(job_name, *args)
    except Exception as e:
        logger.error(f"{ctx.tag} {job_name} trigger failed: {e}", exc_info=True)
        ledger.mark_failed(ctx.db, registration.event_id, f"{job_name}: {e}")
        return False, f"Event received; {job_name} trigger failed"

    ledger.mark_processed(ctx.db, registration.event_id)
    return True, f"{job_name} {outcome.get('status', 'enqueued')}"


def _register(ctx: WebhookContext, store_id: str, idempotency_key: str, payload: Dict[str, Any]) -> ledger.LedgerRegistration:
    """Claim this delivery in the ledger.

    Raises:
        TransientStoreError: Another attempt of the same event is still
            running; the platform must retry rather than be told 200
    """
    registration = ledger.register(
        ctx.db,
        platform=ctx.platform,
        store_id=store_id,
        event_type=ctx.event_type,
        idempotency_key=idempotency_key,
        delivery_header_id=ctx.delivery_id,
        payload=payload,
        stale_after=timedelta(seconds=ctx.settings.WEBHOOK_STALE_CLAIM_SECONDS),
    )
    if registration.in_progress:
        raise TransientStoreError("Delivery is still being processed", platform=ctx.platform.value)
    return registration
