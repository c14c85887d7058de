"""
Webhook Event Normalizer.

WHAT:
    Turns Salla/Zid webhook payloads into one canonical event shape:
    - NormalizedOrderEvent for order lifecycle events
    - NormalizedLifecycleEvent for product and app events

WHY:
    Each platform names the same facts differently (and sometimes
    inconsistently between API versions). Field-path quirks stay in one
    normalizer per platform; the ledger, matcher and state machine only ever
    see the canonical event.

IDEMPOTENCY KEY:
    sha256(platform | store id | event type | order id | payment status | order status)
    Wrapper metadata (delivery id, sent-at timestamps) never participates, so a
    redelivery of the same logical event always hashes to the same key.

REFERENCES:
    - https://docs.salla.dev/doc-421117 (Salla order webhooks)
    - https://docs.zid.sa/docs/webhooks (Zid webhooks)
    - raff/services/attribution/ledger.py (consumer of idempotency_key)
"""

import enum
import hashlib
import json
import logging
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, replace
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from functools import lru_cache
from typing import Any, Dict, FrozenSet, Optional

from ...errors import ValidationError
from ...models import PlatformEnum

logger = logging.getLogger(__name__)

DEFAULT_REFERRER_PATTERN = r"^(raff[-_:]|click_)[A-Za-z0-9_-]{4,64}$"
DEFAULT_CURRENCY = "SAR"
_CENT = Decimal("0.01")


# =============================================================================
# EVENT KINDS
# =============================================================================

class EventKind(str, enum.Enum):
    """Closed set of webhook kinds the engine routes on."""

    order = "order"
    product_upsert = "product_upsert"
    product_delete = "product_delete"
    app_installed = "app_installed"
    app_uninstalled = "app_uninstalled"
    authorize = "authorize"
    unhandled = "unhandled"


# Both platforms' spellings; anything missing here is "unhandled"
EVENT_KINDS: Dict[str, EventKind] = {
    "order.created": EventKind.order,
    "order.create": EventKind.order,
    "order.updated": EventKind.order,
    "order.update": EventKind.order,
    "order.paid": EventKind.order,
    "order.completed": EventKind.order,
    "order.cancelled": EventKind.order,
    "order.canceled": EventKind.order,
    "order.refunded": EventKind.order,
    "order.status.updated": EventKind.order,
    "order.status.update": EventKind.order,
    "order.payment.updated": EventKind.order,
    "order.payment_status.update": EventKind.order,
    "product.created": EventKind.product_upsert,
    "product.create": EventKind.product_upsert,
    "product.updated": EventKind.product_upsert,
    "product.update": EventKind.product_upsert,
    "product.deleted": EventKind.product_delete,
    "product.delete": EventKind.product_delete,
    "product.removed": EventKind.product_delete,
    "product.remove": EventKind.product_delete,
    "app.installed": EventKind.app_installed,
    "app.install": EventKind.app_installed,
    "app.uninstalled": EventKind.app_uninstalled,
    "app.uninstall": EventKind.app_uninstalled,
    "app.store.authorize": EventKind.authorize,
    "app.authorized": EventKind.authorize,
}


def extract_event_type(payload: Dict[str, Any]) -> str:
    """Read the event name from the payload wrapper, lowercased."""
    for key in ("event", "event_type", "type"):
        value = payload.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip().lower()
    return ""


def classify_event(event_type: Optional[str]) -> EventKind:
    return EVENT_KINDS.get((event_type or "").strip().lower(), EventKind.unhandled)


# =============================================================================
# STATUS VOCABULARY (configuration, not control flow)
# =============================================================================

@dataclass(frozen=True)
class StatusVocabulary:
    """Status words that mean "paid" or "cancelled" on a platform.

    Attributes:
        payment_confirmed: Payment statuses meaning money was captured
        order_confirmed: Order statuses meaning the order went through
        payment_cancelled: Payment statuses meaning money was returned
        order_cancelled: Order statuses meaning the order is void
    """

    payment_confirmed: FrozenSet[str]
    order_confirmed: FrozenSet[str]
    payment_cancelled: FrozenSet[str]
    order_cancelled: FrozenSet[str]


_CANCELLED_WORDS = frozenset({
    "refunded", "refund", "voided", "void", "canceled", "cancelled", "cancel",
})

DEFAULT_VOCABULARY = StatusVocabulary(
    payment_confirmed=frozenset({"paid", "completed", "success", "successful", "confirmed", "approved"}),
    order_confirmed=frozenset({"paid", "delivered", "completed", "complete", "fulfilled"}),
    payment_cancelled=_CANCELLED_WORDS,
    order_cancelled=_CANCELLED_WORDS | {"rejected"},
)

PLATFORM_VOCABULARIES: Dict[PlatformEnum, StatusVocabulary] = {
    PlatformEnum.salla: replace(
        DEFAULT_VOCABULARY,
        order_cancelled=DEFAULT_VOCABULARY.order_cancelled | {"restored", "restoring"},
    ),
    PlatformEnum.zid: replace(
        DEFAULT_VOCABULARY,
        order_cancelled=DEFAULT_VOCABULARY.order_cancelled | {"reversed"},
    ),
}


def _status(value: Optional[str]) -> str:
    return (value or "").strip().lower()


def is_payment_confirmed(
    payment_status: Optional[str],
    order_status: Optional[str],
    vocabulary: StatusVocabulary = DEFAULT_VOCABULARY,
) -> bool:
    return (
        _status(payment_status) in vocabulary.payment_confirmed
        or _status(order_status) in vocabulary.order_confirmed
    )


def is_order_cancelled(
    payment_status: Optional[str],
    order_status: Optional[str],
    vocabulary: StatusVocabulary = DEFAULT_VOCABULARY,
) -> bool:
    return (
        _status(payment_status) in vocabulary.payment_cancelled
        or _status(order_status) in vocabulary.order_cancelled
    )


# =============================================================================
# REFERRER CODES & REDACTION
# =============================================================================

@lru_cache(maxsize=8)
def _compiled(pattern: str) -> "re.Pattern[str]":
    return re.compile(pattern, re.IGNORECASE)


def is_valid_referrer(code: Optional[str], pattern: str = DEFAULT_REFERRER_PATTERN) -> bool:
    """Cheap format check before any click lookup hits the database."""
    if not code:
        return False
    return bool(_compiled(pattern).match(code.strip()))


_PII_KEYS = ("customer", "consignee")
_SENSITIVE_KEYS = frozenset({
    "authorization", "access_token", "refresh_token", "token", "secret", "signature", "password",
})


def redact_payload(payload: Any) -> Any:
    """Copy of the payload that is safe to persist.

    Removes customer/consignee blocks (root, data, order) and masks
    credential-like keys at any depth. The input is not modified.
    """
    def _mask(value: Any) -> Any:
        if isinstance(value, dict):
            return {
                key: ("***" if str(key).lower() in _SENSITIVE_KEYS else _mask(item))
                for key, item in value.items()
            }
        if isinstance(value, list):
            return [_mask(item) for item in value]
        return value

    redacted = _mask(payload)
    if isinstance(redacted, dict):
        for container in (redacted, redacted.get("data"), redacted.get("order")):
            if isinstance(container, dict):
                for key in _PII_KEYS:
                    container.pop(key, None)
    return redacted


# =============================================================================
# CANONICAL EVENTS
# =============================================================================

@dataclass(frozen=True)
class NormalizedOrderEvent:
    """Platform-independent view of one order webhook.

    Attributes:
        platform: Sending platform
        event_type: Lowercased event name (e.g. "order.created")
        order_id: Platform order id, always a string
        store_id: Platform store id, always a string
        total: Order total rounded to cents
        currency: ISO currency code
        payment_status: Lowercased payment status ("" when absent)
        order_status: Lowercased order status ("" when absent)
        referrer_code: Affiliate tracking id captured at checkout
        created_at / updated_at: Platform timestamps as sent
        idempotency_key: Ledger key for this logical event
        order_key: Stable per-order key for the audit log
        payment_confirmed / order_cancelled: Status classification results
    """

    platform: PlatformEnum
    event_type: str
    order_id: str
    store_id: str
    total: Decimal
    currency: str
    payment_status: str
    order_status: str
    referrer_code: Optional[str]
    created_at: Optional[str]
    updated_at: Optional[str]
    idempotency_key: str
    order_key: str
    payment_confirmed: bool = False
    order_cancelled: bool = False


@dataclass(frozen=True)
class NormalizedLifecycleEvent:
    """Product and app events; only routed, never attributed."""

    platform: PlatformEnum
    event_type: str
    kind: EventKind
    store_id: str
    idempotency_key: str
    entity_id: Optional[str] = None
    data: Dict[str, Any] = field(default_factory=dict, compare=False)


def _sha256(material: str) -> str:
    return hashlib.sha256(material.encode("utf-8")).hexdigest()


def order_idempotency_key(
    platform: PlatformEnum,
    store_id: str,
    event_type: str,
    order_id: str,
    payment_status: str = "",
    order_status: str = "",
) -> str:
    return _sha256("|".join([platform.value, store_id, event_type, order_id, payment_status, order_status]))


def order_key(platform: PlatformEnum, store_id: str, order_id: str) -> str:
    return _sha256(f"{platform.value}:{store_id}:{order_id}")


def lifecycle_idempotency_key(platform: PlatformEnum, store_id: str, event_type: str, data: Any) -> str:
    content = json.dumps(data, sort_keys=True, separators=(",", ":"), default=str)
    return _sha256("|".join([platform.value, store_id, event_type, _sha256(content)]))


# =============================================================================
# FIELD ACCESS HELPERS
# =============================================================================

def _dig(payload: Any, path: str) -> Any:
    current = payload
    for part in path.split("."):
        if not isinstance(current, dict):
            return None
        current = current.get(part)
    return current


def _first(payload: Dict[str, Any], *paths: str) -> Any:
    """First present, non-empty value among the dotted paths."""
    for path in paths:
        value = _dig(payload, path)
        if value is None or value == "" or isinstance(value, (dict, list)):
            continue
        return value
    return None


def _as_text(value: Any) -> Optional[str]:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, float) and value.is_integer():
        value = int(value)
    text = str(value).strip()
    return text or None


def _as_money(value: Any, order_id: Optional[str]) -> Decimal:
    if value is None or isinstance(value, bool):
        return Decimal("0.00")
    try:
        return Decimal(str(value).strip()).quantize(_CENT, rounding=ROUND_HALF_UP)
    except (InvalidOperation, ValueError):
        logger.warning(f"[NORMALIZER] Unparseable order total {value!r} for order {order_id}")
        return Decimal("0.00")


# =============================================================================
# PLATFORM NORMALIZERS
# =============================================================================

class PlatformNormalizer(ABC):
    """Shared normalization contract; subclasses only know field paths."""

    platform: PlatformEnum

    def __init__(self, vocabulary: Optional[StatusVocabulary] = None):
        self.vocabulary = vocabulary or PLATFORM_VOCABULARIES.get(self.platform, DEFAULT_VOCABULARY)

    # --- per-platform field paths -------------------------------------------

    @abstractmethod
    def order_id(self, payload: Dict[str, Any]) -> Any: ...

    @abstractmethod
    def store_id(self, payload: Dict[str, Any]) -> Any: ...

    @abstractmethod
    def total(self, payload: Dict[str, Any]) -> Any: ...

    @abstractmethod
    def currency(self, payload: Dict[str, Any]) -> Any: ...

    @abstractmethod
    def referrer_code(self, payload: Dict[str, Any]) -> Any: ...

    @abstractmethod
    def payment_status(self, payload: Dict[str, Any]) -> Any: ...

    @abstractmethod
    def order_status(self, payload: Dict[str, Any]) -> Any: ...

    @abstractmethod
    def timestamps(self, payload: Dict[str, Any]) -> tuple: ...

    @abstractmethod
    def product_id(self, payload: Dict[str, Any]) -> Any: ...

    # --- canonical output ----------------------------------------------------

    def normalize_order(self, payload: Dict[str, Any], event_type: str) -> NormalizedOrderEvent:
        """Build the canonical order event.

        Raises:
            ValidationError: Payload has no order id or store id
        """
        if not isinstance(payload, dict):
            raise ValidationError("Payload must be a JSON object", platform=self.platform.value)

        order_id = _as_text(self.order_id(payload))
        if not order_id:
            raise ValidationError("Missing order id", platform=self.platform.value)
        store_id = _as_text(self.store_id(payload))
        if not store_id:
            raise ValidationError("Missing store id", platform=self.platform.value)

        payment_status = _status(_as_text(self.payment_status(payload)))
        order_status = _status(_as_text(self.order_status(payload)))
        currency = (_as_text(self.currency(payload)) or DEFAULT_CURRENCY).upper()
        created_at, updated_at = self.timestamps(payload)

        return NormalizedOrderEvent(
            platform=self.platform,
            event_type=event_type,
            order_id=order_id,
            store_id=store_id,
            total=_as_money(self.total(payload), order_id),
            currency=currency,
            payment_status=payment_status,
            order_status=order_status,
            referrer_code=_as_text(self.referrer_code(payload)),
            created_at=_as_text(created_at),
            updated_at=_as_text(updated_at),
            idempotency_key=order_idempotency_key(
                self.platform, store_id, event_type, order_id, payment_status, order_status
            ),
            order_key=order_key(self.platform, store_id, order_id),
            payment_confirmed=is_payment_confirmed(payment_status, order_status, self.vocabulary),
            order_cancelled=is_order_cancelled(payment_status, order_status, self.vocabulary),
        )

    def normalize_lifecycle(self, payload: Dict[str, Any], event_type: str, kind: EventKind) -> NormalizedLifecycleEvent:
        """Build a product/app event.

        Raises:
            ValidationError: No store id, or a product event without a product id
        """
        if not isinstance(payload, dict):
            raise ValidationError("Payload must be a JSON object", platform=self.platform.value)

        store_id = _as_text(self.store_id(payload))
        if not store_id:
            raise ValidationError("Missing store id", platform=self.platform.value)

        data = payload.get("data") if isinstance(payload.get("data"), dict) else {}
        entity_id = None
        if kind in (EventKind.product_upsert, EventKind.product_delete):
            entity_id = _as_text(self.product_id(payload))
            if not entity_id:
                raise ValidationError("Missing product id", platform=self.platform.value)

        return NormalizedLifecycleEvent(
            platform=self.platform,
            event_type=event_type,
            kind=kind,
            store_id=store_id,
            entity_id=entity_id,
            idempotency_key=lifecycle_idempotency_key(self.platform, store_id, event_type, payload.get("data")),
            data=data,
        )


class SallaNormalizer(PlatformNormalizer):
    """Salla sends {event, merchant, created_at, data: {...order...}}."""

    platform = PlatformEnum.salla

    def order_id(self, payload):
        return _first(payload, "data.id", "order.id")

    def store_id(self, payload):
        merchant = payload.get("merchant")
        if merchant is not None and not isinstance(merchant, dict):
            return merchant
        return _first(payload, "merchant.id", "data.merchant.id", "store_id")

    def total(self, payload):
        # data.total is {amount, currency} on v2, a bare number on older payloads
        amount = _first(payload, "data.total.amount", "data.amounts.total.amount", "data.amounts.total")
        if amount is None:
            amount = _first(payload, "data.total")
        return amount

    def currency(self, payload):
        return _first(payload, "data.total.currency", "data.currency", "data.currency_code")

    def referrer_code(self, payload):
        return _first(payload, "data.referrer", "data.source", "data.referer_code", "data.referrer_code")

    def payment_status(self, payload):
        return _first(payload, "data.payment.status", "data.payment_status")

    def order_status(self, payload):
        return _first(payload, "data.status.slug", "data.status.code", "data.status.name", "data.status")

    def timestamps(self, payload):
        return (
            _first(payload, "data.created_at", "data.date.created", "data.date.date"),
            _first(payload, "data.updated_at", "data.date.updated"),
        )

    def product_id(self, payload):
        return _first(payload, "data.id", "data.product_id")


class ZidNormalizer(PlatformNormalizer):
    """Zid flattens most order fields to the root, older payloads nest them."""

    platform = PlatformEnum.zid

    def order_id(self, payload):
        return _first(payload, "order_id", "data.id", "data.order_id", "order.id")

    def store_id(self, payload):
        return _first(payload, "store_id", "data.store_id", "store.id", "data.store.id")

    def total(self, payload):
        return _first(
            payload, "total", "order_total", "data.total", "data.order_total", "data.amounts.total", "order.total"
        )

    def currency(self, payload):
        return _first(
            payload, "currency", "currency_code", "data.currency_code", "data.currency", "data.currency.code"
        )

    def referrer_code(self, payload):
        return _first(
            payload, "referer_code", "referrer_code", "data.referer_code", "data.referrer_code", "order.referer_code"
        )

    def payment_status(self, payload):
        return _first(payload, "payment_status", "data.payment_status", "order.payment_status")

    def order_status(self, payload):
        return _first(
            payload, "status", "order_status", "data.status", "data.status.code", "data.order_status.code", "order.status"
        )

    def timestamps(self, payload):
        return (
            _first(payload, "created_at", "issue_date", "data.created_at", "data.issue_date"),
            _first(payload, "updated_at", "data.updated_at"),
        )

    def product_id(self, payload):
        return _first(payload, "product_id", "data.id", "data.product_id", "product.id")


NORMALIZERS: Dict[PlatformEnum, PlatformNormalizer] = {
    PlatformEnum.salla: SallaNormalizer(),
    PlatformEnum.zid: ZidNormalizer(),
}


def get_normalizer(platform: PlatformEnum) -> PlatformNormalizer:
    return NORMALIZERS[platform]
