"""
Webhook Attribution Services Package.

WHAT:
    Turns commerce-platform webhooks (Salla, Zid) into commissions credited to
    the affiliate click that produced the order.

WHY:
    Webhooks are at-least-once, unordered, and public. Each stage below owns
    one of those problems so the router stays a thin dispatcher.

MODULES:
    - signature: Shared-secret verification (hmac-sha256, sha256, plain)
    - normalizer: Per-platform payload -> NormalizedOrderEvent / NormalizedLifecycleEvent
    - ledger: Idempotency ledger (webhook_events) and audit sink (webhook_logs)
    - matcher: Order -> ClickTracking attribution
    - state_machine: Commission status transition table and upsert
    - fraud: Pluggable risk heuristics and FraudSignal recording
    - aggregator: Incremental click conversion totals
    - processor: Atomic orchestration of the above for one order event

REFERENCES:
    - backend/raff/models.py (Commission, ClickTracking, FraudSignal, WebhookEvent)
    - backend/raff/routers/platform_webhooks.py (HTTP entry points)
"""

from .signature import WebhookSignatureConfig, verify_request, verify_signature
from .normalizer import (
    EventKind,
    NormalizedLifecycleEvent,
    NormalizedOrderEvent,
    classify_event,
    get_normalizer,
)
from .state_machine import CommissionStateMachine, CommissionTransition, TRANSITIONS, merge_status
