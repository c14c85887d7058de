"""
Webhook Errors
==============

Exception taxonomy for webhook ingestion and commission attribution.

WHY THIS FILE EXISTS
--------------------
Webhook senders react only to the HTTP status code: 2xx stops retries, 5xx
schedules another delivery. Each failure class therefore carries the status
it must be answered with, and a single exception handler in raff/main.py
renders them.

Duplicate deliveries are NOT errors. The ledger reports them as a
registration result and the router answers 200 with a duplicate flag.

RELATED FILES
-------------
- raff/services/attribution/signature.py: raises ConfigurationError, AuthenticationError
- raff/services/attribution/normalizer.py: raises ValidationError
- raff/routers/platform_webhooks.py: raises NotFoundError, TransientStoreError
- raff/main.py: renders WebhookError subclasses
"""

from typing import Optional


class WebhookError(Exception):
    """
    Base exception for all webhook handling errors.

    PARAMETERS:
        message: Human-readable error description
        platform: Sending platform (salla, zid) if known
    """

    status_code = 500

    def __init__(self, message: str, platform: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.platform = platform


class ConfigurationError(WebhookError):
    """
    Server misconfiguration, e.g. no webhook secret in production.

    Fatal for every request until fixed; reported to Sentry so it alarms.
    """

    status_code = 500


class AuthenticationError(WebhookError):
    """Bad or missing signature, or security strategy mismatch."""

    status_code = 401


class ValidationError(WebhookError):
    """Payload is not JSON or cannot be normalized into an event."""

    status_code = 400


class NotFoundError(WebhookError):
    """Referenced merchant/store is unknown."""

    status_code = 404


class TransientStoreError(WebhookError):
    """
    Backing store unavailable or processing did not finish in time.

    Answered with 500 so the platform retries; safe because of idempotency.
    """

    status_code = 500
