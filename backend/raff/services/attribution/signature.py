"""
Webhook Signature Verification.

WHAT:
    Validates that an inbound webhook was sent by the platform that owns the
    configured shared secret.

WHY:
    Webhook endpoints are public. Without verification anyone could post a
    fake "order paid" event and mint commissions.

MODES (one per deployment, never combined):
    - hmac-sha256: HMAC-SHA256(secret, body), hex
    - sha256: SHA256(secret + body) or SHA256(body + secret), hex
    - plain: header carries the secret itself

REFERENCES:
    - https://docs.salla.dev/doc-421119 (Salla webhook security)
    - raff/deps.py (Settings.webhook_config)
"""

import hashlib
import hmac
import logging
import re
from dataclasses import dataclass
from typing import Mapping, Optional

from ...errors import AuthenticationError, ConfigurationError
from ...models import PlatformEnum

logger = logging.getLogger(__name__)

_HEX_RE = re.compile(r"^[0-9a-f]+$")


@dataclass(frozen=True)
class WebhookSignatureConfig:
    """Per-platform signature settings.

    Attributes:
        platform: Sending platform
        secret: Shared secret (None when not configured)
        signature_header: Header carrying the signature
        mode: hmac-sha256 | sha256 | plain
        sha256_order: secret_body | body_secret (sha256 mode only)
        strategy_header: Header naming the platform's security strategy
        expected_strategy: Required strategy value; None disables the check
        delivery_header: Header carrying the platform delivery id
    """

    platform: PlatformEnum
    secret: Optional[str]
    signature_header: str
    mode: str = "hmac-sha256"
    sha256_order: str = "secret_body"
    strategy_header: Optional[str] = None
    expected_strategy: Optional[str] = None
    delivery_header: Optional[str] = None


def _normalize_hex_signature(signature: str) -> str:
    """Reduce "sha256=ABC..." style headers to lowercase hex."""
    value = signature.strip()
    if "=" in value:
        value = value.split("=", 1)[1]
    return value.strip().lower()


def _expected_digest(raw_body: bytes, secret: str, mode: str, sha256_order: str) -> Optional[str]:
    key = secret.encode("utf-8")
    if mode == "hmac-sha256":
        return hmac.new(key, raw_body, hashlib.sha256).hexdigest()
    if mode == "sha256":
        if sha256_order == "body_secret":
            return hashlib.sha256(raw_body + key).hexdigest()
        return hashlib.sha256(key + raw_body).hexdigest()
    return None


def verify_signature(raw_body: bytes, signature: Optional[str], config: WebhookSignatureConfig) -> bool:
    """Check a header signature against the raw request body.

    WHAT:
        Recomputes the expected signature for the configured mode and compares
        it in constant time.

    WHY:
        The body must be the exact bytes received; re-serialized JSON would
        not match the sender's digest.

    Args:
        raw_body: Request body exactly as received
        signature: Value of the signature header (may be None)
        config: Platform signature configuration

    Returns:
        True only when the signature matches under the configured mode
    """
    secret = (config.secret or "").strip()
    if not secret or not signature or not signature.strip():
        return False

    if config.mode == "plain":
        return hmac.compare_digest(signature.strip().encode("utf-8"), secret.encode("utf-8"))

    expected = _expected_digest(raw_body, secret, config.mode, config.sha256_order)
    if expected is None:
        logger.error(f"[WEBHOOK_SIGNATURE] Unknown signature mode '{config.mode}' for {config.platform.value}")
        return False

    provided = _normalize_hex_signature(signature)
    if not provided or len(provided) % 2 != 0 or not _HEX_RE.match(provided):
        return False

    return hmac.compare_digest(provided.encode("ascii"), expected.encode("ascii"))


def verify_request(
    config: WebhookSignatureConfig,
    headers: Mapping[str, str],
    raw_body: bytes,
    *,
    is_production: bool,
    skip_verification: bool = False,
) -> None:
    """Enforce the webhook authentication policy for one request.

    WHAT:
        Production secret check, dev-only bypass, security strategy check,
        then signature verification.

    WHY:
        The production check runs before anything else so that unsigned
        traffic is never accepted in production, whatever the other flags say.

    Args:
        config: Platform signature configuration
        headers: Request headers
        raw_body: Request body exactly as received
        is_production: Whether ENVIRONMENT is production
        skip_verification: SKIP_WEBHOOK_VERIFICATION flag

    Raises:
        ConfigurationError: Secret missing in production, or bypass flag set in production
        AuthenticationError: Strategy mismatch, missing/invalid signature
    """
    platform = config.platform.value
    secret = (config.secret or "").strip()
    lowered = {key.lower(): value for key, value in headers.items()}

    if is_production and not secret:
        raise ConfigurationError(f"{platform} webhook secret is not configured", platform=platform)

    if skip_verification:
        if is_production:
            raise ConfigurationError(
                "SKIP_WEBHOOK_VERIFICATION must not be enabled in production", platform=platform
            )
        logger.warning(f"[WEBHOOK_SIGNATURE] Verification skipped for {platform} (development only)")
        return

    if config.expected_strategy:
        strategy = lowered.get((config.strategy_header or "").lower())
        if not strategy or strategy.strip().lower() != config.expected_strategy.strip().lower():
            logger.warning(
                f"[WEBHOOK_SIGNATURE] Security strategy mismatch for {platform}",
                extra={"received_strategy": strategy},
            )
            raise AuthenticationError("Invalid security strategy", platform=platform)

    if not secret:
        logger.warning(f"[WEBHOOK_SIGNATURE] No webhook secret configured for {platform}")
        raise AuthenticationError("Webhook secret not configured", platform=platform)

    signature = lowered.get(config.signature_header.lower())
    if not signature:
        logger.warning(f"[WEBHOOK_SIGNATURE] Missing {config.signature_header} header for {platform}")
        raise AuthenticationError("Missing signature", platform=platform)

    if not verify_signature(raw_body, signature, config):
        logger.warning(f"[WEBHOOK_SIGNATURE] Signature verification failed for {platform}")
        raise AuthenticationError("Invalid signature", platform=platform)
