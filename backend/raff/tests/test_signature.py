"""Tests for webhook signature verification.

WHAT: Tests verify_signature modes and the verify_request policy order
WHY: A fake "order paid" webhook must never mint a commission

REFERENCES:
  - raff/services/attribution/signature.py
"""

import hashlib
import hmac

import pytest

from raff.errors import AuthenticationError, ConfigurationError
from raff.models import PlatformEnum
from raff.services.attribution.signature import (
    WebhookSignatureConfig,
    verify_request,
    verify_signature,
)

BODY = b'{"event":"order.created","data":{"id":1}}'
SECRET = "s3cret"


def _config(**overrides):
    values = dict(
        platform=PlatformEnum.salla,
        secret=SECRET,
        signature_header="x-salla-signature",
        mode="hmac-sha256",
        strategy_header="x-salla-security-strategy",
    )
    values.update(overrides)
    return WebhookSignatureConfig(**values)


class TestVerifySignature:
    """Unit tests for each signature mode."""

    def test_hmac_sha256_accepts_valid_digest(self):
        digest = hmac.new(SECRET.encode(), BODY, hashlib.sha256).hexdigest()
        assert verify_signature(BODY, digest, _config()) is True

    def test_hmac_sha256_accepts_prefixed_uppercase_digest(self):
        digest = hmac.new(SECRET.encode(), BODY, hashlib.sha256).hexdigest().upper()
        assert verify_signature(BODY, f"sha256={digest}", _config()) is True

    def test_hmac_sha256_rejects_tampered_body(self):
        digest = hmac.new(SECRET.encode(), BODY, hashlib.sha256).hexdigest()
        assert verify_signature(BODY + b" ", digest, _config()) is False

    def test_rejects_non_hex_signature(self):
        assert verify_signature(BODY, "not-hex-at-all", _config()) is False

    def test_rejects_odd_length_hex(self):
        assert verify_signature(BODY, "abc", _config()) is False

    def test_sha256_secret_body_order(self):
        digest = hashlib.sha256(SECRET.encode() + BODY).hexdigest()
        assert verify_signature(BODY, digest, _config(mode="sha256")) is True
        assert verify_signature(BODY, digest, _config(mode="sha256", sha256_order="body_secret")) is False

    def test_sha256_body_secret_order(self):
        digest = hashlib.sha256(BODY + SECRET.encode()).hexdigest()
        assert verify_signature(BODY, digest, _config(mode="sha256", sha256_order="body_secret")) is True

    def test_plain_mode_compares_trimmed_token(self):
        config = _config(mode="plain", platform=PlatformEnum.zid, signature_header="x-zid-signature")
        assert verify_signature(BODY, f"  {SECRET} ", config) is True
        assert verify_signature(BODY, "other", config) is False

    @pytest.mark.parametrize("signed_as,configured_mode", [
        ("hmac", "sha256"),
        ("hmac", "plain"),
        ("secret_body", "hmac-sha256"),
        ("secret_body", "plain"),
        ("body_secret", "hmac-sha256"),
        ("plain", "hmac-sha256"),
        ("plain", "sha256"),
    ])
    def test_correct_signature_for_other_mode_is_rejected(self, signed_as, configured_mode):
        signatures = {
            "hmac": hmac.new(SECRET.encode(), BODY, hashlib.sha256).hexdigest(),
            "secret_body": hashlib.sha256(SECRET.encode() + BODY).hexdigest(),
            "body_secret": hashlib.sha256(BODY + SECRET.encode()).hexdigest(),
            "plain": SECRET,
        }
        assert verify_signature(BODY, signatures[signed_as], _config(mode=configured_mode)) is False

    def test_missing_signature_or_secret(self):
        assert verify_signature(BODY, None, _config()) is False
        assert verify_signature(BODY, "   ", _config()) is False
        assert verify_signature(BODY, "abcd", _config(secret=None)) is False


class TestVerifyRequest:
    """Policy order: production secret, bypass, strategy, secret, signature."""

    def _signed_headers(self):
        return {"X-Salla-Signature": hmac.new(SECRET.encode(), BODY, hashlib.sha256).hexdigest()}

    def test_valid_request_passes(self):
        verify_request(_config(), self._signed_headers(), BODY, is_production=True)

    def test_production_without_secret_is_configuration_error(self):
        with pytest.raises(ConfigurationError):
            verify_request(_config(secret=None), self._signed_headers(), BODY, is_production=True)

    def test_production_without_secret_wins_over_skip_flag(self):
        with pytest.raises(ConfigurationError):
            verify_request(_config(secret=""), {}, BODY, is_production=True, skip_verification=True)

    def test_skip_flag_refused_in_production(self):
        with pytest.raises(ConfigurationError):
            verify_request(_config(), {}, BODY, is_production=True, skip_verification=True)

    def test_skip_flag_bypasses_outside_production(self):
        verify_request(_config(secret=None), {}, BODY, is_production=False, skip_verification=True)

    def test_missing_secret_outside_production_is_authentication_error(self):
        with pytest.raises(AuthenticationError):
            verify_request(_config(secret=None), self._signed_headers(), BODY, is_production=False)

    def test_strategy_mismatch_rejected(self):
        config = _config(expected_strategy="Signature")
        headers = {**self._signed_headers(), "X-Salla-Security-Strategy": "Token"}
        with pytest.raises(AuthenticationError) as exc_info:
            verify_request(config, headers, BODY, is_production=False)
        assert exc_info.value.message == "Invalid security strategy"

    def test_strategy_match_is_case_insensitive(self):
        config = _config(expected_strategy="Signature")
        headers = {**self._signed_headers(), "x-salla-security-strategy": "signature"}
        verify_request(config, headers, BODY, is_production=False)

    def test_missing_signature_header(self):
        with pytest.raises(AuthenticationError) as exc_info:
            verify_request(_config(), {}, BODY, is_production=False)
        assert exc_info.value.status_code == 401

    def test_invalid_signature(self):
        with pytest.raises(AuthenticationError):
            verify_request(_config(), {"x-salla-signature": "00" * 32}, BODY, is_production=False)
