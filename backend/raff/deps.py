"""Dependency providers and settings management."""

from functools import lru_cache
from typing import Literal, Optional

from fastapi import Depends
from pydantic_settings import BaseSettings, SettingsConfigDict

from .models import PlatformEnum
from .services.attribution.signature import WebhookSignatureConfig
from .workers.arq_enqueue import JobEnqueuer, make_enqueuer


SignatureMode = Literal["hmac-sha256", "sha256", "plain"]
Sha256Order = Literal["secret_body", "body_secret"]


class Settings(BaseSettings):
    """Application settings loaded from environment or .env."""

    ENVIRONMENT: str = "development"

    # Redis queue for catalog/store sync triggers (unset = triggers skipped)
    REDIS_URL: Optional[str] = None

    # Salla webhooks
    SALLA_WEBHOOK_SECRET: Optional[str] = None
    SALLA_WEBHOOK_HEADER: str = "x-salla-signature"
    SALLA_WEBHOOK_SIGNATURE_MODE: SignatureMode = "hmac-sha256"
    SALLA_WEBHOOK_SHA256_ORDER: Sha256Order = "secret_body"
    SALLA_WEBHOOK_STRATEGY_HEADER: str = "x-salla-security-strategy"
    # Expected strategy header value, e.g. "Signature" (unset = not enforced)
    SALLA_WEBHOOK_STRATEGY: Optional[str] = None
    SALLA_WEBHOOK_DELIVERY_HEADER: str = "x-salla-event-id"

    # Zid webhooks
    ZID_WEBHOOK_SECRET: Optional[str] = None
    ZID_WEBHOOK_HEADER: str = "x-zid-signature"
    ZID_WEBHOOK_SIGNATURE_MODE: SignatureMode = "plain"
    ZID_WEBHOOK_SHA256_ORDER: Sha256Order = "secret_body"
    ZID_WEBHOOK_STRATEGY_HEADER: str = "x-zid-security-strategy"
    ZID_WEBHOOK_STRATEGY: Optional[str] = None
    ZID_WEBHOOK_DELIVERY_HEADER: str = "x-zid-webhook-id"

    # Development only; refused in production
    SKIP_WEBHOOK_VERIFICATION: bool = False
    WEBHOOK_PROCESSING_TIMEOUT_SECONDS: float = 8.0
    # A RECEIVED ledger row older than this is treated as abandoned and reclaimed
    WEBHOOK_STALE_CLAIM_SECONDS: int = 300
    REFERRER_CODE_PATTERN: str = r"^(raff[-_:]|click_)[A-Za-z0-9_-]{4,64}$"

    # Fraud scoring
    RISK_SCORING_ENABLED: bool = True
    RISK_SCORE_THRESHOLD: int = 70
    RISK_TRACKING_WINDOW_MINUTES: int = 10
    RISK_TRACKING_ORDER_THRESHOLD: int = 3

    # app.installed does not re-sync a store synced more recently than this
    STORE_SYNC_COOLDOWN_SECONDS: int = 300

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    @property
    def is_production(self) -> bool:
        return self.ENVIRONMENT.strip().lower() == "production"

    def webhook_config(self, platform: PlatformEnum) -> WebhookSignatureConfig:
        """Build the signature configuration for one platform."""
        prefix = platform.value.upper()
        return WebhookSignatureConfig(
            platform=platform,
            secret=getattr(self, f"{prefix}_WEBHOOK_SECRET"),
            signature_header=getattr(self, f"{prefix}_WEBHOOK_HEADER"),
            mode=getattr(self, f"{prefix}_WEBHOOK_SIGNATURE_MODE"),
            sha256_order=getattr(self, f"{prefix}_WEBHOOK_SHA256_ORDER"),
            strategy_header=getattr(self, f"{prefix}_WEBHOOK_STRATEGY_HEADER"),
            expected_strategy=getattr(self, f"{prefix}_WEBHOOK_STRATEGY"),
            delivery_header=getattr(self, f"{prefix}_WEBHOOK_DELIVERY_HEADER"),
        )


@lru_cache()
def get_settings() -> Settings:
    """Return cached settings instance."""
    return Settings()  # type: ignore[call-arg]


def get_sync_enqueuer(settings: Settings = Depends(get_settings)) -> JobEnqueuer:
    """Return the catalog/store sync trigger bound to REDIS_URL."""
    return make_enqueuer(settings.REDIS_URL)
