"""
Attribution Matcher.

WHAT:
    Finds the ClickTracking row credited for an order.

WHY:
    An order's first attributed event links it to a click for good. Later
    status updates must keep that link even after the click's window closed,
    otherwise a late "paid" webhook would orphan a pending commission.

LOOKUP ORDER:
    1. Existing commission for (merchant, order) -> reuse its click (expiry ignored)
    2. Referrer code passes the format check -> unexpired click for this merchant
    3. Otherwise -> no attribution (organic order, not an error)
"""

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from sqlalchemy.orm import Session

from ...models import ClickTracking, Commission
from .normalizer import DEFAULT_REFERRER_PATTERN, is_valid_referrer

logger = logging.getLogger(__name__)


NO_MATCH_MESSAGES = {
    "no_referrer": "No referrer code on order",
    "invalid_referrer": "Referrer code format not recognized",
    "click_not_found": "No matching click tracking found",
    "click_expired": "Click tracking expired",
}


@dataclass
class AttributionMatch:
    """Matcher outcome.

    Attributes:
        click: Credited click, None when unattributed
        commission: Existing commission for the order, if any
        reason: existing_commission | click | one of NO_MATCH_MESSAGES keys
    """

    click: Optional[ClickTracking]
    commission: Optional[Commission]
    reason: str

    @property
    def matched(self) -> bool:
        return self.click is not None

    @property
    def message(self) -> str:
        return NO_MATCH_MESSAGES.get(self.reason, "Attributed")


def _find_commission(db: Session, merchant_id: uuid.UUID, order_id: str) -> Optional[Commission]:
    # Row lock serializes concurrent deliveries for the same order (no-op on SQLite)
    return (
        db.query(Commission)
        .filter(Commission.merchant_id == merchant_id, Commission.order_id == order_id)
        .with_for_update()
        .first()
    )


def match(
    db: Session,
    referrer_code: Optional[str],
    merchant_id: uuid.UUID,
    order_id: str,
    *,
    now: Optional[datetime] = None,
    pattern: str = DEFAULT_REFERRER_PATTERN,
) -> AttributionMatch:
    now = now or datetime.utcnow()

    existing = _find_commission(db, merchant_id, order_id)
    if existing is not None:
        return AttributionMatch(click=existing.click_tracking, commission=existing, reason="existing_commission")

    if not referrer_code:
        return AttributionMatch(click=None, commission=None, reason="no_referrer")

    if not is_valid_referrer(referrer_code, pattern):
        logger.info(f"[ATTRIBUTION] Ignoring malformed referrer code for order {order_id}")
        return AttributionMatch(click=None, commission=None, reason="invalid_referrer")

    click = (
        db.query(ClickTracking)
        .filter(
            ClickTracking.tracking_id == referrer_code.strip(),
            ClickTracking.merchant_id == merchant_id,
        )
        .first()
    )
    if click is None:
        return AttributionMatch(click=None, commission=None, reason="click_not_found")

    if click.expires_at is not None and click.expires_at <= now:
        logger.info(f"[ATTRIBUTION] Click {click.tracking_id} expired before order {order_id}")
        return AttributionMatch(click=None, commission=None, reason="click_expired")

    return AttributionMatch(click=click, commission=None, reason="click")
