"""
State Machine for Commissions.

WHAT:
    Merges the status implied by the current webhook with the stored
    commission status, and upserts the commission row for (merchant, order).

WHY:
    Webhooks arrive duplicated and out of order. Rather than trusting event
    timestamps, every (current, desired) pair maps to a fixed next status so
    that any two events converge on the same result in either order.

STATE TRANSITIONS (current x desired -> next):
    PENDING   -> anything it is asked to become
    APPROVED  -> stays APPROVED, except CANCELLED (and PAID)
    ON_HOLD   -> APPROVED releases it, CANCELLED cancels it, PENDING keeps it
    CANCELLED -> terminal
    PAID      -> absorbing (cancelling after payout is a finance operation)

REFERENCES:
    - raff/models.py (Commission, CommissionStatusEnum)
    - raff/services/attribution/aggregator.py (consumes CommissionTransition)
"""

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal, ROUND_HALF_UP
from typing import Dict, Optional, Tuple

from sqlalchemy.orm import Session

from ...models import ClickTracking, Commission, CommissionStatusEnum, Merchant
from .normalizer import NormalizedOrderEvent

logger = logging.getLogger(__name__)

PENDING = CommissionStatusEnum.pending
APPROVED = CommissionStatusEnum.approved
ON_HOLD = CommissionStatusEnum.on_hold
CANCELLED = CommissionStatusEnum.cancelled
PAID = CommissionStatusEnum.paid

_CENT = Decimal("0.01")


TRANSITIONS: Dict[Tuple[Optional[CommissionStatusEnum], CommissionStatusEnum], CommissionStatusEnum] = {
    # First observation: take what the event says
    (None, PENDING): PENDING,
    (None, APPROVED): APPROVED,
    (None, ON_HOLD): ON_HOLD,
    (None, CANCELLED): CANCELLED,
    (None, PAID): PAID,

    (PENDING, PENDING): PENDING,
    (PENDING, APPROVED): APPROVED,
    (PENDING, ON_HOLD): ON_HOLD,
    (PENDING, CANCELLED): CANCELLED,
    (PENDING, PAID): PAID,

    (APPROVED, PENDING): APPROVED,
    (APPROVED, APPROVED): APPROVED,
    (APPROVED, ON_HOLD): APPROVED,
    (APPROVED, CANCELLED): CANCELLED,
    (APPROVED, PAID): PAID,

    (ON_HOLD, PENDING): ON_HOLD,
    (ON_HOLD, APPROVED): APPROVED,
    (ON_HOLD, ON_HOLD): ON_HOLD,
    (ON_HOLD, CANCELLED): CANCELLED,
    (ON_HOLD, PAID): PAID,

    (CANCELLED, PENDING): CANCELLED,
    (CANCELLED, APPROVED): CANCELLED,
    (CANCELLED, ON_HOLD): CANCELLED,
    (CANCELLED, CANCELLED): CANCELLED,
    (CANCELLED, PAID): CANCELLED,

    (PAID, PENDING): PAID,
    (PAID, APPROVED): PAID,
    (PAID, ON_HOLD): PAID,
    (PAID, CANCELLED): PAID,
    (PAID, PAID): PAID,
}


def merge_status(current: Optional[CommissionStatusEnum], desired: CommissionStatusEnum) -> CommissionStatusEnum:
    return TRANSITIONS[(current, desired)]


def derive_desired_status(payment_confirmed: bool, order_cancelled: bool, on_hold: bool = False) -> CommissionStatusEnum:
    """Status the current event asks for, before merging.

    Cancellation wins over everything; a fraud hold wins over approval.
    """
    if order_cancelled:
        return CANCELLED
    if on_hold:
        return ON_HOLD
    if payment_confirmed:
        return APPROVED
    return PENDING


def compute_commission_amount(total: Decimal, rate: Decimal) -> Decimal:
    return (Decimal(total) * Decimal(rate) / Decimal(100)).quantize(_CENT, rounding=ROUND_HALF_UP)


def resolve_commission_rate(click: ClickTracking, merchant: Merchant) -> Decimal:
    """Click snapshot rate, else the merchant default."""
    rate = click.commission_rate if click.commission_rate is not None else merchant.commission_rate
    return Decimal(rate if rate is not None else 0).quantize(_CENT, rounding=ROUND_HALF_UP)


@dataclass
class CommissionTransition:
    """
    Result of applying one event to a commission.

    WHAT: Before/after snapshot of status and money
    WHY: The conversion aggregator works from deltas, never from re-summing

    Attributes:
        commission: Row after the event (flushed, not committed)
        previous_status: Stored status before the event (None if created)
        next_status: Status after merging
        created: Row was inserted by this event
        changed: Anything was written
        previous_total / previous_amount: Money before the event
    """

    commission: Commission
    previous_status: Optional[CommissionStatusEnum]
    next_status: CommissionStatusEnum
    created: bool
    changed: bool
    previous_total: Decimal = Decimal("0.00")
    previous_amount: Decimal = Decimal("0.00")

    @property
    def status_changed(self) -> bool:
        return self.previous_status != self.next_status


class CommissionStateMachine:
    """
    Upserts the commission for one order event.

    WHAT:
        - Inserts the row on first attribution
        - Otherwise merges status via TRANSITIONS and refreshes money fields
        - Skips the write when nothing would change

    WHY:
        Totals legitimately change between deliveries (discounts, partial
        refunds), so money always follows the latest event while status
        only moves as the table allows.

    A concurrent insert for the same order surfaces as IntegrityError on
    flush; the order processor retries the transaction, which then takes the
    merge path against the winner's row.
    """

    def apply(
        self,
        db: Session,
        *,
        existing: Optional[Commission],
        merchant: Merchant,
        click: ClickTracking,
        event: NormalizedOrderEvent,
        rate: Decimal,
        desired: CommissionStatusEnum,
        now: Optional[datetime] = None,
    ) -> CommissionTransition:
        now = now or datetime.utcnow()
        amount = compute_commission_amount(event.total, rate)

        if existing is None:
            return self._create(db, merchant, click, event, rate, amount, desired)
        return self._merge(db, existing, event, rate, amount, desired, now)

    def _create(self, db, merchant, click, event, rate, amount, desired) -> CommissionTransition:
        next_status = merge_status(None, desired)
        commission = Commission(
            id=uuid.uuid4(),
            click_tracking_id=click.id,
            merchant_id=merchant.id,
            platform=event.platform,
            order_id=event.order_id,
            order_total=event.total,
            order_currency=event.currency,
            commission_rate=rate,
            commission_amount=amount,
            status=next_status,
        )
        db.add(commission)
        db.flush()

        logger.info(
            f"[COMMISSION] Created {next_status.value} commission for order {event.order_id}",
            extra={"commission_id": str(commission.id), "amount": str(amount), "tracking_id": click.tracking_id},
        )
        return CommissionTransition(
            commission=commission,
            previous_status=None,
            next_status=next_status,
            created=True,
            changed=True,
        )

    def _merge(self, db, existing, event, rate, amount, desired, now) -> CommissionTransition:
        previous_status = existing.status
        previous_total = Decimal(existing.order_total or 0)
        previous_amount = Decimal(existing.commission_amount or 0)
        next_status = merge_status(previous_status, desired)

        unchanged = (
            next_status == previous_status
            and previous_total == event.total
            and previous_amount == amount
            and existing.order_currency == event.currency
            and Decimal(existing.commission_rate or 0) == rate
        )
        if unchanged:
            logger.debug(f"[COMMISSION] No change for order {event.order_id}")
            return CommissionTransition(
                commission=existing,
                previous_status=previous_status,
                next_status=next_status,
                created=False,
                changed=False,
                previous_total=previous_total,
                previous_amount=previous_amount,
            )

        existing.status = next_status
        existing.order_total = event.total
        existing.order_currency = event.currency
        existing.commission_rate = rate
        existing.commission_amount = amount
        existing.updated_at = now
        db.flush()

        if next_status != previous_status:
            logger.info(
                f"[COMMISSION] {previous_status.value} -> {next_status.value} for order {event.order_id} "
                f"(desired {desired.value})",
                extra={"commission_id": str(existing.id)},
            )

        return CommissionTransition(
            commission=existing,
            previous_status=previous_status,
            next_status=next_status,
            created=False,
            changed=True,
            previous_total=previous_total,
            previous_amount=previous_amount,
        )
