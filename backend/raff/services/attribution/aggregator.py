"""
Conversion Aggregator.

WHAT:
    Keeps the running conversion totals on ClickTracking in step with
    commission transitions.

WHY:
    Dashboards read click aggregates directly. They are maintained from the
    delta of each transition inside the commission's transaction; re-summing
    all commissions would double count under concurrent writers.

DELTAS:
    not counted -> APPROVED       : +1 order, +total, +commission
    APPROVED    -> CANCELLED      : -1 order, -previous total, -previous commission (clamped at 0)
    APPROVED    -> APPROVED (money changed): +difference in total and commission
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Optional

from sqlalchemy.orm import Session

from ...models import ClickTracking, CommissionStatusEnum
from .state_machine import CommissionTransition

logger = logging.getLogger(__name__)

_ZERO = Decimal("0.00")

# PAID commissions were counted when they were approved
COUNTED_STATUSES = frozenset({CommissionStatusEnum.approved, CommissionStatusEnum.paid})


@dataclass(frozen=True)
class ConversionDelta:
    count: int
    value: Decimal
    commission: Decimal

    @property
    def is_zero(self) -> bool:
        return self.count == 0 and self.value == 0 and self.commission == 0


def compute_delta(transition: CommissionTransition) -> Optional[ConversionDelta]:
    """Delta implied by a transition, or None when aggregates are untouched."""
    if not transition.changed:
        return None

    commission = transition.commission
    was_counted = transition.previous_status in COUNTED_STATUSES
    is_counted = transition.next_status in COUNTED_STATUSES
    total = Decimal(commission.order_total or 0)
    amount = Decimal(commission.commission_amount or 0)

    if not was_counted and is_counted:
        return ConversionDelta(count=1, value=total, commission=amount)
    if was_counted and transition.next_status == CommissionStatusEnum.cancelled:
        return ConversionDelta(count=-1, value=-transition.previous_total, commission=-transition.previous_amount)
    if was_counted and is_counted:
        return ConversionDelta(
            count=0,
            value=total - transition.previous_total,
            commission=amount - transition.previous_amount,
        )
    return None


class ConversionAggregator:
    """Applies transition deltas to the credited click row."""

    def apply(
        self,
        db: Session,
        click: ClickTracking,
        transition: CommissionTransition,
        now: Optional[datetime] = None,
    ) -> Optional[ConversionDelta]:
        delta = compute_delta(transition)
        if delta is None or delta.is_zero:
            return None

        now = now or datetime.utcnow()

        # Re-read under lock so concurrent orders on one click serialize here
        locked = (
            db.query(ClickTracking)
            .filter(ClickTracking.id == click.id)
            .with_for_update()
            .populate_existing()
            .one()
        )

        locked.converted_count = max(0, (locked.converted_count or 0) + delta.count)
        locked.conversion_value = max(_ZERO, Decimal(locked.conversion_value or 0) + delta.value)
        locked.commission_value = max(_ZERO, Decimal(locked.commission_value or 0) + delta.commission)

        if delta.count > 0:
            locked.converted = True
            if locked.converted_at is None:
                locked.converted_at = now
            locked.last_converted_at = now
        elif locked.converted_count == 0:
            locked.converted = False
            locked.converted_at = None

        db.flush()

        logger.info(
            f"[CONVERSIONS] Click {locked.tracking_id}: count {delta.count:+d}, "
            f"value {delta.value:+}, commission {delta.commission:+}",
            extra={"converted_count": locked.converted_count},
        )
        return delta
