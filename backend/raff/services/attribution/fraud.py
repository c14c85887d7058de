"""
Fraud Signal Detector.

WHAT:
    Scores each attributed order with pluggable heuristics and records the
    signals that fired against the commission.

WHY:
    Affiliates can farm commissions by pushing many orders through one click.
    Flagged commissions go ON_HOLD for manual review instead of being approved.

SCORING:
    risk score = sum(signal scores), capped at 100
    score >= threshold -> desired status forced to ON_HOLD

    Runs inside the attribution transaction, so every heuristic must be a
    single bounded aggregate query.

REFERENCES:
    - raff/models.py (FraudSignal, FraudSignalTypeEnum)
    - raff/services/attribution/processor.py (caller)
"""

import logging
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Sequence

from sqlalchemy import func
from sqlalchemy.orm import Session

from ...models import (
    ClickTracking,
    Commission,
    FraudSeverityEnum,
    FraudSignal,
    FraudSignalTypeEnum,
    PlatformEnum,
)

logger = logging.getLogger(__name__)

MAX_RISK_SCORE = 100


@dataclass(frozen=True)
class RiskContext:
    click: ClickTracking
    merchant_id: uuid.UUID
    platform: PlatformEnum
    store_id: Optional[str]
    order_id: str
    is_new_commission: bool
    now: datetime


@dataclass(frozen=True)
class SignalCandidate:
    signal_type: FraudSignalTypeEnum
    severity: FraudSeverityEnum
    score: int
    reason: str
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class RiskAssessment:
    """
    Outcome of one evaluation.

    Attributes:
        score: Capped sum of signal scores
        threshold: Score at which the commission is held
        signals: Heuristics that fired
    """

    score: int
    threshold: int
    signals: List[SignalCandidate] = field(default_factory=list)

    @property
    def on_hold(self) -> bool:
        return bool(self.signals) and self.score >= self.threshold


class FraudHeuristic(ABC):
    @abstractmethod
    def evaluate(self, db: Session, context: RiskContext) -> List[SignalCandidate]:
        ...


class HighFrequencyOrdersHeuristic(FraudHeuristic):
    """
    Too many commissions against one click in a short window.

    Counts commissions created for the click since (now - window), plus the
    commission this event is about to create.
    """

    def __init__(self, window_minutes: int = 10, order_threshold: int = 3, score: int = 70):
        self.window_minutes = window_minutes
        self.order_threshold = order_threshold
        self.score = score

    def evaluate(self, db: Session, context: RiskContext) -> List[SignalCandidate]:
        window_start = context.now - timedelta(minutes=self.window_minutes)
        recent = (
            db.query(func.count(Commission.id))
            .filter(
                Commission.click_tracking_id == context.click.id,
                Commission.created_at >= window_start,
            )
            .scalar()
        ) or 0
        order_count = recent + (1 if context.is_new_commission else 0)

        if order_count < self.order_threshold:
            return []

        return [SignalCandidate(
            signal_type=FraudSignalTypeEnum.high_frequency_orders,
            severity=FraudSeverityEnum.high,
            score=self.score,
            reason=f"High frequency orders: {order_count} in {self.window_minutes}m",
            metadata={
                "trackingId": context.click.tracking_id,
                "orderCount": order_count,
                "windowMinutes": self.window_minutes,
            },
        )]


class FraudSignalDetector:
    """Runs heuristics, aggregates a score, records signals once per commission."""

    def __init__(self, heuristics: Sequence[FraudHeuristic], threshold: int = 70):
        self.heuristics = list(heuristics)
        self.threshold = threshold

    @classmethod
    def default(cls, *, window_minutes: int = 10, order_threshold: int = 3, threshold: int = 70) -> "FraudSignalDetector":
        return cls(
            [HighFrequencyOrdersHeuristic(window_minutes=window_minutes, order_threshold=order_threshold)],
            threshold=threshold,
        )

    def evaluate(self, db: Session, context: RiskContext) -> RiskAssessment:
        signals: List[SignalCandidate] = []
        for heuristic in self.heuristics:
            signals.extend(heuristic.evaluate(db, context))

        score = min(MAX_RISK_SCORE, sum(signal.score for signal in signals))
        assessment = RiskAssessment(score=score, threshold=self.threshold, signals=signals)

        if signals:
            logger.warning(
                f"[FRAUD] Order {context.order_id} scored {score} "
                f"({', '.join(s.signal_type.value for s in signals)})",
                extra={"tracking_id": context.click.tracking_id, "on_hold": assessment.on_hold},
            )
        return assessment

    def record(
        self,
        db: Session,
        assessment: RiskAssessment,
        commission: Commission,
        context: RiskContext,
    ) -> List[FraudSignal]:
        """Insert signals not yet recorded for this commission."""
        created: List[FraudSignal] = []
        for candidate in assessment.signals:
            already = (
                db.query(FraudSignal.id)
                .filter(
                    FraudSignal.commission_id == commission.id,
                    FraudSignal.signal_type == candidate.signal_type,
                )
                .first()
            )
            if already is not None:
                continue

            signal = FraudSignal(
                merchant_id=context.merchant_id,
                platform=context.platform,
                store_id=context.store_id,
                click_tracking_id=context.click.id,
                order_id=context.order_id,
                commission_id=commission.id,
                signal_type=candidate.signal_type,
                severity=candidate.severity,
                score=candidate.score,
                reason=candidate.reason,
                signal_metadata={**candidate.metadata, "riskScore": assessment.score},
            )
            db.add(signal)
            created.append(signal)

        if created:
            db.flush()
        return created
