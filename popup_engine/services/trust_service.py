"""
Trust Service - leader and brand trust scores

overall = weighted base from performance metrics + recent event impacts,
clamped to [0, 100]. Only events from the last few calendar months count.
"""
import calendar
import logging
import math
from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel
from sqlalchemy.orm import Session

from popup_engine.config import settings
from popup_engine.db.models import TrustHistory
from popup_engine.errors import ValidationError
from popup_engine.schemas.common import as_utc
from popup_engine.schemas.fraud import (
    TrustComponents, TrustEvent, TrustMetrics, TrustScore,
)

logger = logging.getLogger(__name__)

MAX_EVENT_IMPACT = 10

# (minimum overall, minimum verification level, tier); first match wins
TIER_RULES = [
    (90, 3, "elite"),
    (70, 2, "trusted"),
    (0, 1, "verified"),
]


class TrustWeights(BaseModel):
    reliability: float = 0.35
    satisfaction: float = 0.30
    fairness: float = 0.20
    transparency: float = 0.15

    @classmethod
    def from_settings(cls) -> "TrustWeights":
        return cls(
            reliability=settings.TRUST_WEIGHT_RELIABILITY,
            satisfaction=settings.TRUST_WEIGHT_SATISFACTION,
            fairness=settings.TRUST_WEIGHT_FAIRNESS,
            transparency=settings.TRUST_WEIGHT_TRANSPARENCY,
        )


def months_before(moment: datetime, months: int) -> datetime:
    """Same wall-clock time `months` calendar months earlier, day clamped to month end"""
    month_index = moment.year * 12 + (moment.month - 1) - months
    year, month = divmod(month_index, 12)
    month += 1
    day = min(moment.day, calendar.monthrange(year, month)[1])
    return moment.replace(year=year, month=month, day=day)


def _check_range(name: str, value: float, low: float, high: float) -> None:
    if not (math.isfinite(value) and low <= value <= high):
        raise ValidationError(
            f"{name} must be within [{low}, {high}]",
            {name: value}
        )


class TrustService:
    """Trust score engine with a persisted event history per subject"""

    def __init__(self, weights: TrustWeights = None, history_months: int = None):
        self.weights = weights or TrustWeights.from_settings()
        self.history_months = (
            history_months if history_months is not None else settings.TRUST_HISTORY_MONTHS
        )

    @staticmethod
    def validate_metrics(metrics: TrustMetrics) -> None:
        _check_range("completion_rate", metrics.completion_rate, 0, 1)
        _check_range("avg_satisfaction", metrics.avg_satisfaction, 0, 5)
        _check_range("dispute_rate", metrics.dispute_rate, 0, 1)
        _check_range("verification_level", metrics.verification_level, 0, 3)

    @staticmethod
    def validate_event(event: TrustEvent) -> None:
        _check_range("impact", event.impact, -MAX_EVENT_IMPACT, MAX_EVENT_IMPACT)

    @staticmethod
    def tier(overall: float, verification_level: int) -> str:
        for min_overall, min_level, tier in TIER_RULES:
            if overall >= min_overall and verification_level >= min_level:
                return tier
        return "unverified"

    def calculate(
        self,
        metrics: TrustMetrics,
        events: List[TrustEvent],
        now: datetime,
        weights: TrustWeights = None
    ) -> TrustScore:
        self.validate_metrics(metrics)
        for event in events:
            self.validate_event(event)
        w = weights or self.weights

        components = TrustComponents(
            reliability=metrics.completion_rate * 100,
            satisfaction=metrics.avg_satisfaction / 5 * 100,
            fairness=(1 - metrics.dispute_rate) * 100,
            transparency=metrics.verification_level / 3 * 100
        )
        base = (
            w.reliability * components.reliability
            + w.satisfaction * components.satisfaction
            + w.fairness * components.fairness
            + w.transparency * components.transparency
        )

        cutoff = months_before(as_utc(now), self.history_months)
        recent = [e for e in events if as_utc(e.timestamp) > cutoff]
        modifier = sum(e.impact for e in recent)

        overall = round(min(100.0, max(0.0, base + modifier)), 2)
        return TrustScore(
            overall=overall,
            components=components,
            history_modifier=round(modifier, 2),
            history=sorted(recent, key=lambda e: as_utc(e.timestamp)),
            tier=self.tier(overall, metrics.verification_level)
        )

    def record_event(self, db: Session, subject_id: str, event: TrustEvent) -> TrustEvent:
        self.validate_event(event)
        db.add(TrustHistory(
            subject_id=subject_id,
            timestamp=event.timestamp,
            type=event.type,
            category=event.category,
            description=event.description,
            impact=event.impact
        ))
        db.commit()
        logger.info(
            f"Trust event for {subject_id}: {event.category} ({event.type}, {event.impact:+})"
        )
        return event

    def get_events(
        self,
        db: Session,
        subject_id: str,
        since: Optional[datetime] = None
    ) -> List[TrustEvent]:
        query = db.query(TrustHistory).filter(TrustHistory.subject_id == subject_id)
        if since is not None:
            query = query.filter(TrustHistory.timestamp > since)
        rows = query.order_by(TrustHistory.timestamp).all()
        return [
            TrustEvent(
                timestamp=as_utc(row.timestamp),
                type=row.type,
                category=row.category,
                description=row.description or "",
                impact=row.impact
            )
            for row in rows
        ]

    def score_subject(
        self,
        db: Session,
        subject_id: str,
        metrics: TrustMetrics,
        now: datetime
    ) -> TrustScore:
        """Trust score from the stored history of `subject_id`"""
        return self.calculate(metrics, self.get_events(db, subject_id), now)


# Singleton instance
trust_service = TrustService()
