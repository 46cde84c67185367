"""
Cancellation Service - policy generation and refund computation
"""
import logging
import math
from datetime import date, datetime
from typing import List, Optional, Union

from popup_engine.errors import ValidationError
from popup_engine.schemas.fraud import CancellationPolicy, CancellationRule, RefundResult
from popup_engine.services.settlement_service import apply_rate

logger = logging.getLogger(__name__)

# (days_before_event, penalty_rate, refund_rate, description), loosest first
DEFAULT_RULES = [
    (7, 0.0, 1.0, "7+ days before: full refund"),
    (3, 0.3, 0.7, "3-6 days before: 70% refund"),
    (1, 0.5, 0.5, "1-2 days before: 50% refund"),
    (0, 1.0, 0.0, "Event day: no refund"),
]

DEFAULT_EXCEPTIONS = [
    "force_majeure",
    "brand_cancellation",
    "platform_outage",
    "illness_with_certificate",
]

SECONDS_PER_DAY = 86400


def _as_datetime(value: Union[date, datetime], tz) -> datetime:
    if isinstance(value, datetime):
        return value
    return datetime(value.year, value.month, value.day, tzinfo=tz)


class CancellationService:
    """Tiered refunds by days remaining before the event"""

    def generate_policy(self, popup_id: str, created_at: datetime) -> CancellationPolicy:
        return CancellationPolicy(
            popup_id=popup_id,
            rules=[
                CancellationRule(
                    days_before_event=days,
                    penalty_rate=penalty,
                    refund_rate=refund,
                    description=description
                )
                for days, penalty, refund, description in DEFAULT_RULES
            ],
            exceptions=list(DEFAULT_EXCEPTIONS),
            created_at=created_at
        )

    @staticmethod
    def days_until_event(
        event_date: Union[date, datetime],
        cancellation_time: Union[date, datetime]
    ) -> int:
        """Whole days remaining, floored; negative once the event has started"""
        if isinstance(cancellation_time, datetime):
            tz = cancellation_time.tzinfo
        else:
            tz = event_date.tzinfo if isinstance(event_date, datetime) else None
        event = _as_datetime(event_date, tz)
        cancelled = _as_datetime(cancellation_time, event.tzinfo)
        return math.floor((event - cancelled).total_seconds() / SECONDS_PER_DAY)

    @staticmethod
    def select_rule(policy: CancellationPolicy, days: int) -> CancellationRule:
        """Largest threshold not above `days`; the strictest rule when none qualifies"""
        ordered: List[CancellationRule] = sorted(
            policy.rules, key=lambda r: r.days_before_event, reverse=True
        )
        for rule in ordered:
            if rule.days_before_event <= days:
                return rule
        return ordered[-1]

    def calculate_refund(
        self,
        policy: CancellationPolicy,
        amount: int,
        event_date: Union[date, datetime],
        cancellation_time: Union[date, datetime],
        exception_reason: Optional[str] = None
    ) -> RefundResult:
        if amount < 0:
            raise ValidationError("amount must be non-negative", {"amount": amount})

        days = self.days_until_event(event_date, cancellation_time)
        rule = self.select_rule(policy, days)

        if exception_reason and exception_reason in policy.exceptions:
            logger.info(f"Cancellation exception '{exception_reason}' applied for {policy.popup_id}")
            return RefundResult(
                original_amount=amount,
                refund_amount=amount,
                penalty_amount=0,
                days_until_event=days,
                rule=rule,
                exception_applied=exception_reason
            )

        return RefundResult(
            original_amount=amount,
            refund_amount=apply_rate(amount, rule.refund_rate),
            penalty_amount=apply_rate(amount, rule.penalty_rate),
            days_until_event=days,
            rule=rule
        )


# Singleton instance
cancellation_service = CancellationService()
