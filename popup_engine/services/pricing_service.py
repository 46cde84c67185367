"""
Pricing Service - Price fairness evaluation

Scores an offered price against market comparables so that negotiations
and popup listings can flag overpriced or suspicious offers.
"""
import logging
from typing import List

import numpy as np
from pydantic import BaseModel

from popup_engine.config import settings
from popup_engine.errors import ValidationError
from popup_engine.schemas.fraud import MarketComparable, PriceFairnessCheck

logger = logging.getLogger(__name__)


# ============================================================
# FAIRNESS CONFIGURATION
# ============================================================

FAIRNESS_SCORES = {
    "no_data": 50.0,
    "below_market": 70.0,
    "fair_edge": 70.0,
    "slightly_high_edge": 40.0,
    "overpriced_edge": 20.0,
}

MIN_RELIABLE_COMPARABLES = 3


class FairnessThresholds(BaseModel):
    """Ratio breakpoints; override per market where prices behave differently"""
    cheap_ratio: float = 0.85
    fair_max_ratio: float = 1.15
    slightly_high_max_ratio: float = 1.30
    overpriced_max_ratio: float = 1.50
    zero_score_ratio: float = 2.0

    @classmethod
    def from_settings(cls) -> "FairnessThresholds":
        return cls(
            cheap_ratio=settings.FAIRNESS_CHEAP_RATIO,
            fair_max_ratio=settings.FAIRNESS_FAIR_MAX_RATIO,
            slightly_high_max_ratio=settings.FAIRNESS_SLIGHTLY_HIGH_MAX_RATIO,
            overpriced_max_ratio=settings.FAIRNESS_OVERPRICED_MAX_RATIO,
            zero_score_ratio=settings.FAIRNESS_ZERO_SCORE_RATIO,
        )


def _interpolate(ratio: float, start: float, end: float, high: float, low: float) -> float:
    """Linear score from `high` at ratio=start down to `low` at ratio=end"""
    return high - (ratio - start) / (end - start) * (high - low)


class PricingService:
    """
    Price fairness against comparables.

    Verdict bands on ratio = offered / market average:
    below cheap_ratio           -> fair (flagged below_market), 70
    cheap .. fair_max           -> fair, 100 at parity down to 70 at the edges
    fair_max .. slightly_high   -> slightly_high, 70 -> 40
    slightly_high .. overpriced -> overpriced, 40 -> 20
    above overpriced            -> suspicious, 20 -> 0 at zero_score_ratio
    """

    def __init__(self, thresholds: FairnessThresholds = None):
        self.thresholds = thresholds or FairnessThresholds.from_settings()

    def check_price_fairness(
        self,
        offered_price: float,
        comparables: List[MarketComparable],
        thresholds: FairnessThresholds = None
    ) -> PriceFairnessCheck:
        t = thresholds or self.thresholds
        if offered_price <= 0:
            raise ValidationError("offered_price must be positive", {"offered_price": offered_price})

        if not comparables:
            return PriceFairnessCheck(
                offered_price=offered_price,
                score=FAIRNESS_SCORES["no_data"],
                verdict="fair",
                flags=["no_market_data"]
            )

        prices = np.array([c.price for c in comparables], dtype=float)
        average = float(np.mean(prices))
        ratio = round(offered_price / average, 4)

        flags: List[str] = []
        if ratio < t.cheap_ratio:
            verdict, score = "fair", FAIRNESS_SCORES["below_market"]
            flags.append("below_market")
        elif ratio <= t.fair_max_ratio:
            verdict = "fair"
            edge = t.fair_max_ratio - 1 if ratio >= 1 else 1 - t.cheap_ratio
            score = 100 - abs(ratio - 1) / edge * (100 - FAIRNESS_SCORES["fair_edge"])
        elif ratio < t.slightly_high_max_ratio:
            verdict = "slightly_high"
            score = _interpolate(
                ratio, t.fair_max_ratio, t.slightly_high_max_ratio,
                FAIRNESS_SCORES["fair_edge"], FAIRNESS_SCORES["slightly_high_edge"]
            )
        elif ratio <= t.overpriced_max_ratio:
            verdict = "overpriced"
            score = _interpolate(
                ratio, t.slightly_high_max_ratio, t.overpriced_max_ratio,
                FAIRNESS_SCORES["slightly_high_edge"], FAIRNESS_SCORES["overpriced_edge"]
            )
        else:
            verdict = "suspicious"
            score = _interpolate(
                ratio, t.overpriced_max_ratio, t.zero_score_ratio,
                FAIRNESS_SCORES["overpriced_edge"], 0.0
            )

        if offered_price > float(np.max(prices)):
            flags.append("above_market_max")
        if len(comparables) < MIN_RELIABLE_COMPARABLES:
            flags.append("few_comparables")

        score = round(float(np.clip(score, 0, 100)), 2)
        if verdict != "fair":
            logger.info(f"Price {offered_price} flagged {verdict} (ratio={ratio}, score={score})")

        return PriceFairnessCheck(
            offered_price=offered_price,
            market_average=round(average, 2),
            min_price=float(np.min(prices)),
            max_price=float(np.max(prices)),
            ratio=ratio,
            score=score,
            verdict=verdict,
            comparables_count=len(comparables),
            flags=flags
        )


# Singleton instance
pricing_service = PricingService()
