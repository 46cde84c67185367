"""
Anti-fraud and trust schemas

Price fairness, no-show risk, cancellation policy and trust score types.
"""
import datetime as dt
from datetime import datetime
from typing import List, Literal, Optional
from pydantic import BaseModel, Field

from popup_engine.schemas.common import FrozenModel


# ============================================================
# PRICE FAIRNESS
# ============================================================

FairnessVerdict = Literal["fair", "slightly_high", "overpriced", "suspicious"]


class MarketComparable(FrozenModel):
    price: float = Field(..., gt=0)
    source: str = "unknown"
    date: Optional[dt.date] = None


class PriceFairnessCheck(FrozenModel):
    offered_price: float
    market_average: Optional[float] = None
    min_price: Optional[float] = None
    max_price: Optional[float] = None
    ratio: Optional[float] = None
    score: float
    verdict: FairnessVerdict
    comparables_count: int = 0
    flags: List[str] = []


# ============================================================
# NO-SHOW RISK
# ============================================================

class NoShowFactors(BaseModel):
    """Behavioral signals for a committed participant"""
    past_no_show_rate: float = Field(0.0, ge=0.0, le=1.0)
    late_cancellation_rate: float = Field(0.0, ge=0.0, le=1.0)
    total_participations: int = Field(0, ge=0)
    deposit_paid: bool = False
    is_free: bool = False
    hours_until_event: Optional[float] = None
    distance_km: Optional[float] = Field(None, ge=0)
    typical_distance_km: Optional[float] = Field(None, ge=0)
    reminder_opt_in: bool = True


class NoShowFactor(FrozenModel):
    name: str
    value: float
    impact: float


class NoShowPrediction(FrozenModel):
    no_show_probability: float
    expected_show_probability: float
    risk_level: Literal["low", "medium", "high"]
    factors: List[NoShowFactor] = []
    recommendations: List[str] = []
    model_version: str


class NoShowForecast(FrozenModel):
    """Aggregate forecast for a funding round"""
    participants: int
    expected_no_show_rate: float
    expected_attendance: int
    high_risk_count: int


# ============================================================
# CANCELLATION / REFUND
# ============================================================

class CancellationRule(FrozenModel):
    days_before_event: int = Field(..., ge=0)
    penalty_rate: float = Field(..., ge=0.0, le=1.0)
    refund_rate: float = Field(..., ge=0.0, le=1.0)
    description: str = ""


class CancellationPolicy(FrozenModel):
    popup_id: str
    rules: List[CancellationRule] = Field(..., min_length=1)
    exceptions: List[str] = []
    full_refund_before: int = 7
    partial_refund_before: int = 1
    no_refund_after: int = 0
    created_at: datetime


class RefundResult(FrozenModel):
    original_amount: int
    refund_amount: int
    penalty_amount: int
    days_until_event: int
    rule: CancellationRule
    exception_applied: Optional[str] = None


# ============================================================
# TRUST
# ============================================================

TrustTier = Literal["unverified", "verified", "trusted", "elite"]
TrustCategory = Literal[
    "completion", "cancellation", "noshow", "review", "dispute", "verification"
]


class TrustEvent(FrozenModel):
    timestamp: datetime
    type: Literal["positive", "negative", "neutral"]
    category: TrustCategory
    description: str = ""
    impact: float


class TrustMetrics(FrozenModel):
    """Ranges (rates 0-1, satisfaction 0-5, level 0-3) are checked by the trust engine"""
    completion_rate: float
    avg_satisfaction: float
    dispute_rate: float
    verification_level: int


class TrustComponents(FrozenModel):
    reliability: float
    transparency: float
    satisfaction: float
    fairness: float


class TrustScore(FrozenModel):
    overall: float
    components: TrustComponents
    history_modifier: float
    history: List[TrustEvent] = []
    tier: TrustTier
