"""
Settlement schemas - agreed terms, fee breakdown, payouts and audit
"""
from datetime import date, datetime
from typing import Dict, List, Literal, Optional
from pydantic import BaseModel, Field

from popup_engine.schemas.common import DateRange, FrozenModel, Role
from popup_engine.schemas.fraud import CancellationPolicy


# ============================================================
# AGREED TERMS
# ============================================================

class PerformanceBonus(FrozenModel):
    threshold: int = Field(..., ge=0)
    bonus_amount: int = Field(..., ge=0)


class ScheduledPayment(FrozenModel):
    id: str
    amount: int
    due_date: Optional[date] = None
    trigger: Literal[
        "contract_signed", "funding_complete", "popup_start", "popup_end", "settlement"
    ]
    status: Literal["pending", "paid", "overdue"] = "pending"


class PaymentSchedule(FrozenModel):
    type: Literal["advance", "deferred", "split"] = "deferred"
    payments: List[ScheduledPayment] = []


class AgreedTerms(FrozenModel):
    """Contractual terms frozen when negotiation concludes"""
    base_fee: int = Field(..., ge=0)
    commission_rate: float = Field(..., ge=0.0, le=1.0)
    performance_bonus: Optional[PerformanceBonus] = None
    payment_schedule: PaymentSchedule = PaymentSchedule()
    popup_dates: DateRange
    live_show_dates: List[date] = []
    responsibilities: Dict[str, List[str]] = {}
    exclusivity: bool = False
    content_rights: Literal["leader", "brand", "shared"] = "shared"
    cancellation_policy: CancellationPolicy
    ticket_price: Optional[int] = None


# ============================================================
# SALES / FEES / PAYOUTS
# ============================================================

class SalesInput(BaseModel):
    gross_sales: int = Field(..., ge=0)
    refunds: int = Field(0, ge=0)
    leader_attributed_sales: int = Field(0, ge=0)


class SalesSummary(FrozenModel):
    gross_sales: int
    refunds: int
    net_sales: int
    leader_attributed_sales: int
    direct_sales: int


class FeeBreakdown(FrozenModel):
    platform_fee: int
    payment_processing_fee: int
    brand_net_revenue: int
    leader_base_fee: int
    leader_commission: int
    leader_bonus: int
    leader_total: int


PayoutStatus = Literal["scheduled", "held", "processing", "completed", "failed"]


class PayoutRecord(FrozenModel):
    id: str
    recipient: Literal["leader", "brand"]
    amount: int
    currency: str = "KRW"
    scheduled_date: date
    processed_at: Optional[datetime] = None
    status: PayoutStatus = "scheduled"
    method: Literal["bank_transfer", "platform_credit"] = "bank_transfer"
    reference: Optional[str] = None


# ============================================================
# AUDIT
# ============================================================

class TransactionLog(FrozenModel):
    amount: int
    verified: bool


class SalesVerification(FrozenModel):
    reported: int
    verified: int
    discrepancy: int
    evidence: List[str] = []


class AttendanceCheck(FrozenModel):
    expected: int
    verified: int
    method: Literal["qr", "gps", "manual", "mixed"]


class ReferralCheck(FrozenModel):
    claimed_referrals: int
    verified_referrals: int
    tracking_method: str = "referral_link"


class ApprovalQuorum(FrozenModel):
    """
    Three named votes gating fund release.

    Completion requires every party; votes are recorded by returning a
    new quorum, never by flipping flags in place.
    """
    leader_approved: bool = False
    brand_approved: bool = False
    platform_approved: bool = False
    approved_at: Optional[datetime] = None

    @property
    def is_complete(self) -> bool:
        return self.leader_approved and self.brand_approved and self.platform_approved

    def has_voted(self, party: Role) -> bool:
        return getattr(self, f"{party}_approved")

    def pending_parties(self) -> List[str]:
        return [p for p in ("leader", "brand", "platform") if not self.has_voted(p)]

    def approve(self, party: Role, at: datetime) -> "ApprovalQuorum":
        voted = self.model_copy(update={f"{party}_approved": True})
        if voted.is_complete and voted.approved_at is None:
            voted = voted.model_copy(update={"approved_at": at})
        return voted


class DisputeRecord(FrozenModel):
    """A raised settlement dispute; halts payout until resolved"""
    raised_by: Literal["leader", "brand", "platform"]
    raised_at: datetime
    reason: str
    status: Literal["open", "investigating", "resolved"] = "open"
    resolution: Optional[str] = None
    resolved_at: Optional[datetime] = None


class SettlementAudit(FrozenModel):
    id: str
    popup_id: str
    status: Literal["pending", "verified", "disputed", "resolved"]
    sales_verification: SalesVerification
    attendance_verification: AttendanceCheck
    leader_contribution_verification: ReferralCheck
    final_approval: ApprovalQuorum = ApprovalQuorum()
    created_at: datetime


SettlementStatus = Literal[
    "calculating", "pending_approval", "approved", "processing", "completed", "disputed"
]


class SettlementData(FrozenModel):
    status: SettlementStatus
    calculated_at: datetime
    completed_at: Optional[datetime] = None
    sales_summary: SalesSummary
    fee_breakdown: FeeBreakdown
    payouts: List[PayoutRecord] = []
    flags: List[str] = []
    audit: Optional[SettlementAudit] = None
    dispute: Optional[DisputeRecord] = None
