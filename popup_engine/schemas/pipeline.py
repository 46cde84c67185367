"""
Leader popup pipeline schemas

The pipeline state is a tagged union on `stage`: each variant carries
exactly the stage blocks that exist at that point of the lifecycle, so a
funding pipeline without a signed contract cannot even be constructed.
"""
from datetime import date, datetime
from typing import Annotated, Any, Dict, List, Literal, Optional, Union
from pydantic import BaseModel, Field, model_validator

from popup_engine.errors import IllegalTransition
from popup_engine.schemas.common import Actor, DateRange, FrozenModel, Role
from popup_engine.schemas.fraud import (
    MarketComparable, NoShowFactors, NoShowForecast, PriceFairnessCheck,
    RefundResult, TrustTier,
)
from popup_engine.schemas.settlement import (
    AgreedTerms, AttendanceCheck, PerformanceBonus, ReferralCheck,
    SalesInput, SettlementData, TransactionLog,
)


Stage = Literal[
    "proposal", "matching", "negotiation", "contract", "funding",
    "execution", "settlement", "completed", "cancelled",
]

STAGE_ORDER: List[str] = [
    "proposal", "matching", "negotiation", "contract",
    "funding", "execution", "settlement", "completed",
]


# ============================================================
# STAGE 1: PROPOSAL
# ============================================================

class ProposalConcept(FrozenModel):
    title: str = ""
    description: str = ""
    category: str = ""
    target_audience: str = ""
    unique_value: str = ""


class LeaderRole(FrozenModel):
    participation_type: Literal["host", "collaborator", "ambassador"] = "host"
    content_plan: List[str] = []
    promotion_channels: List[str] = []
    expected_reach: int = Field(0, ge=0)


class BudgetRange(FrozenModel):
    min: int = Field(0, ge=0)
    max: int = Field(0, ge=0)


class RevenueExpectation(FrozenModel):
    base_fee: int = Field(0, ge=0)
    commission_rate: float = Field(0.1, ge=0.0, le=1.0)


class DesiredTerms(FrozenModel):
    preferred_brands: List[str] = []
    excluded_brands: List[str] = []
    budget_range: BudgetRange = BudgetRange()
    preferred_dates: List[date] = []
    flexible_dates: bool = True
    duration_days: int = Field(7, ge=1)
    revenue_expectation: RevenueExpectation = RevenueExpectation()


class ProposalDraft(BaseModel):
    """Leader input when opening a pipeline"""
    concept: ProposalConcept = ProposalConcept()
    leader_role: LeaderRole = LeaderRole()
    desired_terms: DesiredTerms = DesiredTerms()


class ProposalData(FrozenModel):
    status: Literal["draft", "submitted", "reviewed", "approved", "rejected"] = "draft"
    submitted_at: Optional[datetime] = None
    reviewed_at: Optional[datetime] = None
    rejection_reason: Optional[str] = None
    concept: ProposalConcept = ProposalConcept()
    leader_role: LeaderRole = LeaderRole()
    desired_terms: DesiredTerms = DesiredTerms()


# ============================================================
# STAGE 2: MATCHING
# ============================================================

class BrandCandidate(FrozenModel):
    brand_id: str
    brand_name: str
    match_score: float = Field(0.0, ge=0, le=100)
    trust_score: Optional[float] = None
    trust_tier: TrustTier = "verified"
    interest_level: Literal["high", "medium", "low", "pending"] = "pending"
    response_at: Optional[datetime] = None


class MatchingData(FrozenModel):
    status: Literal["pending", "matching", "matched", "no_match"] = "pending"
    started_at: datetime
    matched_at: Optional[datetime] = None
    candidates: List[BrandCandidate] = []
    selected_brand_id: Optional[str] = None
    matching_score: Optional[float] = None


# ============================================================
# STAGE 3: NEGOTIATION
# ============================================================

class OfferTerms(FrozenModel):
    base_fee: int = Field(..., ge=0)
    commission_rate: float = Field(..., ge=0.0, le=1.0)
    performance_bonus: Optional[PerformanceBonus] = None
    payment_terms: Literal["advance", "deferred", "split"] = "deferred"
    popup_dates: DateRange
    live_show_dates: List[date] = []
    setup_days: int = Field(1, ge=0)
    leader_responsibilities: List[str] = []
    brand_responsibilities: List[str] = []
    exclusivity: bool = False
    content_rights: Literal["leader", "brand", "shared"] = "shared"
    ticket_price: Optional[int] = Field(None, gt=0)


class NegotiationOffer(FrozenModel):
    id: str
    from_party: Role
    created_at: datetime
    status: Literal["pending", "accepted", "countered", "rejected"] = "pending"
    terms: OfferTerms
    notes: Optional[str] = None
    fairness: Optional[PriceFairnessCheck] = None


class NegotiationData(FrozenModel):
    status: Literal["initial", "counter", "reviewing", "agreed", "failed"] = "initial"
    started_at: datetime
    agreed_at: Optional[datetime] = None
    offers: List[NegotiationOffer] = []
    agreed_terms: Optional[AgreedTerms] = None
    negotiation_rounds: int = 0
    last_activity: datetime

    @property
    def current_offer(self) -> Optional[NegotiationOffer]:
        return self.offers[-1] if self.offers else None


# ============================================================
# STAGE 4: CONTRACT
# ============================================================

SIGNING_PARTIES = ("leader", "brand", "platform")


class ContractSignature(FrozenModel):
    party: Role
    signed_at: datetime
    signature_method: Literal["electronic", "physical"] = "electronic"
    signature_id: Optional[str] = None


class ContractDocument(FrozenModel):
    id: str
    version: int = 1
    template_id: str = "standard-v1"
    terms: AgreedTerms
    signatures: List[ContractSignature] = []
    document_url: Optional[str] = None

    def signed_by(self, party: str) -> bool:
        return any(s.party == party for s in self.signatures)

    @property
    def fully_signed(self) -> bool:
        return all(self.signed_by(p) for p in SIGNING_PARTIES)


class ContractData(FrozenModel):
    status: Literal["drafting", "review", "signing", "signed", "voided"] = "signing"
    drafted_at: datetime
    signed_at: Optional[datetime] = None
    contract: ContractDocument


# ============================================================
# STAGE 5: FUNDING
# ============================================================

class FundingGoals(FrozenModel):
    min_participants: int = Field(..., ge=1)
    target_participants: int = Field(..., ge=1)
    deadline: datetime

    @model_validator(mode="after")
    def _target_covers_minimum(self):
        if self.target_participants < self.min_participants:
            raise ValueError("target_participants must be >= min_participants")
        return self


class FundingProgress(FrozenModel):
    current_participants: int = 0
    pledged_amount: int = 0
    progress_rate: float = 0.0
    projected_completion: Optional[date] = None


class LeaderImpact(FrozenModel):
    referrals: int = 0
    content_views: int = 0
    conversions: int = 0
    referral_rate: float = 0.0
    conversion_rate: float = 0.0
    impact_score: float = 0.0


class FundingData(FrozenModel):
    status: Literal["preparing", "live", "successful", "failed", "extended"] = "live"
    launched_at: datetime
    ended_at: Optional[datetime] = None
    goals: FundingGoals
    progress: FundingProgress = FundingProgress()
    leader_impact: LeaderImpact = LeaderImpact()
    override_applied: bool = False
    no_show_forecast: Optional[NoShowForecast] = None


# ============================================================
# STAGE 6: EXECUTION
# ============================================================

class LiveShow(FrozenModel):
    id: str
    actual_start_at: datetime
    actual_end_at: Optional[datetime] = None
    status: Literal["scheduled", "live", "completed", "cancelled"] = "live"


class RealTimeMetrics(FrozenModel):
    total_visitors: int = 0
    current_visitors: int = 0
    total_sales: int = 0
    avg_transaction_value: float = 0.0
    leader_generated_sales: int = 0
    satisfaction_score: Optional[float] = None


class ExecutionData(FrozenModel):
    status: Literal["setup", "running", "live_active", "completed", "cancelled"] = "setup"
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    live_shows: List[LiveShow] = []
    real_time_metrics: RealTimeMetrics = RealTimeMetrics()


# ============================================================
# CANCELLATION
# ============================================================

class CancellationRecord(FrozenModel):
    cancelled_at: datetime
    cancelled_by: Actor
    previous_stage: Stage
    reason: str = ""
    refund: Optional[RefundResult] = None


# ============================================================
# STATE VARIANTS
# ============================================================

def _require_signed(contract: ContractData) -> None:
    if contract.status != "signed" or not contract.contract.fully_signed:
        raise ValueError("stage requires a contract signed by leader, brand and platform")


class ProposalState(FrozenModel):
    stage: Literal["proposal"] = "proposal"
    proposal: ProposalData


class MatchingState(FrozenModel):
    stage: Literal["matching"] = "matching"
    proposal: ProposalData
    matching: MatchingData


class NegotiationState(FrozenModel):
    stage: Literal["negotiation"] = "negotiation"
    proposal: ProposalData
    matching: MatchingData
    negotiation: NegotiationData


class ContractState(FrozenModel):
    stage: Literal["contract"] = "contract"
    proposal: ProposalData
    matching: MatchingData
    negotiation: NegotiationData
    contract: ContractData


class FundingState(FrozenModel):
    stage: Literal["funding"] = "funding"
    proposal: ProposalData
    matching: MatchingData
    negotiation: NegotiationData
    contract: ContractData
    funding: FundingData

    @model_validator(mode="after")
    def _contract_signed(self):
        _require_signed(self.contract)
        return self


class ExecutionState(FrozenModel):
    stage: Literal["execution"] = "execution"
    proposal: ProposalData
    matching: MatchingData
    negotiation: NegotiationData
    contract: ContractData
    funding: FundingData
    execution: ExecutionData

    @model_validator(mode="after")
    def _contract_signed(self):
        _require_signed(self.contract)
        return self


class SettlementState(FrozenModel):
    stage: Literal["settlement"] = "settlement"
    proposal: ProposalData
    matching: MatchingData
    negotiation: NegotiationData
    contract: ContractData
    funding: FundingData
    execution: ExecutionData
    settlement: SettlementData

    @model_validator(mode="after")
    def _contract_signed(self):
        _require_signed(self.contract)
        return self


class CompletedState(FrozenModel):
    stage: Literal["completed"] = "completed"
    proposal: ProposalData
    matching: MatchingData
    negotiation: NegotiationData
    contract: ContractData
    funding: FundingData
    execution: ExecutionData
    settlement: SettlementData

    @model_validator(mode="after")
    def _settled(self):
        _require_signed(self.contract)
        if self.settlement.status != "completed":
            raise ValueError("completed pipeline requires a completed settlement")
        return self


class CancelledState(FrozenModel):
    """Terminal; keeps whatever blocks existed when the pipeline was cancelled"""
    stage: Literal["cancelled"] = "cancelled"
    cancellation: CancellationRecord
    proposal: ProposalData
    matching: Optional[MatchingData] = None
    negotiation: Optional[NegotiationData] = None
    contract: Optional[ContractData] = None
    funding: Optional[FundingData] = None
    execution: Optional[ExecutionData] = None
    settlement: Optional[SettlementData] = None


PipelineState = Annotated[
    Union[
        ProposalState, MatchingState, NegotiationState, ContractState,
        FundingState, ExecutionState, SettlementState, CompletedState,
        CancelledState,
    ],
    Field(discriminator="stage"),
]


# ============================================================
# TIMELINE & COMMUNICATION
# ============================================================

class TimelineEvent(FrozenModel):
    id: str
    timestamp: datetime
    stage: Stage
    event_type: str
    description: str
    actor: Actor
    request_id: Optional[str] = None
    metadata: Dict[str, Any] = {}


class PipelineMessage(FrozenModel):
    id: str
    timestamp: datetime
    sender: Role
    recipient: Role
    subject: str
    content: str
    attachments: List[str] = []
    read_at: Optional[datetime] = None


class PipelineDocument(FrozenModel):
    id: str
    uploaded_at: datetime
    uploaded_by: Role
    type: Literal["proposal", "contract", "invoice", "report", "other"] = "other"
    name: str
    url: str
    size: int = Field(0, ge=0)


class Pipeline(FrozenModel):
    """One leader-initiated campaign; `version` guards concurrent writes"""
    id: str
    leader_id: str
    brand_id: Optional[str] = None
    popup_id: Optional[str] = None
    version: int = 0
    created_at: datetime
    updated_at: datetime
    state: PipelineState
    timeline: List[TimelineEvent] = []
    messages: List[PipelineMessage] = []
    documents: List[PipelineDocument] = []

    @property
    def stage(self) -> str:
        return self.state.stage

    @property
    def is_terminal(self) -> bool:
        return self.stage in ("completed", "cancelled")


# ============================================================
# ACTIONS
# ============================================================

class ActionRequest(BaseModel):
    action: str
    request_id: Optional[str] = None
    expected_version: Optional[int] = None
    payload: Dict[str, Any] = {}

    class Config:
        json_schema_extra = {
            "example": {
                "action": "sign_contract",
                "request_id": "req-2f1c",
                "payload": {}
            }
        }


class Rejection(FrozenModel):
    rule: str
    message: str


class ActionResult(FrozenModel):
    accepted: bool
    pipeline: Pipeline
    rejection: Optional[Rejection] = None

    def raise_for_rejection(self) -> "ActionResult":
        if self.rejection is not None:
            raise IllegalTransition(
                self.rejection.rule,
                self.rejection.message,
                {"pipeline_id": self.pipeline.id, "stage": self.pipeline.stage}
            )
        return self


# Per-action payloads

class RejectProposalPayload(BaseModel):
    reason: str = ""


class ShortlistPayload(BaseModel):
    candidates: List[BrandCandidate] = Field(..., min_length=1)


class AcceptMatchPayload(BaseModel):
    brand_id: str


class OfferPayload(BaseModel):
    terms: OfferTerms
    comparables: List[MarketComparable] = []
    notes: Optional[str] = None


class DraftContractPayload(BaseModel):
    template_id: str = "standard-v1"
    document_url: Optional[str] = None


class SignContractPayload(BaseModel):
    signature_method: Literal["electronic", "physical"] = "electronic"
    signature_id: Optional[str] = None


class LaunchFundingPayload(BaseModel):
    goals: FundingGoals


class ParticipationPayload(BaseModel):
    new_participants: int = Field(0, ge=0)
    pledged_amount: int = Field(0, ge=0)
    referrals: int = Field(0, ge=0)
    content_views: int = Field(0, ge=0)
    conversions: int = Field(0, ge=0)


class CloseFundingPayload(BaseModel):
    override: bool = False
    participants: List[NoShowFactors] = []


class SalesReportPayload(BaseModel):
    total_visitors: int = Field(0, ge=0)
    current_visitors: int = Field(0, ge=0)
    total_sales: int = Field(0, ge=0)
    transactions: int = Field(0, ge=0)
    leader_generated_sales: int = Field(0, ge=0)
    satisfaction_score: Optional[float] = Field(None, ge=0, le=5)


class OpenSettlementPayload(BaseModel):
    sales: SalesInput
    transactions: List[TransactionLog] = []
    attendance: Optional[AttendanceCheck] = None
    referrals: Optional[ReferralCheck] = None


class DisputePayload(BaseModel):
    reason: str = Field(..., min_length=1)


class ResolveDisputePayload(BaseModel):
    resolution: str = Field(..., min_length=1)


class CancelPayload(BaseModel):
    reason: str = ""
    exception_reason: Optional[str] = None


# ============================================================
# METRICS
# ============================================================

class PipelineMetrics(FrozenModel):
    stage_conversion_rates: Dict[str, float]
    avg_time_per_stage: Dict[str, float]
    total_pipelines: int
    active_pipelines: int
    completed_pipelines: int
    total_revenue: int
    avg_revenue_per_pipeline: float
