"""
Pipeline Service - leader popup deal pipeline state machine

proposal -> matching -> negotiation -> contract -> funding -> execution
-> settlement -> completed, with `cancelled` reachable from every
non-terminal stage.

Every operation is an action from PIPELINE_ACTIONS: it is gated by stage
and role, guarded by a predicate over the whole snapshot, and either
returns an updated pipeline or a named rejection. Accepted actions append
to the timeline; nothing already in the timeline is rewritten.
"""
import logging
import uuid
from datetime import datetime
from decimal import Decimal
from typing import Callable, Dict, List, NamedTuple, Optional, Tuple, Type, Union

from pydantic import BaseModel
from pydantic import ValidationError as PayloadError
from sqlalchemy.orm import Session

from popup_engine.db.repository import pipeline_repository
from popup_engine.errors import ConcurrencyConflict, IllegalTransition, ValidationError
from popup_engine.schemas.common import Actor, Role, as_utc
from popup_engine.schemas.pipeline import (
    AcceptMatchPayload, ActionRequest, ActionResult, CancellationRecord,
    CancelledState, CancelPayload, CloseFundingPayload, CompletedState,
    ContractData, ContractDocument, ContractSignature, ContractState,
    DisputePayload, DraftContractPayload, ExecutionData, ExecutionState,
    FundingData, FundingState, LaunchFundingPayload, LiveShow, MatchingData,
    MatchingState, NegotiationData, NegotiationOffer, NegotiationState,
    OfferPayload, OpenSettlementPayload, ParticipationPayload, Pipeline,
    PipelineDocument, PipelineMessage, ProposalData, ProposalDraft,
    ProposalState, RealTimeMetrics, RejectProposalPayload, Rejection,
    ResolveDisputePayload, SalesReportPayload, SettlementState,
    ShortlistPayload, SignContractPayload, TimelineEvent,
)
from popup_engine.schemas.settlement import (
    AgreedTerms, DisputeRecord, PaymentSchedule, ScheduledPayment,
)
from popup_engine.services.audit_service import audit_service
from popup_engine.services.cancellation_service import cancellation_service
from popup_engine.services.no_show_service import no_show_service
from popup_engine.services.pipeline_metrics_service import (
    funding_progress, leader_impact, project_funding_completion,
)
from popup_engine.services.pricing_service import pricing_service
from popup_engine.services.settlement_service import round_won, settlement_service

logger = logging.getLogger(__name__)


# ============================================================
# STATE MACHINE
# ============================================================

PIPELINE_TRANSITIONS: Dict[str, List[str]] = {
    "proposal": ["matching", "cancelled"],
    "matching": ["negotiation", "proposal", "cancelled"],
    "negotiation": ["contract", "matching", "cancelled"],
    "contract": ["funding", "negotiation", "cancelled"],
    "funding": ["execution", "cancelled"],
    "execution": ["settlement", "cancelled"],
    "settlement": ["completed", "cancelled"],
    "completed": [],
    "cancelled": [],
}

STATE_CLASSES = {
    "proposal": ProposalState,
    "matching": MatchingState,
    "negotiation": NegotiationState,
    "contract": ContractState,
    "funding": FundingState,
    "execution": ExecutionState,
    "settlement": SettlementState,
    "completed": CompletedState,
    "cancelled": CancelledState,
}

STAGE_BLOCKS = (
    "proposal", "matching", "negotiation", "contract",
    "funding", "execution", "settlement",
)

NON_TERMINAL_STAGES = tuple(s for s, targets in PIPELINE_TRANSITIONS.items() if targets)

# Cancelling from these stages refunds pledged participants
REFUNDABLE_STAGES = ("funding", "execution", "settlement")

LEADER: Tuple[str, ...] = ("leader",)
BRAND: Tuple[str, ...] = ("brand",)
PLATFORM: Tuple[str, ...] = ("platform",)
ANY_ROLE: Tuple[str, ...] = ("leader", "brand", "platform")


def can_transition(from_stage: str, to_stage: str) -> bool:
    return to_stage in PIPELINE_TRANSITIONS.get(from_stage, [])


class ActionContext(NamedTuple):
    role: Role
    actor_id: Optional[str]
    payload: Optional[BaseModel]
    now: datetime
    request_id: Optional[str]


Check = Callable[[Pipeline, str], Optional[Rejection]]
Effect = Callable[[Pipeline, ActionContext], Union[Pipeline, Rejection]]


class PipelineAction(NamedTuple):
    name: str
    stages: Tuple[str, ...]
    roles: Tuple[str, ...]
    check: Check
    apply: Effect
    payload: Optional[Type[BaseModel]] = None


# ============================================================
# SNAPSHOT HELPERS
# ============================================================

def _reject(rule: str, message: str) -> Rejection:
    return Rejection(rule=rule, message=message)


def _blocks(pipeline: Pipeline) -> Dict[str, BaseModel]:
    state = pipeline.state
    return {
        name: getattr(state, name)
        for name in STAGE_BLOCKS
        if getattr(state, name, None) is not None
    }


def _event(
    pipeline: Pipeline,
    stage: str,
    event_type: str,
    description: str,
    actor: Actor,
    now: datetime,
    request_id: Optional[str] = None,
    metadata: Optional[dict] = None
) -> TimelineEvent:
    return TimelineEvent(
        id=f"event-{len(pipeline.timeline) + 1}",
        timestamp=now,
        stage=stage,
        event_type=event_type,
        description=description,
        actor=actor,
        request_id=request_id,
        metadata=metadata or {}
    )


def _append(pipeline: Pipeline, event: TimelineEvent) -> Pipeline:
    return pipeline.model_copy(update={
        "timeline": [*pipeline.timeline, event],
        "updated_at": event.timestamp,
    })


def _update(pipeline: Pipeline, block: str, **changes) -> Pipeline:
    """Change fields of a block of the current stage"""
    updated = getattr(pipeline.state, block).model_copy(update=changes)
    return pipeline.model_copy(update={
        "state": pipeline.state.model_copy(update={block: updated})
    })


def _enter(pipeline: Pipeline, target: str, ctx: ActionContext, **blocks) -> Pipeline:
    """
    Move to `target`, carrying the blocks the target stage holds.

    The target state is constructed (not copied) so its invariants, such
    as the signed-contract requirement, are validated.
    """
    source = pipeline.stage
    if not can_transition(source, target):
        raise IllegalTransition(
            "invalid_transition",
            f"Cannot transition from {source} to {target}",
            {"pipeline_id": pipeline.id}
        )

    carried = _blocks(pipeline)
    carried.update(blocks)
    state_cls = STATE_CLASSES[target]
    state = state_cls(**{
        name: value for name, value in carried.items()
        if name in state_cls.model_fields and value is not None
    })

    moved = pipeline.model_copy(update={"state": state})
    logger.info(f"Pipeline {pipeline.id}: {source} -> {target} by {ctx.role}")
    return _append(moved, _event(
        moved, target, "stage_transition",
        f"Pipeline moved from {source} to {target}",
        ctx.role, ctx.now, metadata={"from": source, "to": target}
    ))


def _status_in(block: str, *statuses: str) -> Check:
    def check(pipeline: Pipeline, role: str) -> Optional[Rejection]:
        current = getattr(pipeline.state, block).status
        if current in statuses:
            return None
        return _reject(
            "invalid_status",
            f"{block} status is '{current}'; requires {' or '.join(statuses)}"
        )
    return check


def _all(*checks: Check) -> Check:
    def check(pipeline: Pipeline, role: str) -> Optional[Rejection]:
        for c in checks:
            rejection = c(pipeline, role)
            if rejection:
                return rejection
        return None
    return check


def _always(pipeline: Pipeline, role: str) -> Optional[Rejection]:
    return None


# ============================================================
# PROPOSAL
# ============================================================

def _submit_proposal(p: Pipeline, ctx: ActionContext) -> Pipeline:
    return _update(p, "proposal", status="submitted", submitted_at=ctx.now, rejection_reason=None)


def _reject_proposal(p: Pipeline, ctx: ActionContext) -> Pipeline:
    return _update(
        p, "proposal",
        status="rejected", reviewed_at=ctx.now, rejection_reason=ctx.payload.reason
    )


def _approve_proposal(p: Pipeline, ctx: ActionContext) -> Pipeline:
    approved = p.state.proposal.model_copy(update={"status": "approved", "reviewed_at": ctx.now})
    return _enter(
        p, "matching", ctx,
        proposal=approved,
        matching=MatchingData(status="pending", started_at=ctx.now)
    )


# ============================================================
# MATCHING
# ============================================================

def _shortlist_brands(p: Pipeline, ctx: ActionContext) -> Union[Pipeline, Rejection]:
    excluded = set(p.state.proposal.desired_terms.excluded_brands)
    eligible = [
        c for c in ctx.payload.candidates
        if c.trust_tier != "unverified"
        and c.brand_id not in excluded and c.brand_name not in excluded
    ]
    if not eligible:
        return _reject("no_eligible_candidates", "No shortlisted brand passed trust and exclusion checks")

    dropped = len(ctx.payload.candidates) - len(eligible)
    if dropped:
        logger.info(f"Pipeline {p.id}: {dropped} brand candidates dropped at shortlist")
    eligible.sort(key=lambda c: c.match_score, reverse=True)
    return _update(p, "matching", status="matching", candidates=eligible)


def _accept_match(p: Pipeline, ctx: ActionContext) -> Union[Pipeline, Rejection]:
    brand_id = ctx.payload.brand_id
    if ctx.actor_id and ctx.actor_id != brand_id:
        return _reject("brand_mismatch", "A brand can only accept a match on its own behalf")

    matching = p.state.matching
    candidate = next((c for c in matching.candidates if c.brand_id == brand_id), None)
    if candidate is None:
        return _reject("not_a_candidate", f"Brand {brand_id} is not on the shortlist")

    candidates = [
        c.model_copy(update={"interest_level": "high", "response_at": ctx.now})
        if c.brand_id == brand_id else c
        for c in matching.candidates
    ]
    return _update(
        p, "matching",
        status="matched",
        matched_at=ctx.now,
        selected_brand_id=brand_id,
        matching_score=candidate.match_score,
        candidates=candidates
    )


def _confirm_match(p: Pipeline, ctx: ActionContext) -> Pipeline:
    moved = _enter(
        p, "negotiation", ctx,
        negotiation=NegotiationData(started_at=ctx.now, last_activity=ctx.now)
    )
    return moved.model_copy(update={"brand_id": p.state.matching.selected_brand_id})


def _return_to_proposal(p: Pipeline, ctx: ActionContext) -> Pipeline:
    draft = p.state.proposal.model_copy(update={"status": "draft"})
    return _enter(p, "proposal", ctx, proposal=draft)


# ============================================================
# NEGOTIATION
# ============================================================

def _pending_offer(pipeline: Pipeline, role: str) -> Optional[Rejection]:
    offer = pipeline.state.negotiation.current_offer
    if offer is None or offer.status != "pending":
        return _reject("no_pending_offer", "There is no pending offer to respond to")
    if offer.from_party == role:
        return _reject("offering_party_cannot_respond", "An offer cannot be answered by the party that made it")
    return None


def _price_not_suspicious(pipeline: Pipeline, role: str) -> Optional[Rejection]:
    fairness = pipeline.state.negotiation.current_offer.fairness
    if fairness is not None and fairness.verdict == "suspicious":
        return _reject(
            "suspicious_price",
            f"Offered price is suspicious against market (ratio {fairness.ratio})"
        )
    return None


def _negotiation_open(pipeline: Pipeline, role: str) -> Optional[Rejection]:
    status = pipeline.state.negotiation.status
    if status in ("agreed", "failed"):
        return _reject("negotiation_closed", f"Negotiation is already {status}")
    return None


def _make_offer(p: Pipeline, ctx: ActionContext) -> Pipeline:
    negotiation = p.state.negotiation
    terms = ctx.payload.terms

    # Commission-only offers carry no price to compare
    fairness = None
    price = terms.ticket_price or terms.base_fee
    if ctx.payload.comparables and price > 0:
        fairness = pricing_service.check_price_fairness(price, ctx.payload.comparables)

    offers = [
        o.model_copy(update={"status": "countered"}) if o.status == "pending" else o
        for o in negotiation.offers
    ]
    offers.append(NegotiationOffer(
        id=f"offer-{len(negotiation.offers) + 1}",
        from_party=ctx.role,
        created_at=ctx.now,
        terms=terms,
        notes=ctx.payload.notes,
        fairness=fairness
    ))
    return _update(
        p, "negotiation",
        status="counter" if negotiation.offers else "initial",
        offers=offers,
        negotiation_rounds=negotiation.negotiation_rounds + 1,
        last_activity=ctx.now
    )


def _payment_schedule(pipeline_id: str, terms_type: str, base_fee: int) -> PaymentSchedule:
    if terms_type == "advance":
        parts = [(base_fee, "contract_signed")]
    elif terms_type == "split":
        first = round_won(Decimal(base_fee) / 2)
        parts = [(first, "contract_signed"), (base_fee - first, "settlement")]
    else:
        parts = [(base_fee, "settlement")]
    return PaymentSchedule(
        type=terms_type,
        payments=[
            ScheduledPayment(id=f"{pipeline_id}-payment-{i}", amount=amount, trigger=trigger)
            for i, (amount, trigger) in enumerate(parts, start=1)
        ]
    )


def _accept_offer(p: Pipeline, ctx: ActionContext) -> Pipeline:
    negotiation = p.state.negotiation
    offer = negotiation.current_offer
    t = offer.terms
    agreed = AgreedTerms(
        base_fee=t.base_fee,
        commission_rate=t.commission_rate,
        performance_bonus=t.performance_bonus,
        payment_schedule=_payment_schedule(p.id, t.payment_terms, t.base_fee),
        popup_dates=t.popup_dates,
        live_show_dates=t.live_show_dates,
        responsibilities={
            "leader": t.leader_responsibilities,
            "brand": t.brand_responsibilities,
        },
        exclusivity=t.exclusivity,
        content_rights=t.content_rights,
        cancellation_policy=cancellation_service.generate_policy(p.popup_id or p.id, ctx.now),
        ticket_price=t.ticket_price
    )
    offers = [*negotiation.offers[:-1], offer.model_copy(update={"status": "accepted"})]
    return _update(
        p, "negotiation",
        status="agreed",
        agreed_at=ctx.now,
        agreed_terms=agreed,
        offers=offers,
        last_activity=ctx.now
    )


def _reject_offer(p: Pipeline, ctx: ActionContext) -> Pipeline:
    negotiation = p.state.negotiation
    offer = negotiation.current_offer
    offers = [*negotiation.offers[:-1], offer.model_copy(update={"status": "rejected"})]
    return _update(p, "negotiation", status="reviewing", offers=offers, last_activity=ctx.now)


def _reopen_matching(p: Pipeline, ctx: ActionContext) -> Pipeline:
    matching = p.state.matching.model_copy(update={
        "status": "matching",
        "selected_brand_id": None,
        "matched_at": None,
        "matching_score": None,
    })
    moved = _enter(p, "matching", ctx, matching=matching)
    return moved.model_copy(update={"brand_id": None})


def _draft_contract(p: Pipeline, ctx: ActionContext) -> Pipeline:
    version = sum(1 for e in p.timeline if e.event_type == "draft_contract")
    contract = ContractData(
        status="signing",
        drafted_at=ctx.now,
        contract=ContractDocument(
            id=f"contract-{p.id}-v{version}",
            version=version,
            template_id=ctx.payload.template_id,
            terms=p.state.negotiation.agreed_terms,
            document_url=ctx.payload.document_url
        )
    )
    return _enter(p, "contract", ctx, contract=contract)


# ============================================================
# CONTRACT
# ============================================================

def _not_yet_signed_by(pipeline: Pipeline, role: str) -> Optional[Rejection]:
    if pipeline.state.contract.contract.signed_by(role):
        return _reject("duplicate_signature", f"{role} has already signed this contract")
    return None


def _contract_unsigned(pipeline: Pipeline, role: str) -> Optional[Rejection]:
    if pipeline.state.contract.status == "signed":
        return _reject("contract_already_signed", "A signed contract cannot be renegotiated")
    return None


def _sign_contract(p: Pipeline, ctx: ActionContext) -> Pipeline:
    contract = p.state.contract
    document = contract.contract.model_copy(update={
        "signatures": [
            *contract.contract.signatures,
            ContractSignature(
                party=ctx.role,
                signed_at=ctx.now,
                signature_method=ctx.payload.signature_method,
                signature_id=ctx.payload.signature_id
            ),
        ]
    })
    changes = {"contract": document}
    if document.fully_signed:
        changes.update(status="signed", signed_at=ctx.now)
        logger.info(f"Pipeline {p.id}: contract {document.id} fully signed")
    return _update(p, "contract", **changes)


def _renegotiate(p: Pipeline, ctx: ActionContext) -> Pipeline:
    negotiation = p.state.negotiation.model_copy(update={
        "status": "reviewing",
        "agreed_terms": None,
        "agreed_at": None,
        "last_activity": ctx.now,
    })
    return _enter(p, "negotiation", ctx, negotiation=negotiation)


def _launch_funding(p: Pipeline, ctx: ActionContext) -> Union[Pipeline, Rejection]:
    goals = ctx.payload.goals
    if as_utc(goals.deadline) <= ctx.now:
        return _reject("deadline_in_past", "Funding deadline must be in the future")
    return _enter(
        p, "funding", ctx,
        funding=FundingData(status="live", launched_at=ctx.now, goals=goals)
    )


# ============================================================
# FUNDING
# ============================================================

def _record_participation(p: Pipeline, ctx: ActionContext) -> Pipeline:
    funding = p.state.funding
    payload = ctx.payload
    current = funding.progress.current_participants + payload.new_participants
    target = funding.goals.target_participants

    days_live = max((ctx.now - as_utc(funding.launched_at)).total_seconds() / 86400, 1.0)
    progress = funding.progress.model_copy(update={
        "current_participants": current,
        "pledged_amount": funding.progress.pledged_amount + payload.pledged_amount,
        "progress_rate": round(funding_progress(current, target), 2),
        "projected_completion": project_funding_completion(
            current, target, current / days_live, ctx.now.date()
        ),
    })
    impact = funding.leader_impact
    return _update(
        p, "funding",
        progress=progress,
        leader_impact=leader_impact(
            impact.referrals + payload.referrals,
            current,
            impact.content_views + payload.content_views,
            impact.conversions + payload.conversions
        )
    )


def _close_funding(p: Pipeline, ctx: ActionContext) -> Union[Pipeline, Rejection]:
    funding = p.state.funding
    current = funding.progress.current_participants
    minimum = funding.goals.min_participants
    met = current >= minimum
    if not met and not ctx.payload.override:
        return _reject(
            "min_participants_not_met",
            f"{current} participants committed; {minimum} required"
        )

    forecast = no_show_service.forecast(ctx.payload.participants) if ctx.payload.participants else None
    closed = funding.model_copy(update={
        "status": "successful",
        "ended_at": ctx.now,
        "override_applied": not met,
        "no_show_forecast": forecast,
    })
    if not met:
        logger.warning(f"Pipeline {p.id}: funding closed by platform override ({current}/{minimum})")
    return _enter(p, "execution", ctx, funding=closed, execution=ExecutionData(status="setup"))


# ============================================================
# EXECUTION
# ============================================================

def _start_execution(p: Pipeline, ctx: ActionContext) -> Pipeline:
    return _update(p, "execution", status="running", started_at=ctx.now)


def _start_show(p: Pipeline, ctx: ActionContext) -> Pipeline:
    shows = p.state.execution.live_shows
    show = LiveShow(id=f"show-{len(shows) + 1}", actual_start_at=ctx.now)
    return _update(p, "execution", status="live_active", live_shows=[*shows, show])


def _end_show(p: Pipeline, ctx: ActionContext) -> Pipeline:
    shows = list(p.state.execution.live_shows)
    if shows:
        shows[-1] = shows[-1].model_copy(update={"status": "completed", "actual_end_at": ctx.now})
    return _update(p, "execution", status="running", live_shows=shows)


def _report_sales(p: Pipeline, ctx: ActionContext) -> Pipeline:
    payload = ctx.payload
    avg_value = payload.total_sales / payload.transactions if payload.transactions else 0.0
    metrics = RealTimeMetrics(
        total_visitors=payload.total_visitors,
        current_visitors=payload.current_visitors,
        total_sales=payload.total_sales,
        avg_transaction_value=round(avg_value, 2),
        leader_generated_sales=payload.leader_generated_sales,
        satisfaction_score=payload.satisfaction_score
    )
    return _update(p, "execution", real_time_metrics=metrics)


def _complete_execution(p: Pipeline, ctx: ActionContext) -> Pipeline:
    return _update(p, "execution", status="completed", completed_at=ctx.now)


def _open_settlement(p: Pipeline, ctx: ActionContext) -> Union[Pipeline, Rejection]:
    payload = ctx.payload
    if not payload.transactions:
        return _reject("audit_evidence_required", "Settlement needs transaction logs to audit sales")

    state = p.state
    settlement = settlement_service.calculate(
        pipeline_id=p.id,
        terms=state.contract.contract.terms,
        sales=payload.sales,
        execution_completed_at=state.execution.completed_at,
        now=ctx.now
    )
    audit = audit_service.audit(
        popup_id=p.popup_id or p.id,
        reported_sales=payload.sales.gross_sales,
        transactions=payload.transactions,
        now=ctx.now,
        attendance=payload.attendance,
        referrals=payload.referrals
    )

    if audit.status == "disputed":
        discrepancy = audit.sales_verification.discrepancy
        settlement = settlement.model_copy(update={
            "status": "disputed",
            "audit": audit,
            "flags": [*settlement.flags, "sales_discrepancy"],
            "payouts": settlement_service.hold_payouts(settlement.payouts),
            "dispute": DisputeRecord(
                raised_by="platform",
                raised_at=ctx.now,
                reason=f"Reported sales differ from verified transactions by {discrepancy}",
                status="investigating"
            ),
        })
    else:
        settlement = settlement.model_copy(update={"audit": audit})

    return _enter(p, "settlement", ctx, settlement=settlement)


# ============================================================
# SETTLEMENT
# ============================================================

def _not_yet_voted(pipeline: Pipeline, role: str) -> Optional[Rejection]:
    if pipeline.state.settlement.audit.final_approval.has_voted(role):
        return _reject("duplicate_vote", f"{role} has already approved this settlement")
    return None


def _ready_to_complete(pipeline: Pipeline, role: str) -> Optional[Rejection]:
    settlement = pipeline.state.settlement
    if settlement.status == "disputed":
        return _reject("settlement_disputed", "A disputed settlement cannot complete")
    pending = settlement.audit.final_approval.pending_parties()
    if pending:
        return _reject("quorum_incomplete", f"Awaiting approval from {', '.join(pending)}")
    if settlement.status != "approved":
        return _reject("invalid_status", f"settlement status is '{settlement.status}'; requires approved")
    return None


def _approve_settlement(p: Pipeline, ctx: ActionContext) -> Pipeline:
    settlement = p.state.settlement
    audit = audit_service.record_approval(settlement.audit, ctx.role, ctx.now)
    changes = {"audit": audit}
    if audit.final_approval.is_complete:
        changes["status"] = "approved"
        logger.info(f"Pipeline {p.id}: settlement approved by all parties")
    return _update(p, "settlement", **changes)


def _dispute_settlement(p: Pipeline, ctx: ActionContext) -> Pipeline:
    settlement = p.state.settlement
    return _update(
        p, "settlement",
        status="disputed",
        dispute=audit_service.raise_dispute(ctx.role, ctx.payload.reason, ctx.now),
        audit=settlement.audit.model_copy(update={"status": "disputed"}),
        payouts=settlement_service.hold_payouts(settlement.payouts)
    )


def _resolve_dispute(p: Pipeline, ctx: ActionContext) -> Pipeline:
    settlement = p.state.settlement
    audit, dispute = audit_service.resolve(
        settlement.audit, settlement.dispute, ctx.payload.resolution, ctx.now
    )
    return _update(
        p, "settlement",
        status="pending_approval",
        audit=audit,
        dispute=dispute,
        payouts=settlement_service.resume_payouts(settlement)
    )


def _complete_settlement(p: Pipeline, ctx: ActionContext) -> Pipeline:
    settlement = p.state.settlement.model_copy(update={
        "status": "completed",
        "completed_at": ctx.now,
    })
    return _enter(p, "completed", ctx, settlement=settlement)


# ============================================================
# CANCELLATION
# ============================================================

def _cancel(p: Pipeline, ctx: ActionContext) -> Pipeline:
    refund = None
    if p.stage in REFUNDABLE_STAGES:
        terms = p.state.contract.contract.terms
        refund = cancellation_service.calculate_refund(
            policy=terms.cancellation_policy,
            amount=p.state.funding.progress.pledged_amount,
            event_date=terms.popup_dates.start,
            cancellation_time=ctx.now,
            exception_reason=ctx.payload.exception_reason
        )
        logger.info(
            f"Pipeline {p.id}: cancellation refunds {refund.refund_amount} "
            f"of {refund.original_amount}"
        )

    record = CancellationRecord(
        cancelled_at=ctx.now,
        cancelled_by=ctx.role,
        previous_stage=p.stage,
        reason=ctx.payload.reason,
        refund=refund
    )
    return _enter(p, "cancelled", ctx, cancellation=record)


# ============================================================
# ACTION REGISTRY
# ============================================================

PIPELINE_ACTIONS: List[PipelineAction] = [
    # Proposal
    PipelineAction("submit_proposal", ("proposal",), LEADER,
                   _status_in("proposal", "draft", "rejected"), _submit_proposal),
    PipelineAction("reject_proposal", ("proposal",), PLATFORM,
                   _status_in("proposal", "submitted"), _reject_proposal, RejectProposalPayload),
    PipelineAction("approve_proposal", ("proposal",), PLATFORM,
                   _status_in("proposal", "submitted"), _approve_proposal),

    # Matching
    PipelineAction("shortlist_brands", ("matching",), PLATFORM,
                   _status_in("matching", "pending", "matching"), _shortlist_brands, ShortlistPayload),
    PipelineAction("accept_match", ("matching",), BRAND,
                   _status_in("matching", "matching"), _accept_match, AcceptMatchPayload),
    PipelineAction("confirm_match", ("matching",), LEADER,
                   _status_in("matching", "matched"), _confirm_match),
    PipelineAction("return_to_proposal", ("matching",), PLATFORM,
                   _status_in("matching", "pending", "matching", "no_match"), _return_to_proposal),

    # Negotiation
    PipelineAction("make_offer", ("negotiation",), ANY_ROLE,
                   _negotiation_open, _make_offer, OfferPayload),
    PipelineAction("accept_offer", ("negotiation",), ANY_ROLE,
                   _all(_pending_offer, _price_not_suspicious), _accept_offer),
    PipelineAction("reject_offer", ("negotiation",), ANY_ROLE,
                   _pending_offer, _reject_offer),
    PipelineAction("reopen_matching", ("negotiation",), PLATFORM,
                   _always, _reopen_matching),
    PipelineAction("draft_contract", ("negotiation",), PLATFORM,
                   _status_in("negotiation", "agreed"), _draft_contract, DraftContractPayload),

    # Contract
    PipelineAction("sign_contract", ("contract",), ANY_ROLE,
                   _all(_status_in("contract", "signing"), _not_yet_signed_by),
                   _sign_contract, SignContractPayload),
    PipelineAction("renegotiate", ("contract",), ANY_ROLE,
                   _contract_unsigned, _renegotiate),
    PipelineAction("launch_funding", ("contract",), PLATFORM,
                   _status_in("contract", "signed"), _launch_funding, LaunchFundingPayload),

    # Funding
    PipelineAction("record_participation", ("funding",), PLATFORM,
                   _status_in("funding", "live"), _record_participation, ParticipationPayload),
    PipelineAction("close_funding", ("funding",), PLATFORM,
                   _status_in("funding", "live"), _close_funding, CloseFundingPayload),

    # Execution
    PipelineAction("start_execution", ("execution",), BRAND,
                   _status_in("execution", "setup"), _start_execution),
    PipelineAction("start_show", ("execution",), LEADER,
                   _status_in("execution", "running"), _start_show),
    PipelineAction("end_show", ("execution",), LEADER,
                   _status_in("execution", "live_active"), _end_show),
    PipelineAction("report_sales", ("execution",), PLATFORM,
                   _status_in("execution", "running", "live_active"), _report_sales, SalesReportPayload),
    PipelineAction("complete_execution", ("execution",), BRAND,
                   _status_in("execution", "running"), _complete_execution),
    PipelineAction("open_settlement", ("execution",), PLATFORM,
                   _status_in("execution", "completed"), _open_settlement, OpenSettlementPayload),

    # Settlement
    PipelineAction("approve_settlement", ("settlement",), ANY_ROLE,
                   _all(_status_in("settlement", "pending_approval"), _not_yet_voted),
                   _approve_settlement),
    PipelineAction("dispute_settlement", ("settlement",), ("leader", "brand"),
                   _status_in("settlement", "pending_approval", "approved"),
                   _dispute_settlement, DisputePayload),
    PipelineAction("resolve_dispute", ("settlement",), PLATFORM,
                   _status_in("settlement", "disputed"), _resolve_dispute, ResolveDisputePayload),
    PipelineAction("complete_settlement", ("settlement",), PLATFORM,
                   _ready_to_complete, _complete_settlement),

    # Any non-terminal stage
    PipelineAction("cancel", NON_TERMINAL_STAGES, ANY_ROLE,
                   _always, _cancel, CancelPayload),
]

ACTIONS_BY_NAME: Dict[str, PipelineAction] = {a.name: a for a in PIPELINE_ACTIONS}


class PipelineService:
    """
    Pure state machine operations plus database-backed wrappers.

    The pure methods take the current time explicitly; the `db` variants
    load, apply and compare-and-set in one call.
    """

    def create_pipeline(
        self,
        leader_id: str,
        draft: ProposalDraft,
        now: datetime,
        popup_id: Optional[str] = None,
        pipeline_id: Optional[str] = None
    ) -> Pipeline:
        pipeline = Pipeline(
            id=pipeline_id or f"pipeline-{uuid.uuid4().hex[:12]}",
            leader_id=leader_id,
            popup_id=popup_id,
            created_at=now,
            updated_at=now,
            state=ProposalState(proposal=ProposalData(
                concept=draft.concept,
                leader_role=draft.leader_role,
                desired_terms=draft.desired_terms
            ))
        )
        return _append(pipeline, _event(
            pipeline, "proposal", "pipeline_created", "Pipeline created", "leader", now
        ))

    @staticmethod
    def _rejected(pipeline: Pipeline, action: str, rejection: Rejection) -> ActionResult:
        logger.warning(
            f"Pipeline {pipeline.id}: action '{action}' rejected at {pipeline.stage} "
            f"({rejection.rule}: {rejection.message})"
        )
        return ActionResult(accepted=False, pipeline=pipeline, rejection=rejection)

    def apply_action(
        self,
        pipeline: Pipeline,
        request: ActionRequest,
        role: Role,
        now: datetime,
        actor_id: Optional[str] = None
    ) -> ActionResult:
        action = ACTIONS_BY_NAME.get(request.action)
        if action is None:
            return self._rejected(pipeline, request.action, _reject(
                "unknown_action", f"Unknown action '{request.action}'"
            ))

        if request.request_id and any(e.request_id == request.request_id for e in pipeline.timeline):
            return self._rejected(pipeline, action.name, _reject(
                "duplicate_request", f"Request {request.request_id} was already applied"
            ))

        if pipeline.stage not in action.stages:
            return self._rejected(pipeline, action.name, _reject(
                "wrong_stage", f"'{action.name}' is not available at stage {pipeline.stage}"
            ))

        if role not in action.roles:
            return self._rejected(pipeline, action.name, _reject(
                "role_not_permitted", f"'{action.name}' requires role {' or '.join(action.roles)}"
            ))

        rejection = action.check(pipeline, role)
        if rejection:
            return self._rejected(pipeline, action.name, rejection)

        payload = None
        if action.payload is not None:
            try:
                payload = action.payload.model_validate(request.payload)
            except PayloadError as e:
                raise ValidationError(
                    f"Invalid payload for '{action.name}'",
                    {"errors": e.errors(include_url=False, include_context=False)}
                )

        metadata = {"actor_id": actor_id} if actor_id else {}
        recorded = _append(pipeline, _event(
            pipeline, pipeline.stage, action.name, f"{action.name} by {role}",
            role, now, request_id=request.request_id, metadata=metadata
        ))
        ctx = ActionContext(role=role, actor_id=actor_id, payload=payload, now=now,
                            request_id=request.request_id)

        outcome = action.apply(recorded, ctx)
        if isinstance(outcome, Rejection):
            return self._rejected(pipeline, action.name, outcome)

        logger.info(f"Pipeline {pipeline.id}: '{action.name}' applied by {role}")
        return ActionResult(
            accepted=True,
            pipeline=outcome.model_copy(update={"updated_at": now})
        )

    def available_actions(self, pipeline: Pipeline, role: Role) -> List[str]:
        return [
            action.name for action in PIPELINE_ACTIONS
            if pipeline.stage in action.stages
            and role in action.roles
            and action.check(pipeline, role) is None
        ]

    def add_message(
        self,
        pipeline: Pipeline,
        sender: Role,
        recipient: Role,
        subject: str,
        content: str,
        now: datetime,
        attachments: Optional[List[str]] = None
    ) -> Pipeline:
        message = PipelineMessage(
            id=f"message-{len(pipeline.messages) + 1}",
            timestamp=now,
            sender=sender,
            recipient=recipient,
            subject=subject,
            content=content,
            attachments=attachments or []
        )
        return pipeline.model_copy(update={
            "messages": [*pipeline.messages, message],
            "updated_at": now,
        })

    def add_document(
        self,
        pipeline: Pipeline,
        uploaded_by: Role,
        name: str,
        url: str,
        now: datetime,
        doc_type: str = "other",
        size: int = 0
    ) -> Pipeline:
        document = PipelineDocument(
            id=f"document-{len(pipeline.documents) + 1}",
            uploaded_at=now,
            uploaded_by=uploaded_by,
            type=doc_type,
            name=name,
            url=url,
            size=size
        )
        return pipeline.model_copy(update={
            "documents": [*pipeline.documents, document],
            "updated_at": now,
        })

    # Database-backed operations

    def create(
        self,
        db: Session,
        leader_id: str,
        draft: ProposalDraft,
        now: datetime,
        popup_id: Optional[str] = None
    ) -> Pipeline:
        return pipeline_repository.create(db, self.create_pipeline(leader_id, draft, now, popup_id))

    def perform(
        self,
        db: Session,
        pipeline_id: str,
        request: ActionRequest,
        role: Role,
        now: datetime,
        actor_id: Optional[str] = None
    ) -> ActionResult:
        pipeline = pipeline_repository.get(db, pipeline_id)
        if request.expected_version is not None and request.expected_version != pipeline.version:
            raise ConcurrencyConflict(
                f"Pipeline {pipeline_id} is at version {pipeline.version}",
                {"pipeline_id": pipeline_id, "expected_version": request.expected_version}
            )

        result = self.apply_action(pipeline, request, role, now, actor_id)
        if not result.accepted:
            return result
        saved = pipeline_repository.save(db, result.pipeline, expected_version=pipeline.version)
        return result.model_copy(update={"pipeline": saved})

    def post_message(
        self,
        db: Session,
        pipeline_id: str,
        sender: Role,
        recipient: Role,
        subject: str,
        content: str,
        now: datetime,
        attachments: Optional[List[str]] = None
    ) -> Pipeline:
        pipeline = pipeline_repository.get(db, pipeline_id)
        updated = self.add_message(pipeline, sender, recipient, subject, content, now, attachments)
        return pipeline_repository.save(db, updated, expected_version=pipeline.version)

    def attach_document(
        self,
        db: Session,
        pipeline_id: str,
        uploaded_by: Role,
        name: str,
        url: str,
        now: datetime,
        doc_type: str = "other",
        size: int = 0
    ) -> Pipeline:
        pipeline = pipeline_repository.get(db, pipeline_id)
        updated = self.add_document(pipeline, uploaded_by, name, url, now, doc_type, size)
        return pipeline_repository.save(db, updated, expected_version=pipeline.version)


# Singleton instance
pipeline_service = PipelineService()
