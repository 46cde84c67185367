import random
from datetime import datetime, timedelta, timezone

import pytest
from pydantic import ValidationError as SchemaError

from popup_engine.errors import IllegalTransition, ValidationError
from popup_engine.schemas.pipeline import FundingState
from popup_engine.services.pipeline_service import (
    PIPELINE_ACTIONS, can_transition, pipeline_service,
)
from tests.conftest import NOW
from tests.factories import (
    CANDIDATES, FUNDING_GOALS, OFFER_TERMS, PARTICIPATION, SETTLEMENT_EVIDENCE,
    act, approve_all, must, new_pipeline, sign_all, to_completed, to_contract,
    to_execution, to_funding, to_matching, to_negotiation, to_settlement,
)

SIGNED_STAGES = ("funding", "execution", "settlement", "completed")


def stage_path(pipeline):
    return [e.stage for e in pipeline.timeline if e.event_type == "stage_transition"]


class TestTransitions:
    def test_adjacency(self):
        assert can_transition("proposal", "matching")
        assert can_transition("settlement", "cancelled")
        assert not can_transition("proposal", "funding")
        assert not can_transition("completed", "cancelled")

    def test_new_pipeline(self):
        pipeline = new_pipeline()
        assert pipeline.stage == "proposal"
        assert pipeline.version == 0
        assert pipeline.state.proposal.status == "draft"
        assert [e.event_type for e in pipeline.timeline] == ["pipeline_created"]

    def test_happy_path_to_completion(self):
        pipeline = to_completed()
        assert pipeline.stage == "completed"
        assert pipeline.is_terminal
        assert pipeline.brand_id == "brand-1"
        assert stage_path(pipeline) == [
            "matching", "negotiation", "contract", "funding",
            "execution", "settlement", "completed",
        ]

        settlement = pipeline.state.settlement
        assert settlement.status == "completed"
        assert settlement.completed_at == NOW
        assert settlement.fee_breakdown.brand_net_revenue == 7275000
        assert settlement.audit.final_approval.is_complete

    def test_timeline_is_append_only(self):
        before = to_negotiation()
        after = must(before, "make_offer", "brand", {"terms": OFFER_TERMS})
        assert after.timeline[:len(before.timeline)] == before.timeline
        assert len(after.timeline) == len(before.timeline) + 1

    def test_snapshots_are_not_mutated(self):
        pipeline = to_matching()
        must(pipeline, "shortlist_brands", "platform", {"candidates": CANDIDATES})
        assert pipeline.state.matching.candidates == []


class TestRejections:
    def test_unknown_action(self):
        result = act(new_pipeline(), "teleport", "platform")
        assert not result.accepted
        assert result.rejection.rule == "unknown_action"

    def test_wrong_stage_leaves_pipeline_unchanged(self):
        pipeline = new_pipeline()
        result = act(pipeline, "approve_settlement", "platform")
        assert result.rejection.rule == "wrong_stage"
        assert result.pipeline == pipeline

    def test_role_not_permitted(self):
        pipeline = must(new_pipeline(), "submit_proposal", "leader")
        assert act(pipeline, "approve_proposal", "brand").rejection.rule == "role_not_permitted"

    def test_guard_failure(self):
        result = act(new_pipeline(), "approve_proposal", "platform")
        assert result.rejection.rule == "invalid_status"

    def test_raise_for_rejection(self):
        result = act(new_pipeline(), "approve_settlement", "platform")
        with pytest.raises(IllegalTransition) as exc_info:
            result.raise_for_rejection()
        assert exc_info.value.rule == "wrong_stage"

    def test_duplicate_request_is_ignored(self):
        pipeline = must(new_pipeline(), "submit_proposal", "leader", request_id="req-1")
        repeat = act(pipeline, "reject_proposal", "platform", {"reason": "x"}, request_id="req-1")
        assert repeat.rejection.rule == "duplicate_request"
        assert repeat.pipeline == pipeline

    def test_malformed_payload_raises(self):
        pipeline = to_matching()
        pipeline = must(pipeline, "shortlist_brands", "platform", {"candidates": CANDIDATES})
        with pytest.raises(ValidationError):
            act(pipeline, "accept_match", "brand", {})


class TestProposalAndMatching:
    def test_rejected_proposal_can_be_resubmitted(self):
        pipeline = must(new_pipeline(), "submit_proposal", "leader")
        pipeline = must(pipeline, "reject_proposal", "platform", {"reason": "Too vague"})
        assert pipeline.state.proposal.rejection_reason == "Too vague"

        pipeline = must(pipeline, "submit_proposal", "leader")
        assert pipeline.state.proposal.status == "submitted"
        assert pipeline.state.proposal.rejection_reason is None

    def test_shortlist_drops_unverified_and_excluded(self):
        pipeline = to_matching(new_pipeline(desired_terms={"excluded_brands": ["brand-2"]}))
        candidates = CANDIDATES + [
            {"brand_id": "brand-3", "brand_name": "Unknown", "match_score": 99, "trust_tier": "unverified"},
        ]
        pipeline = must(pipeline, "shortlist_brands", "platform", {"candidates": candidates})
        assert [c.brand_id for c in pipeline.state.matching.candidates] == ["brand-1"]

    def test_shortlist_needs_an_eligible_brand(self):
        only_unverified = [dict(CANDIDATES[0], trust_tier="unverified")]
        result = act(to_matching(), "shortlist_brands", "platform", {"candidates": only_unverified})
        assert result.rejection.rule == "no_eligible_candidates"

    def test_brand_must_be_shortlisted(self):
        pipeline = must(to_matching(), "shortlist_brands", "platform", {"candidates": CANDIDATES})
        result = act(pipeline, "accept_match", "brand", {"brand_id": "brand-9"})
        assert result.rejection.rule == "not_a_candidate"

    def test_brand_accepts_only_for_itself(self):
        pipeline = must(to_matching(), "shortlist_brands", "platform", {"candidates": CANDIDATES})
        result = act(pipeline, "accept_match", "brand", {"brand_id": "brand-1"}, actor_id="brand-2")
        assert result.rejection.rule == "brand_mismatch"

    def test_matching_can_return_to_proposal(self):
        pipeline = must(to_matching(), "return_to_proposal", "platform")
        assert pipeline.stage == "proposal"
        assert pipeline.state.proposal.status == "draft"


class TestNegotiation:
    def test_counter_offer_supersedes_pending(self):
        pipeline = must(to_negotiation(), "make_offer", "brand", {"terms": OFFER_TERMS})
        counter = dict(OFFER_TERMS, base_fee=300000)
        pipeline = must(pipeline, "make_offer", "leader", {"terms": counter})

        negotiation = pipeline.state.negotiation
        assert negotiation.status == "counter"
        assert negotiation.negotiation_rounds == 2
        assert [o.status for o in negotiation.offers] == ["countered", "pending"]
        assert negotiation.current_offer.id == "offer-2"

    def test_offering_party_cannot_accept_own_offer(self):
        pipeline = must(to_negotiation(), "make_offer", "brand", {"terms": OFFER_TERMS})
        assert act(pipeline, "accept_offer", "brand").rejection.rule == "offering_party_cannot_respond"

    def test_suspicious_price_cannot_be_accepted(self):
        terms = dict(OFFER_TERMS, ticket_price=200000)
        comparables = [{"price": 90000}, {"price": 100000}, {"price": 110000}]
        pipeline = must(
            to_negotiation(), "make_offer", "brand", {"terms": terms, "comparables": comparables}
        )
        assert pipeline.state.negotiation.current_offer.fairness.verdict == "suspicious"
        assert act(pipeline, "accept_offer", "leader").rejection.rule == "suspicious_price"

    def test_commission_only_offer_skips_fairness(self):
        terms = dict(OFFER_TERMS, base_fee=0, commission_rate=0.2)
        pipeline = must(
            to_negotiation(), "make_offer", "brand", {"terms": terms, "comparables": [{"price": 100000}]}
        )
        offer = pipeline.state.negotiation.current_offer
        assert offer.fairness is None
        assert offer.terms.base_fee == 0

        pipeline = must(pipeline, "accept_offer", "leader")
        assert [p.amount for p in pipeline.state.negotiation.agreed_terms.payment_schedule.payments] == [0, 0]

    def test_accepted_terms_carry_policy_and_schedule(self):
        pipeline = must(to_negotiation(), "make_offer", "brand", {"terms": dict(OFFER_TERMS, base_fee=200001)})
        pipeline = must(pipeline, "accept_offer", "leader")

        agreed = pipeline.state.negotiation.agreed_terms
        assert pipeline.state.negotiation.status == "agreed"
        assert agreed.cancellation_policy.popup_id == "popup-1"
        assert agreed.responsibilities["brand"] == ["venue", "stock"]
        assert [p.amount for p in agreed.payment_schedule.payments] == [100001, 100000]
        assert [p.trigger for p in agreed.payment_schedule.payments] == ["contract_signed", "settlement"]

    def test_rejected_offer_allows_new_round(self):
        pipeline = must(to_negotiation(), "make_offer", "brand", {"terms": OFFER_TERMS})
        pipeline = must(pipeline, "reject_offer", "leader")
        assert pipeline.state.negotiation.status == "reviewing"
        assert act(pipeline, "accept_offer", "leader").rejection.rule == "no_pending_offer"
        must(pipeline, "make_offer", "brand", {"terms": OFFER_TERMS})

    def test_reopen_matching_clears_selection(self):
        pipeline = must(to_negotiation(), "reopen_matching", "platform")
        assert pipeline.stage == "matching"
        assert pipeline.brand_id is None
        assert pipeline.state.matching.selected_brand_id is None
        assert pipeline.state.matching.status == "matching"

    def test_contract_needs_agreement(self):
        result = act(to_negotiation(), "draft_contract", "platform")
        assert result.rejection.rule == "invalid_status"


class TestContract:
    def test_signatures_collected(self):
        pipeline = must(to_contract(), "sign_contract", "leader")
        assert pipeline.state.contract.status == "signing"
        assert pipeline.state.contract.contract.version == 1

        pipeline = sign_all(to_contract())
        assert pipeline.state.contract.status == "signed"
        assert pipeline.state.contract.contract.fully_signed

    def test_duplicate_signature(self):
        pipeline = must(to_contract(), "sign_contract", "brand")
        assert act(pipeline, "sign_contract", "brand").rejection.rule == "duplicate_signature"

    def test_funding_needs_every_signature(self):
        pipeline = to_contract()
        pipeline = must(pipeline, "sign_contract", "leader")
        pipeline = must(pipeline, "sign_contract", "brand")
        result = act(pipeline, "launch_funding", "platform", {"goals": FUNDING_GOALS})
        assert not result.accepted
        assert result.pipeline.stage == "contract"

    def test_renegotiate_before_signing(self):
        pipeline = must(to_contract(), "renegotiate", "brand")
        assert pipeline.stage == "negotiation"
        assert pipeline.state.negotiation.agreed_terms is None

        pipeline = must(pipeline, "make_offer", "brand", {"terms": OFFER_TERMS})
        pipeline = must(pipeline, "accept_offer", "leader")
        pipeline = must(pipeline, "draft_contract", "platform")
        assert pipeline.state.contract.contract.version == 2

    def test_signed_contract_cannot_be_renegotiated(self):
        result = act(sign_all(to_contract()), "renegotiate", "leader")
        assert result.rejection.rule == "contract_already_signed"

    def test_launch_deadline_must_be_future(self):
        goals = dict(FUNDING_GOALS, deadline=(NOW - timedelta(days=1)).isoformat())
        result = act(sign_all(to_contract()), "launch_funding", "platform", {"goals": goals})
        assert result.rejection.rule == "deadline_in_past"

    def test_funding_state_requires_signed_contract(self):
        pipeline = to_contract()
        state = pipeline.state
        with pytest.raises(SchemaError):
            FundingState(
                proposal=state.proposal,
                matching=state.matching,
                negotiation=state.negotiation,
                contract=state.contract,
                funding={"launched_at": NOW, "goals": FUNDING_GOALS}
            )


class TestFundingAndExecution:
    def test_participation_updates_progress(self):
        funding = to_funding().state.funding
        assert funding.progress.current_participants == 12
        assert funding.progress.pledged_amount == 600000
        assert funding.progress.progress_rate == 60.0
        assert funding.progress.projected_completion == NOW.date() + timedelta(days=1)
        assert funding.leader_impact.referral_rate == 50.0
        assert funding.leader_impact.conversion_rate == 5.0

    def test_minimum_participants_required(self):
        pipeline = sign_all(to_contract())
        pipeline = must(pipeline, "launch_funding", "platform", {"goals": FUNDING_GOALS})
        pipeline = must(pipeline, "record_participation", "platform", dict(PARTICIPATION, new_participants=4))
        assert act(pipeline, "close_funding", "platform").rejection.rule == "min_participants_not_met"

        pipeline = must(pipeline, "close_funding", "platform", {"override": True})
        assert pipeline.stage == "execution"
        assert pipeline.state.funding.override_applied is True

    def test_close_funding_forecasts_attendance(self):
        participants = [{"deposit_paid": True, "total_participations": 12}, {"past_no_show_rate": 0.9}]
        pipeline = must(to_funding(), "close_funding", "platform", {"participants": participants})
        forecast = pipeline.state.funding.no_show_forecast
        assert forecast.participants == 2
        assert pipeline.state.funding.status == "successful"
        assert pipeline.state.execution.status == "setup"

    def test_live_show_cycle(self):
        pipeline = must(to_funding(), "close_funding", "platform")
        pipeline = must(pipeline, "start_execution", "brand")
        pipeline = must(pipeline, "start_show", "leader")
        assert pipeline.state.execution.status == "live_active"
        pipeline = must(pipeline, "report_sales", "platform", {"total_sales": 300000, "transactions": 4})
        pipeline = must(pipeline, "end_show", "leader")

        execution = pipeline.state.execution
        assert execution.status == "running"
        assert execution.live_shows[0].status == "completed"
        assert execution.real_time_metrics.avg_transaction_value == 75000.0
        assert act(pipeline, "open_settlement", "platform", SETTLEMENT_EVIDENCE).rejection.rule == "invalid_status"


class TestSettlement:
    def test_settlement_needs_audit_evidence(self):
        evidence = dict(SETTLEMENT_EVIDENCE, transactions=[])
        result = act(to_execution(), "open_settlement", "platform", evidence)
        assert result.rejection.rule == "audit_evidence_required"

    def test_quorum_required_to_complete(self):
        pipeline = to_settlement()
        pipeline = must(pipeline, "approve_settlement", "leader")
        pipeline = must(pipeline, "approve_settlement", "brand")
        result = act(pipeline, "complete_settlement", "platform")
        assert result.rejection.rule == "quorum_incomplete"
        assert "platform" in result.rejection.message

    def test_duplicate_vote(self):
        pipeline = must(to_settlement(), "approve_settlement", "leader")
        assert act(pipeline, "approve_settlement", "leader").rejection.rule == "duplicate_vote"

    def test_sales_discrepancy_opens_dispute(self):
        evidence = dict(SETTLEMENT_EVIDENCE, transactions=[{"amount": 8000000, "verified": True}])
        pipeline = to_settlement(evidence=evidence)

        settlement = pipeline.state.settlement
        assert settlement.status == "disputed"
        assert settlement.dispute.raised_by == "platform"
        assert "sales_discrepancy" in settlement.flags
        assert {p.status for p in settlement.payouts} == {"held"}
        assert act(pipeline, "complete_settlement", "platform").rejection.rule == "settlement_disputed"
        assert act(pipeline, "approve_settlement", "leader").rejection.rule == "invalid_status"

        pipeline = must(pipeline, "resolve_dispute", "platform", {"resolution": "POS export reconciled"})
        assert pipeline.state.settlement.status == "pending_approval"
        assert {p.status for p in pipeline.state.settlement.payouts} == {"scheduled"}

        pipeline = must(approve_all(pipeline), "complete_settlement", "platform")
        assert pipeline.stage == "completed"

    def test_party_dispute_resets_votes(self):
        pipeline = must(to_settlement(), "approve_settlement", "leader")
        pipeline = must(pipeline, "dispute_settlement", "brand", {"reason": "Card sales missing"})
        assert pipeline.state.settlement.dispute.raised_by == "brand"

        pipeline = must(pipeline, "resolve_dispute", "platform", {"resolution": "Added card sales"})
        approval = pipeline.state.settlement.audit.final_approval
        assert approval.pending_parties() == ["leader", "brand", "platform"]

    def test_platform_cannot_raise_party_dispute(self):
        result = act(to_settlement(), "dispute_settlement", "platform", {"reason": "x"})
        assert result.rejection.rule == "role_not_permitted"


class TestCancellation:
    def test_cancel_before_contract_has_no_refund(self):
        pipeline = must(new_pipeline(), "cancel", "leader", {"reason": "Changed plans"})
        assert pipeline.stage == "cancelled"
        record = pipeline.state.cancellation
        assert record.previous_stage == "proposal"
        assert record.cancelled_by == "leader"
        assert record.refund is None
        assert act(pipeline, "submit_proposal", "leader").rejection.rule == "wrong_stage"

    def test_cancel_during_funding_refunds_by_policy(self):
        pipeline = must(to_funding(), "cancel", "brand", {"reason": "Stock issue"})
        refund = pipeline.state.cancellation.refund
        assert refund.original_amount == 600000
        assert refund.refund_amount == 600000
        assert pipeline.state.contract.contract.fully_signed

    def test_late_cancellation_refunds_partially(self):
        late = datetime(2026, 11, 18, 12, 0, tzinfo=timezone.utc)
        pipeline = must(to_funding(), "cancel", "brand", {"reason": "Venue lost"}, now=late)
        refund = pipeline.state.cancellation.refund
        assert refund.days_until_event == 1
        assert refund.refund_amount == 300000

    def test_exception_refunds_in_full(self):
        late = datetime(2026, 11, 20, 9, 0, tzinfo=timezone.utc)
        payload = {"reason": "Typhoon", "exception_reason": "force_majeure"}
        pipeline = must(to_funding(), "cancel", "platform", payload, now=late)
        assert pipeline.state.cancellation.refund.refund_amount == 600000

    def test_settlement_can_be_cancelled(self):
        pipeline = must(to_settlement(), "cancel", "platform", {"reason": "Fraud investigation"})
        assert pipeline.state.cancellation.previous_stage == "settlement"
        assert pipeline.state.settlement is not None

    def test_completed_pipeline_cannot_be_cancelled(self):
        assert act(to_completed(), "cancel", "platform").rejection.rule == "wrong_stage"


class TestAvailableActions:
    def test_leader_at_draft_proposal(self):
        assert pipeline_service.available_actions(new_pipeline(), "leader") == ["submit_proposal", "cancel"]

    def test_platform_after_submission(self):
        pipeline = must(new_pipeline(), "submit_proposal", "leader")
        assert pipeline_service.available_actions(pipeline, "platform") == [
            "reject_proposal", "approve_proposal", "cancel",
        ]

    def test_terminal_pipeline_has_none(self):
        pipeline = must(new_pipeline(), "cancel", "leader")
        assert pipeline_service.available_actions(pipeline, "platform") == []


CANNED_PAYLOADS = {
    "reject_proposal": {"reason": "no"},
    "shortlist_brands": {"candidates": CANDIDATES},
    "accept_match": {"brand_id": "brand-1"},
    "make_offer": {"terms": OFFER_TERMS},
    "launch_funding": {"goals": FUNDING_GOALS},
    "record_participation": PARTICIPATION,
    "close_funding": {"override": True},
    "report_sales": {"total_sales": 1000},
    "open_settlement": SETTLEMENT_EVIDENCE,
    "dispute_settlement": {"reason": "check"},
    "resolve_dispute": {"resolution": "done"},
    "cancel": {"reason": "random"},
}


@pytest.mark.parametrize("seed", range(25))
def test_no_action_sequence_skips_signatures(seed):
    """Random walks through every action and role never fund an unsigned contract"""
    rng = random.Random(seed)
    names = [a.name for a in PIPELINE_ACTIONS if a.name != "cancel"]
    pipeline = new_pipeline()

    for step in range(150):
        if pipeline.is_terminal:
            break
        name = rng.choice(names)
        role = rng.choice(["leader", "brand", "platform"])
        result = act(pipeline, name, role, CANNED_PAYLOADS.get(name), request_id=f"{seed}-{step}")
        pipeline = result.pipeline

        if pipeline.stage in SIGNED_STAGES:
            contract = pipeline.state.contract
            assert contract.status == "signed"
            assert contract.contract.fully_signed
