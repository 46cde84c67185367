"""Builders that drive a pipeline through its stages with canned payloads"""
from datetime import timedelta

from popup_engine.schemas.pipeline import ActionRequest, ProposalDraft
from popup_engine.services.pipeline_service import pipeline_service
from tests.conftest import NOW

OFFER_TERMS = {
    "base_fee": 200000,
    "commission_rate": 0.10,
    "payment_terms": "split",
    "popup_dates": {"start": "2026-11-20", "end": "2026-11-22"},
    "leader_responsibilities": ["two live shows"],
    "brand_responsibilities": ["venue", "stock"],
}

CANDIDATES = [
    {"brand_id": "brand-1", "brand_name": "Gentle Monster", "match_score": 88},
    {"brand_id": "brand-2", "brand_name": "Tamburins", "match_score": 75},
]

FUNDING_GOALS = {
    "min_participants": 10,
    "target_participants": 20,
    "deadline": (NOW + timedelta(days=30)).isoformat(),
}

PARTICIPATION = {
    "new_participants": 12,
    "pledged_amount": 600000,
    "referrals": 6,
    "content_views": 1000,
    "conversions": 50,
}

SETTLEMENT_EVIDENCE = {
    "sales": {"gross_sales": 10000000, "refunds": 500000, "leader_attributed_sales": 3000000},
    "transactions": [{"amount": 10000000, "verified": True}],
}


def new_pipeline(**draft):
    return pipeline_service.create_pipeline(
        "leader-1", ProposalDraft(**draft), NOW, popup_id="popup-1", pipeline_id="pipeline-1"
    )


def act(pipeline, action, role, payload=None, request_id=None, actor_id=None, now=NOW):
    request = ActionRequest(action=action, request_id=request_id, payload=payload or {})
    return pipeline_service.apply_action(pipeline, request, role, now, actor_id)


def must(pipeline, action, role, payload=None, **kwargs):
    result = act(pipeline, action, role, payload, **kwargs)
    assert result.accepted, result.rejection
    return result.pipeline


def to_matching(pipeline=None):
    pipeline = pipeline or new_pipeline()
    pipeline = must(pipeline, "submit_proposal", "leader")
    return must(pipeline, "approve_proposal", "platform")


def to_negotiation(pipeline=None):
    pipeline = to_matching(pipeline)
    pipeline = must(pipeline, "shortlist_brands", "platform", {"candidates": CANDIDATES})
    pipeline = must(pipeline, "accept_match", "brand", {"brand_id": "brand-1"})
    return must(pipeline, "confirm_match", "leader")


def to_contract(pipeline=None, terms=OFFER_TERMS):
    pipeline = to_negotiation(pipeline)
    pipeline = must(pipeline, "make_offer", "brand", {"terms": terms})
    pipeline = must(pipeline, "accept_offer", "leader")
    return must(pipeline, "draft_contract", "platform")


def sign_all(pipeline):
    for party in ("leader", "brand", "platform"):
        pipeline = must(pipeline, "sign_contract", party)
    return pipeline


def to_funding(pipeline=None):
    pipeline = sign_all(to_contract(pipeline))
    pipeline = must(pipeline, "launch_funding", "platform", {"goals": FUNDING_GOALS})
    return must(pipeline, "record_participation", "platform", PARTICIPATION)


def to_execution(pipeline=None):
    pipeline = must(to_funding(pipeline), "close_funding", "platform")
    pipeline = must(pipeline, "start_execution", "brand")
    return must(pipeline, "complete_execution", "brand")


def to_settlement(pipeline=None, evidence=SETTLEMENT_EVIDENCE):
    return must(to_execution(pipeline), "open_settlement", "platform", evidence)


def approve_all(pipeline):
    for party in ("leader", "brand", "platform"):
        pipeline = must(pipeline, "approve_settlement", party)
    return pipeline


def to_completed(pipeline=None):
    pipeline = approve_all(to_settlement(pipeline))
    return must(pipeline, "complete_settlement", "platform")
