"""
Trust Router - Leader and brand trust scores
"""
from typing import List, Optional
from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from popup_engine.dependencies import get_db
from popup_engine.schemas.common import utcnow
from popup_engine.schemas.fraud import TrustEvent, TrustMetrics, TrustScore
from popup_engine.services.trust_service import TrustWeights, trust_service

router = APIRouter()


class TrustScoreRequest(BaseModel):
    metrics: TrustMetrics
    events: List[TrustEvent] = []
    weights: Optional[TrustWeights] = Field(None, description="Override component weights")


@router.post("/score", response_model=TrustScore)
async def calculate_trust(request: TrustScoreRequest):
    """
    Trust score from supplied metrics and events.

    Components: reliability (completion rate), satisfaction (average
    rating), fairness (1 - dispute rate) and transparency (verification
    level). Events from the last few months add their impact.
    """
    return trust_service.calculate(
        metrics=request.metrics,
        events=request.events,
        now=utcnow(),
        weights=request.weights
    )


@router.post("/{subject_id}/events", response_model=TrustEvent)
async def record_trust_event(
    subject_id: str,
    event: TrustEvent,
    db: Session = Depends(get_db)
):
    """Append an event to a subject's trust history"""
    return trust_service.record_event(db, subject_id, event)


@router.get("/{subject_id}/events", response_model=List[TrustEvent])
async def get_trust_events(subject_id: str, db: Session = Depends(get_db)):
    return trust_service.get_events(db, subject_id)


@router.post("/{subject_id}/score", response_model=TrustScore)
async def score_subject(
    subject_id: str,
    metrics: TrustMetrics,
    db: Session = Depends(get_db)
):
    """Trust score using the stored event history of the subject"""
    return trust_service.score_subject(db, subject_id, metrics, utcnow())
