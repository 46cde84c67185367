"""
Predictions Router - No-show risk for funding participants
"""
from typing import List
from fastapi import APIRouter
from pydantic import BaseModel, Field

from popup_engine.schemas.fraud import NoShowFactors, NoShowForecast, NoShowPrediction
from popup_engine.services.no_show_service import no_show_service

router = APIRouter()


class ForecastRequest(BaseModel):
    participants: List[NoShowFactors] = Field(..., description="One entry per committed participant")


@router.post("/noshow", response_model=NoShowPrediction)
async def predict_no_show(factors: NoShowFactors):
    """
    No-show probability for a single participant.

    Logistic model over past no-show and late cancellation rates, deposit,
    free entry, commitment lead time and travel distance.
    """
    return no_show_service.predict(factors)


@router.post("/noshow/forecast", response_model=NoShowForecast)
async def forecast_attendance(request: ForecastRequest):
    """Expected attendance for a whole funding round"""
    return no_show_service.forecast(request.participants)
