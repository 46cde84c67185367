"""
Pricing Router - Price fairness against market comparables
"""
from typing import List, Optional
from fastapi import APIRouter
from pydantic import BaseModel, Field

from popup_engine.schemas.fraud import MarketComparable, PriceFairnessCheck
from popup_engine.services.pricing_service import FairnessThresholds, pricing_service

router = APIRouter()


class FairnessRequest(BaseModel):
    offered_price: float = Field(..., description="Offered fee or ticket price")
    comparables: List[MarketComparable] = []
    thresholds: Optional[FairnessThresholds] = Field(
        None, description="Override the configured ratio bands"
    )

    class Config:
        json_schema_extra = {
            "example": {
                "offered_price": 130000,
                "comparables": [
                    {"price": 90000, "source": "popup-a"},
                    {"price": 100000, "source": "popup-b"},
                    {"price": 110000, "source": "popup-c"}
                ]
            }
        }


@router.post("/fairness", response_model=PriceFairnessCheck)
async def check_price_fairness(request: FairnessRequest):
    """
    Compare an offered price with the average of market comparables.

    Verdicts by ratio offered / average: fair (0.85-1.15),
    slightly_high (to 1.30), overpriced (to 1.50), suspicious above.
    """
    return pricing_service.check_price_fairness(
        offered_price=request.offered_price,
        comparables=request.comparables,
        thresholds=request.thresholds
    )
