"""
Cancellation Router - Refund policy and refund calculation
"""
import datetime as dt
from typing import Optional, Union
from fastapi import APIRouter
from pydantic import BaseModel, Field

from popup_engine.schemas.common import as_utc, utcnow
from popup_engine.schemas.fraud import CancellationPolicy, RefundResult
from popup_engine.services.cancellation_service import cancellation_service

router = APIRouter()


class RefundRequest(BaseModel):
    policy: Optional[CancellationPolicy] = Field(
        None, description="Policy to apply; the default tiers when omitted"
    )
    popup_id: str = "unknown"
    amount: int = Field(..., description="Amount paid")
    event_date: Union[dt.datetime, dt.date]
    cancellation_time: Optional[dt.datetime] = Field(None, description="Defaults to now")
    exception_reason: Optional[str] = None

    class Config:
        json_schema_extra = {
            "example": {
                "popup_id": "popup-42",
                "amount": 50000,
                "event_date": "2026-11-20",
                "exception_reason": None
            }
        }


@router.get("/policy/{popup_id}", response_model=CancellationPolicy)
async def get_policy(popup_id: str):
    """
    Default tiered policy:
    - 7+ days before: full refund
    - 3-6 days: 70 %
    - 1-2 days: 50 %
    - event day: no refund
    """
    return cancellation_service.generate_policy(popup_id, utcnow())


@router.post("/refund", response_model=RefundResult)
async def calculate_refund(request: RefundRequest):
    """Refund for a cancellation; listed exception reasons refund in full"""
    now = utcnow()
    policy = request.policy or cancellation_service.generate_policy(request.popup_id, now)
    event_date = request.event_date
    if isinstance(event_date, dt.datetime):
        event_date = as_utc(event_date)
    return cancellation_service.calculate_refund(
        policy=policy,
        amount=request.amount,
        event_date=event_date,
        cancellation_time=as_utc(request.cancellation_time) if request.cancellation_time else now,
        exception_reason=request.exception_reason
    )
