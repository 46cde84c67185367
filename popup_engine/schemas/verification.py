"""
Check-in verification schemas (GPS + QR + receipt)
"""
from datetime import date, datetime
from typing import List, Literal, Optional
from pydantic import BaseModel, Field

from popup_engine.schemas.common import Coordinates, FrozenModel


Proximity = Literal["exact", "close", "near", "far", "unknown"]


class ActiveCode(FrozenModel):
    """A rotating check-in code published for a popup"""
    code: str
    expires_at: datetime


class ReceiptEvidence(BaseModel):
    """Receipt data already extracted by the OCR collaborator"""
    text: str = Field(..., description="Extracted receipt text")
    brand_name: Optional[str] = Field(None, description="Store name read from the receipt header")
    purchase_date: Optional[date] = None
    total_amount: Optional[int] = None
    ocr_confidence: float = Field(1.0, ge=0.0, le=1.0)


class CheckinRequest(BaseModel):
    """A single verification attempt submitted by a visitor"""
    popup_id: str
    user_id: str
    user_location: Optional[Coordinates] = None
    accuracy_meters: Optional[float] = None
    qr_code: Optional[str] = None
    receipt: Optional[ReceiptEvidence] = None

    class Config:
        json_schema_extra = {
            "example": {
                "popup_id": "popup-42",
                "user_id": "user-7",
                "user_location": {"latitude": 37.5665, "longitude": 126.978},
                "accuracy_meters": 12.0,
                "qr_code": "482913"
            }
        }


class GeoScore(FrozenModel):
    score: int
    distance_m: Optional[int] = None
    accuracy_m: Optional[float] = None
    proximity: Proximity = "unknown"
    capped: bool = False


class CodeScore(FrozenModel):
    score: int
    matched: bool = False
    expired: bool = False
    reason: Optional[str] = None


class ReceiptScore(FrozenModel):
    score: int
    verified: bool
    brand_matched: bool
    date_valid: bool
    amount_valid: bool
    confidence_ok: bool


class CheckinBreakdown(FrozenModel):
    gps: GeoScore
    qr: CodeScore
    receipt: Optional[ReceiptScore] = None
    gps_points: float
    qr_points: float
    receipt_points: int
    threshold: int


class CheckinEvidence(FrozenModel):
    """Raw evidence kept with a record; coordinates are precision-reduced"""
    user_latitude: Optional[float] = None
    user_longitude: Optional[float] = None
    distance_m: Optional[int] = None
    accuracy_m: Optional[float] = None
    code_hash: Optional[str] = None
    receipt_submitted: bool = False


class CheckinRecord(FrozenModel):
    """One immutable verification attempt"""
    id: str
    popup_id: str
    user_id: str
    gps_score: int
    qr_score: int
    receipt_score: int
    total_score: int
    passed: bool
    evidence: CheckinEvidence
    created_at: datetime


class CheckinResult(FrozenModel):
    """Outcome returned to the client for display and reward unlocking"""
    record_id: str
    popup_id: str
    passed: bool
    total_score: int
    breakdown: CheckinBreakdown
    failure_reasons: List[str] = []
    summary_badge: Literal["success", "partial", "fail"]
    reward_badge: Literal["gold", "silver", "bronze", "none"]
    verified_at: datetime
