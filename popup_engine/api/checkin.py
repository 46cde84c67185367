"""
Check-in API - Attendance Verification Endpoints

Provides:
- POST /checkin/verify: Score a GPS + QR (+ receipt) check-in attempt
- GET /checkin/history: Stored attempts, filtered by popup or user
"""
import logging
from typing import List, Optional
from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from popup_engine.dependencies import get_code_store, get_db
from popup_engine.schemas.common import utcnow
from popup_engine.schemas.verification import CheckinRecord, CheckinRequest, CheckinResult
from popup_engine.services.attendance_verification_service import attendance_verification_service
from popup_engine.services.cache_service import CodeStore

logger = logging.getLogger(__name__)
router = APIRouter()


@router.post("/verify", response_model=CheckinResult)
async def verify_checkin(
    request: CheckinRequest,
    db: Session = Depends(get_db),
    code_store: CodeStore = Depends(get_code_store)
):
    """
    Verify a visitor check-in.

    Scoring:
    - GPS: 60 points, full within 50 m, linear to zero at 100 m
    - QR: 40 points for a currently published, unexpired code
    - Receipt: optional bonus when brand, date and amount check out

    A failed verification is a normal 200 response with `passed=false`
    and `failure_reasons`; every attempt is stored.
    """
    return attendance_verification_service.verify(
        db=db,
        request=request,
        code_store=code_store,
        now=utcnow()
    )


@router.get("/history", response_model=List[CheckinRecord])
async def checkin_history(
    popup_id: Optional[str] = Query(None, description="Filter by popup"),
    user_id: Optional[str] = Query(None, description="Filter by user"),
    limit: int = Query(50, ge=1, le=500),
    db: Session = Depends(get_db)
):
    """Stored check-in attempts, newest first"""
    return attendance_verification_service.get_checkin_history(
        db, popup_id=popup_id, user_id=user_id, limit=limit
    )
