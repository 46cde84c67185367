"""
Settlement Router - Fee previews and sales audits

Binding settlements are opened through pipeline actions; these endpoints
compute the same figures without touching a pipeline.
"""
from datetime import datetime
from typing import List, Optional
from fastapi import APIRouter
from pydantic import BaseModel

from popup_engine.schemas.common import as_utc, utcnow
from popup_engine.schemas.settlement import (
    AgreedTerms, AttendanceCheck, ReferralCheck, SalesInput, SettlementAudit,
    SettlementData, TransactionLog,
)
from popup_engine.services.audit_service import audit_service
from popup_engine.services.settlement_service import settlement_service

router = APIRouter()


class SettlementPreviewRequest(BaseModel):
    pipeline_id: str = "preview"
    terms: AgreedTerms
    sales: SalesInput
    execution_completed_at: Optional[datetime] = None


class AuditRequest(BaseModel):
    popup_id: str
    reported_sales: int
    transactions: List[TransactionLog]
    attendance: Optional[AttendanceCheck] = None
    referrals: Optional[ReferralCheck] = None


@router.post("/calculate", response_model=SettlementData)
async def preview_settlement(request: SettlementPreviewRequest):
    """
    Fee breakdown and payout schedule for the given terms and sales.

    platform fee + processing fee + leader total + brand net == net sales.
    """
    now = utcnow()
    completed_at = as_utc(request.execution_completed_at) if request.execution_completed_at else now
    return settlement_service.calculate(
        pipeline_id=request.pipeline_id,
        terms=request.terms,
        sales=request.sales,
        execution_completed_at=completed_at,
        now=now
    )


@router.post("/audit", response_model=SettlementAudit)
async def audit_sales(request: AuditRequest):
    """Cross-check reported sales against verified transaction logs"""
    return audit_service.audit(
        popup_id=request.popup_id,
        reported_sales=request.reported_sales,
        transactions=request.transactions,
        now=utcnow(),
        attendance=request.attendance,
        referrals=request.referrals
    )
