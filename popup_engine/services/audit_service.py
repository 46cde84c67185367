"""
Audit Service - settlement verification and three-party approval
"""
import logging
import uuid
from datetime import datetime
from decimal import Decimal
from typing import List, Optional, Tuple

from popup_engine.config import settings
from popup_engine.schemas.common import Role
from popup_engine.schemas.settlement import (
    ApprovalQuorum, AttendanceCheck, DisputeRecord, ReferralCheck, SalesVerification,
    SettlementAudit, TransactionLog,
)

logger = logging.getLogger(__name__)


class AuditService:
    """
    Cross-checks reported sales against verified transactions.

    A discrepancy above the tolerated share of reported sales marks the
    audit disputed; settlement then cannot complete until it is resolved.
    """

    def __init__(self, discrepancy_rate: float = None):
        self.discrepancy_rate = (
            discrepancy_rate if discrepancy_rate is not None else settings.SETTLEMENT_DISCREPANCY_RATE
        )

    def is_discrepant(self, reported: int, discrepancy: int) -> bool:
        return Decimal(discrepancy) > Decimal(str(self.discrepancy_rate)) * Decimal(reported)

    def audit(
        self,
        popup_id: str,
        reported_sales: int,
        transactions: List[TransactionLog],
        now: datetime,
        attendance: Optional[AttendanceCheck] = None,
        referrals: Optional[ReferralCheck] = None
    ) -> SettlementAudit:
        verified_sales = sum(t.amount for t in transactions if t.verified)
        discrepancy = abs(reported_sales - verified_sales)
        disputed = self.is_discrepant(reported_sales, discrepancy)

        audit = SettlementAudit(
            id=f"audit-{uuid.uuid4().hex[:12]}",
            popup_id=popup_id,
            status="disputed" if disputed else "pending",
            sales_verification=SalesVerification(
                reported=reported_sales,
                verified=verified_sales,
                discrepancy=discrepancy,
                evidence=[f"{len(transactions)} transaction logs"]
            ),
            attendance_verification=attendance or AttendanceCheck(
                expected=0, verified=0, method="mixed"
            ),
            leader_contribution_verification=referrals or ReferralCheck(
                claimed_referrals=0, verified_referrals=0
            ),
            created_at=now
        )

        if disputed:
            logger.warning(
                f"Settlement audit for popup {popup_id} disputed: reported={reported_sales} "
                f"verified={verified_sales} discrepancy={discrepancy}"
            )
        else:
            logger.info(f"Settlement audit for popup {popup_id} passed (discrepancy={discrepancy})")
        return audit

    @staticmethod
    def record_approval(audit: SettlementAudit, party: Role, at: datetime) -> SettlementAudit:
        quorum = audit.final_approval.approve(party, at)
        update = {"final_approval": quorum}
        if quorum.is_complete and audit.status in ("pending", "resolved"):
            update["status"] = "verified"
        return audit.model_copy(update=update)

    @staticmethod
    def raise_dispute(raised_by: Role, reason: str, at: datetime) -> DisputeRecord:
        logger.warning(f"Settlement dispute raised by {raised_by}: {reason}")
        return DisputeRecord(raised_by=raised_by, raised_at=at, reason=reason)

    @staticmethod
    def resolve(
        audit: SettlementAudit,
        dispute: DisputeRecord,
        resolution: str,
        at: datetime
    ) -> Tuple[SettlementAudit, DisputeRecord]:
        """Close a dispute; approvals start over"""
        resolved_dispute = dispute.model_copy(update={
            "status": "resolved",
            "resolution": resolution,
            "resolved_at": at
        })
        resolved_audit = audit.model_copy(update={
            "status": "resolved",
            "final_approval": ApprovalQuorum()
        })
        return resolved_audit, resolved_dispute


# Singleton instance
audit_service = AuditService()
