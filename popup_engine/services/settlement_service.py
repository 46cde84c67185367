"""
Settlement Service - fee split and payout scheduling

Splits a popup's net sales between platform, payment processor, leader
and brand, and schedules the resulting payouts. Money is integer KRW;
every rounding is half-up.
"""
import logging
from datetime import date, datetime, timedelta
from decimal import Decimal, ROUND_HALF_UP
from typing import List, Optional, Union

from sqlalchemy.orm import Session

from popup_engine.config import settings
from popup_engine.db.models import Payout
from popup_engine.errors import ValidationError
from popup_engine.schemas.settlement import (
    AgreedTerms, FeeBreakdown, PayoutRecord, SalesInput, SalesSummary,
    SettlementData,
)

logger = logging.getLogger(__name__)

Number = Union[int, float, Decimal]


def round_won(value: Number) -> int:
    """Round a money amount to whole won, halves away from zero"""
    return int(Decimal(str(value)).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def apply_rate(amount: int, rate: Number) -> int:
    return round_won(Decimal(amount) * Decimal(str(rate)))


class SettlementService:
    """
    Settlement calculator.

    brand_net_revenue = net_sales - platform_fee - payment_processing_fee - leader_total
    """

    def __init__(
        self,
        platform_fee_rate: float = None,
        payment_fee_rate: float = None,
        leader_payout_delay_days: int = None,
        brand_payout_delay_days: int = None,
        currency: str = None
    ):
        self.platform_fee_rate = (
            platform_fee_rate if platform_fee_rate is not None else settings.PLATFORM_FEE_RATE
        )
        self.payment_fee_rate = (
            payment_fee_rate if payment_fee_rate is not None else settings.PAYMENT_FEE_RATE
        )
        self.leader_payout_delay_days = (
            leader_payout_delay_days if leader_payout_delay_days is not None
            else settings.LEADER_PAYOUT_DELAY_DAYS
        )
        self.brand_payout_delay_days = (
            brand_payout_delay_days if brand_payout_delay_days is not None
            else settings.BRAND_PAYOUT_DELAY_DAYS
        )
        self.currency = currency or settings.SETTLEMENT_CURRENCY

    @staticmethod
    def _validate_sales(sales: SalesInput) -> None:
        if sales.refunds > sales.gross_sales:
            raise ValidationError(
                "refunds cannot exceed gross sales",
                {"gross_sales": sales.gross_sales, "refunds": sales.refunds}
            )
        net = sales.gross_sales - sales.refunds
        if sales.leader_attributed_sales > net:
            raise ValidationError(
                "leader attributed sales cannot exceed net sales",
                {"net_sales": net, "leader_attributed_sales": sales.leader_attributed_sales}
            )

    def calculate_fees(self, terms: AgreedTerms, sales: SalesInput) -> FeeBreakdown:
        self._validate_sales(sales)
        net_sales = sales.gross_sales - sales.refunds

        platform_fee = apply_rate(net_sales, self.platform_fee_rate)
        payment_fee = apply_rate(sales.gross_sales, self.payment_fee_rate)
        commission = apply_rate(sales.leader_attributed_sales, terms.commission_rate)

        bonus = 0
        if terms.performance_bonus and net_sales > terms.performance_bonus.threshold:
            bonus = terms.performance_bonus.bonus_amount

        leader_total = terms.base_fee + commission + bonus
        return FeeBreakdown(
            platform_fee=platform_fee,
            payment_processing_fee=payment_fee,
            brand_net_revenue=net_sales - platform_fee - payment_fee - leader_total,
            leader_base_fee=terms.base_fee,
            leader_commission=commission,
            leader_bonus=bonus,
            leader_total=leader_total
        )

    def payout_date(self, recipient: str, execution_completed_at: datetime) -> date:
        days = (
            self.leader_payout_delay_days if recipient == "leader"
            else self.brand_payout_delay_days
        )
        return execution_completed_at.date() + timedelta(days=days)

    def calculate(
        self,
        pipeline_id: str,
        terms: AgreedTerms,
        sales: SalesInput,
        execution_completed_at: datetime,
        now: datetime
    ) -> SettlementData:
        fees = self.calculate_fees(terms, sales)
        net_sales = sales.gross_sales - sales.refunds

        flags: List[str] = []
        brand_status = "scheduled"
        if fees.brand_net_revenue < 0:
            flags.append("negative_brand_net")
            brand_status = "held"
            logger.warning(
                f"Pipeline {pipeline_id}: negative brand net revenue "
                f"{fees.brand_net_revenue}, brand payout held"
            )

        payouts = [
            PayoutRecord(
                id=f"payout-leader-{pipeline_id}",
                recipient="leader",
                amount=fees.leader_total,
                currency=self.currency,
                scheduled_date=self.payout_date("leader", execution_completed_at)
            ),
            PayoutRecord(
                id=f"payout-brand-{pipeline_id}",
                recipient="brand",
                amount=fees.brand_net_revenue,
                currency=self.currency,
                scheduled_date=self.payout_date("brand", execution_completed_at),
                status=brand_status
            ),
        ]

        logger.info(
            f"Settlement calculated for {pipeline_id}: net={net_sales} "
            f"platform={fees.platform_fee} leader={fees.leader_total} "
            f"brand={fees.brand_net_revenue}"
        )
        return SettlementData(
            status="pending_approval",
            calculated_at=now,
            sales_summary=SalesSummary(
                gross_sales=sales.gross_sales,
                refunds=sales.refunds,
                net_sales=net_sales,
                leader_attributed_sales=sales.leader_attributed_sales,
                direct_sales=net_sales - sales.leader_attributed_sales
            ),
            fee_breakdown=fees,
            payouts=payouts,
            flags=flags
        )

    @staticmethod
    def hold_payouts(payouts: List[PayoutRecord]) -> List[PayoutRecord]:
        return [
            p.model_copy(update={"status": "held"}) if p.status == "scheduled" else p
            for p in payouts
        ]

    @staticmethod
    def resume_payouts(settlement: SettlementData) -> List[PayoutRecord]:
        """Undo a dispute hold, keeping the brand payout held when its net is negative"""
        negative = "negative_brand_net" in settlement.flags
        return [
            p if p.status != "held" or (negative and p.recipient == "brand")
            else p.model_copy(update={"status": "scheduled"})
            for p in settlement.payouts
        ]

    def dispatch_due_payouts(
        self,
        db: Session,
        today: date,
        now: datetime,
        limit: Optional[int] = None
    ) -> List[str]:
        """
        Hand scheduled payouts that are due to the payment collaborator.

        Marks them `processing`; the collaborator completes or fails them.
        """
        query = db.query(Payout).filter(
            Payout.status == "scheduled",
            Payout.scheduled_date <= today
        ).order_by(Payout.scheduled_date)
        if limit:
            query = query.limit(limit)

        dispatched = []
        for payout in query.all():
            payout.status = "processing"
            payout.processed_at = now
            payout.reference = payout.reference or f"ref-{payout.id}"
            dispatched.append(payout.id)
        db.commit()

        if dispatched:
            logger.info(f"Dispatched {len(dispatched)} payouts due by {today}")
        return dispatched


# Singleton instance
settlement_service = SettlementService()
