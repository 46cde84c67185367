"""
Pipeline Metrics Service - dashboard aggregates and funding helpers
"""
import logging
import math
from collections import defaultdict
from datetime import date, timedelta
from typing import Dict, List, Optional

from sqlalchemy.orm import Session

from popup_engine.config import settings
from popup_engine.db.repository import pipeline_repository
from popup_engine.schemas.common import as_utc
from popup_engine.schemas.pipeline import (
    STAGE_ORDER, LeaderImpact, Pipeline, PipelineMetrics,
)
from popup_engine.services.cache_service import Cache

logger = logging.getLogger(__name__)

METRICS_CACHE_KEY = "pipelines:metrics"

# Timeline events that mark entry into a stage
STAGE_ENTRY_EVENTS = ("pipeline_created", "stage_transition")

# Leader impact weighting
REFERRAL_WEIGHT = 0.6
CONVERSION_WEIGHT = 0.4


def funding_progress(current_participants: int, target_participants: int) -> float:
    """Percent of target reached, capped at 100"""
    if target_participants <= 0:
        return 0.0
    return min(100.0, current_participants / target_participants * 100)


def project_funding_completion(
    current_participants: int,
    target_participants: int,
    daily_growth_rate: float,
    today: date
) -> Optional[date]:
    if current_participants >= target_participants:
        return today
    if daily_growth_rate <= 0:
        return None
    remaining = target_participants - current_participants
    return today + timedelta(days=math.ceil(remaining / daily_growth_rate))


def leader_impact(
    referrals: int,
    total_participants: int,
    content_views: int,
    conversions: int
) -> LeaderImpact:
    referral_rate = referrals / total_participants * 100 if total_participants > 0 else 0.0
    conversion_rate = conversions / content_views * 100 if content_views > 0 else 0.0
    return LeaderImpact(
        referrals=referrals,
        content_views=content_views,
        conversions=conversions,
        referral_rate=round(referral_rate, 2),
        conversion_rate=round(conversion_rate, 2),
        impact_score=round(referral_rate * REFERRAL_WEIGHT + conversion_rate * CONVERSION_WEIGHT, 2)
    )


def furthest_stage_index(pipeline: Pipeline) -> int:
    """Furthest forward stage ever entered, read from the timeline"""
    reached = [
        STAGE_ORDER.index(event.stage)
        for event in pipeline.timeline
        if event.event_type in STAGE_ENTRY_EVENTS and event.stage in STAGE_ORDER
    ]
    return max(reached) if reached else 0


class PipelineMetricsService:
    """Funnel conversion, stage durations and revenue across pipelines"""

    def stage_conversion_rates(self, pipelines: List[Pipeline]) -> Dict[str, float]:
        furthest = [furthest_stage_index(p) for p in pipelines]
        rates: Dict[str, float] = {}
        for index, stage in enumerate(STAGE_ORDER):
            if index == 0:
                rates[stage] = 1.0 if pipelines else 0.0
                continue
            previous = sum(1 for f in furthest if f >= index - 1)
            current = sum(1 for f in furthest if f >= index)
            rates[stage] = round(current / previous, 4) if previous else 0.0
        return rates

    def avg_time_per_stage(self, pipelines: List[Pipeline]) -> Dict[str, float]:
        """Mean hours spent per stage visit; the open current stage is not counted"""
        durations: Dict[str, List[float]] = defaultdict(list)
        for pipeline in pipelines:
            entries = [e for e in pipeline.timeline if e.event_type in STAGE_ENTRY_EVENTS]
            entries.sort(key=lambda e: as_utc(e.timestamp))
            for current, following in zip(entries, entries[1:]):
                hours = (as_utc(following.timestamp) - as_utc(current.timestamp)).total_seconds() / 3600
                durations[current.stage].append(hours)

        return {
            stage: round(sum(values) / len(values), 2)
            for stage, values in durations.items()
            if stage in STAGE_ORDER and values
        }

    def calculate(self, pipelines: List[Pipeline]) -> PipelineMetrics:
        completed = [p for p in pipelines if p.stage == "completed"]
        total_revenue = sum(p.state.settlement.sales_summary.net_sales for p in completed)
        return PipelineMetrics(
            stage_conversion_rates=self.stage_conversion_rates(pipelines),
            avg_time_per_stage=self.avg_time_per_stage(pipelines),
            total_pipelines=len(pipelines),
            active_pipelines=sum(1 for p in pipelines if not p.is_terminal),
            completed_pipelines=len(completed),
            total_revenue=total_revenue,
            avg_revenue_per_pipeline=round(total_revenue / len(completed), 2) if completed else 0.0
        )

    def refresh(self, db: Session, cache: Cache) -> PipelineMetrics:
        """Recompute dashboard metrics from every stored pipeline into the cache"""
        metrics = self.calculate(pipeline_repository.list(db))
        cache.set(
            METRICS_CACHE_KEY,
            metrics.model_dump(mode="json"),
            ttl=settings.METRICS_CACHE_TTL_SEC
        )
        logger.info(
            f"Pipeline metrics refreshed: {metrics.total_pipelines} pipelines, "
            f"revenue {metrics.total_revenue}"
        )
        return metrics

    def get_metrics(self, db: Session, cache: Cache) -> PipelineMetrics:
        cached = cache.get(METRICS_CACHE_KEY)
        if cached:
            return PipelineMetrics.model_validate(cached)
        return self.refresh(db, cache)


# Singleton instance
pipeline_metrics_service = PipelineMetricsService()
