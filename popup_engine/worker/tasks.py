"""
Celery Tasks for periodic settlement and dashboard work
"""
import logging
from typing import List, Optional
from celery import shared_task
from popup_engine.db.database import SessionLocal
from popup_engine.schemas.common import utcnow
from popup_engine.services.cache_service import cache
from popup_engine.services.pipeline_metrics_service import pipeline_metrics_service
from popup_engine.services.settlement_service import settlement_service

logger = logging.getLogger(__name__)


def get_db_session():
    """Get database session for tasks"""
    return SessionLocal()


@shared_task(bind=True, max_retries=3, default_retry_delay=60)
def dispatch_due_payouts(self, limit: Optional[int] = None) -> List[str]:
    """
    Hand payouts whose scheduled date has arrived to the payment
    collaborator.

    Only payouts released by completed pipelines are considered; held
    payouts stay put until their dispute is resolved.
    """
    db = get_db_session()
    try:
        now = utcnow()
        dispatched = settlement_service.dispatch_due_payouts(db, now.date(), now, limit)
        logger.info(f"Payout dispatch completed: {len(dispatched)} payouts")
        return dispatched
    except Exception as e:
        logger.error(f"Payout dispatch failed: {e}")
        raise self.retry(exc=e)
    finally:
        db.close()


@shared_task(bind=True, max_retries=3, default_retry_delay=30)
def refresh_pipeline_metrics(self) -> dict:
    """Recompute dashboard metrics into the cache"""
    db = get_db_session()
    try:
        metrics = pipeline_metrics_service.refresh(db, cache)
        return metrics.model_dump(mode="json")
    except Exception as e:
        logger.error(f"Pipeline metrics refresh failed: {e}")
        raise self.retry(exc=e)
    finally:
        db.close()
