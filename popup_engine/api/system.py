"""
System Router - Health checks and monitoring
"""
import logging
from fastapi import APIRouter, Depends
from sqlalchemy import text
from sqlalchemy.orm import Session

from popup_engine.dependencies import get_cache, get_db
from popup_engine.schemas.common import utcnow
from popup_engine.services.cache_service import Cache

logger = logging.getLogger(__name__)
router = APIRouter()


@router.get("/health")
async def health_check(
    db: Session = Depends(get_db),
    cache: Cache = Depends(get_cache)
):
    """
    Health check endpoint returning status of backing services.
    The engine stays usable with an unhealthy cache.
    """
    cache_status = "healthy" if cache.ping() else "unhealthy"

    database_status = "unhealthy"
    try:
        db.execute(text("SELECT 1"))
        database_status = "healthy"
    except Exception as e:
        logger.warning(f"Database health check failed: {e}")

    return {
        "database": database_status,
        "redis": cache_status,
        "status": "healthy" if database_status == "healthy" else "degraded",
        "timestamp": utcnow().isoformat()
    }
