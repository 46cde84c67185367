"""
Services package - Business logic layer
"""
from popup_engine.services.cache_service import cache, code_store
from popup_engine.services.attendance_verification_service import attendance_verification_service
from popup_engine.services.pricing_service import pricing_service
from popup_engine.services.no_show_service import no_show_service
from popup_engine.services.cancellation_service import cancellation_service
from popup_engine.services.trust_service import trust_service
from popup_engine.services.settlement_service import settlement_service
from popup_engine.services.audit_service import audit_service
from popup_engine.services.pipeline_metrics_service import pipeline_metrics_service
from popup_engine.services.pipeline_service import pipeline_service

__all__ = [
    "cache",
    "code_store",
    "attendance_verification_service",
    "pricing_service",
    "no_show_service",
    "cancellation_service",
    "trust_service",
    "settlement_service",
    "audit_service",
    "pipeline_metrics_service",
    "pipeline_service"
]
