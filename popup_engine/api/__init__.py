"""
API routers package
"""
from popup_engine.api import (
    system,
    checkin,
    pricing,
    predictions,
    cancellation,
    trust,
    pipelines,
    settlement
)

__all__ = [
    "system",
    "checkin",
    "pricing",
    "predictions",
    "cancellation",
    "trust",
    "pipelines",
    "settlement"
]
