"""
Celery Application Configuration
"""
from celery import Celery
from popup_engine.config import settings

# Create Celery app
celery_app = Celery(
    "popup_engine_worker",
    broker=settings.CELERY_BROKER_URL,
    backend=settings.CELERY_RESULT_BACKEND,
    include=[
        "popup_engine.worker.tasks"
    ]
)

# Celery configuration
celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_track_started=True,
    task_time_limit=300,  # 5 minutes max
    task_soft_time_limit=270,
    worker_prefetch_multiplier=1,
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    result_expires=3600,  # Results expire after 1 hour
)

# Task routing
celery_app.conf.task_routes = {
    "popup_engine.worker.tasks.dispatch_due_payouts": {"queue": "payouts"},
    "popup_engine.worker.tasks.*": {"queue": "default"},
}

# Periodic tasks
celery_app.conf.beat_schedule = {
    "dispatch-due-payouts": {
        "task": "popup_engine.worker.tasks.dispatch_due_payouts",
        "schedule": 3600.0,  # Hourly
    },
    "refresh-pipeline-metrics": {
        "task": "popup_engine.worker.tasks.refresh_pipeline_metrics",
        "schedule": float(settings.METRICS_CACHE_TTL_SEC),
    },
}
