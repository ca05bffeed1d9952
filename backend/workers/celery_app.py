"""
Celery Application Configuration
"""

from celery import Celery
from celery.schedules import crontab

from core.config import get_settings

settings = get_settings()

celery_app = Celery(
    "storehealth",
    broker=settings.redis_url,
    backend=settings.redis_url,
    include=["workers.monitoring", "workers.scheduler"],
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_track_started=True,
    worker_prefetch_multiplier=1,
    task_routes={
        "workers.monitoring.place_ai_call": {"queue": "voice"},
        "workers.monitoring.*": {"queue": "monitoring"},
        "workers.scheduler.*": {"queue": "monitoring"},
    },
    # ── Celery Beat Schedule ─────────────────────────────────────────
    # The sweep is global; health checks fan out per organization via
    # workers.scheduler.dispatch_store_health_checks.
    beat_schedule={
        # ── Escalation ─────────────────────────────────────────────
        "escalation-sweep": {
            "task": "workers.monitoring.run_escalation_sweep",
            "schedule": crontab(minute=f"*/{settings.escalation_sweep_minutes}"),
            "options": {"queue": "monitoring"},
        },
        # ── Store Health ───────────────────────────────────────────
        "store-health-check-daily": {
            "task": "workers.scheduler.dispatch_store_health_checks",
            "schedule": crontab(hour=settings.health_check_hour, minute=0),
            "options": {"queue": "monitoring"},
        },
    },
)

# Auto-discover tasks
celery_app.autodiscover_tasks(["workers"])
