"""Celery application configuration."""

from celery import Celery

from ballotgate_worker.settings import get_settings

settings = get_settings()

celery_app = Celery(
    "ballotgate_worker",
    broker=settings.redis_url,
    backend=settings.redis_url,
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_track_started=True,
    task_time_limit=30 * 60,  # 30 minutes
    task_soft_time_limit=25 * 60,  # 25 minutes
    beat_schedule={
        "scan-open-elections": {
            "task": "ballotgate_worker.tasks.scan_open_elections",
            "schedule": float(settings.anomaly_scan_interval_seconds),
        },
        "reconcile-open-elections": {
            "task": "ballotgate_worker.tasks.reconcile_open_elections",
            "schedule": float(settings.reconcile_interval_seconds),
        },
        "purge-expired-tokens": {
            "task": "ballotgate_worker.tasks.purge_expired_tokens",
            "schedule": float(settings.token_purge_interval_seconds),
        },
    },
)

# Import tasks to register them with Celery
# This must be done after celery_app is created
from ballotgate_worker import tasks  # noqa: F401, E402
