"""Shared Celery client for the API to enqueue worker tasks.

Configured to match the worker (JSON serializer, UTC, Redis broker).
"""

import logging
from typing import Optional

from celery import Celery

from ballotgate_api.settings import get_settings

logger = logging.getLogger(__name__)

DETECT_ANOMALIES_TASK = "ballotgate_worker.tasks.detect_anomalies"

_celery_app: Optional[Celery] = None


def get_celery_app() -> Celery:
    """Get or create singleton Celery app instance."""
    global _celery_app

    if _celery_app is None:
        settings = get_settings()

        _celery_app = Celery("ballotgate_api")
        _celery_app.conf.update(
            broker_url=settings.redis_url,
            result_backend=settings.redis_url,
            task_serializer="json",
            accept_content=["json"],
            result_serializer="json",
            timezone="UTC",
            enable_utc=True,
            broker_connection_retry_on_startup=False,
            broker_transport_options={"max_retries": 1},
        )

        logger.info("Initialized Celery client for ballotgate_api")

    return _celery_app
