"""
Celery app for background provider sync.

The API imports ``celery_app`` to enqueue; the worker imports it to run.
"""
from celery import Celery

from celerybeat_schedule import beat_schedule
from core.config import settings

celery_app = Celery(
    "health_sync",
    broker=settings.CELERY_BROKER_URL,
    backend=settings.CELERY_RESULT_BACKEND,
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    result_expires=24 * 3600,
    timezone="UTC",
    enable_utc=True,
    # A sync holds a provider rate-limit budget; one at a time per process.
    worker_prefetch_multiplier=1,
    task_acks_late=True,
    task_time_limit=30 * 60,
    task_soft_time_limit=25 * 60,
    beat_schedule=beat_schedule,
)

from . import sync_tasks  # noqa: E402,F401

__all__ = ["celery_app"]
