"""
Periodic tasks for Celery beat.
"""
from celery.schedules import crontab

from core.config import settings

beat_schedule = {
    # Selection, staleness and per-run cap live in BatchSyncRunner.
    'batch-health-sync': {
        'task': 'tasks.run_batch_sync',
        'schedule': crontab(minute=f'*/{settings.BATCH_SYNC_INTERVAL_MINUTES}'),
        'options': {'expires': settings.BATCH_SYNC_INTERVAL_MINUTES * 60},
    },
}
