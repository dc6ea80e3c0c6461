"""
Celery tasks for provider synchronization.

These tasks run in the background worker to keep provider I/O off the API.
"""
import logging
from typing import Dict
from uuid import UUID

from celery import Task

from core.database import SessionLocal, get_db_sync
from services.batch_sync import BatchSyncRunner
from services.credential_lifecycle import SyncInProgressError
from services.health_sync import HealthSyncService
from services.repositories import IntegrationNotFoundError
from tasks import celery_app

logger = logging.getLogger(__name__)


@celery_app.task(name="tasks.run_batch_sync", bind=True)
def run_batch_sync(self: Task) -> Dict:
    """
    Resync every integration that is due.

    Per-integration failures are recorded on the integration and counted;
    they never fail the task.
    """
    result = BatchSyncRunner(SessionLocal).run()
    return result.to_dict()


@celery_app.task(name="tasks.sync_integration", bind=True)
def sync_integration(self: Task, integration_id: str) -> Dict:
    """Sync one integration (enqueued after connect or from admin tooling)."""
    db = get_db_sync()
    try:
        outcome = HealthSyncService(db).sync_now(UUID(integration_id))
        return outcome.to_dict()
    except IntegrationNotFoundError:
        logger.info(f"Integration {integration_id} no longer exists; skipping sync")
        return {"integration_id": integration_id, "status": "skipped", "error": "not_found"}
    except SyncInProgressError:
        logger.info(f"Integration {integration_id} already syncing; skipping")
        return {"integration_id": integration_id, "status": "skipped", "error": "in_progress"}
    finally:
        db.close()
