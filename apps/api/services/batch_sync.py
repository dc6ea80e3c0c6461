"""
Batch Sync Scheduler

Selects integrations that are due for a resync and runs the per-integration
sync sequence for each, a few at a time. Invoked by the Celery beat task
every 30 minutes.

Selection policy:
- ACTIVE or ERROR integrations only (EXPIRED/REVOKED need the user)
- never synced, or last synced before now - staleness
- never-synced first, then oldest-synced first, capped at the batch limit

One integration's failure never aborts the rest of the batch.
"""

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional
from uuid import UUID

from sqlalchemy.orm import Session

from core.config import SyncEngineConfig
from models import Integration
from services.credential_lifecycle import IntegrationLockManager, describe_failure
from services.health_providers.models import utc_now
from services.health_providers.registry import ProviderRegistry, get_registry
from services.health_sync import HealthSyncService, SyncOutcome
from services.repositories import IntegrationRepository

logger = logging.getLogger(__name__)


def select_due_integrations(
    integrations: IntegrationRepository,
    stale_before: datetime,
    limit: int,
) -> List[Integration]:
    if limit <= 0:
        return []
    return integrations.find_due_for_sync(stale_before, limit)


@dataclass
class BatchSyncResult:
    attempted: int = 0
    succeeded: int = 0
    failed: int = 0
    outcomes: List[SyncOutcome] = field(default_factory=list)
    errors: Dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> Dict:
        return {
            "attempted": self.attempted,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "errors": dict(self.errors),
        }


class BatchSyncRunner:
    """
    Runs one batch. Selection uses one session; each integration sync gets
    its own session so a failure cannot poison the others.
    """

    def __init__(
        self,
        session_factory: Callable[[], Session],
        registry: Optional[ProviderRegistry] = None,
        config: Optional[SyncEngineConfig] = None,
        lock_manager: Optional[IntegrationLockManager] = None,
    ):
        if config is None:
            from core.config import settings, sync_config_from_settings

            config = sync_config_from_settings(settings)
        self.session_factory = session_factory
        self.registry = registry or get_registry()
        self.config = config
        self.lock_manager = lock_manager

    def select(self, now: datetime) -> List[UUID]:
        stale_before = now - timedelta(hours=self.config.batch_staleness_hours)
        db = self.session_factory()
        try:
            due = select_due_integrations(IntegrationRepository(db), stale_before, self.config.batch_limit)
            return [integration.id for integration in due]
        finally:
            db.close()

    def _sync_one(self, integration_id: UUID, now: datetime) -> SyncOutcome:
        db = self.session_factory()
        try:
            service = HealthSyncService(
                db,
                registry=self.registry,
                config=self.config,
                lock_manager=self.lock_manager,
            )
            return service.sync_integration(integration_id, now=now)
        finally:
            db.close()

    def run(self, now: Optional[datetime] = None) -> BatchSyncResult:
        now = now or utc_now()
        integration_ids = self.select(now)
        result = BatchSyncResult(attempted=len(integration_ids))
        if not integration_ids:
            logger.info("Batch sync: no integrations due")
            return result

        logger.info(f"Batch sync: {len(integration_ids)} integrations due")
        workers = max(1, min(self.config.batch_concurrency, len(integration_ids)))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="batch-sync") as pool:
            futures = [
                (integration_id, pool.submit(self._sync_one, integration_id, now))
                for integration_id in integration_ids
            ]
            for integration_id, future in futures:
                try:
                    outcome = future.result()
                except Exception as e:
                    result.failed += 1
                    result.errors[str(integration_id)] = describe_failure(e)
                    logger.warning(f"Batch sync: integration {integration_id} failed: {describe_failure(e)}")
                    continue
                result.succeeded += 1
                result.outcomes.append(outcome)

        logger.info(
            f"Batch sync complete: {result.succeeded}/{result.attempted} succeeded",
            extra={"extra_fields": result.to_dict()},
        )
        return result
