"""
Health Sync Service

Entry point for everything the API and workers do with integrations:
connect (authorize URL + OAuth callback), disconnect, manual sync, and the
per-integration sync sequence used by the batch runner.

Sync sequence (under the integration's lock):
1. Ensure fresh credentials (refresh if near expiry)
2. Fetch the date range from the provider and normalize
3. Validate records (out-of-range records are skipped, not fatal)
4. Persist (same-day records replace earlier ones)
5. Record lastSyncedAt / clear error

Nothing is marked synced unless every step succeeded.
"""

import logging
import time
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Union
from uuid import UUID

from sqlalchemy.orm import Session

from core.config import SyncEngineConfig
from models import Integration
from services.credential_lifecycle import (
    CredentialLifecycleManager,
    IntegrationLockManager,
    SyncInProgressError,
    describe_failure,
)
from services.health_providers.errors import HealthProviderError
from services.health_providers.models import (
    AuthorizationUrl,
    HealthDataProvider,
    IntegrationStatus,
    as_utc,
    utc_now,
    validate_canonical_record,
)
from services.health_providers.registry import ProviderRegistry, get_registry
from services.oauth_state import InvalidOAuthStateError, create_oauth_state, verify_oauth_state
from services.repositories import (
    SYNCABLE_STATUSES,
    HealthRecordRepository,
    IntegrationNotFoundError,
    IntegrationRepository,
)
from services.token_encryption import CredentialDecryptionError

logger = logging.getLogger(__name__)


@dataclass
class SyncOutcome:
    """Result of one integration sync."""
    integration_id: str
    provider: str
    status: str
    records_fetched: int = 0
    records_skipped: int = 0
    error: Optional[str] = None
    duration_ms: int = 0

    @property
    def succeeded(self) -> bool:
        return self.error is None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def serialize_integration(integration: Integration) -> Dict[str, Any]:
    """Public view of an integration. Credentials never leave the service."""
    return {
        "id": str(integration.id),
        "provider": integration.provider,
        "status": integration.status,
        "last_synced_at": as_utc(integration.last_synced_at).isoformat() if integration.last_synced_at else None,
        "sync_error_message": integration.sync_error_message,
        "token_expires_at": as_utc(integration.token_expires_at).isoformat() if integration.token_expires_at else None,
        "created_at": as_utc(integration.created_at).isoformat() if integration.created_at else None,
    }


class HealthSyncService:
    def __init__(
        self,
        db: Session,
        registry: Optional[ProviderRegistry] = None,
        config: Optional[SyncEngineConfig] = None,
        lock_manager: Optional[IntegrationLockManager] = None,
    ):
        if config is None:
            from core.config import settings, sync_config_from_settings

            config = sync_config_from_settings(settings)
        self.db = db
        self.config = config
        self.registry = registry or get_registry()
        self.integrations = IntegrationRepository(db)
        self.records = HealthRecordRepository(db)
        self.credentials = CredentialLifecycleManager(
            self.integrations,
            self.registry,
            config=config,
            lock_manager=lock_manager,
        )

    # --- Connect / disconnect -------------------------------------------

    def get_authorization_url(self, user_id: UUID, provider: Union[HealthDataProvider, str]) -> AuthorizationUrl:
        adapter = self.registry.get(provider)
        state = create_oauth_state(str(user_id), adapter.provider.value)
        return adapter.build_authorization_url(state)

    def complete_oauth(
        self,
        provider: Union[HealthDataProvider, str],
        code: str,
        state: str,
        user_id: Optional[UUID] = None,
    ) -> Integration:
        """
        Verify ``state`` and exchange ``code``.

        The user comes from the signed state; when ``user_id`` is also given
        (authenticated callback) it must match.

        Raises:
            InvalidOAuthStateError, AuthExchangeError, UnsupportedProviderError
        """
        adapter = self.registry.get(provider)
        payload = verify_oauth_state(
            state,
            provider=adapter.provider.value,
            ttl_s=self.config.oauth_state_ttl_s,
        )
        state_user = payload["user_id"]
        if user_id is not None and str(user_id) != state_user:
            raise InvalidOAuthStateError("OAuth state was issued for a different user")
        return self.credentials.complete_oauth(UUID(state_user), adapter.provider, code)

    def _owned(self, integration_id: UUID, user_id: Optional[UUID]) -> Integration:
        integration = self.integrations.get(integration_id)
        if user_id is not None and integration.user_id != user_id:
            # Don't leak existence of other users' integrations.
            raise IntegrationNotFoundError(integration_id)
        return integration

    def disconnect(self, integration_id: UUID, user_id: Optional[UUID] = None) -> None:
        self._owned(integration_id, user_id)
        self.credentials.disconnect(integration_id)

    def list_integrations(self, user_id: UUID) -> List[Dict[str, Any]]:
        return [serialize_integration(i) for i in self.integrations.find_by_user(user_id)]

    # --- Sync ------------------------------------------------------------

    def sync_range_for(self, integration: Integration, now: datetime):
        """First sync looks further back than incremental ones."""
        end = now.date()
        days = self.config.initial_lookback_days if integration.last_synced_at is None else self.config.lookback_days
        return end - timedelta(days=days), end

    def sync_integration(self, integration_id: UUID, now: Optional[datetime] = None) -> SyncOutcome:
        """
        Run the full sync sequence for one integration.

        Raises:
            IntegrationNotFoundError, SyncInProgressError, and any failure of
            refresh/fetch/persist after it has been recorded on the integration
        """
        started = time.monotonic()
        with self.credentials.integration_lock(integration_id):
            integration = self.integrations.get(integration_id)
            # Another holder may have refreshed credentials since our session loaded them.
            self.db.refresh(integration)
            now = now or utc_now()
            adapter = self.registry.get(integration.provider)
            log_context = {"integration_id": str(integration.id), "provider": integration.provider}

            try:
                credentials = self.credentials.ensure_fresh_credentials(integration, now)
                start_date, end_date = self.sync_range_for(integration, now)
                fetched = adapter.fetch_range(credentials, start_date, end_date)

                valid = []
                skipped = 0
                for record in fetched:
                    problems = validate_canonical_record(record)
                    if problems:
                        skipped += 1
                        logger.warning(
                            f"Skipping invalid {integration.provider} record for {record.date}: {'; '.join(problems)}",
                            extra={"extra_fields": log_context},
                        )
                        continue
                    valid.append(record)

                self.records.bulk_upsert(integration.user_id, valid)
                self.credentials.mark_sync_succeeded(integration, now)
            except Exception as e:
                self.db.rollback()
                self.credentials.mark_sync_failed(integration, e)
                logger.error(
                    f"Sync failed for integration {integration.id}: {describe_failure(e)}",
                    extra={"extra_fields": log_context},
                )
                raise

        duration_ms = int((time.monotonic() - started) * 1000)
        logger.info(
            f"Synced {len(valid)} {adapter.display_name} records for integration {integration.id}",
            extra={"extra_fields": {**log_context, "records": len(valid), "skipped": skipped, "duration_ms": duration_ms}},
        )
        return SyncOutcome(
            integration_id=str(integration.id),
            provider=integration.provider,
            status=integration.status,
            records_fetched=len(valid),
            records_skipped=skipped,
            duration_ms=duration_ms,
        )

    def sync_now(
        self,
        integration_id: UUID,
        user_id: Optional[UUID] = None,
        now: Optional[datetime] = None,
    ) -> SyncOutcome:
        """
        Manual sync trigger.

        Provider and credential failures come back as an ERROR outcome;
        a missing integration or a sync already in flight still raise.
        """
        integration = self._owned(integration_id, user_id)
        started = time.monotonic()
        try:
            return self.sync_integration(integration_id, now=now)
        except (HealthProviderError, CredentialDecryptionError) as e:
            self.db.refresh(integration)
            return SyncOutcome(
                integration_id=str(integration.id),
                provider=integration.provider,
                status=integration.status,
                error=describe_failure(e),
                duration_ms=int((time.monotonic() - started) * 1000),
            )

    def sync_all(self, user_id: UUID, now: Optional[datetime] = None) -> List[SyncOutcome]:
        """
        Manual sync of every syncable integration the user owns.

        Runs one after another; a failing or busy integration is reported in
        its own outcome and does not stop the rest.
        """
        outcomes = []
        for integration in self.integrations.find_by_user(user_id):
            if integration.status not in SYNCABLE_STATUSES:
                continue
            try:
                outcomes.append(self.sync_now(integration.id, user_id=user_id, now=now))
            except SyncInProgressError as e:
                outcomes.append(
                    SyncOutcome(
                        integration_id=str(integration.id),
                        provider=integration.provider,
                        status=integration.status,
                        error=describe_failure(e),
                    )
                )
        failed = sum(1 for o in outcomes if not o.succeeded)
        logger.info(
            f"Synced {len(outcomes) - failed} of {len(outcomes)} integrations for user {user_id}",
            extra={"extra_fields": {"user_id": str(user_id), "attempted": len(outcomes), "failed": failed}},
        )
        return outcomes
