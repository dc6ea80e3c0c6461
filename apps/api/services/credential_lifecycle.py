"""
Credential Lifecycle Manager

Owns the OAuth state machine of every integration:

    ACTIVE --(near expiry, refresh ok)--> ACTIVE
    ACTIVE --(refresh fails / provider rejects token)--> ERROR
    ACTIVE --(expired, no refresh token)--> EXPIRED
    any    --(user reconnects with a new code)--> ACTIVE
    any    --(user disconnects)--> deleted

Refresh is opportunistic: it runs right before each sync, never on its own
timer. At most one sync per integration is in flight at any time; the
``IntegrationLockManager`` enforces that inside the process (threading.Lock)
and across workers (Redis SET NX PX) when Redis is available.
"""

import logging
import threading
import time
import uuid
from contextlib import contextmanager
from datetime import datetime, timedelta
from typing import Callable, Dict, Iterator, Optional, Union
from uuid import UUID

from core.cache import get_redis_client
from core.config import SyncEngineConfig
from models import Integration
from services.health_providers.errors import (
    HealthProviderError,
    ProviderFetchError,
    TokenRefreshError,
)
from services.health_providers.models import (
    HealthDataProvider,
    IntegrationStatus,
    OAuthCredentials,
    utc_now,
)
from services.health_providers.registry import ProviderRegistry
from services.repositories import IntegrationRepository
from services.token_encryption import CredentialDecryptionError

logger = logging.getLogger(__name__)

LOCK_KEY_PREFIX = "sync_lock:integration:"
LOCK_POLL_S = 0.25

# Compare-and-delete so a worker never releases a lock it no longer owns.
RELEASE_LUA = """
if redis.call('GET', KEYS[1]) == ARGV[1] then
  return redis.call('DEL', KEYS[1])
end
return 0
"""


class SyncInProgressError(Exception):
    """Another sync for the same integration holds the lock."""

    def __init__(self, integration_id):
        super().__init__(f"A sync is already in progress for integration {integration_id}")
        self.integration_id = integration_id


class IntegrationLockManager:
    """Single-flight gate keyed by integration id."""

    def __init__(
        self,
        timeout_s: float = 120,
        ttl_s: int = 900,
        redis_factory: Callable = get_redis_client,
    ):
        self.timeout_s = timeout_s
        self.ttl_s = ttl_s
        self._redis_factory = redis_factory
        # key -> [lock, number of callers holding or waiting on it]
        self._locks: Dict[str, list] = {}
        self._guard = threading.Lock()

    def _checkout_local(self, key: str) -> threading.Lock:
        with self._guard:
            entry = self._locks.get(key)
            if entry is None:
                entry = [threading.Lock(), 0]
                self._locks[key] = entry
            entry[1] += 1
            return entry[0]

    def _checkin_local(self, key: str) -> None:
        with self._guard:
            entry = self._locks[key]
            entry[1] -= 1
            if entry[1] == 0:
                del self._locks[key]

    def tracked_keys(self) -> int:
        with self._guard:
            return len(self._locks)

    def _acquire_distributed(self, key: str, deadline: float) -> Optional[str]:
        """
        Returns the owner token, "" when Redis is unavailable (fail open),
        or None when the deadline passed while another worker held the lock.
        """
        r = self._redis_factory()
        if not r:
            return ""
        token = uuid.uuid4().hex
        redis_key = f"{LOCK_KEY_PREFIX}{key}"
        while True:
            try:
                if r.set(redis_key, token, nx=True, px=int(self.ttl_s * 1000)):
                    return token
            except Exception as e:
                logger.warning(f"Redis sync lock unavailable, using in-process lock only: {e}")
                return ""
            if time.monotonic() >= deadline:
                return None
            time.sleep(LOCK_POLL_S)

    def _release_distributed(self, key: str, token: str) -> None:
        r = self._redis_factory()
        if not r:
            return
        try:
            r.eval(RELEASE_LUA, 1, f"{LOCK_KEY_PREFIX}{key}", token)
        except Exception as e:
            # TTL expiry frees the key if this fails.
            logger.warning(f"Failed to release Redis sync lock for {key}: {e}")

    @contextmanager
    def hold(self, integration_id: Union[UUID, str], timeout_s: Optional[float] = None) -> Iterator[None]:
        """
        Hold the integration's lock for the duration of the block.

        Raises:
            SyncInProgressError: lock not acquired within the timeout
        """
        key = str(integration_id)
        wait = self.timeout_s if timeout_s is None else timeout_s
        deadline = time.monotonic() + wait

        local = self._checkout_local(key)
        try:
            if not local.acquire(timeout=max(0.0, wait)):
                raise SyncInProgressError(integration_id)
            try:
                token = self._acquire_distributed(key, deadline)
                if token is None:
                    raise SyncInProgressError(integration_id)
                try:
                    yield
                finally:
                    if token:
                        self._release_distributed(key, token)
            finally:
                local.release()
        finally:
            self._checkin_local(key)


_lock_manager: Optional[IntegrationLockManager] = None
_lock_manager_guard = threading.Lock()


def get_lock_manager() -> IntegrationLockManager:
    """Process-wide lock manager (all services in a process must share it)."""
    global _lock_manager
    with _lock_manager_guard:
        if _lock_manager is None:
            from core.config import settings

            _lock_manager = IntegrationLockManager(
                timeout_s=settings.SYNC_LOCK_TIMEOUT_S,
                ttl_s=settings.SYNC_LOCK_TTL_S,
            )
        return _lock_manager


def describe_failure(exc: Exception) -> str:
    """Human-readable cause stored in ``sync_error_message``."""
    if isinstance(exc, ProviderFetchError) and exc.is_auth_failure:
        return f"{exc.provider or 'Provider'} rejected the access token ({exc.status_code}); reconnect may be required"
    if isinstance(exc, TokenRefreshError):
        return f"Token refresh failed: {exc}"
    if isinstance(exc, (HealthProviderError, SyncInProgressError)):
        return str(exc)
    if isinstance(exc, CredentialDecryptionError):
        return "Stored credentials could not be decrypted; reconnect required"
    return f"Unexpected sync error: {type(exc).__name__}"


class CredentialLifecycleManager:
    """
    Keeps integration credentials usable and records their state.

    Methods that touch credentials expect the caller to hold
    ``integration_lock`` for that integration.
    """

    def __init__(
        self,
        integrations: IntegrationRepository,
        registry: ProviderRegistry,
        config: Optional[SyncEngineConfig] = None,
        lock_manager: Optional[IntegrationLockManager] = None,
    ):
        self.integrations = integrations
        self.registry = registry
        self.config = config or SyncEngineConfig()
        self.locks = lock_manager or get_lock_manager()

    def integration_lock(self, integration_id, timeout_s: Optional[float] = None):
        return self.locks.hold(integration_id, timeout_s=timeout_s)

    def needs_refresh(self, credentials: OAuthCredentials, now: Optional[datetime] = None) -> bool:
        """True when the token expires within the lookahead window."""
        now = now or utc_now()
        threshold = now + timedelta(minutes=self.config.refresh_lookahead_minutes)
        return credentials.expires_at <= threshold

    def ensure_fresh_credentials(self, integration: Integration, now: Optional[datetime] = None) -> OAuthCredentials:
        """
        Return credentials that are valid for the upcoming fetch.

        Raises:
            TokenRefreshError: refresh failed (status ERROR) or impossible
                because the token expired without a refresh token (EXPIRED)
        """
        now = now or utc_now()
        credentials = self.integrations.credentials_for(integration)
        if not self.needs_refresh(credentials, now):
            return credentials

        adapter = self.registry.get(integration.provider)

        if not credentials.refresh_token:
            if credentials.is_expired(now):
                message = f"{adapter.display_name} token expired and no refresh token is available; reconnect required"
                self.integrations.update_status(integration, IntegrationStatus.EXPIRED, message)
                logger.warning(
                    f"Integration {integration.id} marked EXPIRED",
                    extra={"extra_fields": {"integration_id": str(integration.id), "provider": integration.provider}},
                )
                raise TokenRefreshError(message, provider=integration.provider)
            # Still valid for a few minutes and nothing to refresh with.
            return credentials

        logger.info(f"Refreshing {adapter.display_name} token for integration {integration.id}")
        try:
            refreshed = adapter.refresh_token(credentials.refresh_token)
        except TokenRefreshError as e:
            self.integrations.record_sync_error(integration, describe_failure(e))
            logger.error(
                f"Token refresh failed for integration {integration.id}",
                extra={"extra_fields": {"integration_id": str(integration.id), "status_code": e.status_code}},
            )
            raise

        self.integrations.update_credentials(integration, refreshed)
        return refreshed

    def complete_oauth(
        self,
        user_id: UUID,
        provider: Union[HealthDataProvider, str],
        code: str,
    ) -> Integration:
        """
        Exchange ``code`` and persist the credentials as ACTIVE.

        The exchange happens before any write, so a rejected code leaves the
        store untouched. Reconnecting overwrites the existing integration.

        Raises:
            AuthExchangeError, UnsupportedProviderError
        """
        adapter = self.registry.get(provider)
        credentials = adapter.exchange_code(code)

        existing = self.integrations.find_by_user_and_provider(user_id, adapter.provider)
        if existing is None:
            integration = self.integrations.create(user_id, adapter.provider, credentials)
            logger.info(f"Connected {adapter.display_name} for user {user_id}")
            return integration

        with self.integration_lock(existing.id):
            self.integrations.update_credentials(existing, credentials)
            self.integrations.update_status(existing, IntegrationStatus.ACTIVE, None)
        logger.info(f"Reconnected {adapter.display_name} for user {user_id}")
        return existing

    def mark_sync_succeeded(self, integration: Integration, synced_at: Optional[datetime] = None) -> Integration:
        return self.integrations.update_last_synced(integration, synced_at or utc_now())

    def mark_sync_failed(self, integration: Integration, error: Exception) -> Integration:
        """ERROR is not terminal: the integration stays eligible for the next batch."""
        if integration.status == IntegrationStatus.EXPIRED.value:
            return integration
        return self.integrations.record_sync_error(integration, describe_failure(error))

    def disconnect(self, integration_id: UUID) -> None:
        """
        Best-effort revoke, then delete locally.

        Raises:
            IntegrationNotFoundError
        """
        integration = self.integrations.get(integration_id)
        with self.integration_lock(integration.id):
            adapter = self.registry.get(integration.provider)
            try:
                adapter.revoke(self.integrations.credentials_for(integration))
            except Exception as e:
                logger.warning(f"Revoke failed for integration {integration.id}: {type(e).__name__}")
            self.integrations.delete(integration)
        logger.info(f"Disconnected {adapter.display_name} integration {integration_id}")
