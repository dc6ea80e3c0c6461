"""
Tests for the credential lifecycle manager and the per-integration lock.
"""
import threading
from datetime import timedelta
from unittest.mock import MagicMock, patch
from uuid import uuid4

import pytest

from models import Integration
from services.credential_lifecycle import (
    CredentialLifecycleManager,
    IntegrationLockManager,
    SyncInProgressError,
)
from services.health_providers.errors import AuthExchangeError, TokenRefreshError
from services.health_providers.models import as_utc
from services.repositories import IntegrationNotFoundError, IntegrationRepository

from fixtures.provider_fixtures import NOW, make_credentials, mock_response


@pytest.fixture
def manager(db_session, registry, sync_config, lock_manager):
    return CredentialLifecycleManager(
        IntegrationRepository(db_session),
        registry,
        config=sync_config,
        lock_manager=lock_manager,
    )


class TestNeedsRefresh:
    def test_inside_lookahead_window(self, manager):
        assert manager.needs_refresh(make_credentials(expires_in=timedelta(minutes=3)), NOW)
        assert manager.needs_refresh(make_credentials(expires_in=timedelta(minutes=5)), NOW)

    def test_outside_lookahead_window(self, manager):
        assert not manager.needs_refresh(make_credentials(expires_in=timedelta(minutes=10)), NOW)

    def test_already_expired(self, manager):
        assert manager.needs_refresh(make_credentials(expires_in=timedelta(hours=-1)), NOW)


class TestEnsureFreshCredentials:
    def test_fresh_token_is_not_refreshed(self, manager, registry, make_integration):
        integration = make_integration()
        with patch.object(registry.get("FITBIT"), "refresh_token") as mock_refresh:
            creds = manager.ensure_fresh_credentials(integration, now=NOW)
        mock_refresh.assert_not_called()
        assert creds.access_token == "access-token"

    def test_near_expiry_refreshes_and_persists(self, manager, registry, make_integration, db_session):
        integration = make_integration(credentials=make_credentials(expires_in=timedelta(minutes=3)))
        refreshed = make_credentials(expires_in=timedelta(hours=8), access_token="new-access")

        with patch.object(registry.get("FITBIT"), "refresh_token", return_value=refreshed) as mock_refresh:
            creds = manager.ensure_fresh_credentials(integration, now=NOW)

        mock_refresh.assert_called_once_with("refresh-token")
        assert creds.access_token == "new-access"
        stored = IntegrationRepository(db_session).credentials_for(integration)
        assert stored.access_token == "new-access"
        assert as_utc(integration.token_expires_at) == NOW + timedelta(hours=8)
        assert integration.status == "ACTIVE"

    def test_expired_without_refresh_token_marks_expired(self, manager, make_integration):
        integration = make_integration(
            provider="LOSE_IT",
            credentials=make_credentials(expires_in=timedelta(minutes=-1), refresh_token=None),
        )
        with pytest.raises(TokenRefreshError):
            manager.ensure_fresh_credentials(integration, now=NOW)
        assert integration.status == "EXPIRED"
        assert "reconnect" in integration.sync_error_message

    def test_near_expiry_without_refresh_token_uses_current_token(self, manager, make_integration):
        integration = make_integration(
            provider="LOSE_IT",
            credentials=make_credentials(expires_in=timedelta(minutes=3), refresh_token=None),
        )
        creds = manager.ensure_fresh_credentials(integration, now=NOW)
        assert creds.access_token == "access-token"
        assert integration.status == "ACTIVE"

    def test_refresh_failure_marks_error(self, manager, registry, make_integration):
        integration = make_integration(credentials=make_credentials(expires_in=timedelta(minutes=1)))
        error = TokenRefreshError("Fitbit token refresh failed with status 400", provider="FITBIT", status_code=400)

        with patch.object(registry.get("FITBIT"), "refresh_token", side_effect=error):
            with pytest.raises(TokenRefreshError):
                manager.ensure_fresh_credentials(integration, now=NOW)

        assert integration.status == "ERROR"
        assert integration.sync_error_message.startswith("Token refresh failed")


class TestCompleteOAuth:
    def test_rejected_code_creates_nothing(self, manager, db_session):
        with patch("services.health_providers.base.requests.post", return_value=mock_response(401)):
            with pytest.raises(AuthExchangeError):
                manager.complete_oauth(uuid4(), "STRAVA", "bad-code")
        assert db_session.query(Integration).count() == 0

    def test_first_connect_creates_active_integration(self, manager, registry, db_session):
        user_id = uuid4()
        with patch.object(registry.get("STRAVA"), "exchange_code", return_value=make_credentials()):
            integration = manager.complete_oauth(user_id, "STRAVA", "code")

        assert integration.user_id == user_id
        assert integration.provider == "STRAVA"
        assert integration.status == "ACTIVE"
        # Tokens are encrypted at rest.
        assert integration.credentials["access_token"] != "access-token"

    def test_reconnect_overwrites_existing_integration(self, manager, registry, make_integration, db_session):
        existing = make_integration(provider="STRAVA", status="ERROR")
        existing.sync_error_message = "Strava rejected the access token (401)"
        db_session.commit()

        new_creds = make_credentials(access_token="reconnected")
        with patch.object(registry.get("STRAVA"), "exchange_code", return_value=new_creds):
            integration = manager.complete_oauth(existing.user_id, "STRAVA", "code")

        assert integration.id == existing.id
        assert integration.status == "ACTIVE"
        assert integration.sync_error_message is None
        assert IntegrationRepository(db_session).credentials_for(integration).access_token == "reconnected"
        assert db_session.query(Integration).count() == 1


class TestSyncOutcomeMarking:
    def test_success_sets_last_synced_and_clears_error(self, manager, make_integration):
        integration = make_integration(status="ERROR")
        manager.mark_sync_succeeded(integration, NOW)
        assert as_utc(integration.last_synced_at) == NOW
        assert integration.status == "ACTIVE"
        assert integration.sync_error_message is None

    def test_failure_marks_error_with_message(self, manager, make_integration):
        integration = make_integration()
        manager.mark_sync_failed(integration, RuntimeError("boom"))
        assert integration.status == "ERROR"
        assert integration.sync_error_message == "Unexpected sync error: RuntimeError"
        assert integration.last_synced_at is None

    def test_failure_leaves_expired_alone(self, manager, make_integration):
        integration = make_integration(status="EXPIRED")
        manager.mark_sync_failed(integration, RuntimeError("boom"))
        assert integration.status == "EXPIRED"


class TestDisconnect:
    def test_revoke_failure_does_not_block_delete(self, manager, registry, make_integration, db_session):
        integration = make_integration(provider="STRAVA")
        with patch.object(registry.get("STRAVA"), "revoke", side_effect=RuntimeError("upstream down")) as mock_revoke:
            manager.disconnect(integration.id)

        mock_revoke.assert_called_once()
        assert db_session.query(Integration).count() == 0

    def test_unknown_integration_raises(self, manager):
        with pytest.raises(IntegrationNotFoundError):
            manager.disconnect(uuid4())


class TestIntegrationLock:
    def test_second_holder_is_rejected_while_first_holds(self, lock_manager):
        integration_id = uuid4()
        errors = []

        def _contend():
            try:
                with lock_manager.hold(integration_id, timeout_s=0):
                    pass
            except SyncInProgressError as e:
                errors.append(e)

        with lock_manager.hold(integration_id):
            contender = threading.Thread(target=_contend)
            contender.start()
            contender.join()

        assert len(errors) == 1
        assert errors[0].integration_id == integration_id

    def test_lock_is_released_after_block(self, lock_manager):
        integration_id = uuid4()
        with lock_manager.hold(integration_id):
            pass
        with lock_manager.hold(integration_id, timeout_s=0):
            pass

    def test_lock_is_released_when_block_raises(self, lock_manager):
        integration_id = uuid4()
        with pytest.raises(ValueError):
            with lock_manager.hold(integration_id):
                raise ValueError("sync failed")
        with lock_manager.hold(integration_id, timeout_s=0):
            pass

    def test_different_integrations_do_not_contend(self, lock_manager):
        with lock_manager.hold(uuid4()):
            with lock_manager.hold(uuid4(), timeout_s=0):
                pass

    def test_redis_lock_acquired_and_released(self):
        fake_redis = MagicMock()
        fake_redis.set.return_value = True
        locks = IntegrationLockManager(timeout_s=1, ttl_s=60, redis_factory=lambda: fake_redis)
        integration_id = uuid4()

        with locks.hold(integration_id):
            pass

        key = f"sync_lock:integration:{integration_id}"
        assert fake_redis.set.call_args.args[0] == key
        assert fake_redis.set.call_args.kwargs == {"nx": True, "px": 60000}
        token = fake_redis.set.call_args.args[1]
        assert fake_redis.eval.call_args.args[1:] == (1, key, token)

    def test_redis_lock_held_elsewhere_raises(self):
        fake_redis = MagicMock()
        fake_redis.set.return_value = False
        locks = IntegrationLockManager(timeout_s=0, ttl_s=60, redis_factory=lambda: fake_redis)

        with pytest.raises(SyncInProgressError):
            with locks.hold(uuid4()):
                pass
        fake_redis.eval.assert_not_called()

    def test_redis_errors_fail_open(self):
        fake_redis = MagicMock()
        fake_redis.set.side_effect = ConnectionError("redis down")
        locks = IntegrationLockManager(timeout_s=1, ttl_s=60, redis_factory=lambda: fake_redis)

        with locks.hold(uuid4()):
            pass
        fake_redis.eval.assert_not_called()

    def test_released_locks_are_forgotten(self, lock_manager):
        for _ in range(3):
            with lock_manager.hold(uuid4()):
                assert lock_manager.tracked_keys() == 1
        with pytest.raises(ValueError):
            with lock_manager.hold(uuid4()):
                raise ValueError("sync failed")

        assert lock_manager.tracked_keys() == 0

    def test_lock_entry_survives_until_last_waiter_leaves(self, lock_manager):
        integration_id = uuid4()
        waiting = threading.Event()
        finished = threading.Event()

        def _wait_for_lock():
            waiting.set()
            with lock_manager.hold(integration_id, timeout_s=5):
                pass
            finished.set()

        with lock_manager.hold(integration_id):
            waiter = threading.Thread(target=_wait_for_lock)
            waiter.start()
            waiting.wait(timeout=5)
            assert lock_manager.tracked_keys() == 1
        waiter.join(timeout=5)

        assert finished.is_set()
        assert lock_manager.tracked_keys() == 0

    def test_rejected_contender_leaves_no_entry_behind(self, lock_manager):
        integration_id = uuid4()
        errors = []

        def _contend():
            try:
                with lock_manager.hold(integration_id, timeout_s=0):
                    pass
            except SyncInProgressError as e:
                errors.append(e)

        with lock_manager.hold(integration_id):
            contender = threading.Thread(target=_contend)
            contender.start()
            contender.join()
            assert lock_manager.tracked_keys() == 1

        assert len(errors) == 1
        assert lock_manager.tracked_keys() == 0
