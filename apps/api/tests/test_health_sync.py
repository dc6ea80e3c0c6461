"""
Tests for the per-integration sync sequence and the connect/disconnect
operations exposed by HealthSyncService.
"""
import threading
from datetime import date, timedelta
from unittest.mock import patch
from uuid import uuid4

import pytest

from core.database import SessionLocal
from models import HealthRecord, Integration
from services.credential_lifecycle import SyncInProgressError
from services.health_providers.errors import ProviderFetchError
from services.health_providers.models import CanonicalHealthRecord, HealthDataProvider, as_utc
from services.health_sync import HealthSyncService
from services.oauth_state import InvalidOAuthStateError, create_oauth_state, verify_oauth_state
from services.repositories import IntegrationNotFoundError

from fixtures.provider_fixtures import NOW, make_credentials


@pytest.fixture
def service(db_session, registry, sync_config, lock_manager):
    return HealthSyncService(db_session, registry=registry, config=sync_config, lock_manager=lock_manager)


def _fitbit_record(day, **metrics):
    return CanonicalHealthRecord(date=day, provider=HealthDataProvider.FITBIT, **metrics)


class TestSyncIntegration:
    def test_successful_sync_persists_and_marks_synced(self, service, registry, make_integration, db_session):
        integration = make_integration()
        records = [
            _fitbit_record(date(2024, 6, 14), steps=9000, sleep_minutes=420),
            _fitbit_record(date(2024, 6, 15), steps=4000),
        ]
        with patch.object(registry.get("FITBIT"), "fetch_range", return_value=records) as mock_fetch:
            outcome = service.sync_integration(integration.id, now=NOW)

        # First sync looks back the initial window.
        mock_fetch.assert_called_once()
        _, start_date, end_date = mock_fetch.call_args.args
        assert end_date == NOW.date()
        assert start_date == NOW.date() - timedelta(days=30)

        assert outcome.succeeded
        assert outcome.records_fetched == 2
        assert outcome.status == "ACTIVE"
        assert db_session.query(HealthRecord).count() == 2
        db_session.refresh(integration)
        assert as_utc(integration.last_synced_at) == NOW
        assert integration.sync_error_message is None

    def test_incremental_sync_uses_short_lookback(self, service, make_integration):
        integration = make_integration(last_synced_at=NOW - timedelta(days=2))
        start, end = service.sync_range_for(integration, NOW)
        assert (end - start).days == 7

    def test_refresh_completes_before_fetch(self, service, registry, make_integration):
        integration = make_integration(credentials=make_credentials(expires_in=timedelta(minutes=2)))
        calls = []
        refreshed = make_credentials(expires_in=timedelta(hours=8), access_token="fresh-access")
        adapter = registry.get("FITBIT")

        def _refresh(token):
            calls.append("refresh")
            return refreshed

        def _fetch(credentials, start, end):
            calls.append(("fetch", credentials.access_token))
            return []

        with patch.object(adapter, "refresh_token", side_effect=_refresh), \
                patch.object(adapter, "fetch_range", side_effect=_fetch):
            service.sync_integration(integration.id, now=NOW)

        assert calls == ["refresh", ("fetch", "fresh-access")]

    def test_fetch_failure_marks_error_and_does_not_mark_synced(self, service, registry, make_integration, db_session):
        integration = make_integration()
        error = ProviderFetchError("Fitbit returned 503", provider="FITBIT", status_code=503, retryable=True)

        with patch.object(registry.get("FITBIT"), "fetch_range", side_effect=error):
            with pytest.raises(ProviderFetchError):
                service.sync_integration(integration.id, now=NOW)

        db_session.refresh(integration)
        assert integration.status == "ERROR"
        assert integration.sync_error_message == "Fitbit returned 503"
        assert integration.last_synced_at is None
        assert db_session.query(HealthRecord).count() == 0

    def test_auth_rejection_message_suggests_reconnect(self, service, registry, make_integration, db_session):
        integration = make_integration(provider="STRAVA")
        error = ProviderFetchError("Strava returned 401", provider="STRAVA", status_code=401)

        with patch.object(registry.get("STRAVA"), "fetch_range", side_effect=error):
            with pytest.raises(ProviderFetchError):
                service.sync_integration(integration.id, now=NOW)

        db_session.refresh(integration)
        assert "reconnect" in integration.sync_error_message

    def test_invalid_records_are_skipped_not_fatal(self, service, registry, make_integration, db_session):
        integration = make_integration()
        records = [
            _fitbit_record(date(2024, 6, 14), steps=8000),
            _fitbit_record(date(2024, 6, 15), steps=250000),
        ]
        with patch.object(registry.get("FITBIT"), "fetch_range", return_value=records):
            outcome = service.sync_integration(integration.id, now=NOW)

        assert outcome.records_fetched == 1
        assert outcome.records_skipped == 1
        assert [r.steps for r in db_session.query(HealthRecord).all()] == [8000]

    def test_resync_of_same_range_is_idempotent(self, service, registry, make_integration, db_session):
        integration = make_integration()
        records = [_fitbit_record(date(2024, 6, 14), steps=9000, weight=80.0)]

        with patch.object(registry.get("FITBIT"), "fetch_range", return_value=records):
            service.sync_integration(integration.id, now=NOW)
            service.sync_integration(integration.id, now=NOW + timedelta(hours=1))

        rows = db_session.query(HealthRecord).all()
        assert len(rows) == 1
        assert (rows[0].steps, rows[0].weight) == (9000, 80.0)

    def test_later_sync_replaces_same_day_values(self, service, registry, make_integration, db_session):
        integration = make_integration()
        adapter = registry.get("FITBIT")

        with patch.object(adapter, "fetch_range", return_value=[_fitbit_record(date(2024, 6, 14), steps=3000, weight=81.0)]):
            service.sync_integration(integration.id, now=NOW)
        with patch.object(adapter, "fetch_range", return_value=[_fitbit_record(date(2024, 6, 14), steps=7000)]):
            service.sync_integration(integration.id, now=NOW + timedelta(hours=1))

        db_session.expire_all()
        row = db_session.query(HealthRecord).one()
        assert row.steps == 7000
        assert row.weight is None

    def test_unknown_integration_raises(self, service):
        with pytest.raises(IntegrationNotFoundError):
            service.sync_integration(uuid4(), now=NOW)


class TestSyncNow:
    def test_provider_failure_returns_error_outcome(self, service, registry, make_integration):
        integration = make_integration()
        error = ProviderFetchError("Fitbit request to /sleep failed: Timeout", provider="FITBIT", retryable=True)

        with patch.object(registry.get("FITBIT"), "fetch_range", side_effect=error):
            outcome = service.sync_now(integration.id, now=NOW)

        assert not outcome.succeeded
        assert outcome.status == "ERROR"
        assert outcome.records_fetched == 0
        assert "Timeout" in outcome.error

    def test_other_users_integration_is_not_found(self, service, make_integration):
        integration = make_integration()
        with pytest.raises(IntegrationNotFoundError):
            service.sync_now(integration.id, user_id=uuid4())


class TestConnect:
    def test_authorization_url_carries_verifiable_state(self, service):
        user_id = uuid4()
        auth = service.get_authorization_url(user_id, "FITBIT")

        assert auth.url.startswith("https://www.fitbit.com/oauth2/authorize?")
        payload = verify_oauth_state(auth.state, provider="FITBIT")
        assert payload["user_id"] == str(user_id)

    def test_complete_oauth_binds_user_from_state(self, service, registry):
        user_id = uuid4()
        state = create_oauth_state(str(user_id), "LOSE_IT")

        with patch.object(registry.get("LOSE_IT"), "exchange_code", return_value=make_credentials()) as mock_exchange:
            integration = service.complete_oauth("LOSE_IT", "code", state)

        mock_exchange.assert_called_once_with("code")
        assert integration.user_id == user_id
        assert integration.provider == "LOSE_IT"

    def test_state_for_another_provider_is_rejected_before_exchange(self, service, registry, db_session):
        state = create_oauth_state(str(uuid4()), "STRAVA")

        with patch.object(registry.get("FITBIT"), "exchange_code") as mock_exchange:
            with pytest.raises(InvalidOAuthStateError):
                service.complete_oauth("FITBIT", "code", state)

        mock_exchange.assert_not_called()
        assert db_session.query(Integration).count() == 0

    def test_state_for_another_user_is_rejected(self, service):
        state = create_oauth_state(str(uuid4()), "STRAVA")
        with pytest.raises(InvalidOAuthStateError):
            service.complete_oauth("STRAVA", "code", state, user_id=uuid4())

    def test_list_never_exposes_credentials(self, service, make_integration):
        integration = make_integration()
        listed = service.list_integrations(integration.user_id)

        assert len(listed) == 1
        assert listed[0]["provider"] == "FITBIT"
        assert "credentials" not in listed[0]
        assert "access_token" not in str(listed[0])

    def test_disconnect_checks_ownership(self, service, make_integration, db_session):
        integration = make_integration(provider="LOSE_IT")
        with pytest.raises(IntegrationNotFoundError):
            service.disconnect(integration.id, user_id=uuid4())

        service.disconnect(integration.id, user_id=integration.user_id)
        assert db_session.query(Integration).count() == 0


class TestConcurrentSync:
    def test_second_sync_of_same_integration_never_overlaps_the_first(
        self, service, registry, sync_config, lock_manager, make_integration
    ):
        integration = make_integration()
        inside_fetch = threading.Event()
        let_fetch_finish = threading.Event()
        guard = threading.Lock()
        active = {"now": 0, "max": 0}
        first_result = {}

        def _slow_fetch(credentials, start, end):
            with guard:
                active["now"] += 1
                active["max"] = max(active["max"], active["now"])
            inside_fetch.set()
            let_fetch_finish.wait(timeout=5)
            with guard:
                active["now"] -= 1
            return [_fitbit_record(date(2024, 6, 14), steps=4000)]

        def _first_sync():
            session = SessionLocal()
            try:
                worker = HealthSyncService(session, registry=registry, config=sync_config, lock_manager=lock_manager)
                first_result["outcome"] = worker.sync_integration(integration.id, now=NOW)
            finally:
                session.close()

        with patch.object(registry.get("FITBIT"), "fetch_range", side_effect=_slow_fetch) as fetch:
            first = threading.Thread(target=_first_sync)
            first.start()
            assert inside_fetch.wait(timeout=5)

            with pytest.raises(SyncInProgressError):
                service.sync_integration(integration.id, now=NOW)

            let_fetch_finish.set()
            first.join(timeout=5)

        assert fetch.call_count == 1
        assert active["max"] == 1
        assert first_result["outcome"].succeeded
        assert first_result["outcome"].records_fetched == 1


class TestSyncAll:
    def test_syncs_each_of_the_users_integrations(self, service, registry, make_integration):
        user_id = uuid4()
        fitbit = make_integration(provider="FITBIT", user_id=user_id)
        errored = make_integration(provider="STRAVA", user_id=user_id, status="ERROR")
        make_integration(provider="LOSE_IT", user_id=user_id, status="EXPIRED")
        make_integration(provider="FITBIT")

        with patch.object(registry.get("FITBIT"), "fetch_range", return_value=[]) as fitbit_fetch, \
                patch.object(registry.get("STRAVA"), "fetch_range", return_value=[]):
            outcomes = service.sync_all(user_id, now=NOW)

        assert {o.integration_id for o in outcomes} == {str(fitbit.id), str(errored.id)}
        assert all(o.succeeded for o in outcomes)
        fitbit_fetch.assert_called_once()

    def test_busy_integration_does_not_stop_the_rest(self, service, registry, make_integration, lock_manager):
        user_id = uuid4()
        busy = make_integration(provider="FITBIT", user_id=user_id)
        free = make_integration(provider="STRAVA", user_id=user_id)

        with lock_manager.hold(busy.id), \
                patch.object(lock_manager, "timeout_s", 0), \
                patch.object(registry.get("STRAVA"), "fetch_range", return_value=[]):
            outcomes = {o.integration_id: o for o in service.sync_all(user_id, now=NOW)}

        assert "already in progress" in outcomes[str(busy.id)].error
        assert outcomes[str(free.id)].succeeded
