"""
Tests for manual health data entry and its API.
"""
from datetime import timedelta
from uuid import uuid4

import pytest
from fastapi.testclient import TestClient
from jose import jwt

from core.config import settings
from main import app
from routers.goals import get_goal_service
from routers.health_data import get_health_data_service
from services.goal_service import GoalService
from services.health_data import HealthDataService, HealthDataValidationError
from services.health_providers.models import CanonicalHealthRecord, HealthDataProvider, utc_now
from services.repositories import HealthRecordRepository

from fixtures.provider_fixtures import NOW

TODAY = NOW.date()


@pytest.fixture
def service(db_session):
    return HealthDataService(db_session)


class TestLogHealthData:
    def test_entry_is_stored_as_manual_record(self, service, db_session):
        user_id = uuid4()

        row = service.log_health_data(user_id, day=TODAY, now=NOW, water_liters=1.5, steps=4000)

        assert row.provider == "MANUAL"
        assert row.date == TODAY
        assert (row.water_liters, row.steps) == (1.5, 4000)
        stored = HealthRecordRepository(db_session).query_range(user_id, TODAY, TODAY)
        assert len(stored) == 1

    def test_date_defaults_to_today(self, service):
        row = service.log_health_data(uuid4(), now=NOW, weight=80.0)
        assert row.date == TODAY

    def test_same_day_entries_merge(self, service):
        user_id = uuid4()
        service.log_health_data(user_id, day=TODAY, now=NOW, water_liters=1.0, weight=81.0)

        row = service.log_health_data(user_id, day=TODAY, now=NOW, water_liters=2.0)

        assert row.water_liters == 2.0
        assert row.weight == 81.0

    def test_provider_records_are_left_alone(self, service, db_session):
        user_id = uuid4()
        HealthRecordRepository(db_session).bulk_upsert(
            user_id, [CanonicalHealthRecord(date=TODAY, provider=HealthDataProvider.FITBIT, steps=9000)],
        )

        service.log_health_data(user_id, day=TODAY, now=NOW, steps=100)

        rows = HealthRecordRepository(db_session).query_range(user_id, TODAY, TODAY)
        assert sorted((r.provider, r.steps) for r in rows) == [("FITBIT", 9000), ("MANUAL", 100)]

    def test_at_least_one_metric_required(self, service):
        with pytest.raises(HealthDataValidationError):
            service.log_health_data(uuid4(), now=NOW, water_liters=None)

    def test_unknown_metric_is_rejected(self, service):
        with pytest.raises(HealthDataValidationError) as exc_info:
            service.log_health_data(uuid4(), now=NOW, mood="great")
        assert exc_info.value.field == "mood"

    def test_future_date_is_rejected(self, service):
        with pytest.raises(HealthDataValidationError) as exc_info:
            service.log_health_data(uuid4(), day=TODAY + timedelta(days=1), now=NOW, steps=100)
        assert exc_info.value.field == "date"

    def test_out_of_range_value_is_rejected(self, service, db_session):
        user_id = uuid4()
        with pytest.raises(HealthDataValidationError):
            service.log_health_data(user_id, day=TODAY, now=NOW, weight=5.0)
        assert HealthRecordRepository(db_session).query_range(user_id, TODAY, TODAY) == []


class TestGetHealthData:
    def test_inverted_range_is_rejected(self, service):
        with pytest.raises(HealthDataValidationError):
            service.get_health_data(uuid4(), TODAY, TODAY - timedelta(days=1))

    def test_range_is_capped(self, service):
        with pytest.raises(HealthDataValidationError):
            service.get_health_data(uuid4(), TODAY - timedelta(days=400), TODAY)


def auth_headers(user_id):
    token = jwt.encode({"sub": str(user_id)}, settings.SECRET_KEY, algorithm="HS256")
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def client(db_session):
    app.dependency_overrides[get_health_data_service] = lambda: HealthDataService(db_session)
    app.dependency_overrides[get_goal_service] = lambda: GoalService(db_session)
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()


class TestHealthDataApi:
    def test_requires_auth(self, client):
        assert client.post("/v1/health-data", json={"steps": 100}).status_code == 401

    def test_log_and_read_back(self, client):
        headers = auth_headers(uuid4())
        today = utc_now().date()

        response = client.post("/v1/health-data", json={"date": today.isoformat(), "water_liters": 1.25}, headers=headers)

        assert response.status_code == 201
        assert response.json()["provider"] == "MANUAL"
        assert response.json()["water_liters"] == 1.25
        records = client.get("/v1/health-data", headers=headers).json()["records"]
        assert [(r["date"], r["water_liters"]) for r in records] == [(today.isoformat(), 1.25)]

    def test_empty_entry_is_rejected(self, client):
        response = client.post("/v1/health-data", json={}, headers=auth_headers(uuid4()))
        assert response.status_code == 422
        assert response.json()["error_code"] == "VALIDATION_ERROR"

    def test_future_date_is_rejected(self, client):
        tomorrow = utc_now().date() + timedelta(days=1)
        response = client.post(
            "/v1/health-data", json={"date": tomorrow.isoformat(), "steps": 10}, headers=auth_headers(uuid4()),
        )
        assert response.status_code == 422
        assert response.json()["error_code"] == "VALIDATION_ERROR_DATE"

    def test_logged_water_feeds_water_goal(self, client):
        headers = auth_headers(uuid4())
        goal = client.post(
            "/v1/goals",
            json={
                "type": "WATER_INTAKE",
                "title": "Hydrate",
                "target_value": 2,
                "end_date": (utc_now() + timedelta(days=30)).isoformat(),
            },
            headers=headers,
        ).json()

        client.post("/v1/health-data", json={"water_liters": 1.5}, headers=headers)
        progress = client.get(f"/v1/goals/{goal['id']}/progress", headers=headers).json()

        assert progress["current_value"] == 1.5
        assert progress["percentage"] == pytest.approx(75)
