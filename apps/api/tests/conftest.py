"""
Pytest configuration and fixtures

Every test runs against a fresh in-memory SQLite schema; nothing talks to
Postgres, Redis or a real provider.
"""
import os
import sys
from uuid import uuid4

from cryptography.fernet import Fernet

# Settings are read at import time, so the environment must be in place
# before anything from the app is imported.
os.environ["SECRET_KEY"] = "test-secret-key-for-jwt-verification-0123456789"
os.environ["TOKEN_ENCRYPTION_KEY"] = Fernet.generate_key().decode()
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["REDIS_ENABLED"] = "false"
os.environ["LOG_FORMAT"] = "text"
os.environ["ENVIRONMENT"] = "test"

# Add the parent directory to the path so we can import from services
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import pytest  # noqa: E402

import models  # noqa: E402,F401  (registers tables on Base.metadata)
from core.config import ProviderClientConfig, SyncEngineConfig  # noqa: E402
from core.database import Base, SessionLocal, engine  # noqa: E402
from models import Integration  # noqa: E402
from services.credential_lifecycle import IntegrationLockManager  # noqa: E402
from services.health_providers.registry import ProviderRegistry  # noqa: E402
from services.token_encryption import seal_credentials  # noqa: E402

from fixtures.provider_fixtures import make_credentials  # noqa: E402


@pytest.fixture(scope="function")
def db_session():
    """
    Fresh schema per test.

    The engine uses a single shared connection (StaticPool), so sessions
    opened by code under test see the same database as this one.
    """
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture
def provider_configs():
    return {
        provider: ProviderClientConfig(
            client_id=f"{provider.lower()}-client-id",
            client_secret=f"{provider.lower()}-client-secret",
            redirect_uri="http://localhost:8000/v1/integrations/callback",
            timeout_s=5.0,
            max_retries=1,
        )
        for provider in ("STRAVA", "FITBIT", "LOSE_IT")
    }


@pytest.fixture
def sync_config():
    return SyncEngineConfig(
        refresh_lookahead_minutes=5,
        batch_staleness_hours=24,
        batch_limit=10,
        batch_concurrency=1,
        fitbit_inter_day_delay_s=0,
        lock_timeout_s=1,
    )


@pytest.fixture
def registry(provider_configs, sync_config):
    return ProviderRegistry.from_configs(provider_configs, sync_config)


@pytest.fixture
def lock_manager():
    return IntegrationLockManager(timeout_s=1, ttl_s=60, redis_factory=lambda: None)


@pytest.fixture
def make_integration(db_session):
    """Factory for stored integrations with encrypted credentials."""

    def _make(
        provider="FITBIT",
        user_id=None,
        status="ACTIVE",
        last_synced_at=None,
        credentials=None,
        created_at=None,
    ):
        credentials = credentials or make_credentials()
        integration = Integration(
            user_id=user_id or uuid4(),
            provider=provider,
            credentials=seal_credentials(credentials),
            token_expires_at=credentials.expires_at,
            status=status,
            last_synced_at=last_synced_at,
        )
        if created_at is not None:
            integration.created_at = created_at
        db_session.add(integration)
        db_session.commit()
        db_session.refresh(integration)
        return integration

    return _make
