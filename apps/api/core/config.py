"""
Centralized configuration management with validation.

All environment variables are loaded and validated here. Provider clients
and the sync engine do not read settings directly: they receive the small
immutable config structs built at the bottom of this module.
"""
from dataclasses import dataclass
from typing import Dict, Optional

from dotenv import load_dotenv
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

load_dotenv()


class Settings(BaseSettings):
    """Application settings with validation."""

    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=True,
        extra="ignore"
    )

    # Database Configuration
    # DATABASE_URL wins when set (tests use sqlite://)
    DATABASE_URL: Optional[str] = Field(default=None)
    POSTGRES_USER: str = Field(default="postgres")
    POSTGRES_PASSWORD: str = Field(default="postgres")
    POSTGRES_DB: str = Field(default="healthtrack")
    POSTGRES_HOST: str = Field(default="postgres")
    POSTGRES_PORT: int = Field(default=5432)

    DB_POOL_SIZE: int = Field(default=20)
    DB_MAX_OVERFLOW: int = Field(default=10)
    DB_POOL_TIMEOUT: int = Field(default=30)
    DB_POOL_RECYCLE: int = Field(default=3600)  # 1 hour
    DB_STARTUP_RETRIES: int = Field(default=30, ge=1)

    # Redis Configuration
    REDIS_URL: str = Field(default="redis://redis:6379/0")
    REDIS_ENABLED: bool = Field(default=True)
    # After a failed connect, skip Redis for this long before trying again.
    REDIS_RETRY_INTERVAL_S: int = Field(default=30, ge=0)

    # Celery Configuration
    CELERY_BROKER_URL: str = Field(default="redis://redis:6379/0")
    CELERY_RESULT_BACKEND: str = Field(default="redis://redis:6379/0")

    # Provider OAuth apps
    STRAVA_CLIENT_ID: Optional[str] = Field(default=None)
    STRAVA_CLIENT_SECRET: Optional[str] = Field(default=None)
    FITBIT_CLIENT_ID: Optional[str] = Field(default=None)
    FITBIT_CLIENT_SECRET: Optional[str] = Field(default=None)
    LOSE_IT_CLIENT_ID: Optional[str] = Field(default=None)
    LOSE_IT_CLIENT_SECRET: Optional[str] = Field(default=None)
    OAUTH_REDIRECT_URI: str = Field(default="http://localhost:8000/v1/integrations/callback")

    # OAuth state TTL for provider callbacks (seconds).
    OAUTH_STATE_TTL_S: int = Field(default=600)

    # Token Encryption
    TOKEN_ENCRYPTION_KEY: Optional[str] = Field(default=None)

    # JWT verification key - REQUIRED
    SECRET_KEY: str = Field(
        default=...,
        description="JWT signing key shared with the auth service (32+ chars)."
    )
    JWT_ALGORITHM: str = Field(default="HS256")
    JWT_AUDIENCE: Optional[str] = Field(default=None)

    # Credential lifecycle
    TOKEN_REFRESH_LOOKAHEAD_MINUTES: int = Field(default=5, ge=0)
    SYNC_LOCK_TIMEOUT_S: int = Field(default=120, ge=1)
    SYNC_LOCK_TTL_S: int = Field(default=900, ge=30)

    # Batch sync
    BATCH_SYNC_STALENESS_HOURS: int = Field(default=6, ge=1)
    BATCH_SYNC_LIMIT: int = Field(default=50, ge=1)
    BATCH_SYNC_CONCURRENCY: int = Field(default=4, ge=1, le=32)
    BATCH_SYNC_INTERVAL_MINUTES: int = Field(default=30, ge=1, le=59)
    SYNC_LOOKBACK_DAYS: int = Field(default=7, ge=1)
    SYNC_INITIAL_LOOKBACK_DAYS: int = Field(default=30, ge=1)

    # External API Configuration
    EXTERNAL_API_TIMEOUT: int = Field(default=30)
    EXTERNAL_API_RETRY_ATTEMPTS: int = Field(default=3, ge=1)
    STRAVA_MAX_PAGES: int = Field(default=10, ge=1)
    # Fitbit allows 150 requests/hour/user; each day costs 4 requests.
    FITBIT_INTER_DAY_DELAY_S: float = Field(default=0.1, ge=0)

    # Logging Configuration
    LOG_LEVEL: str = Field(default="INFO")
    LOG_FORMAT: str = Field(default="json")  # json or text

    # Environment
    ENVIRONMENT: str = Field(default="development")
    DEBUG: bool = Field(default=False)

    CORS_ORIGINS: Optional[str] = Field(default=None)


@dataclass(frozen=True)
class ProviderClientConfig:
    """OAuth client registration for one provider."""
    client_id: str
    client_secret: str
    redirect_uri: str
    timeout_s: float = 30.0
    max_retries: int = 3


@dataclass(frozen=True)
class SyncEngineConfig:
    """Tunables for the credential manager and sync scheduler."""
    refresh_lookahead_minutes: int = 5
    oauth_state_ttl_s: int = 600
    batch_staleness_hours: int = 6
    batch_limit: int = 50
    batch_concurrency: int = 4
    lookback_days: int = 7
    initial_lookback_days: int = 30
    lock_timeout_s: int = 120
    lock_ttl_s: int = 900
    strava_max_pages: int = 10
    fitbit_inter_day_delay_s: float = 0.1


def provider_configs_from_settings(s: "Settings") -> Dict[str, ProviderClientConfig]:
    """Build per-provider client configs keyed by provider enum value."""
    def _build(client_id, client_secret):
        return ProviderClientConfig(
            client_id=client_id or "",
            client_secret=client_secret or "",
            redirect_uri=s.OAUTH_REDIRECT_URI,
            timeout_s=float(s.EXTERNAL_API_TIMEOUT),
            max_retries=int(s.EXTERNAL_API_RETRY_ATTEMPTS),
        )

    return {
        "STRAVA": _build(s.STRAVA_CLIENT_ID, s.STRAVA_CLIENT_SECRET),
        "FITBIT": _build(s.FITBIT_CLIENT_ID, s.FITBIT_CLIENT_SECRET),
        "LOSE_IT": _build(s.LOSE_IT_CLIENT_ID, s.LOSE_IT_CLIENT_SECRET),
    }


def sync_config_from_settings(s: "Settings") -> SyncEngineConfig:
    return SyncEngineConfig(
        refresh_lookahead_minutes=s.TOKEN_REFRESH_LOOKAHEAD_MINUTES,
        oauth_state_ttl_s=s.OAUTH_STATE_TTL_S,
        batch_staleness_hours=s.BATCH_SYNC_STALENESS_HOURS,
        batch_limit=s.BATCH_SYNC_LIMIT,
        batch_concurrency=s.BATCH_SYNC_CONCURRENCY,
        lookback_days=s.SYNC_LOOKBACK_DAYS,
        initial_lookback_days=s.SYNC_INITIAL_LOOKBACK_DAYS,
        lock_timeout_s=s.SYNC_LOCK_TIMEOUT_S,
        lock_ttl_s=s.SYNC_LOCK_TTL_S,
        strava_max_pages=s.STRAVA_MAX_PAGES,
        fitbit_inter_day_delay_s=s.FITBIT_INTER_DAY_DELAY_S,
    )


# Global settings instance
settings = Settings()
