"""
Canonical models shared by every health data provider.

Each provider adapter normalizes its own payloads into
``CanonicalHealthRecord`` (one calendar day per user and provider) and its
token responses into ``OAuthCredentials``.

Design Principles:
- All metrics are optional; a missing metric stays ``None``, never ``0``
- A record with no populated metric is never emitted
- The raw provider payload rides along for audit but does not take part
  in equality, so re-fetching unchanged data yields equal records
"""

from dataclasses import dataclass, field, fields
from datetime import date, datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional


class HealthDataProvider(str, Enum):
    """Where a health record came from. MANUAL has no adapter."""
    STRAVA = "STRAVA"
    FITBIT = "FITBIT"
    LOSE_IT = "LOSE_IT"
    MANUAL = "MANUAL"       # Entered by the user through the API


class IntegrationStatus(str, Enum):
    """Lifecycle of a linked provider account."""
    ACTIVE = "ACTIVE"
    EXPIRED = "EXPIRED"     # Token expired and cannot be refreshed; reconnect
    REVOKED = "REVOKED"
    ERROR = "ERROR"         # Last refresh or fetch failed; retried next batch


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive datetimes (SQLite drops tzinfo on round-trip)."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


@dataclass
class OAuthCredentials:
    """
    OAuth 2.0 credentials for one integration.

    ``expires_at`` is always an absolute, timezone-aware UTC timestamp no
    matter how the provider expressed it (Unix seconds or relative
    ``expires_in``).
    """
    access_token: str
    expires_at: datetime
    refresh_token: Optional[str] = None
    scope: Optional[str] = None
    token_type: str = "Bearer"

    def __post_init__(self):
        self.expires_at = as_utc(self.expires_at)

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return (now or utc_now()) >= self.expires_at

    def to_dict(self) -> Dict[str, Any]:
        return {
            "access_token": self.access_token,
            "refresh_token": self.refresh_token,
            "expires_at": self.expires_at.isoformat(),
            "scope": self.scope,
            "token_type": self.token_type,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "OAuthCredentials":
        expires_at = data.get("expires_at")
        if isinstance(expires_at, str):
            expires_at = datetime.fromisoformat(expires_at)
        return cls(
            access_token=data["access_token"],
            refresh_token=data.get("refresh_token"),
            expires_at=expires_at,
            scope=data.get("scope"),
            token_type=data.get("token_type") or "Bearer",
        )


@dataclass(frozen=True)
class AuthorizationUrl:
    """Provider authorize URL plus the client-side validity hint for ``state``."""
    url: str
    state: str
    expires_at: datetime


# Metric fields in the order they are persisted.
METRIC_FIELDS = (
    "weight",
    "steps",
    "calories_burned",
    "calories_intake",
    "exercise_minutes",
    "active_minutes",
    "sleep_minutes",
    "heart_rate",
    "resting_heart_rate",
    "distance_meters",
    "water_liters",
)


@dataclass
class CanonicalHealthRecord:
    """
    One calendar day of normalized health data from one provider.

    ``water_liters`` is only ever populated by manual entries; no provider
    adapter reports it.
    """

    date: date
    provider: HealthDataProvider

    weight: Optional[float] = None              # kg
    steps: Optional[int] = None
    calories_burned: Optional[float] = None     # kcal
    calories_intake: Optional[float] = None     # kcal
    exercise_minutes: Optional[int] = None
    active_minutes: Optional[int] = None
    sleep_minutes: Optional[int] = None
    heart_rate: Optional[int] = None            # bpm
    resting_heart_rate: Optional[int] = None    # bpm
    distance_meters: Optional[float] = None
    water_liters: Optional[float] = None

    raw_payload: Dict[str, Any] = field(default_factory=dict, compare=False, repr=False)

    def metrics(self) -> Dict[str, Any]:
        """Populated metrics only."""
        return {
            name: getattr(self, name)
            for name in METRIC_FIELDS
            if getattr(self, name) is not None
        }

    def has_metrics(self) -> bool:
        return any(getattr(self, name) is not None for name in METRIC_FIELDS)

    def to_dict(self) -> Dict[str, Any]:
        data = {f.name: getattr(self, f.name) for f in fields(self)}
        data["date"] = self.date.isoformat()
        data["provider"] = self.provider.value
        return data


# Realistic ranges for incoming provider data. Out-of-range records are
# skipped at persistence time, not silently clamped.
RECORD_VALIDATION_RULES = {
    "steps": (0, 100000),
    "weight": (20, 500),
    "calories_burned": (0, 20000),
    "exercise_minutes": (0, 1440),
    "heart_rate": (30, 250),
    "water_liters": (0, 20),
}


def validate_canonical_record(record: CanonicalHealthRecord) -> List[str]:
    """Return a list of human-readable problems; empty means valid."""
    errors: List[str] = []
    if record.date is None:
        errors.append("Date is required")
    for name, (low, high) in RECORD_VALIDATION_RULES.items():
        value = getattr(record, name)
        if value is not None and not (low <= value <= high):
            errors.append(f"{name} must be between {low:,} and {high:,} (got {value})")
    return errors
