"""
Lose It! adapter.

Three range endpoints (daily nutrition, weight entries, exercise entries)
are fetched independently and merged by date: any day that appears in at
least one source yields one record.
"""

import logging
from datetime import date
from typing import Any, Dict, List, Optional

from .base import HealthProviderAdapter, expires_from_relative
from .errors import AuthExchangeError, ProviderFetchError, TokenRefreshError
from .models import CanonicalHealthRecord, HealthDataProvider, OAuthCredentials

logger = logging.getLogger(__name__)

SOURCES = {
    "nutrition": "/v1/nutrition/daily",
    "weight": "/v1/weight/entries",
    "exercise": "/v1/exercise/entries",
}


class LoseItAdapter(HealthProviderAdapter):
    provider = HealthDataProvider.LOSE_IT
    display_name = "Lose It!"
    description = "Sync food log calories, weigh-ins and exercise"
    data_types = ("calories_intake", "weight", "exercise", "calories_burned")

    AUTH_URL = "https://api.loseit.com/oauth/authorize"
    TOKEN_URL = "https://api.loseit.com/oauth/token"
    API_BASE = "https://api.loseit.com"
    SCOPES = "food.read weight.read exercise.read"

    # --- OAuth -----------------------------------------------------------

    def exchange_code(self, code: str) -> OAuthCredentials:
        payload = self._post_token(
            error_cls=AuthExchangeError,
            action="code exchange",
            form_body={
                "client_id": self.config.client_id,
                "client_secret": self.config.client_secret,
                "code": code,
                "grant_type": "authorization_code",
                "redirect_uri": self.config.redirect_uri,
            },
        )
        return self._credentials_from(payload, AuthExchangeError)

    def refresh_token(self, refresh_token: str) -> OAuthCredentials:
        payload = self._post_token(
            error_cls=TokenRefreshError,
            action="token refresh",
            form_body={
                "client_id": self.config.client_id,
                "client_secret": self.config.client_secret,
                "refresh_token": refresh_token,
                "grant_type": "refresh_token",
            },
        )
        return self._credentials_from(payload, TokenRefreshError, previous_refresh_token=refresh_token)

    def _credentials_from(self, payload, error_cls, previous_refresh_token: Optional[str] = None) -> OAuthCredentials:
        try:
            expires_at = expires_from_relative(payload["expires_in"])
        except (KeyError, TypeError, ValueError) as e:
            raise error_cls(
                "Lose It! token response is missing expires_in",
                provider=self.provider.value,
            ) from e
        return OAuthCredentials(
            access_token=payload["access_token"],
            refresh_token=payload.get("refresh_token") or previous_refresh_token,
            expires_at=expires_at,
            scope=payload.get("scope") or self.SCOPES,
            token_type=payload.get("token_type") or "Bearer",
        )

    def revoke(self, credentials: OAuthCredentials) -> None:
        # Lose It! has no revocation endpoint; the user revokes from their account settings.
        logger.info("Lose It! has no revoke endpoint; disconnecting locally only")

    # --- Data ------------------------------------------------------------

    def fetch_range(
        self,
        credentials: OAuthCredentials,
        start_date: date,
        end_date: date,
    ) -> List[CanonicalHealthRecord]:
        params = {"start_date": start_date.isoformat(), "end_date": end_date.isoformat()}

        entries: Dict[str, List[Dict[str, Any]]] = {}
        failures: Dict[str, ProviderFetchError] = {}
        for source, path in SOURCES.items():
            try:
                entries[source] = _as_list(self._get_json(path, credentials, params=params))
            except ProviderFetchError as e:
                if e.is_auth_failure:
                    raise
                logger.warning(f"Lose It! {source} fetch failed, continuing without it: {e}")
                failures[source] = e

        if len(failures) == len(SOURCES):
            raise ProviderFetchError(
                f"Lose It! fetch failed for every source in {start_date}..{end_date}",
                provider=self.provider.value,
                retryable=any(e.retryable for e in failures.values()),
            )

        records = merge_entries(
            entries.get("nutrition", []),
            entries.get("weight", []),
            entries.get("exercise", []),
        )
        logger.info(f"Fetched {len(records)} records from Lose It!")
        return records


def _as_list(payload: Any) -> List[Dict[str, Any]]:
    if payload is None:
        return []
    if isinstance(payload, dict):
        # Some endpoints wrap entries: {"entries": [...]}
        for key in ("entries", "data", "days"):
            if isinstance(payload.get(key), list):
                return payload[key]
        return []
    return list(payload)


def _calories_consumed(entry: Dict[str, Any]) -> Optional[float]:
    calories = entry.get("calories")
    if isinstance(calories, dict):
        calories = calories.get("consumed", calories.get("intake"))
    return float(calories) if calories is not None else None


def _entry_day(entry: Dict[str, Any]) -> Optional[date]:
    day_key = (entry.get("date") or "")[:10]
    if not day_key:
        return None
    return date.fromisoformat(day_key)


def _nutrition_values(entry: Dict[str, Any]) -> Dict[str, Any]:
    consumed = _calories_consumed(entry)
    return {"calories_intake": consumed} if consumed is not None else {}


def _weight_values(entry: Dict[str, Any]) -> Dict[str, Any]:
    return {"weight": float(entry["weight"])} if entry.get("weight") is not None else {}


def _exercise_values(entry: Dict[str, Any]) -> Dict[str, Any]:
    values = {}
    if entry.get("duration") is not None:
        values["exercise_minutes"] = int(float(entry["duration"]))
    if entry.get("calories_burned") is not None:
        values["calories_burned"] = float(entry["calories_burned"])
    return values


# Metrics that add up when a source reports several entries for one day.
_ACCUMULATED = ("exercise_minutes", "calories_burned")


def merge_entries(
    nutrition: List[Dict[str, Any]],
    weight: List[Dict[str, Any]],
    exercise: List[Dict[str, Any]],
) -> List[CanonicalHealthRecord]:
    """
    Merge the three sources into one record per date.

    Exercise entries on the same day accumulate both minutes and calories.
    An entry with a malformed date or a non-numeric value is logged and
    left out; the rest of the range still syncs.
    """
    by_day: Dict[date, CanonicalHealthRecord] = {}
    raw: Dict[date, Dict[str, list]] = {}

    sources = (
        ("nutrition", nutrition, _nutrition_values),
        ("weight", weight, _weight_values),
        ("exercise", exercise, _exercise_values),
    )
    for source, entries, parse in sources:
        for entry in entries:
            try:
                day = _entry_day(entry)
                values = parse(entry)
            except (TypeError, ValueError) as e:
                logger.warning(
                    f"Skipping malformed Lose It! {source} entry dated {entry.get('date')!r}: {e}",
                    extra={"extra_fields": {"provider": "LOSE_IT", "source": source}},
                )
                continue
            if day is None:
                continue

            if day not in by_day:
                by_day[day] = CanonicalHealthRecord(date=day, provider=HealthDataProvider.LOSE_IT)
                raw[day] = {"nutrition": [], "weight": [], "exercise": []}
            raw[day][source].append(entry)

            record = by_day[day]
            for field, value in values.items():
                if field in _ACCUMULATED:
                    value = (getattr(record, field) or 0) + value
                setattr(record, field, value)

    records = []
    for day in sorted(by_day):
        record = by_day[day]
        if not record.has_metrics():
            continue
        record.raw_payload = raw[day]
        records.append(record)
    return records
