"""
Fitbit adapter.

Fitbit's Web API is day-granular, so a range is fetched one calendar day at
a time. Each day issues four sub-fetches (activity, sleep, heart rate,
weight) concurrently; a failing sub-fetch only loses its own metrics.

Transport notes:
- Token endpoint requires HTTP Basic auth (client_id:client_secret) and a
  form-encoded body
- Token responses carry a relative ``expires_in``
- Rate limit is 150 requests/hour/user; a fixed delay between days keeps a
  30-day initial sync well under it
"""

import logging
import time
from concurrent.futures import ThreadPoolExecutor
from datetime import date
from typing import Any, Callable, Dict, List, Optional

import requests

from .base import HealthProviderAdapter, date_range, expires_from_relative
from .errors import AuthExchangeError, ProviderFetchError, TokenRefreshError
from .models import CanonicalHealthRecord, HealthDataProvider, OAuthCredentials

logger = logging.getLogger(__name__)

SUB_FETCHES = ("activity", "sleep", "heart", "weight")


class FitbitAdapter(HealthProviderAdapter):
    provider = HealthDataProvider.FITBIT
    display_name = "Fitbit"
    description = "Sync steps, sleep, heart rate and weight"
    data_types = ("steps", "calories_burned", "distance", "active_minutes", "sleep", "heart_rate", "weight")

    AUTH_URL = "https://www.fitbit.com/oauth2/authorize"
    TOKEN_URL = "https://api.fitbit.com/oauth2/token"
    REVOKE_URL = "https://api.fitbit.com/oauth2/revoke"
    API_BASE = "https://api.fitbit.com/1"
    SCOPES = "activity heartrate sleep weight nutrition profile"

    def __init__(self, config, inter_day_delay_s: float = 0.1):
        super().__init__(config)
        self.inter_day_delay_s = max(0.0, float(inter_day_delay_s))

    # --- OAuth -----------------------------------------------------------

    def exchange_code(self, code: str) -> OAuthCredentials:
        payload = self._post_token(
            error_cls=AuthExchangeError,
            action="code exchange",
            form_body={
                "client_id": self.config.client_id,
                "grant_type": "authorization_code",
                "redirect_uri": self.config.redirect_uri,
                "code": code,
            },
            basic_auth=True,
        )
        return self._credentials_from(payload, AuthExchangeError)

    def refresh_token(self, refresh_token: str) -> OAuthCredentials:
        payload = self._post_token(
            error_cls=TokenRefreshError,
            action="token refresh",
            form_body={
                "grant_type": "refresh_token",
                "refresh_token": refresh_token,
            },
            basic_auth=True,
        )
        return self._credentials_from(payload, TokenRefreshError, previous_refresh_token=refresh_token)

    def _credentials_from(self, payload, error_cls, previous_refresh_token: Optional[str] = None) -> OAuthCredentials:
        try:
            expires_at = expires_from_relative(payload["expires_in"])
        except (KeyError, TypeError, ValueError) as e:
            raise error_cls(
                "Fitbit token response is missing expires_in",
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
        try:
            r = requests.post(
                self.REVOKE_URL,
                data={"token": credentials.access_token},
                auth=(self.config.client_id, self.config.client_secret),
                headers={"Content-Type": "application/x-www-form-urlencoded"},
                timeout=self.config.timeout_s,
            )
            if r.status_code >= 400:
                logger.warning(f"Fitbit revoke returned {r.status_code}; disconnecting locally anyway")
            else:
                logger.info("Revoked Fitbit access")
        except requests.exceptions.RequestException as e:
            logger.warning(f"Fitbit revoke failed: {type(e).__name__}; disconnecting locally anyway")

    # --- Data ------------------------------------------------------------

    def _sub_fetchers(self, credentials: OAuthCredentials, day: str) -> Dict[str, Callable[[], Any]]:
        return {
            "activity": lambda: self._get_json(f"/user/-/activities/date/{day}.json", credentials),
            "sleep": lambda: self._get_json(f"/user/-/sleep/date/{day}.json", credentials),
            "heart": lambda: self._get_json(f"/user/-/activities/heart/date/{day}/1d.json", credentials),
            "weight": lambda: self._get_json(f"/user/-/body/log/weight/date/{day}.json", credentials),
        }

    def fetch_day(
        self,
        credentials: OAuthCredentials,
        day: date,
        executor: ThreadPoolExecutor,
    ) -> Optional[CanonicalHealthRecord]:
        """
        Fetch one day. Returns None when the day has no data.

        Raises:
            ProviderFetchError: on an auth failure from any sub-fetch, or when
                every sub-fetch failed
        """
        day_str = day.isoformat()
        futures = {
            name: executor.submit(fn)
            for name, fn in self._sub_fetchers(credentials, day_str).items()
        }

        payloads: Dict[str, Any] = {}
        failures: Dict[str, ProviderFetchError] = {}
        for name, future in futures.items():
            try:
                payloads[name] = future.result()
            except ProviderFetchError as e:
                failures[name] = e

        for name, error in failures.items():
            if error.is_auth_failure:
                raise error
            logger.warning(f"Fitbit {name} fetch failed for {day_str}: {error}")

        if len(failures) == len(SUB_FETCHES):
            raise ProviderFetchError(
                f"All Fitbit sub-fetches failed for {day_str}",
                provider=self.provider.value,
                retryable=any(e.retryable for e in failures.values()),
            )

        return normalize_day(day, payloads)

    def fetch_range(
        self,
        credentials: OAuthCredentials,
        start_date: date,
        end_date: date,
    ) -> List[CanonicalHealthRecord]:
        days = date_range(start_date, end_date)
        records: List[CanonicalHealthRecord] = []
        failed_days = 0
        last_error: Optional[ProviderFetchError] = None

        with ThreadPoolExecutor(max_workers=len(SUB_FETCHES), thread_name_prefix="fitbit") as executor:
            for index, day in enumerate(days):
                try:
                    record = self.fetch_day(credentials, day, executor)
                except ProviderFetchError as e:
                    if e.is_auth_failure:
                        raise
                    failed_days += 1
                    last_error = e
                    logger.warning(f"Skipping Fitbit day {day.isoformat()}: {e}")
                    record = None

                if record is not None:
                    records.append(record)

                if self.inter_day_delay_s and index < len(days) - 1:
                    time.sleep(self.inter_day_delay_s)

        if days and failed_days == len(days):
            raise ProviderFetchError(
                f"Fitbit fetch failed for every day in {start_date}..{end_date}",
                provider=self.provider.value,
                status_code=last_error.status_code if last_error else None,
                retryable=True,
            )

        logger.info(f"Fetched {len(records)} days of Fitbit data")
        return records


def normalize_day(day: date, payloads: Dict[str, Any]) -> Optional[CanonicalHealthRecord]:
    """
    Combine the four Fitbit payloads for one day.

    A day is only emitted when steps, weight, sleep or heart rate is present.
    """
    record = CanonicalHealthRecord(date=day, provider=HealthDataProvider.FITBIT)

    activity = payloads.get("activity") or {}
    summary = activity.get("summary") or {}
    if summary:
        record.steps = summary.get("steps")
        if summary.get("caloriesOut") is not None:
            record.calories_burned = float(summary["caloriesOut"])
        total_km = _total_distance_km(summary.get("distances") or [])
        if total_km:
            record.distance_meters = total_km * 1000  # km to meters
        if "veryActiveMinutes" in summary or "fairlyActiveMinutes" in summary:
            active = (summary.get("veryActiveMinutes") or 0) + (summary.get("fairlyActiveMinutes") or 0)
            record.active_minutes = active
            record.exercise_minutes = active

    sleep = payloads.get("sleep") or {}
    sleep_logs = sleep.get("sleep") or []
    if sleep_logs and sleep_logs[0].get("minutesAsleep") is not None:
        record.sleep_minutes = sleep_logs[0]["minutesAsleep"]

    heart = payloads.get("heart") or {}
    heart_days = heart.get("activities-heart") or []
    if heart_days:
        resting = (heart_days[0].get("value") or {}).get("restingHeartRate")
        if resting is not None:
            record.resting_heart_rate = resting
            record.heart_rate = resting

    weight = payloads.get("weight") or {}
    weight_logs = weight.get("weight") or []
    if weight_logs:
        # Several weigh-ins on one day: the last logged wins.
        same_day = [w for w in weight_logs if w.get("date") in (None, day.isoformat())]
        entry = (same_day or weight_logs)[-1]
        if entry.get("weight") is not None:
            record.weight = float(entry["weight"])

    if all(
        getattr(record, name) is None
        for name in ("steps", "weight", "sleep_minutes", "heart_rate")
    ):
        return None

    record.raw_payload = payloads
    return record


def _total_distance_km(distances: List[Dict[str, Any]]) -> Optional[float]:
    for entry in distances:
        if entry.get("activity") == "total":
            return entry.get("distance")
    if distances:
        return distances[0].get("distance")
    return None
