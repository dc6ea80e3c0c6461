"""
Strava adapter.

Strava is activity-centric: there is no daily summary endpoint, so the
activity list for the range is fetched (paginated) and rolled up per
calendar day of each activity's ``start_date``.

Transport notes:
- Token endpoint takes a JSON body with client credentials inline
- Token responses carry an absolute ``expires_at`` in Unix seconds
"""

import logging
from collections import OrderedDict
from datetime import date, datetime, time as dt_time, timedelta, timezone
from typing import Any, Dict, List, Optional, Tuple

import requests

from .base import HealthProviderAdapter, expires_from_relative
from .errors import AuthExchangeError, TokenRefreshError
from .models import CanonicalHealthRecord, HealthDataProvider, OAuthCredentials

logger = logging.getLogger(__name__)

# Strava's maximum page size for /athlete/activities
STRAVA_PAGE_SIZE = 200


class StravaAdapter(HealthProviderAdapter):
    provider = HealthDataProvider.STRAVA
    display_name = "Strava"
    description = "Sync running, cycling and other workouts"
    data_types = ("exercise", "calories_burned", "distance", "heart_rate")

    AUTH_URL = "https://www.strava.com/oauth/authorize"
    TOKEN_URL = "https://www.strava.com/oauth/token"
    DEAUTHORIZE_URL = "https://www.strava.com/oauth/deauthorize"
    API_BASE = "https://www.strava.com/api/v3"
    SCOPES = "activity:read_all,profile:read_all"

    def __init__(self, config, max_pages: int = 10):
        super().__init__(config)
        self.max_pages = max(1, int(max_pages))

    def _authorization_params(self, state: str) -> Dict[str, str]:
        params = super()._authorization_params(state)
        params["approval_prompt"] = "auto"
        return params

    # --- OAuth -----------------------------------------------------------

    def exchange_code(self, code: str) -> OAuthCredentials:
        payload = self._post_token(
            error_cls=AuthExchangeError,
            action="code exchange",
            json_body={
                "client_id": self.config.client_id,
                "client_secret": self.config.client_secret,
                "code": code,
                "grant_type": "authorization_code",
            },
        )
        return self._credentials_from(payload, AuthExchangeError)

    def refresh_token(self, refresh_token: str) -> OAuthCredentials:
        payload = self._post_token(
            error_cls=TokenRefreshError,
            action="token refresh",
            json_body={
                "client_id": self.config.client_id,
                "client_secret": self.config.client_secret,
                "refresh_token": refresh_token,
                "grant_type": "refresh_token",
            },
        )
        return self._credentials_from(payload, TokenRefreshError, previous_refresh_token=refresh_token)

    def _credentials_from(
        self,
        payload: Dict[str, Any],
        error_cls,
        previous_refresh_token: Optional[str] = None,
    ) -> OAuthCredentials:
        try:
            if payload.get("expires_at") is not None:
                expires_at = datetime.fromtimestamp(int(payload["expires_at"]), tz=timezone.utc)
            else:
                expires_at = expires_from_relative(payload["expires_in"])
        except (KeyError, TypeError, ValueError) as e:
            raise error_cls(
                "Strava token response is missing a usable expiry",
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
                self.DEAUTHORIZE_URL,
                headers={"Authorization": f"Bearer {credentials.access_token}"},
                timeout=self.config.timeout_s,
            )
            if r.status_code >= 400:
                logger.warning(f"Strava deauthorize returned {r.status_code}; disconnecting locally anyway")
        except requests.exceptions.RequestException as e:
            logger.warning(f"Strava deauthorize failed: {type(e).__name__}; disconnecting locally anyway")

    # --- Data ------------------------------------------------------------

    def fetch_activities(
        self,
        credentials: OAuthCredentials,
        start_date: date,
        end_date: date,
    ) -> List[Dict[str, Any]]:
        """All activities whose start falls inside the inclusive date range."""
        after = int(datetime.combine(start_date, dt_time.min, tzinfo=timezone.utc).timestamp())
        before = int(datetime.combine(end_date + timedelta(days=1), dt_time.min, tzinfo=timezone.utc).timestamp())

        activities: List[Dict[str, Any]] = []
        for page in range(1, self.max_pages + 1):
            batch = self._get_json(
                "/athlete/activities",
                credentials,
                params={"after": after, "before": before, "page": page, "per_page": STRAVA_PAGE_SIZE},
            )
            if not batch:
                break
            activities.extend(batch)
            if len(batch) < STRAVA_PAGE_SIZE:
                break
        else:
            logger.warning(
                f"Strava activity pagination stopped at {self.max_pages} pages; "
                f"older activities in range were not fetched"
            )
        return activities

    def fetch_range(
        self,
        credentials: OAuthCredentials,
        start_date: date,
        end_date: date,
    ) -> List[CanonicalHealthRecord]:
        activities = self.fetch_activities(credentials, start_date, end_date)
        logger.info(f"Fetched {len(activities)} Strava activities for {start_date}..{end_date}")
        return normalize_activities(activities)


def _parse_activity(activity: Dict[str, Any]) -> Tuple[date, Dict[str, Any]]:
    """
    Day and numeric fields of one activity.

    Raises:
        ValueError, TypeError: malformed date or non-numeric field
    """
    day = date.fromisoformat(activity["start_date"][:10])
    heart_rate = activity.get("average_heartrate") if activity.get("has_heartrate") else None
    return day, {
        "moving_time": float(activity.get("moving_time") or 0),
        "calories": float(activity.get("calories") or 0),
        "distance": float(activity.get("distance") or 0),
        "heart_rate": float(heart_rate) if heart_rate else None,
    }


def normalize_activities(activities: List[Dict[str, Any]]) -> List[CanonicalHealthRecord]:
    """
    Roll activity summaries up to one record per calendar day.

    Days are taken from the first ten characters of ``start_date``. Calories
    and distance are only reported when positive; heart rate is averaged
    over the activities that report it. An activity with a malformed date or
    a non-numeric field is logged and left out.
    """
    by_day: "OrderedDict[date, List[Tuple[Dict[str, Any], Dict[str, Any]]]]" = OrderedDict()
    for activity in activities:
        if not activity.get("start_date"):
            continue
        try:
            day, values = _parse_activity(activity)
        except (TypeError, ValueError) as e:
            logger.warning(
                f"Skipping malformed Strava activity {activity.get('id')}: {e}",
                extra={"extra_fields": {"provider": "STRAVA", "activity_id": activity.get("id")}},
            )
            continue
        by_day.setdefault(day, []).append((activity, values))

    records = []
    for day in sorted(by_day):
        day_activities = by_day[day]

        minutes = sum(round(v["moving_time"] / 60) for _, v in day_activities)
        calories = sum(v["calories"] for _, v in day_activities)
        distance = sum(v["distance"] for _, v in day_activities)
        heart_rates = [v["heart_rate"] for _, v in day_activities if v["heart_rate"]]

        records.append(
            CanonicalHealthRecord(
                date=day,
                provider=HealthDataProvider.STRAVA,
                exercise_minutes=int(minutes),
                active_minutes=int(minutes),
                calories_burned=calories if calories > 0 else None,
                distance_meters=distance if distance > 0 else None,
                heart_rate=round(sum(heart_rates) / len(heart_rates)) if heart_rates else None,
                raw_payload={
                    "activities": [
                        {
                            "id": a.get("id"),
                            "name": a.get("name"),
                            "type": a.get("type"),
                            "moving_time": a.get("moving_time"),
                            "distance": a.get("distance"),
                        }
                        for a, _ in day_activities
                    ]
                },
            )
        )
    return records
