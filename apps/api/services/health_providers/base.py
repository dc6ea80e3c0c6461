"""
Base class for health data provider adapters.

Every external provider (Strava, Fitbit, Lose It!) implements this
interface so the sync engine can:
- Build the OAuth authorize URL
- Exchange an authorization code / refresh a token
- Fetch a date range and normalize it to CanonicalHealthRecord
- Revoke access on disconnect (best effort)

Implementation Requirements:
- Every HTTP call carries a timeout
- Auth failures raise immediately, transport failures retry with backoff
- Tokens are never logged
"""

import logging
import time
from abc import ABC, abstractmethod
from datetime import date, datetime, timedelta
from typing import Any, Dict, List, Optional
from urllib.parse import urlencode

import requests

from core.config import ProviderClientConfig
from .errors import ProviderFetchError
from .models import (
    AuthorizationUrl,
    CanonicalHealthRecord,
    HealthDataProvider,
    OAuthCredentials,
    utc_now,
)

logger = logging.getLogger(__name__)

# How long the client treats a freshly issued ``state`` as valid.
STATE_VALIDITY = timedelta(minutes=10)

# Upper bound on a provider-requested Retry-After before we give up waiting.
MAX_RETRY_AFTER_S = 120


def date_range(start: date, end: date) -> List[date]:
    """Inclusive list of calendar days from start to end."""
    if isinstance(start, datetime):
        start = start.date()
    if isinstance(end, datetime):
        end = end.date()
    days = []
    current = start
    while current <= end:
        days.append(current)
        current += timedelta(days=1)
    return days


class HealthProviderAdapter(ABC):
    """
    Base class for all provider integrations.

    Subclasses set the class-level endpoint constants and implement the
    four provider-specific operations.
    """

    provider: HealthDataProvider
    display_name: str = ""
    description: str = ""
    data_types: tuple = ()

    AUTH_URL: str = ""
    TOKEN_URL: str = ""
    API_BASE: str = ""
    SCOPES: str = ""

    def __init__(self, config: ProviderClientConfig):
        self.config = config

    # --- OAuth ---------------------------------------------------------

    def _authorization_params(self, state: str) -> Dict[str, str]:
        return {
            "client_id": self.config.client_id,
            "redirect_uri": self.config.redirect_uri,
            "response_type": "code",
            "scope": self.SCOPES,
            "state": state,
        }

    def build_authorization_url(self, state: str) -> AuthorizationUrl:
        """Construct the provider authorize URL for ``state``."""
        logger.info(f"Generating {self.display_name} authorization URL")
        query = urlencode(self._authorization_params(state))
        return AuthorizationUrl(
            url=f"{self.AUTH_URL}?{query}",
            state=state,
            expires_at=utc_now() + STATE_VALIDITY,
        )

    @abstractmethod
    def exchange_code(self, code: str) -> OAuthCredentials:
        """
        Exchange an authorization code for tokens.

        Raises:
            AuthExchangeError: on non-2xx, transport failure or malformed body
        """

    @abstractmethod
    def refresh_token(self, refresh_token: str) -> OAuthCredentials:
        """
        Exchange a refresh token for a new access token.

        If the provider omits a new refresh token, the old one is kept.

        Raises:
            TokenRefreshError: on any failure
        """

    @abstractmethod
    def fetch_range(
        self,
        credentials: OAuthCredentials,
        start_date: date,
        end_date: date,
    ) -> List[CanonicalHealthRecord]:
        """
        Fetch and normalize data for the inclusive date range.

        Returns ``[]`` when the provider has nothing in range.

        Raises:
            ProviderFetchError: when the range as a whole cannot be fetched
        """

    @abstractmethod
    def revoke(self, credentials: OAuthCredentials) -> None:
        """Best-effort revocation. Never raises."""

    # --- Shared HTTP helpers --------------------------------------------

    def _post_token(
        self,
        *,
        error_cls,
        action: str,
        json_body: Optional[Dict[str, Any]] = None,
        form_body: Optional[Dict[str, Any]] = None,
        basic_auth: bool = False,
    ) -> Dict[str, Any]:
        """
        POST to the token endpoint and return the decoded JSON body.

        Any failure is raised as ``error_cls`` carrying the provider name
        and, when available, the upstream status.
        """
        kwargs: Dict[str, Any] = {"timeout": self.config.timeout_s}
        if json_body is not None:
            kwargs["json"] = json_body
        if form_body is not None:
            kwargs["data"] = form_body
            kwargs["headers"] = {"Content-Type": "application/x-www-form-urlencoded"}
        if basic_auth:
            kwargs["auth"] = (self.config.client_id, self.config.client_secret)

        try:
            r = requests.post(self.TOKEN_URL, **kwargs)
        except requests.exceptions.RequestException as e:
            logger.error(f"{self.display_name} {action} failed: {type(e).__name__}")
            raise error_cls(
                f"{self.display_name} {action} failed: {e}",
                provider=self.provider.value,
            ) from e

        if r.status_code >= 400:
            logger.error(f"{self.display_name} {action} rejected with status {r.status_code}")
            raise error_cls(
                f"{self.display_name} {action} failed with status {r.status_code}",
                provider=self.provider.value,
                status_code=r.status_code,
            )

        try:
            payload = r.json()
        except ValueError as e:
            raise error_cls(
                f"{self.display_name} {action} returned a malformed body",
                provider=self.provider.value,
                status_code=r.status_code,
            ) from e

        if not isinstance(payload, dict) or not payload.get("access_token"):
            raise error_cls(
                f"{self.display_name} {action} response is missing access_token",
                provider=self.provider.value,
                status_code=r.status_code,
            )
        return payload

    def _get_json(
        self,
        path: str,
        credentials: OAuthCredentials,
        params: Optional[Dict[str, Any]] = None,
    ) -> Any:
        """
        GET ``API_BASE + path`` with retry logic.

        - 429: wait Retry-After (capped) and retry
        - timeouts, connection errors, 5xx: exponential backoff and retry
        - 401/403 and other 4xx: raise immediately
        """
        url = f"{self.API_BASE}{path}"
        headers = {
            "Authorization": f"Bearer {credentials.access_token}",
            "Accept": "application/json",
        }
        max_retries = max(1, int(self.config.max_retries))
        last_error: Optional[ProviderFetchError] = None

        for attempt in range(max_retries):
            try:
                r = requests.get(url, headers=headers, params=params, timeout=self.config.timeout_s)
            except requests.exceptions.RequestException as e:
                last_error = ProviderFetchError(
                    f"{self.display_name} request to {path} failed: {type(e).__name__}",
                    provider=self.provider.value,
                    retryable=True,
                )
                last_error.__cause__ = e
                if attempt < max_retries - 1:
                    wait_time = 2 ** attempt  # 1s, 2s, 4s
                    logger.warning(f"{self.display_name} transport error on {path}, retrying in {wait_time}s")
                    time.sleep(wait_time)
                continue

            if r.status_code == 429:
                retry_after = _retry_after_seconds(r, attempt)
                last_error = ProviderFetchError(
                    f"{self.display_name} rate limited on {path}",
                    provider=self.provider.value,
                    status_code=429,
                    retryable=True,
                )
                if attempt < max_retries - 1 and retry_after <= MAX_RETRY_AFTER_S:
                    logger.warning(f"{self.display_name} rate limited (429) on {path}, waiting {retry_after}s")
                    time.sleep(retry_after)
                    continue
                raise last_error

            if r.status_code >= 500:
                last_error = ProviderFetchError(
                    f"{self.display_name} returned {r.status_code} for {path}",
                    provider=self.provider.value,
                    status_code=r.status_code,
                    retryable=True,
                )
                if attempt < max_retries - 1:
                    time.sleep(2 ** attempt)
                continue

            if r.status_code >= 400:
                raise ProviderFetchError(
                    f"{self.display_name} returned {r.status_code} for {path}",
                    provider=self.provider.value,
                    status_code=r.status_code,
                    retryable=False,
                )

            try:
                return r.json()
            except ValueError as e:
                raise ProviderFetchError(
                    f"{self.display_name} returned malformed JSON for {path}",
                    provider=self.provider.value,
                    status_code=r.status_code,
                ) from e

        raise last_error

    # --- Display ---------------------------------------------------------

    def provider_info(self) -> Dict[str, Any]:
        return {
            "provider": self.provider.value,
            "name": self.display_name,
            "description": self.description,
            "data_types": list(self.data_types),
        }


def _retry_after_seconds(response, attempt: int) -> int:
    try:
        return int(response.headers.get("Retry-After", 60 * (2 ** attempt)))
    except (TypeError, ValueError):
        return 60 * (2 ** attempt)


def expires_from_relative(expires_in: Any) -> datetime:
    """Absolute expiry from a relative ``expires_in`` (seconds)."""
    return utc_now() + timedelta(seconds=int(expires_in))
