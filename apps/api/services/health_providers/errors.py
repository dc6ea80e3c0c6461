"""
Failure taxonomy for provider adapters.

Adapters translate ``requests`` exceptions and non-2xx responses into these
types so callers never need to know which HTTP library sits underneath.
"""

from typing import Optional


class HealthProviderError(Exception):
    """Base class for provider-side failures."""

    def __init__(self, message: str, *, provider: Optional[str] = None, status_code: Optional[int] = None):
        super().__init__(message)
        self.provider = provider
        self.status_code = status_code


class AuthExchangeError(HealthProviderError):
    """Authorization code could not be exchanged for tokens."""


class TokenRefreshError(HealthProviderError):
    """Refresh token was rejected or the refresh call failed."""


class ProviderFetchError(HealthProviderError):
    """
    Data fetch failed.

    ``retryable`` is True for timeouts, connection errors, 429 and 5xx.
    Auth failures (401/403) are never retryable with the same token.
    """

    def __init__(
        self,
        message: str,
        *,
        provider: Optional[str] = None,
        status_code: Optional[int] = None,
        retryable: bool = False,
    ):
        super().__init__(message, provider=provider, status_code=status_code)
        self.retryable = retryable

    @property
    def is_auth_failure(self) -> bool:
        return self.status_code in (401, 403)


class UnsupportedProviderError(HealthProviderError):
    """No adapter is registered for the requested provider."""
