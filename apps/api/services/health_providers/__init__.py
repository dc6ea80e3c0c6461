"""
Health Providers Module

OAuth + fetch adapters for third-party health data sources:
- Strava (workouts)
- Fitbit (steps, sleep, heart rate, weight)
- Lose It! (food log, weigh-ins, exercise)

Design Principles:
- All adapters implement the same interface
- Data normalized to CanonicalHealthRecord before storage
- Config passed in explicitly; adapters never read settings
"""

from .base import HealthProviderAdapter
from .errors import (
    AuthExchangeError,
    HealthProviderError,
    ProviderFetchError,
    TokenRefreshError,
    UnsupportedProviderError,
)
from .models import (
    AuthorizationUrl,
    CanonicalHealthRecord,
    HealthDataProvider,
    IntegrationStatus,
    OAuthCredentials,
)
from .registry import ProviderRegistry, get_registry

__all__ = [
    'HealthProviderAdapter',
    'AuthExchangeError',
    'HealthProviderError',
    'ProviderFetchError',
    'TokenRefreshError',
    'UnsupportedProviderError',
    'AuthorizationUrl',
    'CanonicalHealthRecord',
    'HealthDataProvider',
    'IntegrationStatus',
    'OAuthCredentials',
    'ProviderRegistry',
    'get_registry',
]
