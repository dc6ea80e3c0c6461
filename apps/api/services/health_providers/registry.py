"""
Health Provider Registry

Resolves a provider enum to its adapter instance. The provider set is
closed (Strava, Fitbit, Lose It!); adapters are built once at startup from
explicit client configs and are read-only afterwards.
"""

import logging
from typing import Dict, List, Mapping, Optional, Union

from core.config import ProviderClientConfig, SyncEngineConfig
from .base import HealthProviderAdapter
from .errors import UnsupportedProviderError
from .fitbit import FitbitAdapter
from .lose_it import LoseItAdapter
from .models import HealthDataProvider
from .strava import StravaAdapter

logger = logging.getLogger(__name__)


class ProviderRegistry:
    """
    Registry of provider adapters.

    Usage:
        registry = ProviderRegistry.from_configs(provider_configs, sync_config)
        adapter = registry.get(HealthDataProvider.FITBIT)
    """

    def __init__(self, adapters: Mapping[HealthDataProvider, HealthProviderAdapter]):
        self._adapters: Dict[HealthDataProvider, HealthProviderAdapter] = dict(adapters)

    @classmethod
    def from_configs(
        cls,
        configs: Mapping[str, ProviderClientConfig],
        sync_config: Optional[SyncEngineConfig] = None,
    ) -> "ProviderRegistry":
        sync_config = sync_config or SyncEngineConfig()
        adapters: Dict[HealthDataProvider, HealthProviderAdapter] = {}

        if HealthDataProvider.STRAVA.value in configs:
            adapters[HealthDataProvider.STRAVA] = StravaAdapter(
                configs[HealthDataProvider.STRAVA.value],
                max_pages=sync_config.strava_max_pages,
            )
        if HealthDataProvider.FITBIT.value in configs:
            adapters[HealthDataProvider.FITBIT] = FitbitAdapter(
                configs[HealthDataProvider.FITBIT.value],
                inter_day_delay_s=sync_config.fitbit_inter_day_delay_s,
            )
        if HealthDataProvider.LOSE_IT.value in configs:
            adapters[HealthDataProvider.LOSE_IT] = LoseItAdapter(
                configs[HealthDataProvider.LOSE_IT.value],
            )

        for provider, adapter in adapters.items():
            if not adapter.config.client_id:
                logger.warning(f"{adapter.display_name} client id is not configured; OAuth will fail")
        logger.info(f"Provider registry initialized with {len(adapters)} adapters")
        return cls(adapters)

    @staticmethod
    def _coerce(provider: Union[HealthDataProvider, str]) -> HealthDataProvider:
        if isinstance(provider, HealthDataProvider):
            return provider
        try:
            return HealthDataProvider(str(provider).upper())
        except ValueError:
            raise UnsupportedProviderError(f"Unsupported provider: {provider}", provider=str(provider))

    def get(self, provider: Union[HealthDataProvider, str]) -> HealthProviderAdapter:
        """
        Raises:
            UnsupportedProviderError
        """
        key = self._coerce(provider)
        adapter = self._adapters.get(key)
        if adapter is None:
            raise UnsupportedProviderError(f"Unsupported provider: {key.value}", provider=key.value)
        return adapter

    def is_supported(self, provider: Union[HealthDataProvider, str]) -> bool:
        try:
            self.get(provider)
        except UnsupportedProviderError:
            return False
        return True

    def supported_providers(self) -> List[HealthDataProvider]:
        return list(self._adapters.keys())

    def list_providers(self) -> List[Dict]:
        """Provider cards for the settings screen."""
        return [adapter.provider_info() for adapter in self._adapters.values()]


_registry: Optional[ProviderRegistry] = None


def get_registry() -> ProviderRegistry:
    """Process-wide registry built from settings on first use."""
    global _registry
    if _registry is None:
        from core.config import provider_configs_from_settings, settings, sync_config_from_settings

        _registry = ProviderRegistry.from_configs(
            provider_configs_from_settings(settings),
            sync_config_from_settings(settings),
        )
    return _registry
