"""Build the provider adapter registry from settings."""

from __future__ import annotations

import logging

from reconciler_api.app.cache import CachingProviderAdapter, StatusCache
from reconciler_api.app.providers.base import ProviderAdapter
from reconciler_api.app.providers.kie import KieJobsAdapter, OmniHumanAdapter
from reconciler_api.app.settings import Settings

logger = logging.getLogger(__name__)

ADAPTER_TYPES: dict[str, type[KieJobsAdapter]] = {
    KieJobsAdapter.name: KieJobsAdapter,
    OmniHumanAdapter.name: OmniHumanAdapter,
}


def build_provider_registry(settings: Settings) -> dict[str, ProviderAdapter]:
    api_key = settings.resolved_kie_api_key()
    if not api_key:
        logger.warning(
            "provider_registry event=missing_api_key base_url=%s",
            settings.kie_base_url,
        )

    registry: dict[str, ProviderAdapter] = {}
    for name in settings.provider_names():
        adapter_type = ADAPTER_TYPES.get(name)
        if adapter_type is None:
            raise ValueError(f"Unsupported provider in RECONCILER_ENABLED_PROVIDERS: {name}")
        adapter: ProviderAdapter = adapter_type(api_key=api_key, base_url=settings.kie_base_url)
        # Task ids are unique per provider only, so each adapter gets its own cache.
        if settings.status_cache_ttl_s > 0:
            cache = StatusCache(
                ttl_s=settings.status_cache_ttl_s,
                max_entries=settings.status_cache_max_entries,
            )
            adapter = CachingProviderAdapter(adapter, cache)
        registry[name] = adapter
    return registry
