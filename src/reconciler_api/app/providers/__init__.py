"""Provider adapters that normalize provider payloads into TaskUpdates."""

from reconciler_api.app.providers.base import ProviderAdapter, normalize_status
from reconciler_api.app.providers.kie import KieJobsAdapter, OmniHumanAdapter

__all__ = [
    "KieJobsAdapter",
    "OmniHumanAdapter",
    "ProviderAdapter",
    "normalize_status",
]
