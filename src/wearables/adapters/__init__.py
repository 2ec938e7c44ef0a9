"""Wearable provider adapters.

Each adapter conforms to the ``ProviderAdapter`` protocol and supplies:
- OAuth endpoints, PKCE requirement, client-auth mode and default scopes
- Fetching activities, sleep and daily summaries from the provider API
- Normalizing provider JSON into the shared Normalized* models

Available adapters:
    GarminAdapter  — Garmin Health API (OAuth 2.0 + PKCE)
    FitbitAdapter  — Fitbit Web API (OAuth 2.0 + PKCE)
"""

from src.wearables.adapters.fitbit import FitbitAdapter
from src.wearables.adapters.garmin import GarminAdapter

__all__ = [
    "GarminAdapter",
    "FitbitAdapter",
    "ADAPTER_REGISTRY",
    "get_adapter",
]

# Registry: provider_id → adapter class
ADAPTER_REGISTRY: dict[str, type] = {
    "garmin": GarminAdapter,
    "fitbit": FitbitAdapter,
}


def get_adapter(provider_id: str) -> "type":
    """Return the adapter class for a given provider slug.

    Args:
        provider_id: e.g. 'garmin', 'fitbit'

    Returns:
        The adapter class (not an instance).

    Raises:
        KeyError: If the provider_id is not registered.
    """
    if provider_id not in ADAPTER_REGISTRY:
        raise KeyError(
            f"No adapter registered for provider '{provider_id}'. "
            f"Available: {list(ADAPTER_REGISTRY)}"
        )
    return ADAPTER_REGISTRY[provider_id]
