from __future__ import annotations

from typing import Dict, List, Optional

import httpx

from channel_hub.core.envelope import CredentialEnvelope
from channel_hub.core.errors import AdapterNotFound
from channel_hub.core.logging import get_logger
from channel_hub.core.settings import Settings
from .base import ProviderAdapter

logger = get_logger(__name__)

# Older provider keys still present in stored rows, mapped to their canonical key
LEGACY_ALIASES: Dict[str, str] = {
    "evolution": "evolution_api",
    "whatsapp": "meta_whatsapp",
}


# PUBLIC_INTERFACE
class AdapterRegistry:
    """Lookup table from provider key to adapter instance.

    Built once at startup and handed to the repository and service; there is no module-level
    instance. A missing adapter is reported as None by get_adapter and left to each call site.
    """

    def __init__(self, envelope: Optional[CredentialEnvelope] = None, aliases: Optional[Dict[str, str]] = None):
        self._adapters: Dict[str, ProviderAdapter] = {}
        self._envelope = envelope
        self._aliases = dict(LEGACY_ALIASES if aliases is None else aliases)

    # PUBLIC_INTERFACE
    def register(self, adapter: ProviderAdapter) -> None:
        """Register an adapter under its key, binding the shared envelope to it."""
        adapter.bind_envelope(self._envelope)
        self._adapters[adapter.key] = adapter
        logger.debug("Registered adapter", extra={"provider_key": adapter.key})

    # PUBLIC_INTERFACE
    def canonical_key(self, key: str) -> str:
        """Map a legacy alias to its canonical provider key."""
        return self._aliases.get(key, key)

    # PUBLIC_INTERFACE
    def legacy_keys_for(self, key: str) -> List[str]:
        """All legacy aliases that resolve to the canonical form of key."""
        canonical = self.canonical_key(key)
        return [old for old, new in self._aliases.items() if new == canonical]

    # PUBLIC_INTERFACE
    def get_adapter(self, key: str) -> Optional[ProviderAdapter]:
        """Return the adapter for key (legacy aliases resolved), or None."""
        return self._adapters.get(self.canonical_key(key))

    # PUBLIC_INTERFACE
    def require_adapter(self, key: str) -> ProviderAdapter:
        """Return the adapter for key or raise AdapterNotFound."""
        adapter = self.get_adapter(key)
        if adapter is None:
            raise AdapterNotFound(key)
        return adapter

    def keys(self) -> List[str]:
        return sorted(self._adapters)

    def __contains__(self, key: str) -> bool:
        return self.get_adapter(key) is not None


# PUBLIC_INTERFACE
def build_default_registry(
    settings: Settings,
    envelope: Optional[CredentialEnvelope] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> AdapterRegistry:
    """Construct the registry with every built-in adapter."""
    from .evolution import EvolutionAdapter
    from .generic import GenericApiKeyAdapter
    from .meta_whatsapp import MetaWhatsAppAdapter
    from .openai import OpenAIAdapter
    from channel_hub.services.webhooks import callback_url

    opts = {"timeout": settings.adapters.ADAPTER_TIMEOUT_SECONDS, "transport": transport}
    registry = AdapterRegistry(envelope=envelope)
    registry.register(
        MetaWhatsAppAdapter(
            graph_url=settings.adapters.META_GRAPH_URL,
            version=settings.adapters.META_GRAPH_VERSION,
            **opts,
        )
    )
    base_url = settings.webhooks.APP_BASE_URL
    registry.register(
        EvolutionAdapter(
            gateway_url=settings.adapters.EVOLUTION_API_URL,
            gateway_key=settings.adapters.EVOLUTION_API_KEY,
            webhook_url=callback_url("evolution_api", base_url) if base_url else None,
            **opts,
        )
    )
    registry.register(OpenAIAdapter(base_url=settings.adapters.OPENAI_BASE_URL, **opts))
    registry.register(GenericApiKeyAdapter("sendgrid", field="apiKey", min_length=20, **opts))
    registry.register(GenericApiKeyAdapter("stripe", field="apiKey", min_length=20, **opts))
    return registry
