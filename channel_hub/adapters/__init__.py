from .base import LifecycleHooks, MessageSender, ProviderAdapter, QrProvider, StatusProbe
from .registry import AdapterRegistry, build_default_registry

__all__ = [
    "AdapterRegistry",
    "LifecycleHooks",
    "MessageSender",
    "ProviderAdapter",
    "QrProvider",
    "StatusProbe",
    "build_default_registry",
]
