# PUBLIC_INTERFACE
"""
Webhook descriptor: the callback URL and verification token a tenant pastes into a provider's
dashboard. Pure functions of provider key and configured base URL; the inbound receiver uses
the same derivation so both sides agree.
"""
from __future__ import annotations

import hmac
from typing import Optional
from urllib.parse import urlparse

from channel_hub.core.models import WebhookDescriptor

LOCAL_HOSTS = {"localhost", "127.0.0.1", "0.0.0.0", "::1"}

# Providers that echo a shared verify token during webhook subscription
TOKEN_PROVIDERS = {"meta_whatsapp"}

DOCUMENTATION_URLS = {
    "meta_whatsapp": "https://developers.facebook.com/docs/whatsapp/cloud-api/webhooks/components",
    "evolution_api": "https://doc.evolution-api.com/webhooks",
}

LOCAL_WARNING = (
    "The base URL points at a local address. External providers cannot reach it; "
    "configure APP_BASE_URL with a public URL (or a tunnel) before registering the webhook."
)


def is_local_url(base_url: str) -> bool:
    host = (urlparse(base_url).hostname or "").lower()
    return host in LOCAL_HOSTS or host.endswith(".localhost") or host.endswith(".local")


# PUBLIC_INTERFACE
def callback_url(provider_key: str, base_url: str) -> str:
    """Callback URL for a provider under the given public base URL."""
    base = base_url.rstrip("/")
    if provider_key == "evolution_api":
        return f"{base}/api/webhooks/whatsapp"
    return f"{base}/api/webhooks/messaging?channel=whatsapp"


# PUBLIC_INTERFACE
def get_webhook_descriptor(provider_key: str, base_url: Optional[str], verify_token: str) -> WebhookDescriptor:
    """Describe the webhook a provider must be configured with.

    A missing base URL falls back to localhost, which, like any other local address, is
    reported through ``warning`` rather than rejected.
    """
    base = (base_url or "http://localhost:8000").strip()
    local = is_local_url(base)
    return WebhookDescriptor(
        provider_key=provider_key,
        callback_url=callback_url(provider_key, base),
        verify_token=verify_token if provider_key in TOKEN_PROVIDERS else None,
        is_local=local,
        warning=LOCAL_WARNING if local else None,
        documentation_url=DOCUMENTATION_URLS.get(provider_key),
    )


# PUBLIC_INTERFACE
def verify_webhook_challenge(mode: Optional[str], token: Optional[str], challenge: Optional[str], expected_token: str) -> Optional[str]:
    """Return the challenge to echo back if this is a valid subscription request, else None."""
    if mode != "subscribe" or not token or challenge is None:
        return None
    if not hmac.compare_digest(token.encode("utf-8"), expected_token.encode("utf-8")):
        return None
    return challenge
