from __future__ import annotations

from typing import Any, Dict, Optional

import httpx

from channel_hub.core.errors import ProviderRejected, ProviderUnreachable
from channel_hub.core.logging import get_logger
from channel_hub.core.models import SendResult, StatusResult, VerificationResult
from .base import (
    Credentials,
    LifecycleHooks,
    MessageSender,
    ProviderAdapter,
    StatusProbe,
    json_object,
    message_text,
    missing_fields,
    provider_error_text,
)

logger = get_logger(__name__)

# Graph API error code for an expired or revoked access token
TOKEN_EXPIRED_CODE = 190
PHONE_FIELDS = "display_phone_number,verified_name,quality_rating"


def _graph_error_code(response: httpx.Response) -> Optional[int]:
    try:
        err = response.json().get("error") or {}
    except (ValueError, AttributeError):
        return None
    code = err.get("code") if isinstance(err, dict) else None
    return code if isinstance(code, int) else None


class MetaWhatsAppAdapter(ProviderAdapter, StatusProbe, MessageSender, LifecycleHooks):
    """WhatsApp Cloud API (Meta Graph) adapter.

    Credentials: ``phoneNumberId``, ``accessToken`` and optionally ``businessAccountId``
    (needed to subscribe the app to the WhatsApp Business Account webhooks).
    """

    key = "meta_whatsapp"
    name = "WhatsApp Cloud API"
    required = ["phoneNumberId", "accessToken"]

    def __init__(self, graph_url: str = "https://graph.facebook.com", version: str = "v19.0", **kwargs: Any):
        super().__init__(**kwargs)
        self.base_url = f"{graph_url.rstrip('/')}/{version}"

    def _headers(self, token: str) -> Dict[str, str]:
        return {"Authorization": f"Bearer {token}", "Accept": "application/json"}

    async def _fetch_phone(self, creds: Credentials) -> httpx.Response:
        async with self._client(headers=self._headers(creds["accessToken"])) as client:
            return await client.get(f"{self.base_url}/{creds['phoneNumberId']}", params={"fields": PHONE_FIELDS})

    async def verify_credentials(self, credentials: Credentials) -> VerificationResult:
        creds = self.open_credentials(credentials)
        missing = missing_fields(creds, self.required)
        if missing:
            return VerificationResult(is_valid=False, error=f"Missing required fields: {', '.join(missing)}")
        try:
            resp = await self._fetch_phone(creds)
        except httpx.HTTPError as exc:
            return VerificationResult(is_valid=False, error=f"Network error connecting to Meta: {exc}", network_error=True)

        if resp.status_code >= 400:
            expired = _graph_error_code(resp) == TOKEN_EXPIRED_CODE
            return VerificationResult(
                is_valid=False,
                error=f"Meta verification failed: {provider_error_text(resp)}",
                expired=expired,
            )
        data = json_object(resp)
        if data is None:
            return VerificationResult(is_valid=False, error=f"Meta verification failed: unexpected response ({resp.status_code})")
        metadata = {
            "phone_number_id": creds["phoneNumberId"],
            "display_phone_number": data.get("display_phone_number"),
            "verified_name": data.get("verified_name"),
            "quality_rating": data.get("quality_rating"),
        }
        metadata = {k: v for k, v in metadata.items() if v is not None}
        return VerificationResult(
            is_valid=True,
            metadata=metadata,
            authoritative_keys=["display_phone_number", "verified_name", "quality_rating"],
        )

    async def check_connection_status(self, credentials: Credentials) -> StatusResult:
        creds = self.open_credentials(credentials)
        if missing_fields(creds, self.required):
            return StatusResult(status="error", message="Missing credentials")
        try:
            resp = await self._fetch_phone(creds)
        except httpx.HTTPError as exc:
            return StatusResult(status="error", message=str(exc) or type(exc).__name__)
        if resp.status_code < 400:
            data = json_object(resp)
            if data is None:
                return StatusResult(status="error", message="Unexpected response from Meta")
            rating = data.get("quality_rating")
            return StatusResult(status="active", message=f"Quality rating {rating}" if rating else None)
        if _graph_error_code(resp) == TOKEN_EXPIRED_CODE:
            return StatusResult(status="expired", message=provider_error_text(resp))
        return StatusResult(status="error", message=f"API Error: {resp.status_code}")

    async def send_message(self, credentials: Credentials, recipient: str, content: Any) -> SendResult:
        creds = self.open_credentials(credentials)
        if isinstance(content, dict) and content.get("template"):
            payload: Dict[str, Any] = {
                "messaging_product": "whatsapp",
                "to": recipient,
                "type": "template",
                "template": content["template"],
            }
        else:
            payload = {
                "messaging_product": "whatsapp",
                "recipient_type": "individual",
                "to": recipient,
                "type": "text",
                "text": {"body": message_text(content)},
            }
        url = f"{self.base_url}/{creds['phoneNumberId']}/messages"
        try:
            async with self._client(headers=self._headers(creds["accessToken"])) as client:
                resp = await client.post(url, json=payload)
        except httpx.HTTPError as exc:
            raise ProviderUnreachable(f"Meta send failed: {exc}") from exc
        if resp.status_code >= 400:
            text = provider_error_text(resp)
            raise ProviderRejected(
                f"Meta send failed: {text}",
                provider_message=text,
                expired=_graph_error_code(resp) == TOKEN_EXPIRED_CODE,
            )
        data = json_object(resp) or {}
        messages = data.get("messages") or [{}]
        return SendResult(message_id=str(messages[0].get("id", "")), metadata=data)

    async def _subscription(self, method: str, creds: Credentials) -> None:
        waba_id = creds.get("businessAccountId")
        if not waba_id:
            return
        async with self._client(headers=self._headers(creds["accessToken"])) as client:
            resp = await client.request(method, f"{self.base_url}/{waba_id}/subscribed_apps")
        if resp.status_code >= 400:
            raise ProviderRejected(f"WABA subscription {method} failed", provider_message=provider_error_text(resp))

    async def on_connect(self, connection_id: str, credentials: Credentials) -> None:
        await self._subscription("POST", self.open_credentials(credentials))
        logger.info("Subscribed app to WhatsApp Business Account", extra={"connection_id": connection_id})

    async def on_disconnect(self, connection_id: str, credentials: Credentials) -> None:
        await self._subscription("DELETE", self.open_credentials(credentials))
        logger.info("Unsubscribed app from WhatsApp Business Account", extra={"connection_id": connection_id})
