from __future__ import annotations

from typing import Any, Dict, Optional

import httpx
from pydantic import BaseModel, Field

from channel_hub.core.errors import ProviderRejected, ProviderUnreachable, ValidationError
from channel_hub.core.logging import get_logger
from channel_hub.core.models import ConnectionStatus, QrCode, SendResult, StatusResult, VerificationResult
from .base import (
    Credentials,
    LifecycleHooks,
    MessageSender,
    ProviderAdapter,
    QrProvider,
    StatusProbe,
    json_object,
    message_text,
    missing_fields,
    provider_error_text,
)

logger = get_logger(__name__)

OPEN_STATE = "open"
PENDING_STATES = {"close", "connecting"}


class InstanceInfo(BaseModel):
    """State of a gateway instance as reported by fetchInstances."""
    exists: bool = Field(..., description="True if the gateway knows the instance")
    state: Optional[str] = Field(default=None, description="Pairing state, e.g. 'open', 'close', 'connecting'")
    token: Optional[str] = Field(default=None, description="Instance API key, when the gateway reports it")


class CreatedInstance(BaseModel):
    id: str
    token: Optional[str] = None
    qr: Optional[str] = None
    status: str = "created"


# PUBLIC_INTERFACE
class EvolutionAdapter(ProviderAdapter, StatusProbe, QrProvider, MessageSender, LifecycleHooks):
    """QR-paired WhatsApp gateway (Evolution API).

    Connection credentials are ``baseUrl``, ``apiKey`` and ``instanceName``. Instance
    provisioning goes through the operator's global gateway (``gateway_url``/``gateway_key``).
    """

    key = "evolution_api"
    name = "WhatsApp (QR gateway)"
    required = ["baseUrl", "apiKey", "instanceName"]

    def __init__(
        self,
        gateway_url: Optional[str] = None,
        gateway_key: Optional[str] = None,
        webhook_url: Optional[str] = None,
        **kwargs: Any,
    ):
        super().__init__(**kwargs)
        self.gateway_url = gateway_url.rstrip("/") if gateway_url else None
        self.gateway_key = gateway_key
        self.webhook_url = webhook_url

    @staticmethod
    def _base(creds: Credentials) -> str:
        return str(creds["baseUrl"]).rstrip("/")

    async def _connection_state(self, creds: Credentials) -> httpx.Response:
        url = f"{self._base(creds)}/instance/connectionState/{creds['instanceName']}"
        async with self._client(headers={"apikey": creds["apiKey"]}) as client:
            return await client.get(url)

    async def verify_credentials(self, credentials: Credentials) -> VerificationResult:
        creds = self.open_credentials(credentials)
        if missing_fields(creds, self.required):
            return VerificationResult(is_valid=False, error="Missing required fields (Base URL, API Key, Instance Name)")
        try:
            resp = await self._connection_state(creds)
        except httpx.HTTPError as exc:
            return VerificationResult(
                is_valid=False,
                error=f"Network error connecting to Evolution: {exc}",
                network_error=True,
            )
        if resp.status_code >= 400:
            return VerificationResult(
                is_valid=False,
                error=f"Evolution Verification Failed: {resp.status_code} {resp.reason_phrase}",
            )
        data = json_object(resp)
        if data is None:
            return VerificationResult(is_valid=False, error=f"Evolution Verification Failed: unexpected response ({resp.status_code})")
        instance = data.get("instance") or {}
        state = instance.get("state") or "unknown"
        metadata: Dict[str, Any] = {"instance_state": state}
        if instance.get("ownerJid"):
            metadata["phone"] = instance["ownerJid"]
        # Reachable but not paired yet: the connection waits for a QR scan
        hint = None if state == OPEN_STATE else ConnectionStatus.CONNECTING
        return VerificationResult(is_valid=True, metadata=metadata, status_hint=hint)

    async def check_connection_status(self, credentials: Credentials) -> StatusResult:
        creds = self.open_credentials(credentials)
        if missing_fields(creds, self.required):
            return StatusResult(status="error", message="Missing credentials")
        try:
            resp = await self._connection_state(creds)
        except httpx.HTTPError as exc:
            return StatusResult(status="error", message=str(exc) or type(exc).__name__)
        if resp.status_code >= 400:
            return StatusResult(status="error", message=f"API Error: {resp.status_code}")
        data = json_object(resp)
        if data is None:
            return StatusResult(status="error", message="Unexpected response from Evolution")
        state = (data.get("instance") or {}).get("state")
        if state == OPEN_STATE:
            return StatusResult(status="active")
        if state in PENDING_STATES:
            return StatusResult(status="inactive", message=state)
        return StatusResult(status="inactive", message="Unknown state")

    async def get_qr_code(self, credentials: Credentials) -> Optional[QrCode]:
        creds = self.open_credentials(credentials)
        if missing_fields(creds, self.required):
            return None
        url = f"{self._base(creds)}/instance/connect/{creds['instanceName']}"
        try:
            async with self._client(headers={"apikey": creds["apiKey"]}) as client:
                resp = await client.get(url)
        except httpx.HTTPError as exc:
            raise ProviderUnreachable(f"Failed to fetch QR code: {exc}") from exc
        if resp.status_code >= 400:
            raise ProviderRejected("Failed to fetch QR code", provider_message=provider_error_text(resp))
        # An already paired instance answers without a base64 payload
        qr = (json_object(resp) or {}).get("base64")
        return QrCode(qr=qr, type="base64") if qr else None

    async def send_message(self, credentials: Credentials, recipient: str, content: Any) -> SendResult:
        creds = self.open_credentials(credentials)
        missing = missing_fields(creds, self.required)
        if missing:
            raise ValidationError("Missing credentials", fields=missing)
        url = f"{self._base(creds)}/message/sendText/{creds['instanceName']}"
        body = {"number": recipient, "text": message_text(content), "delay": 1000}
        try:
            async with self._client(headers={"apikey": creds["apiKey"]}) as client:
                resp = await client.post(url, json=body)
        except httpx.HTTPError as exc:
            raise ProviderUnreachable(f"Evolution Send Failed: {exc}") from exc
        if resp.status_code >= 400:
            text = provider_error_text(resp)
            raise ProviderRejected(f"Evolution Send Failed: {text}", provider_message=text)
        data = json_object(resp) or {}
        message_id = (data.get("key") or {}).get("id")
        if not message_id:
            raise ProviderRejected("Evolution Send Failed: response carried no message id", provider_message=resp.text)
        return SendResult(message_id=str(message_id), metadata=data)

    async def on_connect(self, connection_id: str, credentials: Credentials) -> None:
        """Point the instance's webhook at this deployment."""
        if not self.webhook_url:
            return
        creds = self.open_credentials(credentials)
        url = f"{self._base(creds)}/webhook/set/{creds['instanceName']}"
        body = {"webhook": {"enabled": True, "url": self.webhook_url, "events": ["MESSAGES_UPSERT", "CONNECTION_UPDATE"]}}
        async with self._client(headers={"apikey": creds["apiKey"]}) as client:
            resp = await client.post(url, json=body)
        if resp.status_code >= 400:
            raise ProviderRejected("Webhook registration failed", provider_message=provider_error_text(resp))
        logger.info("Registered Evolution webhook", extra={"connection_id": connection_id})

    async def on_disconnect(self, connection_id: str, credentials: Credentials) -> None:
        """Delete the gateway instance unless it is still paired."""
        creds = self.open_credentials(credentials)
        instance_name = creds.get("instanceName")
        if not instance_name:
            return
        info = await self.fetch_instance(instance_name, base_url=creds.get("baseUrl"), api_key=creds.get("apiKey"))
        if not info.exists:
            return
        if info.state == OPEN_STATE:
            logger.info("Instance still paired; keeping it", extra={"connection_id": connection_id})
            return
        await self.delete_instance(instance_name, base_url=creds.get("baseUrl"), api_key=creds.get("apiKey"))
        logger.info("Deleted Evolution instance", extra={"connection_id": connection_id})

    def _gateway(self, base_url: Optional[str] = None, api_key: Optional[str] = None) -> tuple[str, str]:
        url = self.gateway_url or (base_url.rstrip("/") if base_url else None)
        key = self.gateway_key or api_key
        if not url or not key:
            raise ValidationError(
                "Evolution API global configuration missing (EVOLUTION_API_URL, EVOLUTION_API_KEY)",
                fields=["EVOLUTION_API_URL", "EVOLUTION_API_KEY"],
            )
        return url, key

    @property
    def gateway_configured(self) -> bool:
        return bool(self.gateway_url and self.gateway_key)

    # PUBLIC_INTERFACE
    async def fetch_instance(self, instance_name: str, base_url: Optional[str] = None, api_key: Optional[str] = None) -> InstanceInfo:
        """Look up an instance on the gateway."""
        url, key = self._gateway(base_url, api_key)
        try:
            async with self._client(headers={"apikey": key}) as client:
                resp = await client.get(f"{url}/instance/fetchInstances", params={"instanceName": instance_name})
        except httpx.HTTPError as exc:
            raise ProviderUnreachable(f"Failed to fetch Evolution instance: {exc}") from exc
        if resp.status_code == 404:
            return InstanceInfo(exists=False)
        if resp.status_code >= 400:
            raise ProviderRejected("Failed to fetch Evolution instance", provider_message=provider_error_text(resp))
        try:
            data = resp.json()
        except ValueError as exc:
            raise ProviderRejected("Failed to fetch Evolution instance", provider_message=resp.text) from exc
        items = data if isinstance(data, list) else [data]
        for item in items:
            inst = item.get("instance", item) if isinstance(item, dict) else {}
            name = inst.get("instanceName") or inst.get("name")
            if name == instance_name:
                return InstanceInfo(
                    exists=True,
                    state=inst.get("connectionStatus") or inst.get("state") or inst.get("status"),
                    token=inst.get("token") or inst.get("apikey"),
                )
        return InstanceInfo(exists=False)

    # PUBLIC_INTERFACE
    async def create_instance(
        self,
        instance_name: str,
        token: Optional[str] = None,
        qrcode: bool = True,
        webhook: Optional[str] = None,
    ) -> CreatedInstance:
        """Create a Baileys-backed instance on the global gateway."""
        url, key = self._gateway()
        body: Dict[str, Any] = {
            "instanceName": instance_name,
            "token": token,
            "qrcode": qrcode,
            "integration": "WHATSAPP-BAILEYS",
        }
        if webhook:
            body["webhook"] = webhook
        try:
            async with self._client(headers={"apikey": key}) as client:
                resp = await client.post(f"{url}/instance/create", json=body)
        except httpx.HTTPError as exc:
            raise ProviderUnreachable(f"Evolution Instance Creation Failed: {exc}") from exc
        if resp.status_code >= 400:
            text = provider_error_text(resp)
            raise ProviderRejected(f"Evolution Instance Creation Failed: {resp.status_code} {text}", provider_message=text)
        data = json_object(resp)
        if data is None:
            raise ProviderRejected("Evolution Instance Creation Failed: unexpected response", provider_message=resp.text)
        instance = data.get("instance") or {}
        return CreatedInstance(
            id=instance.get("instanceName") or instance_name,
            token=instance.get("token") or (data.get("hash") or {}).get("apikey"),
            qr=(data.get("qrcode") or {}).get("base64"),
            status=instance.get("status") or "created",
        )

    # PUBLIC_INTERFACE
    async def delete_instance(self, instance_name: str, base_url: Optional[str] = None, api_key: Optional[str] = None) -> bool:
        """Delete an instance; returns False when the gateway refused."""
        url, key = self._gateway(base_url, api_key)
        async with self._client(headers={"apikey": key}) as client:
            resp = await client.delete(f"{url}/instance/delete/{instance_name}")
        return resp.status_code < 400
