# PUBLIC_INTERFACE
"""
Connection service: the caller-facing operations over tenant connections.

Write path (create/update/re-verify) runs the provider's full verification before anything is
persisted, in the order validate, verify, merge metadata, then hand off to the repository
(clear sibling primaries, encrypt, write). Live status is a separate, read-only probe.

Every adapter call is bounded by ADAPTER_TIMEOUT_SECONDS.
"""
from __future__ import annotations

import asyncio
import time
import uuid
from typing import Any, Awaitable, Dict, List, Optional, TypeVar

import httpx

from channel_hub.adapters.base import LifecycleHooks, MessageSender, ProviderAdapter, QrProvider, StatusProbe
from channel_hub.adapters.catalog import ProviderCatalog
from channel_hub.adapters.evolution import EvolutionAdapter
from channel_hub.adapters.registry import AdapterRegistry, build_default_registry
from channel_hub.core.db import connections_collection
from channel_hub.core.envelope import CredentialEnvelope
from channel_hub.core.errors import (
    ChannelHubError,
    CredentialsUnavailable,
    ProviderRejected,
    ProviderUnreachable,
    ValidationError,
    VerificationFailed,
)
from channel_hub.core.logging import get_logger
from channel_hub.core.models import (
    ChannelDetails,
    Connection,
    ConnectionInput,
    ConnectionStatus,
    ConnectionView,
    LiveStatusReport,
    ProvisionedChannel,
    QrCode,
    SendResult,
    StatusResult,
    VerificationResult,
    WebhookDescriptor,
    utc_now,
)
from channel_hub.core.observability import increment_metric, observe_latency
from channel_hub.core.settings import Settings
from channel_hub.repositories.connections_repo import ConnectionsRepository, merge_metadata
from channel_hub.repositories.store import ConnectionStore, InMemoryConnectionStore, MongoConnectionStore
from .webhooks import callback_url, get_webhook_descriptor

logger = get_logger(__name__)

T = TypeVar("T")

WHATSAPP_GATEWAY_KEY = "evolution_api"


def clean_credentials(credentials: Dict[str, Any]) -> Dict[str, Any]:
    """Trim surrounding whitespace from string credential values."""
    return {k: v.strip() if isinstance(v, str) else v for k, v in credentials.items()}


def _channel_type(provider_key: str) -> str:
    if "whatsapp" in provider_key or "evolution" in provider_key:
        return "whatsapp"
    if "instagram" in provider_key:
        return "instagram"
    if provider_key == "meta_business":
        return "messenger"
    return "other"


# PUBLIC_INTERFACE
class ConnectionService:
    """Verification, live status and lifecycle operations for tenant connections."""

    def __init__(
        self,
        repository: ConnectionsRepository,
        registry: AdapterRegistry,
        settings: Settings,
        catalog: Optional[ProviderCatalog] = None,
    ):
        self.repository = repository
        self.registry = registry
        self.settings = settings
        self.catalog = catalog or repository.catalog
        self.timeout = settings.adapters.ADAPTER_TIMEOUT_SECONDS
        self.persist_probe_status = settings.status.PERSIST_PROBE_STATUS

    async def _call(self, aw: Awaitable[T], provider_key: str, operation: str) -> T:
        """Await an adapter call under the configured timeout."""
        start = time.perf_counter()
        try:
            return await asyncio.wait_for(aw, timeout=self.timeout)
        except asyncio.TimeoutError as exc:
            logger.warning(
                "Adapter call timed out",
                extra={"provider_key": provider_key, "operation": operation, "timeout_s": self.timeout},
            )
            raise ProviderUnreachable(f"{provider_key} did not answer within {self.timeout:g}s") from exc
        except httpx.HTTPError as exc:
            raise ProviderUnreachable(f"Could not reach {provider_key}: {exc}") from exc
        finally:
            observe_latency("adapter_latency_ms_sum", (time.perf_counter() - start) * 1000.0)

    async def _verify(self, adapter: ProviderAdapter, credentials: Dict[str, Any]) -> VerificationResult:
        increment_metric("verifications_total")
        result = await self._call(adapter.verify_credentials(credentials), adapter.key, "verify")
        if result.is_valid:
            return result
        increment_metric("verification_failures_total")
        logger.info(
            "Verification failed",
            extra={"provider_key": adapter.key, "expired": result.expired, "network_error": result.network_error},
        )
        message = result.error or "Verification failed"
        if result.network_error:
            raise ProviderUnreachable(message)
        raise VerificationFailed(message, expired=result.expired)

    async def _run_hook(self, aw: Awaitable[None], provider_key: str, hook: str, connection_id: str) -> None:
        try:
            await self._call(aw, provider_key, hook)
        except Exception:
            logger.exception(
                "Lifecycle hook failed; continuing",
                extra={"provider_key": provider_key, "hook": hook, "connection_id": connection_id},
            )

    # PUBLIC_INTERFACE
    def list_providers(self) -> List[Dict[str, Any]]:
        """Catalog entries with adapter availability and capability flags."""
        items = []
        for descriptor in self.catalog.list():
            adapter = self.registry.get_adapter(descriptor.key)
            items.append(
                {
                    **descriptor.model_dump(),
                    "has_adapter": adapter is not None,
                    "capabilities": adapter.capabilities() if adapter else [],
                }
            )
        return items

    # PUBLIC_INTERFACE
    def list_connections(self, organization_id: str) -> List[ConnectionView]:
        return [c.to_view() for c in self.repository.list(organization_id)]

    # PUBLIC_INTERFACE
    def get_connection(self, organization_id: str, connection_id: str) -> ConnectionView:
        return self.repository.require(organization_id, connection_id).to_view()

    # PUBLIC_INTERFACE
    async def create_or_update_connection(self, organization_id: str, data: ConnectionInput) -> ConnectionView:
        """Create, install (upsert per provider) or update a connection.

        Anything carrying credentials is verified by the provider's adapter first; a failed
        verification writes nothing. Updates without credentials (rename, config, primary
        toggle) skip verification and do not need an adapter.
        """
        existing: Optional[Connection] = None
        if data.connection_id:
            existing = self.repository.require(organization_id, data.connection_id)
        provider_key = existing.provider_key if existing else data.provider_key
        if not provider_key:
            raise ValidationError("provider_key is required", fields=["provider_key"])
        canonical = self.registry.canonical_key(provider_key)
        if existing is None and not data.allow_multiple:
            existing = self.repository.find_install_target(organization_id, canonical)

        credentials = clean_credentials(data.credentials)
        values: Dict[str, Any] = {}
        if data.connection_name is not None:
            values["connection_name"] = data.connection_name.strip()
        elif existing is None:
            descriptor = self.catalog.get(canonical)
            values["connection_name"] = descriptor.name if descriptor else canonical
        if data.config is not None:
            values["config"] = data.config
        if data.is_primary is not None:
            values["is_primary"] = data.is_primary
        stored_metadata = existing.metadata if existing else {}

        if not credentials and existing is not None:
            if data.metadata:
                values["metadata"] = {**stored_metadata, **data.metadata}
            saved = self.repository.save(organization_id, canonical, values, existing=existing)
            return saved.to_view()

        config = data.config if data.config is not None else (existing.config if existing else {})
        self.repository.validate_required(canonical, credentials, config)
        adapter = self.registry.require_adapter(canonical)
        result = await self._verify(adapter, credentials)

        values["metadata"] = merge_metadata(data.metadata, result.metadata, result.authoritative_keys, stored=stored_metadata)
        values["status"] = result.status_hint or ConnectionStatus.ACTIVE
        values["last_synced_at"] = utc_now()
        saved = self.repository.save(organization_id, canonical, values, credentials=credentials, existing=existing)
        logger.info(
            "Connection saved",
            extra={"connection_id": saved.id, "provider_key": canonical, "status": saved.status.value},
        )

        if isinstance(adapter, LifecycleHooks) and (existing is None or existing.status == ConnectionStatus.DELETED):
            await self._run_hook(adapter.on_connect(saved.id, credentials), canonical, "on_connect", saved.id)
        return saved.to_view()

    # PUBLIC_INTERFACE
    async def reverify(self, organization_id: str, connection_id: str) -> ConnectionView:
        """Run full verification on stored credentials and persist the outcome."""
        conn = self.repository.require(organization_id, connection_id)
        if conn.status == ConnectionStatus.DELETED:
            raise ValidationError("Connection is deleted", fields=["connection_id"])
        adapter = self.registry.require_adapter(conn.provider_key)
        credentials = self.repository.open_credentials(conn)
        try:
            result = await self._verify(adapter, credentials)
        except VerificationFailed as exc:
            status = ConnectionStatus.EXPIRED if exc.expired else ConnectionStatus.ERROR
            self.repository.set_status(organization_id, connection_id, status)
            raise
        metadata = merge_metadata(None, result.metadata, result.authoritative_keys, stored=conn.metadata)
        saved = self.repository.update_fields(
            organization_id,
            connection_id,
            {
                "status": result.status_hint or ConnectionStatus.ACTIVE,
                "metadata": metadata,
                "last_synced_at": utc_now(),
            },
        )
        return saved.to_view()

    # PUBLIC_INTERFACE
    def set_primary(self, organization_id: str, connection_id: str) -> ConnectionView:
        return self.repository.set_primary(organization_id, connection_id).to_view()

    # PUBLIC_INTERFACE
    async def check_live_status(self, organization_id: str, connection_id: str) -> LiveStatusReport:
        """Cheap liveness probe. Reads credentials, never writes them."""
        conn = self.repository.require(organization_id, connection_id)
        adapter = self.registry.get_adapter(conn.provider_key)
        if adapter is None or not isinstance(adapter, StatusProbe):
            return LiveStatusReport(
                connection_id=conn.id,
                status="unknown",
                message=f"Provider {conn.provider_key} has no health check",
                stored_status=conn.status,
            )
        if conn.status == ConnectionStatus.DELETED:
            return LiveStatusReport(connection_id=conn.id, status="unknown", message="Connection is deleted", stored_status=conn.status)

        increment_metric("status_probes_total")
        try:
            credentials = self.repository.open_credentials(conn)
            result = await self._call(adapter.check_connection_status(credentials), conn.provider_key, "status")
        except ChannelHubError as exc:
            result = StatusResult(status="error", message=exc.message)

        stored = conn.status
        if result.status in ("error", "expired"):
            increment_metric("status_probe_failures_total")
            if self.persist_probe_status:
                target = ConnectionStatus.EXPIRED if result.status == "expired" else ConnectionStatus.ERROR
                if target != stored:
                    stored = self.repository.set_status(organization_id, conn.id, target).status
        return LiveStatusReport(connection_id=conn.id, status=result.status, message=result.message, stored_status=stored)

    # PUBLIC_INTERFACE
    async def delete_connection(self, organization_id: str, connection_id: str, hard: bool = False) -> ConnectionView:
        """Run the adapter's disconnect hook (best effort) then delete."""
        conn = self.repository.require(organization_id, connection_id)
        adapter = self.registry.get_adapter(conn.provider_key)
        if isinstance(adapter, LifecycleHooks) and conn.credentials:
            try:
                credentials = self.repository.open_credentials(conn)
            except CredentialsUnavailable:
                logger.warning("Skipping disconnect hook, credentials unavailable", extra={"connection_id": conn.id})
            else:
                await self._run_hook(adapter.on_disconnect(conn.id, credentials), conn.provider_key, "on_disconnect", conn.id)
        return self.repository.delete(organization_id, connection_id, hard=hard).to_view()

    # PUBLIC_INTERFACE
    async def get_qr_code(self, organization_id: str, connection_id: str) -> Optional[QrCode]:
        """Pairing code for a stored connection; None when there is nothing to pair."""
        conn = self.repository.require(organization_id, connection_id)
        adapter = self.registry.require_adapter(conn.provider_key)
        if not isinstance(adapter, QrProvider):
            return None
        credentials = self.repository.open_credentials(conn)
        return await self._call(adapter.get_qr_code(credentials), conn.provider_key, "qr")

    # PUBLIC_INTERFACE
    async def get_qr_for_credentials(self, provider_key: str, credentials: Dict[str, Any]) -> Optional[QrCode]:
        """Pairing code for credentials that are not stored yet."""
        adapter = self.registry.require_adapter(provider_key)
        if not isinstance(adapter, QrProvider):
            return None
        return await self._call(adapter.get_qr_code(clean_credentials(credentials)), adapter.key, "qr")

    # PUBLIC_INTERFACE
    async def send_message(self, organization_id: str, connection_id: str, recipient: str, content: Any) -> SendResult:
        """Send through a connection; an expiry reported by the provider marks the connection expired."""
        conn = self.repository.require(organization_id, connection_id)
        if conn.status == ConnectionStatus.DELETED:
            raise ValidationError("Connection is deleted", fields=["connection_id"])
        adapter = self.registry.require_adapter(conn.provider_key)
        if not isinstance(adapter, MessageSender):
            raise ValidationError(f"Provider {conn.provider_key} cannot send messages", fields=["provider_key"])
        credentials = self.repository.open_credentials(conn)
        try:
            result = await self._call(adapter.send_message(credentials, recipient, content), conn.provider_key, "send")
        except ProviderRejected as exc:
            logger.warning("Send rejected by provider", extra={"connection_id": conn.id, "expired": exc.expired})
            # Only expiry is persisted; a single rejected send (bad recipient, template) does not move active to error
            if exc.expired:
                self.repository.set_status(organization_id, conn.id, ConnectionStatus.EXPIRED)
            raise
        increment_metric("messages_sent_total")
        return result

    # PUBLIC_INTERFACE
    def describe_channel(self, organization_id: str, channel_ref: str) -> ChannelDetails:
        """Resolve ``connectionId`` or ``connectionId:assetId`` to a display name and channel type."""
        connection_id, _, asset_id = channel_ref.partition(":")
        conn = self.repository.require(organization_id, connection_id)
        name = conn.connection_name
        channel_type = _channel_type(conn.provider_key)
        if asset_id:
            assets = conn.metadata.get("selected_assets") or []
            asset = next((a for a in assets if isinstance(a, dict) and str(a.get("id")) == asset_id), None)
            if asset is not None:
                asset_name = asset.get("name") or "Unknown Asset"
                if asset.get("type") == "whatsapp":
                    channel_type, name = "whatsapp", f"WhatsApp: {asset_name}"
                elif asset.get("type") == "instagram":
                    channel_type, name = "instagram", f"Instagram: {asset_name}"
                else:
                    channel_type, name = "messenger", f"Messenger: {asset_name}"
        return ChannelDetails(
            connection_id=conn.id,
            asset_id=asset_id or None,
            name=name,
            provider_key=conn.provider_key,
            channel_type=channel_type,
        )

    # PUBLIC_INTERFACE
    def get_webhook_descriptor(self, provider_key: str) -> WebhookDescriptor:
        return get_webhook_descriptor(
            self.registry.canonical_key(provider_key),
            self.settings.webhooks.APP_BASE_URL,
            self.settings.webhooks.WHATSAPP_VERIFY_TOKEN,
        )

    # PUBLIC_INTERFACE
    async def provision_whatsapp_channel(self, organization_id: str, phone_number: str) -> ProvisionedChannel:
        """Create or reconnect a QR-paired WhatsApp channel on the operator's gateway.

        Instance names are ``org_{orgPrefix}_{digits}``. An instance that already exists is
        reconnected (its channel row reused, or created if missing); otherwise a new instance is
        created with the webhook pre-registered and a channel row is saved for it.
        """
        adapter = self.registry.require_adapter(WHATSAPP_GATEWAY_KEY)
        if not isinstance(adapter, EvolutionAdapter) or not adapter.gateway_configured:
            raise ValidationError(
                "Evolution API global configuration missing (EVOLUTION_API_URL, EVOLUTION_API_KEY)",
                fields=["EVOLUTION_API_URL", "EVOLUTION_API_KEY"],
            )
        digits = "".join(ch for ch in phone_number if ch.isdigit())
        if not digits:
            raise ValidationError("A valid phone number is required", fields=["phone_number"])
        org_prefix = organization_id.split("-")[0]
        instance_name = f"org_{org_prefix}_{digits}"
        gateway_url = adapter.gateway_url or ""

        info = await self._call(adapter.fetch_instance(instance_name), WHATSAPP_GATEWAY_KEY, "fetch_instance")
        if info.exists:
            channel = next(
                (c for c in self.repository.find_by_provider(organization_id, WHATSAPP_GATEWAY_KEY)
                 if c.config.get("instance_id") == instance_name),
                None,
            )
            if channel is not None:
                if channel.status == ConnectionStatus.ACTIVE and info.state == "open":
                    raise ValidationError("This number is already connected as an active channel", fields=["phone_number"])
                logger.info("Reconnecting existing WhatsApp channel", extra={"connection_id": channel.id})
                qr = await self._call(
                    adapter.get_qr_code(self.repository.open_credentials(channel)), WHATSAPP_GATEWAY_KEY, "qr"
                )
                if channel.status == ConnectionStatus.DELETED:
                    self.repository.set_status(organization_id, channel.id, ConnectionStatus.CONNECTING)
                return ProvisionedChannel(connection_id=channel.id, qr_code=qr.qr if qr else None, reconnected=True)

            credentials = {
                "baseUrl": gateway_url,
                "apiKey": info.token or adapter.gateway_key,
                "instanceName": instance_name,
            }
            view = await self._save_gateway_channel(organization_id, digits, credentials)
            qr = await self._call(adapter.get_qr_code(credentials), WHATSAPP_GATEWAY_KEY, "qr")
            return ProvisionedChannel(connection_id=view.id, qr_code=qr.qr if qr else None, reconnected=True)

        token = uuid.uuid4().hex
        base_url = self.settings.webhooks.APP_BASE_URL
        created = await self._call(
            adapter.create_instance(
                instance_name,
                token=token,
                qrcode=True,
                webhook=callback_url(WHATSAPP_GATEWAY_KEY, base_url) if base_url else None,
            ),
            WHATSAPP_GATEWAY_KEY,
            "create_instance",
        )
        credentials = {"baseUrl": gateway_url, "apiKey": created.token or token, "instanceName": instance_name}
        view = await self._save_gateway_channel(organization_id, digits, credentials)
        return ProvisionedChannel(connection_id=view.id, qr_code=created.qr)

    async def _save_gateway_channel(self, organization_id: str, digits: str, credentials: Dict[str, str]) -> ConnectionView:
        return await self.create_or_update_connection(
            organization_id,
            ConnectionInput(
                provider_key=WHATSAPP_GATEWAY_KEY,
                connection_name=f"WhatsApp ({digits})",
                credentials=credentials,
                config={"instance_id": credentials["instanceName"], "base_url": credentials["baseUrl"]},
                metadata={"phone_number": digits},
                allow_multiple=True,
            ),
        )


# PUBLIC_INTERFACE
def build_service(
    settings: Settings,
    store: Optional[ConnectionStore] = None,
    registry: Optional[AdapterRegistry] = None,
    envelope: Optional[CredentialEnvelope] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> ConnectionService:
    """Wire envelope, registry, store and repository into a service."""
    envelope = envelope or CredentialEnvelope.from_settings(settings)
    registry = registry or build_default_registry(settings, envelope=envelope, transport=transport)
    if store is None:
        if settings.mongo.MONGODB_URL:
            store = MongoConnectionStore(connections_collection(settings))
        else:
            logger.warning("MONGODB_URL not set; using the in-memory connection store")
            store = InMemoryConnectionStore()
    repository = ConnectionsRepository(store, registry, envelope)
    return ConnectionService(repository, registry, settings)
