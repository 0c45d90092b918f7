# PUBLIC_INTERFACE
"""
HTTP routes for providers, connections, channels and inbound webhook verification.

All connection routes are scoped to the caller's organization; mutations and pairing
require the 'admin' role.
"""
from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Query
from fastapi.responses import PlainTextResponse

from channel_hub.core.errors import Forbidden
from channel_hub.core.logging import get_logger
from channel_hub.core.models import ConnectionInput
from channel_hub.core.response import ok
from channel_hub.core.tenants import TenantContext, require_role, tenant_dep
from channel_hub.services.connection_service import ConnectionService
from channel_hub.services.webhooks import verify_webhook_challenge
from .dependencies import get_service
from .models import ConnectionUpdate, CredentialsBody, ErrorResponse, ProvisionWhatsAppBody, SendMessageBody, SuccessResponse

logger = get_logger(__name__)

# Documented failure shapes; every ChannelHubError renders as ErrorResponse
ERROR_RESPONSES = {code: {"model": ErrorResponse} for code in (400, 401, 403, 404, 409, 422, 502)}

providers_router = APIRouter(prefix="/providers", tags=["Providers"], responses=ERROR_RESPONSES)
connections_router = APIRouter(prefix="/connections", tags=["Connections"], responses=ERROR_RESPONSES)
channels_router = APIRouter(prefix="/channels", tags=["Channels"], responses=ERROR_RESPONSES)
webhooks_router = APIRouter(prefix="/webhooks", tags=["Webhooks"], responses={403: {"model": ErrorResponse}})

admin_dep = require_role("admin")


@providers_router.get("", summary="List providers", response_model=SuccessResponse[list])
def list_providers(
    tenant: TenantContext = Depends(tenant_dep),
    service: ConnectionService = Depends(get_service),
):
    """Provider catalog with adapter availability and capabilities."""
    return ok(service.list_providers())


@providers_router.get("/{provider_key}/webhook", summary="Webhook descriptor", response_model=SuccessResponse[dict])
def webhook_descriptor(
    provider_key: str,
    tenant: TenantContext = Depends(tenant_dep),
    service: ConnectionService = Depends(get_service),
):
    """Callback URL and verify token to configure in the provider's dashboard."""
    return ok(service.get_webhook_descriptor(provider_key).model_dump())


@providers_router.post("/{provider_key}/qr", summary="Pairing code for credentials", response_model=SuccessResponse[dict])
async def provider_qr(
    provider_key: str,
    body: CredentialsBody,
    tenant: TenantContext = Depends(admin_dep),
    service: ConnectionService = Depends(get_service),
):
    qr = await service.get_qr_for_credentials(provider_key, body.credentials)
    return ok({"qr": qr.model_dump() if qr else None})


@connections_router.get("", summary="List connections", response_model=SuccessResponse[list])
def list_connections(
    tenant: TenantContext = Depends(tenant_dep),
    service: ConnectionService = Depends(get_service),
):
    """Tenant connections without credentials; deleted rows are excluded."""
    return ok([c.model_dump() for c in service.list_connections(tenant.organization_id)])


@connections_router.get("/{connection_id}", summary="Get connection", response_model=SuccessResponse[dict])
def get_connection(
    connection_id: str,
    tenant: TenantContext = Depends(tenant_dep),
    service: ConnectionService = Depends(get_service),
):
    return ok(service.get_connection(tenant.organization_id, connection_id).model_dump())


@connections_router.post("", summary="Create or install a connection", response_model=SuccessResponse[dict])
async def create_connection(
    body: ConnectionInput,
    tenant: TenantContext = Depends(admin_dep),
    service: ConnectionService = Depends(get_service),
):
    """Verify credentials with the provider, then persist. Nothing is written if verification fails."""
    view = await service.create_or_update_connection(tenant.organization_id, body)
    return ok(view.model_dump())


@connections_router.patch("/{connection_id}", summary="Update a connection", response_model=SuccessResponse[dict])
async def update_connection(
    connection_id: str,
    body: ConnectionUpdate,
    tenant: TenantContext = Depends(admin_dep),
    service: ConnectionService = Depends(get_service),
):
    data = ConnectionInput(connection_id=connection_id, **body.model_dump())
    view = await service.create_or_update_connection(tenant.organization_id, data)
    return ok(view.model_dump())


@connections_router.post("/{connection_id}/primary", summary="Set primary", response_model=SuccessResponse[dict])
def set_primary(
    connection_id: str,
    tenant: TenantContext = Depends(admin_dep),
    service: ConnectionService = Depends(get_service),
):
    return ok(service.set_primary(tenant.organization_id, connection_id).model_dump())


@connections_router.post("/{connection_id}/verify", summary="Re-verify stored credentials", response_model=SuccessResponse[dict])
async def reverify_connection(
    connection_id: str,
    tenant: TenantContext = Depends(admin_dep),
    service: ConnectionService = Depends(get_service),
):
    view = await service.reverify(tenant.organization_id, connection_id)
    return ok(view.model_dump())


@connections_router.get("/{connection_id}/status", summary="Live status", response_model=SuccessResponse[dict])
async def live_status(
    connection_id: str,
    tenant: TenantContext = Depends(tenant_dep),
    service: ConnectionService = Depends(get_service),
):
    """Cheap, pollable liveness probe. Does not re-verify or touch credentials."""
    report = await service.check_live_status(tenant.organization_id, connection_id)
    return ok(report.model_dump())


@connections_router.get("/{connection_id}/qr", summary="Pairing code", response_model=SuccessResponse[dict])
async def connection_qr(
    connection_id: str,
    tenant: TenantContext = Depends(admin_dep),
    service: ConnectionService = Depends(get_service),
):
    qr = await service.get_qr_code(tenant.organization_id, connection_id)
    return ok({"qr": qr.model_dump() if qr else None})


@connections_router.post("/{connection_id}/messages", summary="Send a message", response_model=SuccessResponse[dict])
async def send_message(
    connection_id: str,
    body: SendMessageBody,
    tenant: TenantContext = Depends(admin_dep),
    service: ConnectionService = Depends(get_service),
):
    result = await service.send_message(tenant.organization_id, connection_id, body.recipient, body.content)
    return ok(result.model_dump())


@connections_router.delete("/{connection_id}", summary="Delete a connection", response_model=SuccessResponse[dict])
async def delete_connection(
    connection_id: str,
    hard: bool = Query(False, description="Remove the row instead of marking it deleted"),
    tenant: TenantContext = Depends(admin_dep),
    service: ConnectionService = Depends(get_service),
):
    view = await service.delete_connection(tenant.organization_id, connection_id, hard=hard)
    return ok(view.model_dump())


@channels_router.get("/{channel_ref}", summary="Resolve a channel reference", response_model=SuccessResponse[dict])
def channel_details(
    channel_ref: str,
    tenant: TenantContext = Depends(tenant_dep),
    service: ConnectionService = Depends(get_service),
):
    """Resolve ``connectionId`` or ``connectionId:assetId``."""
    return ok(service.describe_channel(tenant.organization_id, channel_ref).model_dump())


@channels_router.post("/whatsapp", summary="Provision a QR WhatsApp channel", response_model=SuccessResponse[dict])
async def provision_whatsapp(
    body: ProvisionWhatsAppBody,
    tenant: TenantContext = Depends(admin_dep),
    service: ConnectionService = Depends(get_service),
):
    result = await service.provision_whatsapp_channel(tenant.organization_id, body.phone_number)
    return ok(result.model_dump())


@webhooks_router.get("/{provider_key}", summary="Webhook subscription challenge", response_class=PlainTextResponse)
def webhook_challenge(
    provider_key: str,
    mode: Optional[str] = Query(default=None, alias="hub.mode"),
    token: Optional[str] = Query(default=None, alias="hub.verify_token"),
    challenge: Optional[str] = Query(default=None, alias="hub.challenge"),
    service: ConnectionService = Depends(get_service),
):
    """Echo the challenge when the provider presents the shared verify token."""
    expected = service.settings.webhooks.WHATSAPP_VERIFY_TOKEN
    answer = verify_webhook_challenge(mode, token, challenge, expected)
    if answer is None:
        logger.warning("Rejected webhook verification", extra={"provider_key": provider_key, "mode": mode})
        raise Forbidden("Webhook verification failed")
    return PlainTextResponse(answer)
