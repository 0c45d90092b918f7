from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def new_connection_id() -> str:
    return str(uuid.uuid4())


class ConnectionStatus(str, Enum):
    ACTIVE = "active"
    DISCONNECTED = "disconnected"
    ERROR = "error"
    EXPIRED = "expired"
    CONNECTING = "connecting"
    DELETED = "deleted"


LiveStatus = Literal["active", "inactive", "error", "expired", "unknown"]
ProviderCategory = Literal["messaging", "storage", "ai", "api_key"]


class ConfigSchema(BaseModel):
    required: List[str] = Field(default_factory=list, description="Fields that must be present before any adapter call")
    properties: Dict[str, Any] = Field(default_factory=dict, description="Field definitions for forms")


class ProviderDescriptor(BaseModel):
    """Catalog entry describing a provider."""
    key: str = Field(..., description="Provider key, e.g. 'meta_whatsapp'")
    name: str = Field(..., description="Display name")
    category: ProviderCategory = Field(..., description="Provider category")
    is_premium: bool = Field(default=False, description="Requires a premium plan")
    config_schema: ConfigSchema = Field(default_factory=ConfigSchema)


class Connection(BaseModel):
    """A tenant's configured instance of a provider integration, as stored."""
    id: str = Field(default_factory=new_connection_id, description="Immutable connection id")
    organization_id: str = Field(..., description="Owning tenant")
    provider_key: str = Field(..., description="Adapter key governing this connection")
    connection_name: str = Field(default="", description="Tenant-chosen display label")
    status: ConnectionStatus = Field(default=ConnectionStatus.CONNECTING)
    credentials: Dict[str, Any] = Field(default_factory=dict, description="Encrypted envelope, never plaintext")
    config: Dict[str, Any] = Field(default_factory=dict, description="Non-secret provider settings")
    metadata: Dict[str, Any] = Field(default_factory=dict, description="Facts gathered during verification")
    is_primary: bool = Field(default=False)
    last_synced_at: Optional[datetime] = Field(default=None)
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: Optional[datetime] = Field(default=None)

    # PUBLIC_INTERFACE
    def to_view(self) -> "ConnectionView":
        """Read-path projection without credentials."""
        return ConnectionView(**self.model_dump(exclude={"credentials"}))

    def to_document(self) -> Dict[str, Any]:
        doc = self.model_dump()
        doc["status"] = self.status.value
        return doc


class ConnectionView(BaseModel):
    """Connection as returned to callers. Credentials are write-only."""
    id: str
    organization_id: str
    provider_key: str
    connection_name: str
    status: ConnectionStatus
    config: Dict[str, Any] = Field(default_factory=dict)
    metadata: Dict[str, Any] = Field(default_factory=dict)
    is_primary: bool = False
    last_synced_at: Optional[datetime] = None
    created_at: datetime
    updated_at: Optional[datetime] = None


class ConnectionInput(BaseModel):
    """Caller payload for create/update."""
    provider_key: Optional[str] = Field(default=None, description="Required when creating")
    connection_name: Optional[str] = Field(default=None)
    credentials: Dict[str, Any] = Field(default_factory=dict, description="Plaintext credentials, write-only")
    config: Optional[Dict[str, Any]] = Field(default=None)
    metadata: Dict[str, Any] = Field(default_factory=dict)
    is_primary: Optional[bool] = Field(default=None)
    connection_id: Optional[str] = Field(default=None, description="Set to update an existing connection")
    allow_multiple: bool = Field(default=False, description="Always insert a new connection instead of upserting per provider")


class VerificationResult(BaseModel):
    is_valid: bool
    error: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    authoritative_keys: List[str] = Field(default_factory=list, description="Metadata keys allowed to replace caller values")
    status_hint: Optional[ConnectionStatus] = Field(default=None, description="Status to persist instead of 'active'")
    expired: bool = False
    network_error: bool = Field(default=False, description="The provider could not be reached")


class StatusResult(BaseModel):
    status: LiveStatus
    message: Optional[str] = None


class QrCode(BaseModel):
    qr: str
    type: Literal["base64", "url"] = "base64"


class SendResult(BaseModel):
    message_id: str
    metadata: Dict[str, Any] = Field(default_factory=dict)


class LiveStatusReport(BaseModel):
    connection_id: str
    status: LiveStatus
    message: Optional[str] = None
    stored_status: ConnectionStatus
    checked_at: datetime = Field(default_factory=utc_now)


class WebhookDescriptor(BaseModel):
    provider_key: str
    callback_url: str
    verify_token: Optional[str] = None
    is_local: bool = False
    warning: Optional[str] = None
    documentation_url: Optional[str] = None


class ChannelDetails(BaseModel):
    connection_id: str
    asset_id: Optional[str] = None
    name: str
    provider_key: str
    channel_type: Literal["whatsapp", "instagram", "messenger", "other"] = "other"


class ProvisionedChannel(BaseModel):
    connection_id: str
    qr_code: Optional[str] = None
    reconnected: bool = False
