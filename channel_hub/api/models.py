from __future__ import annotations

from typing import Any, Dict, Generic, Optional, TypeVar

from pydantic import BaseModel, Field

T = TypeVar("T")


class SuccessResponse(BaseModel, Generic[T]):
    """Standard success envelope."""
    status: str = Field("ok", description="Always 'ok'")
    data: T = Field(..., description="Payload")
    meta: Dict[str, Any] = Field(default_factory=dict, description="Optional metadata")


class ErrorResponse(BaseModel):
    """Standardized error payload for all endpoints."""
    status: str = Field("error", description="Error status, always 'error'")
    code: str = Field(..., description="Machine-readable error code (e.g., VALIDATION_ERROR, VERIFICATION_FAILED, PROVIDER_UNREACHABLE)")
    message: str = Field(..., description="Human-readable description of the error")
    details: Optional[Dict[str, Any]] = Field(default=None, description="Additional structured, safe-to-log error details")


class ConnectionUpdate(BaseModel):
    """Payload for PATCH /connections/{id}."""
    connection_name: Optional[str] = Field(default=None, description="New display label")
    credentials: Dict[str, Any] = Field(default_factory=dict, description="Rotated credentials; verified before saving")
    config: Optional[Dict[str, Any]] = Field(default=None, description="Replacement provider settings")
    metadata: Dict[str, Any] = Field(default_factory=dict, description="Metadata keys to set")
    is_primary: Optional[bool] = Field(default=None, description="Make this the primary connection of its provider")


class CredentialsBody(BaseModel):
    """Plaintext credentials for a one-off provider call."""
    credentials: Dict[str, Any] = Field(default_factory=dict, description="Provider credentials")


class SendMessageBody(BaseModel):
    recipient: str = Field(..., description="Provider-specific recipient, e.g. an E.164 phone number")
    content: Any = Field(..., description="Text or a provider-specific message object")


class ProvisionWhatsAppBody(BaseModel):
    phone_number: str = Field(..., description="Phone number to pair; non-digits are ignored")
