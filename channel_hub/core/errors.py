"""
Error taxonomy for connection management.

Every error carries a stable ``code`` and the HTTP status the API renders it with.
Crypto-layer errors are logged server-side and reach callers only as
``CredentialsUnavailable``.
"""
from __future__ import annotations

from typing import Any, Dict, List, Optional

from fastapi import status


class ErrorCode:
    VALIDATION = "VALIDATION_ERROR"
    ADAPTER_NOT_FOUND = "ADAPTER_NOT_FOUND"
    VERIFICATION_FAILED = "VERIFICATION_FAILED"
    PROVIDER_UNREACHABLE = "PROVIDER_UNREACHABLE"
    PROVIDER_REJECTED = "PROVIDER_REJECTED"
    ENCRYPTION = "ENCRYPTION_ERROR"
    CREDENTIALS_UNAVAILABLE = "CREDENTIALS_UNAVAILABLE"
    INVARIANT_VIOLATION = "INVARIANT_VIOLATION"
    NOT_FOUND = "NOT_FOUND"
    UNAUTHORIZED = "UNAUTHORIZED"
    FORBIDDEN = "FORBIDDEN"


class ChannelHubError(Exception):
    """Base class for all handled errors."""

    code: str = "INTERNAL"
    http_status: int = status.HTTP_500_INTERNAL_SERVER_ERROR

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class ValidationError(ChannelHubError):
    code = ErrorCode.VALIDATION
    http_status = status.HTTP_422_UNPROCESSABLE_ENTITY

    def __init__(self, message: str, fields: Optional[List[str]] = None):
        super().__init__(message, details={"fields": list(fields or [])})
        self.fields = list(fields or [])


class AdapterNotFound(ChannelHubError):
    code = ErrorCode.ADAPTER_NOT_FOUND
    http_status = status.HTTP_404_NOT_FOUND

    def __init__(self, provider_key: str):
        super().__init__(f"Provider '{provider_key}' not found", details={"provider_key": provider_key})
        self.provider_key = provider_key


class VerificationFailed(ChannelHubError):
    """The provider rejected the credentials. The message is the adapter's own text."""

    code = ErrorCode.VERIFICATION_FAILED
    http_status = status.HTTP_400_BAD_REQUEST

    def __init__(self, message: str, expired: bool = False):
        super().__init__(message, details={"expired": expired})
        self.expired = expired


class ProviderUnreachable(ChannelHubError):
    """The provider could not be reached or did not answer in time."""

    code = ErrorCode.PROVIDER_UNREACHABLE
    http_status = status.HTTP_502_BAD_GATEWAY


class ProviderRejected(ChannelHubError):
    """The provider answered but refused the operation."""

    code = ErrorCode.PROVIDER_REJECTED
    http_status = status.HTTP_502_BAD_GATEWAY

    def __init__(self, message: str, provider_message: Optional[str] = None, expired: bool = False):
        super().__init__(message, details={"provider_message": provider_message or "", "expired": expired})
        self.provider_message = provider_message
        self.expired = expired


class EncryptionError(ChannelHubError):
    code = ErrorCode.ENCRYPTION
    http_status = status.HTTP_500_INTERNAL_SERVER_ERROR


class MalformedEnvelope(EncryptionError):
    pass


class AuthenticationFailed(EncryptionError):
    pass


class CredentialsUnavailable(ChannelHubError):
    code = ErrorCode.CREDENTIALS_UNAVAILABLE
    http_status = status.HTTP_409_CONFLICT

    def __init__(self, message: str = "Credentials unavailable. Reconnect the integration."):
        super().__init__(message)


class InvariantViolation(ChannelHubError):
    code = ErrorCode.INVARIANT_VIOLATION
    http_status = status.HTTP_409_CONFLICT


class ConnectionNotFound(ChannelHubError):
    code = ErrorCode.NOT_FOUND
    http_status = status.HTTP_404_NOT_FOUND

    def __init__(self, connection_id: str):
        super().__init__(f"Connection '{connection_id}' not found")
        self.connection_id = connection_id


class Unauthorized(ChannelHubError):
    code = ErrorCode.UNAUTHORIZED
    http_status = status.HTTP_401_UNAUTHORIZED


class Forbidden(Unauthorized):
    code = ErrorCode.FORBIDDEN
    http_status = status.HTTP_403_FORBIDDEN
