from __future__ import annotations

import json
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

import httpx

from channel_hub.core.envelope import CredentialEnvelope, is_encrypted
from channel_hub.core.errors import CredentialsUnavailable, EncryptionError
from channel_hub.core.logging import get_logger
from channel_hub.core.models import QrCode, SendResult, StatusResult, VerificationResult

logger = get_logger(__name__)

Credentials = Dict[str, Any]


# PUBLIC_INTERFACE
class ProviderAdapter(ABC):
    """Abstract base class for all provider adapters.

    Adapters only talk to their provider and return data; they never write to storage.
    Expected failures (bad key, network error) come back as an invalid VerificationResult.
    """

    key: str
    name: str = ""

    def __init__(self, timeout: float = 10.0, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.timeout = timeout
        self._transport = transport
        self._envelope: Optional[CredentialEnvelope] = None

    # PUBLIC_INTERFACE
    @abstractmethod
    async def verify_credentials(self, credentials: Credentials) -> VerificationResult:
        """Make a live call confirming the credentials work."""
        raise NotImplementedError

    def bind_envelope(self, envelope: Optional[CredentialEnvelope]) -> None:
        self._envelope = envelope

    # PUBLIC_INTERFACE
    def open_credentials(self, credentials: Credentials) -> Credentials:
        """Return plaintext credentials, decrypting an envelope if one is passed."""
        if not is_encrypted(credentials):
            return credentials
        if self._envelope is None:
            raise CredentialsUnavailable()
        try:
            return self._envelope.decrypt_object(credentials)
        except EncryptionError as exc:
            logger.error("Adapter could not open credential envelope", extra={"provider_key": self.key, "error": type(exc).__name__})
            raise CredentialsUnavailable() from exc

    # PUBLIC_INTERFACE
    def capabilities(self) -> List[str]:
        """Names of the optional capabilities this adapter implements."""
        caps = []
        if isinstance(self, StatusProbe):
            caps.append("status")
        if isinstance(self, QrProvider):
            caps.append("qr")
        if isinstance(self, MessageSender):
            caps.append("send")
        if isinstance(self, LifecycleHooks):
            caps.append("lifecycle")
        return caps

    def _client(self, **kwargs: Any) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.timeout, transport=self._transport, **kwargs)


# PUBLIC_INTERFACE
class StatusProbe(ABC):
    """Cheap, side-effect free liveness probe."""

    @abstractmethod
    async def check_connection_status(self, credentials: Credentials) -> StatusResult:
        raise NotImplementedError


# PUBLIC_INTERFACE
class QrProvider(ABC):
    """Pairing-code providers. None means 'nothing to pair', not an error."""

    @abstractmethod
    async def get_qr_code(self, credentials: Credentials) -> Optional[QrCode]:
        raise NotImplementedError


# PUBLIC_INTERFACE
class MessageSender(ABC):
    """Outbound dispatch. Raises ProviderRejected / ProviderUnreachable on failure."""

    @abstractmethod
    async def send_message(self, credentials: Credentials, recipient: str, content: Any) -> SendResult:
        raise NotImplementedError


# PUBLIC_INTERFACE
class LifecycleHooks(ABC):
    """Best-effort side effects around insert and delete."""

    @abstractmethod
    async def on_connect(self, connection_id: str, credentials: Credentials) -> None:
        raise NotImplementedError

    @abstractmethod
    async def on_disconnect(self, connection_id: str, credentials: Credentials) -> None:
        raise NotImplementedError


def missing_fields(credentials: Credentials, fields: List[str]) -> List[str]:
    return [f for f in fields if not credentials.get(f)]


def provider_error_text(response: httpx.Response) -> str:
    """Pull the provider's own error message out of a failed response."""
    try:
        data = response.json()
    except ValueError:
        return response.text or response.reason_phrase
    if isinstance(data, dict):
        err = data.get("error")
        if isinstance(err, dict) and err.get("message"):
            return str(err["message"])
        if isinstance(err, str):
            return err
        for key in ("message", "response"):
            if data.get(key):
                return str(data[key])
    return response.text or response.reason_phrase


def json_object(response: httpx.Response) -> Optional[Dict[str, Any]]:
    """Body of a successful response when it is a JSON object, else None."""
    try:
        data = response.json()
    except ValueError:
        return None
    return data if isinstance(data, dict) else None


def message_text(content: Any) -> str:
    if isinstance(content, str):
        return content
    if isinstance(content, dict) and content.get("text"):
        return str(content["text"])
    return json.dumps(content)
