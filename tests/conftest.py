import os

os.environ.setdefault("ENCRYPTION_KEY", "test-encryption-secret")
os.environ.setdefault("LOG_FORMAT", "plain")

from typing import Any, Dict, List, Optional

import pytest

from channel_hub.adapters.base import LifecycleHooks, ProviderAdapter, StatusProbe
from channel_hub.adapters.registry import AdapterRegistry
from channel_hub.core.envelope import CredentialEnvelope
from channel_hub.core.models import StatusResult, VerificationResult
from channel_hub.core.settings import Settings
from channel_hub.repositories.connections_repo import ConnectionsRepository
from channel_hub.repositories.store import InMemoryConnectionStore
from channel_hub.services.connection_service import ConnectionService


class FakeAdapter(ProviderAdapter):
    """Adapter returning a scripted verification result and recording what it was given."""

    def __init__(self, key: str, result: Optional[VerificationResult] = None):
        super().__init__()
        self.key = key
        self.result = result or VerificationResult(is_valid=True)
        self.seen: List[Dict[str, Any]] = []

    async def verify_credentials(self, credentials):
        self.seen.append(dict(credentials))
        return self.result


class FakeProbeAdapter(FakeAdapter, StatusProbe):
    def __init__(self, key: str, status: StatusResult, **kwargs):
        super().__init__(key, **kwargs)
        self.status = status
        self.probed: List[Dict[str, Any]] = []

    async def check_connection_status(self, credentials):
        self.probed.append(dict(credentials))
        return self.status


class FakeHookAdapter(FakeAdapter, LifecycleHooks):
    def __init__(self, key: str, fail: bool = False, **kwargs):
        super().__init__(key, **kwargs)
        self.fail = fail
        self.events: List[str] = []

    async def on_connect(self, connection_id, credentials):
        self.events.append(f"connect:{connection_id}")
        if self.fail:
            raise RuntimeError("webhook registration exploded")

    async def on_disconnect(self, connection_id, credentials):
        self.events.append(f"disconnect:{connection_id}")
        if self.fail:
            raise RuntimeError("cleanup exploded")


@pytest.fixture
def settings() -> Settings:
    s = Settings.from_env()
    s.adapters.ADAPTER_TIMEOUT_SECONDS = 0.5
    return s


@pytest.fixture
def envelope() -> CredentialEnvelope:
    return CredentialEnvelope.from_secret("test-encryption-secret", "hkdf")


@pytest.fixture
def registry(envelope) -> AdapterRegistry:
    reg = AdapterRegistry(envelope=envelope)
    reg.register(
        FakeAdapter(
            "meta_whatsapp",
            VerificationResult(
                is_valid=True,
                metadata={"display_phone_number": "+15551234567", "verified_name": "Acme"},
                authoritative_keys=["display_phone_number", "verified_name"],
            ),
        )
    )
    reg.register(FakeAdapter("evolution_api"))
    return reg


@pytest.fixture
def store() -> InMemoryConnectionStore:
    return InMemoryConnectionStore()


@pytest.fixture
def repository(store, registry, envelope) -> ConnectionsRepository:
    return ConnectionsRepository(store, registry, envelope)


@pytest.fixture
def service(repository, registry, settings) -> ConnectionService:
    return ConnectionService(repository, registry, settings)
