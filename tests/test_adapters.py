"""
Provider adapters against mocked provider HTTP APIs (httpx.MockTransport).
"""
import json

import httpx
import pytest

from channel_hub.adapters.base import LifecycleHooks, MessageSender, QrProvider, StatusProbe
from channel_hub.adapters.evolution import EvolutionAdapter
from channel_hub.adapters.generic import GenericApiKeyAdapter
from channel_hub.adapters.meta_whatsapp import MetaWhatsAppAdapter
from channel_hub.adapters.openai import OpenAIAdapter
from channel_hub.adapters.registry import AdapterRegistry, build_default_registry
from channel_hub.core.errors import AdapterNotFound, CredentialsUnavailable, ProviderRejected, ProviderUnreachable
from channel_hub.core.models import ConnectionStatus

META_CREDS = {"phoneNumberId": "123", "accessToken": "tok"}
EVO_CREDS = {"baseUrl": "https://evo.example.com/", "apiKey": "evo-key", "instanceName": "org_abc_5511"}


def _mock(handler):
    return httpx.MockTransport(handler)


@pytest.mark.asyncio
async def test_meta_verify_success_returns_authoritative_metadata():
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/v19.0/123"
        assert request.headers["Authorization"] == "Bearer tok"
        assert "display_phone_number" in request.url.params["fields"]
        return httpx.Response(200, json={"display_phone_number": "+15551234567", "verified_name": "Acme", "quality_rating": "GREEN"})

    adapter = MetaWhatsAppAdapter(transport=_mock(handler))
    result = await adapter.verify_credentials(META_CREDS)
    assert result.is_valid
    assert result.metadata["display_phone_number"] == "+15551234567"
    assert "verified_name" in result.authoritative_keys


@pytest.mark.asyncio
async def test_meta_verify_expired_token():
    def handler(request):
        return httpx.Response(401, json={"error": {"message": "Error validating access token", "code": 190}})

    result = await MetaWhatsAppAdapter(transport=_mock(handler)).verify_credentials(META_CREDS)
    assert not result.is_valid
    assert result.expired
    assert "Error validating access token" in result.error


@pytest.mark.asyncio
async def test_meta_verify_network_error_is_not_raised():
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    result = await MetaWhatsAppAdapter(transport=_mock(handler)).verify_credentials(META_CREDS)
    assert not result.is_valid
    assert result.network_error


@pytest.mark.asyncio
async def test_meta_verify_missing_fields_makes_no_call():
    def handler(request):
        raise AssertionError("no request expected")

    result = await MetaWhatsAppAdapter(transport=_mock(handler)).verify_credentials({"phoneNumberId": "123"})
    assert not result.is_valid
    assert "accessToken" in result.error


@pytest.mark.asyncio
async def test_meta_send_message_and_rejection():
    def handler(request):
        body = json.loads(request.content)
        if body["to"] == "bad":
            return httpx.Response(400, json={"error": {"message": "Recipient not in allowed list", "code": 131030}})
        assert body["text"] == {"body": "hello"}
        return httpx.Response(200, json={"messages": [{"id": "wamid.1"}]})

    adapter = MetaWhatsAppAdapter(transport=_mock(handler))
    sent = await adapter.send_message(META_CREDS, "15550001111", "hello")
    assert sent.message_id == "wamid.1"

    with pytest.raises(ProviderRejected) as info:
        await adapter.send_message(META_CREDS, "bad", {"text": "hello"})
    assert "Recipient not in allowed list" in info.value.message
    assert not info.value.expired


@pytest.mark.asyncio
async def test_meta_send_decrypts_envelope(envelope):
    def handler(request):
        assert request.headers["Authorization"] == "Bearer tok"
        return httpx.Response(200, json={"messages": [{"id": "wamid.2"}]})

    adapter = MetaWhatsAppAdapter(transport=_mock(handler))
    sealed = envelope.encrypt_object(META_CREDS)
    with pytest.raises(CredentialsUnavailable):
        await adapter.send_message(sealed, "1555", "hi")

    adapter.bind_envelope(envelope)
    sent = await adapter.send_message(sealed, "1555", "hi")
    assert sent.message_id == "wamid.2"


@pytest.mark.asyncio
async def test_evolution_verify_maps_pairing_state():
    states = iter(["open", "close"])

    def handler(request):
        assert request.url.path == "/instance/connectionState/org_abc_5511"
        assert request.headers["apikey"] == "evo-key"
        return httpx.Response(200, json={"instance": {"state": next(states)}})

    adapter = EvolutionAdapter(transport=_mock(handler))
    paired = await adapter.verify_credentials(EVO_CREDS)
    assert paired.is_valid and paired.status_hint is None
    unpaired = await adapter.verify_credentials(EVO_CREDS)
    assert unpaired.is_valid and unpaired.status_hint == ConnectionStatus.CONNECTING


@pytest.mark.asyncio
async def test_evolution_status_probe():
    responses = iter(
        [
            httpx.Response(200, json={"instance": {"state": "open"}}),
            httpx.Response(200, json={"instance": {"state": "connecting"}}),
            httpx.Response(500, json={}),
        ]
    )
    adapter = EvolutionAdapter(transport=_mock(lambda request: next(responses)))
    assert (await adapter.check_connection_status(EVO_CREDS)).status == "active"
    pending = await adapter.check_connection_status(EVO_CREDS)
    assert pending.status == "inactive" and pending.message == "connecting"
    assert (await adapter.check_connection_status(EVO_CREDS)).status == "error"


@pytest.mark.asyncio
async def test_evolution_qr_none_when_already_paired():
    payloads = iter([{"base64": "data:image/png;base64,AAA", "code": "2@x"}, {"instance": {"state": "open"}}])
    adapter = EvolutionAdapter(transport=_mock(lambda request: httpx.Response(200, json=next(payloads))))
    qr = await adapter.get_qr_code(EVO_CREDS)
    assert qr is not None and qr.qr.startswith("data:image")
    assert await adapter.get_qr_code(EVO_CREDS) is None


@pytest.mark.asyncio
async def test_evolution_send_text():
    def handler(request):
        assert request.url.path == "/message/sendText/org_abc_5511"
        assert json.loads(request.content) == {"number": "5511999", "text": "hola", "delay": 1000}
        return httpx.Response(201, json={"key": {"id": "BAE5"}})

    sent = await EvolutionAdapter(transport=_mock(handler)).send_message(EVO_CREDS, "5511999", {"text": "hola"})
    assert sent.message_id == "BAE5"


@pytest.mark.asyncio
async def test_evolution_instance_management():
    calls = []

    def handler(request):
        calls.append((request.method, request.url.path))
        if request.url.path == "/instance/create":
            body = json.loads(request.content)
            assert body["integration"] == "WHATSAPP-BAILEYS"
            assert body["webhook"] == "https://hub.example.com/api/webhooks/whatsapp"
            return httpx.Response(201, json={"instance": {"instanceName": body["instanceName"], "status": "created"}, "hash": {"apikey": "inst-key"}, "qrcode": {"base64": "QR"}})
        if request.url.path == "/instance/fetchInstances":
            return httpx.Response(200, json=[{"instance": {"instanceName": "org_abc_1", "connectionStatus": "close"}}])
        if request.url.path.startswith("/instance/delete/"):
            return httpx.Response(200, json={"status": "SUCCESS"})
        return httpx.Response(404)

    adapter = EvolutionAdapter(gateway_url="https://gw.example.com", gateway_key="global", transport=_mock(handler))
    created = await adapter.create_instance("org_abc_1", token="t", webhook="https://hub.example.com/api/webhooks/whatsapp")
    assert created.token == "inst-key" and created.qr == "QR"

    info = await adapter.fetch_instance("org_abc_1")
    assert info.exists and info.state == "close"
    assert not (await adapter.fetch_instance("org_abc_2")).exists

    await adapter.on_disconnect("conn-1", {"baseUrl": "https://gw.example.com", "apiKey": "k", "instanceName": "org_abc_1"})
    assert ("DELETE", "/instance/delete/org_abc_1") in calls


@pytest.mark.asyncio
async def test_openai_verify_reports_provider_text():
    def handler(request):
        if request.headers["Authorization"] == "Bearer good":
            return httpx.Response(200, json={"data": [{"id": "gpt-4o"}, {"id": "o3"}]})
        return httpx.Response(401, json={"error": {"message": "Incorrect API key provided"}})

    adapter = OpenAIAdapter(transport=_mock(handler))
    ok_result = await adapter.verify_credentials({"apiKey": "good"})
    assert ok_result.is_valid and ok_result.metadata == {"model_count": 2}
    bad = await adapter.verify_credentials({"apiKey": "bad"})
    assert not bad.is_valid and "Incorrect API key provided" in bad.error


@pytest.mark.asyncio
async def test_generic_adapter_only_checks_shape():
    adapter = GenericApiKeyAdapter("sendgrid", min_length=10)
    assert not (await adapter.verify_credentials({"apiKey": "short"})).is_valid
    result = await adapter.verify_credentials({"apiKey": "SG.0123456789"})
    assert result.is_valid
    assert result.metadata == {"verification": "shape_only"}
    assert adapter.capabilities() == []


def test_capabilities_are_explicit_interfaces():
    evo = EvolutionAdapter()
    assert isinstance(evo, (StatusProbe, QrProvider, MessageSender, LifecycleHooks))
    assert evo.capabilities() == ["status", "qr", "send", "lifecycle"]
    assert MetaWhatsAppAdapter().capabilities() == ["status", "send", "lifecycle"]
    assert OpenAIAdapter().capabilities() == ["status"]


def test_registry_resolves_legacy_aliases_and_absence(envelope):
    registry = AdapterRegistry(envelope=envelope)
    registry.register(EvolutionAdapter())
    assert registry.get_adapter("evolution") is registry.get_adapter("evolution_api")
    assert registry.canonical_key("whatsapp") == "meta_whatsapp"
    assert registry.legacy_keys_for("evolution_api") == ["evolution"]
    assert registry.get_adapter("aws_s3") is None
    with pytest.raises(AdapterNotFound):
        registry.require_adapter("aws_s3")


def test_default_registry_is_a_fresh_object_each_time(settings, envelope):
    a = build_default_registry(settings, envelope=envelope)
    b = build_default_registry(settings, envelope=envelope)
    assert a is not b
    assert {"meta_whatsapp", "evolution_api", "openai"} <= set(a.keys())


@pytest.mark.asyncio
async def test_timeout_bounds_adapter_calls(settings):
    def handler(request):
        raise httpx.ReadTimeout("slow provider", request=request)

    result = await OpenAIAdapter(timeout=0.1, transport=_mock(handler)).verify_credentials({"apiKey": "x"})
    assert result.network_error


@pytest.mark.asyncio
async def test_unreachable_gateway_on_fetch_raises():
    def handler(request):
        raise httpx.ConnectError("down", request=request)

    adapter = EvolutionAdapter(gateway_url="https://gw", gateway_key="k", transport=_mock(handler))
    with pytest.raises(ProviderUnreachable):
        await adapter.fetch_instance("org_x_1")


@pytest.mark.asyncio
async def test_non_json_success_bodies_are_reported_not_raised():
    html = _mock(lambda request: httpx.Response(200, text="<html>maintenance</html>"))
    meta = await MetaWhatsAppAdapter(transport=html).verify_credentials(META_CREDS)
    assert not meta.is_valid and "unexpected response" in meta.error
    assert (await MetaWhatsAppAdapter(transport=html).check_connection_status(META_CREDS)).status == "error"

    openai = await OpenAIAdapter(transport=html).verify_credentials({"apiKey": "good"})
    assert not openai.is_valid

    listing = _mock(lambda request: httpx.Response(200, json=[{"instance": {"state": "open"}}]))
    status = await EvolutionAdapter(transport=listing).check_connection_status(EVO_CREDS)
    assert status.status == "error"
    assert await EvolutionAdapter(transport=listing).get_qr_code(EVO_CREDS) is None
