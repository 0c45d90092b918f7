import pytest
from fastapi.testclient import TestClient

from channel_hub.api.main import create_app
from channel_hub.core.envelope import ENCRYPTED_MARKER
from channel_hub.core.models import ConnectionStatus, VerificationResult

from .conftest import FakeAdapter

ADMIN = {"X-Tenant-ID": "org-1", "X-Org-Role": "admin"}
MEMBER = {"X-Tenant-ID": "org-1", "X-Org-Role": "member"}
META = {"provider_key": "meta_whatsapp", "credentials": {"phoneNumberId": "123", "accessToken": "tok"}}


@pytest.fixture
def client(service, settings):
    return TestClient(create_app(service=service, settings=settings))


def test_health(client):
    res = client.get("/")
    assert res.status_code == 200
    body = res.json()
    assert body["status"] == "ok"
    assert body["data"]["message"] == "Healthy"


def test_missing_tenant_is_unauthorized(client):
    res = client.get("/connections")
    assert res.status_code == 401
    assert res.json()["code"] == "UNAUTHORIZED"


def test_member_cannot_mutate(client):
    res = client.post("/connections", json=META, headers=MEMBER)
    assert res.status_code == 403
    assert res.json()["code"] == "FORBIDDEN"


def test_create_list_and_views_hide_credentials(client, store):
    res = client.post("/connections", json=META, headers=ADMIN)
    assert res.status_code == 200
    created = res.json()["data"]
    assert created["status"] == ConnectionStatus.ACTIVE.value
    assert "credentials" not in created
    assert ENCRYPTED_MARKER in store.get("org-1", created["id"]).credentials

    listed = client.get("/connections", headers=MEMBER).json()["data"]
    assert [c["id"] for c in listed] == [created["id"]]
    assert "tok" not in str(listed)

    other_tenant = client.get(f"/connections/{created['id']}", headers={"X-Tenant-ID": "org-2"})
    assert other_tenant.status_code == 404
    assert other_tenant.json()["code"] == "NOT_FOUND"


def test_verification_failure_payload(client, registry):
    registry.register(FakeAdapter("meta_whatsapp", VerificationResult(is_valid=False, error="Invalid OAuth access token")))
    res = client.post("/connections", json=META, headers=ADMIN)
    assert res.status_code == 400
    body = res.json()
    assert body["status"] == "error"
    assert body["code"] == "VERIFICATION_FAILED"
    assert "Invalid OAuth access token" in body["message"]


def test_unknown_adapter_payload(client):
    res = client.post(
        "/connections",
        json={"provider_key": "aws_s3", "credentials": {"accessKeyId": "a", "secretAccessKey": "b", "bucket": "c", "region": "d"}},
        headers=ADMIN,
    )
    assert res.status_code == 404
    assert res.json()["code"] == "ADAPTER_NOT_FOUND"


def test_missing_fields_payload_lists_them(client):
    res = client.post("/connections", json={"provider_key": "evolution_api", "credentials": {"apiKey": "k"}}, headers=ADMIN)
    assert res.status_code == 422
    assert res.json()["details"]["fields"] == ["baseUrl", "instanceName"]


def test_status_delete_and_primary(client):
    created = client.post("/connections", json=META, headers=ADMIN).json()["data"]
    status = client.get(f"/connections/{created['id']}/status", headers=MEMBER).json()["data"]
    assert status["status"] == "unknown"

    primary = client.post(f"/connections/{created['id']}/primary", headers=ADMIN).json()["data"]
    assert primary["is_primary"] is True

    deleted = client.delete(f"/connections/{created['id']}", headers=ADMIN).json()["data"]
    assert deleted["status"] == "deleted" and deleted["is_primary"] is False
    assert client.get("/connections", headers=ADMIN).json()["data"] == []
    assert client.post(f"/connections/{created['id']}/primary", headers=ADMIN).status_code == 422


def test_webhook_descriptor_route(client):
    data = client.get("/providers/meta_whatsapp/webhook", headers=MEMBER).json()["data"]
    assert data["callback_url"].endswith("/api/webhooks/messaging?channel=whatsapp")
    assert data["verify_token"]


def test_webhook_challenge(client, settings):
    token = settings.webhooks.WHATSAPP_VERIFY_TOKEN
    ok_res = client.get(
        "/webhooks/meta_whatsapp",
        params={"hub.mode": "subscribe", "hub.verify_token": token, "hub.challenge": "987"},
    )
    assert ok_res.status_code == 200
    assert ok_res.text == "987"

    bad = client.get(
        "/webhooks/meta_whatsapp",
        params={"hub.mode": "subscribe", "hub.verify_token": "nope", "hub.challenge": "987"},
    )
    assert bad.status_code == 403


def test_providers_listing(client):
    items = client.get("/providers", headers=MEMBER).json()["data"]
    by_key = {p["key"]: p for p in items}
    assert by_key["meta_whatsapp"]["has_adapter"] is True
    assert by_key["aws_s3"]["has_adapter"] is False
