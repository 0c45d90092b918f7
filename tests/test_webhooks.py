from channel_hub.services.webhooks import (
    callback_url,
    get_webhook_descriptor,
    is_local_url,
    verify_webhook_challenge,
)


def test_evolution_descriptor_has_no_verify_token():
    d = get_webhook_descriptor("evolution_api", "https://hub.example.com/", "secret")
    assert d.callback_url == "https://hub.example.com/api/webhooks/whatsapp"
    assert d.verify_token is None
    assert d.is_local is False and d.warning is None


def test_meta_descriptor_includes_verify_token():
    d = get_webhook_descriptor("meta_whatsapp", "https://hub.example.com", "secret")
    assert d.callback_url == "https://hub.example.com/api/webhooks/messaging?channel=whatsapp"
    assert d.verify_token == "secret"
    assert d.documentation_url


def test_missing_base_url_falls_back_to_localhost_with_warning():
    d = get_webhook_descriptor("meta_whatsapp", None, "secret")
    assert d.callback_url.startswith("http://localhost:8000/")
    assert d.is_local
    assert "APP_BASE_URL" in d.warning


def test_descriptor_is_a_pure_function():
    a = get_webhook_descriptor("evolution_api", "https://x.example.com", "t")
    b = get_webhook_descriptor("evolution_api", "https://x.example.com", "t")
    assert a == b


def test_local_url_detection():
    assert is_local_url("http://127.0.0.1:3001")
    assert is_local_url("http://dev.localhost")
    assert not is_local_url("https://api.example.com")


def test_callback_url_strips_trailing_slash():
    assert callback_url("evolution_api", "https://a.example.com///") == "https://a.example.com/api/webhooks/whatsapp"


def test_challenge_echo_and_rejections():
    assert verify_webhook_challenge("subscribe", "secret", "12345", "secret") == "12345"
    assert verify_webhook_challenge("subscribe", "wrong", "12345", "secret") is None
    assert verify_webhook_challenge("unsubscribe", "secret", "12345", "secret") is None
    assert verify_webhook_challenge("subscribe", None, "12345", "secret") is None
    assert verify_webhook_challenge("subscribe", "secret", None, "secret") is None
