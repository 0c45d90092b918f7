"""
Credential envelope: round trip, tamper detection, malformed input, key derivation modes.
"""
import pytest

from channel_hub.core.envelope import (
    ENCRYPTED_MARKER,
    CredentialEnvelope,
    derive_key,
    is_encrypted,
)
from channel_hub.core.errors import AuthenticationFailed, EncryptionError, MalformedEnvelope


@pytest.mark.parametrize(
    "creds",
    [
        {"phoneNumberId": "123", "accessToken": "tok"},
        {"apiKey": "sk-ñandú-✓", "nested": {"a": [1, 2, None], "b": True}},
        {},
    ],
)
def test_object_round_trip(envelope, creds):
    sealed = envelope.encrypt_object(creds)
    assert set(sealed) == {ENCRYPTED_MARKER}
    assert envelope.decrypt_object(sealed) == creds


def test_envelope_format_and_fresh_iv(envelope):
    a = envelope.encrypt(b"same plaintext")
    b = envelope.encrypt(b"same plaintext")
    assert a != b
    iv, tag, ciphertext = a.split(":")
    assert len(bytes.fromhex(iv)) == 12
    assert len(bytes.fromhex(tag)) == 16
    assert len(bytes.fromhex(ciphertext)) == len(b"same plaintext")


def test_plaintext_is_not_visible_in_envelope(envelope):
    sealed = envelope.encrypt_object({"accessToken": "super-secret-token"})
    assert "super-secret-token" not in sealed[ENCRYPTED_MARKER]


def test_any_flipped_byte_fails_authentication(envelope):
    text = envelope.encrypt(b'{"accessToken":"tok"}')
    iv, tag, ct = (bytearray(bytes.fromhex(p)) for p in text.split(":"))
    for part_index, part in enumerate((iv, tag, ct)):
        for i in range(len(part)):
            parts = [bytearray(iv), bytearray(tag), bytearray(ct)]
            parts[part_index][i] ^= 0x01
            tampered = ":".join(p.hex() for p in parts)
            with pytest.raises(AuthenticationFailed):
                envelope.decrypt(tampered)


def test_wrong_key_fails_authentication(envelope):
    other = CredentialEnvelope.from_secret("a-different-secret", "hkdf")
    with pytest.raises(AuthenticationFailed):
        other.decrypt(envelope.encrypt(b"payload"))


@pytest.mark.parametrize("bad", ["", "abc", "aa:bb", "aa:bb:cc:dd", "zz:zz:zz"])
def test_malformed_envelopes(envelope, bad):
    with pytest.raises(MalformedEnvelope):
        envelope.decrypt(bad)


def test_wrong_iv_length_is_malformed(envelope):
    _, tag, ct = envelope.encrypt(b"x").split(":")
    with pytest.raises(MalformedEnvelope):
        envelope.decrypt(":".join(["00" * 8, tag, ct]))


def test_decrypt_object_passes_plaintext_rows_through(envelope):
    legacy_row = {"apiKey": "plain"}
    assert envelope.decrypt_object(legacy_row) is legacy_row
    assert not is_encrypted(legacy_row)


def test_crypto_errors_share_a_base_class():
    assert issubclass(MalformedEnvelope, EncryptionError)
    assert issubclass(AuthenticationFailed, EncryptionError)


def test_legacy_derivation_pads_and_truncates():
    assert derive_key("abc", "legacy") == b"abc" + b"\0" * 29
    long_secret = "k" * 40
    assert derive_key(long_secret, "legacy") == b"k" * 32


def test_legacy_and_hkdf_keys_differ_and_are_incompatible():
    assert derive_key("secret", "legacy") != derive_key("secret", "hkdf")
    legacy = CredentialEnvelope.from_secret("secret", "legacy")
    hardened = CredentialEnvelope.from_secret("secret", "hkdf")
    with pytest.raises(AuthenticationFailed):
        hardened.decrypt(legacy.encrypt(b"row"))


def test_missing_secret_and_unknown_mode_raise():
    with pytest.raises(EncryptionError):
        derive_key("", "legacy")
    with pytest.raises(EncryptionError):
        derive_key("secret", "rot13")


def test_non_serializable_credentials_raise(envelope):
    with pytest.raises(EncryptionError):
        envelope.encrypt_object({"when": object()})
