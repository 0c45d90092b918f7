# PUBLIC_INTERFACE
"""
Credential envelope: AES-256-GCM encryption of credential payloads before persistence.

Envelope text format is ``hex(iv):hex(auth_tag):hex(ciphertext)``. A fresh 12-byte IV is
drawn for every call. ``encrypt_object`` wraps the JSON form of a credential dict as
``{"_encrypted": <envelope>}``; ``decrypt_object`` passes values without that marker through
unchanged so plaintext rows written before encryption was introduced still load.

Key derivation has two modes:
- ``legacy``: the configured secret is padded with NUL bytes / truncated to 32 bytes. This is
  compatible with existing rows but is not a real KDF.
- ``hkdf``: HKDF-SHA256 over the secret. Rows written in one mode cannot be read in the other.
"""
from __future__ import annotations

import json
import secrets
from typing import Any, Dict

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.hkdf import HKDF

from .errors import AuthenticationFailed, EncryptionError, MalformedEnvelope
from .logging import get_logger
from .settings import Settings

logger = get_logger(__name__)

KEY_LENGTH = 32
IV_LENGTH = 12
TAG_LENGTH = 16
DELIMITER = ":"
ENCRYPTED_MARKER = "_encrypted"
KDF_MODES = ("legacy", "hkdf")


def derive_key(secret: str, mode: str = "legacy") -> bytes:
    """Turn the configured secret into a 32-byte AES key."""
    if not secret:
        raise EncryptionError("ENCRYPTION_KEY is not configured")
    raw = secret.encode("utf-8")
    if mode == "legacy":
        return (raw + b"\0" * KEY_LENGTH)[:KEY_LENGTH]
    if mode == "hkdf":
        kdf = HKDF(
            algorithm=hashes.SHA256(),
            length=KEY_LENGTH,
            salt=None,
            info=b"channel-hub-credential-envelope",
        )
        return kdf.derive(raw)
    raise EncryptionError(f"Unknown key derivation mode '{mode}'")


# PUBLIC_INTERFACE
class CredentialEnvelope:
    """Process-wide, read-only AES-GCM envelope."""

    def __init__(self, key: bytes, kdf: str = "legacy"):
        if len(key) != KEY_LENGTH:
            raise EncryptionError("Envelope key must be 32 bytes")
        self._aead = AESGCM(key)
        self.kdf = kdf

    # PUBLIC_INTERFACE
    @classmethod
    def from_secret(cls, secret: str, kdf: str = "legacy") -> "CredentialEnvelope":
        """Build an envelope from a configured secret."""
        key = derive_key(secret, kdf)
        if kdf == "legacy":
            logger.warning("Credential envelope uses legacy pad/truncate key derivation; set ENCRYPTION_KDF=hkdf to harden")
        return cls(key, kdf=kdf)

    # PUBLIC_INTERFACE
    @classmethod
    def from_settings(cls, settings: Settings) -> "CredentialEnvelope":
        """Build an envelope from the security settings group."""
        return cls.from_secret(settings.security.ENCRYPTION_KEY, settings.security.ENCRYPTION_KDF)

    # PUBLIC_INTERFACE
    def encrypt(self, plaintext: bytes) -> str:
        """Encrypt bytes; returns iv:tag:ciphertext as hex text."""
        iv = secrets.token_bytes(IV_LENGTH)
        try:
            sealed = self._aead.encrypt(iv, plaintext, None)
        except (TypeError, ValueError, OverflowError) as exc:
            raise EncryptionError("Encryption failed") from exc
        ciphertext, tag = sealed[:-TAG_LENGTH], sealed[-TAG_LENGTH:]
        return DELIMITER.join((iv.hex(), tag.hex(), ciphertext.hex()))

    # PUBLIC_INTERFACE
    def decrypt(self, envelope: str) -> bytes:
        """Verify and decrypt an envelope produced by encrypt()."""
        if not isinstance(envelope, str):
            raise MalformedEnvelope("Envelope must be text")
        parts = envelope.split(DELIMITER)
        if len(parts) != 3:
            raise MalformedEnvelope(f"Envelope must have 3 parts, got {len(parts)}")
        try:
            iv, tag, ciphertext = (bytes.fromhex(p) for p in parts)
        except ValueError as exc:
            raise MalformedEnvelope("Envelope parts are not hex encoded") from exc
        if len(iv) != IV_LENGTH or len(tag) != TAG_LENGTH:
            raise MalformedEnvelope("Envelope IV or tag has the wrong length")
        try:
            return self._aead.decrypt(iv, ciphertext + tag, None)
        except InvalidTag as exc:
            raise AuthenticationFailed("Envelope failed authentication") from exc

    # PUBLIC_INTERFACE
    def encrypt_object(self, obj: Dict[str, Any]) -> Dict[str, str]:
        """JSON-serialize and encrypt a credential object."""
        try:
            payload = json.dumps(obj, separators=(",", ":"), sort_keys=True).encode("utf-8")
        except (TypeError, ValueError) as exc:
            raise EncryptionError("Credentials are not JSON serializable") from exc
        return {ENCRYPTED_MARKER: self.encrypt(payload)}

    # PUBLIC_INTERFACE
    def decrypt_object(self, value: Any) -> Any:
        """Inverse of encrypt_object; values without the marker are returned unchanged."""
        if not is_encrypted(value):
            return value
        raw = self.decrypt(value[ENCRYPTED_MARKER])
        try:
            return json.loads(raw.decode("utf-8"))
        except (UnicodeDecodeError, ValueError) as exc:
            raise MalformedEnvelope("Decrypted credentials are not valid JSON") from exc


def is_encrypted(value: Any) -> bool:
    return isinstance(value, dict) and isinstance(value.get(ENCRYPTED_MARKER), str)
