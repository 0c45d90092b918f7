# PUBLIC_INTERFACE
"""
Connection repository: the only mutator of connection rows.

Responsibilities on top of the raw store:
- tenant guard on every row read back from storage
- at most one primary connection per (organization, provider key)
- legacy provider keys migrated to the canonical key when a row is written
- protected fields stripped from update payloads
- credentials encrypted before the write and decrypted only for adapter calls
"""
from __future__ import annotations

import threading
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional

from channel_hub.adapters.catalog import ProviderCatalog
from channel_hub.adapters.registry import AdapterRegistry
from channel_hub.core.envelope import CredentialEnvelope
from channel_hub.core.errors import (
    ConnectionNotFound,
    CredentialsUnavailable,
    EncryptionError,
    InvariantViolation,
    ValidationError,
)
from channel_hub.core.logging import get_logger
from channel_hub.core.models import Connection, ConnectionStatus
from .store import ConnectionStore

logger = get_logger(__name__)

PROTECTED_FIELDS = {"id", "organization_id", "created_at", "provider_key"}

# Writers to one (organization, provider) share a stripe; the pool size is fixed
LOCK_STRIPES = 64


# PUBLIC_INTERFACE
def strip_protected(partial: Dict[str, Any], allow_provider_key: bool = False) -> Dict[str, Any]:
    """Drop immutable fields from an update payload."""
    blocked = PROTECTED_FIELDS - ({"provider_key"} if allow_provider_key else set())
    return {k: v for k, v in partial.items() if k not in blocked}


# PUBLIC_INTERFACE
def merge_metadata(
    caller: Optional[Dict[str, Any]],
    adapter: Optional[Dict[str, Any]],
    authoritative_keys: Iterable[str] = (),
    stored: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    """Merge freshly reported adapter facts over stored metadata.

    ``caller`` holds only what the current request supplies. Those values win over the
    adapter's, unless the key is authoritative or the caller value is empty. Stored
    metadata is the base and never outranks the adapter.
    """
    adapter = adapter or {}
    merged = {**(stored or {}), **adapter}
    replace = set(authoritative_keys)
    for key, value in (caller or {}).items():
        if key in adapter and (key in replace or value in (None, "")):
            continue
        merged[key] = value
    return merged


def _storable(values: Dict[str, Any]) -> Dict[str, Any]:
    return {k: (v.value if isinstance(v, Enum) else v) for k, v in values.items()}


# PUBLIC_INTERFACE
class ConnectionsRepository:
    """Tenant-scoped CRUD over connections enforcing the write-path invariants."""

    def __init__(
        self,
        store: ConnectionStore,
        registry: AdapterRegistry,
        envelope: CredentialEnvelope,
        catalog: Optional[ProviderCatalog] = None,
    ):
        self.store = store
        self.registry = registry
        self.envelope = envelope
        self.catalog = catalog or ProviderCatalog()
        self._locks: List[threading.Lock] = [threading.Lock() for _ in range(LOCK_STRIPES)]

    def _lock_for(self, organization_id: str, provider_key: str) -> threading.Lock:
        return self._locks[hash((organization_id, provider_key)) % LOCK_STRIPES]

    @staticmethod
    def _guard(organization_id: str, connection: Connection) -> Connection:
        if connection.organization_id != organization_id:
            logger.error(
                "Store returned a row of another tenant",
                extra={"connection_id": connection.id},
            )
            raise InvariantViolation("Tenant isolation violated")
        return connection

    def _require_org(self, organization_id: str) -> None:
        if not organization_id:
            raise ValidationError("organization_id is required", fields=["organization_id"])

    def provider_keys(self, provider_key: str) -> List[str]:
        """Canonical key followed by its legacy aliases."""
        canonical = self.registry.canonical_key(provider_key)
        return [canonical, *self.registry.legacy_keys_for(canonical)]

    # PUBLIC_INTERFACE
    def validate_required(self, provider_key: str, credentials: Dict[str, Any], config: Optional[Dict[str, Any]] = None) -> None:
        """Reject with field-level detail when the provider's required fields are absent."""
        required = self.catalog.required_fields(self.registry.canonical_key(provider_key))
        values = {**(config or {}), **credentials}
        missing = [f for f in required if values.get(f) in (None, "")]
        if missing:
            raise ValidationError(f"Missing required fields: {', '.join(missing)}", fields=missing)

    # PUBLIC_INTERFACE
    def get(self, organization_id: str, connection_id: str) -> Optional[Connection]:
        self._require_org(organization_id)
        conn = self.store.get(organization_id, connection_id)
        return self._guard(organization_id, conn) if conn else None

    # PUBLIC_INTERFACE
    def require(self, organization_id: str, connection_id: str) -> Connection:
        conn = self.get(organization_id, connection_id)
        if conn is None:
            raise ConnectionNotFound(connection_id)
        return conn

    # PUBLIC_INTERFACE
    def list(self, organization_id: str, include_deleted: bool = False) -> List[Connection]:
        self._require_org(organization_id)
        return [self._guard(organization_id, c) for c in self.store.list_for_tenant(organization_id, include_deleted)]

    # PUBLIC_INTERFACE
    def find_by_provider(self, organization_id: str, provider_key: str) -> List[Connection]:
        """Rows stored under the canonical key or any legacy alias of it."""
        self._require_org(organization_id)
        rows = self.store.find_by_tenant_and_key(organization_id, self.provider_keys(provider_key))
        return [self._guard(organization_id, c) for c in rows]

    # PUBLIC_INTERFACE
    def find_install_target(self, organization_id: str, provider_key: str) -> Optional[Connection]:
        """The live row an install should update: canonical key first, then legacy rows.

        Deleted rows are never reused; installing again after a delete creates a new row.
        """
        canonical = self.registry.canonical_key(provider_key)
        rows = [r for r in self.find_by_provider(organization_id, canonical) if r.status != ConnectionStatus.DELETED]
        for row in rows:
            if row.provider_key == canonical:
                return row
        return rows[0] if rows else None

    # PUBLIC_INTERFACE
    def save(
        self,
        organization_id: str,
        provider_key: str,
        values: Dict[str, Any],
        credentials: Optional[Dict[str, Any]] = None,
        existing: Optional[Connection] = None,
    ) -> Connection:
        """Persist a verified connection: clear sibling primaries, encrypt, then write.

        ``existing`` selects update over insert. A legacy provider key on the existing row is
        rewritten to the canonical key in the same write.
        """
        self._require_org(organization_id)
        canonical = self.registry.canonical_key(provider_key)
        if existing is not None:
            self._guard(organization_id, existing)
        status = values.get("status", existing.status if existing else None)
        if values.get("is_primary") and status == ConnectionStatus.DELETED:
            raise ValidationError("A deleted connection cannot be primary", fields=["is_primary"])

        with self._lock_for(organization_id, canonical):
            if values.get("is_primary"):
                for key in self.provider_keys(canonical):
                    self.store.clear_primary(organization_id, key, except_id=existing.id if existing else None)

            doc = dict(values)
            if credentials is not None:
                doc["credentials"] = self._seal(credentials, existing.id if existing else None)

            if existing is None:
                saved = self.store.insert(
                    Connection(organization_id=organization_id, provider_key=canonical, **_storable(strip_protected(doc)))
                )
            else:
                partial = strip_protected(doc)
                if existing.provider_key != canonical:
                    partial["provider_key"] = canonical
                    logger.info(
                        "Migrating legacy provider key",
                        extra={"connection_id": existing.id, "from_key": existing.provider_key, "to_key": canonical},
                    )
                saved = self.store.update(existing.id, organization_id, _storable(partial))
                if saved is None:
                    raise ConnectionNotFound(existing.id)

            if saved.is_primary:
                saved = self._enforce_single_primary(organization_id, canonical, saved)
        return self._guard(organization_id, saved)

    # PUBLIC_INTERFACE
    def update_fields(self, organization_id: str, connection_id: str, partial: Dict[str, Any]) -> Connection:
        """Write non-credential fields (status, metadata, name) of an existing row."""
        self._require_org(organization_id)
        clean = strip_protected(partial)
        clean.pop("credentials", None)
        saved = self.store.update(connection_id, organization_id, _storable(clean))
        if saved is None:
            raise ConnectionNotFound(connection_id)
        return self._guard(organization_id, saved)

    # PUBLIC_INTERFACE
    def set_primary(self, organization_id: str, connection_id: str) -> Connection:
        """Make a connection the primary of its provider key."""
        conn = self.require(organization_id, connection_id)
        return self.save(organization_id, conn.provider_key, {"is_primary": True}, existing=conn)

    # PUBLIC_INTERFACE
    def set_status(self, organization_id: str, connection_id: str, status: ConnectionStatus, **extra: Any) -> Connection:
        return self.update_fields(organization_id, connection_id, {"status": status, **extra})

    # PUBLIC_INTERFACE
    def delete(self, organization_id: str, connection_id: str, hard: bool = False) -> Connection:
        """Soft delete (status 'deleted') or hard delete, falling back to soft when the row survives."""
        conn = self.require(organization_id, connection_id)
        if hard:
            if self.store.hard_delete(connection_id, organization_id):
                logger.info("Connection hard deleted", extra={"connection_id": connection_id})
                return conn.model_copy(update={"status": ConnectionStatus.DELETED, "is_primary": False})
            logger.warning("Hard delete failed, falling back to soft delete", extra={"connection_id": connection_id})
        self.store.soft_delete(connection_id, organization_id)
        logger.info("Connection soft deleted", extra={"connection_id": connection_id})
        return self.require(organization_id, connection_id)

    # PUBLIC_INTERFACE
    def open_credentials(self, connection: Connection) -> Dict[str, Any]:
        """Decrypt stored credentials for an adapter call."""
        try:
            return self.envelope.decrypt_object(connection.credentials)
        except EncryptionError as exc:
            logger.error(
                "Failed to decrypt stored credentials",
                extra={"connection_id": connection.id, "error": type(exc).__name__},
            )
            raise CredentialsUnavailable() from exc

    def _seal(self, credentials: Dict[str, Any], connection_id: Optional[str]) -> Dict[str, str]:
        try:
            return self.envelope.encrypt_object(credentials)
        except EncryptionError:
            logger.error("Failed to encrypt credentials", extra={"connection_id": connection_id or "-"})
            raise

    def _enforce_single_primary(self, organization_id: str, provider_key: str, keep: Connection) -> Connection:
        primaries = [c for c in self.find_by_provider(organization_id, provider_key) if c.is_primary]
        if len(primaries) <= 1:
            return keep
        # A concurrent writer slipped in; the row just written keeps the flag
        logger.warning(
            "Correcting duplicate primary connections",
            extra={"provider_key": provider_key, "count": len(primaries)},
        )
        for other in primaries:
            if other.id != keep.id:
                self.store.update(other.id, organization_id, {"is_primary": False})
        return keep
