# PUBLIC_INTERFACE
"""
Storage boundary for connection rows.

Every operation takes the organization id as a required argument and filters on it. Two
implementations: a thread-safe in-memory store (development and tests) and a MongoDB store.
Stores persist whatever they are given; encryption and invariants live in the repository.
"""
from __future__ import annotations

import copy
import threading
from abc import ABC, abstractmethod
from typing import Any, Dict, Iterable, List, Optional

from pymongo import ReturnDocument
from pymongo.collection import Collection

from channel_hub.core.models import Connection, ConnectionStatus, utc_now


class ConnectionStore(ABC):
    """Tenant-scoped persistence operations the repository relies on."""

    @abstractmethod
    def find_by_tenant_and_key(self, organization_id: str, provider_keys: Iterable[str]) -> List[Connection]:
        raise NotImplementedError

    @abstractmethod
    def get(self, organization_id: str, connection_id: str) -> Optional[Connection]:
        raise NotImplementedError

    @abstractmethod
    def list_for_tenant(self, organization_id: str, include_deleted: bool = False) -> List[Connection]:
        raise NotImplementedError

    @abstractmethod
    def insert(self, connection: Connection) -> Connection:
        raise NotImplementedError

    @abstractmethod
    def update(self, connection_id: str, organization_id: str, partial: Dict[str, Any]) -> Optional[Connection]:
        raise NotImplementedError

    @abstractmethod
    def clear_primary(self, organization_id: str, provider_key: str, except_id: Optional[str] = None) -> int:
        """Set is_primary=False on every row of (organization, provider_key) except except_id."""
        raise NotImplementedError

    @abstractmethod
    def hard_delete(self, connection_id: str, organization_id: str) -> bool:
        raise NotImplementedError

    def soft_delete(self, connection_id: str, organization_id: str) -> bool:
        updated = self.update(
            connection_id,
            organization_id,
            {"status": ConnectionStatus.DELETED.value, "is_primary": False},
        )
        return updated is not None


def _load(doc: Dict[str, Any]) -> Connection:
    return Connection(**copy.deepcopy(doc))


class InMemoryConnectionStore(ConnectionStore):
    def __init__(self) -> None:
        self._lock = threading.RLock()
        # key = (organization_id, connection_id)
        self._rows: Dict[tuple[str, str], Dict[str, Any]] = {}

    def find_by_tenant_and_key(self, organization_id: str, provider_keys: Iterable[str]) -> List[Connection]:
        keys = set(provider_keys)
        with self._lock:
            rows = [
                _load(doc)
                for (org, _), doc in self._rows.items()
                if org == organization_id and doc["provider_key"] in keys
            ]
        return sorted(rows, key=lambda c: c.created_at)

    def get(self, organization_id: str, connection_id: str) -> Optional[Connection]:
        with self._lock:
            doc = self._rows.get((organization_id, connection_id))
            return _load(doc) if doc else None

    def list_for_tenant(self, organization_id: str, include_deleted: bool = False) -> List[Connection]:
        with self._lock:
            rows = [_load(doc) for (org, _), doc in self._rows.items() if org == organization_id]
        if not include_deleted:
            rows = [c for c in rows if c.status != ConnectionStatus.DELETED]
        return sorted(rows, key=lambda c: c.created_at)

    def insert(self, connection: Connection) -> Connection:
        doc = connection.to_document()
        with self._lock:
            key = (connection.organization_id, connection.id)
            if key in self._rows:
                raise KeyError(f"Connection '{connection.id}' already exists")
            self._rows[key] = doc
        return _load(doc)

    def update(self, connection_id: str, organization_id: str, partial: Dict[str, Any]) -> Optional[Connection]:
        with self._lock:
            doc = self._rows.get((organization_id, connection_id))
            if doc is None:
                return None
            doc.update(copy.deepcopy(partial))
            doc["updated_at"] = utc_now()
            return _load(doc)

    def clear_primary(self, organization_id: str, provider_key: str, except_id: Optional[str] = None) -> int:
        cleared = 0
        with self._lock:
            for (org, cid), doc in self._rows.items():
                if org != organization_id or doc["provider_key"] != provider_key or cid == except_id:
                    continue
                if doc.get("is_primary"):
                    doc["is_primary"] = False
                    doc["updated_at"] = utc_now()
                    cleared += 1
        return cleared

    def hard_delete(self, connection_id: str, organization_id: str) -> bool:
        with self._lock:
            return self._rows.pop((organization_id, connection_id), None) is not None


class MongoConnectionStore(ConnectionStore):
    """MongoDB-backed store. Rows are keyed by our own ``id`` field, ``_id`` is never exposed."""

    _PROJECTION = {"_id": 0}

    def __init__(self, collection: Collection):
        self._col = collection

    def find_by_tenant_and_key(self, organization_id: str, provider_keys: Iterable[str]) -> List[Connection]:
        cursor = self._col.find(
            {"organization_id": organization_id, "provider_key": {"$in": list(provider_keys)}},
            self._PROJECTION,
        ).sort("created_at", 1)
        return [Connection(**doc) for doc in cursor]

    def get(self, organization_id: str, connection_id: str) -> Optional[Connection]:
        doc = self._col.find_one({"organization_id": organization_id, "id": connection_id}, self._PROJECTION)
        return Connection(**doc) if doc else None

    def list_for_tenant(self, organization_id: str, include_deleted: bool = False) -> List[Connection]:
        query: Dict[str, Any] = {"organization_id": organization_id}
        if not include_deleted:
            query["status"] = {"$ne": ConnectionStatus.DELETED.value}
        return [Connection(**doc) for doc in self._col.find(query, self._PROJECTION).sort("created_at", 1)]

    def insert(self, connection: Connection) -> Connection:
        doc = connection.to_document()
        self._col.insert_one(dict(doc))
        return Connection(**doc)

    def update(self, connection_id: str, organization_id: str, partial: Dict[str, Any]) -> Optional[Connection]:
        doc = self._col.find_one_and_update(
            {"organization_id": organization_id, "id": connection_id},
            {"$set": {**partial, "updated_at": utc_now()}},
            projection=self._PROJECTION,
            return_document=ReturnDocument.AFTER,
        )
        return Connection(**doc) if doc else None

    def clear_primary(self, organization_id: str, provider_key: str, except_id: Optional[str] = None) -> int:
        query: Dict[str, Any] = {"organization_id": organization_id, "provider_key": provider_key, "is_primary": True}
        if except_id:
            query["id"] = {"$ne": except_id}
        res = self._col.update_many(query, {"$set": {"is_primary": False, "updated_at": utc_now()}})
        return res.modified_count

    def hard_delete(self, connection_id: str, organization_id: str) -> bool:
        res = self._col.delete_one({"organization_id": organization_id, "id": connection_id})
        return res.deleted_count > 0
