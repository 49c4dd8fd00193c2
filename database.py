"""
Document stores for the Hexachats API.

Collections:
- user: Hexachats accounts (also panel customers and admins)
- contact: owner -> contact memberships
- message: chat messages, one document per message
- status: status posts
- call: call log entries
- service: SMM panel catalog entries
- order: SMM panel orders

Three backends share one small interface: process memory, JSON files on
disk, and MongoDB. Filters are plain equality dicts.
"""
import json
import logging
import os
import threading
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional, Union

from pydantic import BaseModel

logger = logging.getLogger(__name__)

DATABASE_BACKEND = os.getenv("DATABASE_BACKEND", "memory")
DATABASE_URL = os.getenv("DATABASE_URL")
DATABASE_NAME = os.getenv("DATABASE_NAME", "hexachats")
DATA_DIR = os.getenv("DATA_DIR", "data")


class StoreError(RuntimeError):
    pass


class DuplicateError(StoreError):
    """Raised by ``insert_unique`` when ``field`` already holds the same value."""

    def __init__(self, collection: str, field: str):
        super().__init__(f"Duplicate {field} in {collection}")
        self.collection = collection
        self.field = field


def _matches(doc: dict, query: Optional[dict]) -> bool:
    if not query:
        return True
    return all(doc.get(k) == v for k, v in query.items())


def _conflict(rows: List[dict], doc: dict, unique_fields) -> Optional[str]:
    for field in unique_fields:
        value = doc.get(field)
        if value is not None and any(r.get(field) == value for r in rows):
            return field
    return None


def _sorted(docs: List[dict], sort: Optional[tuple], limit: Optional[int]) -> List[dict]:
    if sort:
        key, direction = sort
        docs = sorted(docs, key=lambda d: (d.get(key) is None, d.get(key)), reverse=direction < 0)
    if limit:
        docs = docs[:limit]
    return docs


class Store:
    name = "base"

    def insert(self, collection: str, doc: dict) -> str:
        raise NotImplementedError

    def insert_unique(self, collection: str, doc: dict, unique_fields) -> str:
        """Insert ``doc`` unless a non-null value in ``unique_fields`` is already taken."""
        raise NotImplementedError

    def find_one(self, collection: str, query: dict) -> Optional[dict]:
        raise NotImplementedError

    def find(self, collection: str, query: Optional[dict] = None, sort: Optional[tuple] = None, limit: Optional[int] = None) -> List[dict]:
        raise NotImplementedError

    def update_one(self, collection: str, query: dict, changes: dict) -> bool:
        raise NotImplementedError

    def update_many(self, collection: str, query: dict, changes: dict) -> int:
        raise NotImplementedError

    def delete_one(self, collection: str, query: dict) -> bool:
        raise NotImplementedError

    def count(self, collection: str, query: Optional[dict] = None) -> int:
        return len(self.find(collection, query))

    def collection_names(self) -> List[str]:
        raise NotImplementedError


class MemoryStore(Store):
    """Everything lives in a dict of lists and is gone on restart."""

    name = "memory"

    def __init__(self):
        self._collections: Dict[str, List[dict]] = {}
        self._lock = threading.RLock()

    def _rows(self, collection: str) -> List[dict]:
        return self._collections.setdefault(collection, [])

    def insert(self, collection, doc):
        doc = dict(doc)
        doc.setdefault("id", uuid.uuid4().hex)
        with self._lock:
            self._rows(collection).append(doc)
        return doc["id"]

    def insert_unique(self, collection, doc, unique_fields):
        doc = dict(doc)
        doc.setdefault("id", uuid.uuid4().hex)
        with self._lock:
            rows = self._rows(collection)
            field = _conflict(rows, doc, unique_fields)
            if field:
                raise DuplicateError(collection, field)
            rows.append(doc)
        return doc["id"]

    def find_one(self, collection, query):
        with self._lock:
            for doc in self._rows(collection):
                if _matches(doc, query):
                    return dict(doc)
        return None

    def find(self, collection, query=None, sort=None, limit=None):
        with self._lock:
            docs = [dict(d) for d in self._rows(collection) if _matches(d, query)]
        return _sorted(docs, sort, limit)

    def update_one(self, collection, query, changes):
        with self._lock:
            for doc in self._rows(collection):
                if _matches(doc, query):
                    doc.update(changes)
                    return True
        return False

    def update_many(self, collection, query, changes):
        updated = 0
        with self._lock:
            for doc in self._rows(collection):
                if _matches(doc, query):
                    doc.update(changes)
                    updated += 1
        return updated

    def delete_one(self, collection, query):
        with self._lock:
            rows = self._rows(collection)
            for i, doc in enumerate(rows):
                if _matches(doc, query):
                    del rows[i]
                    return True
        return False

    def collection_names(self):
        with self._lock:
            return sorted(self._collections)


class JsonFileStore(Store):
    """One JSON array per collection under ``root``.

    Every read-modify-write cycle holds the store lock and the file is
    swapped in with ``os.replace`` so concurrent requests in this process
    cannot drop each other's writes.
    """

    name = "file"

    def __init__(self, root: Union[str, Path]):
        self.root = Path(root)
        self.root.mkdir(parents=True, exist_ok=True)
        self._lock = threading.RLock()

    def _path(self, collection: str) -> Path:
        return self.root / f"{collection}.json"

    def _read(self, collection: str) -> List[dict]:
        p = self._path(collection)
        if not p.exists():
            return []
        try:
            return json.loads(p.read_text(encoding="utf-8") or "[]")
        except json.JSONDecodeError as e:
            raise StoreError(f"Corrupt data file {p}: {e}") from e

    def _write(self, collection: str, rows: List[dict]) -> None:
        p = self._path(collection)
        tmp = p.with_suffix(".json.tmp")
        tmp.write_text(json.dumps(rows, indent=2, default=str), encoding="utf-8")
        os.replace(tmp, p)

    def insert(self, collection, doc):
        doc = dict(doc)
        doc.setdefault("id", uuid.uuid4().hex)
        with self._lock:
            rows = self._read(collection)
            rows.append(doc)
            self._write(collection, rows)
        return doc["id"]

    def insert_unique(self, collection, doc, unique_fields):
        doc = dict(doc)
        doc.setdefault("id", uuid.uuid4().hex)
        with self._lock:
            rows = self._read(collection)
            field = _conflict(rows, doc, unique_fields)
            if field:
                raise DuplicateError(collection, field)
            rows.append(doc)
            self._write(collection, rows)
        return doc["id"]

    def find_one(self, collection, query):
        with self._lock:
            rows = self._read(collection)
        return next((d for d in rows if _matches(d, query)), None)

    def find(self, collection, query=None, sort=None, limit=None):
        with self._lock:
            rows = self._read(collection)
        return _sorted([d for d in rows if _matches(d, query)], sort, limit)

    def update_one(self, collection, query, changes):
        with self._lock:
            rows = self._read(collection)
            for doc in rows:
                if _matches(doc, query):
                    doc.update(changes)
                    self._write(collection, rows)
                    return True
        return False

    def update_many(self, collection, query, changes):
        updated = 0
        with self._lock:
            rows = self._read(collection)
            for doc in rows:
                if _matches(doc, query):
                    doc.update(changes)
                    updated += 1
            if updated:
                self._write(collection, rows)
        return updated

    def delete_one(self, collection, query):
        with self._lock:
            rows = self._read(collection)
            for i, doc in enumerate(rows):
                if _matches(doc, query):
                    del rows[i]
                    self._write(collection, rows)
                    return True
        return False

    def collection_names(self):
        return sorted(p.stem for p in self.root.glob("*.json"))


class MongoStore(Store):
    """MongoDB collections. Documents carry their own string ``id``; ``_id`` stays internal."""

    name = "mongo"

    def __init__(self, url: str, database_name: str):
        from pymongo import MongoClient

        self.client = MongoClient(url)
        self.db = self.client[database_name]
        self.ensure_indexes()

    def ensure_indexes(self) -> None:
        users = self.db["user"]
        users.create_index("id", unique=True)
        for field in ("email", "username"):
            users.create_index(field, unique=True, partialFilterExpression={field: {"$type": "string"}})

    def insert(self, collection, doc):
        doc = dict(doc)
        doc.setdefault("id", uuid.uuid4().hex)
        self.db[collection].insert_one(doc)
        return doc["id"]

    def insert_unique(self, collection, doc, unique_fields):
        from pymongo.errors import DuplicateKeyError

        doc = dict(doc)
        doc.setdefault("id", uuid.uuid4().hex)
        try:
            self.db[collection].insert_one(doc)
        except DuplicateKeyError as e:
            key_pattern = (e.details or {}).get("keyPattern") or {}
            field = next((f for f in unique_fields if f in key_pattern), next(iter(key_pattern), "id"))
            raise DuplicateError(collection, field) from e
        return doc["id"]

    def find_one(self, collection, query):
        return self.db[collection].find_one(query, {"_id": 0})

    def find(self, collection, query=None, sort=None, limit=None):
        cursor = self.db[collection].find(query or {}, {"_id": 0})
        if sort:
            cursor = cursor.sort(sort[0], sort[1])
        if limit:
            cursor = cursor.limit(limit)
        return list(cursor)

    def update_one(self, collection, query, changes):
        res = self.db[collection].update_one(query, {"$set": changes})
        return bool(res.matched_count)

    def update_many(self, collection, query, changes):
        res = self.db[collection].update_many(query, {"$set": changes})
        return res.matched_count

    def delete_one(self, collection, query):
        res = self.db[collection].delete_one(query)
        return bool(res.deleted_count)

    def count(self, collection, query=None):
        return self.db[collection].count_documents(query or {})

    def collection_names(self):
        return sorted(self.db.list_collection_names())


def store_from_env() -> Store:
    backend = (DATABASE_BACKEND or "memory").strip().lower()
    if backend == "memory":
        return MemoryStore()
    if backend == "file":
        return JsonFileStore(DATA_DIR)
    if backend == "mongo":
        if not DATABASE_URL:
            raise StoreError("DATABASE_URL must be set when DATABASE_BACKEND=mongo")
        return MongoStore(DATABASE_URL, DATABASE_NAME)
    raise StoreError(f"Unknown DATABASE_BACKEND: {backend!r}")


db: Store = store_from_env()
logger.info("Using %s store", db.name)


def get_db() -> Store:
    return db


def create_document(collection: str, data: Union[BaseModel, dict], store: Optional[Store] = None) -> str:
    """Insert ``data`` with a ``created_at`` stamp and return its id."""
    store = store or db
    doc = data.model_dump() if isinstance(data, BaseModel) else dict(data)
    doc.setdefault("created_at", datetime.now(timezone.utc).isoformat())
    return store.insert(collection, doc)


def get_documents(collection: str, query: Optional[dict] = None, limit: Optional[int] = None, store: Optional[Store] = None) -> List[dict]:
    store = store or db
    return store.find(collection, query, limit=limit)


def strip_private(doc: Optional[dict]) -> Optional[dict]:
    if doc is None:
        return None
    doc = dict(doc)
    doc.pop("hashed_password", None)
    doc.pop("_id", None)
    return doc


__all__ = [
    "Store",
    "StoreError",
    "DuplicateError",
    "MemoryStore",
    "JsonFileStore",
    "MongoStore",
    "store_from_env",
    "db",
    "get_db",
    "create_document",
    "get_documents",
    "strip_private",
]
