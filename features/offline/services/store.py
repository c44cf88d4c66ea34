"""
Key-value stores backing the offline cache and the sync queue.

Two implementations share one contract (get/put/delete/scan-by-prefix/TTL):
- MemoryStore: process-local, used in tests and when no durable store is wanted
- SqlAlchemyStore: durable, SQLite by default but any SQLAlchemy URL works

Payloads are stored as JSON text, so readers always get their own copy and
never observe a half-written entry.
"""
import json
import logging
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from sqlalchemy import (
    Column,
    Float,
    MetaData,
    String,
    Table,
    Text,
    create_engine,
    delete,
    func,
    select,
)
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.pool import StaticPool

from features.common.exceptions.soundings_exceptions import CacheUnavailableError

logger = logging.getLogger(__name__)

@dataclass(frozen=True)
class StoredRecord:
    """Raw row as kept by a store. `expires_at` of None means the row never expires."""
    key: str
    payload: str
    source: str
    cached_at: float
    expires_at: Optional[float] = None

    @classmethod
    def from_payload(
        cls,
        key: str,
        payload: Any,
        source: str,
        cached_at: float,
        expires_at: Optional[float] = None
    ) -> "StoredRecord":
        return cls(
            key=key,
            payload=json.dumps(payload, default=str),
            source=source,
            cached_at=cached_at,
            expires_at=expires_at
        )

    def decoded(self) -> Any:
        return json.loads(self.payload)

    def is_expired(self, now: float) -> bool:
        return self.expires_at is not None and now >= self.expires_at

def namespace_of(key: str) -> str:
    return key.split(":", 1)[0]

class KeyValueStore(ABC):
    """Storage contract shared by every backend."""

    @abstractmethod
    def get(self, key: str) -> Optional[StoredRecord]:
        """Return the record for key, expired or not, or None."""

    @abstractmethod
    def put(self, record: StoredRecord) -> None:
        """Insert or replace a record atomically."""

    @abstractmethod
    def delete(self, key: str) -> bool:
        """Delete a record; returns True when something was removed."""

    @abstractmethod
    def scan_prefix(self, prefix: str) -> List[StoredRecord]:
        """Return all records whose key starts with prefix, ordered by key."""

    @abstractmethod
    def delete_expired(self, now: float) -> int:
        """Delete every record whose expiry has passed."""

    @abstractmethod
    def clear(self, prefix: str = "") -> int:
        """Delete every record whose key starts with prefix."""

    @abstractmethod
    def count_by_namespace(self) -> Dict[str, int]:
        """Number of rows per key namespace (the part before the first ':')."""

    def close(self) -> None:
        pass

class MemoryStore(KeyValueStore):
    """Thread-safe in-process store."""

    def __init__(self):
        self._rows: Dict[str, StoredRecord] = {}
        self._lock = threading.RLock()

    def get(self, key: str) -> Optional[StoredRecord]:
        with self._lock:
            return self._rows.get(key)

    def put(self, record: StoredRecord) -> None:
        with self._lock:
            self._rows[record.key] = record

    def delete(self, key: str) -> bool:
        with self._lock:
            return self._rows.pop(key, None) is not None

    def scan_prefix(self, prefix: str) -> List[StoredRecord]:
        with self._lock:
            return [self._rows[k] for k in sorted(self._rows) if k.startswith(prefix)]

    def delete_expired(self, now: float) -> int:
        with self._lock:
            expired = [k for k, row in self._rows.items() if row.is_expired(now)]
            for key in expired:
                del self._rows[key]
            return len(expired)

    def clear(self, prefix: str = "") -> int:
        with self._lock:
            keys = [k for k in self._rows if k.startswith(prefix)]
            for key in keys:
                del self._rows[key]
            return len(keys)

    def count_by_namespace(self) -> Dict[str, int]:
        counts: Dict[str, int] = {}
        with self._lock:
            for key in self._rows:
                ns = namespace_of(key)
                counts[ns] = counts.get(ns, 0) + 1
        return counts

class SqlAlchemyStore(KeyValueStore):
    """Durable store on a single SQLAlchemy table."""

    def __init__(self, url: str, echo: bool = False):
        self.url = url
        engine_kwargs: Dict[str, Any] = {"echo": echo}
        if url.startswith("sqlite"):
            engine_kwargs["connect_args"] = {"check_same_thread": False}
            if url in ("sqlite://", "sqlite:///:memory:"):
                # Share one connection so every caller sees the same in-memory database
                engine_kwargs["poolclass"] = StaticPool
        self._lock = threading.RLock()
        self._metadata = MetaData()
        self._table = Table(
            "kv_store",
            self._metadata,
            Column("key", String(255), primary_key=True),
            Column("namespace", String(64), index=True, nullable=False),
            Column("payload", Text, nullable=False),
            Column("source", String(64), nullable=False),
            Column("cached_at", Float, nullable=False),
            Column("expires_at", Float, index=True, nullable=True),
        )
        try:
            self._engine = create_engine(url, **engine_kwargs)
            self._metadata.create_all(self._engine)
        except SQLAlchemyError as e:
            logger.error(f"Failed to initialize store at {url}: {str(e)}")
            raise CacheUnavailableError(f"Cannot open store {url}: {e}") from e
        logger.info(f"Offline store ready at {url}")

    def _to_record(self, row) -> StoredRecord:
        return StoredRecord(
            key=row.key,
            payload=row.payload,
            source=row.source,
            cached_at=row.cached_at,
            expires_at=row.expires_at
        )

    def get(self, key: str) -> Optional[StoredRecord]:
        try:
            with self._lock, self._engine.connect() as conn:
                row = conn.execute(select(self._table).where(self._table.c.key == key)).first()
                return self._to_record(row) if row else None
        except SQLAlchemyError as e:
            raise CacheUnavailableError(f"Read failed for {key}: {e}") from e

    def put(self, record: StoredRecord) -> None:
        try:
            with self._lock, self._engine.begin() as conn:
                conn.execute(delete(self._table).where(self._table.c.key == record.key))
                conn.execute(self._table.insert().values(
                    key=record.key,
                    namespace=namespace_of(record.key),
                    payload=record.payload,
                    source=record.source,
                    cached_at=record.cached_at,
                    expires_at=record.expires_at
                ))
        except SQLAlchemyError as e:
            raise CacheUnavailableError(f"Write failed for {record.key}: {e}") from e

    def delete(self, key: str) -> bool:
        try:
            with self._lock, self._engine.begin() as conn:
                result = conn.execute(delete(self._table).where(self._table.c.key == key))
                return result.rowcount > 0
        except SQLAlchemyError as e:
            raise CacheUnavailableError(f"Delete failed for {key}: {e}") from e

    def scan_prefix(self, prefix: str) -> List[StoredRecord]:
        try:
            with self._lock, self._engine.connect() as conn:
                rows = conn.execute(
                    select(self._table)
                    .where(self._table.c.key.startswith(prefix, autoescape=True))
                    .order_by(self._table.c.key)
                ).all()
                return [self._to_record(row) for row in rows]
        except SQLAlchemyError as e:
            raise CacheUnavailableError(f"Scan failed for {prefix}: {e}") from e

    def delete_expired(self, now: float) -> int:
        try:
            with self._lock, self._engine.begin() as conn:
                result = conn.execute(
                    delete(self._table).where(
                        self._table.c.expires_at.is_not(None),
                        self._table.c.expires_at <= now
                    )
                )
                return result.rowcount
        except SQLAlchemyError as e:
            raise CacheUnavailableError(f"Expiry sweep failed: {e}") from e

    def clear(self, prefix: str = "") -> int:
        try:
            with self._lock, self._engine.begin() as conn:
                stmt = delete(self._table)
                if prefix:
                    stmt = stmt.where(self._table.c.key.startswith(prefix, autoescape=True))
                return conn.execute(stmt).rowcount
        except SQLAlchemyError as e:
            raise CacheUnavailableError(f"Clear failed: {e}") from e

    def count_by_namespace(self) -> Dict[str, int]:
        try:
            with self._lock, self._engine.connect() as conn:
                rows = conn.execute(
                    select(self._table.c.namespace, func.count())
                    .group_by(self._table.c.namespace)
                ).all()
                return {namespace: count for namespace, count in rows}
        except SQLAlchemyError as e:
            raise CacheUnavailableError(f"Count failed: {e}") from e

    def close(self) -> None:
        self._engine.dispose()

def create_store(url: str) -> KeyValueStore:
    """Build a store from a URL: 'memory://' or any SQLAlchemy URL."""
    if url.startswith("memory://"):
        return MemoryStore()
    return SqlAlchemyStore(url)
