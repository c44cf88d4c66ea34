import logging
import time
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Type, TypeVar

from pydantic import BaseModel, TypeAdapter

from core.config import settings
from features.common.exceptions.soundings_exceptions import CacheUnavailableError
from features.common.utils.time_utils import from_epoch
from features.offline.models.offline_types import CacheEntry, SyncStatus
from features.offline.services.store import KeyValueStore, MemoryStore, StoredRecord
from features.offline.services.sync_queue import Submitter, SyncQueue
from features.weather.models.weather_types import MarineAlert

logger = logging.getLogger(__name__)

T = TypeVar("T")

class CacheNamespace(str, Enum):
    """Keyspaces of the offline cache, each with its own TTL."""
    STATIONS = "stations"
    TIDE_PREDICTIONS = "tide_predictions"
    WATER_LEVELS = "water_levels"
    MET_DATA = "met_data"
    WEATHER = "weather"
    FORECASTS = "forecasts"
    ALERTS = "alerts"
    PROCESSED_READINGS = "processed_readings"

def _to_jsonable(value: Any) -> Any:
    if isinstance(value, BaseModel):
        return value.model_dump(mode="json")
    if isinstance(value, (list, tuple)):
        return [_to_jsonable(v) for v in value]
    if isinstance(value, dict):
        return {k: _to_jsonable(v) for k, v in value.items()}
    return value

class OfflineCache:
    """TTL cache over a key-value store, plus the outbound sync queue.

    Storage failures never break the online path: they are logged and
    treated as a miss (reads) or a skipped write.
    """

    def __init__(
        self,
        store: Optional[KeyValueStore] = None,
        ttls: Optional[Dict[str, int]] = None,
        submitter: Optional[Submitter] = None,
        clock: Callable[[], float] = time.time
    ):
        self.store = store if store is not None else MemoryStore()
        self.ttls = ttls or settings.get_cache_ttl()
        self._clock = clock
        self.sync_queue = SyncQueue(
            self.store,
            submitter=submitter,
            batch_size=settings.sync_batch_size,
            purge_age_seconds=settings.sync_purge_age_days * 24 * 3600,
            max_attempts=settings.sync_max_attempts,
            clock=clock
        )

    @staticmethod
    def make_key(namespace: CacheNamespace, key: str) -> str:
        return f"{CacheNamespace(namespace).value}:{key}"

    def ttl_for(self, namespace: CacheNamespace) -> int:
        return self.ttls[CacheNamespace(namespace).value]

    def get(self, namespace: CacheNamespace, key: str) -> Optional[CacheEntry]:
        """Return the unexpired entry for key, or None on a miss."""
        full_key = self.make_key(namespace, key)
        try:
            record = self.store.get(full_key)
        except CacheUnavailableError as e:
            logger.error(f"Cache read failed for {full_key}: {str(e)}")
            return None
        if record is None or record.is_expired(self._clock()):
            return None
        return self._to_entry(record)

    def put(
        self,
        namespace: CacheNamespace,
        key: str,
        payload: Any,
        source: str = "unknown",
        ttl: Optional[float] = None
    ) -> Optional[CacheEntry]:
        """Store payload under key; returns the entry, or None if the write was skipped."""
        ttl = self.ttl_for(namespace) if ttl is None else ttl
        if ttl <= 0:
            raise ValueError("ttl must be positive")
        now = self._clock()
        entry = CacheEntry(
            key=self.make_key(namespace, key),
            payload=_to_jsonable(payload),
            source=source,
            cached_at=now,
            expires_at=now + ttl
        )
        try:
            self.store.put(StoredRecord.from_payload(
                key=entry.key,
                payload=entry.payload,
                source=entry.source,
                cached_at=entry.cached_at,
                expires_at=entry.expires_at
            ))
        except CacheUnavailableError as e:
            logger.error(f"Cache write skipped for {entry.key}: {str(e)}")
            return None
        return entry

    def delete(self, namespace: CacheNamespace, key: str) -> bool:
        full_key = self.make_key(namespace, key)
        try:
            return self.store.delete(full_key)
        except CacheUnavailableError as e:
            logger.error(f"Cache delete failed for {full_key}: {str(e)}")
            return False

    def scan(self, namespace: CacheNamespace, key_prefix: str = "") -> List[CacheEntry]:
        """All unexpired entries of a namespace whose key starts with key_prefix."""
        prefix = self.make_key(namespace, key_prefix)
        try:
            records = self.store.scan_prefix(prefix)
        except CacheUnavailableError as e:
            logger.error(f"Cache scan failed for {prefix}: {str(e)}")
            return []
        now = self._clock()
        return [self._to_entry(r) for r in records if not r.is_expired(now)]

    def get_model(self, namespace: CacheNamespace, key: str, model_type: Type[T]) -> Optional[T]:
        """Typed read: validates the cached payload as model_type (e.g. List[Station])."""
        entry = self.get(namespace, key)
        if entry is None:
            return None
        try:
            return TypeAdapter(model_type).validate_python(entry.payload)
        except ValueError as e:
            logger.warning(f"Discarding unreadable cache entry {entry.key}: {str(e)}")
            self.delete(namespace, key)
            return None

    def cache_alerts(self, location_key: str, alerts: List[MarineAlert], source: str = "unknown") -> None:
        """Cache the alert list for a location and index each alert by id."""
        self.put(CacheNamespace.ALERTS, f"location:{location_key}", alerts, source=source)
        for alert in alerts:
            self.put(CacheNamespace.ALERTS, f"id:{alert.id}", alert, source=alert.source or source)

    def get_active_alerts(self) -> List[MarineAlert]:
        """Every cached alert still inside its validity window, one per id."""
        now = from_epoch(self._clock())
        active = []
        for entry in self.scan(CacheNamespace.ALERTS, "id:"):
            alert = MarineAlert.model_validate(entry.payload)
            if alert.valid_to is None or alert.valid_to > now:
                active.append(alert)
        return active

    def cleanup_expired(self) -> int:
        """Maintenance pass: delete expired entries and purge dead sync items."""
        try:
            removed = self.store.delete_expired(self._clock())
            purged = self.sync_queue.purge()
        except CacheUnavailableError as e:
            logger.error(f"Cache maintenance failed: {str(e)}")
            return 0
        if removed or purged:
            logger.info(f"Cache maintenance removed {removed} expired entries, purged {purged} sync items")
        return removed + purged

    def clear_namespace(self, namespace: CacheNamespace) -> int:
        namespace = CacheNamespace(namespace)
        try:
            return self.store.clear(f"{namespace.value}:")
        except CacheUnavailableError as e:
            logger.error(f"Failed to clear {namespace.value} cache: {str(e)}")
            return 0

    def clear_all(self) -> int:
        """Drop every cached entry. Queued mutations are kept."""
        removed = sum(self.clear_namespace(namespace) for namespace in CacheNamespace)
        logger.info(f"Cleared {removed} cache entries")
        return removed

    def stats(self) -> Dict[str, int]:
        try:
            counts = self.store.count_by_namespace()
        except CacheUnavailableError as e:
            logger.error(f"Cache stats unavailable: {str(e)}")
            return {}
        return {ns.value: counts.get(ns.value, 0) for ns in CacheNamespace}

    def get_sync_status(self) -> SyncStatus:
        queue = self.sync_queue
        last_drain = from_epoch(queue.last_drain) if queue.last_drain else None
        try:
            pending = queue.count()
        except CacheUnavailableError as e:
            logger.error(f"Sync queue unavailable: {str(e)}")
            pending = 0
        return SyncStatus(
            is_online=queue.is_online,
            pending_uploads=pending,
            last_drain=last_drain,
            drain_in_progress=queue.drain_in_progress,
            cache_entries=self.stats()
        )

    async def close(self):
        await self.sync_queue.close()
        self.store.close()

    def _to_entry(self, record: StoredRecord) -> CacheEntry:
        return CacheEntry(
            key=record.key,
            payload=record.decoded(),
            source=record.source,
            cached_at=record.cached_at,
            expires_at=record.expires_at
        )
