import asyncio
import itertools
import logging
import time
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set

from features.common.exceptions.soundings_exceptions import CacheUnavailableError
from features.common.utils.time_utils import from_epoch
from features.offline.models.offline_types import DrainResult, SyncQueueItem
from features.offline.services.store import KeyValueStore, StoredRecord

logger = logging.getLogger(__name__)

Submitter = Callable[[str, Dict[str, Any]], Awaitable[Any]]

class SyncQueue:
    """Durable FIFO of outbound mutations made while offline.

    Items live in the shared key-value store under the `sync_queue:` prefix,
    keyed so that key order is enqueue order. An item leaves the queue only
    when the remote API accepts it, or when the purge rule applies: older than
    `purge_age_seconds` AND more than `max_attempts` failed attempts.
    """

    PREFIX = "sync_queue:"

    def __init__(
        self,
        store: KeyValueStore,
        submitter: Optional[Submitter] = None,
        batch_size: int = 50,
        purge_age_seconds: float = 7 * 24 * 3600,
        max_attempts: int = 3,
        clock: Callable[[], float] = time.time,
        online: bool = True
    ):
        self.store = store
        self.submitter = submitter
        self.batch_size = batch_size
        self.purge_age_seconds = purge_age_seconds
        self.max_attempts = max_attempts
        self._clock = clock
        self._online = online
        self._seq = itertools.count()
        self._drain_lock = asyncio.Lock()
        self._draining = False
        self._background_tasks: Set[asyncio.Task] = set()
        self.last_drain: Optional[float] = None

    @property
    def is_online(self) -> bool:
        return self._online

    @property
    def drain_in_progress(self) -> bool:
        return self._draining

    def _key(self, item_id: str) -> str:
        return f"{self.PREFIX}{item_id}"

    def _write(self, item: SyncQueueItem) -> None:
        self.store.put(StoredRecord.from_payload(
            key=self._key(item.id),
            payload=item.model_dump(mode="json"),
            source="local",
            cached_at=item.enqueued_at
        ))

    def enqueue(self, item_type: str, payload: Dict[str, Any]) -> SyncQueueItem:
        """Persist a mutation for later delivery."""
        now = self._clock()
        item = SyncQueueItem(
            id=f"{int(now * 1_000_000):020d}-{next(self._seq):08d}",
            type=item_type,
            payload=payload,
            enqueued_at=now
        )
        self._write(item)
        logger.info(f"Queued {item_type} mutation {item.id} for sync")
        return item

    def submit(self, item_type: str, payload: Dict[str, Any]) -> SyncQueueItem:
        """Enqueue a mutation and, when online, start draining right away."""
        item = self.enqueue(item_type, payload)
        if self._online:
            self.schedule_drain()
        return item

    def pending(self, limit: Optional[int] = None) -> List[SyncQueueItem]:
        """Queued items in FIFO order."""
        items = [
            SyncQueueItem.model_validate(record.decoded())
            for record in self.store.scan_prefix(self.PREFIX)
        ]
        return items[:limit] if limit is not None else items

    def count(self) -> int:
        return len(self.store.scan_prefix(self.PREFIX))

    def get(self, item_id: str) -> Optional[SyncQueueItem]:
        record = self.store.get(self._key(item_id))
        return SyncQueueItem.model_validate(record.decoded()) if record else None

    async def drain(self) -> DrainResult:
        """Run one bounded drain pass.

        Each item is offered to the remote API once per pass; successes are
        removed, failures get their attempt counter bumped and stay queued.
        """
        if not self._online:
            return DrainResult(skipped=True, remaining=self._safe_count())
        if self.submitter is None:
            logger.warning("No sync submitter configured, skipping drain")
            return DrainResult(skipped=True, remaining=self._safe_count())

        async with self._drain_lock:
            self._draining = True
            result = DrainResult()
            try:
                items = self.pending(limit=self.batch_size)
                for item in items:
                    if not self._online:
                        logger.info("Connectivity lost during drain, stopping pass")
                        break
                    result.attempted += 1
                    try:
                        await self.submitter(item.type, item.payload)
                    except Exception as e:
                        result.failed += 1
                        if self.store.get(self._key(item.id)) is None:
                            logger.info(f"{item.type} item {item.id} left the queue mid-sync, not requeueing")
                            continue
                        self._write(item.model_copy(update={
                            "attempts": item.attempts + 1,
                            "last_attempt": self._clock(),
                            "last_error": str(e)
                        }))
                        logger.warning(
                            f"Sync of {item.type} item {item.id} failed "
                            f"(attempt {item.attempts + 1}): {str(e)}"
                        )
                    else:
                        self.store.delete(self._key(item.id))
                        result.synced += 1
                self.last_drain = self._clock()
                result.remaining = self.count()
            except CacheUnavailableError as e:
                logger.error(f"Sync queue storage unavailable during drain: {str(e)}")
                result.skipped = True
            finally:
                self._draining = False

        if result.attempted:
            logger.info(
                f"Sync drain: {result.synced} synced, {result.failed} failed, "
                f"{result.remaining} remaining"
            )
        return result

    def purge(self) -> int:
        """Drop items that are both too old and have exhausted their attempts."""
        now = self._clock()
        purged = 0
        for item in self.pending():
            too_old = now - item.enqueued_at > self.purge_age_seconds
            exhausted = item.attempts > self.max_attempts
            if too_old and exhausted:
                self.store.delete(self._key(item.id))
                purged += 1
                logger.warning(
                    f"Purged {item.type} item {item.id} after {item.attempts} attempts "
                    f"(queued {from_epoch(item.enqueued_at).isoformat()})"
                )
        return purged

    def set_online(self, online: bool) -> Optional[asyncio.Task]:
        """Update connectivity; coming back online starts a background drain."""
        was_offline = not self._online
        self._online = online
        if online and was_offline:
            logger.info("Connectivity restored, draining sync queue")
            return self.schedule_drain()
        if not online and not was_offline:
            logger.info("Connectivity lost, queueing outbound mutations")
        return None

    def schedule_drain(self) -> Optional[asyncio.Task]:
        """Start a drain pass in the background without blocking."""
        try:
            task = asyncio.get_running_loop().create_task(self.drain())
        except RuntimeError:
            logger.debug("No running event loop, drain deferred to next pass")
            return None
        self._background_tasks.add(task)
        task.add_done_callback(self._background_tasks.discard)
        return task

    def _safe_count(self) -> int:
        try:
            return self.count()
        except CacheUnavailableError:
            return 0

    async def close(self):
        """Cancel and cleanup any running background drains."""
        for task in self._background_tasks:
            task.cancel()
        await asyncio.gather(*self._background_tasks, return_exceptions=True)
        self._background_tasks.clear()
