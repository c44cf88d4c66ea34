import pytest

from core.scheduler import Scheduler
from features.offline.services.offline_cache import CacheNamespace, OfflineCache


@pytest.fixture
def submitted():
    return []


@pytest.fixture
def synced_cache(store, clock, submitted):
    async def submitter(item_type, payload):
        submitted.append((item_type, payload))

    return OfflineCache(store=store, submitter=submitter, clock=clock)


class TestScheduler:
    async def test_registers_jobs(self, synced_cache):
        scheduler = Scheduler(synced_cache, maintenance_interval=600, sync_interval=60)
        scheduler.start()
        try:
            assert scheduler.get_next_run_time(Scheduler.MAINTENANCE_JOB) is not None
            assert scheduler.get_next_run_time(Scheduler.SYNC_JOB) is not None
            assert scheduler.get_next_run_time("missing") is None
        finally:
            scheduler.shutdown()

    async def test_maintenance_removes_expired_entries(self, synced_cache, clock):
        synced_cache.put(CacheNamespace.WEATHER, "40.70,-74.01", {"wind_speed": 4})
        clock.advance(synced_cache.ttl_for(CacheNamespace.WEATHER) + 1)
        assert await Scheduler(synced_cache).run_maintenance() == 1

    async def test_sync_pass_drains_queue(self, synced_cache, submitted):
        synced_cache.sync_queue.enqueue("depth_reading", {"id": "r-1"})
        await Scheduler(synced_cache).run_sync()
        assert submitted == [("depth_reading", {"id": "r-1"})]
        assert synced_cache.sync_queue.count() == 0
