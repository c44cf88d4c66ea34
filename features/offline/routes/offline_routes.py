from typing import List
from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel
from features.offline.models.offline_types import DrainResult, SyncQueueItem, SyncStatus
from features.offline.services.offline_cache import OfflineCache

router = APIRouter(
    prefix="/offline",
    tags=["Offline"]
)

class ConnectivityUpdate(BaseModel):
    online: bool

def get_cache(request: Request) -> OfflineCache:
    """Get OfflineCache instance from app state."""
    return request.app.state.offline_cache

@router.get(
    "/status",
    response_model=SyncStatus,
    summary="Get offline cache and sync queue status"
)
async def get_sync_status(cache: OfflineCache = Depends(get_cache)) -> SyncStatus:
    return cache.get_sync_status()

@router.get(
    "/queue",
    response_model=List[SyncQueueItem],
    summary="List queued outbound mutations, oldest first"
)
async def get_queue(
    limit: int = Query(100, ge=1, le=1000),
    cache: OfflineCache = Depends(get_cache)
) -> List[SyncQueueItem]:
    return cache.sync_queue.pending(limit=limit)

@router.put(
    "/connectivity",
    response_model=SyncStatus,
    summary="Report connectivity; going online starts a drain"
)
async def set_connectivity(
    update: ConnectivityUpdate,
    cache: OfflineCache = Depends(get_cache)
) -> SyncStatus:
    cache.sync_queue.set_online(update.online)
    return cache.get_sync_status()

@router.post(
    "/drain",
    response_model=DrainResult,
    summary="Run one sync queue drain pass now"
)
async def drain_queue(cache: OfflineCache = Depends(get_cache)) -> DrainResult:
    return await cache.sync_queue.drain()

@router.post(
    "/maintenance",
    summary="Delete expired cache entries and purge dead sync items"
)
async def run_maintenance(cache: OfflineCache = Depends(get_cache)):
    return {"removed": cache.cleanup_expired()}

@router.delete(
    "/cache",
    summary="Clear all cached data (queued mutations are kept)"
)
async def clear_cache(cache: OfflineCache = Depends(get_cache)):
    return {"cleared": cache.clear_all()}
