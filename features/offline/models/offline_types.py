from datetime import datetime
from typing import Any, Dict, Optional
from pydantic import BaseModel, Field, model_validator

class CacheEntry(BaseModel):
    """A cached payload with its freshness window (epoch seconds)."""
    key: str
    payload: Any
    source: str = "unknown"
    cached_at: float
    expires_at: float

    @model_validator(mode="after")
    def _check_window(self) -> "CacheEntry":
        if self.expires_at <= self.cached_at:
            raise ValueError("expires_at must be later than cached_at")
        return self

    def is_expired(self, now: float) -> bool:
        return now >= self.expires_at

class SyncQueueItem(BaseModel):
    """An outbound mutation waiting for connectivity."""
    id: str
    type: str = Field(..., description="Mutation type, e.g. depth_reading")
    payload: Dict[str, Any]
    enqueued_at: float
    attempts: int = 0
    last_attempt: Optional[float] = None
    last_error: Optional[str] = None

class DrainResult(BaseModel):
    """Outcome of a single drain pass over the sync queue."""
    attempted: int = 0
    synced: int = 0
    failed: int = 0
    remaining: int = 0
    skipped: bool = False

class SyncStatus(BaseModel):
    """Snapshot of offline state for status indicators."""
    is_online: bool
    pending_uploads: int
    last_drain: Optional[datetime] = None
    drain_in_progress: bool = False
    cache_entries: Dict[str, int] = Field(default_factory=dict)
