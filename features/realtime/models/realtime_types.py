import asyncio
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Set
from pydantic import BaseModel, Field, field_validator

from features.common.models.location_types import Location
from features.common.utils.time_utils import ensure_utc

class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"
    FAILED = "failed"

class ConnectionQuality(str, Enum):
    EXCELLENT = "excellent"
    GOOD = "good"
    POOR = "poor"
    UNKNOWN = "unknown"

    @classmethod
    def from_latency(cls, latency_ms: float) -> "ConnectionQuality":
        if latency_ms < 100:
            return cls.EXCELLENT
        if latency_ms < 300:
            return cls.GOOD
        return cls.POOR

class StatusIndicator(str, Enum):
    """What a UI shows: live, live-but-shaky, or not live."""
    CONNECTED = "connected"
    DEGRADED = "degraded"
    OFFLINE = "offline"

class MessageType(str, Enum):
    SUBSCRIBE = "subscribe"
    UNSUBSCRIBE = "unsubscribe"
    UPDATE_SUBSCRIPTION = "updateSubscription"
    HEARTBEAT = "heartbeat"
    HEARTBEAT_RESPONSE = "heartbeatResponse"
    UPDATE = "update"
    ALERT = "alert"
    EMERGENCY = "emergency"
    ERROR = "error"
    SUBSCRIPTION_CONFIRMED = "subscriptionConfirmed"

class DataType(str, Enum):
    DEPTH = "depth"
    TIDE = "tide"
    WEATHER = "weather"
    ALERT = "alert"
    EMERGENCY = "emergency"

class SubscriptionPriority(str, Enum):
    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"
    CRITICAL = "critical"

class UpdateSeverity(str, Enum):
    INFO = "info"
    WARNING = "warning"
    CRITICAL = "critical"
    EMERGENCY = "emergency"

URGENT_SEVERITIES = {UpdateSeverity.CRITICAL, UpdateSeverity.EMERGENCY}

class RealtimeUpdate(BaseModel):
    """An update event matched against subscriptions by type and distance."""
    id: Optional[str] = None
    type: DataType
    location: Location
    data: Dict[str, Any] = Field(default_factory=dict)
    severity: UpdateSeverity = UpdateSeverity.INFO
    timestamp: Optional[datetime] = None
    source: Optional[str] = None

    @field_validator("timestamp")
    @classmethod
    def _normalize_timestamp(cls, value: Optional[datetime]) -> Optional[datetime]:
        return ensure_utc(value) if value is not None else None

    @property
    def is_urgent(self) -> bool:
        return self.severity in URGENT_SEVERITIES

@dataclass
class Subscription:
    """Live registration; mutated only through the distributor."""
    id: str
    center: Location
    radius: float
    data_types: Set[DataType]
    update_interval: float
    priority: SubscriptionPriority
    callback: Callable[[RealtimeUpdate], Any]
    active: bool = True
    confirmed: bool = False
    created_at: float = 0.0
    last_delivery: Optional[float] = None
    delivery_lock: asyncio.Lock = field(default_factory=asyncio.Lock, repr=False)

    def wire_payload(self) -> Dict[str, Any]:
        return {
            "subscription_id": self.id,
            "location": {"latitude": self.center.latitude, "longitude": self.center.longitude},
            "radius": self.radius,
            "data_types": sorted(t.value for t in self.data_types),
            "update_interval": self.update_interval,
            "priority": self.priority.value,
            "active": self.active
        }

class SubscriptionInfo(BaseModel):
    id: str
    center: Location
    radius: float
    data_types: List[DataType]
    update_interval: float
    priority: SubscriptionPriority
    active: bool
    confirmed: bool
    last_delivery: Optional[datetime] = None

class ConnectionStatus(BaseModel):
    connected: bool
    state: ConnectionState
    indicator: StatusIndicator
    quality: ConnectionQuality
    latency_ms: Optional[float] = None
    reconnect_attempts: int = 0
    last_connected: Optional[datetime] = None
    active_subscriptions: int = 0
    queued_messages: int = 0
    bytes_sent: int = 0
    bytes_received: int = 0
    battery_optimization: bool = False
