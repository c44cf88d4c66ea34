"""
Real-time update distribution.

One RealtimeDistributor owns one persistent connection and a registry of
spatial subscriptions. Incoming updates are matched by data type and
haversine distance, throttled per subscription, and handed to the
subscription callbacks one at a time.

Connection lifecycle:
    DISCONNECTED -> CONNECTING -> CONNECTED
    CONNECTED --(abnormal close)--> RECONNECTING --(success)--> CONNECTED
    RECONNECTING --(max attempts)--> FAILED  (only an explicit connect() leaves it)
"""
import asyncio
import contextlib
import inspect
import json
import logging
import math
import random
import time
import uuid
from collections import defaultdict, deque
from typing import Any, Callable, Deque, Dict, Iterable, List, Optional

from core.config import settings
from features.common.exceptions.soundings_exceptions import (
    ConnectionFailedError,
    InvalidSubscriptionError,
)
from features.common.models.location_types import Location
from features.common.utils.time_utils import from_epoch
from features.realtime.models.realtime_types import (
    ConnectionQuality,
    ConnectionState,
    ConnectionStatus,
    DataType,
    MessageType,
    RealtimeUpdate,
    StatusIndicator,
    Subscription,
    SubscriptionInfo,
    SubscriptionPriority,
    UpdateSeverity,
)
from features.realtime.services.transport import AiohttpWebSocketTransport, Transport

logger = logging.getLogger(__name__)

Listener = Callable[[Any], Any]

NORMAL_CLOSURE = 1000

EVENT_FOR_MESSAGE = {
    MessageType.UPDATE: "dataUpdate",
    MessageType.ALERT: "alertReceived",
    MessageType.EMERGENCY: "emergencyReceived",
}

async def _call(callback: Callable[..., Any], *args: Any) -> None:
    result = callback(*args)
    if inspect.isawaitable(result):
        await result

class RealtimeDistributor:
    """Live connection, subscription registry and update fan-out."""

    def __init__(
        self,
        url: Optional[str] = None,
        transport_factory: Optional[Callable[[], Transport]] = None,
        config: Optional[Dict[str, Any]] = None,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], Any] = asyncio.sleep,
        rng: Callable[[], float] = random.random
    ):
        cfg = {**settings.realtime, **(config or {})}
        self.url = url or settings.realtime_url
        self._transport_factory = transport_factory or AiohttpWebSocketTransport
        self._clock = clock
        self._sleep = sleep
        self._random = rng

        self.reconnect_interval = float(cfg["reconnect_interval"])
        self.max_reconnect_delay = float(cfg["max_reconnect_delay"])
        self.max_reconnect_attempts = int(cfg["max_reconnect_attempts"])
        self.heartbeat_interval = float(cfg["heartbeat_interval"])
        self.connect_timeout = float(cfg["connect_timeout"])
        self.battery_optimization = bool(cfg["battery_optimization"])
        self.data_throttling = bool(cfg["data_throttling"])
        self.low_priority_min_interval = float(cfg["low_priority_min_interval"])
        self.emergency_radius = float(cfg["emergency_radius"])
        self.emergency_interval = float(cfg["emergency_interval"])

        self.state = ConnectionState.DISCONNECTED
        self.quality = ConnectionQuality.UNKNOWN
        self.latency_ms: Optional[float] = None
        self.reconnect_attempts = 0
        self.last_connected: Optional[float] = None
        self.bytes_sent = 0
        self.bytes_received = 0

        self._transport: Optional[Transport] = None
        self._subscriptions: Dict[str, Subscription] = {}
        self._listeners: Dict[str, List[Listener]] = defaultdict(list)
        self._outbox: Deque[str] = deque()
        self._reader_task: Optional[asyncio.Task] = None
        self._heartbeat_task: Optional[asyncio.Task] = None
        self._reconnect_task: Optional[asyncio.Task] = None
        self._heartbeat_sent_at: Optional[float] = None
        self._closing = False

    # Observer registry

    def on(self, event: str, listener: Listener) -> None:
        self._listeners[event].append(listener)

    def off(self, event: str, listener: Listener) -> None:
        with contextlib.suppress(ValueError):
            self._listeners[event].remove(listener)

    async def _emit(self, event: str, payload: Any = None) -> None:
        for listener in list(self._listeners.get(event, ())):
            try:
                await _call(listener, payload)
            except Exception as e:
                logger.error(f"Listener for '{event}' failed: {str(e)}")

    # Connection lifecycle

    @property
    def is_connected(self) -> bool:
        return self.state == ConnectionState.CONNECTED

    def _set_state(self, state: ConnectionState) -> None:
        if state != self.state:
            logger.info(f"Realtime connection {self.state.value} -> {state.value}")
            self.state = state

    def reconnect_delay(self, attempt: int) -> float:
        """Backoff before reconnect attempt n (1-based)."""
        return min(self.reconnect_interval * 2 ** (attempt - 1), self.max_reconnect_delay)

    async def connect(self) -> bool:
        """Open the connection. Also the only way out of the FAILED state."""
        if self.state in (ConnectionState.CONNECTED, ConnectionState.CONNECTING):
            return self.is_connected
        self._closing = False
        await self._cancel_task(self._reconnect_task)
        self._reconnect_task = None
        self.reconnect_attempts = 0
        self._set_state(ConnectionState.CONNECTING)
        try:
            await self._open()
        except ConnectionFailedError as e:
            logger.warning(f"Realtime connect failed: {str(e)}")
            await self._emit("error", e)
            self._schedule_reconnect()
            return False
        return True

    async def _open(self) -> None:
        transport = self._transport_factory()
        try:
            await asyncio.wait_for(transport.connect(self.url), timeout=self.connect_timeout)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            with contextlib.suppress(Exception):
                await transport.close()
            raise ConnectionFailedError(
                f"Cannot connect to {self.url}: {str(e) or e.__class__.__name__}",
                attempts=self.reconnect_attempts
            ) from e

        self._transport = transport
        self.reconnect_attempts = 0
        self.last_connected = self._clock()
        self._set_state(ConnectionState.CONNECTED)
        loop = asyncio.get_running_loop()
        self._reader_task = loop.create_task(self._read_loop(transport))
        self._heartbeat_task = loop.create_task(self._heartbeat_loop())

        # Re-announce before flushing so queued messages can reference live subscriptions
        for subscription in list(self._subscriptions.values()):
            if subscription.active:
                await self._send_now(MessageType.SUBSCRIBE, subscription.wire_payload())
        await self._flush_outbox()
        await self._emit("connected", self.get_connection_status())

    def _schedule_reconnect(self) -> None:
        if self._closing or (self._reconnect_task and not self._reconnect_task.done()):
            return
        self._reconnect_task = asyncio.get_running_loop().create_task(self._reconnect_loop())

    async def _reconnect_loop(self) -> None:
        while not self._closing:
            if self.reconnect_attempts >= self.max_reconnect_attempts:
                self._set_state(ConnectionState.FAILED)
                error = ConnectionFailedError(
                    f"Realtime connection lost, gave up after {self.reconnect_attempts} attempts",
                    attempts=self.reconnect_attempts
                )
                logger.error(str(error))
                await self._emit("error", error)
                await self._emit("reconnectionFailed", {"attempts": self.reconnect_attempts})
                return

            self.reconnect_attempts += 1
            delay = self.reconnect_delay(self.reconnect_attempts)
            self._set_state(ConnectionState.RECONNECTING)
            logger.info(
                f"Reconnect attempt {self.reconnect_attempts}/{self.max_reconnect_attempts} in {delay:.1f}s"
            )
            await self._sleep(delay)
            if self._closing:
                return
            try:
                await self._open()
                return
            except ConnectionFailedError as e:
                logger.warning(f"Reconnect attempt {self.reconnect_attempts} failed: {str(e)}")

    async def _handle_connection_lost(self, transport: Transport) -> None:
        code = transport.close_code
        self._transport = None
        self._reader_task = None
        await self._cancel_task(self._heartbeat_task)
        self._heartbeat_task = None
        self.quality = ConnectionQuality.UNKNOWN
        await self._emit("disconnected", {"code": code})

        if code == NORMAL_CLOSURE:
            logger.info("Realtime server closed the connection normally")
            self._set_state(ConnectionState.DISCONNECTED)
            return
        logger.warning(f"Realtime connection closed abnormally (code {code})")
        self._set_state(ConnectionState.RECONNECTING)
        self._schedule_reconnect()

    async def disconnect(self) -> None:
        """Stop timers first, then the reader, then close the connection."""
        self._closing = True
        await self._cancel_task(self._heartbeat_task)
        await self._cancel_task(self._reconnect_task)
        self._heartbeat_task = None
        self._reconnect_task = None
        await self._cancel_task(self._reader_task)
        self._reader_task = None

        transport, self._transport = self._transport, None
        if transport is not None:
            try:
                await transport.close(NORMAL_CLOSURE)
            except Exception as e:
                logger.warning(f"Error closing realtime connection: {str(e)}")
        was_connected = self.state != ConnectionState.DISCONNECTED
        self._set_state(ConnectionState.DISCONNECTED)
        self.quality = ConnectionQuality.UNKNOWN
        if was_connected:
            await self._emit("disconnected", {"code": NORMAL_CLOSURE, "reason": "client disconnect"})

    async def destroy(self) -> None:
        """Disconnect and drop every subscription, listener and queued message."""
        await self.disconnect()
        self._subscriptions.clear()
        self._outbox.clear()
        self._listeners.clear()

    @staticmethod
    async def _cancel_task(task: Optional[asyncio.Task]) -> None:
        if task is None or task.done() or task is asyncio.current_task():
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task

    # Messaging

    def _envelope(self, message_type: MessageType, data: Any) -> str:
        return json.dumps({
            "type": MessageType(message_type).value,
            "data": data,
            "timestamp": int(self._clock() * 1000)
        }, default=str)

    async def _send_now(self, message_type: MessageType, data: Any) -> bool:
        """Send if the connection is open; returns False if it is not."""
        transport = self._transport
        if not self.is_connected or transport is None:
            return False
        message = self._envelope(message_type, data)
        try:
            await transport.send(message)
        except Exception as e:
            logger.warning(f"Send of {MessageType(message_type).value} failed: {str(e)}")
            return False
        self.bytes_sent += len(message)
        return True

    async def send(self, message_type: MessageType, data: Any) -> bool:
        """Send now, or queue for the next time the connection opens."""
        if await self._send_now(message_type, data):
            return True
        self._outbox.append(self._envelope(message_type, data))
        logger.debug(f"Queued {MessageType(message_type).value} message, {len(self._outbox)} waiting")
        return False

    async def _flush_outbox(self) -> None:
        while self._outbox and self.is_connected and self._transport is not None:
            message = self._outbox[0]
            try:
                await self._transport.send(message)
            except Exception as e:
                logger.warning(f"Outbox flush interrupted: {str(e)}")
                return
            self._outbox.popleft()
            self.bytes_sent += len(message)

    async def _heartbeat_loop(self) -> None:
        while True:
            await asyncio.sleep(self.heartbeat_interval)
            await self.send_heartbeat()

    async def send_heartbeat(self) -> None:
        self._heartbeat_sent_at = self._clock()
        await self._send_now(MessageType.HEARTBEAT, {"sent_at": self._heartbeat_sent_at})

    def _record_latency(self) -> None:
        if self._heartbeat_sent_at is None:
            return
        self.latency_ms = (self._clock() - self._heartbeat_sent_at) * 1000
        self.quality = ConnectionQuality.from_latency(self.latency_ms)
        self._heartbeat_sent_at = None

    async def _read_loop(self, transport: Transport) -> None:
        try:
            while True:
                raw = await transport.receive()
                if raw is None:
                    break
                self.bytes_received += len(raw)
                await self._handle_message(raw)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"Realtime reader stopped: {str(e)}")
        if transport is self._transport and not self._closing:
            await self._handle_connection_lost(transport)

    async def _handle_message(self, raw: str) -> None:
        try:
            message = json.loads(raw)
            message_type = MessageType(message["type"])
        except (ValueError, KeyError, TypeError) as e:
            logger.warning(f"Ignoring malformed realtime message: {str(e)}")
            return
        data = message.get("data") or {}

        if message_type == MessageType.HEARTBEAT_RESPONSE:
            self._record_latency()
        elif message_type == MessageType.HEARTBEAT:
            self._record_latency()
            await self._send_now(MessageType.HEARTBEAT_RESPONSE, {"received_at": self._clock()})
        elif message_type == MessageType.SUBSCRIPTION_CONFIRMED:
            subscription = self._subscriptions.get(data.get("subscription_id"))
            if subscription is not None:
                subscription.confirmed = True
            await self._emit("subscriptionConfirmed", data)
        elif message_type in EVENT_FOR_MESSAGE:
            try:
                update = self._parse_update(message_type, data)
            except ValueError as e:
                logger.warning(f"Ignoring invalid {message_type.value} payload: {str(e)}")
                return
            await self.dispatch_update(update)
            await self._emit(EVENT_FOR_MESSAGE[message_type], update)
        elif message_type == MessageType.ERROR:
            logger.warning(f"Realtime server error: {data}")
            await self._emit("error", data)

    @staticmethod
    def _parse_update(message_type: MessageType, data: Dict[str, Any]) -> RealtimeUpdate:
        defaults: Dict[str, Any] = {}
        if message_type == MessageType.ALERT:
            defaults = {"type": DataType.ALERT, "severity": UpdateSeverity.WARNING}
        elif message_type == MessageType.EMERGENCY:
            defaults = {"type": DataType.EMERGENCY, "severity": UpdateSeverity.EMERGENCY}
        return RealtimeUpdate.model_validate({**defaults, **data})

    # Subscriptions

    def _validate(
        self,
        location: Any,
        radius: float,
        data_types: Iterable[Any],
        update_interval: float,
        priority: Any
    ):
        try:
            center = location if isinstance(location, Location) else Location.model_validate(location)
        except ValueError as e:
            raise InvalidSubscriptionError(f"Invalid location: {str(e)}") from e
        if not isinstance(radius, (int, float)) or not math.isfinite(radius) or radius <= 0:
            raise InvalidSubscriptionError(f"Radius must be a positive number of meters, got {radius!r}")
        try:
            types = {DataType(t) for t in data_types}
        except (TypeError, ValueError) as e:
            raise InvalidSubscriptionError(f"Invalid data type: {str(e)}") from e
        if not types:
            raise InvalidSubscriptionError("At least one data type is required")
        if not isinstance(update_interval, (int, float)) or update_interval < 0:
            raise InvalidSubscriptionError(f"Update interval must be >= 0, got {update_interval!r}")
        try:
            level = SubscriptionPriority(priority)
        except ValueError as e:
            raise InvalidSubscriptionError(f"Invalid priority: {priority!r}") from e
        return center, float(radius), types, float(update_interval), level

    async def subscribe(
        self,
        location: Location,
        radius: float,
        data_types: Iterable[DataType],
        callback: Callable[[RealtimeUpdate], Any],
        update_interval: float = 30,
        priority: SubscriptionPriority = SubscriptionPriority.NORMAL
    ) -> str:
        """Register a subscription; announced now if connected, else on connect."""
        if not callable(callback):
            raise InvalidSubscriptionError("callback must be callable")
        center, radius, types, interval, level = self._validate(
            location, radius, data_types, update_interval, priority
        )
        subscription = Subscription(
            id=f"sub_{uuid.uuid4().hex[:12]}",
            center=center,
            radius=radius,
            data_types=types,
            update_interval=interval,
            priority=level,
            callback=callback,
            created_at=self._clock()
        )
        self._subscriptions[subscription.id] = subscription
        logger.info(
            f"Subscription {subscription.id}: {sorted(t.value for t in types)} within {radius:.0f} m"
        )
        await self._send_now(MessageType.SUBSCRIBE, subscription.wire_payload())
        return subscription.id

    async def unsubscribe(self, subscription_id: str) -> bool:
        """Remove a subscription; no callback runs for it after this call starts."""
        subscription = self._subscriptions.pop(subscription_id, None)
        if subscription is None:
            return False
        subscription.active = False
        await self._send_now(MessageType.UNSUBSCRIBE, {"subscription_id": subscription_id})
        return True

    async def update_subscription(self, subscription_id: str, **patch: Any) -> SubscriptionInfo:
        """Change location, radius, data_types, update_interval, priority or active."""
        subscription = self._subscriptions.get(subscription_id)
        if subscription is None:
            raise InvalidSubscriptionError(f"Unknown subscription {subscription_id}")
        allowed = {"location", "radius", "data_types", "update_interval", "priority", "active", "callback"}
        unknown = set(patch) - allowed
        if unknown:
            raise InvalidSubscriptionError(f"Cannot update {sorted(unknown)}")

        center, radius, types, interval, level = self._validate(
            patch.get("location", subscription.center),
            patch.get("radius", subscription.radius),
            patch.get("data_types", subscription.data_types),
            patch.get("update_interval", subscription.update_interval),
            patch.get("priority", subscription.priority)
        )
        if "callback" in patch and not callable(patch["callback"]):
            raise InvalidSubscriptionError("callback must be callable")

        subscription.center = center
        subscription.radius = radius
        subscription.data_types = types
        subscription.update_interval = interval
        subscription.priority = level
        subscription.active = bool(patch.get("active", subscription.active))
        subscription.callback = patch.get("callback", subscription.callback)
        await self._send_now(MessageType.UPDATE_SUBSCRIPTION, subscription.wire_payload())
        return self._info(subscription)

    async def request_emergency_updates(
        self,
        location: Location,
        data_type: DataType,
        callback: Callable[[RealtimeUpdate], Any]
    ) -> str:
        """Tight, critical-priority subscription plus an emergency notice to the server."""
        subscription_id = await self.subscribe(
            location,
            self.emergency_radius,
            {DataType(data_type), DataType.EMERGENCY},
            callback,
            update_interval=self.emergency_interval,
            priority=SubscriptionPriority.CRITICAL
        )
        center = self._subscriptions[subscription_id].center
        await self.send(MessageType.EMERGENCY, {
            "subscription_id": subscription_id,
            "location": {"latitude": center.latitude, "longitude": center.longitude},
            "data_type": DataType(data_type).value,
            "requested_at": self._clock()
        })
        logger.warning(f"Emergency updates requested near {center.latitude:.4f}, {center.longitude:.4f}")
        return subscription_id

    def enable_battery_optimization(self, enabled: bool = True) -> None:
        self.battery_optimization = enabled
        if enabled:
            # The low-priority interval floor only bites while throttling is on
            self.data_throttling = True
        logger.info(f"Battery optimization {'enabled' if enabled else 'disabled'}")

    # Delivery

    def _throttled(self, subscription: Subscription, now: float) -> bool:
        low_priority = subscription.priority == SubscriptionPriority.LOW
        interval = subscription.update_interval
        if self.battery_optimization and low_priority:
            interval = max(interval, self.low_priority_min_interval)
        if (
            self.data_throttling
            and subscription.last_delivery is not None
            and now - subscription.last_delivery < interval
        ):
            return True
        if self.battery_optimization and low_priority and self._random() < 0.5:
            return True
        return False

    async def dispatch_update(self, update: RealtimeUpdate) -> int:
        """Deliver an update to every matching subscription; returns how many got it."""
        now = self._clock()
        delivered = 0
        for subscription in list(self._subscriptions.values()):
            if not subscription.active or update.type not in subscription.data_types:
                continue
            if subscription.center.distance_to(update.location) > subscription.radius:
                continue
            if not update.is_urgent and self._throttled(subscription, now):
                continue
            async with subscription.delivery_lock:
                # Unsubscribed while an earlier callback ran
                if self._subscriptions.get(subscription.id) is not subscription:
                    continue
                subscription.last_delivery = now
                try:
                    await _call(subscription.callback, update)
                except Exception as e:
                    logger.error(f"Callback for subscription {subscription.id} failed: {str(e)}")
            delivered += 1
        return delivered

    # Status

    def _info(self, subscription: Subscription) -> SubscriptionInfo:
        return SubscriptionInfo(
            id=subscription.id,
            center=subscription.center,
            radius=subscription.radius,
            data_types=sorted(subscription.data_types, key=lambda t: t.value),
            update_interval=subscription.update_interval,
            priority=subscription.priority,
            active=subscription.active,
            confirmed=subscription.confirmed,
            last_delivery=from_epoch(subscription.last_delivery) if subscription.last_delivery else None
        )

    def get_active_subscriptions(self) -> List[SubscriptionInfo]:
        return [self._info(s) for s in self._subscriptions.values() if s.active]

    def get_connection_status(self) -> ConnectionStatus:
        if self.state == ConnectionState.CONNECTED:
            indicator = StatusIndicator.DEGRADED if self.quality == ConnectionQuality.POOR else StatusIndicator.CONNECTED
        elif self.state in (ConnectionState.CONNECTING, ConnectionState.RECONNECTING):
            indicator = StatusIndicator.DEGRADED
        else:
            indicator = StatusIndicator.OFFLINE
        return ConnectionStatus(
            connected=self.is_connected,
            state=self.state,
            indicator=indicator,
            quality=self.quality,
            latency_ms=self.latency_ms,
            reconnect_attempts=self.reconnect_attempts,
            last_connected=from_epoch(self.last_connected) if self.last_connected else None,
            active_subscriptions=sum(1 for s in self._subscriptions.values() if s.active),
            queued_messages=len(self._outbox),
            bytes_sent=self.bytes_sent,
            bytes_received=self.bytes_received,
            battery_optimization=self.battery_optimization
        )
