"""
Shared pytest fixtures.

Nothing here touches the network: weather providers, the CO-OPS datagetter
and the realtime transport are all replaced by in-memory fakes, and time
comes from a FakeClock so TTLs, rate limit windows and throttling can be
stepped deterministically.
"""

import asyncio
import json
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional

import pytest

from features.common.models.location_types import Location
from features.offline.services.offline_cache import OfflineCache
from features.offline.services.store import MemoryStore
from features.realtime.services.transport import Transport
from features.stations.services.station_locator import StationLocator
from features.weather.models.weather_types import (
    MarineAlert,
    ProviderCapability,
    WeatherForecast,
    WeatherProviderConfig,
    WeatherSnapshot,
)
from features.weather.services.providers import WeatherProvider
from repositories.station_repo import StationRepository

STATIONS_FILE = Path(__file__).resolve().parent.parent / "data" / "tide_stations.json"

# The Battery, NY (8518750) sits at 40.7006, -74.0142
BATTERY = Location(latitude=40.7006, longitude=-74.0142)
NEAR_BATTERY = Location(latitude=40.70, longitude=-74.01)
MID_ATLANTIC = Location(latitude=35.0, longitude=-50.0)

T0 = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)

# ---------------------------------------------------------------------------
# Time
# ---------------------------------------------------------------------------


class FakeClock:
    """Callable epoch-seconds clock that only moves when told to."""

    def __init__(self, start: float = T0.timestamp()):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


# ---------------------------------------------------------------------------
# Storage and stations
# ---------------------------------------------------------------------------


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def cache(store, clock):
    return OfflineCache(store=store, clock=clock)


@pytest.fixture
def repository():
    return StationRepository(STATIONS_FILE)


@pytest.fixture
def locator(repository, cache):
    return StationLocator(repository=repository, cache=cache)


# ---------------------------------------------------------------------------
# Weather providers
# ---------------------------------------------------------------------------


class FakeProvider(WeatherProvider):
    """Provider answering from canned data, or raising `error` on every call."""

    capabilities = {ProviderCapability.CURRENT, ProviderCapability.FORECAST, ProviderCapability.ALERTS}
    requires_api_key = False

    def __init__(
        self,
        provider_id: str,
        priority: int,
        hourly_limit: int = 100,
        error: Optional[Exception] = None,
        alerts: Optional[List[MarineAlert]] = None,
        enabled: bool = True,
        **fields
    ):
        super().__init__(WeatherProviderConfig(
            id=provider_id,
            name=f"Provider {provider_id}",
            priority=priority,
            hourly_limit=hourly_limit,
            base_url="http://weather.invalid",
            enabled=enabled
        ))
        self.error = error
        self.alerts = alerts or []
        self.fields = fields or {"wind_speed": 7.0, "pressure": 1011.25, "temperature": 14.0}
        self.calls = 0

    async def fetch_current(self, location: Location) -> WeatherSnapshot:
        self.calls += 1
        if self.error is not None:
            raise self.error
        return self._snapshot(location, T0, **self.fields)

    async def fetch_forecast(self, location: Location, hours: int) -> WeatherForecast:
        self.calls += 1
        if self.error is not None:
            raise self.error
        return WeatherForecast(
            location=location,
            source=self.id,
            issued_at=T0,
            horizon_hours=hours,
            snapshots=[self._snapshot(location, T0, **self.fields)]
        )

    async def fetch_alerts(self, location: Location) -> List[MarineAlert]:
        self.calls += 1
        if self.error is not None:
            raise self.error
        return list(self.alerts)


class KeyedProvider(FakeProvider):
    requires_api_key = True


# ---------------------------------------------------------------------------
# Realtime transport
# ---------------------------------------------------------------------------


class FakeTransport(Transport):
    """In-memory connection. Push server frames with `deliver`, end it with `server_close`."""

    def __init__(self, fail: bool = False):
        self.fail = fail
        self.url: Optional[str] = None
        self.sent: List[dict] = []
        self.closed = False
        self._incoming: asyncio.Queue = asyncio.Queue()
        self._close_code: Optional[int] = None

    async def connect(self, url: str) -> None:
        if self.fail:
            raise ConnectionRefusedError("connection refused")
        self.url = url

    async def send(self, message: str) -> None:
        if self.closed:
            raise ConnectionResetError("closed")
        self.sent.append(json.loads(message))

    async def receive(self) -> Optional[str]:
        return await self._incoming.get()

    async def close(self, code: int = 1000) -> None:
        self.closed = True
        self._close_code = code
        self._incoming.put_nowait(None)

    @property
    def close_code(self) -> Optional[int]:
        return self._close_code

    def deliver(self, message_type: str, data: dict) -> None:
        self._incoming.put_nowait(json.dumps({"type": message_type, "data": data}))

    def server_close(self, code: int) -> None:
        self.closed = True
        self._close_code = code
        self._incoming.put_nowait(None)

    def sent_types(self) -> List[str]:
        return [m["type"] for m in self.sent]


class TransportFactory:
    """Hands out FakeTransports; the first `failures` of them refuse to connect."""

    def __init__(self, failures: int = 0):
        self.failures = failures
        self.created: List[FakeTransport] = []

    def __call__(self) -> FakeTransport:
        transport = FakeTransport(fail=len(self.created) < self.failures)
        self.created.append(transport)
        return transport

    @property
    def last(self) -> FakeTransport:
        return self.created[-1]


async def settle(rounds: int = 20) -> None:
    """Let background tasks (reader, reconnect) run to their next await."""
    for _ in range(rounds):
        await asyncio.sleep(0)
