import asyncio
import logging
import time
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple, TypeVar

import aiohttp

from core.config import settings
from features.common.exceptions.soundings_exceptions import (
    AllProvidersFailedError,
    UpstreamDataError,
)
from features.common.models.location_types import Location
from features.common.services.rate_limiter import ConcurrencyGate, RollingWindowLimiter
from features.common.utils.time_utils import from_epoch
from features.offline.services.offline_cache import CacheNamespace, OfflineCache
from features.weather.models.weather_types import (
    MarineAlert,
    ProviderCapability,
    ProviderStatus,
    WeatherForecast,
    WeatherSnapshot,
)
from features.weather.services.providers import WeatherProvider, build_providers, finalize_snapshot

logger = logging.getLogger(__name__)

T = TypeVar("T")

class MultiProviderWeatherClient:
    """Current weather, forecasts and alerts with priority-ordered provider fallback.

    Each provider has its own rolling one-hour request budget. A provider that
    is over budget, unconfigured or failing is skipped and its reason recorded;
    only when every provider has been skipped or failed does the call raise
    AllProvidersFailedError listing each reason.
    """

    def __init__(
        self,
        providers: Optional[List[WeatherProvider]] = None,
        cache: Optional[OfflineCache] = None,
        clock: Callable[[], float] = time.time,
        max_concurrent: Optional[int] = None,
        timeout: Optional[float] = None
    ):
        self._clock = clock
        self.cache = cache if cache is not None else OfflineCache(clock=clock)
        self.gate = ConcurrencyGate(max_concurrent or settings.request["max_concurrent"])
        self.timeout = timeout or settings.request["timeout"]
        self._session: Optional[aiohttp.ClientSession] = None
        self._providers: Dict[str, WeatherProvider] = {}
        self._limiters: Dict[str, RollingWindowLimiter] = {}
        self._last_errors: Dict[str, str] = {}
        self._in_flight: Dict[str, asyncio.Future] = {}

        for provider in providers if providers is not None else build_providers(get_json=self._get_json):
            self._providers[provider.id] = provider
            self._limiters[provider.id] = RollingWindowLimiter(provider.config.hourly_limit, clock=clock)

    @property
    def providers(self) -> List[WeatherProvider]:
        return sorted(self._providers.values(), key=lambda p: p.priority)

    async def _init_session(self) -> aiohttp.ClientSession:
        if not self._session:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.timeout)
            )
        return self._session

    async def close(self):
        if self._session:
            await self._session.close()
            self._session = None

    async def _get_json(
        self,
        url: str,
        params: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None
    ) -> Any:
        """GET through the shared concurrency gate."""
        session = await self._init_session()
        async with self.gate:
            async with session.get(url, params=params, headers=headers) as response:
                if response.status >= 400:
                    raise UpstreamDataError(f"HTTP {response.status} from {url.split('?')[0]}")
                return await response.json(content_type=None)

    async def _shared(self, key: str, fetch: Callable[[], Awaitable[T]]) -> T:
        """Concurrent misses for one key share a single upstream fetch."""
        future = self._in_flight.get(key)
        if future is None:
            future = asyncio.ensure_future(fetch())
            self._in_flight[key] = future
            future.add_done_callback(lambda _: self._in_flight.pop(key, None))
        else:
            logger.debug(f"Joining in-flight fetch for {key}")
        return await asyncio.shield(future)

    async def _with_fallback(
        self,
        operation: str,
        capability: ProviderCapability,
        fetch: Callable[[WeatherProvider], Awaitable[T]]
    ) -> Tuple[T, str]:
        errors: Dict[str, str] = {}
        for provider in self.providers:
            if not provider.config.enabled:
                errors[provider.id] = "disabled"
                continue
            if not provider.supports(capability):
                errors[provider.id] = f"{capability.value} not supported"
                continue
            if not provider.is_configured:
                errors[provider.id] = "API key not configured"
                continue
            limiter = self._limiters[provider.id]
            if not limiter.can_request():
                errors[provider.id] = "rate limit exceeded"
                logger.warning(f"Provider {provider.id} rate limited, trying next provider")
                continue

            limiter.record()
            try:
                result = await fetch(provider)
            except Exception as e:
                reason = str(e) or e.__class__.__name__
                errors[provider.id] = reason
                self._last_errors[provider.id] = reason
                logger.warning(f"Provider {provider.id} failed for {operation}: {reason}")
                continue

            self._last_errors.pop(provider.id, None)
            return result, provider.id

        logger.error(f"All weather providers failed for {operation}: {errors}")
        raise AllProvidersFailedError(operation, errors)

    async def get_current_weather(self, location: Location) -> WeatherSnapshot:
        """Current marine weather, cached per rounded location."""
        key = location.cache_key()
        cached = self.cache.get_model(CacheNamespace.WEATHER, key, WeatherSnapshot)
        if cached is not None:
            logger.debug(f"Weather cache hit for {key}")
            return cached
        return await self._shared(f"current:{key}", lambda: self._fetch_current(location, key))

    async def _fetch_current(self, location: Location, key: str) -> WeatherSnapshot:
        snapshot, provider_id = await self._with_fallback(
            "current weather",
            ProviderCapability.CURRENT,
            lambda provider: provider.fetch_current(location)
        )
        snapshot = finalize_snapshot(snapshot.model_copy(update={"source": provider_id}))
        self.cache.put(CacheNamespace.WEATHER, key, snapshot, source=provider_id)
        return snapshot

    async def get_forecast(self, location: Location, hours: int = 48) -> WeatherForecast:
        """Forecast snapshots for the next `hours`."""
        key = f"{location.cache_key()}:{hours}"
        cached = self.cache.get_model(CacheNamespace.FORECASTS, key, WeatherForecast)
        if cached is not None:
            return cached
        return await self._shared(f"forecast:{key}", lambda: self._fetch_forecast(location, hours, key))

    async def _fetch_forecast(self, location: Location, hours: int, key: str) -> WeatherForecast:
        forecast, provider_id = await self._with_fallback(
            "forecast",
            ProviderCapability.FORECAST,
            lambda provider: provider.fetch_forecast(location, hours)
        )
        forecast = forecast.model_copy(update={
            "source": provider_id,
            "snapshots": [
                finalize_snapshot(s.model_copy(update={"source": provider_id}))
                for s in forecast.snapshots
            ]
        })
        self.cache.put(CacheNamespace.FORECASTS, key, forecast, source=provider_id)
        return forecast

    async def get_marine_alerts(self, location: Location) -> List[MarineAlert]:
        """Active marine alerts for a location, de-duplicated by id."""
        key = location.cache_key()
        cached = self.cache.get_model(CacheNamespace.ALERTS, f"location:{key}", List[MarineAlert])
        if cached is not None:
            return cached
        return await self._shared(f"alerts:{key}", lambda: self._fetch_alerts(location, key))

    async def _fetch_alerts(self, location: Location, key: str) -> List[MarineAlert]:
        alerts, provider_id = await self._with_fallback(
            "alerts",
            ProviderCapability.ALERTS,
            lambda provider: provider.fetch_alerts(location)
        )
        unique: Dict[str, MarineAlert] = {}
        for alert in alerts:
            unique.setdefault(alert.id, alert)
        alerts = list(unique.values())
        self.cache.cache_alerts(key, alerts, source=provider_id)
        return alerts

    def get_provider_status(self) -> List[ProviderStatus]:
        statuses = []
        for provider in self.providers:
            limiter = self._limiters[provider.id]
            reset_time = limiter.reset_time
            statuses.append(ProviderStatus(
                id=provider.id,
                name=provider.config.name,
                priority=provider.priority,
                enabled=provider.config.enabled,
                configured=provider.is_configured,
                capabilities=provider.capabilities,
                requests_remaining=limiter.remaining,
                reset_time=from_epoch(reset_time) if reset_time else None,
                last_error=self._last_errors.get(provider.id)
            ))
        return statuses

    def configure_provider(
        self,
        provider_id: str,
        api_key: Optional[str] = None,
        enabled: Optional[bool] = None,
        hourly_limit: Optional[int] = None
    ) -> ProviderStatus:
        """Update a provider at runtime. Raises KeyError for unknown providers."""
        provider = self._providers[provider_id]
        updates: Dict[str, Any] = {}
        if api_key is not None:
            updates["api_key"] = api_key
        if enabled is not None:
            updates["enabled"] = enabled
        if hourly_limit is not None:
            if hourly_limit < 1:
                raise ValueError("hourly_limit must be positive")
            updates["hourly_limit"] = hourly_limit
            self._limiters[provider_id].limit = hourly_limit
        provider.config = provider.config.model_copy(update=updates)
        logger.info(f"Reconfigured weather provider {provider_id}: {sorted(updates)}")
        return next(s for s in self.get_provider_status() if s.id == provider_id)

    def clear_cache(self) -> int:
        cleared = sum(
            self.cache.clear_namespace(namespace)
            for namespace in (CacheNamespace.WEATHER, CacheNamespace.FORECASTS, CacheNamespace.ALERTS)
        )
        logger.info(f"Cleared {cleared} cached weather entries")
        return cleared
