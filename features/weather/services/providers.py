"""
Weather provider adapters.

Every provider implements the same fetch contract (current, forecast, alerts)
and only extracts the marine fields the rest of the system uses. HTTP is
delegated to an injected `get_json` coroutine so the owning client controls
sessions, timeouts and the concurrency gate.
"""
import hashlib
import logging
import math
import re
from abc import ABC
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set

from core.config import settings
from features.common.exceptions.soundings_exceptions import (
    ProviderUnavailableError,
    UpstreamDataError,
)
from features.common.models.location_types import Location
from features.common.utils.conversions import UnitConversions
from features.common.utils.time_utils import from_epoch, parse_upstream_time
from features.weather.models.weather_types import (
    AlertSeverity,
    AlertType,
    MarineAlert,
    ProviderCapability,
    SeaState,
    WeatherForecast,
    WeatherProviderConfig,
    WeatherSnapshot,
)

logger = logging.getLogger(__name__)

JsonGetter = Callable[..., Awaitable[Any]]

MARINE_EVENT_KEYWORDS = ("marine", "coastal", "gale", "storm", "small craft", "surf", "hurricane", "fog", "spray")

def categorize_conditions(
    wind_speed: Optional[float],
    visibility: Optional[float],
    precipitation: Optional[float]
) -> str:
    """Short summary used when a provider has no description of its own."""
    if precipitation is not None and precipitation > 2.5:
        return "Heavy Rain"
    if precipitation is not None and precipitation > 0.5:
        return "Light Rain"
    if visibility is not None and visibility < 1:
        return "Fog"
    if wind_speed is not None and wind_speed > 15:
        return "Strong Winds"
    if wind_speed is not None and wind_speed > 8:
        return "Moderate Winds"
    return "Clear"

def classify_alert_type(event: str) -> AlertType:
    event = (event or "").lower()
    if "hurricane" in event or "tropical" in event:
        return AlertType.HURRICANE
    if "gale" in event:
        return AlertType.GALE
    if "storm" in event:
        return AlertType.STORM
    if "small craft" in event:
        return AlertType.SMALL_CRAFT
    if "fog" in event:
        return AlertType.FOG
    if "surf" in event:
        return AlertType.HIGH_SURF
    if "flood" in event:
        return AlertType.COASTAL_FLOOD
    if "ice" in event or "spray" in event:
        return AlertType.ICE
    if "marine" in event:
        return AlertType.MARINE_WEATHER
    return AlertType.OTHER

def classify_alert_severity(severity: Optional[str]) -> AlertSeverity:
    try:
        return AlertSeverity((severity or "").strip().lower())
    except ValueError:
        return AlertSeverity.MINOR

def is_marine_event(event: str) -> bool:
    event = (event or "").lower()
    return any(keyword in event for keyword in MARINE_EVENT_KEYWORDS)

def finalize_snapshot(snapshot: WeatherSnapshot) -> WeatherSnapshot:
    """Fill derived fields (sea state, conditions) the provider left empty."""
    updates: Dict[str, Any] = {}
    if snapshot.sea_state is None:
        state = SeaState.from_wave_height(snapshot.wave_height)
        if state is not None:
            updates["sea_state"] = state.code
    if not snapshot.conditions:
        updates["conditions"] = categorize_conditions(
            snapshot.wind_speed, snapshot.visibility, snapshot.precipitation
        )
    return snapshot.model_copy(update=updates) if updates else snapshot

class WeatherProvider(ABC):
    """Common fetch contract. Unsupported operations raise ProviderUnavailableError."""

    capabilities: Set[ProviderCapability] = {ProviderCapability.CURRENT}
    requires_api_key = True
    default_confidence = 0.8

    def __init__(self, config: WeatherProviderConfig, get_json: Optional[JsonGetter] = None):
        self.config = config
        self._get_json = get_json

    @property
    def id(self) -> str:
        return self.config.id

    @property
    def priority(self) -> int:
        return self.config.priority

    @property
    def is_configured(self) -> bool:
        return not self.requires_api_key or bool(self.config.api_key)

    def supports(self, capability: ProviderCapability) -> bool:
        return capability in self.capabilities

    async def get_json(self, url: str, params: Optional[Dict[str, Any]] = None,
                       headers: Optional[Dict[str, str]] = None) -> Any:
        if self._get_json is None:
            raise ProviderUnavailableError(self.id, "no HTTP transport configured")
        return await self._get_json(url, params=params, headers=headers)

    async def fetch_current(self, location: Location) -> WeatherSnapshot:
        raise ProviderUnavailableError(self.id, "current weather not supported")

    async def fetch_forecast(self, location: Location, hours: int) -> WeatherForecast:
        raise ProviderUnavailableError(self.id, "forecast not supported")

    async def fetch_alerts(self, location: Location) -> List[MarineAlert]:
        raise ProviderUnavailableError(self.id, "alerts not supported")

    def _snapshot(self, location: Location, timestamp: datetime, **fields) -> WeatherSnapshot:
        return finalize_snapshot(WeatherSnapshot(
            location=location,
            timestamp=timestamp,
            source=self.id,
            confidence=self.default_confidence,
            **fields
        ))

class StormglassProvider(WeatherProvider):
    """Stormglass point weather; prefers the NOAA model value, then Stormglass' own."""

    capabilities = {ProviderCapability.CURRENT, ProviderCapability.FORECAST}
    default_confidence = 0.9
    PARAMS = (
        "airTemperature,waterTemperature,windSpeed,windDirection,gust,waveHeight,wavePeriod,"
        "waveDirection,visibility,pressure,humidity,precipitation,swellHeight,swellDirection,"
        "swellPeriod,currentSpeed,currentDirection"
    )

    @staticmethod
    def _value(hour: Dict[str, Any], field: str) -> Optional[float]:
        sources = hour.get(field) or {}
        for source in ("noaa", "sg"):
            if sources.get(source) is not None:
                return float(sources[source])
        return None

    def parse_hour(self, hour: Dict[str, Any], location: Location) -> WeatherSnapshot:
        value = lambda field: self._value(hour, field)
        timestamp = parse_upstream_time(hour.get("time"))
        if timestamp is None:
            raise UpstreamDataError(f"{self.id}: hour without time")
        return self._snapshot(
            location,
            timestamp,
            temperature=value("airTemperature"),
            water_temperature=value("waterTemperature"),
            humidity=value("humidity"),
            pressure=value("pressure"),
            visibility=value("visibility"),
            wind_speed=value("windSpeed"),
            wind_direction=value("windDirection"),
            wind_gust=value("gust"),
            wave_height=value("waveHeight"),
            wave_period=value("wavePeriod"),
            wave_direction=value("waveDirection"),
            swell_height=value("swellHeight"),
            swell_period=value("swellPeriod"),
            swell_direction=value("swellDirection"),
            current_speed=value("currentSpeed"),
            current_direction=value("currentDirection"),
            precipitation=value("precipitation")
        )

    async def _fetch_hours(self, location: Location, start: datetime, end: datetime) -> List[Dict[str, Any]]:
        data = await self.get_json(
            f"{self.config.base_url}/weather/point",
            params={
                "lat": location.latitude,
                "lng": location.longitude,
                "params": self.PARAMS,
                "start": int(start.timestamp()),
                "end": int(end.timestamp())
            },
            headers={"Authorization": self.config.api_key or ""}
        )
        hours = (data or {}).get("hours") or []
        if not hours:
            raise UpstreamDataError(f"{self.id}: response contained no hourly data")
        return hours

    async def fetch_current(self, location: Location) -> WeatherSnapshot:
        now = datetime.now(timezone.utc).replace(minute=0, second=0, microsecond=0)
        hours = await self._fetch_hours(location, now, now)
        return self.parse_hour(hours[0], location)

    async def fetch_forecast(self, location: Location, hours: int) -> WeatherForecast:
        now = datetime.now(timezone.utc).replace(minute=0, second=0, microsecond=0)
        rows = await self._fetch_hours(location, now, now + timedelta(hours=hours))
        return WeatherForecast(
            location=location,
            source=self.id,
            issued_at=now,
            horizon_hours=hours,
            snapshots=[self.parse_hour(row, location) for row in rows[:hours + 1]]
        )

class OpenWeatherProvider(WeatherProvider):
    """OpenWeatherMap current weather and 3-hourly forecast (metric units)."""

    capabilities = {ProviderCapability.CURRENT, ProviderCapability.FORECAST}

    def parse_observation(self, data: Dict[str, Any], location: Location) -> WeatherSnapshot:
        try:
            main = data["main"]
            wind = data.get("wind") or {}
            weather = data.get("weather") or [{}]
            precipitation = (data.get("rain") or {}).get("1h")
            if precipitation is None:
                precipitation = (data.get("snow") or {}).get("1h")
            visibility = data.get("visibility")
            return self._snapshot(
                location,
                from_epoch(data["dt"]),
                temperature=main.get("temp"),
                humidity=main.get("humidity"),
                pressure=main.get("pressure"),
                visibility=visibility / 1000 if visibility is not None else None,
                wind_speed=wind.get("speed"),
                wind_direction=wind.get("deg"),
                wind_gust=wind.get("gust"),
                precipitation=precipitation,
                conditions=weather[0].get("description")
            )
        except (KeyError, TypeError) as e:
            raise UpstreamDataError(f"{self.id}: malformed observation ({e})") from e

    def _params(self, location: Location) -> Dict[str, Any]:
        return {
            "lat": location.latitude,
            "lon": location.longitude,
            "appid": self.config.api_key,
            "units": "metric"
        }

    async def fetch_current(self, location: Location) -> WeatherSnapshot:
        data = await self.get_json(f"{self.config.base_url}/weather", params=self._params(location))
        return self.parse_observation(data, location)

    async def fetch_forecast(self, location: Location, hours: int) -> WeatherForecast:
        data = await self.get_json(f"{self.config.base_url}/forecast", params=self._params(location))
        rows = (data or {}).get("list") or []
        return WeatherForecast(
            location=location,
            source=self.id,
            issued_at=datetime.now(timezone.utc),
            horizon_hours=hours,
            snapshots=[self.parse_observation(row, location) for row in rows[:math.ceil(hours / 3)]]
        )

class WeatherApiProvider(WeatherProvider):
    """WeatherAPI.com current, hourly forecast and alerts."""

    capabilities = {ProviderCapability.CURRENT, ProviderCapability.FORECAST, ProviderCapability.ALERTS}

    def parse_current(self, current: Dict[str, Any], location: Location, epoch_field: str) -> WeatherSnapshot:
        try:
            return self._snapshot(
                location,
                from_epoch(current[epoch_field]),
                temperature=current.get("temp_c"),
                humidity=current.get("humidity"),
                pressure=current.get("pressure_mb"),
                visibility=current.get("vis_km"),
                wind_speed=UnitConversions.kph_to_ms(current.get("wind_kph")),
                wind_direction=current.get("wind_degree"),
                wind_gust=UnitConversions.kph_to_ms(current.get("gust_kph")),
                precipitation=current.get("precip_mm"),
                conditions=(current.get("condition") or {}).get("text")
            )
        except (KeyError, TypeError) as e:
            raise UpstreamDataError(f"{self.id}: malformed payload ({e})") from e

    def parse_alert(self, alert: Dict[str, Any], location: Location) -> MarineAlert:
        event = alert.get("event") or alert.get("headline") or "Weather alert"
        effective = alert.get("effective") or ""
        digest = hashlib.sha1(f"{event}|{effective}|{alert.get('areas', '')}".encode()).hexdigest()[:16]
        return MarineAlert(
            id=f"{self.id}-{digest}",
            type=classify_alert_type(event),
            severity=classify_alert_severity(alert.get("severity")),
            title=alert.get("headline") or event,
            description=alert.get("desc"),
            area=alert.get("areas"),
            location=location,
            valid_from=parse_upstream_time(effective),
            valid_to=parse_upstream_time(alert.get("expires")),
            source=self.id
        )

    async def fetch_current(self, location: Location) -> WeatherSnapshot:
        data = await self.get_json(
            f"{self.config.base_url}/current.json",
            params={"key": self.config.api_key, "q": f"{location.latitude},{location.longitude}"}
        )
        return self.parse_current((data or {}).get("current") or {}, location, "last_updated_epoch")

    async def fetch_forecast(self, location: Location, hours: int) -> WeatherForecast:
        data = await self.get_json(
            f"{self.config.base_url}/forecast.json",
            params={
                "key": self.config.api_key,
                "q": f"{location.latitude},{location.longitude}",
                "days": max(1, math.ceil(hours / 24))
            }
        )
        rows = [
            hour
            for day in ((data or {}).get("forecast") or {}).get("forecastday", [])
            for hour in day.get("hour", [])
        ]
        return WeatherForecast(
            location=location,
            source=self.id,
            issued_at=datetime.now(timezone.utc),
            horizon_hours=hours,
            snapshots=[self.parse_current(row, location, "time_epoch") for row in rows[:hours]]
        )

    async def fetch_alerts(self, location: Location) -> List[MarineAlert]:
        data = await self.get_json(
            f"{self.config.base_url}/alerts.json",
            params={"key": self.config.api_key, "q": f"{location.latitude},{location.longitude}"}
        )
        raw_alerts = ((data or {}).get("alerts") or {}).get("alert") or []
        return [
            self.parse_alert(alert, location)
            for alert in raw_alerts
            if is_marine_event(alert.get("event") or alert.get("headline") or "")
        ]

class NWSProvider(WeatherProvider):
    """National Weather Service (US only, no API key, requires a User-Agent)."""

    capabilities = {ProviderCapability.CURRENT, ProviderCapability.FORECAST, ProviderCapability.ALERTS}
    requires_api_key = False
    default_confidence = 0.85
    WIND_PATTERN = re.compile(r"(\d+)\s*mph", re.IGNORECASE)

    def __init__(self, config: WeatherProviderConfig, get_json: Optional[JsonGetter] = None,
                 user_agent: Optional[str] = None):
        super().__init__(config, get_json)
        self.headers = {
            "User-Agent": user_agent or settings.nws_user_agent,
            "Accept": "application/geo+json"
        }

    def parse_period(self, period: Dict[str, Any], location: Location) -> WeatherSnapshot:
        timestamp = parse_upstream_time(period.get("startTime"))
        if timestamp is None:
            raise UpstreamDataError(f"{self.id}: forecast period without start time")
        temperature = period.get("temperature")
        if temperature is not None and period.get("temperatureUnit", "F") == "F":
            temperature = UnitConversions.fahrenheit_to_celsius(temperature)
        # "10 to 15 mph" reports a range; keep the upper bound
        speeds = self.WIND_PATTERN.findall(period.get("windSpeed") or "")
        if not speeds:
            speeds = re.findall(r"\d+", period.get("windSpeed") or "")
        wind_speed = UnitConversions.mph_to_ms(float(speeds[-1])) if speeds else None
        return self._snapshot(
            location,
            timestamp,
            temperature=temperature,
            wind_speed=wind_speed,
            wind_direction=UnitConversions.degrees_from_cardinal(period.get("windDirection")),
            conditions=period.get("shortForecast")
        )

    def parse_alert(self, feature: Dict[str, Any], location: Location) -> MarineAlert:
        properties = feature.get("properties") or {}
        event = properties.get("event") or "Marine alert"
        return MarineAlert(
            id=feature.get("id") or properties.get("id"),
            type=classify_alert_type(event),
            severity=classify_alert_severity(properties.get("severity")),
            title=properties.get("headline") or event,
            description=properties.get("description"),
            area=properties.get("areaDesc"),
            location=location,
            valid_from=parse_upstream_time(properties.get("onset") or properties.get("effective")),
            valid_to=parse_upstream_time(properties.get("expires")),
            source=self.id
        )

    async def _periods(self, location: Location, forecast_field: str) -> List[Dict[str, Any]]:
        point = await self.get_json(
            f"{self.config.base_url}/points/{location.latitude:.4f},{location.longitude:.4f}",
            headers=self.headers
        )
        forecast_url = ((point or {}).get("properties") or {}).get(forecast_field)
        if not forecast_url:
            raise UpstreamDataError(f"{self.id}: no forecast office for this location")
        forecast = await self.get_json(forecast_url, headers=self.headers)
        periods = ((forecast or {}).get("properties") or {}).get("periods") or []
        if not periods:
            raise UpstreamDataError(f"{self.id}: forecast contained no periods")
        return periods

    async def fetch_current(self, location: Location) -> WeatherSnapshot:
        periods = await self._periods(location, "forecastHourly")
        return self.parse_period(periods[0], location)

    async def fetch_forecast(self, location: Location, hours: int) -> WeatherForecast:
        periods = await self._periods(location, "forecastHourly")
        return WeatherForecast(
            location=location,
            source=self.id,
            issued_at=datetime.now(timezone.utc),
            horizon_hours=hours,
            snapshots=[self.parse_period(p, location) for p in periods[:hours]]
        )

    async def fetch_alerts(self, location: Location) -> List[MarineAlert]:
        data = await self.get_json(
            f"{self.config.base_url}/alerts/active",
            params={"point": f"{location.latitude:.4f},{location.longitude:.4f}"},
            headers=self.headers
        )
        return [
            self.parse_alert(feature, location)
            for feature in (data or {}).get("features") or []
            if is_marine_event(((feature.get("properties") or {}).get("event")) or "")
        ]

PROVIDER_TYPES = {
    "stormglass": StormglassProvider,
    "openweather": OpenWeatherProvider,
    "weatherapi": WeatherApiProvider,
    "nws": NWSProvider,
}

def build_providers(
    configs: Optional[List[Dict[str, Any]]] = None,
    get_json: Optional[JsonGetter] = None
) -> List[WeatherProvider]:
    """Instantiate the configured providers, with API keys from settings."""
    providers = []
    for raw in configs if configs is not None else settings.weather_providers:
        config = WeatherProviderConfig(**{
            "api_key": settings.get_provider_api_key(raw["id"]),
            **raw
        })
        provider_type = PROVIDER_TYPES.get(config.id)
        if provider_type is None:
            logger.warning(f"Unknown weather provider '{config.id}' in configuration, skipping")
            continue
        providers.append(provider_type(config, get_json))
    return providers
