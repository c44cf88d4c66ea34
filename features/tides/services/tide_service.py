import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

import aiohttp
from pydantic import TypeAdapter

from core.config import settings
from features.common.exceptions.soundings_exceptions import UpstreamDataError
from features.common.models.location_types import Location
from features.common.services.rate_limiter import ConcurrencyGate
from features.common.utils.tasks import gather_settled
from features.common.utils.time_utils import coops_timestamp, parse_upstream_time
from features.offline.services.offline_cache import CacheNamespace, OfflineCache
from features.stations.services.station_locator import StationLocator
from features.tides.models.tide_types import (
    LocationEnvironmentalData,
    MeteorologicalData,
    MetObservation,
    MetProduct,
    TidePrediction,
    TideType,
    TimeWindow,
    WaterLevel,
    WaterLevelQuality,
)

logger = logging.getLogger(__name__)

QUALITY_CODES = {"v": WaterLevelQuality.VERIFIED, "p": WaterLevelQuality.PRELIMINARY}

def _to_float(value: Any) -> Optional[float]:
    """Parse a CO-OPS value; blanks mean missing."""
    if value in (None, ""):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None

class TideDataClient:
    """Service for interacting with the NOAA CO-OPS tide data API.

    Predictions are cached for an hour, observed water levels for 15 minutes
    and meteorological series for 30 minutes. Fetches are widened to whole
    buckets (UTC days for predictions, hours for observations) and a request
    whose window lies inside an already cached one is served from the cache
    without going upstream.
    """

    PREDICTION_BUCKET = timedelta(days=1)
    OBSERVATION_BUCKET = timedelta(hours=1)

    def __init__(
        self,
        cache: Optional[OfflineCache] = None,
        locator: Optional[StationLocator] = None,
        base_url: Optional[str] = None,
        max_concurrent: Optional[int] = None,
        timeout: Optional[float] = None
    ) -> None:
        self.cache = cache if cache is not None else OfflineCache()
        self.locator = locator or StationLocator(cache=self.cache)
        self.data_url = base_url or settings.coops_base_url
        self.gate = ConcurrencyGate(max_concurrent or settings.request["max_concurrent"])
        self.timeout = timeout or settings.request["timeout"]
        self._session: Optional[aiohttp.ClientSession] = None

    async def _init_session(self) -> aiohttp.ClientSession:
        if not self._session:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.timeout),
                headers={"Accept": "application/json"}
            )
        return self._session

    async def close(self):
        if self._session:
            await self._session.close()
            self._session = None

    async def _request_json(self, params: Dict[str, Any]) -> Dict[str, Any]:
        """GET the datagetter through the concurrency gate."""
        session = await self._init_session()
        async with self.gate:
            async with session.get(self.data_url, params={**settings.coops_params, **params}) as response:
                if response.status >= 400:
                    raise UpstreamDataError(f"CO-OPS answered HTTP {response.status}")
                return await response.json(content_type=None)

    async def _fetch_product(
        self,
        station_id: str,
        product: str,
        window: TimeWindow,
        data_key: str = "data",
        **extra: Any
    ) -> List[Dict[str, Any]]:
        data = await self._request_json({
            "station": station_id,
            "product": product,
            "begin_date": coops_timestamp(window.start),
            "end_date": coops_timestamp(window.end),
            **extra
        })
        if "error" in data:
            message = (data["error"] or {}).get("message", "Unknown error from NOAA API")
            if "No " in message and "data was found" in message:
                logger.info(f"No {product} data for station {station_id}: {message}")
                return []
            raise UpstreamDataError(f"CO-OPS {product} for {station_id}: {message}")
        return data.get(data_key) or []

    @staticmethod
    def _window_key(prefix: str, window: TimeWindow) -> str:
        return f"{prefix}:{int(window.start.timestamp())}:{int(window.end.timestamp())}"

    def _cached_for_window(self, namespace: CacheNamespace, prefix: str, window: TimeWindow) -> Optional[Any]:
        """Payload of any unexpired entry whose window covers the requested one."""
        for entry in self.cache.scan(namespace, f"{prefix}:"):
            start, end = entry.key.rsplit(":", 2)[-2:]
            try:
                cached_window = TimeWindow(
                    start=datetime.fromtimestamp(int(start), tz=timezone.utc),
                    end=datetime.fromtimestamp(int(end), tz=timezone.utc)
                )
            except ValueError:
                continue
            if cached_window.covers(window):
                return entry.payload
        return None

    async def get_predictions(self, station_id: str, window: TimeWindow) -> List[TidePrediction]:
        """High/low tide predictions for a station inside the window."""
        cached = self._cached_for_window(CacheNamespace.TIDE_PREDICTIONS, station_id, window)
        if cached is not None:
            predictions = TypeAdapter(List[TidePrediction]).validate_python(cached)
            return [p for p in predictions if window.contains(p.time)]

        fetched = window.snapped(self.PREDICTION_BUCKET)
        rows = await self._fetch_product(
            station_id, "predictions", fetched, data_key="predictions", interval="hilo"
        )
        predictions = []
        for row in rows:
            time = parse_upstream_time(row.get("t"))
            height = _to_float(row.get("v"))
            if time is None or height is None:
                continue
            predictions.append(TidePrediction(
                station_id=station_id,
                time=time,
                height=height,
                type=TideType(row["type"]) if row.get("type") in ("H", "L") else None
            ))
        predictions.sort(key=lambda p: p.time)
        self.cache.put(
            CacheNamespace.TIDE_PREDICTIONS,
            self._window_key(station_id, fetched),
            predictions,
            source="noaa"
        )
        return [p for p in predictions if window.contains(p.time)]

    async def get_water_levels(self, station_id: str, window: TimeWindow) -> List[WaterLevel]:
        """Observed six-minute water levels for a station inside the window."""
        cached = self._cached_for_window(CacheNamespace.WATER_LEVELS, station_id, window)
        if cached is not None:
            levels = TypeAdapter(List[WaterLevel]).validate_python(cached)
            return [w for w in levels if window.contains(w.time)]

        fetched = window.snapped(self.OBSERVATION_BUCKET)
        rows = await self._fetch_product(station_id, "water_level", fetched)
        levels = []
        for row in rows:
            time = parse_upstream_time(row.get("t"))
            height = _to_float(row.get("v"))
            if time is None or height is None:
                continue
            levels.append(WaterLevel(
                station_id=station_id,
                time=time,
                height=height,
                sigma=_to_float(row.get("s")),
                quality=QUALITY_CODES.get(row.get("q"), WaterLevelQuality.PRELIMINARY)
            ))
        levels.sort(key=lambda w: w.time)
        self.cache.put(
            CacheNamespace.WATER_LEVELS,
            self._window_key(station_id, fetched),
            levels,
            source="noaa"
        )
        return [w for w in levels if window.contains(w.time)]

    async def get_latest_water_level(self, station_id: str, now: Optional[datetime] = None) -> Optional[WaterLevel]:
        now = now or datetime.now(timezone.utc)
        levels = await self.get_water_levels(station_id, TimeWindow(start=now - timedelta(hours=1), end=now))
        return levels[-1] if levels else None

    async def get_meteorological_data(
        self,
        station_id: str,
        product: MetProduct,
        window: TimeWindow
    ) -> MeteorologicalData:
        """Station meteorological series (wind, temperatures, pressure, visibility)."""
        product = MetProduct(product)
        prefix = f"{station_id}:{product.value}"
        cached = self._cached_for_window(CacheNamespace.MET_DATA, prefix, window)
        if cached is not None:
            data = MeteorologicalData.model_validate(cached)
            return data.model_copy(update={
                "observations": [o for o in data.observations if window.contains(o.time)]
            })

        fetched = window.snapped(self.OBSERVATION_BUCKET)
        rows = await self._fetch_product(station_id, product.value, fetched)
        observations = []
        for row in rows:
            time = parse_upstream_time(row.get("t"))
            if time is None:
                continue
            if product == MetProduct.WIND:
                observations.append(MetObservation(
                    time=time,
                    value=_to_float(row.get("s")),
                    direction=_to_float(row.get("d")),
                    gust=_to_float(row.get("g"))
                ))
            else:
                observations.append(MetObservation(time=time, value=_to_float(row.get("v"))))
        data = MeteorologicalData(station_id=station_id, product=product, observations=observations)
        self.cache.put(CacheNamespace.MET_DATA, self._window_key(prefix, fetched), data, source="noaa")
        return data.model_copy(update={
            "observations": [o for o in observations if window.contains(o.time)]
        })

    async def get_location_environmental_data(
        self,
        location: Location,
        now: Optional[datetime] = None
    ) -> LocationEnvironmentalData:
        """Nearest station's predictions, latest water level and met series.

        Datasets are fetched concurrently; a failed dataset is reported in
        `errors` and never fails the whole result.
        """
        now = now or datetime.now(timezone.utc)
        stations = self.locator.find_nearest(
            location, max_distance_km=settings.station_search_radius_km, max_results=3
        )
        if not stations:
            return LocationEnvironmentalData(location=location)

        station = stations[0]
        recent = TimeWindow(start=now - timedelta(hours=1), end=now)
        met_products = [
            MetProduct.WIND,
            MetProduct.AIR_TEMPERATURE,
            MetProduct.WATER_TEMPERATURE,
            MetProduct.AIR_PRESSURE
        ]
        outcomes = await gather_settled(
            self.get_predictions(station.station_id, TimeWindow(start=now, end=now + timedelta(hours=24))),
            self.get_latest_water_level(station.station_id, now),
            *(self.get_meteorological_data(station.station_id, p, recent) for p in met_products)
        )
        predictions, water_level, *met_outcomes = outcomes

        errors: Dict[str, str] = {}
        for name, outcome in zip(["predictions", "water_level"] + [p.value for p in met_products], outcomes):
            if not outcome.ok:
                errors[name] = str(outcome.error) or outcome.error.__class__.__name__
                logger.warning(f"Environmental {name} unavailable for station {station.station_id}: {errors[name]}")

        return LocationEnvironmentalData(
            location=location,
            station=station,
            predictions=predictions.value_or([]),
            current_water_level=water_level.value_or(None),
            meteorological={
                product: outcome.value
                for product, outcome in zip(met_products, met_outcomes)
                if outcome.ok
            },
            errors=errors
        )
