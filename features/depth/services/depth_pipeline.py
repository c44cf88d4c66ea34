import logging
from datetime import datetime, timezone
from typing import List, Optional, Sequence

from core.config import settings
from features.common.models.location_types import DepthReading
from features.common.utils.tasks import gather_settled, run_in_groups
from features.depth.models.depth_types import BatchProcessResponse, ProcessedDepthReading, Reliability
from features.depth.services.correction_engine import CorrectionEngine
from features.offline.services.offline_cache import CacheNamespace, OfflineCache
from features.realtime.models.realtime_types import DataType, RealtimeUpdate, UpdateSeverity
from features.realtime.services.distributor import RealtimeDistributor
from features.stations.services.station_locator import StationLocator
from features.tides.models.tide_types import MetProduct, TimeWindow, WaterLevel
from features.tides.services.tide_service import TideDataClient
from features.weather.services.weather_client import MultiProviderWeatherClient

logger = logging.getLogger(__name__)

class DepthProcessingPipeline:
    """Locate -> fetch tide and weather context -> correct -> cache.

    Missing context degrades the result instead of failing it: without a
    station the tide correction is estimated, without weather only the
    location based corrections apply. Each gap is noted on the reading.
    """

    PREDICTION_WINDOW_HOURS = 12
    OBSERVATION_WINDOW_HOURS = 1

    def __init__(
        self,
        locator: StationLocator,
        tide_client: TideDataClient,
        weather_client: MultiProviderWeatherClient,
        cache: OfflineCache,
        engine: Optional[CorrectionEngine] = None,
        distributor: Optional[RealtimeDistributor] = None
    ):
        self.locator = locator
        self.tide_client = tide_client
        self.weather_client = weather_client
        self.cache = cache
        self.engine = engine or CorrectionEngine()
        self.distributor = distributor

    @staticmethod
    def reading_key(reading: DepthReading) -> str:
        if reading.id:
            return reading.id
        return f"{reading.location.cache_key(5)}:{int(reading.timestamp.timestamp())}"

    @staticmethod
    def _closest_level(levels: Sequence[WaterLevel], when: datetime) -> Optional[WaterLevel]:
        if not levels:
            return None
        return min(levels, key=lambda level: abs(level.time - when))

    async def process(self, reading: DepthReading, now: Optional[datetime] = None) -> ProcessedDepthReading:
        now = now or datetime.now(timezone.utc)
        notes: List[str] = []

        stations = self.locator.find_nearest(
            reading.location,
            max_distance_km=settings.station_search_radius_km,
            max_results=3
        )
        station = stations[0] if stations else None
        weather_task = self.weather_client.get_current_weather(reading.location)

        predictions, observed_level, met_data_available = [], None, False
        if station is None:
            notes.append("No reference station in range")
            (weather_outcome,) = await gather_settled(weather_task)
        else:
            window = TimeWindow.around(reading.timestamp, self.PREDICTION_WINDOW_HOURS)
            recent = TimeWindow.around(reading.timestamp, self.OBSERVATION_WINDOW_HOURS)
            prediction_outcome, level_outcome, weather_outcome, met_outcome = await gather_settled(
                self.tide_client.get_predictions(station.station_id, window),
                self.tide_client.get_water_levels(station.station_id, recent),
                weather_task,
                self.tide_client.get_meteorological_data(station.station_id, MetProduct.WIND, recent)
            )
            if prediction_outcome.ok:
                predictions = prediction_outcome.value
            else:
                notes.append(f"Tide predictions unavailable: {prediction_outcome.error}")
            if level_outcome.ok:
                observed_level = self._closest_level(level_outcome.value, reading.timestamp)
            met_data_available = met_outcome.ok and bool(met_outcome.value.observations)

        weather = weather_outcome.value_or(None)
        if not weather_outcome.ok:
            notes.append(f"Weather unavailable: {weather_outcome.error}")
            logger.warning(f"Processing reading without weather: {weather_outcome.error}")

        processed = self.engine.process_reading(
            reading,
            station=station,
            predictions=predictions,
            observed_level=observed_level,
            weather=weather,
            met_data_available=met_data_available,
            now=now,
            notes=notes
        )
        self.cache.put(
            CacheNamespace.PROCESSED_READINGS,
            self.reading_key(reading),
            processed,
            source=station.station_id if station else "estimated"
        )
        if self.distributor is not None:
            await self._publish(processed)
        return processed

    async def batch_process(
        self,
        readings: Sequence[DepthReading],
        now: Optional[datetime] = None
    ) -> BatchProcessResponse:
        """Process readings in bounded groups; one failure never sinks the batch."""
        outcomes = await run_in_groups(
            readings,
            settings.correction_batch_size,
            lambda reading: self.process(reading, now)
        )
        processed = [o.value for o in outcomes if o.ok]
        errors = [str(o.error) for o in outcomes if not o.ok]
        for error in errors:
            logger.error(f"Depth reading failed to process: {error}")
        return BatchProcessResponse(processed=processed, failed=len(errors), errors=errors)

    def get_processed(self, reading: DepthReading) -> Optional[ProcessedDepthReading]:
        return self.cache.get_model(
            CacheNamespace.PROCESSED_READINGS, self.reading_key(reading), ProcessedDepthReading
        )

    async def _publish(self, processed: ProcessedDepthReading) -> None:
        """Fan a fresh reading out to local subscribers."""
        reading = processed.reading
        unreliable = processed.reliability == Reliability.UNRELIABLE
        update = RealtimeUpdate(
            id=self.reading_key(reading),
            type=DataType.DEPTH,
            location=reading.location,
            data={
                "corrected_depth": processed.corrected_depth,
                "safety_margin": processed.safety_margin,
                "reliability": processed.reliability.value
            },
            severity=UpdateSeverity.WARNING if unreliable else UpdateSeverity.INFO,
            timestamp=reading.timestamp,
            source="pipeline"
        )
        delivered = await self.distributor.dispatch_update(update)
        logger.debug(f"Depth update {update.id} delivered to {delivered} subscriptions")
