"""
Tide and environmental correction of raw depth soundings.

All calculations are pure functions of their inputs (plus the reference
time used for data age), so a reading processed twice with the same
context yields the same ProcessedDepthReading.
"""
import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import List, Optional, Sequence

from core.config import settings
from features.common.models.location_types import DepthReading, DepthSource, Location
from features.common.utils.tasks import TaskOutcome, run_in_groups
from features.common.utils.time_utils import ensure_utc
from features.depth.models.depth_types import (
    EnvironmentalFactors,
    ProcessedDepthReading,
    QualityFactors,
    QualityScore,
    Reliability,
    TideCorrection,
    TideCorrectionMethod,
)
from features.stations.models.station_types import Station
from features.tides.models.tide_types import TidePrediction, WaterLevel
from features.weather.models.weather_types import WeatherSnapshot

logger = logging.getLogger(__name__)

STANDARD_ATMOSPHERE_HPA = 1013.25
REFERENCE_WATER_TEMP_C = 15.0
OBSERVED_LEVEL_TOLERANCE = timedelta(hours=1)

QUALITY_WEIGHTS = {
    "data_age": 0.20,
    "station_distance": 0.20,
    "environmental_conditions": 0.25,
    "data_source": 0.20,
    "instrument_accuracy": 0.15,
}

SOURCE_RELIABILITY = {
    DepthSource.OFFICIAL: 1.0,
    DepthSource.CROWDSOURCE: 0.8,
    DepthSource.PREDICTED: 0.6,
}

class MeridianCoastline:
    """Coarse distance-to-coast estimate from a few reference meridians.

    Only good enough to tell "near a US coast" from "offshore"; swap in a
    real coastline dataset through the same `distance_to_coast` call.
    """

    METERS_PER_DEGREE = 111000

    def __init__(self, meridians: Optional[Sequence[float]] = None):
        self.meridians = list(meridians if meridians is not None else settings.coastline_meridians)

    def distance_to_coast(self, location: Location) -> float:
        if not self.meridians:
            return float("inf")
        degrees = min(abs(location.longitude - meridian) for meridian in self.meridians)
        return max(0.0, degrees * self.METERS_PER_DEGREE)

@dataclass
class CorrectionInput:
    """Everything needed to correct one reading."""
    reading: DepthReading
    station: Optional[Station] = None
    predictions: List[TidePrediction] = field(default_factory=list)
    observed_level: Optional[WaterLevel] = None
    weather: Optional[WeatherSnapshot] = None
    met_data_available: bool = False

def _clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))

class CorrectionEngine:
    """Turns a raw sounding plus tide/weather context into a ProcessedDepthReading."""

    COASTAL_RANGE_M = 5000
    COASTAL_SALINITY_CORRECTION = -0.01

    def __init__(self, coastline: Optional[MeridianCoastline] = None, batch_size: Optional[int] = None):
        self.coastline = coastline or MeridianCoastline()
        self.batch_size = batch_size or settings.correction_batch_size

    # Tide

    def apply_tide_correction(
        self,
        reading: DepthReading,
        station: Optional[Station],
        predictions: Sequence[TidePrediction],
        observed_level: Optional[WaterLevel] = None
    ) -> TideCorrection:
        """Pick the best tide height available for the reading time."""
        when = reading.timestamp
        if observed_level is not None and abs(observed_level.time - when) <= OBSERVED_LEVEL_TOLERANCE:
            height = observed_level.height
            method = TideCorrectionMethod.OBSERVED
            confidence = 0.95 if observed_level.is_verified else 0.85
        elif predictions:
            ordered = sorted(predictions, key=lambda p: p.time)
            bracket = self._bracketing_pair(ordered, when)
            if bracket is not None:
                height, confidence = self._interpolate(bracket[0], bracket[1], when)
                method = TideCorrectionMethod.INTERPOLATED
            elif len(ordered) > 1:
                # Outside the predicted span: hold the nearest end of the curve
                endpoint = ordered[0] if when < ordered[0].time else ordered[-1]
                height = endpoint.height
                method = TideCorrectionMethod.INTERPOLATED
                confidence = 0.6
            else:
                height = ordered[0].height
                method = TideCorrectionMethod.PREDICTED
                confidence = 0.7
        else:
            height = 0.0
            method = TideCorrectionMethod.ESTIMATED
            confidence = 0.5

        if station is not None and method != TideCorrectionMethod.ESTIMATED:
            confidence *= self._distance_factor(reading.location.distance_to(station.location))

        return TideCorrection(
            original_depth=reading.depth,
            corrected_depth=reading.depth - height,
            tide_height=height,
            method=method,
            confidence=_clamp(confidence, 0.0, 1.0),
            station=station
        )

    @staticmethod
    def _bracketing_pair(ordered: Sequence[TidePrediction], when: datetime):
        for before, after in zip(ordered, ordered[1:]):
            if before.time <= when <= after.time:
                return before, after
        return None

    @staticmethod
    def _interpolate(before: TidePrediction, after: TidePrediction, when: datetime):
        span = (after.time - before.time).total_seconds()
        if span <= 0:
            return before.height, 1.0
        ratio = (when - before.time).total_seconds() / span
        height = before.height + ratio * (after.height - before.height)
        confidence = max(0.7, 1 - (span / 3600) / 12)
        return height, confidence

    @staticmethod
    def _distance_factor(distance_m: float) -> float:
        if distance_m <= 10000:
            return 1.0
        return max(0.3, 1 - (distance_m - 10000) / 50000)

    # Environment

    @staticmethod
    def wind_correction(wind_speed: Optional[float]) -> float:
        if wind_speed is None or wind_speed < 5:
            return 0.0
        if wind_speed < 10:
            return -0.05
        if wind_speed < 15:
            return -0.1
        return -0.2

    @staticmethod
    def current_correction(current_speed: Optional[float]) -> float:
        if not current_speed or current_speed < 0.5:
            return 0.0
        if current_speed < 1.0:
            return -0.02
        if current_speed < 2.0:
            return -0.05
        return -0.1

    @staticmethod
    def pressure_correction(pressure: Optional[float]) -> float:
        # Inverted barometer: 1 hPa below standard raises the water ~1 cm
        if not pressure:
            return 0.0
        return (STANDARD_ATMOSPHERE_HPA - pressure) * 0.01

    @staticmethod
    def temperature_correction(temperature: Optional[float]) -> float:
        """Thermal expansion relative to the reference water temperature.

        Only None means no reading; 0 °C is a valid cold-water value and
        yields a small negative correction.
        """
        if temperature is None:
            return 0.0
        return (temperature - REFERENCE_WATER_TEMP_C) * 0.001

    def salinity_correction(self, location: Location) -> float:
        if self.coastline.distance_to_coast(location) < self.COASTAL_RANGE_M:
            return self.COASTAL_SALINITY_CORRECTION
        return 0.0

    @staticmethod
    def environmental_confidence(weather: WeatherSnapshot, met_data_available: bool) -> float:
        confidence = 1.0
        wind = weather.wind_speed or 0.0
        if wind > 10:
            confidence *= 0.9
        if wind > 15:
            confidence *= 0.8
        if (weather.wave_height or 0.0) > 2:
            confidence *= 0.85
        if weather.visibility is not None and weather.visibility < 1:
            confidence *= 0.7
        if met_data_available:
            confidence *= 1.1
        return _clamp(confidence, 0.3, 1.0)

    def calculate_environmental_factors(
        self,
        reading: DepthReading,
        weather: Optional[WeatherSnapshot],
        met_data_available: bool = False
    ) -> EnvironmentalFactors:
        """Independent additive corrections; without weather only salinity applies."""
        salinity = self.salinity_correction(reading.location)
        if weather is None:
            return EnvironmentalFactors(
                salinity_correction=salinity,
                total_correction=salinity,
                confidence=0.5
            )

        wind = self.wind_correction(weather.wind_speed)
        current = self.current_correction(weather.current_speed)
        pressure = self.pressure_correction(weather.pressure)
        temperature = self.temperature_correction(weather.temperature)
        return EnvironmentalFactors(
            wind_correction=wind,
            current_correction=current,
            pressure_correction=pressure,
            temperature_correction=temperature,
            salinity_correction=salinity,
            total_correction=wind + current + pressure + temperature + salinity,
            confidence=self.environmental_confidence(weather, met_data_available)
        )

    # Quality

    @staticmethod
    def environmental_stability(weather: Optional[WeatherSnapshot]) -> float:
        if weather is None:
            return 0.5
        stability = 1.0
        wind = weather.wind_speed or 0.0
        if wind > 15:
            stability *= 0.5
        elif wind > 10:
            stability *= 0.7
        elif wind > 5:
            stability *= 0.9

        waves = weather.wave_height or 0.0
        if waves > 3:
            stability *= 0.4
        elif waves > 2:
            stability *= 0.6
        elif waves > 1:
            stability *= 0.8

        if weather.visibility is not None:
            if weather.visibility < 0.5:
                stability *= 0.5
            elif weather.visibility < 1:
                stability *= 0.7
        return max(0.1, stability)

    def calculate_quality_score(
        self,
        reading: DepthReading,
        station: Optional[Station],
        weather: Optional[WeatherSnapshot],
        now: Optional[datetime] = None
    ) -> QualityScore:
        """Weighted 0-1 score from five factors, plus threshold warnings."""
        now = ensure_utc(now or datetime.now(timezone.utc))
        warnings: List[str] = []

        age_hours = max(0.0, (now - reading.timestamp).total_seconds() / 3600)
        data_age = _clamp(1 - age_hours / 24, 0.0, 1.0)
        if age_hours > 6:
            warnings.append("Data older than 6 hours")

        if station is None:
            station_distance = 0.0
            warnings.append("No tide station within range, tide correction is estimated")
        else:
            distance = reading.location.distance_to(station.location)
            station_distance = _clamp(1 - distance / 50000, 0.0, 1.0)
            if distance > 20000:
                warnings.append("Tide station is far from reading location")

        environmental = self.environmental_stability(weather)
        if weather is not None:
            if (weather.wind_speed or 0.0) > 10:
                warnings.append("High wind conditions may affect depth accuracy")
            if (weather.wave_height or 0.0) > 2:
                warnings.append("High wave conditions may affect depth accuracy")

        data_source = SOURCE_RELIABILITY.get(reading.source, 0.5)
        if reading.source == DepthSource.PREDICTED:
            warnings.append("Depth reading is predicted, not measured")

        instrument = reading.confidence
        if instrument < 0.7:
            warnings.append("Low confidence depth reading")

        factors = QualityFactors(
            data_age=data_age,
            station_distance=station_distance,
            environmental_conditions=environmental,
            data_source=data_source,
            instrument_accuracy=instrument
        )
        score = sum(getattr(factors, name) * weight for name, weight in QUALITY_WEIGHTS.items())
        return QualityScore(score=_clamp(score, 0.0, 1.0), factors=factors, warnings=warnings)

    @staticmethod
    def calculate_safety_margin(
        tide: TideCorrection,
        environment: EnvironmentalFactors,
        quality: QualityScore
    ) -> float:
        """Extra clearance in meters, 0.5 base, capped at 2.0."""
        margin = 0.5
        if tide.confidence < 0.8:
            margin += (1 - tide.confidence) * 0.5
        if environment.confidence < 0.8:
            margin += (1 - environment.confidence) * 0.3
        if quality.score < 0.7:
            margin += (1 - quality.score) * 0.5
        return min(margin, 2.0)

    @staticmethod
    def classify_reliability(score: float, safety_margin: float) -> Reliability:
        if score > 0.8 and safety_margin < 0.8:
            return Reliability.HIGH
        if score > 0.6 and safety_margin < 1.2:
            return Reliability.MEDIUM
        if score > 0.4 and safety_margin < 1.8:
            return Reliability.LOW
        return Reliability.UNRELIABLE

    # Whole reading

    def process_reading(
        self,
        reading: DepthReading,
        station: Optional[Station] = None,
        predictions: Sequence[TidePrediction] = (),
        observed_level: Optional[WaterLevel] = None,
        weather: Optional[WeatherSnapshot] = None,
        met_data_available: bool = False,
        now: Optional[datetime] = None,
        notes: Sequence[str] = ()
    ) -> ProcessedDepthReading:
        now = ensure_utc(now or datetime.now(timezone.utc))
        tide = self.apply_tide_correction(reading, station, predictions, observed_level)
        environment = self.calculate_environmental_factors(reading, weather, met_data_available)
        quality = self.calculate_quality_score(reading, station, weather, now)
        margin = self.calculate_safety_margin(tide, environment, quality)
        return ProcessedDepthReading(
            reading=reading,
            tide_correction=tide,
            environmental_factors=environment,
            corrected_depth=tide.corrected_depth + environment.total_correction,
            quality_score=quality,
            safety_margin=margin,
            reliability=self.classify_reliability(quality.score, margin),
            processed_at=now,
            weather_source=weather.source if weather else None,
            warnings=list(notes)
        )

    def process_input(self, item: CorrectionInput, now: Optional[datetime] = None) -> ProcessedDepthReading:
        return self.process_reading(
            item.reading,
            station=item.station,
            predictions=item.predictions,
            observed_level=item.observed_level,
            weather=item.weather,
            met_data_available=item.met_data_available,
            now=now
        )

    async def process_batch(
        self,
        items: Sequence[CorrectionInput],
        now: Optional[datetime] = None
    ) -> List[TaskOutcome[ProcessedDepthReading]]:
        """Correct readings in groups of `batch_size`, groups one after another."""
        outcomes = await run_in_groups(
            items,
            self.batch_size,
            lambda item: asyncio.to_thread(self.process_input, item, now)
        )
        failed = sum(1 for o in outcomes if not o.ok)
        if failed:
            logger.warning(f"Batch correction: {failed} of {len(items)} readings failed")
        return outcomes
