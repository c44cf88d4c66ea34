from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Dict, List, Optional
from pydantic import BaseModel, Field, field_validator, model_validator

from features.common.models.location_types import Location
from features.common.utils.time_utils import ensure_utc
from features.stations.models.station_types import Station

class TideType(str, Enum):
    HIGH = "H"
    LOW = "L"

class TimeWindow(BaseModel):
    """Inclusive [start, end] request window, always in UTC."""
    start: datetime
    end: datetime

    @field_validator("start", "end")
    @classmethod
    def _normalize(cls, value: datetime) -> datetime:
        return ensure_utc(value)

    @model_validator(mode="after")
    def _check_order(self) -> "TimeWindow":
        if self.end <= self.start:
            raise ValueError("window end must be after start")
        return self

    @classmethod
    def around(cls, center: datetime, hours: float) -> "TimeWindow":
        center = ensure_utc(center)
        return cls(start=center - timedelta(hours=hours), end=center + timedelta(hours=hours))

    def covers(self, other: "TimeWindow") -> bool:
        return self.start <= other.start and self.end >= other.end

    def contains(self, moment: datetime) -> bool:
        return self.start <= ensure_utc(moment) <= self.end

    def snapped(self, step: timedelta) -> "TimeWindow":
        """The whole `step` buckets (aligned to the epoch) this window touches.

        Nearby windows snap to the same buckets, so they can share one fetch.
        """
        size = int(step.total_seconds())
        start = int(self.start.timestamp()) // size * size
        end = (int(self.end.timestamp()) // size + 1) * size
        return TimeWindow(
            start=datetime.fromtimestamp(start, tz=timezone.utc),
            end=datetime.fromtimestamp(end, tz=timezone.utc)
        )

class TidePrediction(BaseModel):
    """Predicted tide height (meters above MLLW)."""
    station_id: str
    time: datetime
    height: float
    type: Optional[TideType] = Field(None, description="High/low flag when the prediction is an extreme")

    @field_validator("time")
    @classmethod
    def _normalize_time(cls, value: datetime) -> datetime:
        return ensure_utc(value)

class WaterLevelQuality(str, Enum):
    VERIFIED = "verified"
    PRELIMINARY = "preliminary"

class WaterLevel(BaseModel):
    """Observed water level (meters above MLLW)."""
    station_id: str
    time: datetime
    height: float
    sigma: Optional[float] = Field(None, description="Standard deviation of the 6 minute samples")
    quality: WaterLevelQuality = WaterLevelQuality.PRELIMINARY

    @field_validator("time")
    @classmethod
    def _normalize_time(cls, value: datetime) -> datetime:
        return ensure_utc(value)

    @property
    def is_verified(self) -> bool:
        return self.quality == WaterLevelQuality.VERIFIED

class MetProduct(str, Enum):
    WIND = "wind"
    AIR_TEMPERATURE = "air_temperature"
    WATER_TEMPERATURE = "water_temperature"
    AIR_PRESSURE = "air_pressure"
    VISIBILITY = "visibility"

class MetObservation(BaseModel):
    time: datetime
    value: Optional[float] = None
    direction: Optional[float] = Field(None, description="Wind direction in degrees")
    gust: Optional[float] = Field(None, description="Wind gust in m/s")

class MeteorologicalData(BaseModel):
    """A series of station observations for one product."""
    station_id: str
    product: MetProduct
    observations: List[MetObservation] = Field(default_factory=list)

    @property
    def latest(self) -> Optional[MetObservation]:
        return self.observations[-1] if self.observations else None

class LocationEnvironmentalData(BaseModel):
    """Everything the nearest station knows about a location right now."""
    location: Location
    station: Optional[Station] = None
    predictions: List[TidePrediction] = Field(default_factory=list)
    current_water_level: Optional[WaterLevel] = None
    meteorological: Dict[MetProduct, MeteorologicalData] = Field(default_factory=dict)
    errors: Dict[str, str] = Field(default_factory=dict, description="Per-dataset fetch failures")

class StationPredictions(BaseModel):
    station: Station
    window: TimeWindow
    predictions: List[TidePrediction]

class StationWaterLevels(BaseModel):
    station: Station
    window: TimeWindow
    water_levels: List[WaterLevel]
