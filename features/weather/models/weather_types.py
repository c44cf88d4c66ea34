from datetime import datetime
from enum import Enum
from typing import List, Optional, Set
from pydantic import BaseModel, ConfigDict, Field, field_validator

from features.common.models.location_types import Location
from features.common.utils.time_utils import ensure_utc

class SeaState(Enum):
    """Douglas sea scale by significant wave height."""
    CALM_GLASSY = ((0, 0.01), 0, "calm (glassy)")
    CALM_RIPPLED = ((0.01, 0.1), 1, "calm (rippled)")
    SMOOTH = ((0.1, 0.5), 2, "smooth")
    SLIGHT = ((0.5, 1.25), 3, "slight")
    MODERATE = ((1.25, 2.5), 4, "moderate")
    ROUGH = ((2.5, 4), 5, "rough")
    VERY_ROUGH = ((4, 6), 6, "very rough")
    HIGH = ((6, 9), 7, "high")
    VERY_HIGH = ((9, 14), 8, "very high")
    PHENOMENAL = ((14, float('inf')), 9, "phenomenal")

    @classmethod
    def from_wave_height(cls, height: Optional[float]) -> Optional["SeaState"]:
        """Get the sea state for a significant wave height in meters."""
        if height is None or height < 0:
            return None
        for state in cls:
            (min_height, max_height), _, _ = state.value
            if min_height <= height < max_height:
                return state
        return None

    @property
    def code(self) -> int:
        return self.value[1]

    @property
    def description(self) -> str:
        return self.value[2]

class WeatherSnapshot(BaseModel):
    """Marine weather at a point in time. Units: C, m/s, m, hPa, km, deg."""
    location: Location
    timestamp: datetime
    source: str = Field(..., description="Provider id that produced the data")
    confidence: float = Field(0.8, ge=0, le=1)
    temperature: Optional[float] = None
    water_temperature: Optional[float] = None
    humidity: Optional[float] = None
    pressure: Optional[float] = None
    visibility: Optional[float] = None
    wind_speed: Optional[float] = None
    wind_direction: Optional[float] = None
    wind_gust: Optional[float] = None
    wave_height: Optional[float] = None
    wave_period: Optional[float] = None
    wave_direction: Optional[float] = None
    swell_height: Optional[float] = None
    swell_period: Optional[float] = None
    swell_direction: Optional[float] = None
    current_speed: Optional[float] = None
    current_direction: Optional[float] = None
    sea_state: Optional[int] = Field(None, ge=0, le=9)
    precipitation: Optional[float] = Field(None, description="mm over the last hour")
    conditions: Optional[str] = Field(None, description="Short human readable summary")

    @field_validator("timestamp")
    @classmethod
    def _normalize_timestamp(cls, value: datetime) -> datetime:
        return ensure_utc(value)

class WeatherForecast(BaseModel):
    """Sequence of snapshots from a single provider issue."""
    location: Location
    source: str
    issued_at: datetime
    horizon_hours: int
    snapshots: List[WeatherSnapshot] = Field(default_factory=list)

class AlertType(str, Enum):
    SMALL_CRAFT = "small_craft_advisory"
    GALE = "gale_warning"
    STORM = "storm_warning"
    HURRICANE = "hurricane_warning"
    FOG = "dense_fog_advisory"
    HIGH_SURF = "high_surf_advisory"
    COASTAL_FLOOD = "coastal_flood"
    ICE = "freezing_spray"
    MARINE_WEATHER = "marine_weather_statement"
    OTHER = "other"

class AlertSeverity(str, Enum):
    MINOR = "minor"
    MODERATE = "moderate"
    SEVERE = "severe"
    EXTREME = "extreme"

class MarineAlert(BaseModel):
    """Marine hazard alert. Alerts are de-duplicated by id."""
    id: str
    type: AlertType = AlertType.OTHER
    severity: AlertSeverity = AlertSeverity.MODERATE
    title: str
    description: Optional[str] = None
    area: Optional[str] = Field(None, description="Affected area description")
    location: Optional[Location] = None
    valid_from: Optional[datetime] = None
    valid_to: Optional[datetime] = None
    source: Optional[str] = None

    @field_validator("valid_from", "valid_to")
    @classmethod
    def _normalize_window(cls, value: Optional[datetime]) -> Optional[datetime]:
        return ensure_utc(value) if value is not None else None

class ProviderCapability(str, Enum):
    CURRENT = "current"
    FORECAST = "forecast"
    ALERTS = "alerts"

class WeatherProviderConfig(BaseModel):
    """Static configuration of one weather provider."""
    id: str
    name: str
    priority: int
    hourly_limit: int = Field(..., gt=0)
    base_url: str
    enabled: bool = True
    api_key: Optional[str] = None

class ProviderStatus(BaseModel):
    """Runtime view of a provider for the status endpoint."""
    id: str
    name: str
    priority: int
    enabled: bool
    configured: bool
    capabilities: Set[ProviderCapability]
    requests_remaining: int
    reset_time: Optional[datetime] = None
    last_error: Optional[str] = None

    model_config = ConfigDict(use_enum_values=True)
