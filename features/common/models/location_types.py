from datetime import datetime
from enum import Enum
from typing import Optional
from pydantic import BaseModel, ConfigDict, Field, field_validator

from features.common.utils.geo import GeoUtils
from features.common.utils.time_utils import ensure_utc

class Location(BaseModel):
    """A WGS84 position."""
    latitude: float = Field(..., ge=-90, le=90, description="Latitude in decimal degrees")
    longitude: float = Field(..., ge=-180, le=180, description="Longitude in decimal degrees")

    model_config = ConfigDict(frozen=True)

    def distance_to(self, other: "Location") -> float:
        """Great-circle distance to another location in meters."""
        return GeoUtils.haversine_distance(
            self.latitude, self.longitude, other.latitude, other.longitude
        )

    def cache_key(self, precision: int = 2) -> str:
        return GeoUtils.location_key(self.latitude, self.longitude, precision)

class DepthSource(str, Enum):
    """Where a depth sounding came from."""
    OFFICIAL = "official"
    CROWDSOURCE = "crowdsource"
    PREDICTED = "predicted"

class DepthReading(BaseModel):
    """Raw depth sounding handed over by the reporting feature."""
    id: Optional[str] = Field(None, description="Reading identifier")
    location: Location
    timestamp: datetime = Field(..., description="Time the sounding was taken")
    depth: float = Field(..., description="Raw depth in meters")
    source: DepthSource = DepthSource.CROWDSOURCE
    confidence: float = Field(..., ge=0, le=1, description="Self-reported confidence")
    vessel_draft: Optional[float] = Field(None, description="Vessel draft in meters")

    model_config = ConfigDict(frozen=True)

    @field_validator("timestamp")
    @classmethod
    def _normalize_timestamp(cls, value: datetime) -> datetime:
        return ensure_utc(value)
