from enum import Enum
from typing import List, Literal, Optional
from pydantic import BaseModel, ConfigDict, Field

from features.common.models.location_types import Location

class TideReferenceType(str, Enum):
    """How a station's tide predictions are derived."""
    HARMONIC = "harmonic"
    SUBORDINATE = "subordinate"

class Station(BaseModel):
    """Tide reference station."""
    station_id: str = Field(alias="id")  # Allow "id" from JSON to map to station_id
    name: str
    location: Location
    region: Optional[str] = None
    state: Optional[str] = None
    timezone: Optional[str] = None
    tide_type: TideReferenceType = TideReferenceType.HARMONIC
    distance: Optional[float] = Field(None, description="Distance from the query location in meters")

    model_config = ConfigDict(populate_by_name=True, frozen=True)

class GeoJSONFeature(BaseModel):
    """GeoJSON Feature"""
    type: Literal["Feature"] = "Feature"
    geometry: dict = Field(..., description="GeoJSON geometry")
    properties: dict = Field(..., description="Feature properties")

class GeoJSONResponse(BaseModel):
    """GeoJSON FeatureCollection response"""
    type: Literal["FeatureCollection"] = "FeatureCollection"
    features: List[GeoJSONFeature] = Field(..., description="List of GeoJSON features")
