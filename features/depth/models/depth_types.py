from datetime import datetime
from enum import Enum
from typing import List, Optional
from pydantic import BaseModel, ConfigDict, Field

from features.common.models.location_types import DepthReading
from features.stations.models.station_types import Station

class TideCorrectionMethod(str, Enum):
    OBSERVED = "observed"
    INTERPOLATED = "interpolated"
    PREDICTED = "predicted"
    ESTIMATED = "estimated"

class Reliability(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"
    UNRELIABLE = "unreliable"

class TideCorrection(BaseModel):
    """Tide height removed from a raw sounding to reduce it to chart datum."""
    original_depth: float
    corrected_depth: float = Field(..., description="original_depth - tide_height")
    tide_height: float
    method: TideCorrectionMethod
    confidence: float = Field(..., ge=0, le=1)
    datum: str = "MLLW"
    station: Optional[Station] = None

    model_config = ConfigDict(frozen=True)

class EnvironmentalFactors(BaseModel):
    """Additive corrections in meters, and how much to trust them."""
    wind_correction: float = 0.0
    current_correction: float = 0.0
    pressure_correction: float = 0.0
    temperature_correction: float = 0.0
    salinity_correction: float = 0.0
    total_correction: float = 0.0
    confidence: float = Field(1.0, ge=0, le=1)

    model_config = ConfigDict(frozen=True)

class QualityFactors(BaseModel):
    data_age: float = Field(..., ge=0, le=1)
    station_distance: float = Field(..., ge=0, le=1)
    environmental_conditions: float = Field(..., ge=0, le=1)
    data_source: float = Field(..., ge=0, le=1)
    instrument_accuracy: float = Field(..., ge=0, le=1)

    model_config = ConfigDict(frozen=True)

class QualityScore(BaseModel):
    score: float = Field(..., ge=0, le=1)
    factors: QualityFactors
    warnings: List[str] = Field(default_factory=list)

    model_config = ConfigDict(frozen=True)

class ProcessedDepthReading(BaseModel):
    """A corrected sounding. Derived data: recompute rather than patch."""
    reading: DepthReading
    tide_correction: TideCorrection
    environmental_factors: EnvironmentalFactors
    corrected_depth: float = Field(..., description="raw - tide + environmental corrections, meters")
    quality_score: QualityScore
    safety_margin: float = Field(..., ge=0.5, le=2.0)
    reliability: Reliability
    processed_at: datetime
    weather_source: Optional[str] = None
    warnings: List[str] = Field(default_factory=list, description="Pipeline level notes")

    model_config = ConfigDict(frozen=True)

class BatchProcessResponse(BaseModel):
    processed: List[ProcessedDepthReading]
    failed: int = 0
    errors: List[str] = Field(default_factory=list)
