from datetime import datetime, timedelta, timezone
from typing import Optional
from fastapi import APIRouter, HTTPException, Depends, Query, Request
from features.common.exceptions.soundings_exceptions import UpstreamDataError
from features.common.models.location_types import Location
from features.stations.models.station_types import Station
from features.stations.services.station_locator import StationLocator
from features.tides.models.tide_types import (
    LocationEnvironmentalData,
    MeteorologicalData,
    MetProduct,
    StationPredictions,
    StationWaterLevels,
    TimeWindow
)
from features.tides.services.tide_service import TideDataClient
import logging

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/tides",
    tags=["Tides"],
    responses={
        404: {"description": "Station not found"},
        502: {"description": "Upstream tide service error"}
    }
)

def get_service(request: Request) -> TideDataClient:
    """Dependency to get the TideDataClient instance."""
    return request.app.state.tide_client

def get_locator(request: Request) -> StationLocator:
    return request.app.state.station_locator

def _station_or_404(locator: StationLocator, station_id: str) -> Station:
    station = locator.get_station(station_id)
    if not station:
        raise HTTPException(status_code=404, detail=f"Station {station_id} not found")
    return station

def _window(start: Optional[datetime], end: Optional[datetime], default_start: datetime, default_end: datetime) -> TimeWindow:
    try:
        return TimeWindow(start=start or default_start, end=end or default_end)
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e))

@router.get(
    "/stations/{station_id}/predictions",
    response_model=StationPredictions,
    summary="Get tide predictions for a station",
    description="Returns high/low tide predictions (meters, MLLW). Defaults to the next 24 hours."
)
async def get_station_predictions(
    station_id: str,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    service: TideDataClient = Depends(get_service),
    locator: StationLocator = Depends(get_locator)
) -> StationPredictions:
    station = _station_or_404(locator, station_id)
    now = datetime.now(timezone.utc)
    window = _window(start, end, now, now + timedelta(hours=24))
    try:
        predictions = await service.get_predictions(station_id, window)
    except UpstreamDataError as e:
        raise HTTPException(status_code=502, detail=str(e))
    return StationPredictions(station=station, window=window, predictions=predictions)

@router.get(
    "/stations/{station_id}/water-levels",
    response_model=StationWaterLevels,
    summary="Get observed water levels for a station",
    description="Returns six minute observed water levels. Defaults to the last 6 hours."
)
async def get_station_water_levels(
    station_id: str,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    service: TideDataClient = Depends(get_service),
    locator: StationLocator = Depends(get_locator)
) -> StationWaterLevels:
    station = _station_or_404(locator, station_id)
    now = datetime.now(timezone.utc)
    window = _window(start, end, now - timedelta(hours=6), now)
    try:
        levels = await service.get_water_levels(station_id, window)
    except UpstreamDataError as e:
        raise HTTPException(status_code=502, detail=str(e))
    return StationWaterLevels(station=station, window=window, water_levels=levels)

@router.get(
    "/stations/{station_id}/met/{product}",
    response_model=MeteorologicalData,
    summary="Get station meteorological observations"
)
async def get_station_met_data(
    station_id: str,
    product: MetProduct,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    service: TideDataClient = Depends(get_service),
    locator: StationLocator = Depends(get_locator)
) -> MeteorologicalData:
    _station_or_404(locator, station_id)
    now = datetime.now(timezone.utc)
    window = _window(start, end, now - timedelta(hours=3), now)
    try:
        return await service.get_meteorological_data(station_id, product, window)
    except UpstreamDataError as e:
        raise HTTPException(status_code=502, detail=str(e))

@router.get(
    "/environment",
    response_model=LocationEnvironmentalData,
    summary="Get environmental data for a location",
    description="Nearest station's predictions, latest water level and meteorological data. Datasets that fail are listed in `errors`."
)
async def get_location_environment(
    lat: float = Query(..., ge=-90, le=90),
    lon: float = Query(..., ge=-180, le=180),
    service: TideDataClient = Depends(get_service)
) -> LocationEnvironmentalData:
    return await service.get_location_environmental_data(Location(latitude=lat, longitude=lon))
