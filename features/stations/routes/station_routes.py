from typing import List, Optional
from fastapi import APIRouter, Depends, HTTPException, Query, Request
from features.common.models.location_types import Location
from features.stations.models.station_types import GeoJSONResponse, Station, TideReferenceType
from features.stations.services.station_locator import StationLocator
import logging

logger = logging.getLogger(__name__)
router = APIRouter(
    prefix="/stations",
    tags=["Stations"],
    responses={404: {"description": "Station not found"}}
)

def get_locator(request: Request) -> StationLocator:
    """Dependency to get the StationLocator instance."""
    return request.app.state.station_locator

@router.get(
    "",
    response_model=List[Station],
    summary="Get all tide stations",
    description="Returns every tide reference station in the catalog"
)
async def get_all_stations(
    locator: StationLocator = Depends(get_locator)
) -> List[Station]:
    return locator.get_all_stations()

@router.get(
    "/geojson",
    response_model=GeoJSONResponse,
    summary="Get all stations in GeoJSON format",
    description="Returns tide stations in GeoJSON format for mapping"
)
async def get_stations_geojson(
    locator: StationLocator = Depends(get_locator)
) -> GeoJSONResponse:
    """Get all stations in GeoJSON format."""
    return locator.get_stations_geojson()

@router.get(
    "/nearest",
    response_model=List[Station],
    summary="Find nearest tide stations",
    description="Returns stations within the radius, nearest first. An empty list means no reference station is available."
)
async def find_nearest_stations(
    lat: float = Query(..., ge=-90, le=90),
    lon: float = Query(..., ge=-180, le=180),
    max_distance_km: float = Query(50.0, gt=0, le=500),
    max_results: int = Query(10, ge=1, le=50),
    station_type: Optional[TideReferenceType] = None,
    locator: StationLocator = Depends(get_locator)
) -> List[Station]:
    return locator.find_nearest(
        Location(latitude=lat, longitude=lon),
        max_distance_km=max_distance_km,
        max_results=max_results,
        station_type=station_type
    )

@router.get(
    "/{station_id}",
    response_model=Station,
    summary="Get a tide station"
)
async def get_station(
    station_id: str,
    locator: StationLocator = Depends(get_locator)
) -> Station:
    station = locator.get_station(station_id)
    if not station:
        raise HTTPException(status_code=404, detail=f"Station {station_id} not found")
    return station
