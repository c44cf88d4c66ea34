from typing import List, Optional
from fastapi import APIRouter, Depends, HTTPException, Query, Request
from pydantic import BaseModel, Field
from features.common.exceptions.soundings_exceptions import AllProvidersFailedError
from features.common.models.location_types import Location
from features.weather.models.weather_types import (
    MarineAlert,
    ProviderStatus,
    WeatherForecast,
    WeatherSnapshot
)
from features.weather.services.weather_client import MultiProviderWeatherClient

router = APIRouter(
    prefix="/weather",
    tags=["Weather"],
    responses={503: {"description": "Every weather provider failed"}}
)

class ProviderUpdate(BaseModel):
    api_key: Optional[str] = None
    enabled: Optional[bool] = None
    hourly_limit: Optional[int] = Field(None, gt=0)

def get_weather_client(request: Request) -> MultiProviderWeatherClient:
    """Get MultiProviderWeatherClient instance from app state."""
    return request.app.state.weather_client

def _location(lat: float = Query(..., ge=-90, le=90), lon: float = Query(..., ge=-180, le=180)) -> Location:
    return Location(latitude=lat, longitude=lon)

@router.get(
    "/current",
    response_model=WeatherSnapshot,
    summary="Get current marine weather",
    description="Tries providers in priority order; the `source` field names the provider that answered"
)
async def get_current_weather(
    location: Location = Depends(_location),
    client: MultiProviderWeatherClient = Depends(get_weather_client)
) -> WeatherSnapshot:
    try:
        return await client.get_current_weather(location)
    except AllProvidersFailedError as e:
        raise HTTPException(status_code=503, detail=str(e))

@router.get(
    "/forecast",
    response_model=WeatherForecast,
    summary="Get marine weather forecast"
)
async def get_forecast(
    location: Location = Depends(_location),
    hours: int = Query(48, ge=1, le=168),
    client: MultiProviderWeatherClient = Depends(get_weather_client)
) -> WeatherForecast:
    try:
        return await client.get_forecast(location, hours)
    except AllProvidersFailedError as e:
        raise HTTPException(status_code=503, detail=str(e))

@router.get(
    "/alerts",
    response_model=List[MarineAlert],
    summary="Get active marine alerts"
)
async def get_alerts(
    location: Location = Depends(_location),
    client: MultiProviderWeatherClient = Depends(get_weather_client)
) -> List[MarineAlert]:
    try:
        return await client.get_marine_alerts(location)
    except AllProvidersFailedError as e:
        raise HTTPException(status_code=503, detail=str(e))

@router.get(
    "/providers",
    response_model=List[ProviderStatus],
    summary="Get weather provider status",
    description="Per-provider configuration, remaining hourly requests and last error"
)
async def get_provider_status(
    client: MultiProviderWeatherClient = Depends(get_weather_client)
) -> List[ProviderStatus]:
    return client.get_provider_status()

@router.patch(
    "/providers/{provider_id}",
    response_model=ProviderStatus,
    summary="Configure a weather provider"
)
async def configure_provider(
    provider_id: str,
    update: ProviderUpdate,
    client: MultiProviderWeatherClient = Depends(get_weather_client)
) -> ProviderStatus:
    try:
        return client.configure_provider(provider_id, **update.model_dump(exclude_none=True))
    except KeyError:
        raise HTTPException(status_code=404, detail=f"Unknown weather provider {provider_id}")

@router.delete(
    "/cache",
    summary="Clear cached weather, forecasts and alerts"
)
async def clear_weather_cache(
    client: MultiProviderWeatherClient = Depends(get_weather_client)
):
    return {"cleared": client.clear_cache()}
