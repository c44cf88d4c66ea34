from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import Dict, List, Any, Optional

class Settings(BaseSettings):
    """Application settings."""

    # Bundled station catalog
    stations_file: str = "data/tide_stations.json"

    # Local store: "memory://" or any SQLAlchemy URL
    store_url: str = "sqlite:///soundings_cache.db"

    # NOAA CO-OPS settings
    coops_base_url: str = "https://api.tidesandcurrents.noaa.gov/api/prod/datagetter"
    coops_params: Dict = {
        "application": "Soundings",
        "datum": "MLLW",
        "units": "metric",
        "time_zone": "gmt",
        "format": "json"
    }

    # Weather providers, tried in ascending priority order
    weather_providers: List[Dict[str, Any]] = [
        {
            "id": "stormglass",
            "name": "Stormglass",
            "priority": 1,
            "hourly_limit": 50,
            "base_url": "https://api.stormglass.io/v2",
            "enabled": True
        },
        {
            "id": "openweather",
            "name": "OpenWeatherMap",
            "priority": 2,
            "hourly_limit": 3600,
            "base_url": "https://api.openweathermap.org/data/2.5",
            "enabled": True
        },
        {
            "id": "weatherapi",
            "name": "WeatherAPI",
            "priority": 3,
            "hourly_limit": 100,
            "base_url": "https://api.weatherapi.com/v1",
            "enabled": True
        },
        {
            "id": "nws",
            "name": "National Weather Service",
            "priority": 4,
            "hourly_limit": 300,
            "base_url": "https://api.weather.gov",
            "enabled": True
        }
    ]
    weather_api_keys: Dict[str, str] = {}
    nws_user_agent: str = "(soundings, ops@soundings.example)"

    request: Dict = {
        "timeout": 30,
        "max_concurrent": 5
    }

    # Correction
    correction_batch_size: int = 10
    station_search_radius_km: float = 50.0
    # Reference meridians used by the coastal proximity estimate
    coastline_meridians: List[float] = [-74.0, -122.0, -81.0]

    # Offline sync queue
    sync_api_url: str = "http://localhost:5010/api"
    sync_batch_size: int = 50
    sync_purge_age_days: int = 7
    sync_max_attempts: int = 3
    sync_interval_seconds: int = 60
    maintenance_interval_seconds: int = 900

    # Realtime distributor
    realtime_enabled: bool = False
    realtime_url: str = "ws://localhost:5010/api/realtime"
    realtime: Dict[str, Any] = {
        "reconnect_interval": 5.0,       # seconds, base of the backoff
        "max_reconnect_delay": 300.0,
        "max_reconnect_attempts": 10,
        "heartbeat_interval": 30.0,
        "connect_timeout": 10.0,
        "battery_optimization": False,
        "data_throttling": True,
        "low_priority_min_interval": 60,
        "emergency_radius": 5000.0,      # meters
        "emergency_interval": 10         # seconds
    }

    def get_cache_ttl(self) -> Dict[str, int]:
        """Get cache TTL values in seconds per cache namespace."""
        return {
            "stations": 86400,            # 24 hours, station lists rarely change
            "tide_predictions": 3600,     # 1 hour
            "water_levels": 900,          # 15 minutes, observed data is time-sensitive
            "met_data": 1800,             # 30 minutes
            "weather": 900,               # 15 minutes
            "forecasts": 3600,            # 1 hour
            "alerts": 1800,               # 30 minutes
            "processed_readings": 86400   # 24 hours
        }

    def get_provider_api_key(self, provider_id: str) -> Optional[str]:
        return self.weather_api_keys.get(provider_id)

    model_config = SettingsConfigDict(
        env_prefix="soundings_",
        case_sensitive=False,
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore"
    )

settings = Settings()
