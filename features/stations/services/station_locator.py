import logging
from pathlib import Path
from typing import List, Optional

from core.config import settings
from features.common.models.location_types import Location
from features.offline.services.offline_cache import CacheNamespace, OfflineCache
from features.stations.models.station_types import (
    GeoJSONFeature,
    GeoJSONResponse,
    Station,
    TideReferenceType,
)
from repositories.station_repo import StationRepository

logger = logging.getLogger(__name__)

class StationLocator:
    """Finds the reference stations closest to a location.

    An empty result means "no reference available" and is never an error;
    callers fall back to estimated corrections.
    """

    def __init__(
        self,
        repository: Optional[StationRepository] = None,
        cache: Optional[OfflineCache] = None
    ):
        self.repository = repository or StationRepository(Path(settings.stations_file))
        self.cache = cache if cache is not None else OfflineCache()

    @staticmethod
    def _cache_key(
        location: Location,
        max_distance_km: float,
        max_results: int,
        station_type: Optional[TideReferenceType]
    ) -> str:
        type_part = station_type.value if station_type else "any"
        return f"nearest:{location.cache_key()}:{max_distance_km:g}:{max_results}:{type_part}"

    def find_nearest(
        self,
        location: Location,
        max_distance_km: float = 50.0,
        max_results: int = 10,
        station_type: Optional[TideReferenceType] = None
    ) -> List[Station]:
        """Stations within max_distance_km, nearest first, each carrying its distance in meters."""
        key = self._cache_key(location, max_distance_km, max_results, station_type)
        cached = self.cache.get_model(CacheNamespace.STATIONS, key, List[Station])
        if cached is not None:
            # Entries are shared across a rounded cell; distances are per caller
            return sorted(
                (s.model_copy(update={"distance": location.distance_to(s.location)}) for s in cached),
                key=lambda s: s.distance
            )

        max_distance_m = max_distance_km * 1000
        candidates = []
        for station in self.repository.load_stations():
            if station_type and station.tide_type != station_type:
                continue
            distance = location.distance_to(station.location)
            if distance <= max_distance_m:
                candidates.append(station.model_copy(update={"distance": distance}))

        candidates.sort(key=lambda s: s.distance)
        nearest = candidates[:max_results]
        if not nearest:
            logger.info(
                f"No tide station within {max_distance_km:g} km of "
                f"{location.latitude:.4f}, {location.longitude:.4f}"
            )
        self.cache.put(CacheNamespace.STATIONS, key, nearest, source="catalog")
        return nearest

    def get_station(self, station_id: str) -> Optional[Station]:
        return self.repository.get_station(station_id)

    def get_all_stations(self) -> List[Station]:
        return self.repository.load_stations()

    def get_stations_geojson(self) -> GeoJSONResponse:
        """Get stations in GeoJSON format."""
        features = [
            GeoJSONFeature(
                geometry={
                    "type": "Point",
                    "coordinates": [station.location.longitude, station.location.latitude]
                },
                properties={
                    "id": station.station_id,
                    "name": station.name,
                    "type": station.tide_type.value,
                    "region": station.region,
                    "state": station.state
                }
            )
            for station in self.repository.load_stations()
        ]
        return GeoJSONResponse(features=features)
