import math
from typing import Tuple

EARTH_RADIUS_M = 6371000.0  # Earth's mean radius in meters

class GeoUtils:
    @staticmethod
    def to_radians(degrees: float) -> float:
        """Convert degrees to radians."""
        return degrees * math.pi / 180

    @staticmethod
    def haversine_distance(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
        """
        Calculate the great circle distance between two points.

        Args:
            lat1: Latitude of first point
            lon1: Longitude of first point
            lat2: Latitude of second point
            lon2: Longitude of second point

        Returns:
            Distance in meters
        """
        d_lat = GeoUtils.to_radians(lat2 - lat1)
        d_lon = GeoUtils.to_radians(lon2 - lon1)

        a = (math.sin(d_lat / 2) * math.sin(d_lat / 2) +
             math.cos(GeoUtils.to_radians(lat1)) *
             math.cos(GeoUtils.to_radians(lat2)) *
             math.sin(d_lon / 2) * math.sin(d_lon / 2))

        c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))
        return EARTH_RADIUS_M * c

    @staticmethod
    def round_coordinates(lat: float, lon: float, precision: int = 2) -> Tuple[float, float]:
        """Round coordinates for cache keys (2 decimals is roughly 1km)."""
        return round(lat, precision), round(lon, precision)

    @staticmethod
    def location_key(lat: float, lon: float, precision: int = 2) -> str:
        rlat, rlon = GeoUtils.round_coordinates(lat, lon, precision)
        return f"{rlat:.{precision}f}_{rlon:.{precision}f}"
