from pathlib import Path
import json
import logging
from typing import Dict, List, Optional

from features.common.models.location_types import Location
from features.stations.models.station_types import Station, TideReferenceType

logger = logging.getLogger(__name__)

class StationRepository:
    """Read-only access to the bundled tide station catalog."""

    def __init__(self, stations_file: Path):
        self.stations_file = Path(stations_file)
        self._stations: Optional[List[Station]] = None
        self._by_id: Dict[str, Station] = {}

    @staticmethod
    def _to_station(raw: Dict) -> Station:
        tide_type = (raw.get("prediction_type") or "harmonic").lower()
        return Station(
            station_id=str(raw["station_id"]),
            name=raw["name"],
            location=Location(latitude=raw["latitude"], longitude=raw["longitude"]),
            region=raw.get("region"),
            state=raw.get("state"),
            timezone=raw.get("timezone"),
            tide_type=TideReferenceType(tide_type)
        )

    def load_stations(self) -> List[Station]:
        if self._stations is None:
            with open(self.stations_file) as f:
                self._stations = [self._to_station(raw) for raw in json.load(f)]
            self._by_id = {s.station_id: s for s in self._stations}
            logger.info(f"Loaded {len(self._stations)} tide stations from {self.stations_file}")
        return self._stations

    def get_station(self, station_id: str) -> Optional[Station]:
        self.load_stations()
        return self._by_id.get(station_id)
