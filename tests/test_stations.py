"""Tests for the station catalog and nearest-station lookup."""

import pytest

from features.common.models.location_types import Location
from features.offline.services.offline_cache import CacheNamespace
from features.stations.models.station_types import TideReferenceType
from tests.conftest import BATTERY, MID_ATLANTIC, NEAR_BATTERY


class TestStationRepository:
    def test_loads_catalog(self, repository):
        stations = repository.load_stations()
        assert len(stations) == 29
        assert repository.get_station("8518750").name == "The Battery, NY"

    def test_prediction_type_is_parsed(self, repository):
        assert repository.get_station("8530973").tide_type == TideReferenceType.SUBORDINATE


class TestStationLocator:
    def test_nearest_is_the_battery(self, locator):
        nearest = locator.find_nearest(NEAR_BATTERY, max_distance_km=50)
        assert nearest[0].station_id == "8518750"
        assert nearest[0].distance < 1000

    def test_sorted_and_within_radius(self, locator):
        nearest = locator.find_nearest(BATTERY, max_distance_km=50)
        distances = [s.distance for s in nearest]
        assert distances == sorted(distances)
        assert all(d <= 50000 for d in distances)
        assert {"8518750", "8530973", "8531680", "8516945"} <= {s.station_id for s in nearest}

    def test_max_results(self, locator):
        assert len(locator.find_nearest(BATTERY, max_distance_km=100, max_results=2)) == 2

    def test_station_type_filter(self, locator):
        nearest = locator.find_nearest(BATTERY, station_type=TideReferenceType.SUBORDINATE)
        assert [s.station_id for s in nearest] == ["8530973"]

    def test_offshore_is_empty(self, locator):
        assert locator.find_nearest(MID_ATLANTIC) == []

    def test_result_is_cached(self, locator, cache):
        first = locator.find_nearest(NEAR_BATTERY)
        assert cache.scan(CacheNamespace.STATIONS, "nearest:")
        locator.repository._stations = []
        assert locator.find_nearest(NEAR_BATTERY) == first

    def test_cached_distance_is_for_the_caller(self, locator):
        first = locator.find_nearest(NEAR_BATTERY)
        nudged = Location(latitude=40.7009, longitude=-74.0088)
        again = locator.find_nearest(nudged)
        assert {s.station_id for s in again} == {s.station_id for s in first}
        assert again[0].station_id == "8518750"
        assert again[0].distance == pytest.approx(nudged.distance_to(again[0].location))
        assert again[0].distance != pytest.approx(first[0].distance)

    def test_geojson(self, locator):
        collection = locator.get_stations_geojson()
        battery = next(f for f in collection.features if f.properties["id"] == "8518750")
        assert battery.geometry["coordinates"] == [-74.0142, 40.7006]

    @pytest.mark.parametrize("station_id", ["9414290", "1612340"])
    def test_get_station(self, locator, station_id):
        assert locator.get_station(station_id).station_id == station_id
