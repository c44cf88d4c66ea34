"""Tests for the CO-OPS tide client, with the datagetter replaced by canned responses."""

from datetime import timedelta

import pytest

from features.common.exceptions.soundings_exceptions import UpstreamDataError
from features.tides.models.tide_types import MetProduct, TideType, TimeWindow
from features.tides.services.tide_service import TideDataClient
from tests.conftest import MID_ATLANTIC, NEAR_BATTERY, T0

PREDICTIONS = {
    "predictions": [
        {"t": "2024-06-01 06:42", "v": "0.112", "type": "L"},
        {"t": "2024-06-01 12:58", "v": "1.493", "type": "H"},
        {"t": "2024-06-01 19:01", "v": "0.087", "type": "L"},
    ]
}

WATER_LEVELS = {
    "metadata": {"id": "8518750"},
    "data": [
        {"t": "2024-06-01 11:48", "v": "1.301", "s": "0.004", "f": "0,0,0,0", "q": "p"},
        {"t": "2024-06-01 11:54", "v": "", "s": "", "f": "1,0,0,0", "q": "p"},
        {"t": "2024-06-01 12:00", "v": "1.322", "s": "0.003", "f": "0,0,0,0", "q": "v"},
    ]
}

WIND = {
    "data": [
        {"t": "2024-06-01 11:54", "s": "6.2", "d": "210.0", "dr": "SSW", "g": "8.1", "f": "0,0"},
        {"t": "2024-06-01 12:00", "s": "6.8", "d": "215.0", "dr": "SW", "g": "9.0", "f": "0,0"},
    ]
}

NO_DATA = {"error": {"message": "No Predictions data was found. This product may not be offered at this station at the requested time."}}


class FakeDatagetter:
    def __init__(self, responses):
        self.responses = responses
        self.calls = []

    async def __call__(self, params):
        self.calls.append(params)
        response = self.responses[params["product"]]
        if isinstance(response, Exception):
            raise response
        return response


@pytest.fixture
def make_client(cache, locator):
    def _make(responses):
        client = TideDataClient(cache=cache, locator=locator, base_url="http://coops.invalid")
        client._request_json = FakeDatagetter(responses)
        return client
    return _make


WINDOW = TimeWindow(start=T0 - timedelta(hours=12), end=T0 + timedelta(hours=12))


class TestTimeWindow:
    def test_snaps_outward_to_whole_buckets(self):
        snapped = TimeWindow.around(T0 + timedelta(minutes=1), 1).snapped(timedelta(hours=1))
        assert snapped.start == T0 - timedelta(hours=1)
        assert snapped.end == T0 + timedelta(hours=2)

    def test_boundary_end_takes_the_next_bucket(self):
        snapped = WINDOW.snapped(timedelta(days=1))
        assert snapped.start == T0 - timedelta(hours=12)
        assert snapped.end == T0 + timedelta(hours=36)
        assert snapped.covers(TimeWindow.around(T0 + timedelta(minutes=1), 12))


class TestPredictions:
    async def test_parses_hilo(self, make_client):
        client = make_client({"predictions": PREDICTIONS})
        predictions = await client.get_predictions("8518750", WINDOW)
        assert [p.type for p in predictions] == [TideType.LOW, TideType.HIGH, TideType.LOW]
        assert predictions[1].height == pytest.approx(1.493)
        params = client._request_json.calls[0]
        assert params["interval"] == "hilo"
        assert params["begin_date"] == "20240601 00:00"
        assert params["end_date"] == "20240603 00:00"

    async def test_covering_window_is_not_refetched(self, make_client):
        client = make_client({"predictions": PREDICTIONS})
        await client.get_predictions("8518750", WINDOW)
        inner = TimeWindow(start=T0, end=T0 + timedelta(hours=8))
        predictions = await client.get_predictions("8518750", inner)
        assert len(client._request_json.calls) == 1
        assert [p.height for p in predictions] == [pytest.approx(1.493), pytest.approx(0.087)]

    async def test_nearby_windows_share_one_fetch(self, make_client):
        client = make_client({"predictions": PREDICTIONS})
        await client.get_predictions("8518750", TimeWindow.around(T0, 12))
        shifted = await client.get_predictions("8518750", TimeWindow.around(T0 + timedelta(minutes=1), 12))
        assert len(client._request_json.calls) == 1
        assert len(shifted) == 3

    async def test_result_is_trimmed_to_requested_window(self, make_client):
        client = make_client({"predictions": PREDICTIONS})
        predictions = await client.get_predictions("8518750", TimeWindow(start=T0, end=T0 + timedelta(hours=2)))
        assert [p.type for p in predictions] == [TideType.HIGH]

    async def test_wider_window_goes_upstream(self, make_client):
        client = make_client({"predictions": PREDICTIONS})
        await client.get_predictions("8518750", WINDOW)
        await client.get_predictions("8518750", TimeWindow.around(T0, 24))
        assert len(client._request_json.calls) == 2

    async def test_no_data_message_is_empty(self, make_client):
        client = make_client({"predictions": NO_DATA})
        assert await client.get_predictions("8518750", WINDOW) == []

    async def test_other_errors_raise(self, make_client):
        client = make_client({"predictions": {"error": {"message": "Wrong station ID"}}})
        with pytest.raises(UpstreamDataError):
            await client.get_predictions("nope", WINDOW)


class TestWaterLevels:
    async def test_skips_blank_values_and_maps_quality(self, make_client):
        client = make_client({"water_level": WATER_LEVELS})
        levels = await client.get_water_levels("8518750", WINDOW)
        assert len(levels) == 2
        assert not levels[0].is_verified
        assert levels[1].is_verified
        assert levels[1].sigma == pytest.approx(0.003)

    async def test_latest(self, make_client):
        client = make_client({"water_level": WATER_LEVELS})
        latest = await client.get_latest_water_level("8518750", now=T0)
        assert latest.height == pytest.approx(1.322)

    async def test_latest_is_served_from_cache_minutes_later(self, make_client):
        client = make_client({"water_level": WATER_LEVELS})
        await client.get_latest_water_level("8518750", now=T0)
        latest = await client.get_latest_water_level("8518750", now=T0 + timedelta(minutes=6))
        assert len(client._request_json.calls) == 1
        assert latest.height == pytest.approx(1.322)
        params = client._request_json.calls[0]
        assert (params["begin_date"], params["end_date"]) == ("20240601 11:00", "20240601 13:00")


class TestMeteorological:
    async def test_wind_uses_speed_direction_gust(self, make_client):
        client = make_client({"wind": WIND})
        data = await client.get_meteorological_data("8518750", MetProduct.WIND, WINDOW)
        assert data.latest.value == pytest.approx(6.8)
        assert data.latest.direction == pytest.approx(215.0)
        assert data.latest.gust == pytest.approx(9.0)


class TestEnvironmentalData:
    async def test_partial_failure_is_reported(self, make_client):
        client = make_client({
            "predictions": PREDICTIONS,
            "water_level": WATER_LEVELS,
            "wind": WIND,
            "air_temperature": {"data": [{"t": "2024-06-01 12:00", "v": "21.4"}]},
            "water_temperature": UpstreamDataError("CO-OPS answered HTTP 500"),
            "air_pressure": {"data": [{"t": "2024-06-01 12:00", "v": "1011.3"}]},
        })
        result = await client.get_location_environmental_data(NEAR_BATTERY, now=T0)
        assert result.station.station_id == "8518750"
        assert result.current_water_level.height == pytest.approx(1.322)
        assert set(result.meteorological) == {MetProduct.WIND, MetProduct.AIR_TEMPERATURE, MetProduct.AIR_PRESSURE}
        assert "HTTP 500" in result.errors["water_temperature"]

    async def test_no_station_nearby(self, make_client):
        client = make_client({})
        result = await client.get_location_environmental_data(MID_ATLANTIC, now=T0)
        assert result.station is None
        assert result.predictions == []
        assert client._request_json.calls == []
