"""Tests for the end-to-end depth processing pipeline."""

from datetime import timedelta

import pytest

from features.common.exceptions.soundings_exceptions import UpstreamDataError
from features.common.models.location_types import DepthReading, Location
from features.depth.models.depth_types import TideCorrectionMethod
from features.depth.services.depth_pipeline import DepthProcessingPipeline
from features.realtime.models.realtime_types import DataType
from features.realtime.services.distributor import RealtimeDistributor
from features.tides.models.tide_types import MeteorologicalData, MetProduct, TidePrediction, WaterLevel
from features.tides.services.tide_service import TideDataClient
from features.weather.services.weather_client import MultiProviderWeatherClient
from tests.conftest import MID_ATLANTIC, NEAR_BATTERY, T0, FakeProvider, TransportFactory


class StubTideClient:
    """Answers like TideDataClient without any upstream."""

    def __init__(self, predictions=None, levels=None, prediction_error=None):
        self.predictions = predictions if predictions is not None else [
            TidePrediction(station_id="8518750", time=T0 - timedelta(hours=3), height=0.4),
            TidePrediction(station_id="8518750", time=T0 + timedelta(hours=3), height=1.0),
        ]
        self.levels = levels or []
        self.prediction_error = prediction_error
        self.calls = []

    async def get_predictions(self, station_id, window):
        self.calls.append(("predictions", station_id))
        if self.prediction_error:
            raise self.prediction_error
        return [p for p in self.predictions if window.contains(p.time)]

    async def get_water_levels(self, station_id, window):
        self.calls.append(("water_levels", station_id))
        return [w for w in self.levels if window.contains(w.time)]

    async def get_meteorological_data(self, station_id, product, window):
        self.calls.append(("met", station_id))
        return MeteorologicalData(station_id=station_id, product=MetProduct(product))


class CountingDatagetter:
    """Stands in for the CO-OPS datagetter and records each product asked for."""

    def __init__(self):
        self.products = []

    async def __call__(self, params):
        self.products.append(params["product"])
        if params["product"] == "predictions":
            return {"predictions": [
                {"t": "2024-06-01 09:00", "v": "0.400", "type": "L"},
                {"t": "2024-06-01 15:00", "v": "1.000", "type": "H"},
            ]}
        return {"data": []}


def _reading(location=NEAR_BATTERY, depth=12.0, reading_id="r-1", timestamp=T0):
    return DepthReading(id=reading_id, location=location, timestamp=timestamp, depth=depth, confidence=0.9)


@pytest.fixture
def make_pipeline(cache, clock, locator):
    def _make(tide_client=None, providers=None, distributor=None):
        weather = MultiProviderWeatherClient(
            providers=providers if providers is not None else [FakeProvider("B", priority=1)],
            cache=cache,
            clock=clock
        )
        return DepthProcessingPipeline(
            locator=locator,
            tide_client=tide_client or StubTideClient(),
            weather_client=weather,
            cache=cache,
            distributor=distributor
        )
    return _make


class TestDepthPipeline:
    async def test_full_context(self, make_pipeline):
        pipeline = make_pipeline()
        processed = await pipeline.process(_reading(), now=T0)
        assert processed.tide_correction.method == TideCorrectionMethod.INTERPOLATED
        assert processed.tide_correction.station.station_id == "8518750"
        assert processed.tide_correction.tide_height == pytest.approx(0.7)
        assert processed.weather_source == "B"
        expected = 12.0 - 0.7 + processed.environmental_factors.total_correction
        assert processed.corrected_depth == pytest.approx(expected)
        assert processed.warnings == []

    async def test_observed_level_is_used(self, make_pipeline):
        levels = [
            WaterLevel(station_id="8518750", time=T0 - timedelta(minutes=12), height=0.9),
            WaterLevel(station_id="8518750", time=T0 - timedelta(minutes=6), height=0.95),
        ]
        pipeline = make_pipeline(tide_client=StubTideClient(levels=levels))
        processed = await pipeline.process(_reading(), now=T0)
        assert processed.tide_correction.method == TideCorrectionMethod.OBSERVED
        assert processed.tide_correction.tide_height == 0.95

    async def test_no_station_degrades_to_estimate(self, make_pipeline):
        tides = StubTideClient()
        pipeline = make_pipeline(tide_client=tides)
        processed = await pipeline.process(_reading(location=MID_ATLANTIC), now=T0)
        assert processed.tide_correction.method == TideCorrectionMethod.ESTIMATED
        assert "No reference station in range" in processed.warnings
        assert tides.calls == []

    async def test_weather_outage_degrades(self, make_pipeline):
        pipeline = make_pipeline(providers=[FakeProvider("A", priority=1, error=UpstreamDataError("HTTP 503"))])
        processed = await pipeline.process(_reading(), now=T0)
        assert processed.weather_source is None
        assert processed.environmental_factors.confidence == 0.5
        assert any(w.startswith("Weather unavailable") for w in processed.warnings)

    async def test_prediction_outage_is_noted(self, make_pipeline):
        pipeline = make_pipeline(tide_client=StubTideClient(prediction_error=UpstreamDataError("CO-OPS answered HTTP 500")))
        processed = await pipeline.process(_reading(), now=T0)
        assert processed.tide_correction.method == TideCorrectionMethod.ESTIMATED
        assert any("HTTP 500" in w for w in processed.warnings)

    async def test_result_is_cached(self, make_pipeline):
        pipeline = make_pipeline()
        reading = _reading()
        processed = await pipeline.process(reading, now=T0)
        assert pipeline.get_processed(reading) == processed

    async def test_batch(self, make_pipeline):
        pipeline = make_pipeline()
        readings = [_reading(depth=d, reading_id=f"r-{d}") for d in (8.0, 9.0, 10.0)]
        result = await pipeline.batch_process(readings, now=T0)
        assert result.failed == 0
        assert [p.reading.depth for p in result.processed] == [8.0, 9.0, 10.0]

    async def test_publishes_to_subscribers(self, make_pipeline, clock):
        distributor = RealtimeDistributor(transport_factory=TransportFactory(), clock=clock)
        received = []
        await distributor.subscribe(NEAR_BATTERY, 2000, [DataType.DEPTH], received.append)
        far_away = []
        await distributor.subscribe(Location(latitude=41.5, longitude=-71.3), 2000, [DataType.DEPTH], far_away.append)

        pipeline = make_pipeline(distributor=distributor)
        processed = await pipeline.process(_reading(), now=T0)
        assert len(received) == 1
        assert received[0].data["corrected_depth"] == processed.corrected_depth
        assert far_away == []
        await distributor.destroy()

    async def test_nearby_readings_share_tide_fetches(self, make_pipeline, cache, locator):
        tide_client = TideDataClient(cache=cache, locator=locator, base_url="http://coops.invalid")
        tide_client._request_json = CountingDatagetter()
        pipeline = make_pipeline(tide_client=tide_client)

        await pipeline.process(_reading(reading_id="r-1"), now=T0)
        second = await pipeline.process(
            _reading(reading_id="r-2", timestamp=T0 + timedelta(minutes=1)), now=T0
        )
        assert sorted(tide_client._request_json.products) == ["predictions", "water_level", "wind"]
        assert second.tide_correction.method == TideCorrectionMethod.INTERPOLATED
        assert second.tide_correction.tide_height == pytest.approx(0.7, abs=0.01)
