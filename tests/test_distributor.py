"""Tests for subscription matching, throttling and the connection lifecycle."""

import pytest

from features.common.exceptions.soundings_exceptions import InvalidSubscriptionError
from features.common.models.location_types import Location
from features.realtime.models.realtime_types import (
    ConnectionQuality,
    ConnectionState,
    DataType,
    MessageType,
    RealtimeUpdate,
    SubscriptionPriority,
    UpdateSeverity,
)
from features.realtime.services.distributor import RealtimeDistributor
from tests.conftest import BATTERY, TransportFactory, settle

# Roughly 1 km and 2 km north of the Battery
ONE_KM_NORTH = Location(latitude=BATTERY.latitude + 0.009, longitude=BATTERY.longitude)
TWO_KM_NORTH = Location(latitude=BATTERY.latitude + 0.018, longitude=BATTERY.longitude)


def _update(location=BATTERY, data_type=DataType.DEPTH, severity=UpdateSeverity.INFO):
    return RealtimeUpdate(type=data_type, location=location, data={"depth": 4.2}, severity=severity)


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
async def make_distributor(clock, sleeps):
    created = []

    async def fake_sleep(delay):
        sleeps.append(delay)

    def _make(factory=None, rng=lambda: 0.99, **config):
        distributor = RealtimeDistributor(
            url="ws://realtime.invalid",
            transport_factory=factory or TransportFactory(),
            config=config,
            clock=clock,
            sleep=fake_sleep,
            rng=rng
        )
        created.append(distributor)
        return distributor

    yield _make
    for distributor in created:
        await distributor.destroy()


class TestMatching:
    async def test_radius(self, make_distributor):
        distributor = make_distributor()
        received = []
        await distributor.subscribe(BATTERY, 1500, [DataType.DEPTH], received.append, update_interval=0)

        assert await distributor.dispatch_update(_update(ONE_KM_NORTH)) == 1
        assert await distributor.dispatch_update(_update(TWO_KM_NORTH)) == 0
        assert len(received) == 1

    async def test_data_type_filter(self, make_distributor):
        distributor = make_distributor()
        received = []
        await distributor.subscribe(BATTERY, 1500, [DataType.TIDE], received.append)
        assert await distributor.dispatch_update(_update(data_type=DataType.WEATHER)) == 0
        assert received == []

    async def test_async_callbacks_are_awaited(self, make_distributor):
        distributor = make_distributor()
        received = []

        async def callback(update):
            received.append(update)

        await distributor.subscribe(BATTERY, 1500, [DataType.DEPTH], callback)
        await distributor.dispatch_update(_update())
        assert len(received) == 1

    async def test_failing_callback_does_not_stop_others(self, make_distributor):
        distributor = make_distributor()
        received = []

        def broken(update):
            raise RuntimeError("boom")

        await distributor.subscribe(BATTERY, 1500, [DataType.DEPTH], broken)
        await distributor.subscribe(BATTERY, 1500, [DataType.DEPTH], received.append)
        assert await distributor.dispatch_update(_update()) == 2
        assert len(received) == 1


class TestThrottling:
    async def test_interval_between_deliveries(self, make_distributor, clock):
        distributor = make_distributor()
        received = []
        await distributor.subscribe(BATTERY, 1500, [DataType.DEPTH], received.append, update_interval=30)

        assert await distributor.dispatch_update(_update()) == 1
        assert await distributor.dispatch_update(_update()) == 0
        clock.advance(31)
        assert await distributor.dispatch_update(_update()) == 1
        assert len(received) == 2

    async def test_urgent_updates_bypass_throttle(self, make_distributor):
        distributor = make_distributor()
        received = []
        await distributor.subscribe(BATTERY, 1500, [DataType.DEPTH], received.append, update_interval=30)
        await distributor.dispatch_update(_update())
        assert await distributor.dispatch_update(_update(severity=UpdateSeverity.CRITICAL)) == 1
        assert received[-1].severity == UpdateSeverity.CRITICAL

    async def test_battery_mode_drops_low_priority(self, make_distributor):
        distributor = make_distributor(rng=lambda: 0.4, battery_optimization=True)
        received = []
        await distributor.subscribe(BATTERY, 1500, [DataType.DEPTH], received.append,
                                    priority=SubscriptionPriority.LOW)
        assert await distributor.dispatch_update(_update()) == 0
        assert received == []

    async def test_battery_mode_floors_low_priority_interval(self, make_distributor, clock):
        distributor = make_distributor(rng=lambda: 0.6, battery_optimization=True)
        received = []
        await distributor.subscribe(BATTERY, 1500, [DataType.DEPTH], received.append,
                                    update_interval=10, priority=SubscriptionPriority.LOW)
        assert await distributor.dispatch_update(_update()) == 1
        clock.advance(31)
        assert await distributor.dispatch_update(_update()) == 0
        clock.advance(30)
        assert await distributor.dispatch_update(_update()) == 1

    async def test_battery_mode_leaves_normal_priority_alone(self, make_distributor):
        distributor = make_distributor(rng=lambda: 0.0, battery_optimization=True)
        received = []
        await distributor.subscribe(BATTERY, 1500, [DataType.DEPTH], received.append)
        assert await distributor.dispatch_update(_update()) == 1

    async def test_enabling_battery_mode_turns_on_throttling(self, make_distributor, clock):
        distributor = make_distributor(rng=lambda: 0.6, data_throttling=False)
        distributor.enable_battery_optimization()
        assert distributor.data_throttling

        received = []
        await distributor.subscribe(BATTERY, 1500, [DataType.DEPTH], received.append,
                                    update_interval=10, priority=SubscriptionPriority.LOW)
        assert await distributor.dispatch_update(_update()) == 1
        clock.advance(31)
        assert await distributor.dispatch_update(_update()) == 0

        distributor.enable_battery_optimization(False)
        assert distributor.data_throttling


class TestSubscriptions:
    async def test_unsubscribe_stops_delivery(self, make_distributor):
        distributor = make_distributor()
        received = []
        subscription_id = await distributor.subscribe(BATTERY, 1500, [DataType.DEPTH], received.append)
        assert await distributor.unsubscribe(subscription_id)
        assert not await distributor.unsubscribe(subscription_id)
        assert await distributor.dispatch_update(_update()) == 0
        assert distributor.get_active_subscriptions() == []

    async def test_unsubscribe_from_inside_a_callback(self, make_distributor):
        distributor = make_distributor()
        second = []
        ids = {}

        async def first(update):
            await distributor.unsubscribe(ids["second"])

        ids["first"] = await distributor.subscribe(BATTERY, 1500, [DataType.DEPTH], first)
        ids["second"] = await distributor.subscribe(BATTERY, 1500, [DataType.DEPTH], second.append)
        assert await distributor.dispatch_update(_update()) == 1
        assert second == []

    @pytest.mark.parametrize("location,radius,data_types", [
        (BATTERY, -1, [DataType.DEPTH]),
        (BATTERY, 1000, ["bogus"]),
        (BATTERY, 1000, []),
        ({"latitude": 100, "longitude": 0}, 1000, [DataType.DEPTH]),
    ])
    async def test_invalid_subscription(self, make_distributor, location, radius, data_types):
        distributor = make_distributor()
        with pytest.raises(InvalidSubscriptionError):
            await distributor.subscribe(location, radius, data_types, lambda update: None)
        assert distributor.get_active_subscriptions() == []

    async def test_update_subscription(self, make_distributor):
        distributor = make_distributor()
        subscription_id = await distributor.subscribe(BATTERY, 1500, [DataType.DEPTH], lambda update: None)
        info = await distributor.update_subscription(subscription_id, radius=3000, data_types=[DataType.TIDE])
        assert info.radius == 3000
        assert info.data_types == [DataType.TIDE]
        with pytest.raises(InvalidSubscriptionError):
            await distributor.update_subscription(subscription_id, color="red")

    async def test_emergency_request(self, make_distributor):
        factory = TransportFactory()
        distributor = make_distributor(factory=factory)
        subscription_id = await distributor.request_emergency_updates(BATTERY, DataType.DEPTH, lambda update: None)

        (info,) = distributor.get_active_subscriptions()
        assert info.id == subscription_id
        assert info.priority == SubscriptionPriority.CRITICAL
        assert info.radius == 5000
        assert set(info.data_types) == {DataType.DEPTH, DataType.EMERGENCY}
        assert distributor.get_connection_status().queued_messages == 1

        assert await distributor.connect()
        assert factory.last.sent_types() == ["subscribe", "emergency"]


class TestConnection:
    def test_reconnect_delay_is_capped(self, make_distributor):
        distributor = make_distributor(reconnect_interval=5, max_reconnect_delay=300)
        assert distributor.reconnect_delay(1) == 5
        assert distributor.reconnect_delay(3) == 20
        assert distributor.reconnect_delay(8) == 300

    async def test_gives_up_after_max_attempts(self, make_distributor, sleeps):
        factory = TransportFactory(failures=100)
        distributor = make_distributor(factory=factory, reconnect_interval=1, max_reconnect_attempts=3)
        failures = []
        distributor.on("reconnectionFailed", failures.append)

        assert not await distributor.connect()
        await distributor._reconnect_task
        assert sleeps == [1, 2, 4]
        assert distributor.state == ConnectionState.FAILED
        assert len(factory.created) == 4
        assert failures == [{"attempts": 3}]

    async def test_connect_leaves_failed_state(self, make_distributor):
        factory = TransportFactory(failures=1)
        distributor = make_distributor(factory=factory, max_reconnect_attempts=0)
        assert not await distributor.connect()
        await distributor._reconnect_task
        assert distributor.state == ConnectionState.FAILED
        assert await distributor.connect()
        assert distributor.state == ConnectionState.CONNECTED

    async def test_abnormal_close_reconnects(self, make_distributor, sleeps):
        factory = TransportFactory()
        distributor = make_distributor(factory=factory, reconnect_interval=1)
        assert await distributor.connect()

        factory.last.server_close(1006)
        await settle()
        await distributor._reconnect_task
        assert sleeps == [1]
        assert len(factory.created) == 2
        assert distributor.state == ConnectionState.CONNECTED

    async def test_normal_close_does_not_reconnect(self, make_distributor):
        factory = TransportFactory()
        distributor = make_distributor(factory=factory)
        disconnects = []
        distributor.on("disconnected", disconnects.append)
        assert await distributor.connect()

        factory.last.server_close(1000)
        await settle()
        assert distributor.state == ConnectionState.DISCONNECTED
        assert distributor._reconnect_task is None
        assert disconnects == [{"code": 1000}]

    async def test_messages_queue_while_disconnected(self, make_distributor):
        factory = TransportFactory()
        distributor = make_distributor(factory=factory)
        await distributor.subscribe(BATTERY, 1500, [DataType.DEPTH], lambda update: None)
        assert not await distributor.send(MessageType.UPDATE, {"depth": 3.1})
        assert distributor.get_connection_status().queued_messages == 1

        assert await distributor.connect()
        assert factory.last.sent_types() == ["subscribe", "update"]
        assert distributor.get_connection_status().queued_messages == 0

    async def test_subscription_confirmed(self, make_distributor):
        factory = TransportFactory()
        distributor = make_distributor(factory=factory)
        await distributor.connect()
        subscription_id = await distributor.subscribe(BATTERY, 1500, [DataType.DEPTH], lambda update: None)
        assert factory.last.sent_types() == ["subscribe"]

        factory.last.deliver("subscriptionConfirmed", {"subscription_id": subscription_id})
        await settle()
        (info,) = distributor.get_active_subscriptions()
        assert info.confirmed

    async def test_incoming_update_is_dispatched(self, make_distributor):
        factory = TransportFactory()
        distributor = make_distributor(factory=factory)
        received, events = [], []
        distributor.on("dataUpdate", events.append)
        await distributor.connect()
        await distributor.subscribe(BATTERY, 1500, [DataType.DEPTH], received.append)

        factory.last.deliver("update", {
            "type": "depth",
            "location": {"latitude": BATTERY.latitude, "longitude": BATTERY.longitude},
            "data": {"depth": 5.5}
        })
        await settle()
        assert [u.data["depth"] for u in received] == [5.5]
        assert len(events) == 1

    async def test_incoming_alert_gets_alert_defaults(self, make_distributor):
        factory = TransportFactory()
        distributor = make_distributor(factory=factory)
        alerts = []
        distributor.on("alertReceived", alerts.append)
        await distributor.connect()

        factory.last.deliver("alert", {"location": {"latitude": 40.7, "longitude": -74.0}, "data": {}})
        await settle()
        assert alerts[0].type == DataType.ALERT
        assert alerts[0].severity == UpdateSeverity.WARNING

    async def test_malformed_message_is_ignored(self, make_distributor):
        factory = TransportFactory()
        distributor = make_distributor(factory=factory)
        await distributor.connect()
        factory.last._incoming.put_nowait("not json")
        await settle()
        assert distributor.state == ConnectionState.CONNECTED

    async def test_heartbeat_latency_sets_quality(self, make_distributor, clock):
        factory = TransportFactory()
        distributor = make_distributor(factory=factory)
        await distributor.connect()

        await distributor.send_heartbeat()
        clock.advance(0.05)
        factory.last.deliver("heartbeatResponse", {})
        await settle()
        status = distributor.get_connection_status()
        assert status.latency_ms == pytest.approx(50)
        assert status.quality == ConnectionQuality.EXCELLENT

    async def test_disconnect(self, make_distributor):
        factory = TransportFactory()
        distributor = make_distributor(factory=factory)
        await distributor.connect()
        await distributor.disconnect()
        assert factory.last.closed
        assert factory.last.close_code == 1000
        assert distributor.get_connection_status().indicator.value == "offline"
