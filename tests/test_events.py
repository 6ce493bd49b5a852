"""Unit tests for the event bus and the ZeroMQ event bridge."""

import time
from unittest import mock

import pytest

from src.common.ipc import Message, MessagePublisher, MessageSubscriber
from src.reconciler.events import (
    ACCOUNT_FLAGS_CLEANED,
    HOUSE_CREATED,
    RECONCILE_ERROR,
    SCREEN_NEEDS_REFRESH,
    EventBus,
    ZmqEventBridge,
)


class TestEventBus:
    """Tests for EventBus."""

    def test_publish_to_subscribers(self):
        bus = EventBus()
        received = []
        bus.subscribe(HOUSE_CREATED, received.append)

        bus.publish(HOUSE_CREATED, {'houseId': 'h1'})

        assert len(received) == 1
        assert received[0].name == HOUSE_CREATED
        assert received[0].payload == {'houseId': 'h1'}

    def test_publish_without_payload(self):
        bus = EventBus()
        received = []
        bus.subscribe(SCREEN_NEEDS_REFRESH, received.append)

        bus.publish(SCREEN_NEEDS_REFRESH)

        assert received[0].payload == {}

    def test_other_events_not_delivered(self):
        bus = EventBus()
        received = []
        bus.subscribe(HOUSE_CREATED, received.append)

        bus.publish(SCREEN_NEEDS_REFRESH)

        assert received == []

    def test_unsubscribe_callable(self):
        bus = EventBus()
        received = []
        unsubscribe = bus.subscribe(HOUSE_CREATED, received.append)

        unsubscribe()
        bus.publish(HOUSE_CREATED)

        assert received == []
        assert bus.handler_count(HOUSE_CREATED) == 0

    def test_failing_handler_does_not_block_others(self):
        bus = EventBus()
        received = []

        def broken(event):
            raise RuntimeError("boom")

        bus.subscribe(HOUSE_CREATED, broken)
        bus.subscribe(HOUSE_CREATED, received.append)

        bus.publish(HOUSE_CREATED)

        assert len(received) == 1


class TestZmqEventBridge:
    """Tests for ZmqEventBridge with mocked sockets."""

    @pytest.fixture
    def publisher(self):
        return mock.Mock(spec=MessagePublisher)

    @pytest.fixture
    def subscriber(self):
        sub = mock.Mock(spec=MessageSubscriber)
        sub.receive.return_value = None
        return sub

    def test_forwards_outbound_events(self, publisher):
        bus = EventBus()
        bridge = ZmqEventBridge(bus, publisher=publisher)
        bridge.start()

        bus.publish(SCREEN_NEEDS_REFRESH)
        bus.publish(ACCOUNT_FLAGS_CLEANED, {'reason': 'x'})
        bus.publish(RECONCILE_ERROR, {'operation': 'fetchGraph'})
        bus.publish(HOUSE_CREATED, {'houseId': 'h1'})

        bridge.stop()

        publisher.publish.assert_has_calls([
            mock.call(SCREEN_NEEDS_REFRESH, {}),
            mock.call(ACCOUNT_FLAGS_CLEANED, {'reason': 'x'}),
            mock.call(RECONCILE_ERROR, {'operation': 'fetchGraph'}),
        ])
        assert publisher.publish.call_count == 3
        publisher.close.assert_called_once()

    def test_stop_unsubscribes(self, publisher):
        bus = EventBus()
        bridge = ZmqEventBridge(bus, publisher=publisher)
        bridge.start()
        bridge.stop()

        bus.publish(SCREEN_NEEDS_REFRESH)

        publisher.publish.assert_not_called()
        assert not bridge.is_running

    def test_inbound_messages_published_on_bus(self, subscriber):
        bus = EventBus()
        received = []
        bus.subscribe(HOUSE_CREATED, received.append)

        messages = [
            Message(HOUSE_CREATED, {'houseId': 'h1'}, 'pairing'),
            Message('unrelated', {}, 'pairing'),
        ]

        def receive(timeout_ms):
            if messages:
                return messages.pop(0)
            time.sleep(0.01)
            return None

        subscriber.receive.side_effect = receive

        bridge = ZmqEventBridge(bus, subscriber=subscriber)
        bridge.start()

        deadline = time.time() + 5
        while not received and time.time() < deadline:
            time.sleep(0.01)
        bridge.stop()

        subscriber.subscribe_to.assert_called_once_with(HOUSE_CREATED)
        assert [e.payload for e in received] == [{'houseId': 'h1'}]
        subscriber.close.assert_called_once()

    def test_start_twice_is_harmless(self, publisher):
        bus = EventBus()
        bridge = ZmqEventBridge(bus, publisher=publisher)

        bridge.start()
        bridge.start()
        bus.publish(SCREEN_NEEDS_REFRESH)
        bridge.stop()

        assert publisher.publish.call_count == 1
