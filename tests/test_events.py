"""
Tests for the lifecycle event bus.
"""

import json
import unittest

from veil.events import (
    Event,
    EventBus,
    EventHandlerError,
    EventRecorder,
    RecordCreated,
    RecordVerified,
    TransactionStatusChanged,
    TxDisplayStatus,
)
from veil.observability import set_correlation_id, correlation_id_var


class TestEvent(unittest.TestCase):
    """Tests for event base class."""

    def test_event_has_required_fields(self):
        event = RecordCreated(record_id="asset-1")
        self.assertTrue(event.event_id)
        self.assertTrue(event.event_timestamp)
        self.assertEqual(event.event_type, "RecordCreated")

    def test_event_to_json(self):
        event = TransactionStatusChanged(status=TxDisplayStatus.SUCCESS, message="done")
        data = json.loads(event.to_json())
        self.assertEqual(data["event_type"], "TransactionStatusChanged")
        self.assertEqual(data["message"], "done")


class TestEventBus(unittest.TestCase):
    """Tests for event bus."""

    def test_publish_to_subscribers(self):
        """Events should be delivered to subscribers."""
        bus = EventBus()
        received = []

        @bus.subscribe(RecordCreated)
        def handler(event):
            received.append(event)

        bus.publish(RecordCreated(record_id="asset-1"))
        bus.publish(RecordVerified(record_id="asset-1"))

        self.assertEqual(len(received), 1)
        self.assertEqual(received[0].record_id, "asset-1")

    def test_subscribe_all(self):
        """A handler with no event types receives everything."""
        bus = EventBus()
        received = []

        @bus.subscribe()
        def handler(event):
            received.append(event.event_type)

        bus.publish(RecordCreated())
        bus.publish(RecordVerified())
        self.assertEqual(received, ["RecordCreated", "RecordVerified"])

    def test_handler_priority_ordering(self):
        bus = EventBus()
        order = []

        @bus.subscribe(RecordCreated, priority=0)
        def low(event):
            order.append("low")

        @bus.subscribe(RecordCreated, priority=10)
        def high(event):
            order.append("high")

        bus.publish(RecordCreated())
        self.assertEqual(order, ["high", "low"])

    def test_filter_function(self):
        bus = EventBus()
        received = []

        @bus.subscribe(RecordVerified, filter_func=lambda e: e.short_circuited)
        def handler(event):
            received.append(event.record_id)

        bus.publish(RecordVerified(record_id="a", short_circuited=True))
        bus.publish(RecordVerified(record_id="b", short_circuited=False))
        self.assertEqual(received, ["a"])

    def test_unsubscribe(self):
        bus = EventBus()
        received = []

        def handler(event):
            received.append(event)

        bus.subscribe(RecordCreated)(handler)
        self.assertTrue(bus.unsubscribe(handler))
        self.assertFalse(bus.unsubscribe(handler))
        bus.publish(RecordCreated())
        self.assertEqual(received, [])

    def test_handler_error_isolated(self):
        """A failing handler must not stop later handlers or the publisher."""
        errors = []
        bus = EventBus(on_error=errors.append)
        received = []

        @bus.subscribe(RecordCreated, priority=10)
        def broken(event):
            raise RuntimeError("display crashed")

        @bus.subscribe(RecordCreated)
        def healthy(event):
            received.append(event)

        bus.publish(RecordCreated(record_id="asset-1"))

        self.assertEqual(len(received), 1)
        self.assertEqual(len(errors), 1)
        self.assertIsInstance(errors[0], EventHandlerError)
        self.assertIsInstance(errors[0].cause, RuntimeError)
        self.assertEqual(bus.metrics["error_count"], 1)
        self.assertEqual(bus.metrics["handled_count"], 1)

    def test_correlation_id_stamped(self):
        bus = EventBus()
        recorder = EventRecorder(bus)
        token = set_correlation_id("corr-test")
        try:
            bus.publish(RecordCreated())
        finally:
            correlation_id_var.reset(token)
        self.assertEqual(recorder.events[0].correlation_id, "corr-test")

    def test_recorder_of_type(self):
        bus = EventBus()
        recorder = EventRecorder(bus, Event)
        bus.publish(RecordCreated())
        bus.publish(RecordVerified())
        self.assertEqual(len(recorder.of_type(RecordVerified)), 1)
        recorder.clear()
        self.assertEqual(recorder.events, [])
