#!/usr/bin/env python3
"""
Unit Tests for infrastructure adapters

Event notifier, message queues, configuration loading and the HTTP
barrier driver. External systems (redis, HTTP controllers) are mocked.
"""

import os
import tempfile
import unittest
import sys
from pathlib import Path
from datetime import datetime
from unittest.mock import Mock, MagicMock, patch

import redis
import requests

# Add the project root to the Python path
sys.path.insert(0, str(Path(__file__).resolve().parents[2]))

from parkgate.domain.models import (
    BarrierAction, BarrierReason, BarrierCommand, CommandStatus, PaymentSettled, SessionFailed,
    SessionNotFound, DEFAULT_RATE_RULES
)
from parkgate.domain.aggregates import ParkingSession
from parkgate.infrastructure.messaging import (
    EventNotifier, EventRecorder, Message, InMemoryMessageQueue, RedisMessageQueue,
    MessageQueueForwarder, MessageBrokerFactory, ALL_EVENTS
)
from parkgate.infrastructure.config import Settings, load_settings, ConfigurationError
from parkgate.infrastructure.drivers import HttpBarrierDriver, MockBarrierDriver
from parkgate.infrastructure.repositories import InMemorySessionRepository, InMemoryBarrierCommandRepository


AT = datetime(2024, 1, 3, 12, 0)


class TestEventNotifier(unittest.TestCase):
    """In-process fan-out"""

    def setUp(self):
        self.notifier = EventNotifier()
        self.recorder = EventRecorder()

    def test_type_and_wildcard_subscribers(self):
        typed = EventRecorder()
        self.notifier.subscribe("payment.settled", typed)
        self.notifier.subscribe(ALL_EVENTS, self.recorder)

        self.notifier.publish_all([PaymentSettled("s-1", 4000, AT), SessionFailed("s-2", "boom", AT)])

        self.assertEqual(len(typed.events), 1)
        self.assertEqual(len(self.recorder.events), 2)
        self.assertEqual(len(self.recorder.of_type("session.failed")), 1)

    def test_failing_handler_does_not_stop_delivery(self):
        def broken(event):
            raise RuntimeError("subscriber bug")

        self.notifier.subscribe(ALL_EVENTS, broken)
        self.notifier.subscribe(ALL_EVENTS, self.recorder)
        with self.assertLogs("EventNotifier", level="ERROR"):
            self.notifier.publish(PaymentSettled("s-1", 4000, AT))
        self.assertEqual(len(self.recorder.events), 1)

    def test_unsubscribe(self):
        self.notifier.subscribe(ALL_EVENTS, self.recorder)
        self.notifier.unsubscribe(ALL_EVENTS, self.recorder)
        self.notifier.publish(PaymentSettled("s-1", 4000, AT))
        self.assertEqual(self.recorder.events, [])

    def test_threaded_delivery(self):
        notifier = EventNotifier.threaded(max_workers=2)
        notifier.subscribe(ALL_EVENTS, self.recorder)
        notifier.publish(PaymentSettled("s-1", 4000, AT))
        notifier.shutdown()
        self.assertEqual(len(self.recorder.events), 1)


class TestMessageQueues(unittest.TestCase):
    """Envelope and queue adapters"""

    def test_message_json_round_trip(self):
        message = Message.from_event(PaymentSettled("s-1", 4000, AT))
        restored = Message.from_json(message.to_json())
        self.assertEqual(restored, message)
        self.assertEqual(restored.correlation_id, "s-1")
        self.assertEqual(restored.data["amount"], 4000)

    def test_forwarder_relays_to_topic(self):
        queue = InMemoryMessageQueue()
        notifier = EventNotifier()
        MessageQueueForwarder(queue, "parkgate.events").attach(notifier)
        received = []
        queue.subscribe("parkgate.events", received.append)

        notifier.publish(PaymentSettled("s-1", 4000, AT))

        self.assertEqual(len(queue.get_messages("parkgate.events")), 1)
        self.assertEqual(received[0].event_type, "payment.settled")

    def test_redis_publish(self):
        client = MagicMock()
        client.publish.return_value = 1
        queue = RedisMessageQueue(client=client)
        message = Message.from_event(PaymentSettled("s-1", 4000, AT))

        self.assertTrue(queue.publish("parkgate.events", message))
        topic, payload = client.publish.call_args[0]
        self.assertEqual(topic, "parkgate.events")
        self.assertEqual(Message.from_json(payload).message_id, message.message_id)

    def test_redis_errors_are_reported_not_raised(self):
        client = MagicMock()
        client.publish.side_effect = redis.ConnectionError("down")
        queue = RedisMessageQueue(client=client)
        self.assertFalse(queue.publish("parkgate.events", Message("x", {})))

    def test_redis_message_dispatch(self):
        client = MagicMock()
        queue = RedisMessageQueue(client=client)
        queue._running = True  # skip the listener thread
        received = []
        queue.subscribe("parkgate.events", received.append)
        message = Message.from_event(PaymentSettled("s-1", 4000, AT))

        queue._handle_message({"channel": b"parkgate.events", "data": message.to_json().encode()})

        self.assertEqual(received[0].message_id, message.message_id)

    def test_factory(self):
        self.assertIsInstance(MessageBrokerFactory.create("memory"), InMemoryMessageQueue)
        with self.assertRaises(ValueError):
            MessageBrokerFactory.create("carrier-pigeon")


class TestSettings(unittest.TestCase):
    """YAML file plus PARKGATE_* overrides"""

    def write_config(self, text):
        handle = tempfile.NamedTemporaryFile("w", suffix=".yaml", delete=False, encoding="utf-8")
        handle.write(text)
        handle.close()
        self.addCleanup(os.unlink, handle.name)
        return handle.name

    def test_defaults(self):
        with patch.dict(os.environ, {}, clear=True):
            settings = load_settings()
        self.assertEqual(settings.storage, "memory")
        self.assertEqual(settings.barrier_driver, "mock")
        self.assertEqual(settings.device_map, {})

    def test_yaml_lanes_and_env_override(self):
        path = self.write_config(
            "storage: sql\n"
            "database_url: sqlite:///test.db\n"
            "barrier:\n"
            "  timeout_seconds: 2\n"
            "  driver: http\n"
            "lanes:\n"
            "  lane-out-1: {device_id: gate-2, url: 'http://10.0.0.12/barrier'}\n"
        )
        with patch.dict(os.environ, {"PARKGATE_BARRIER_TIMEOUT": "5", "PARKGATE_SITE_ID": "site-9"}, clear=True):
            settings = load_settings(path)
        self.assertEqual(settings.storage, "sql")
        self.assertEqual(settings.barrier_timeout_seconds, 5.0)
        self.assertEqual(settings.default_site_id, "site-9")
        self.assertEqual(settings.device_map, {"lane-out-1": "gate-2"})

    def test_http_driver_needs_urls(self):
        path = self.write_config("barrier: {driver: http}\nlanes:\n  lane-1: {device_id: gate-1}\n")
        with patch.dict(os.environ, {}, clear=True):
            with self.assertRaises(ConfigurationError):
                load_settings(path)

    def test_bad_env_value(self):
        with patch.dict(os.environ, {"PARKGATE_BARRIER_TIMEOUT": "soon"}, clear=True):
            with self.assertRaises(ConfigurationError):
                load_settings()

    def test_unreadable_file(self):
        with self.assertRaises(ConfigurationError):
            load_settings("/nonexistent/parkgate.yaml")

    def test_validation(self):
        with self.assertRaises(ConfigurationError):
            Settings(storage="mongo").validate()
        with self.assertRaises(ConfigurationError):
            Settings(barrier_workers=0).validate()


class TestBarrierDrivers(unittest.TestCase):
    """Mock and HTTP drivers"""

    def setUp(self):
        self.http = Mock(spec=requests.Session)
        self.driver = HttpBarrierDriver({"gate-1": "http://10.0.0.11/barrier"}, timeout_seconds=2,
                                        session=self.http)

    def test_http_success(self):
        self.http.put.return_value = Mock(status_code=200)
        result = self.driver.send_command("gate-1", BarrierAction.OPEN)
        self.assertTrue(result.executed)
        self.http.put.assert_called_once_with(
            "http://10.0.0.11/barrier", json={"action": "open"}, auth=None, timeout=2
        )

    def test_http_timeout_is_a_failure(self):
        self.http.put.side_effect = requests.exceptions.Timeout()
        result = self.driver.send_command("gate-1", BarrierAction.OPEN)
        self.assertFalse(result.executed)
        self.assertEqual(result.detail, "timeout")

    def test_http_rejected_credentials(self):
        self.http.put.return_value = Mock(status_code=401)
        self.assertFalse(self.driver.send_command("gate-1", BarrierAction.CLOSE).executed)

    def test_unknown_device(self):
        result = self.driver.send_command("gate-404", BarrierAction.OPEN)
        self.assertFalse(result.executed)
        self.http.put.assert_not_called()

    def test_mock_driver_records_calls(self):
        driver = MockBarrierDriver(failing_devices=["gate-2"])
        self.assertTrue(driver.send_command("gate-1", BarrierAction.OPEN).executed)
        self.assertFalse(driver.send_command("gate-2", BarrierAction.OPEN).executed)
        self.assertEqual(driver.calls_for("gate-1"), [BarrierAction.OPEN])


class TestInMemoryStores(unittest.TestCase):
    """Per-session locking and the barrier key claim"""

    def test_unknown_session_leaves_no_lock_behind(self):
        sessions = InMemorySessionRepository()
        for n in range(5):
            with self.assertRaises(SessionNotFound):
                sessions.mutate(f"missing-{n}", lambda s: None)
        self.assertEqual(sessions._session_locks, {})

        session = ParkingSession.start("site-1", "12가3456", "lane-in-1", AT, "plan-1", DEFAULT_RATE_RULES)
        sessions.add(session)
        sessions.mutate(session.id, lambda s: s.record_exit(AT, "lane-out-1"))
        self.assertEqual(list(sessions._session_locks), [session.id])

    def test_claim_skips_failed_holder(self):
        commands = InMemoryBarrierCommandRepository()
        first = BarrierCommand("lane-out-1", "gate-2", BarrierAction.OPEN,
                               BarrierReason.PAYMENT_CONFIRMED, "s-1", created_at=AT)
        stored, created = commands.claim(first, AT)
        self.assertTrue(created)

        again = BarrierCommand("lane-out-1", "gate-2", BarrierAction.OPEN,
                               BarrierReason.PAYMENT_CONFIRMED, "s-1", created_at=AT)
        holder, created = commands.claim(again, AT)
        self.assertFalse(created)
        self.assertEqual(holder.id, first.id)

        first.status = CommandStatus.FAILED
        commands.update(first)
        stored, created = commands.claim(again, AT)
        self.assertTrue(created)
        self.assertEqual(stored.id, again.id)


if __name__ == '__main__':
    unittest.main(verbosity=2)
