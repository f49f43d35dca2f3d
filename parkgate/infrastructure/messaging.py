# File: parkgate/infrastructure/messaging.py
"""
Messaging Infrastructure for the ParkGate session engine

1. EventNotifier - intra-process publish/subscribe of domain events
2. MessageQueue  - inter-process messaging (Redis Pub/Sub, in-memory)
3. MessageQueueForwarder - subscriber that relays events to a queue topic

The lifecycle never waits on delivery: handlers run on an executor when
one is configured, and a failing handler is logged without affecting
the publisher or the other handlers.
"""

from abc import ABC, abstractmethod
from typing import Optional, Dict, List, Any, Callable
from datetime import datetime
import logging
import json
import time
import threading
from concurrent.futures import Executor, ThreadPoolExecutor
from dataclasses import dataclass, asdict, field
from uuid import uuid4

import redis

from ..domain.models import DomainEvent


EventHandler = Callable[[DomainEvent], None]

ALL_EVENTS = "*"


# ============================================================================
# MESSAGE ENVELOPE
# ============================================================================

@dataclass
class Message:
    """Serializable envelope for queue transport"""
    event_type: str
    data: Dict[str, Any]
    message_id: str = field(default_factory=lambda: str(uuid4()))
    timestamp: datetime = field(default_factory=datetime.now)
    correlation_id: Optional[str] = None
    source: str = "parkgate"

    @classmethod
    def from_event(cls, event: DomainEvent) -> 'Message':
        envelope = event.to_dict()
        return cls(
            event_type=envelope["event_type"],
            data=envelope["data"],
            message_id=envelope["event_id"],
            timestamp=event.timestamp,
            correlation_id=envelope["data"].get("session_id") or envelope["data"].get("correlation_id"),
        )

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data['timestamp'] = self.timestamp.isoformat()
        return data

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), default=str, ensure_ascii=False)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Message':
        data = dict(data)
        data['timestamp'] = datetime.fromisoformat(data['timestamp'])
        return cls(**data)

    @classmethod
    def from_json(cls, json_str: str) -> 'Message':
        return cls.from_dict(json.loads(json_str))


# ============================================================================
# EVENT NOTIFIER (In-process)
# ============================================================================

class EventNotifier:
    """
    In-memory publish/subscribe keyed by event type ("*" receives all).

    With an executor, handlers run off the caller's thread; without one
    they run inline, which keeps tests deterministic.
    """

    def __init__(self, executor: Optional[Executor] = None):
        self._subscribers: Dict[str, List[EventHandler]] = {}
        self._lock = threading.Lock()
        self._executor = executor
        self._logger = logging.getLogger(self.__class__.__name__)

    @classmethod
    def threaded(cls, max_workers: int = 4) -> 'EventNotifier':
        return cls(ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="notifier"))

    def subscribe(self, event_type: str, handler: EventHandler) -> None:
        with self._lock:
            handlers = self._subscribers.setdefault(event_type, [])
            if handler not in handlers:
                handlers.append(handler)
        self._logger.debug(f"Subscribed {getattr(handler, '__name__', handler)} to {event_type}")

    def unsubscribe(self, event_type: str, handler: EventHandler) -> None:
        with self._lock:
            handlers = self._subscribers.get(event_type, [])
            if handler in handlers:
                handlers.remove(handler)

    def publish(self, event: DomainEvent) -> None:
        with self._lock:
            handlers = list(self._subscribers.get(event.event_type, []))
            handlers += self._subscribers.get(ALL_EVENTS, [])
        self._logger.info(f"Publishing event: {event.event_type} (ID: {event.event_id})")

        for handler in handlers:
            if self._executor is not None:
                self._executor.submit(self._deliver, handler, event)
            else:
                self._deliver(handler, event)

    def publish_all(self, events: List[DomainEvent]) -> None:
        for event in events:
            self.publish(event)

    def _deliver(self, handler: EventHandler, event: DomainEvent) -> None:
        try:
            handler(event)
        except Exception as e:
            self._logger.error(
                f"Error handling event {event.event_type} with "
                f"{getattr(handler, '__name__', handler.__class__.__name__)}: {e}"
            )

    def shutdown(self) -> None:
        if self._executor is not None:
            self._executor.shutdown(wait=True)


class EventRecorder:
    """Subscriber that keeps every event it receives (demo and tests)"""

    def __init__(self):
        self.events: List[DomainEvent] = []
        self._lock = threading.Lock()

    def __call__(self, event: DomainEvent) -> None:
        with self._lock:
            self.events.append(event)

    def of_type(self, event_type: str) -> List[DomainEvent]:
        with self._lock:
            return [e for e in self.events if e.event_type == event_type]


# ============================================================================
# MESSAGE QUEUE ABSTRACTIONS
# ============================================================================

class MessageQueue(ABC):
    """Abstract base class for message queues"""

    @abstractmethod
    def publish(self, topic: str, message: Message) -> bool:
        pass

    @abstractmethod
    def subscribe(self, topic: str, callback: Callable[[Message], None]) -> str:
        pass

    @abstractmethod
    def unsubscribe(self, subscription_id: str) -> bool:
        pass

    def close(self) -> None:
        pass


class RedisMessageQueue(MessageQueue):
    """Redis-based message queue using Pub/Sub"""

    def __init__(self, redis_url: str = "redis://localhost:6379", client: Optional[redis.Redis] = None, **kwargs):
        self.redis_url = redis_url
        self._logger = logging.getLogger(self.__class__.__name__)

        self.redis_client = client or redis.Redis.from_url(redis_url, **kwargs)
        self.pubsub = self.redis_client.pubsub()

        self._subscriptions: Dict[str, str] = {}
        self._callbacks: Dict[str, Callable[[Message], None]] = {}
        self._running = False
        self._thread: Optional[threading.Thread] = None

    def publish(self, topic: str, message: Message) -> bool:
        try:
            receivers = self.redis_client.publish(topic, message.to_json())
            self._logger.debug(f"Published message to {topic}: {message.message_id}")
            return receivers > 0
        except redis.RedisError as e:
            self._logger.error(f"Error publishing to Redis: {e}")
            return False

    def subscribe(self, topic: str, callback: Callable[[Message], None]) -> str:
        subscription_id = str(uuid4())
        self._subscriptions[subscription_id] = topic
        self._callbacks[subscription_id] = callback
        self.pubsub.subscribe(topic)
        if not self._running:
            self._start_listener()
        self._logger.debug(f"Subscribed to {topic} with ID {subscription_id}")
        return subscription_id

    def unsubscribe(self, subscription_id: str) -> bool:
        if subscription_id not in self._subscriptions:
            return False
        topic = self._subscriptions.pop(subscription_id)
        del self._callbacks[subscription_id]
        if topic not in self._subscriptions.values():
            self.pubsub.unsubscribe(topic)
            self._logger.debug(f"Unsubscribed from {topic}")
        return True

    def _start_listener(self):
        self._running = True
        self._thread = threading.Thread(target=self._listen, daemon=True)
        self._thread.start()
        self._logger.info("Started Redis message listener")

    def _listen(self):
        while self._running:
            try:
                message = self.pubsub.get_message(ignore_subscribe_messages=True, timeout=1.0)
                if message and message['type'] == 'message':
                    self._handle_message(message)
            except redis.RedisError as e:
                self._logger.error(f"Error in Redis listener: {e}")
                time.sleep(1)

    def _handle_message(self, redis_message: Dict[str, Any]):
        channel = redis_message['channel']
        topic = channel.decode('utf-8') if isinstance(channel, bytes) else channel
        raw = redis_message['data']
        try:
            message = Message.from_json(raw.decode('utf-8') if isinstance(raw, bytes) else raw)
        except (ValueError, TypeError, KeyError) as e:
            self._logger.error(f"Dropping malformed message on {topic}: {e}")
            return

        for subscription_id, callback_topic in list(self._subscriptions.items()):
            if callback_topic == topic:
                try:
                    self._callbacks[subscription_id](message)
                except Exception as e:
                    self._logger.error(f"Error in callback for subscription {subscription_id}: {e}")

    def close(self):
        self._running = False
        if self._thread:
            self._thread.join(timeout=5.0)
        self.pubsub.close()
        self.redis_client.close()
        self._logger.info("Redis message queue closed")


class InMemoryMessageQueue(MessageQueue):
    """In-memory message queue for testing"""

    def __init__(self):
        self._callbacks: Dict[str, Dict[str, Callable[[Message], None]]] = {}
        self._messages: Dict[str, List[Message]] = {}
        self._subscription_topics: Dict[str, str] = {}
        self._lock = threading.Lock()
        self._logger = logging.getLogger(self.__class__.__name__)

    def publish(self, topic: str, message: Message) -> bool:
        with self._lock:
            self._messages.setdefault(topic, []).append(message)
            callbacks = list(self._callbacks.get(topic, {}).values())
        for callback in callbacks:
            try:
                callback(message)
            except Exception as e:
                self._logger.error(f"Error in callback for topic {topic}: {e}")
        return True

    def subscribe(self, topic: str, callback: Callable[[Message], None]) -> str:
        subscription_id = str(uuid4())
        with self._lock:
            self._callbacks.setdefault(topic, {})[subscription_id] = callback
            self._subscription_topics[subscription_id] = topic
        return subscription_id

    def unsubscribe(self, subscription_id: str) -> bool:
        with self._lock:
            topic = self._subscription_topics.pop(subscription_id, None)
            if topic is None:
                return False
            self._callbacks.get(topic, {}).pop(subscription_id, None)
        return True

    def get_messages(self, topic: str) -> List[Message]:
        """Get all messages for a topic (for testing)"""
        with self._lock:
            return list(self._messages.get(topic, []))


class MessageQueueForwarder:
    """Relays every notifier event to one queue topic"""

    def __init__(self, queue: MessageQueue, topic: str):
        self.queue = queue
        self.topic = topic
        self._logger = logging.getLogger(self.__class__.__name__)

    def __call__(self, event: DomainEvent) -> None:
        if not self.queue.publish(self.topic, Message.from_event(event)):
            self._logger.debug(f"No receivers for {event.event_type} on {self.topic}")

    def attach(self, notifier: EventNotifier) -> 'MessageQueueForwarder':
        notifier.subscribe(ALL_EVENTS, self)
        return self


# ============================================================================
# FACTORY
# ============================================================================

class MessageBrokerFactory:
    """Factory for message queue backends"""

    @staticmethod
    def create(broker_type: str, redis_url: Optional[str] = None) -> MessageQueue:
        if broker_type == "redis":
            return RedisMessageQueue(redis_url or "redis://localhost:6379")
        if broker_type == "memory":
            return InMemoryMessageQueue()
        raise ValueError(f"Unknown broker type: {broker_type}")
