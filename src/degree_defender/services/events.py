"""Publish/subscribe fan-out for community note events.

Status changes are pushed to interested clients (moderation dashboards,
open answer pages) through an :class:`EventBus`. Two backends exist:

- ``InMemoryEventBus`` delivers within the current process and is used in
  development and tests.
- ``RedisEventBus`` publishes JSON payloads on Redis channels so that every
  worker process can forward events to its own WebSocket clients.
"""

from __future__ import annotations

import json
import logging
from collections import defaultdict
from collections.abc import Callable
from threading import Lock
from typing import Any, Final, Protocol

import redis

from degree_defender.core.settings import settings

logger = logging.getLogger(__name__)

NOTE_UPDATE_TOPIC: Final[str] = "communityNoteUpdate"

EventHandler = Callable[[dict[str, Any]], None]
Unsubscribe = Callable[[], None]


class EventBus(Protocol):
    """Minimal publish/subscribe interface injected into the note service."""

    def publish(self, topic: str, payload: dict[str, Any]) -> None:
        """Deliver ``payload`` to every subscriber of ``topic``."""

    def subscribe(self, topic: str, handler: EventHandler) -> Unsubscribe:
        """Register ``handler`` for ``topic`` and return a callable that removes it."""


class InMemoryEventBus:
    """Thread-safe, in-process event bus."""

    def __init__(self) -> None:
        self._handlers: dict[str, list[EventHandler]] = defaultdict(list)
        self._lock = Lock()

    def publish(self, topic: str, payload: dict[str, Any]) -> None:
        with self._lock:
            handlers = list(self._handlers.get(topic, ()))

        logger.debug("Publishing %s to %d subscriber(s)", topic, len(handlers))
        for handler in handlers:
            try:
                handler(payload)
            except Exception:
                # Delivery continues past a failing subscriber.
                logger.error("Subscriber for %s failed", topic, exc_info=True)

    def subscribe(self, topic: str, handler: EventHandler) -> Unsubscribe:
        with self._lock:
            self._handlers[topic].append(handler)

        def _unsubscribe() -> None:
            with self._lock:
                handlers = self._handlers.get(topic)
                if handlers and handler in handlers:
                    handlers.remove(handler)

        return _unsubscribe

    def subscriber_count(self, topic: str) -> int:
        """Return how many handlers are registered for ``topic``."""
        with self._lock:
            return len(self._handlers.get(topic, ()))


class RedisEventBus:
    """Event bus backed by Redis pub/sub channels."""

    def __init__(
        self,
        client: redis.Redis | None = None,
        *,
        channel_prefix: str | None = None,
        poll_interval: float = 0.05,
    ) -> None:
        self._redis = client if client is not None else redis.from_url(settings.redis_url)
        self._prefix = channel_prefix or settings.event_channel_prefix
        self._poll_interval = poll_interval

    def channel_for(self, topic: str) -> str:
        """Return the Redis channel name used for ``topic``."""
        return f"{self._prefix}:{topic}"

    def publish(self, topic: str, payload: dict[str, Any]) -> None:
        try:
            receivers = self._redis.publish(self.channel_for(topic), json.dumps(payload))
        except redis.RedisError:
            # Best effort; clients refetch notes on reconnect.
            logger.error("Failed to publish %s to Redis", topic, exc_info=True)
            return
        logger.debug("Published %s to Redis (%s receiver(s))", topic, receivers)

    def subscribe(self, topic: str, handler: EventHandler) -> Unsubscribe:
        channel = self.channel_for(topic)

        def _on_message(message: dict[str, Any]) -> None:
            data = message.get("data")
            if isinstance(data, bytes):
                data = data.decode("utf-8")
            try:
                payload = json.loads(data)
            except (TypeError, ValueError):
                logger.warning("Dropping undecodable message on %s", channel)
                return
            try:
                handler(payload)
            except Exception:
                logger.error("Subscriber for %s failed", topic, exc_info=True)

        pubsub = self._redis.pubsub(ignore_subscribe_messages=True)
        pubsub.subscribe(**{channel: _on_message})
        worker = pubsub.run_in_thread(sleep_time=self._poll_interval, daemon=True)

        def _unsubscribe() -> None:
            worker.stop()
            pubsub.close()

        return _unsubscribe


_EVENT_BUS: EventBus | None = None
_EVENT_BUS_LOCK = Lock()


def get_event_bus() -> EventBus:
    """Return the process-wide event bus for the configured backend."""
    global _EVENT_BUS
    with _EVENT_BUS_LOCK:
        if _EVENT_BUS is None:
            if settings.event_bus_backend == "redis":
                _EVENT_BUS = RedisEventBus()
            else:
                _EVENT_BUS = InMemoryEventBus()
            logger.info("Using %s event bus", settings.event_bus_backend)
        return _EVENT_BUS
