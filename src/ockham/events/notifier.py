"""Notifier capability: publish lifecycle messages to a topic."""

from __future__ import annotations

import json
import logging
import threading
from typing import TYPE_CHECKING, Protocol, runtime_checkable

from redis.exceptions import RedisError

from ockham.events.messages import CalculationMessage

if TYPE_CHECKING:
    from redis import Redis

logger = logging.getLogger(__name__)


class NotifierError(Exception):
    """Raised when a message cannot be handed to the transport."""

    def __init__(self, topic: str, cause: Exception | None = None) -> None:
        self.topic = topic
        self.cause = cause
        super().__init__(f"Failed to publish to topic '{topic}': {cause}")


@runtime_checkable
class Notifier(Protocol):
    """Publishes a message on a topic."""

    def publish(self, topic: str, message: CalculationMessage) -> None: ...


class InMemoryNotifier:
    """Records published messages; used in tests and single-process runs."""

    def __init__(self) -> None:
        self._published: list[tuple[str, CalculationMessage]] = []
        self._lock = threading.Lock()

    def publish(self, topic: str, message: CalculationMessage) -> None:
        with self._lock:
            self._published.append((topic, message))
        logger.debug("Published %s on %s", message.event, topic)

    @property
    def published(self) -> list[tuple[str, CalculationMessage]]:
        with self._lock:
            return list(self._published)

    def messages(self, topic: str | None = None, event: str | None = None) -> list[CalculationMessage]:
        """Published messages, optionally filtered by topic and event name."""
        return [
            message
            for published_topic, message in self.published
            if (topic is None or published_topic == topic)
            and (event is None or message.event == event)
        ]

    def clear(self) -> None:
        with self._lock:
            self._published.clear()


class RedisNotifier:
    """Publishes messages as JSON over Redis pub/sub channels."""

    def __init__(self, client: Redis) -> None:
        self._client = client

    @classmethod
    def from_url(cls, url: str) -> RedisNotifier:
        from redis import Redis

        return cls(Redis.from_url(url, decode_responses=True))

    def publish(self, topic: str, message: CalculationMessage) -> None:
        body = json.dumps(message.to_payload(), sort_keys=True, separators=(",", ":"))
        try:
            self._client.publish(topic, body)
        except RedisError as e:
            raise NotifierError(topic, e) from e
