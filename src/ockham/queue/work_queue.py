"""Work queue capability for stochastic calculations.

Delivery is at-least-once: a dequeued unit stays in flight until it is
acknowledged, and ``restore_expired`` puts it back on the ready queue once
its visibility timeout passes. The visibility timeout must be at least the
job timeout so that a slow worker is not double-dispatched.
"""

from __future__ import annotations

import json
import logging
import threading
import time
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

from redis.exceptions import RedisError, WatchError

if TYPE_CHECKING:
    from redis import Redis

logger = logging.getLogger(__name__)

DEFAULT_QUEUE_NAME = "calculations"
DEFAULT_VISIBILITY_TIMEOUT_SECONDS = 3600

_POLL_INTERVAL_SECONDS = 0.05


class WorkQueueError(Exception):
    """Raised when the backing queue cannot be reached or is corrupt."""

    def __init__(self, operation: str, cause: Exception | None = None) -> None:
        self.operation = operation
        self.cause = cause
        detail = f": {cause}" if cause is not None else ""
        super().__init__(f"Work queue {operation} failed{detail}")


@dataclass
class WorkUnit:
    """One queued unit of stochastic work.

    Attributes:
        calculation_id: Durable record to process.
        case_id: Owning case, for notifications and tagging.
        attempt: 1-based attempt number.
        available_at: Earliest delivery time; None means immediately.
        tags: Free-form key-value labels.
        unit_id: Delivery identity used for acknowledgement.
    """

    calculation_id: str
    case_id: str
    attempt: int = 1
    available_at: datetime | None = None
    tags: dict[str, str] = field(default_factory=dict)
    unit_id: str = field(default_factory=lambda: str(uuid.uuid4()))

    def next_attempt(self, available_at: datetime) -> WorkUnit:
        """Copy for the following attempt with a fresh delivery identity."""
        return WorkUnit(
            calculation_id=self.calculation_id,
            case_id=self.case_id,
            attempt=self.attempt + 1,
            available_at=available_at,
            tags=dict(self.tags),
        )

    def to_json(self) -> str:
        payload: dict[str, Any] = {
            "unit_id": self.unit_id,
            "calculation_id": self.calculation_id,
            "case_id": self.case_id,
            "attempt": self.attempt,
            "available_at": self.available_at.isoformat() if self.available_at else None,
            "tags": self.tags,
        }
        return json.dumps(payload, sort_keys=True, separators=(",", ":"))

    @classmethod
    def from_json(cls, raw: str) -> WorkUnit:
        data = json.loads(raw)
        available_at = data.get("available_at")
        return cls(
            unit_id=data["unit_id"],
            calculation_id=data["calculation_id"],
            case_id=data["case_id"],
            attempt=int(data.get("attempt", 1)),
            available_at=datetime.fromisoformat(available_at) if available_at else None,
            tags=dict(data.get("tags") or {}),
        )


@runtime_checkable
class WorkQueue(Protocol):
    """Queue of WorkUnits with visibility-timeout redelivery."""

    def enqueue(self, unit: WorkUnit) -> None: ...

    def dequeue(self, timeout: float = 0) -> WorkUnit | None: ...

    def ack(self, unit: WorkUnit) -> None: ...

    def restore_expired(self, now: datetime | None = None) -> int: ...


class InMemoryWorkQueue:
    """Thread-safe in-process work queue.

    Units are delivered FIFO among those whose ``available_at`` has passed.
    """

    def __init__(
        self,
        visibility_timeout_seconds: int = DEFAULT_VISIBILITY_TIMEOUT_SECONDS,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._visibility_timeout = timedelta(seconds=visibility_timeout_seconds)
        self._clock = clock or (lambda: datetime.now(UTC))
        self._pending: list[WorkUnit] = []
        self._in_flight: dict[str, tuple[WorkUnit, datetime]] = {}
        self._cond = threading.Condition()

    def enqueue(self, unit: WorkUnit) -> None:
        with self._cond:
            self._pending.append(unit)
            self._cond.notify()
        logger.debug(
            "Enqueued work unit",
            extra={"calculation_id": unit.calculation_id, "attempt": unit.attempt},
        )

    def dequeue(self, timeout: float = 0) -> WorkUnit | None:
        """Pop the next available unit, waiting up to ``timeout`` seconds."""
        deadline = time.monotonic() + timeout
        with self._cond:
            while True:
                unit = self._pop_available()
                if unit is not None:
                    self._in_flight[unit.unit_id] = (
                        unit,
                        self._clock() + self._visibility_timeout,
                    )
                    return unit
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    return None
                self._cond.wait(min(remaining, _POLL_INTERVAL_SECONDS))

    def ack(self, unit: WorkUnit) -> None:
        with self._cond:
            self._in_flight.pop(unit.unit_id, None)

    def restore_expired(self, now: datetime | None = None) -> int:
        """Return in-flight units past their visibility deadline to the queue."""
        now = now or self._clock()
        with self._cond:
            expired = [
                unit_id for unit_id, (_, deadline) in self._in_flight.items() if deadline <= now
            ]
            for unit_id in expired:
                unit, _ = self._in_flight.pop(unit_id)
                self._pending.append(unit)
            if expired:
                self._cond.notify_all()
        if expired:
            logger.warning("Restored %d expired work units", len(expired))
        return len(expired)

    @property
    def size(self) -> int:
        with self._cond:
            return len(self._pending)

    @property
    def in_flight_count(self) -> int:
        with self._cond:
            return len(self._in_flight)

    def _pop_available(self) -> WorkUnit | None:
        now = self._clock()
        for index, unit in enumerate(self._pending):
            if unit.available_at is None or unit.available_at <= now:
                return self._pending.pop(index)
        return None


class RedisWorkQueue:
    """Work queue on Redis.

    Layout under ``queue:{name}``:
        ``:units``      hash of unit_id to JSON payload
        ``:ready``      list of unit ids (LPUSH, consumed from the right)
        ``:processing`` list of unit ids handed to a consumer (LMOVE target)
        ``:delayed``    sorted set of unit ids scored by available_at
        ``:inflight``   sorted set of unit ids scored by visibility deadline

    A unit id is always in at least one of ready, processing or delayed
    until it is acknowledged. Moves between them are single commands or
    MULTI transactions, so a consumer crash can cause a redelivery but
    never a lost unit.
    """

    def __init__(
        self,
        client: Redis,
        name: str = DEFAULT_QUEUE_NAME,
        visibility_timeout_seconds: int = DEFAULT_VISIBILITY_TIMEOUT_SECONDS,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._client = client
        self._prefix = f"queue:{name}"
        self._visibility_timeout = visibility_timeout_seconds
        self._clock = clock or (lambda: datetime.now(UTC))

    @classmethod
    def from_url(cls, url: str, **kwargs: Any) -> RedisWorkQueue:
        from redis import Redis

        return cls(Redis.from_url(url, decode_responses=True), **kwargs)

    @property
    def units_key(self) -> str:
        return f"{self._prefix}:units"

    @property
    def ready_key(self) -> str:
        return f"{self._prefix}:ready"

    @property
    def processing_key(self) -> str:
        return f"{self._prefix}:processing"

    @property
    def delayed_key(self) -> str:
        return f"{self._prefix}:delayed"

    @property
    def inflight_key(self) -> str:
        return f"{self._prefix}:inflight"

    def enqueue(self, unit: WorkUnit) -> None:
        try:
            with self._client.pipeline() as pipe:
                pipe.hset(self.units_key, unit.unit_id, unit.to_json())
                if unit.available_at is not None and unit.available_at > self._clock():
                    pipe.zadd(self.delayed_key, {unit.unit_id: unit.available_at.timestamp()})
                else:
                    pipe.lpush(self.ready_key, unit.unit_id)
                pipe.execute()
        except RedisError as e:
            raise WorkQueueError("enqueue", e) from e

    def dequeue(self, timeout: float = 0) -> WorkUnit | None:
        try:
            self._promote_delayed()
            if timeout > 0:
                unit_id = self._client.blmove(
                    self.ready_key, self.processing_key, max(1, int(timeout)), "RIGHT", "LEFT"
                )
            else:
                unit_id = self._client.lmove(self.ready_key, self.processing_key, "RIGHT", "LEFT")
            if unit_id is None:
                return None
            unit_id = _as_str(unit_id)

            deadline = self._clock().timestamp() + self._visibility_timeout
            self._client.zadd(self.inflight_key, {unit_id: deadline})
            raw = self._client.hget(self.units_key, unit_id)
            if raw is None:
                logger.warning("Dropping work unit %s with no payload", unit_id)
                self._forget(unit_id)
                return None
        except RedisError as e:
            raise WorkQueueError("dequeue", e) from e

        return WorkUnit.from_json(_as_str(raw))

    def ack(self, unit: WorkUnit) -> None:
        try:
            self._forget(unit.unit_id)
        except RedisError as e:
            raise WorkQueueError("ack", e) from e

    def restore_expired(self, now: datetime | None = None) -> int:
        """Move units whose visibility deadline passed back to the ready list.

        Units found in the processing list without a deadline (a consumer
        stopped between claiming and registering them) are given one, so
        they come back after a full visibility timeout.
        """
        now = now or self._clock()
        try:
            self._adopt_unregistered(now)
            with self._client.pipeline() as pipe:
                pipe.watch(self.inflight_key)
                expired = [
                    _as_str(unit_id)
                    for unit_id in pipe.zrangebyscore(self.inflight_key, "-inf", now.timestamp())
                ]
                if not expired:
                    return 0
                pipe.multi()
                pipe.zrem(self.inflight_key, *expired)
                for unit_id in expired:
                    pipe.lrem(self.processing_key, 0, unit_id)
                pipe.lpush(self.ready_key, *expired)
                pipe.execute()
        except WatchError:
            logger.debug("Expired work units restored by another consumer")
            return 0
        except RedisError as e:
            raise WorkQueueError("restore_expired", e) from e

        logger.warning("Restored %d expired work units", len(expired))
        return len(expired)

    def _forget(self, unit_id: str) -> None:
        with self._client.pipeline() as pipe:
            pipe.lrem(self.processing_key, 0, unit_id)
            pipe.zrem(self.inflight_key, unit_id)
            pipe.hdel(self.units_key, unit_id)
            pipe.execute()

    def _adopt_unregistered(self, now: datetime) -> None:
        deadline = now.timestamp() + self._visibility_timeout
        for unit_id in self._client.lrange(self.processing_key, 0, -1):
            self._client.zadd(self.inflight_key, {_as_str(unit_id): deadline}, nx=True)

    def _promote_delayed(self) -> None:
        now = self._clock().timestamp()
        try:
            with self._client.pipeline() as pipe:
                pipe.watch(self.delayed_key)
                due = [
                    _as_str(unit_id)
                    for unit_id in pipe.zrangebyscore(self.delayed_key, "-inf", now)
                ]
                if not due:
                    return
                pipe.multi()
                pipe.zrem(self.delayed_key, *due)
                pipe.lpush(self.ready_key, *due)
                pipe.execute()
        except WatchError:
            logger.debug("Delayed work units promoted by another consumer")


def _as_str(value: Any) -> str:
    return value.decode("utf-8") if isinstance(value, bytes) else str(value)
