"""Progress sink used by the worker for stochastic runs.

Each report fans out to three places that are not ordered relative to one
another:
- the ephemeral cache channel, always, with a short TTL;
- the durable record, only when the percentage advanced by at least the
  configured interval since the last write, or reached 100;
- a progress notification on the case topic.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any

from ockham.cache import CacheStore, progress_key
from ockham.events import Notifier, ProgressMessage, case_topic
from ockham.persistence import RepositoryProvider

logger = logging.getLogger(__name__)

DEFAULT_PROGRESS_TTL_SECONDS = 300
DEFAULT_PROGRESS_INTERVAL = 5


class ProgressReporter:
    """Callable ``(percentage, message)`` sink for one calculation attempt."""

    def __init__(
        self,
        calculation_id: str,
        case_id: str,
        provider: RepositoryProvider,
        cache: CacheStore,
        notifier: Notifier,
        ttl_seconds: int = DEFAULT_PROGRESS_TTL_SECONDS,
        persist_interval: int = DEFAULT_PROGRESS_INTERVAL,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._calculation_id = calculation_id
        self._case_id = case_id
        self._provider = provider
        self._cache = cache
        self._notifier = notifier
        self._ttl_seconds = ttl_seconds
        self._persist_interval = persist_interval
        self._clock = clock or (lambda: datetime.now(UTC))
        self._last_persisted = 0
        self.durable_writes = 0

    @property
    def key(self) -> str:
        return progress_key(self._calculation_id)

    def __call__(self, percentage: int, message: str) -> None:
        percentage = max(0, min(100, int(percentage)))
        now = self._clock()

        payload = {
            "calculation_id": self._calculation_id,
            "case_id": self._case_id,
            "percentage": percentage,
            "message": message,
            "timestamp": now.isoformat(),
        }
        self._cache.set(self.key, json.dumps(payload), self._ttl_seconds)

        if percentage >= 100 or percentage - self._last_persisted >= self._persist_interval:
            with self._provider.transaction() as repos:
                repos.calculations.update(
                    self._calculation_id,
                    progress_percentage=percentage,
                    progress_message=message,
                )
            self._last_persisted = percentage
            self.durable_writes += 1

        self._notifier.publish(
            case_topic(self._case_id),
            ProgressMessage(
                calculation_id=self._calculation_id,
                case_id=self._case_id,
                percentage=percentage,
                message=message,
                timestamp=now,
            ),
        )
        logger.debug(
            "Progress updated",
            extra={
                "calculation_id": self._calculation_id,
                "percentage": percentage,
                "progress_message": message,
            },
        )

    def clear(self) -> None:
        """Remove the ephemeral progress entry."""
        self._cache.delete(self.key)


def read_progress(cache: CacheStore, calculation_id: str) -> dict[str, Any] | None:
    """Latest ephemeral progress of a calculation, if still cached."""
    raw = cache.get(progress_key(calculation_id))
    if raw is None:
        return None
    try:
        return json.loads(raw)
    except json.JSONDecodeError:
        logger.warning("Discarding malformed progress entry for %s", calculation_id)
        return None
