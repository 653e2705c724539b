"""Background worker for queued stochastic calculations.

Dequeues one WorkUnit at a time, runs the job handler in a thread under the
per-attempt timeout, and applies the retry policy to failures.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import threading
from collections.abc import Callable
from datetime import UTC, datetime

from ockham.calc import CalculationCancelledError
from ockham.pipeline.executor import CalculationJobHandler
from ockham.pipeline.retry import JobTimeoutError, RetryPolicy
from ockham.queue import WorkQueue, WorkUnit

logger = logging.getLogger(__name__)

DEFAULT_POLL_INTERVAL_SECONDS = 1.0


class CalculationWorker:
    """Asyncio worker that processes queued calculations."""

    def __init__(
        self,
        queue: WorkQueue,
        handler: CalculationJobHandler,
        retry_policy: RetryPolicy | None = None,
        poll_interval: float = DEFAULT_POLL_INTERVAL_SECONDS,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        """Initialize worker.

        Args:
            queue: Source of work units.
            handler: Runs one attempt of a calculation.
            retry_policy: Attempts, backoff and timeout. Defaults to 3/60s/3600s.
            poll_interval: Seconds to wait for work before polling again.
            clock: Source of the current time (UTC).
        """
        self._queue = queue
        self._handler = handler
        self._policy = retry_policy or RetryPolicy()
        self._poll_interval = poll_interval
        self._clock = clock or (lambda: datetime.now(UTC))
        self._running = False
        self._task: asyncio.Task[None] | None = None
        self._current_stop: threading.Event | None = None
        self.processed = 0
        self.failed = 0

    async def start(self) -> None:
        """Start the worker."""
        if self._running:
            logger.warning("Worker already running")
            return

        self._running = True
        self._task = asyncio.create_task(self._poll_loop())
        logger.info("Calculation worker started")

    async def stop(self) -> None:
        """Stop the worker; an in-flight attempt is asked to stop cooperatively."""
        if not self._running:
            return

        self._running = False
        if self._current_stop is not None:
            self._current_stop.set()
        if self._task:
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
        logger.info("Calculation worker stopped")

    async def run_once(self, timeout: float = 0) -> bool:
        """Process at most one unit.

        Returns:
            True if a unit was dequeued and handled, False if none was ready.
        """
        await asyncio.to_thread(self._queue.restore_expired, self._clock())
        unit = await asyncio.to_thread(self._queue.dequeue, timeout)
        if unit is None:
            return False
        await self.process(unit)
        return True

    async def run_until_idle(self) -> int:
        """Process units until none is ready. Returns how many were handled."""
        handled = 0
        while await self.run_once():
            handled += 1
        return handled

    async def process(self, unit: WorkUnit) -> None:
        """Run one attempt and acknowledge the unit once its outcome is settled."""
        stop_event = threading.Event()
        self._current_stop = stop_event
        try:
            await asyncio.wait_for(
                asyncio.to_thread(self._handler.handle, unit, stop_event),
                timeout=self._policy.timeout_seconds,
            )
        except TimeoutError:
            stop_event.set()
            error = JobTimeoutError(unit.calculation_id, self._policy.timeout_seconds)
            await asyncio.to_thread(self._handler.abandon, unit, error)
            await self._after_failure(unit, error)
        except asyncio.CancelledError:
            # Left unacked so the queue redelivers it after the visibility timeout.
            stop_event.set()
            raise
        except Exception as e:
            await self._after_failure(unit, e)
        else:
            self.processed += 1
        finally:
            self._current_stop = None

        await asyncio.to_thread(self._queue.ack, unit)

    async def _after_failure(self, unit: WorkUnit, error: BaseException) -> None:
        self.failed += 1

        if self._policy.should_retry(unit.attempt, error):
            next_unit = unit.next_attempt(self._policy.next_attempt_at(self._clock()))
            await asyncio.to_thread(self._queue.enqueue, next_unit)
            logger.warning(
                "Calculation attempt %d failed, retrying in %ds: %s",
                unit.attempt,
                self._policy.backoff_seconds,
                error,
                extra={"calculation_id": unit.calculation_id, "case_id": unit.case_id},
            )
            return

        if isinstance(error, CalculationCancelledError):
            logger.info(
                "Cancelled calculation will not be retried",
                extra={"calculation_id": unit.calculation_id, "case_id": unit.case_id},
            )
            return

        if not self._policy.is_retryable(error):
            logger.error(
                "Calculation failed with non-retryable error: %s",
                error,
                extra={"calculation_id": unit.calculation_id, "case_id": unit.case_id},
            )

        await asyncio.to_thread(self._handler.mark_permanently_failed, unit, error)

    async def _poll_loop(self) -> None:
        """Main polling loop."""
        while self._running:
            try:
                await self.run_once(timeout=self._poll_interval)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error("Error in worker poll loop: %s", e, exc_info=True)
                await asyncio.sleep(self._poll_interval)
