"""Handler that runs one queued stochastic calculation attempt.

The handler is a plain callable invoked by the worker for each WorkUnit.
Delivery is at-least-once, so records already in a terminal status are
skipped and a redelivered ``processing`` record is restarted.
"""

from __future__ import annotations

import logging
import threading
import traceback
from collections.abc import Callable
from datetime import UTC, datetime

from ockham.cache import CacheStore, progress_key
from ockham.calc import CalculationCancelledError, PipelineEngine
from ockham.events import CompletedMessage, FailedMessage, Notifier, case_topic
from ockham.models import CalculationInput, CalculationRecord, CalculationStatus
from ockham.persistence import CalculationNotFoundError, RepositoryProvider
from ockham.queue import WorkUnit
from ockham.services.binding import CaseBindingService
from ockham.services.progress import (
    DEFAULT_PROGRESS_INTERVAL,
    DEFAULT_PROGRESS_TTL_SECONDS,
    ProgressReporter,
)

logger = logging.getLogger(__name__)


class CalculationJobHandler:
    """Executes stochastic calculations for queued work units."""

    def __init__(
        self,
        provider: RepositoryProvider,
        engine: PipelineEngine,
        cache: CacheStore,
        notifier: Notifier,
        binding: CaseBindingService,
        progress_ttl_seconds: int = DEFAULT_PROGRESS_TTL_SECONDS,
        progress_interval: int = DEFAULT_PROGRESS_INTERVAL,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._provider = provider
        self._engine = engine
        self._cache = cache
        self._notifier = notifier
        self._binding = binding
        self._progress_ttl_seconds = progress_ttl_seconds
        self._progress_interval = progress_interval
        self._clock = clock or (lambda: datetime.now(UTC))

    def handle(
        self, unit: WorkUnit, stop_event: threading.Event | None = None
    ) -> CalculationRecord:
        """Run one attempt of the calculation referenced by ``unit``.

        Returns:
            The record after the attempt (completed, or unchanged if it was
            already terminal).

        Raises:
            CalculationNotFoundError: If the record no longer exists.
            CalculationCancelledError: If the record was cancelled or the
                stop event was set while running.
            Exception: Any failure of the run, after the record has been
                marked failed.
        """
        record = self._start(unit)
        if record.status != CalculationStatus.PROCESSING:
            return record

        calculation_id = record.id
        attempt_no = record.attempts
        reporter = ProgressReporter(
            calculation_id,
            record.case_id,
            self._provider,
            self._cache,
            self._notifier,
            ttl_seconds=self._progress_ttl_seconds,
            persist_interval=self._progress_interval,
            clock=self._clock,
        )

        def cancel_check() -> bool:
            if stop_event is not None and stop_event.is_set():
                return True
            return not self._owns(calculation_id, attempt_no)

        try:
            calc_input = CalculationInput.model_validate(record.input_params)
            reporter(0, "Initializing calculation")
            result = self._engine.run_stochastic(calc_input, reporter, cancel_check)

            with self._provider.transaction() as repos:
                current = repos.calculations.get(calculation_id, for_update=True)
                if current is None:
                    raise CalculationNotFoundError(calculation_id)
                if current.status != CalculationStatus.PROCESSING or current.attempts != attempt_no:
                    raise CalculationCancelledError("Calculation cancelled before completion")

                completed = repos.calculations.update(
                    calculation_id,
                    status=CalculationStatus.COMPLETED,
                    progress_percentage=100,
                    progress_message="Calculation completed",
                    completed_at=self._clock(),
                    iterations_completed=result.iterations_completed,
                    execution_time_seconds=result.execution_time_seconds,
                    engineering_results=result.engineering_results,
                    production_results=result.production_results,
                    sales_results=result.sales_results,
                    capex_results=result.capex_results,
                    opex_results=result.opex_results,
                    tax_results=result.tax_results,
                    final_metrics=result.final_metrics,
                    distributions=result.distributions,
                )
                self._binding.bind(record.case_id, calculation_id, repos=repos)

        except CalculationCancelledError as e:
            logger.info(
                "Calculation stopped: %s",
                e.reason,
                extra={"calculation_id": calculation_id, "case_id": record.case_id},
            )
            self._record_failure(record, attempt_no, e, reporter)
            raise
        except Exception as e:
            logger.error(
                "Stochastic calculation failed: %s",
                e,
                extra={"calculation_id": calculation_id, "case_id": record.case_id},
                exc_info=True,
            )
            self._record_failure(record, attempt_no, e, reporter)
            raise

        self._notifier.publish(
            case_topic(record.case_id),
            CompletedMessage(
                calculation_id=calculation_id,
                results=completed.key_metrics(),
                timestamp=self._clock(),
            ),
        )
        reporter.clear()

        logger.info(
            "Stochastic calculation completed in %.3fs",
            result.execution_time_seconds,
            extra={
                "calculation_id": calculation_id,
                "case_id": record.case_id,
                "attempt": attempt_no,
            },
        )
        return completed

    def abandon(self, unit: WorkUnit, error: BaseException) -> None:
        """Mark a still-processing attempt failed without waiting for it.

        Used when an attempt overran its timeout. The running thread notices
        at its next cancellation check and stops.
        """
        with self._provider.transaction() as repos:
            record = repos.calculations.get(unit.calculation_id, for_update=True)
            if record is None or record.status != CalculationStatus.PROCESSING:
                return
            repos.calculations.update(
                record.id,
                status=CalculationStatus.FAILED,
                failed_at=self._clock(),
                error_message=str(error),
                progress_message=f"Error: {error}",
            )

        self._notifier.publish(
            case_topic(record.case_id),
            FailedMessage(calculation_id=record.id, error=str(error), timestamp=self._clock()),
        )
        self._cache.delete(progress_key(record.id))
        logger.error(
            "Calculation attempt abandoned: %s",
            error,
            extra={"calculation_id": record.id, "case_id": record.case_id},
        )

    def mark_permanently_failed(self, unit: WorkUnit, error: BaseException) -> None:
        """Terminal hook after the retry budget is spent. Never retried."""
        with self._provider.transaction() as repos:
            record = repos.calculations.get(unit.calculation_id, for_update=True)
            if record is None:
                logger.warning(
                    "Cannot mark missing calculation permanently failed",
                    extra={"calculation_id": unit.calculation_id},
                )
                return
            if record.status.is_terminal:
                return
            if record.status != CalculationStatus.FAILED:
                record = repos.calculations.update(
                    record.id, status=CalculationStatus.FAILED, failed_at=self._clock()
                )
            record.ensure_transition(CalculationStatus.PERMANENTLY_FAILED)
            repos.calculations.update(
                record.id,
                status=CalculationStatus.PERMANENTLY_FAILED,
                progress_message=f"Calculation failed after {unit.attempt} attempts",
                failed_at=self._clock(),
                error_message=record.error_message or str(error),
            )

        logger.critical(
            "Calculation permanently failed: %s",
            error,
            extra={"calculation_id": unit.calculation_id, "case_id": unit.case_id},
        )

    def _start(self, unit: WorkUnit) -> CalculationRecord:
        with self._provider.transaction() as repos:
            record = repos.calculations.get(unit.calculation_id, for_update=True)
            if record is None:
                raise CalculationNotFoundError(unit.calculation_id)

            if record.status.is_terminal:
                logger.info(
                    "Skipping calculation in terminal status %s",
                    record.status.value,
                    extra={"calculation_id": record.id},
                )
                return record

            if record.status == CalculationStatus.PROCESSING:
                logger.warning(
                    "Restarting redelivered calculation",
                    extra={"calculation_id": record.id, "attempt": unit.attempt},
                )
            else:
                record.ensure_transition(CalculationStatus.PROCESSING)

            started = repos.calculations.update(
                record.id,
                status=CalculationStatus.PROCESSING,
                started_at=self._clock(),
                attempts=record.attempts + 1,
                progress_percentage=0,
                progress_message="Initializing calculation",
                error_message=None,
                error_trace=None,
                failed_at=None,
            )

        logger.info(
            "Starting stochastic calculation attempt %d",
            started.attempts,
            extra={
                "calculation_id": started.id,
                "case_id": started.case_id,
                "iterations": started.iterations_total,
            },
        )
        return started

    def _owns(self, calculation_id: str, attempt_no: int) -> bool:
        with self._provider.transaction() as repos:
            current = repos.calculations.get(calculation_id)
        return (
            current is not None
            and current.status == CalculationStatus.PROCESSING
            and current.attempts == attempt_no
        )

    def _record_failure(
        self,
        record: CalculationRecord,
        attempt_no: int,
        error: BaseException,
        reporter: ProgressReporter,
    ) -> None:
        """Persist the failure of this attempt, notify and clear progress.

        Nothing is written if another actor already moved the record on.
        After a cancellation of this attempt the stored error is published;
        when a newer attempt owns the record nothing is published and its
        live progress is left alone. Errors raised while recording are
        logged; the caller re-raises the original.
        """
        message = str(error) or type(error).__name__
        cancelled = False
        try:
            with self._provider.transaction() as repos:
                current = repos.calculations.get(record.id, for_update=True)
                owned = (
                    current is not None
                    and current.status == CalculationStatus.PROCESSING
                    and current.attempts == attempt_no
                )
                if owned:
                    repos.calculations.update(
                        record.id,
                        status=CalculationStatus.FAILED,
                        failed_at=self._clock(),
                        progress_message=f"Error: {message}",
                        error_message=message,
                        error_trace=traceback.format_exc(),
                    )
                elif (
                    current is not None
                    and current.status == CalculationStatus.FAILED
                    and current.attempts == attempt_no
                    and current.error_message
                ):
                    cancelled = True
                    message = current.error_message

            if not owned and not cancelled:
                logger.info(
                    "Attempt %d superseded, leaving record untouched",
                    attempt_no,
                    extra={"calculation_id": record.id, "case_id": record.case_id},
                )
                return

            self._notifier.publish(
                case_topic(record.case_id),
                FailedMessage(calculation_id=record.id, error=message, timestamp=self._clock()),
            )
            reporter.clear()
        except Exception:
            logger.exception(
                "Failed to record calculation failure",
                extra={"calculation_id": record.id, "case_id": record.case_id},
            )
