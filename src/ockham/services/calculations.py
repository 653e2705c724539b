"""Entry point for submitting and tracking calculations.

Submission order:
1. Dedup lookup by fingerprint; a hit is rebound to its case and returned.
2. Deterministic inputs run through the interactive strategy (cache, then
   compute).
3. Stochastic inputs are queued through the stochastic strategy.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

from ockham.cache import CacheStore
from ockham.calc import ProgressSink
from ockham.models import (
    CalculationInput,
    CalculationRecord,
    CalculationResult,
    CalculationStatus,
    DistributionStats,
)
from ockham.persistence import CalculationNotFoundError, CaseNotFoundError, RepositoryProvider
from ockham.services.binding import CaseBindingService
from ockham.services.progress import read_progress
from ockham.strategies import InteractiveStrategy, StochasticStrategy

logger = logging.getLogger(__name__)

CANCELLED_BY_USER_MESSAGE = "Cancelled by user"


class SubmissionSource(StrEnum):
    """Where a submission's answer came from."""

    DATABASE = "database"
    CACHE = "cache"
    COMPUTED = "computed"
    QUEUED = "queued"


@dataclass(frozen=True)
class Submission:
    """Outcome of ``CalculationService.submit``."""

    source: SubmissionSource
    result: CalculationResult
    calculation_id: str | None = None

    @property
    def fingerprint(self) -> str:
        return self.result.fingerprint

    @property
    def is_pending(self) -> bool:
        return self.result.is_pending


class CalculationNotReadyError(Exception):
    """Raised when results are requested for a calculation that has not completed."""

    def __init__(self, calculation_id: str, status: CalculationStatus, progress: int) -> None:
        self.calculation_id = calculation_id
        self.status = status
        self.progress = progress
        super().__init__(
            f"Calculation {calculation_id} is not completed (status={status.value}, "
            f"progress={progress}%)"
        )


class CalculationNotCancellableError(Exception):
    """Raised when cancelling a calculation that is not processing."""

    def __init__(self, calculation_id: str, status: CalculationStatus) -> None:
        self.calculation_id = calculation_id
        self.status = status
        super().__init__(
            f"Calculation {calculation_id} is not processing (status={status.value})"
        )


def record_to_result(record: CalculationRecord) -> CalculationResult:
    """Rebuild a result value object from a completed durable record."""
    distributions = None
    if record.distributions:
        distributions = {
            name: DistributionStats.model_validate(stats)
            for name, stats in record.distributions.items()
        }
    return CalculationResult(
        fingerprint=record.fingerprint,
        calculation_id=record.id,
        engineering_results=record.engineering_results or {},
        production_results=record.production_results or {},
        sales_results=record.sales_results or {},
        capex_results=record.capex_results or {},
        opex_results=record.opex_results or {},
        tax_results=record.tax_results or {},
        final_metrics=record.final_metrics or {},
        distributions=distributions,
        iterations_completed=record.iterations_completed or 0,
        execution_time_seconds=record.execution_time_seconds or 0.0,
    )


class CalculationService:
    """Facade over dedup, strategies, status polling and cancellation."""

    def __init__(
        self,
        provider: RepositoryProvider,
        binding: CaseBindingService,
        interactive: InteractiveStrategy,
        stochastic: StochasticStrategy,
        cache: CacheStore,
    ) -> None:
        self._provider = provider
        self._binding = binding
        self._interactive = interactive
        self._stochastic = stochastic
        self._cache = cache

    def submit(
        self, calc_input: CalculationInput, progress: ProgressSink | None = None
    ) -> Submission:
        """Answer a calculation request, reusing prior work when possible.

        Raises:
            CaseNotFoundError: If a stochastic input names an unknown case.
        """
        existing = self._binding.find_existing(calc_input)
        if existing is not None:
            self._binding.bind(existing.case_id, existing.id)
            logger.info(
                "Using existing calculation",
                extra={"calculation_id": existing.id, "fingerprint": existing.fingerprint[:16]},
            )
            return Submission(
                source=SubmissionSource.DATABASE,
                result=record_to_result(existing),
                calculation_id=existing.id,
            )

        if calc_input.is_stochastic:
            with self._provider.transaction() as repos:
                if repos.cases.get(calc_input.case_id) is None:
                    raise CaseNotFoundError(calc_input.case_id)
            handle = self._stochastic.execute(calc_input, progress)
            return Submission(
                source=SubmissionSource.QUEUED,
                result=handle,
                calculation_id=handle.calculation_id,
            )

        cached = self._interactive.cached_result(calc_input)
        if cached is not None:
            return Submission(source=SubmissionSource.CACHE, result=cached)
        return Submission(
            source=SubmissionSource.COMPUTED,
            result=self._interactive.execute(calc_input, progress),
        )

    def status(self, calculation_id: str) -> dict[str, Any]:
        """Current status, with fresher ephemeral progress while processing.

        Raises:
            CalculationNotFoundError: If the record does not exist.
        """
        record = self._get(calculation_id)
        status: dict[str, Any] = {
            "calculation_id": record.id,
            "case_id": record.case_id,
            "fingerprint": record.fingerprint,
            "status": record.status.value,
            "progress_percentage": record.progress_percentage,
            "progress_message": record.progress_message,
            "iterations_completed": record.iterations_completed,
            "iterations_total": record.iterations_total,
            "attempts": record.attempts,
            "started_at": record.started_at.isoformat() if record.started_at else None,
            "completed_at": record.completed_at.isoformat() if record.completed_at else None,
            "execution_time_seconds": record.execution_time_seconds,
            "error_message": record.error_message,
            "results": record.key_metrics() if record.is_completed else None,
        }

        if record.is_processing:
            live = read_progress(self._cache, calculation_id)
            if live is not None and live.get("percentage", 0) >= record.progress_percentage:
                status["progress_percentage"] = live["percentage"]
                status["progress_message"] = live.get("message")
        return status

    def results(self, calculation_id: str) -> CalculationResult:
        """Full results of a completed calculation.

        Raises:
            CalculationNotFoundError: If the record does not exist.
            CalculationNotReadyError: If it has not completed.
        """
        record = self._get(calculation_id)
        if not record.is_completed:
            raise CalculationNotReadyError(record.id, record.status, record.progress_percentage)
        return record_to_result(record)

    def cancel(self, calculation_id: str) -> CalculationRecord:
        """Mark a processing calculation failed; the worker stops at its next check.

        Raises:
            CalculationNotFoundError: If the record does not exist.
            CalculationNotCancellableError: If it is not processing.
        """
        with self._provider.transaction() as repos:
            record = repos.calculations.get(calculation_id, for_update=True)
            if record is None:
                raise CalculationNotFoundError(calculation_id)
            if not record.is_processing:
                raise CalculationNotCancellableError(calculation_id, record.status)
            cancelled = repos.calculations.update(
                calculation_id,
                status=CalculationStatus.FAILED,
                progress_message=CANCELLED_BY_USER_MESSAGE,
                error_message=CANCELLED_BY_USER_MESSAGE,
                failed_at=datetime.now(UTC),
            )

        logger.info("Calculation cancelled", extra={"calculation_id": calculation_id})
        return cancelled

    def invalidate_cache(self, calc_input: CalculationInput) -> None:
        self._interactive.invalidate_cache(calc_input)

    def _get(self, calculation_id: str) -> CalculationRecord:
        with self._provider.transaction() as repos:
            record = repos.calculations.get(calculation_id)
        if record is None:
            raise CalculationNotFoundError(calculation_id)
        return record
