"""Queue-backed execution for Monte Carlo calculations."""

from __future__ import annotations

import logging
import uuid

from ockham.calc import ProgressSink
from ockham.hashing import FingerprintGenerator
from ockham.models import (
    CalculationInput,
    CalculationRecord,
    CalculationResult,
    CalculationResultStatus,
    CalculationStatus,
)
from ockham.persistence import RepositoryProvider
from ockham.queue import WorkQueue, WorkQueueError, WorkUnit

logger = logging.getLogger(__name__)


class StochasticStrategy:
    """Creates a pending record, enqueues it and returns a pending handle.

    Never touches the result cache.
    """

    def __init__(
        self,
        provider: RepositoryProvider,
        queue: WorkQueue,
        fingerprints: FingerprintGenerator | None = None,
    ) -> None:
        self._provider = provider
        self._queue = queue
        self._fingerprints = fingerprints or FingerprintGenerator()

    def execute(
        self, calc_input: CalculationInput, progress: ProgressSink | None = None
    ) -> CalculationResult:
        """Queue the calculation.

        Raises:
            WorkQueueError: If the unit cannot be enqueued. The record is
                marked failed first.
        """
        fingerprint = self._fingerprints.generate(calc_input)
        record = CalculationRecord(
            id=str(uuid.uuid4()),
            case_id=calc_input.case_id,
            fingerprint=fingerprint,
            mode=calc_input.mode,
            status=CalculationStatus.PENDING,
            input_params=calc_input.model_dump(mode="json"),
            progress_message="Queued",
            iterations_total=calc_input.iterations,
        )
        with self._provider.transaction() as repos:
            repos.calculations.create(record)

        unit = WorkUnit(
            calculation_id=record.id,
            case_id=calc_input.case_id,
            tags={
                "kind": "calculation",
                "mode": calc_input.mode.value,
                "case": calc_input.case_id,
                "fingerprint": fingerprint[:16],
            },
        )
        try:
            self._queue.enqueue(unit)
        except WorkQueueError as e:
            with self._provider.transaction() as repos:
                repos.calculations.update(
                    record.id,
                    status=CalculationStatus.FAILED,
                    error_message=str(e),
                    progress_message="Failed to enqueue",
                )
            raise

        if progress is not None:
            progress(0, "Calculation queued")

        logger.info(
            "Stochastic calculation queued",
            extra={
                "calculation_id": record.id,
                "case_id": calc_input.case_id,
                "fingerprint": fingerprint[:16],
            },
        )
        return CalculationResult(
            fingerprint=fingerprint,
            status=CalculationResultStatus.PENDING,
            calculation_id=record.id,
        )

    def should_persist(self) -> bool:
        return True

    def should_cache(self) -> bool:
        return False

    def name(self) -> str:
        return "stochastic"
