"""Case binding and grace-period lifecycle of calculations.

Responsibilities:
1. Deduplication: find an existing completed calculation by fingerprint.
2. Binding: repoint a case at a calculation, atomically retiring the
   previously bound one.
3. Grace period: a displaced calculation gets ``detach_at`` (informational)
   and ``delete_at`` (enforced) markers instead of being removed.
4. Cleanup: delete records whose ``delete_at`` has passed, one transaction
   per record.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Generator
from contextlib import contextmanager
from datetime import UTC, datetime, timedelta
from typing import Any

from ockham.hashing import FingerprintGenerator
from ockham.models import CalculationInput, CalculationRecord, CalculationStatus
from ockham.persistence import (
    CalculationNotFoundError,
    CaseNotFoundError,
    Repositories,
    RepositoryProvider,
)
from ockham.persistence.repositories.calculations import to_utc

logger = logging.getLogger(__name__)

DEFAULT_GRACE_PERIOD_DAYS = 7
DEFAULT_DELETE_AFTER_DAYS = 30


class CaseBindingService:
    """Deduplicates calculations and manages which one a case points at.

    Args:
        provider: Transactional repository access.
        fingerprints: Fingerprint generator used for dedup lookups.
        grace_period_days: Days from displacement to ``detach_at``.
        delete_after_days: Days from ``detach_at`` to ``delete_at``.
        clock: Source of the current time (UTC).
    """

    def __init__(
        self,
        provider: RepositoryProvider,
        fingerprints: FingerprintGenerator | None = None,
        grace_period_days: int = DEFAULT_GRACE_PERIOD_DAYS,
        delete_after_days: int = DEFAULT_DELETE_AFTER_DAYS,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        if delete_after_days <= 0:
            raise ValueError("delete_after_days must be positive so that detach_at < delete_at")
        self._provider = provider
        self._fingerprints = fingerprints or FingerprintGenerator()
        self._grace_period = timedelta(days=grace_period_days)
        self._delete_after = timedelta(days=delete_after_days)
        self._clock = clock or (lambda: datetime.now(UTC))

    def find_existing(self, calc_input: CalculationInput) -> CalculationRecord | None:
        """Latest completed, non-retiring calculation with the input's fingerprint."""
        fingerprint = self._fingerprints.generate(calc_input)
        with self._provider.transaction() as repos:
            record = repos.calculations.find_completed_by_fingerprint(fingerprint)

        if record is not None:
            logger.info(
                "Found existing calculation by fingerprint",
                extra={
                    "fingerprint": fingerprint[:16],
                    "calculation_id": record.id,
                    "completed_at": record.completed_at.isoformat() if record.completed_at else None,
                },
            )
        return record

    def bind(self, case_id: str, calculation_id: str, repos: Repositories | None = None) -> None:
        """Make ``calculation_id`` the current calculation of ``case_id``.

        A different previously bound calculation is scheduled for detachment.
        The newly bound record loses any pending deletion markers. When
        ``repos`` is given the work joins that transaction; otherwise it runs
        in its own.

        Raises:
            CaseNotFoundError: If the case does not exist.
            CalculationNotFoundError: If the calculation does not exist.
        """
        with self._join(repos) as tx:
            case = tx.cases.get(case_id, for_update=True)
            if case is None:
                raise CaseNotFoundError(case_id)
            calculation = tx.calculations.get(calculation_id)
            if calculation is None:
                raise CalculationNotFoundError(calculation_id)

            previous_id = case.current_calculation_id
            if previous_id is not None and previous_id != calculation_id:
                self._schedule(tx, previous_id)

            if calculation.is_scheduled_for_deletion or calculation.detach_at is not None:
                tx.calculations.update(calculation_id, detach_at=None, delete_at=None)

            tx.cases.set_current_calculation(case_id, calculation_id, calculation.fingerprint)

        logger.info(
            "Calculation bound to case",
            extra={
                "case_id": case_id,
                "calculation_id": calculation_id,
                "fingerprint": calculation.fingerprint[:16],
                "previous_calculation_id": previous_id,
            },
        )

    def schedule_detachment(self, calculation_id: str) -> CalculationRecord | None:
        """Set grace-period markers on a calculation.

        Returns the updated record, or None if it does not exist.
        """
        with self._provider.transaction() as repos:
            return self._schedule(repos, calculation_id)

    def cancel_deletion(self, calculation_id: str) -> CalculationRecord | None:
        """Clear both grace-period markers. Returns None if the record is gone."""
        with self._provider.transaction() as repos:
            if repos.calculations.get(calculation_id) is None:
                return None
            record = repos.calculations.update(calculation_id, detach_at=None, delete_at=None)

        logger.info("Calculation deletion cancelled", extra={"calculation_id": calculation_id})
        return record

    def cleanup_expired(self, now: datetime | None = None, dry_run: bool = False) -> int:
        """Delete every calculation whose ``delete_at`` is at or before ``now``.

        Each record is deleted in its own transaction. A record whose
        deletion was cancelled between the scan and the delete is skipped.
        A naive ``now`` is taken as UTC.

        Returns:
            Number of records deleted (or that would be, for a dry run).
        """
        now = to_utc(now) or self._clock()
        with self._provider.transaction() as repos:
            due = repos.calculations.find_due_for_deletion(now)

        if dry_run:
            logger.info("Cleanup dry run: %d calculations due for deletion", len(due))
            return len(due)

        deleted = 0
        for calculation_id in due:
            with self._provider.transaction() as repos:
                record = repos.calculations.get(calculation_id, for_update=True)
                if record is None or record.delete_at is None or record.delete_at > now:
                    continue
                repos.cases.clear_calculation_reference(calculation_id)
                if repos.calculations.delete(calculation_id):
                    deleted += 1
                    logger.info(
                        "Deleted expired calculation",
                        extra={
                            "calculation_id": calculation_id,
                            "fingerprint": record.fingerprint[:16],
                            "delete_at": record.delete_at.isoformat(),
                        },
                    )

        if deleted:
            logger.info("Cleanup completed: %d calculations deleted", deleted)
        return deleted

    def case_stats(self, case_id: str) -> dict[str, Any]:
        """Counts of a case's calculations by lifecycle state."""
        with self._provider.transaction() as repos:
            records = repos.calculations.list_by_case(case_id)

        return {
            "total": len(records),
            "active": sum(1 for r in records if r.delete_at is None),
            "completed": sum(1 for r in records if r.status == CalculationStatus.COMPLETED),
            "scheduled_for_deletion": sum(1 for r in records if r.delete_at is not None),
        }

    def _schedule(self, repos: Repositories, calculation_id: str) -> CalculationRecord | None:
        if repos.calculations.get(calculation_id) is None:
            logger.warning(
                "Cannot schedule detachment of missing calculation",
                extra={"calculation_id": calculation_id},
            )
            return None

        detach_at = self._clock() + self._grace_period
        delete_at = detach_at + self._delete_after
        record = repos.calculations.update(calculation_id, detach_at=detach_at, delete_at=delete_at)

        logger.info(
            "Calculation detachment scheduled",
            extra={
                "calculation_id": calculation_id,
                "detach_at": detach_at.isoformat(),
                "delete_at": delete_at.isoformat(),
            },
        )
        return record

    @contextmanager
    def _join(self, repos: Repositories | None) -> Generator[Repositories, None, None]:
        if repos is not None:
            yield repos
            return
        with self._provider.transaction() as tx:
            yield tx
