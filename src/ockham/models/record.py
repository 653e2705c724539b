"""Durable calculation and case records.

A CalculationRecord tracks one stochastic run from queueing to completion,
failure or retirement. Status moves forward only, except that a failed
attempt may be picked up again by a retry.
"""

from __future__ import annotations

from datetime import datetime
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field

from ockham.models.calculation import KEY_METRICS, CalculationMode


class CalculationStatus(StrEnum):
    """Lifecycle status of a durable calculation record."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    PERMANENTLY_FAILED = "permanently_failed"

    def can_transition(self, target: CalculationStatus) -> bool:
        """Check whether moving from this status to ``target`` is allowed."""
        return target in _ALLOWED_TRANSITIONS[self]

    @property
    def is_terminal(self) -> bool:
        return not _ALLOWED_TRANSITIONS[self]


_ALLOWED_TRANSITIONS: dict[CalculationStatus, frozenset[CalculationStatus]] = {
    CalculationStatus.PENDING: frozenset(
        {CalculationStatus.PROCESSING, CalculationStatus.FAILED}
    ),
    CalculationStatus.PROCESSING: frozenset(
        {CalculationStatus.COMPLETED, CalculationStatus.FAILED}
    ),
    CalculationStatus.FAILED: frozenset(
        {CalculationStatus.PROCESSING, CalculationStatus.PERMANENTLY_FAILED}
    ),
    CalculationStatus.COMPLETED: frozenset(),
    CalculationStatus.PERMANENTLY_FAILED: frozenset(),
}


class InvalidStatusTransitionError(Exception):
    """Raised when a record would move backwards or out of a terminal status."""

    def __init__(
        self,
        calculation_id: str,
        current: CalculationStatus,
        target: CalculationStatus,
    ) -> None:
        self.calculation_id = calculation_id
        self.current = current
        self.target = target
        super().__init__(
            f"Calculation {calculation_id} cannot move from {current.value} to {target.value}"
        )


class CalculationRecord(BaseModel):
    """Persisted state of a stochastic calculation.

    Attributes:
        id: UUID of the calculation.
        case_id: Owning case.
        fingerprint: SHA-256 fingerprint of the hashable input fields.
        mode: Calculation mode (always stochastic on the durable path).
        status: Lifecycle status.
        input_params: Snapshot of the full input for the worker to replay.
        attempts: Number of worker attempts started so far.
        detach_at: Informational end of the grace period.
        delete_at: When the cleanup sweep may remove the record.
    """

    id: str
    case_id: str
    fingerprint: str
    mode: CalculationMode
    status: CalculationStatus = CalculationStatus.PENDING
    input_params: dict[str, Any] = Field(default_factory=dict)
    progress_percentage: int = 0
    progress_message: str | None = None
    iterations_total: int | None = None
    iterations_completed: int | None = None
    attempts: int = 0
    started_at: datetime | None = None
    completed_at: datetime | None = None
    failed_at: datetime | None = None
    execution_time_seconds: float | None = None
    engineering_results: dict[str, Any] | None = None
    production_results: dict[str, Any] | None = None
    sales_results: dict[str, Any] | None = None
    capex_results: dict[str, Any] | None = None
    opex_results: dict[str, Any] | None = None
    tax_results: dict[str, Any] | None = None
    final_metrics: dict[str, Any] | None = None
    distributions: dict[str, Any] | None = None
    error_message: str | None = None
    error_trace: str | None = None
    detach_at: datetime | None = None
    delete_at: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @property
    def is_completed(self) -> bool:
        return self.status == CalculationStatus.COMPLETED

    @property
    def is_processing(self) -> bool:
        return self.status == CalculationStatus.PROCESSING

    @property
    def is_failed(self) -> bool:
        return self.status in (CalculationStatus.FAILED, CalculationStatus.PERMANENTLY_FAILED)

    @property
    def is_scheduled_for_deletion(self) -> bool:
        return self.delete_at is not None

    def ensure_transition(self, target: CalculationStatus) -> None:
        """Raise InvalidStatusTransitionError unless ``target`` is reachable."""
        if not self.status.can_transition(target):
            raise InvalidStatusTransitionError(self.id, self.status, target)

    def key_metrics(self) -> dict[str, Any]:
        metrics = self.final_metrics or {}
        return {name: metrics.get(name) for name in KEY_METRICS}


class CaseRecord(BaseModel):
    """A modelling case and its current calculation pointer."""

    id: str
    name: str = ""
    description: str | None = None
    current_calculation_id: str | None = None
    current_calculation_fingerprint: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None
