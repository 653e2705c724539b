"""Value objects and durable records for calculations."""

from ockham.models.calculation import (
    DEFAULT_ITERATIONS,
    KEY_METRICS,
    MAX_ITERATIONS,
    MIN_ITERATIONS,
    STAGE_RESULT_FIELDS,
    CalculationInput,
    CalculationMode,
    CalculationResult,
    CalculationResultStatus,
    DistributionStats,
)
from ockham.models.record import (
    CalculationRecord,
    CalculationStatus,
    CaseRecord,
    InvalidStatusTransitionError,
)

__all__ = [
    "DEFAULT_ITERATIONS",
    "KEY_METRICS",
    "MAX_ITERATIONS",
    "MIN_ITERATIONS",
    "STAGE_RESULT_FIELDS",
    "CalculationInput",
    "CalculationMode",
    "CalculationRecord",
    "CalculationResult",
    "CalculationResultStatus",
    "CalculationStatus",
    "CaseRecord",
    "DistributionStats",
    "InvalidStatusTransitionError",
]
