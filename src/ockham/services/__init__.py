"""Application services: case binding, progress and the calculation facade."""

from ockham.services.binding import CaseBindingService
from ockham.services.calculations import (
    CalculationNotCancellableError,
    CalculationNotReadyError,
    CalculationService,
    Submission,
    SubmissionSource,
    record_to_result,
)
from ockham.services.progress import ProgressReporter, read_progress

__all__ = [
    "CalculationNotCancellableError",
    "CalculationNotReadyError",
    "CalculationService",
    "CaseBindingService",
    "ProgressReporter",
    "Submission",
    "SubmissionSource",
    "read_progress",
    "record_to_result",
]
