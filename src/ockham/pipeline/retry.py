"""Retry policy for queued calculations.

Design:
- 3 total attempts (1 initial + 2 retries)
- Fixed backoff of 60s between attempts
- Hard per-attempt timeout of 3600s
- Cancellation and missing records are never retried
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Final

from pydantic import ValidationError

from ockham.calc import CalculationCancelledError
from ockham.persistence import CalculationNotFoundError

if TYPE_CHECKING:
    from ockham.config import CalculationSettings

MAX_ATTEMPTS: Final[int] = 3
BACKOFF_SECONDS: Final[int] = 60
JOB_TIMEOUT_SECONDS: Final[int] = 3600

NON_RETRYABLE_ERRORS: Final[tuple[type[BaseException], ...]] = (
    CalculationCancelledError,
    CalculationNotFoundError,
    ValidationError,
)


class JobTimeoutError(Exception):
    """Raised when an attempt exceeds the per-attempt timeout."""

    def __init__(self, calculation_id: str, timeout_seconds: float) -> None:
        self.calculation_id = calculation_id
        self.timeout_seconds = timeout_seconds
        super().__init__(
            f"Calculation {calculation_id} exceeded the {timeout_seconds:g}s attempt timeout"
        )


@dataclass(frozen=True)
class RetryPolicy:
    """Fixed-backoff retry policy.

    Attributes:
        max_attempts: Total attempts including the first.
        backoff_seconds: Delay before each retry.
        timeout_seconds: Hard limit for one attempt.
    """

    max_attempts: int = MAX_ATTEMPTS
    backoff_seconds: int = BACKOFF_SECONDS
    timeout_seconds: float = JOB_TIMEOUT_SECONDS

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if self.backoff_seconds < 0:
            raise ValueError("backoff_seconds must be >= 0")
        if self.timeout_seconds <= 0:
            raise ValueError("timeout_seconds must be > 0")

    @classmethod
    def from_settings(cls, settings: CalculationSettings) -> RetryPolicy:
        return cls(
            max_attempts=settings.retry_attempts,
            backoff_seconds=settings.retry_backoff_seconds,
            timeout_seconds=settings.job_timeout_seconds,
        )

    def is_retryable(self, error: BaseException) -> bool:
        return not isinstance(error, NON_RETRYABLE_ERRORS)

    def should_retry(self, attempt: int, error: BaseException) -> bool:
        """Whether a failed ``attempt`` (1-based) gets another try."""
        return self.is_retryable(error) and attempt < self.max_attempts

    def next_attempt_at(self, now: datetime) -> datetime:
        return now + timedelta(seconds=self.backoff_seconds)
