"""Asynchronous execution of queued stochastic calculations."""

from ockham.pipeline.executor import CalculationJobHandler
from ockham.pipeline.retry import JobTimeoutError, RetryPolicy
from ockham.pipeline.worker import CalculationWorker

__all__ = [
    "CalculationJobHandler",
    "CalculationWorker",
    "JobTimeoutError",
    "RetryPolicy",
]
