"""Shared contract of execution strategies."""

from __future__ import annotations

from typing import Protocol, runtime_checkable

from ockham.calc import ProgressSink
from ockham.models import CalculationInput, CalculationResult


@runtime_checkable
class CalculationStrategy(Protocol):
    """How a calculation request is executed.

    ``execute`` returns either a completed result or, for queued work, a
    pending handle carrying the calculation id.
    """

    def execute(
        self, calc_input: CalculationInput, progress: ProgressSink | None = None
    ) -> CalculationResult: ...

    def should_persist(self) -> bool: ...

    def should_cache(self) -> bool: ...

    def name(self) -> str: ...
