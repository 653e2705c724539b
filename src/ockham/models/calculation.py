"""Calculation input and result value objects.

Both objects are scoped to a single request or worker attempt and own no
external resources.
"""

from __future__ import annotations

from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field, model_validator

MIN_ITERATIONS = 100
MAX_ITERATIONS = 10000
DEFAULT_ITERATIONS = 1000

STAGE_RESULT_FIELDS: tuple[str, ...] = (
    "engineering_results",
    "production_results",
    "sales_results",
    "capex_results",
    "opex_results",
    "tax_results",
)
"""Stage result fields in pipeline order."""

KEY_METRICS: tuple[str, ...] = ("npv", "irr", "pi", "payback_period")
"""Headline metrics reported by every calculation."""


class CalculationMode(StrEnum):
    """How the pipeline is run."""

    DETERMINISTIC = "deterministic"
    STOCHASTIC = "stochastic"


class CalculationInput(BaseModel):
    """All inputs for one calculation request.

    The six parameter groups are JSON-like mappings whose schemas belong to
    the stage plug-ins. ``metadata`` never participates in fingerprinting.
    """

    case_id: str = Field(..., description="Case this calculation belongs to")
    mode: CalculationMode = Field(..., description="Deterministic or stochastic run")
    engineering: dict[str, Any] = Field(default_factory=dict)
    production: dict[str, Any] = Field(default_factory=dict)
    sales: dict[str, Any] = Field(default_factory=dict)
    capex: dict[str, Any] = Field(default_factory=dict)
    opex: dict[str, Any] = Field(default_factory=dict)
    tax: dict[str, Any] = Field(default_factory=dict)
    iterations: int | None = Field(None, description="Monte Carlo passes (stochastic only)")
    metadata: dict[str, Any] | None = Field(None, description="Free-form, not hashed")

    model_config = {"frozen": True, "extra": "forbid"}

    @model_validator(mode="before")
    @classmethod
    def _default_iterations(cls, data: Any) -> Any:
        if isinstance(data, dict):
            mode = data.get("mode")
            if mode == CalculationMode.STOCHASTIC and data.get("iterations") is None:
                data = {**data, "iterations": DEFAULT_ITERATIONS}
        return data

    @model_validator(mode="after")
    def _check_iterations(self) -> CalculationInput:
        if self.mode == CalculationMode.STOCHASTIC:
            if self.iterations is None or not (
                MIN_ITERATIONS <= self.iterations <= MAX_ITERATIONS
            ):
                raise ValueError(
                    f"iterations must be within [{MIN_ITERATIONS}, {MAX_ITERATIONS}], "
                    f"got {self.iterations}"
                )
        return self

    @property
    def is_stochastic(self) -> bool:
        return self.mode == CalculationMode.STOCHASTIC


class DistributionStats(BaseModel):
    """Summary statistics of one metric across Monte Carlo passes.

    Median and percentiles use nearest-rank indexing into the ascending
    sample: median = sample[n // 2], pXX = sample[n * XX // 100].
    """

    mean: float
    median: float
    variance: float
    std_dev: float
    min: float
    max: float
    p10: float
    p50: float
    p90: float
    distribution: list[float] = Field(default_factory=list)


class CalculationResultStatus(StrEnum):
    """Whether a result carries numbers or is a handle to queued work."""

    COMPLETED = "completed"
    PENDING = "pending"


class CalculationResult(BaseModel):
    """Output of a strategy or pipeline run.

    Stochastic results keep only final metrics and distributions; per-pass
    stage intermediates are discarded, so the stage maps are empty.
    """

    fingerprint: str
    status: CalculationResultStatus = CalculationResultStatus.COMPLETED
    calculation_id: str | None = None
    engineering_results: dict[str, Any] = Field(default_factory=dict)
    production_results: dict[str, Any] = Field(default_factory=dict)
    sales_results: dict[str, Any] = Field(default_factory=dict)
    capex_results: dict[str, Any] = Field(default_factory=dict)
    opex_results: dict[str, Any] = Field(default_factory=dict)
    tax_results: dict[str, Any] = Field(default_factory=dict)
    final_metrics: dict[str, Any] = Field(default_factory=dict)
    distributions: dict[str, DistributionStats] | None = None
    iterations_completed: int = 0
    execution_time_seconds: float = 0.0

    def key_metrics(self) -> dict[str, Any]:
        """Return npv, irr, pi and payback_period (None when absent)."""
        return {name: self.final_metrics.get(name) for name in KEY_METRICS}

    @property
    def is_pending(self) -> bool:
        return self.status == CalculationResultStatus.PENDING
