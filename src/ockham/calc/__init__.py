"""Calculation pipeline: stages, financial metrics and Monte Carlo helpers."""

from ockham.calc.engine import (
    CalculationCancelledError,
    CancelCheck,
    PipelineEngine,
    ProgressSink,
)
from ockham.calc.metrics import (
    DEFAULT_DISCOUNT_RATE,
    IrrSolution,
    MetricComputationError,
    build_cash_flows,
    compute_final_metrics,
    net_present_value,
    payback_period,
    profitability_index,
    solve_irr,
)
from ockham.calc.stages import REFERENCE_STAGES, StageComputationError, StageSet
from ockham.calc.stochastic import (
    NoiseDistribution,
    TriangularNoise,
    UniformNoise,
    compute_distribution_stats,
    make_noise,
    perturb,
)

__all__ = [
    "DEFAULT_DISCOUNT_RATE",
    "REFERENCE_STAGES",
    "CalculationCancelledError",
    "CancelCheck",
    "IrrSolution",
    "MetricComputationError",
    "NoiseDistribution",
    "PipelineEngine",
    "ProgressSink",
    "StageComputationError",
    "StageSet",
    "TriangularNoise",
    "UniformNoise",
    "build_cash_flows",
    "compute_distribution_stats",
    "compute_final_metrics",
    "make_noise",
    "net_present_value",
    "payback_period",
    "perturb",
    "profitability_index",
    "solve_irr",
]
