"""Discounted cash-flow metrics: NPV, IRR, profitability index, payback.

Cash flow for year 0 is the negative total capital expenditure; each later
year t contributes revenue_t - opex_t - tax_t.

Failure policy per metric:
- npv: no failure mode for a non-empty horizon.
- irr: explicit fallback. Newton-Raphson without a bisection fallback; when
  the derivative vanishes, the arithmetic overflows, or the iteration budget
  runs out, the last finite guess is returned with converged=False and a
  warning is logged.
- pi: hard failure. Zero total capex raises MetricComputationError.
- payback_period: always within [1, horizon]; horizon when never reached.
"""

from __future__ import annotations

import logging
import math
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Any

logger = logging.getLogger(__name__)

DEFAULT_DISCOUNT_RATE = 0.10
IRR_INITIAL_GUESS = 0.10
IRR_MAX_ITERATIONS = 100
IRR_TOLERANCE = 1e-4

_DERIVATIVE_EPSILON = 1e-12


class MetricComputationError(Exception):
    """Raised when a metric cannot be computed and has no defined fallback."""

    def __init__(self, metric: str, reason: str) -> None:
        self.metric = metric
        self.reason = reason
        super().__init__(f"Cannot compute {metric}: {reason}")


@dataclass(frozen=True)
class IrrSolution:
    """Outcome of the Newton-Raphson IRR search."""

    rate: float
    iterations: int
    converged: bool


def build_cash_flows(
    total_capex: float,
    revenue: Sequence[float],
    opex: Sequence[float],
    tax: Sequence[float],
) -> list[float]:
    """Assemble the yearly cash-flow series, year 0 first.

    Missing opex or tax entries for a revenue year count as zero.
    """
    flows = [-float(total_capex)]
    for year, year_revenue in enumerate(revenue):
        year_opex = opex[year] if year < len(opex) else 0.0
        year_tax = tax[year] if year < len(tax) else 0.0
        flows.append(float(year_revenue) - float(year_opex) - float(year_tax))
    return flows


def net_present_value(cash_flows: Sequence[float], rate: float) -> float:
    """Discount the series at ``rate``: sum(cf_t / (1 + rate)^t)."""
    return math.fsum(cf / (1.0 + rate) ** year for year, cf in enumerate(cash_flows))


def solve_irr(
    cash_flows: Sequence[float],
    initial_guess: float = IRR_INITIAL_GUESS,
    max_iterations: int = IRR_MAX_ITERATIONS,
    tolerance: float = IRR_TOLERANCE,
) -> IrrSolution:
    """Find the internal rate of return with Newton-Raphson.

    Converges when successive guesses differ by less than ``tolerance``.
    """
    rate = initial_guess
    for iteration in range(1, max_iterations + 1):
        try:
            value = 0.0
            derivative = 0.0
            for year, cf in enumerate(cash_flows):
                value += cf / (1.0 + rate) ** year
                derivative -= year * cf / (1.0 + rate) ** (year + 1)
        except (ZeroDivisionError, OverflowError):
            logger.warning("IRR iteration overflowed at rate %s after %d steps", rate, iteration)
            return IrrSolution(rate=rate, iterations=iteration, converged=False)

        if abs(derivative) < _DERIVATIVE_EPSILON:
            logger.warning("IRR derivative vanished at rate %s after %d steps", rate, iteration)
            return IrrSolution(rate=rate, iterations=iteration, converged=False)

        new_rate = rate - value / derivative
        if not math.isfinite(new_rate):
            logger.warning("IRR iteration diverged from rate %s after %d steps", rate, iteration)
            return IrrSolution(rate=rate, iterations=iteration, converged=False)

        if abs(new_rate - rate) < tolerance:
            return IrrSolution(rate=new_rate, iterations=iteration, converged=True)

        rate = new_rate

    logger.warning("IRR did not converge within %d iterations", max_iterations)
    return IrrSolution(rate=rate, iterations=max_iterations, converged=False)


def profitability_index(npv: float, total_capex: float) -> float:
    """PI = (NPV + capex) / capex.

    Raises:
        MetricComputationError: If total capex is zero.
    """
    if total_capex == 0:
        raise MetricComputationError("pi", "total capex is zero")
    return (npv + total_capex) / total_capex


def payback_period(cash_flows: Sequence[float]) -> int:
    """Smallest 1-based year at which cumulative cash flow turns non-negative.

    Returns the horizon length when the outlay is never recovered.
    """
    horizon = max(len(cash_flows) - 1, 1)
    cumulative = 0.0
    for year, cf in enumerate(cash_flows):
        cumulative += cf
        if cumulative >= 0:
            return max(year, 1)
    return horizon


def compute_final_metrics(
    sales: dict[str, Any],
    capex: dict[str, Any],
    opex: dict[str, Any],
    taxes: dict[str, Any],
    discount_rate: float = DEFAULT_DISCOUNT_RATE,
) -> dict[str, Any]:
    """Derive npv, irr, pi and payback_period from upstream stage outputs."""
    total_capex = float(capex.get("total_capex", 0.0))
    cash_flows = build_cash_flows(
        total_capex,
        sales.get("revenue_profile", []),
        opex.get("opex_profile", []),
        taxes.get("tax_profile", []),
    )

    npv = net_present_value(cash_flows, discount_rate)
    irr = solve_irr(cash_flows)

    return {
        "npv": npv,
        "irr": irr.rate,
        "irr_converged": irr.converged,
        "pi": profitability_index(npv, total_capex),
        "payback_period": payback_period(cash_flows),
        "discount_rate": discount_rate,
    }
