"""Pipeline stage plug-ins.

A stage is a pure function of its own parameter group and the outputs of
the stages it depends on. Upstream outputs are handed over as read-only
mappings so a stage cannot mutate earlier results.

The reference stages below implement a simple exponential-decline field
model. Real deployments replace them by passing a custom ``StageSet`` to
the pipeline engine.
"""

from __future__ import annotations

import math
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from typing import Any

from ockham.calc.metrics import DEFAULT_DISCOUNT_RATE, compute_final_metrics

StageOutput = dict[str, Any]
Params = Mapping[str, Any]
Upstream = Mapping[str, Any]

DEFAULT_PROJECT_LIFETIME = 20
INITIAL_PRODUCTION_FRACTION = 0.1
DEFAULT_OIL_PRICE = 70.0
DEFAULT_COST_PER_WELL = 5_000_000.0
DEFAULT_FACILITIES_COST = 10_000_000.0
DEFAULT_FIXED_OPEX = 1_000_000.0
DEFAULT_VARIABLE_OPEX_RATE = 10.0
DEFAULT_TAX_RATE = 0.20
DEFAULT_MINING_TAX_RATE = 0.10


class StageComputationError(Exception):
    """Raised when a stage cannot produce its output from the given inputs."""

    def __init__(self, stage: str, reason: str) -> None:
        self.stage = stage
        self.reason = reason
        super().__init__(f"Stage '{stage}' failed: {reason}")


def engineering_stage(params: Params) -> StageOutput:
    return {
        "reserves": params.get("initial_reserves", 0),
        "well_count": params.get("well_count", 0),
        "productivity_index": params.get("productivity_index", 1.0),
        "decline_rate": params.get("decline_rate", 0.1),
    }


def production_stage(params: Params, engineering: Upstream) -> StageOutput:
    """Exponential decline from 10% of reserves over the project lifetime.

    Raises:
        StageComputationError: If the lifetime yields an empty horizon.
    """
    years = int(params.get("project_lifetime", DEFAULT_PROJECT_LIFETIME))
    if years < 1:
        raise StageComputationError("production", f"project_lifetime must be >= 1, got {years}")

    initial = float(engineering["reserves"]) * INITIAL_PRODUCTION_FRACTION
    decline = float(engineering["decline_rate"])
    profile = [initial * math.exp(-decline * (year - 1)) for year in range(1, years + 1)]

    return {
        "production_profile": profile,
        "cumulative_production": math.fsum(profile),
        "peak_production": max(profile),
    }


def sales_stage(params: Params, production: Upstream) -> StageOutput:
    price = float(params.get("oil_price", DEFAULT_OIL_PRICE))
    profile = [volume * price for volume in production["production_profile"]]
    total = math.fsum(profile)
    return {
        "revenue_profile": profile,
        "total_revenue": total,
        "average_annual_revenue": total / len(profile),
    }


def capex_stage(params: Params, engineering: Upstream) -> StageOutput:
    drilling = float(engineering["well_count"]) * float(
        params.get("cost_per_well", DEFAULT_COST_PER_WELL)
    )
    facilities = float(params.get("facilities_cost", DEFAULT_FACILITIES_COST))
    return {
        "drilling_capex": drilling,
        "facilities_capex": facilities,
        "total_capex": drilling + facilities,
    }


def opex_stage(params: Params, production: Upstream) -> StageOutput:
    fixed = float(params.get("fixed_opex", DEFAULT_FIXED_OPEX))
    rate = float(params.get("variable_opex_rate", DEFAULT_VARIABLE_OPEX_RATE))
    profile = [fixed + volume * rate for volume in production["production_profile"]]
    return {"opex_profile": profile, "total_opex": math.fsum(profile)}


def tax_stage(
    params: Params, sales: Upstream, capex: Upstream, opex: Upstream
) -> StageOutput:
    """Income tax on positive operating profit plus a mining tax on revenue."""
    tax_rate = float(params.get("tax_rate", DEFAULT_TAX_RATE))
    mining_rate = float(params.get("mining_tax_rate", DEFAULT_MINING_TAX_RATE))
    opex_profile = opex["opex_profile"]

    profile = []
    for year, revenue in enumerate(sales["revenue_profile"]):
        year_opex = opex_profile[year] if year < len(opex_profile) else 0.0
        income_tax = max(0.0, (revenue - year_opex) * tax_rate)
        profile.append(income_tax + revenue * mining_rate)

    return {"tax_profile": profile, "total_tax": math.fsum(profile)}


def final_metrics_stage(
    sales: Upstream,
    capex: Upstream,
    opex: Upstream,
    taxes: Upstream,
    discount_rate: float = DEFAULT_DISCOUNT_RATE,
) -> StageOutput:
    return compute_final_metrics(
        dict(sales), dict(capex), dict(opex), dict(taxes), discount_rate=discount_rate
    )


@dataclass(frozen=True)
class StageSet:
    """The six stage callables run by the pipeline engine, in order."""

    engineering: Callable[[Params], StageOutput] = engineering_stage
    production: Callable[[Params, Upstream], StageOutput] = production_stage
    sales: Callable[[Params, Upstream], StageOutput] = sales_stage
    capex: Callable[[Params, Upstream], StageOutput] = capex_stage
    opex: Callable[[Params, Upstream], StageOutput] = opex_stage
    tax: Callable[[Params, Upstream, Upstream, Upstream], StageOutput] = tax_stage
    final_metrics: Callable[..., StageOutput] = final_metrics_stage


REFERENCE_STAGES = StageSet()
