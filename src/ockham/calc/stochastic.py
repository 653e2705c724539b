"""Monte Carlo helpers: parameter perturbation and distribution statistics."""

from __future__ import annotations

import math
import random
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Any, Protocol, runtime_checkable

from ockham.models import DistributionStats

DEFAULT_NOISE_AMPLITUDE = 0.10

STOCHASTIC_GROUPS: tuple[str, ...] = ("engineering", "production", "sales", "capex", "opex")
"""Parameter groups perturbed on each pass. Tax is held fixed."""


@runtime_checkable
class NoiseDistribution(Protocol):
    """Source of multiplicative factors centered at 1.0."""

    def sample(self, rng: random.Random) -> float: ...


@dataclass(frozen=True)
class UniformNoise:
    """Factor drawn uniformly from [1 - amplitude, 1 + amplitude]."""

    amplitude: float = DEFAULT_NOISE_AMPLITUDE

    def sample(self, rng: random.Random) -> float:
        return rng.uniform(1.0 - self.amplitude, 1.0 + self.amplitude)


@dataclass(frozen=True)
class TriangularNoise:
    """Factor from a triangular distribution with mode 1.0."""

    amplitude: float = DEFAULT_NOISE_AMPLITUDE

    def sample(self, rng: random.Random) -> float:
        return rng.triangular(1.0 - self.amplitude, 1.0 + self.amplitude, 1.0)


NOISE_FAMILIES: dict[str, type[UniformNoise] | type[TriangularNoise]] = {
    "uniform": UniformNoise,
    "triangular": TriangularNoise,
}


def make_noise(family: str, amplitude: float = DEFAULT_NOISE_AMPLITUDE) -> NoiseDistribution:
    """Build a noise distribution by family name.

    Raises:
        ValueError: If the family is unknown.
    """
    try:
        return NOISE_FAMILIES[family](amplitude)
    except KeyError:
        raise ValueError(
            f"Unknown noise family '{family}', expected one of {sorted(NOISE_FAMILIES)}"
        ) from None


def perturb(value: Any, noise: NoiseDistribution, rng: random.Random) -> Any:
    """Scale every numeric leaf of ``value`` by an independent noise factor.

    Booleans and non-numeric leaves are returned unchanged.
    """
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return value * noise.sample(rng)
    if isinstance(value, dict):
        return {key: perturb(item, noise, rng) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [perturb(item, noise, rng) for item in value]
    return value


def compute_distribution_stats(values: Sequence[float]) -> DistributionStats:
    """Summarize a metric sample.

    Uses population variance and nearest-rank percentiles. The mean is
    clamped into [min, max] to absorb floating-point summation error.

    Raises:
        ValueError: If ``values`` is empty.
    """
    if not values:
        raise ValueError("Cannot compute statistics of an empty sample")

    ordered = sorted(float(v) for v in values)
    n = len(ordered)
    lowest, highest = ordered[0], ordered[-1]
    mean = min(max(math.fsum(ordered) / n, lowest), highest)
    variance = math.fsum((v - mean) ** 2 for v in ordered) / n

    return DistributionStats(
        mean=mean,
        median=ordered[n // 2],
        variance=variance,
        std_dev=math.sqrt(variance),
        min=lowest,
        max=highest,
        p10=ordered[n * 10 // 100],
        p50=ordered[n * 50 // 100],
        p90=ordered[n * 90 // 100],
        distribution=ordered,
    )
