"""Execution strategies sharing the CalculationStrategy contract."""

from ockham.strategies.base import CalculationStrategy
from ockham.strategies.interactive import InteractiveStrategy
from ockham.strategies.stochastic import StochasticStrategy

__all__ = ["CalculationStrategy", "InteractiveStrategy", "StochasticStrategy"]
