"""Calculation pipeline engine.

Runs the six ordered stages once (deterministic mode) or many times under
parameter perturbation (stochastic mode) and aggregates the stochastic
samples into distribution statistics.
"""

from __future__ import annotations

import logging
import random
import time
from collections.abc import Callable, Mapping
from types import MappingProxyType
from typing import Any

from ockham.calc.metrics import DEFAULT_DISCOUNT_RATE
from ockham.calc.stages import REFERENCE_STAGES, StageOutput, StageSet
from ockham.calc.stochastic import (
    STOCHASTIC_GROUPS,
    NoiseDistribution,
    UniformNoise,
    compute_distribution_stats,
    perturb,
)
from ockham.hashing import FingerprintGenerator
from ockham.models import (
    KEY_METRICS,
    CalculationInput,
    CalculationMode,
    CalculationResult,
)
from ockham.observability.tracing import traced_span

logger = logging.getLogger(__name__)

ProgressSink = Callable[[int, str], None]
"""Receives (percentage, message) as the pipeline advances."""

CancelCheck = Callable[[], bool]
"""Polled between stages and at stochastic progress points."""

PROGRESS_REPORT_FRACTION = 20
"""Stochastic progress is reported every 1/20th of the iterations."""


class CalculationCancelledError(Exception):
    """Raised when a cancel check asks a running calculation to stop."""

    def __init__(self, reason: str = "Calculation cancelled") -> None:
        self.reason = reason
        super().__init__(reason)


def _report(progress: ProgressSink | None, percentage: int, message: str) -> None:
    if progress is not None:
        progress(percentage, message)


def _check_cancelled(cancel_check: CancelCheck | None) -> None:
    if cancel_check is not None and cancel_check():
        raise CalculationCancelledError()


class PipelineEngine:
    """Runs the calculation pipeline.

    Stages, discount rate, noise distribution and random generator are all
    injectable. A seeded ``random.Random`` makes stochastic runs repeatable.
    """

    def __init__(
        self,
        stages: StageSet | None = None,
        fingerprints: FingerprintGenerator | None = None,
        discount_rate: float = DEFAULT_DISCOUNT_RATE,
        noise: NoiseDistribution | None = None,
        rng: random.Random | None = None,
    ) -> None:
        self._stages = stages or REFERENCE_STAGES
        self._fingerprints = fingerprints or FingerprintGenerator()
        self._discount_rate = discount_rate
        self._noise = noise or UniformNoise()
        self._rng = rng or random.Random()

    @property
    def discount_rate(self) -> float:
        return self._discount_rate

    def run(
        self,
        calc_input: CalculationInput,
        progress: ProgressSink | None = None,
        cancel_check: CancelCheck | None = None,
    ) -> CalculationResult:
        """Run the pipeline in the mode the input asks for."""
        if calc_input.mode == CalculationMode.STOCHASTIC:
            return self.run_stochastic(calc_input, progress, cancel_check)
        return self.run_deterministic(calc_input, progress, cancel_check)

    def run_deterministic(
        self,
        calc_input: CalculationInput,
        progress: ProgressSink | None = None,
        cancel_check: CancelCheck | None = None,
    ) -> CalculationResult:
        """Run every stage once and return all stage outputs."""
        fingerprint = self._fingerprints.generate(calc_input)
        started = time.perf_counter()

        logger.info(
            "Starting deterministic calculation",
            extra={"case_id": calc_input.case_id, "fingerprint": fingerprint[:16]},
        )

        outputs = self._run_pass(
            self._parameter_groups(calc_input), progress, cancel_check, traced=True
        )

        elapsed = time.perf_counter() - started
        logger.info(
            "Deterministic calculation finished in %.3fs",
            elapsed,
            extra={"case_id": calc_input.case_id, "fingerprint": fingerprint[:16]},
        )

        return CalculationResult(
            fingerprint=fingerprint,
            engineering_results=outputs["engineering"],
            production_results=outputs["production"],
            sales_results=outputs["sales"],
            capex_results=outputs["capex"],
            opex_results=outputs["opex"],
            tax_results=outputs["tax"],
            final_metrics=outputs["final_metrics"],
            iterations_completed=1,
            execution_time_seconds=elapsed,
        )

    def run_stochastic(
        self,
        calc_input: CalculationInput,
        progress: ProgressSink | None = None,
        cancel_check: CancelCheck | None = None,
    ) -> CalculationResult:
        """Run ``iterations`` perturbed passes and summarize the key metrics.

        Stage intermediates of each pass are discarded. The reported final
        metrics are the per-metric means.

        Raises:
            ValueError: If the input carries no iteration count.
            CalculationCancelledError: If ``cancel_check`` returns True at a
                progress point.
        """
        iterations = calc_input.iterations
        if not iterations:
            raise ValueError("Stochastic calculation requires a positive iteration count")

        fingerprint = self._fingerprints.generate(calc_input)
        started = time.perf_counter()
        base_groups = self._parameter_groups(calc_input)
        samples: dict[str, list[float]] = {name: [] for name in KEY_METRICS}
        unconverged_irr = 0
        report_every = max(1, iterations // PROGRESS_REPORT_FRACTION)

        logger.info(
            "Starting stochastic calculation with %d iterations",
            iterations,
            extra={"case_id": calc_input.case_id, "fingerprint": fingerprint[:16]},
        )

        with traced_span(
            "stochastic_run",
            {"ockham.case_id": calc_input.case_id, "ockham.iterations": iterations},
        ):
            for i in range(1, iterations + 1):
                groups = self._perturb_groups(base_groups)
                metrics = self._run_pass(groups, None, None, traced=False)["final_metrics"]

                for name in KEY_METRICS:
                    samples[name].append(float(metrics.get(name) or 0.0))
                if metrics.get("irr_converged") is False:
                    unconverged_irr += 1

                if i % report_every == 0 or i == iterations:
                    _check_cancelled(cancel_check)
                    _report(progress, i * 100 // iterations, f"Completed iterations: {i}/{iterations}")

        distributions = {name: compute_distribution_stats(samples[name]) for name in KEY_METRICS}
        final_metrics: dict[str, Any] = {name: distributions[name].mean for name in KEY_METRICS}
        final_metrics["discount_rate"] = self._discount_rate
        final_metrics["irr_unconverged_iterations"] = unconverged_irr

        if unconverged_irr:
            logger.warning(
                "IRR did not converge in %d of %d iterations",
                unconverged_irr,
                iterations,
                extra={"case_id": calc_input.case_id, "fingerprint": fingerprint[:16]},
            )

        elapsed = time.perf_counter() - started
        logger.info(
            "Stochastic calculation finished in %.3fs",
            elapsed,
            extra={"case_id": calc_input.case_id, "fingerprint": fingerprint[:16]},
        )

        return CalculationResult(
            fingerprint=fingerprint,
            final_metrics=final_metrics,
            distributions=distributions,
            iterations_completed=iterations,
            execution_time_seconds=elapsed,
        )

    @staticmethod
    def _parameter_groups(calc_input: CalculationInput) -> dict[str, dict[str, Any]]:
        return {
            "engineering": calc_input.engineering,
            "production": calc_input.production,
            "sales": calc_input.sales,
            "capex": calc_input.capex,
            "opex": calc_input.opex,
            "tax": calc_input.tax,
        }

    def _perturb_groups(self, groups: dict[str, dict[str, Any]]) -> dict[str, dict[str, Any]]:
        return {
            name: perturb(params, self._noise, self._rng) if name in STOCHASTIC_GROUPS else params
            for name, params in groups.items()
        }

    def _run_pass(
        self,
        groups: Mapping[str, Mapping[str, Any]],
        progress: ProgressSink | None,
        cancel_check: CancelCheck | None,
        traced: bool,
    ) -> dict[str, StageOutput]:
        stages = self._stages

        def step(name: str, func: Callable[..., StageOutput], *args: Any, **kwargs: Any) -> StageOutput:
            _check_cancelled(cancel_check)
            if not traced:
                return func(*args, **kwargs)
            with traced_span(f"stage.{name}"):
                return func(*args, **kwargs)

        def frozen(output: StageOutput) -> Mapping[str, Any]:
            return MappingProxyType(output)

        _report(progress, 0, "Starting engineering calculations")
        engineering = step("engineering", stages.engineering, groups["engineering"])
        _report(progress, 25, "Engineering calculations completed")

        production = step(
            "production", stages.production, groups["production"], frozen(engineering)
        )
        _report(progress, 40, "Production profile completed")

        sales = step("sales", stages.sales, groups["sales"], frozen(production))
        _report(progress, 55, "Sales calculations completed")

        capex = step("capex", stages.capex, groups["capex"], frozen(engineering))
        opex = step("opex", stages.opex, groups["opex"], frozen(production))
        _report(progress, 70, "Cost calculations completed")

        tax = step("tax", stages.tax, groups["tax"], frozen(sales), frozen(capex), frozen(opex))
        _report(progress, 85, "Tax calculations completed")

        final_metrics = step(
            "final_metrics",
            stages.final_metrics,
            frozen(sales),
            frozen(capex),
            frozen(opex),
            frozen(tax),
            discount_rate=self._discount_rate,
        )
        _report(progress, 100, "Calculation completed")

        return {
            "engineering": engineering,
            "production": production,
            "sales": sales,
            "capex": capex,
            "opex": opex,
            "tax": tax,
            "final_metrics": final_metrics,
        }
