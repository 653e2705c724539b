"""Fingerprints of calculation inputs.

The fingerprint covers exactly the identity-bearing fields of an input:
case_id, mode, the six parameter groups and the iteration count.
Metadata is excluded so that annotating a request never defeats
deduplication.
"""

from __future__ import annotations

import logging
import re
from typing import Any

from ockham.hashing.canonical import DataCanonicalizer
from ockham.models.calculation import CalculationInput

logger = logging.getLogger(__name__)

SHORT_FORM_LENGTH = 16

_FINGERPRINT_PATTERN = re.compile(r"[0-9a-f]{64}")


class FingerprintGenerator:
    """Computes SHA-256 fingerprints over canonicalized inputs."""

    def __init__(self, canonicalizer: DataCanonicalizer | None = None) -> None:
        self._canonicalizer = canonicalizer or DataCanonicalizer()

    @staticmethod
    def hashable_fields(calc_input: CalculationInput) -> dict[str, Any]:
        """Build the structure that is fingerprinted."""
        return {
            "case_id": calc_input.case_id,
            "mode": calc_input.mode.value,
            "engineering": calc_input.engineering,
            "production": calc_input.production,
            "sales": calc_input.sales,
            "capex": calc_input.capex,
            "opex": calc_input.opex,
            "tax": calc_input.tax,
            "iterations": calc_input.iterations,
        }

    def generate(self, calc_input: CalculationInput) -> str:
        """Return the 64-character fingerprint of an input."""
        logger.debug(
            "Generating fingerprint",
            extra={"case_id": calc_input.case_id, "mode": calc_input.mode.value},
        )
        return self._canonicalizer.generate_hash(self.hashable_fields(calc_input))

    def short_form(self, value: CalculationInput | str) -> str:
        """Return the first 16 hex characters, for display only.

        Not collision-safe; never use it as a lookup key.
        """
        fingerprint = value if isinstance(value, str) else self.generate(value)
        return fingerprint[:SHORT_FORM_LENGTH]

    def are_inputs_equal(self, left: CalculationInput, right: CalculationInput) -> bool:
        return self.generate(left) == self.generate(right)

    @staticmethod
    def is_valid(fingerprint: str) -> bool:
        """Check for exactly 64 lowercase hex characters."""
        return bool(_FINGERPRINT_PATTERN.fullmatch(fingerprint))
