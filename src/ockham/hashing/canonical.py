"""Canonical JSON encoding for stable hashing.

Equal data must always produce the same bytes, regardless of mapping
insertion order, float noise below the configured precision, or
surrounding whitespace in strings.

Rules:
- None and booleans pass through
- Floats rounded to FLOAT_PRECISION digits; NaN -> 0.0; +/-inf clamped to
  the largest representable float; -0.0 -> 0.0
- Integers pass through
- Strings stripped of surrounding whitespace
- Sequences normalized element-wise, order preserved
- Mapping keys sorted lexicographically (by string form)
- Models, dataclasses, enums, Decimals, datetimes and plain objects are
  converted to scalars or mappings first
"""

from __future__ import annotations

import dataclasses
import hashlib
import json
import math
import sys
from collections.abc import Mapping
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any

from pydantic import BaseModel

FLOAT_PRECISION = 10


class CanonicalizationError(Exception):
    """Raised when a value has no canonical representation."""

    def __init__(self, value_type: str) -> None:
        self.value_type = value_type
        super().__init__(f"Cannot canonicalize value of type {value_type}")


class DataCanonicalizer:
    """Turns arbitrary nested data into a byte-stable JSON string."""

    def __init__(self, float_precision: int = FLOAT_PRECISION) -> None:
        self._float_precision = float_precision

    def normalize(self, value: Any) -> Any:
        """Recursively normalize a value into JSON-compatible canonical form.

        Raises:
            CanonicalizationError: If the value cannot be represented.
        """
        if value is None or isinstance(value, bool):
            return value
        if isinstance(value, float):
            return self._normalize_float(value)
        if isinstance(value, int):
            return value
        if isinstance(value, str):
            return value.strip()
        if isinstance(value, Enum):
            return self.normalize(value.value)
        if isinstance(value, Decimal):
            return self._normalize_float(float(value))
        if isinstance(value, datetime | date):
            return value.isoformat()
        if isinstance(value, Mapping):
            return self._normalize_mapping(value)
        if isinstance(value, list | tuple):
            return [self.normalize(item) for item in value]
        if isinstance(value, BaseModel):
            return self._normalize_mapping(value.model_dump())
        if dataclasses.is_dataclass(value) and not isinstance(value, type):
            return self._normalize_mapping(dataclasses.asdict(value))
        if hasattr(value, "__dict__"):
            return self._normalize_mapping(vars(value))
        raise CanonicalizationError(type(value).__name__)

    def canonicalize(self, data: Any) -> str:
        """Serialize data to its canonical JSON string."""
        return json.dumps(
            self.normalize(data),
            sort_keys=True,
            separators=(",", ":"),
            ensure_ascii=False,
            allow_nan=False,
        )

    def generate_hash(self, data: Any) -> str:
        """Compute the SHA-256 hex digest of the canonical form."""
        canonical = self.canonicalize(data)
        return hashlib.sha256(canonical.encode("utf-8")).hexdigest()

    def are_equal(self, left: Any, right: Any) -> bool:
        """Check whether two values share the same canonical encoding."""
        return self.canonicalize(left) == self.canonicalize(right)

    def _normalize_float(self, value: float) -> float:
        if math.isnan(value):
            return 0.0
        if math.isinf(value):
            return sys.float_info.max if value > 0 else -sys.float_info.max
        # + 0.0 folds negative zero into positive zero
        return round(value, self._float_precision) + 0.0

    def _normalize_mapping(self, mapping: Mapping[Any, Any]) -> dict[str, Any]:
        items = sorted(mapping.items(), key=lambda item: str(item[0]))
        return {str(key): self.normalize(item) for key, item in items}
