"""Canonical hashing for calculation inputs.

This package provides:
- DataCanonicalizer: Stable, order-independent text form of nested data
- FingerprintGenerator: SHA-256 fingerprints of calculation inputs
"""

from ockham.hashing.canonical import CanonicalizationError, DataCanonicalizer
from ockham.hashing.fingerprint import FingerprintGenerator

__all__ = [
    "CanonicalizationError",
    "DataCanonicalizer",
    "FingerprintGenerator",
]
