"""Repositories for calculation records and cases."""

from ockham.persistence.repositories.calculations import (
    CalculationNotFoundError,
    CalculationsRepository,
    InMemoryCalculationsRepository,
    SqlCalculationsRepository,
)
from ockham.persistence.repositories.cases import (
    CaseNotFoundError,
    CasesRepository,
    InMemoryCasesRepository,
    SqlCasesRepository,
)

__all__ = [
    "CalculationNotFoundError",
    "CalculationsRepository",
    "CaseNotFoundError",
    "CasesRepository",
    "InMemoryCalculationsRepository",
    "InMemoryCasesRepository",
    "SqlCalculationsRepository",
    "SqlCasesRepository",
]
