"""Durable storage for calculation records and cases."""

from ockham.persistence.db import (
    DatabaseConfigError,
    create_db_engine,
    get_engine,
    is_database_configured,
    reset_engine,
)
from ockham.persistence.repositories import CalculationNotFoundError, CaseNotFoundError
from ockham.persistence.schema import create_schema, drop_schema
from ockham.persistence.unit_of_work import (
    InMemoryRepositoryProvider,
    PersistenceError,
    Repositories,
    RepositoryProvider,
    SqlRepositoryProvider,
)

__all__ = [
    "CalculationNotFoundError",
    "CaseNotFoundError",
    "DatabaseConfigError",
    "InMemoryRepositoryProvider",
    "PersistenceError",
    "Repositories",
    "RepositoryProvider",
    "SqlRepositoryProvider",
    "create_db_engine",
    "create_schema",
    "drop_schema",
    "get_engine",
    "is_database_configured",
    "reset_engine",
]
