"""Transactional access to the calculation and case repositories.

``transaction()`` yields a Repositories bundle whose operations commit
together on normal exit and roll back if the block raises.
"""

from __future__ import annotations

import copy
import logging
import threading
from collections.abc import Generator
from contextlib import AbstractContextManager, contextmanager
from dataclasses import dataclass
from typing import TYPE_CHECKING, Protocol, runtime_checkable

from sqlalchemy.exc import SQLAlchemyError

from ockham.models import CalculationRecord, CaseRecord
from ockham.persistence.repositories import (
    CalculationsRepository,
    CasesRepository,
    InMemoryCalculationsRepository,
    InMemoryCasesRepository,
    SqlCalculationsRepository,
    SqlCasesRepository,
)

if TYPE_CHECKING:
    from sqlalchemy import Engine

logger = logging.getLogger(__name__)


class PersistenceError(Exception):
    """Raised when the durable store fails."""

    def __init__(self, message: str, cause: Exception | None = None) -> None:
        self.cause = cause
        super().__init__(message)


@dataclass(frozen=True)
class Repositories:
    """Repositories bound to one transaction."""

    calculations: CalculationsRepository
    cases: CasesRepository


@runtime_checkable
class RepositoryProvider(Protocol):
    """Opens transactions over the repositories."""

    def transaction(self) -> AbstractContextManager[Repositories]: ...


class SqlRepositoryProvider:
    """Repositories over a SQLAlchemy engine; one connection per transaction."""

    def __init__(self, engine: Engine) -> None:
        self._engine = engine

    @property
    def engine(self) -> Engine:
        return self._engine

    @contextmanager
    def transaction(self) -> Generator[Repositories, None, None]:
        """Begin a transaction and yield repositories bound to it.

        Raises:
            PersistenceError: If the database raises SQLAlchemyError.
        """
        try:
            with self._engine.connect() as conn, conn.begin():
                yield Repositories(
                    calculations=SqlCalculationsRepository(conn),
                    cases=SqlCasesRepository(conn),
                )
        except SQLAlchemyError as e:
            logger.error("Database transaction failed: %s", e)
            raise PersistenceError(f"Database transaction failed: {e}", e) from e


class InMemoryRepositoryProvider:
    """Process-local repositories for tests and database-less runs.

    Transactions are serialized by a re-entrant lock. A snapshot taken at
    the start of the outermost transaction is restored if it raises.
    """

    def __init__(self) -> None:
        self._calculations: dict[str, CalculationRecord] = {}
        self._cases: dict[str, CaseRecord] = {}
        self._lock = threading.RLock()
        self._depth = 0

    @contextmanager
    def transaction(self) -> Generator[Repositories, None, None]:
        with self._lock:
            outermost = self._depth == 0
            snapshot = (
                (copy.deepcopy(self._calculations), copy.deepcopy(self._cases))
                if outermost
                else None
            )
            self._depth += 1
            try:
                yield Repositories(
                    calculations=InMemoryCalculationsRepository(self._calculations),
                    cases=InMemoryCasesRepository(self._cases),
                )
            except BaseException:
                if snapshot is not None:
                    self._calculations.clear()
                    self._calculations.update(snapshot[0])
                    self._cases.clear()
                    self._cases.update(snapshot[1])
                raise
            finally:
                self._depth -= 1

    def clear(self) -> None:
        """Drop all records (for testing)."""
        with self._lock:
            self._calculations.clear()
            self._cases.clear()
