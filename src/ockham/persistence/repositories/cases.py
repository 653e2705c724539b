"""Cases repository for SQL persistence and in-memory fallback."""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

from sqlalchemy import insert, select, update

from ockham.models import CaseRecord
from ockham.persistence.repositories.calculations import to_utc
from ockham.persistence.schema import cases

if TYPE_CHECKING:
    from sqlalchemy import Connection, Row

logger = logging.getLogger(__name__)


class CaseNotFoundError(Exception):
    """Raised when a case does not exist."""

    def __init__(self, case_id: str) -> None:
        self.case_id = case_id
        super().__init__(f"Case not found: {case_id}")


@runtime_checkable
class CasesRepository(Protocol):
    """Persistence operations on cases."""

    def create(self, case: CaseRecord) -> CaseRecord: ...

    def get(self, case_id: str, for_update: bool = False) -> CaseRecord | None: ...

    def set_current_calculation(
        self, case_id: str, calculation_id: str | None, fingerprint: str | None
    ) -> CaseRecord: ...

    def clear_calculation_reference(self, calculation_id: str) -> int: ...


class SqlCasesRepository:
    """SQLAlchemy Core repository for cases.

    Args:
        conn: SQLAlchemy connection (must be in a transaction).
    """

    def __init__(self, conn: Connection) -> None:
        self._conn = conn

    def create(self, case: CaseRecord) -> CaseRecord:
        now = datetime.now(UTC)
        case = case.model_copy(
            update={"created_at": case.created_at or now, "updated_at": case.updated_at or now}
        )
        self._conn.execute(insert(cases).values(**case.model_dump()))
        return case

    def get(self, case_id: str, for_update: bool = False) -> CaseRecord | None:
        """Load a case, optionally locking its row until the transaction ends."""
        stmt = select(cases).where(cases.c.id == case_id)
        if for_update:
            stmt = stmt.with_for_update()
        row = self._conn.execute(stmt).fetchone()
        if row is None:
            return None
        return self._row_to_case(row)

    def set_current_calculation(
        self, case_id: str, calculation_id: str | None, fingerprint: str | None
    ) -> CaseRecord:
        """Repoint the case at a calculation.

        Raises:
            CaseNotFoundError: If the case does not exist.
        """
        result = self._conn.execute(
            update(cases)
            .where(cases.c.id == case_id)
            .values(
                current_calculation_id=calculation_id,
                current_calculation_fingerprint=fingerprint,
                updated_at=datetime.now(UTC),
            )
        )
        if result.rowcount == 0:
            raise CaseNotFoundError(case_id)
        case = self.get(case_id)
        if case is None:
            raise CaseNotFoundError(case_id)
        return case

    def clear_calculation_reference(self, calculation_id: str) -> int:
        """Null out any case pointer to a calculation that is being deleted."""
        result = self._conn.execute(
            update(cases)
            .where(cases.c.current_calculation_id == calculation_id)
            .values(
                current_calculation_id=None,
                current_calculation_fingerprint=None,
                updated_at=datetime.now(UTC),
            )
        )
        return result.rowcount

    @staticmethod
    def _row_to_case(row: Row[Any]) -> CaseRecord:
        data = dict(row._mapping)
        data["created_at"] = to_utc(data.get("created_at"))
        data["updated_at"] = to_utc(data.get("updated_at"))
        return CaseRecord.model_validate(data)


class InMemoryCasesRepository:
    """In-memory cases repository over a shared dict."""

    def __init__(self, store: dict[str, CaseRecord]) -> None:
        self._store = store

    def create(self, case: CaseRecord) -> CaseRecord:
        if case.id in self._store:
            raise ValueError(f"Case already exists: {case.id}")
        now = datetime.now(UTC)
        case = case.model_copy(
            update={"created_at": case.created_at or now, "updated_at": case.updated_at or now}
        )
        self._store[case.id] = case
        return case.model_copy()

    def get(self, case_id: str, for_update: bool = False) -> CaseRecord | None:
        case = self._store.get(case_id)
        return case.model_copy() if case is not None else None

    def set_current_calculation(
        self, case_id: str, calculation_id: str | None, fingerprint: str | None
    ) -> CaseRecord:
        case = self._store.get(case_id)
        if case is None:
            raise CaseNotFoundError(case_id)
        case = case.model_copy(
            update={
                "current_calculation_id": calculation_id,
                "current_calculation_fingerprint": fingerprint,
                "updated_at": datetime.now(UTC),
            }
        )
        self._store[case_id] = case
        return case.model_copy()

    def clear_calculation_reference(self, calculation_id: str) -> int:
        cleared = 0
        for case_id, case in list(self._store.items()):
            if case.current_calculation_id == calculation_id:
                self._store[case_id] = case.model_copy(
                    update={
                        "current_calculation_id": None,
                        "current_calculation_fingerprint": None,
                        "updated_at": datetime.now(UTC),
                    }
                )
                cleared += 1
        return cleared
