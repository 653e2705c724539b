"""Calculations repository for SQL persistence and in-memory fallback.

Both implementations expose the same operations and return
CalculationRecord copies; callers never hold references into the store.
"""

from __future__ import annotations

import logging
import math
from collections.abc import Iterable
from datetime import UTC, datetime
from enum import Enum
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

from pydantic import BaseModel
from sqlalchemy import delete, insert, select, update

from ockham.models import CalculationRecord, CalculationStatus
from ockham.persistence.schema import PROGRESS_MESSAGE_LENGTH, calculations

if TYPE_CHECKING:
    from sqlalchemy import Connection, Row

logger = logging.getLogger(__name__)

_UPDATABLE_FIELDS = frozenset(CalculationRecord.model_fields) - {"id", "created_at"}


class CalculationNotFoundError(Exception):
    """Raised when a calculation record does not exist."""

    def __init__(self, calculation_id: str) -> None:
        self.calculation_id = calculation_id
        super().__init__(f"Calculation not found: {calculation_id}")


def to_utc(value: datetime | None) -> datetime | None:
    """Attach UTC to naive datetimes and convert aware ones to UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def json_safe(value: Any) -> Any:
    """Make a value storable in a JSON column.

    Non-finite floats become None; models and enums are dumped.
    """
    if isinstance(value, BaseModel):
        return json_safe(value.model_dump(mode="python"))
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, float):
        return value if math.isfinite(value) else None
    if isinstance(value, dict):
        return {str(k): json_safe(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [json_safe(v) for v in value]
    return value


def _check_fields(fields: Iterable[str]) -> None:
    unknown = set(fields) - _UPDATABLE_FIELDS
    if unknown:
        raise ValueError(f"Unknown or read-only calculation fields: {sorted(unknown)}")


def _clip_fields(fields: dict[str, Any]) -> dict[str, Any]:
    """Shorten progress_message to fit its column."""
    message = fields.get("progress_message")
    if isinstance(message, str) and len(message) > PROGRESS_MESSAGE_LENGTH:
        fields = {**fields, "progress_message": message[: PROGRESS_MESSAGE_LENGTH - 3] + "..."}
    return fields


def _column_value(value: Any) -> Any:
    if isinstance(value, datetime):
        return to_utc(value)
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, (dict, list, tuple, BaseModel, float)):
        return json_safe(value)
    return value


@runtime_checkable
class CalculationsRepository(Protocol):
    """Persistence operations on calculation records."""

    def create(self, record: CalculationRecord) -> CalculationRecord: ...

    def get(self, calculation_id: str, for_update: bool = False) -> CalculationRecord | None: ...

    def update(self, calculation_id: str, **fields: Any) -> CalculationRecord: ...

    def find_completed_by_fingerprint(self, fingerprint: str) -> CalculationRecord | None: ...

    def find_due_for_deletion(self, now: datetime) -> list[str]: ...

    def delete(self, calculation_id: str) -> bool: ...

    def list_by_case(self, case_id: str) -> list[CalculationRecord]: ...


class SqlCalculationsRepository:
    """SQLAlchemy Core repository for calculation records.

    Args:
        conn: SQLAlchemy connection (must be in a transaction).
    """

    def __init__(self, conn: Connection) -> None:
        self._conn = conn

    def create(self, record: CalculationRecord) -> CalculationRecord:
        now = datetime.now(UTC)
        record = record.model_copy(
            update={
                "created_at": record.created_at or now,
                "updated_at": record.updated_at or now,
                **_clip_fields({"progress_message": record.progress_message}),
            }
        )
        row = {name: _column_value(getattr(record, name)) for name in CalculationRecord.model_fields}
        self._conn.execute(insert(calculations).values(**row))
        logger.debug("Created calculation %s", record.id, extra={"case_id": record.case_id})
        return record

    def get(self, calculation_id: str, for_update: bool = False) -> CalculationRecord | None:
        stmt = select(calculations).where(calculations.c.id == calculation_id)
        if for_update:
            stmt = stmt.with_for_update()
        row = self._conn.execute(stmt).fetchone()
        if row is None:
            return None
        return self._row_to_record(row)

    def update(self, calculation_id: str, **fields: Any) -> CalculationRecord:
        """Update the given fields and bump updated_at.

        Raises:
            CalculationNotFoundError: If no record has this id.
            ValueError: If a field name is unknown or read-only.
        """
        _check_fields(fields)
        fields = _clip_fields(fields)
        values = {name: _column_value(value) for name, value in fields.items()}
        values.setdefault("updated_at", datetime.now(UTC))

        result = self._conn.execute(
            update(calculations).where(calculations.c.id == calculation_id).values(**values)
        )
        if result.rowcount == 0:
            raise CalculationNotFoundError(calculation_id)

        record = self.get(calculation_id)
        if record is None:
            raise CalculationNotFoundError(calculation_id)
        return record

    def find_completed_by_fingerprint(self, fingerprint: str) -> CalculationRecord | None:
        """Latest completed record with this fingerprint and no deletion marker."""
        stmt = (
            select(calculations)
            .where(calculations.c.fingerprint == fingerprint)
            .where(calculations.c.status == CalculationStatus.COMPLETED.value)
            .where(calculations.c.delete_at.is_(None))
            .order_by(calculations.c.completed_at.desc())
            .limit(1)
        )
        row = self._conn.execute(stmt).fetchone()
        if row is None:
            return None
        return self._row_to_record(row)

    def find_due_for_deletion(self, now: datetime) -> list[str]:
        stmt = (
            select(calculations.c.id)
            .where(calculations.c.delete_at.is_not(None))
            .where(calculations.c.delete_at <= to_utc(now))
            .order_by(calculations.c.delete_at)
        )
        return [row.id for row in self._conn.execute(stmt)]

    def delete(self, calculation_id: str) -> bool:
        result = self._conn.execute(delete(calculations).where(calculations.c.id == calculation_id))
        return result.rowcount > 0

    def list_by_case(self, case_id: str) -> list[CalculationRecord]:
        stmt = (
            select(calculations)
            .where(calculations.c.case_id == case_id)
            .order_by(calculations.c.created_at)
        )
        return [self._row_to_record(row) for row in self._conn.execute(stmt)]

    @staticmethod
    def _row_to_record(row: Row[Any]) -> CalculationRecord:
        data = dict(row._mapping)
        for name in ("started_at", "completed_at", "failed_at", "detach_at", "delete_at",
                     "created_at", "updated_at"):
            data[name] = to_utc(data.get(name))
        if data.get("input_params") is None:
            data["input_params"] = {}
        return CalculationRecord.model_validate(data)


class InMemoryCalculationsRepository:
    """In-memory calculations repository over a shared dict.

    Transaction isolation is provided by InMemoryRepositoryProvider.
    """

    def __init__(self, store: dict[str, CalculationRecord]) -> None:
        self._store = store

    def create(self, record: CalculationRecord) -> CalculationRecord:
        if record.id in self._store:
            raise ValueError(f"Calculation already exists: {record.id}")
        now = datetime.now(UTC)
        record = record.model_copy(
            deep=True,
            update={
                "created_at": record.created_at or now,
                "updated_at": record.updated_at or now,
                **_clip_fields({"progress_message": record.progress_message}),
            },
        )
        self._store[record.id] = record
        return record.model_copy(deep=True)

    def get(self, calculation_id: str, for_update: bool = False) -> CalculationRecord | None:
        record = self._store.get(calculation_id)
        return record.model_copy(deep=True) if record is not None else None

    def update(self, calculation_id: str, **fields: Any) -> CalculationRecord:
        _check_fields(fields)
        fields = _clip_fields(fields)
        current = self._store.get(calculation_id)
        if current is None:
            raise CalculationNotFoundError(calculation_id)

        data = current.model_dump()
        data.update(
            {
                name: to_utc(value) if isinstance(value, datetime) else json_safe(value)
                for name, value in fields.items()
            }
        )
        if "updated_at" not in fields:
            data["updated_at"] = datetime.now(UTC)
        record = CalculationRecord.model_validate(data)
        self._store[calculation_id] = record
        return record.model_copy(deep=True)

    def find_completed_by_fingerprint(self, fingerprint: str) -> CalculationRecord | None:
        candidates = [
            record
            for record in self._store.values()
            if record.fingerprint == fingerprint
            and record.status == CalculationStatus.COMPLETED
            and record.delete_at is None
        ]
        if not candidates:
            return None
        latest = max(candidates, key=lambda r: r.completed_at or datetime.min.replace(tzinfo=UTC))
        return latest.model_copy(deep=True)

    def find_due_for_deletion(self, now: datetime) -> list[str]:
        now = to_utc(now) or datetime.now(UTC)
        due = [
            record
            for record in self._store.values()
            if record.delete_at is not None and record.delete_at <= now
        ]
        due.sort(key=lambda r: r.delete_at or now)
        return [record.id for record in due]

    def delete(self, calculation_id: str) -> bool:
        return self._store.pop(calculation_id, None) is not None

    def list_by_case(self, case_id: str) -> list[CalculationRecord]:
        records = [r for r in self._store.values() if r.case_id == case_id]
        records.sort(key=lambda r: r.created_at or datetime.min.replace(tzinfo=UTC))
        return [r.model_copy(deep=True) for r in records]
