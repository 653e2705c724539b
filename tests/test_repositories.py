"""Tests for the calculation and case repositories on both backends."""

from __future__ import annotations

import math
import uuid
from datetime import UTC, datetime, timedelta, timezone

import pytest
from sqlalchemy import Engine

from ockham.models import (
    CalculationMode,
    CalculationRecord,
    CalculationStatus,
    CaseRecord,
    DistributionStats,
)
from ockham.persistence import (
    CalculationNotFoundError,
    CaseNotFoundError,
    InMemoryRepositoryProvider,
    PersistenceError,
    RepositoryProvider,
    SqlRepositoryProvider,
    drop_schema,
)
from ockham.persistence.repositories.calculations import json_safe, to_utc
from ockham.persistence.schema import PROGRESS_MESSAGE_LENGTH
from tests.fixtures.clock import FIXED_NOW


def _record(**overrides: object) -> CalculationRecord:
    data: dict[str, object] = {
        "id": str(uuid.uuid4()),
        "case_id": "case-1",
        "fingerprint": "f" * 64,
        "mode": CalculationMode.STOCHASTIC,
        "input_params": {"case_id": "case-1", "mode": "stochastic", "iterations": 100},
        "iterations_total": 100,
    }
    data.update(overrides)
    return CalculationRecord.model_validate(data)


class TestCalculationsRepository:
    """CRUD and queries shared by both implementations."""

    def test_create_and_get(self, provider: RepositoryProvider) -> None:
        record = _record()

        with provider.transaction() as repos:
            repos.calculations.create(record)
        with provider.transaction() as repos:
            loaded = repos.calculations.get(record.id, for_update=True)

        assert loaded is not None
        assert loaded.status == CalculationStatus.PENDING
        assert loaded.mode == CalculationMode.STOCHASTIC
        assert loaded.input_params["iterations"] == 100
        assert loaded.created_at is not None
        assert loaded.created_at.tzinfo is not None

    def test_get_missing_is_none(self, provider: RepositoryProvider) -> None:
        with provider.transaction() as repos:
            assert repos.calculations.get("missing") is None

    def test_update_fields(self, provider: RepositoryProvider) -> None:
        record = _record()
        with provider.transaction() as repos:
            repos.calculations.create(record)

            updated = repos.calculations.update(
                record.id,
                status=CalculationStatus.PROCESSING,
                progress_percentage=40,
                progress_message="Production profile completed",
                started_at=FIXED_NOW,
            )

        assert updated.status == CalculationStatus.PROCESSING
        assert updated.progress_percentage == 40
        assert updated.started_at == FIXED_NOW
        assert updated.updated_at is not None

    def test_update_stores_distributions(self, provider: RepositoryProvider) -> None:
        record = _record()
        stats = DistributionStats(
            mean=1.0, median=1.0, variance=0.0, std_dev=0.0,
            min=1.0, max=1.0, p10=1.0, p50=1.0, p90=1.0, distribution=[1.0],
        )
        with provider.transaction() as repos:
            repos.calculations.create(record)
            repos.calculations.update(record.id, distributions={"npv": stats})
        with provider.transaction() as repos:
            loaded = repos.calculations.get(record.id)

        assert loaded is not None
        assert loaded.distributions is not None
        assert loaded.distributions["npv"]["p90"] == 1.0

    def test_non_finite_floats_stored_as_null(self, provider: RepositoryProvider) -> None:
        record = _record()
        with provider.transaction() as repos:
            repos.calculations.create(record)
            updated = repos.calculations.update(
                record.id, final_metrics={"npv": math.nan, "irr": 0.1}
            )

        assert updated.final_metrics == {"npv": None, "irr": 0.1}

    def test_long_progress_message_clipped_to_column(self, provider: RepositoryProvider) -> None:
        record = _record(progress_message="p" * 300)
        with provider.transaction() as repos:
            created = repos.calculations.create(record)
            updated = repos.calculations.update(
                record.id, progress_message="Error: " + "e" * 1000, error_message="e" * 1000
            )

        assert created.progress_message is not None
        assert len(created.progress_message) == PROGRESS_MESSAGE_LENGTH
        assert updated.progress_message is not None
        assert len(updated.progress_message) == PROGRESS_MESSAGE_LENGTH
        assert updated.progress_message.endswith("...")
        assert updated.error_message == "e" * 1000

    def test_update_unknown_field_rejected(self, provider: RepositoryProvider) -> None:
        record = _record()
        with provider.transaction() as repos:
            repos.calculations.create(record)

            with pytest.raises(ValueError):
                repos.calculations.update(record.id, colour="blue")
            with pytest.raises(ValueError):
                repos.calculations.update(record.id, id="other")

    def test_update_missing_raises(self, provider: RepositoryProvider) -> None:
        with provider.transaction() as repos, pytest.raises(CalculationNotFoundError):
            repos.calculations.update("missing", progress_percentage=1)

    def test_find_completed_ignores_other_states(self, provider: RepositoryProvider) -> None:
        fingerprint = "c" * 64
        with provider.transaction() as repos:
            repos.calculations.create(_record(fingerprint=fingerprint))
            repos.calculations.create(
                _record(fingerprint=fingerprint, status=CalculationStatus.FAILED)
            )
            repos.calculations.create(
                _record(
                    fingerprint=fingerprint,
                    status=CalculationStatus.COMPLETED,
                    completed_at=FIXED_NOW,
                    delete_at=FIXED_NOW + timedelta(days=1),
                )
            )

            assert repos.calculations.find_completed_by_fingerprint(fingerprint) is None

    def test_find_due_for_deletion_ordered(self, provider: RepositoryProvider) -> None:
        later = _record(delete_at=FIXED_NOW + timedelta(days=2))
        sooner = _record(delete_at=FIXED_NOW + timedelta(days=1))
        never = _record()
        with provider.transaction() as repos:
            for record in (later, sooner, never):
                repos.calculations.create(record)

            due = repos.calculations.find_due_for_deletion(FIXED_NOW + timedelta(days=3))
            partial = repos.calculations.find_due_for_deletion(FIXED_NOW + timedelta(days=1))

        assert due == [sooner.id, later.id]
        assert partial == [sooner.id]

    def test_delete(self, provider: RepositoryProvider) -> None:
        record = _record()
        with provider.transaction() as repos:
            repos.calculations.create(record)

            assert repos.calculations.delete(record.id) is True
            assert repos.calculations.delete(record.id) is False
            assert repos.calculations.get(record.id) is None

    def test_list_by_case(self, provider: RepositoryProvider) -> None:
        first = _record(created_at=FIXED_NOW)
        second = _record(created_at=FIXED_NOW + timedelta(seconds=1))
        other = _record(case_id="case-2")
        with provider.transaction() as repos:
            for record in (second, first, other):
                repos.calculations.create(record)

            listed = repos.calculations.list_by_case("case-1")

        assert [r.id for r in listed] == [first.id, second.id]


class TestCasesRepository:
    def test_create_and_get(self, provider: RepositoryProvider) -> None:
        with provider.transaction() as repos:
            repos.cases.create(CaseRecord(id="case-9", name="North", description="pilot"))
        with provider.transaction() as repos:
            case = repos.cases.get("case-9", for_update=True)

        assert case is not None
        assert case.name == "North"
        assert case.current_calculation_id is None

    def test_set_current_missing_case_raises(self, provider: RepositoryProvider) -> None:
        with provider.transaction() as repos, pytest.raises(CaseNotFoundError):
            repos.cases.set_current_calculation("missing", "calc", "f" * 64)

    def test_clear_calculation_reference(self, provider: RepositoryProvider) -> None:
        with provider.transaction() as repos:
            repos.cases.create(CaseRecord(id="case-a"))
            repos.cases.create(CaseRecord(id="case-b"))
            repos.cases.set_current_calculation("case-a", "calc-1", "f" * 64)
            repos.cases.set_current_calculation("case-b", "calc-2", "e" * 64)

            cleared = repos.cases.clear_calculation_reference("calc-1")
            case_a = repos.cases.get("case-a")
            case_b = repos.cases.get("case-b")

        assert cleared == 1
        assert case_a is not None and case_a.current_calculation_id is None
        assert case_b is not None and case_b.current_calculation_id == "calc-2"


class TestTransactions:
    """Commit on success, roll back on error."""

    def test_rollback_on_error(self, provider: RepositoryProvider) -> None:
        record = _record()

        with pytest.raises(RuntimeError), provider.transaction() as repos:
            repos.calculations.create(record)
            raise RuntimeError("boom")

        with provider.transaction() as repos:
            assert repos.calculations.get(record.id) is None

    def test_in_memory_nested_transaction_joins_outer(self) -> None:
        provider = InMemoryRepositoryProvider()
        record = _record()

        with pytest.raises(RuntimeError), provider.transaction() as outer:
            outer.calculations.create(record)
            with provider.transaction() as inner:
                inner.calculations.update(record.id, progress_percentage=5)
            raise RuntimeError("boom")

        with provider.transaction() as repos:
            assert repos.calculations.get(record.id) is None

    def test_sql_errors_wrapped(self, sqlite_engine: Engine) -> None:
        provider = SqlRepositoryProvider(sqlite_engine)
        drop_schema(sqlite_engine)

        with pytest.raises(PersistenceError), provider.transaction() as repos:
            repos.calculations.get("anything")


class TestHelpers:
    def test_to_utc_naive_assumed_utc(self) -> None:
        assert to_utc(datetime(2026, 1, 1, 12)) == datetime(2026, 1, 1, 12, tzinfo=UTC)

    def test_to_utc_converts_offsets(self) -> None:
        plus_two = datetime(2026, 1, 1, 14, tzinfo=timezone(timedelta(hours=2)))

        assert to_utc(plus_two) == datetime(2026, 1, 1, 12, tzinfo=UTC)
        assert to_utc(plus_two).tzinfo == UTC  # type: ignore[union-attr]

    def test_json_safe(self) -> None:
        assert json_safe({"a": [math.inf, 1.5], 2: CalculationStatus.FAILED}) == {
            "a": [None, 1.5],
            "2": "failed",
        }
