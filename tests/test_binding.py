"""Tests for case binding and the grace-period lifecycle.

Every test runs against both the in-memory and the SQLite-backed provider.
"""

from __future__ import annotations

import uuid
from collections.abc import Callable
from datetime import datetime, timedelta

import pytest

from ockham.hashing import FingerprintGenerator
from ockham.models import (
    CalculationInput,
    CalculationMode,
    CalculationRecord,
    CalculationStatus,
    CaseRecord,
)
from ockham.persistence import CalculationNotFoundError, CaseNotFoundError, RepositoryProvider
from ockham.services import CaseBindingService
from tests.fixtures.clock import FIXED_NOW, FrozenClock

FINGERPRINT_A = "a" * 64
FINGERPRINT_B = "b" * 64


def _completed(
    provider: RepositoryProvider,
    fingerprint: str,
    case_id: str = "case-1",
    completed_at: datetime = FIXED_NOW,
) -> CalculationRecord:
    record = CalculationRecord(
        id=str(uuid.uuid4()),
        case_id=case_id,
        fingerprint=fingerprint,
        mode=CalculationMode.STOCHASTIC,
        status=CalculationStatus.COMPLETED,
        completed_at=completed_at,
        final_metrics={"npv": 1.0, "irr": 0.1, "pi": 1.1, "payback_period": 3},
    )
    with provider.transaction() as repos:
        return repos.calculations.create(record)


def _get(provider: RepositoryProvider, calculation_id: str) -> CalculationRecord | None:
    with provider.transaction() as repos:
        return repos.calculations.get(calculation_id)


def _case(provider: RepositoryProvider, case_id: str = "case-1") -> CaseRecord:
    with provider.transaction() as repos:
        case = repos.cases.get(case_id)
    assert case is not None
    return case


@pytest.mark.usefixtures("case")
class TestBind:
    """Repointing a case at a calculation."""

    def test_first_bind_sets_current(
        self, binding: CaseBindingService, provider: RepositoryProvider
    ) -> None:
        calc = _completed(provider, FINGERPRINT_A)

        binding.bind("case-1", calc.id)

        case = _case(provider)
        assert case.current_calculation_id == calc.id
        assert case.current_calculation_fingerprint == FINGERPRINT_A

    def test_rebind_schedules_previous(
        self, binding: CaseBindingService, provider: RepositoryProvider
    ) -> None:
        calc_a = _completed(provider, FINGERPRINT_A)
        calc_b = _completed(provider, FINGERPRINT_B)

        binding.bind("case-1", calc_a.id)
        binding.bind("case-1", calc_b.id)

        assert _case(provider).current_calculation_id == calc_b.id
        retired = _get(provider, calc_a.id)
        assert retired is not None
        assert retired.detach_at == FIXED_NOW + timedelta(days=7)
        assert retired.delete_at == FIXED_NOW + timedelta(days=37)
        assert retired.detach_at < retired.delete_at
        current = _get(provider, calc_b.id)
        assert current is not None
        assert current.delete_at is None

    def test_rebinding_same_calculation_schedules_nothing(
        self, binding: CaseBindingService, provider: RepositoryProvider
    ) -> None:
        calc = _completed(provider, FINGERPRINT_A)

        binding.bind("case-1", calc.id)
        binding.bind("case-1", calc.id)

        record = _get(provider, calc.id)
        assert record is not None
        assert record.delete_at is None

    def test_rebinding_scheduled_calculation_clears_markers(
        self, binding: CaseBindingService, provider: RepositoryProvider
    ) -> None:
        calc_a = _completed(provider, FINGERPRINT_A)
        calc_b = _completed(provider, FINGERPRINT_B)
        binding.bind("case-1", calc_a.id)
        binding.bind("case-1", calc_b.id)

        binding.bind("case-1", calc_a.id)

        revived = _get(provider, calc_a.id)
        assert revived is not None
        assert revived.detach_at is None
        assert revived.delete_at is None
        displaced = _get(provider, calc_b.id)
        assert displaced is not None
        assert displaced.delete_at is not None

    def test_unknown_case_raises(
        self, binding: CaseBindingService, provider: RepositoryProvider
    ) -> None:
        calc = _completed(provider, FINGERPRINT_A)

        with pytest.raises(CaseNotFoundError):
            binding.bind("missing-case", calc.id)

    def test_unknown_calculation_raises(self, binding: CaseBindingService) -> None:
        with pytest.raises(CalculationNotFoundError):
            binding.bind("case-1", "missing-calc")

    def test_failed_bind_leaves_case_unchanged(
        self, binding: CaseBindingService, provider: RepositoryProvider
    ) -> None:
        calc = _completed(provider, FINGERPRINT_A)
        binding.bind("case-1", calc.id)

        with pytest.raises(CalculationNotFoundError):
            binding.bind("case-1", "missing-calc")

        assert _case(provider).current_calculation_id == calc.id


class TestFindExisting:
    """Deduplication lookup."""

    def test_completed_record_found(
        self,
        binding: CaseBindingService,
        provider: RepositoryProvider,
        make_input: Callable[..., CalculationInput],
    ) -> None:
        calc_input = make_input("stochastic")
        fingerprint = FingerprintGenerator().generate(calc_input)
        calc = _completed(provider, fingerprint)

        found = binding.find_existing(calc_input)

        assert found is not None
        assert found.id == calc.id

    def test_latest_completion_wins(
        self,
        binding: CaseBindingService,
        provider: RepositoryProvider,
        make_input: Callable[..., CalculationInput],
    ) -> None:
        calc_input = make_input("stochastic")
        fingerprint = FingerprintGenerator().generate(calc_input)
        _completed(provider, fingerprint, completed_at=FIXED_NOW - timedelta(hours=1))
        latest = _completed(provider, fingerprint, completed_at=FIXED_NOW)

        found = binding.find_existing(calc_input)

        assert found is not None
        assert found.id == latest.id

    def test_scheduled_record_is_hidden(
        self,
        binding: CaseBindingService,
        provider: RepositoryProvider,
        make_input: Callable[..., CalculationInput],
    ) -> None:
        calc_input = make_input("stochastic")
        calc = _completed(provider, FingerprintGenerator().generate(calc_input))

        binding.schedule_detachment(calc.id)

        assert binding.find_existing(calc_input) is None

    def test_miss_returns_none(
        self, binding: CaseBindingService, make_input: Callable[..., CalculationInput]
    ) -> None:
        assert binding.find_existing(make_input("stochastic")) is None


@pytest.mark.usefixtures("case")
class TestCleanup:
    """Deletion sweep after the grace period."""

    def _retire_a(
        self, binding: CaseBindingService, provider: RepositoryProvider
    ) -> tuple[CalculationRecord, CalculationRecord]:
        calc_a = _completed(provider, FINGERPRINT_A)
        calc_b = _completed(provider, FINGERPRINT_B)
        binding.bind("case-1", calc_a.id)
        binding.bind("case-1", calc_b.id)
        return calc_a, calc_b

    def test_before_delete_at_keeps_record(
        self, binding: CaseBindingService, provider: RepositoryProvider
    ) -> None:
        calc_a, _ = self._retire_a(binding, provider)

        deleted = binding.cleanup_expired(now=FIXED_NOW + timedelta(days=36))

        assert deleted == 0
        assert _get(provider, calc_a.id) is not None

    def test_after_delete_at_removes_record(
        self, binding: CaseBindingService, provider: RepositoryProvider
    ) -> None:
        calc_a, calc_b = self._retire_a(binding, provider)

        deleted = binding.cleanup_expired(now=FIXED_NOW + timedelta(days=37))

        assert deleted == 1
        assert _get(provider, calc_a.id) is None
        assert _get(provider, calc_b.id) is not None
        assert _case(provider).current_calculation_id == calc_b.id

    def test_naive_now_taken_as_utc(
        self, binding: CaseBindingService, provider: RepositoryProvider
    ) -> None:
        calc_a, _ = self._retire_a(binding, provider)
        naive = (FIXED_NOW + timedelta(days=37)).replace(tzinfo=None)

        assert binding.cleanup_expired(now=naive) == 1
        assert _get(provider, calc_a.id) is None

    def test_uses_clock_by_default(
        self,
        binding: CaseBindingService,
        provider: RepositoryProvider,
        clock: FrozenClock,
    ) -> None:
        calc_a, _ = self._retire_a(binding, provider)

        clock.advance(days=40)

        assert binding.cleanup_expired() == 1
        assert _get(provider, calc_a.id) is None

    def test_dry_run_deletes_nothing(
        self, binding: CaseBindingService, provider: RepositoryProvider
    ) -> None:
        calc_a, _ = self._retire_a(binding, provider)

        due = binding.cleanup_expired(now=FIXED_NOW + timedelta(days=60), dry_run=True)

        assert due == 1
        assert _get(provider, calc_a.id) is not None

    def test_cancelled_deletion_survives(
        self, binding: CaseBindingService, provider: RepositoryProvider
    ) -> None:
        calc_a, _ = self._retire_a(binding, provider)

        restored = binding.cancel_deletion(calc_a.id)

        assert restored is not None
        assert restored.detach_at is None
        assert restored.delete_at is None
        assert binding.cleanup_expired(now=FIXED_NOW + timedelta(days=60)) == 0
        assert _get(provider, calc_a.id) is not None

    def test_deleting_current_calculation_clears_case(
        self, binding: CaseBindingService, provider: RepositoryProvider
    ) -> None:
        calc = _completed(provider, FINGERPRINT_A)
        binding.bind("case-1", calc.id)
        binding.schedule_detachment(calc.id)

        assert binding.cleanup_expired(now=FIXED_NOW + timedelta(days=60)) == 1

        case = _case(provider)
        assert case.current_calculation_id is None
        assert case.current_calculation_fingerprint is None


class TestMarkers:
    def test_schedule_missing_returns_none(self, binding: CaseBindingService) -> None:
        assert binding.schedule_detachment("missing") is None

    def test_cancel_missing_returns_none(self, binding: CaseBindingService) -> None:
        assert binding.cancel_deletion("missing") is None

    def test_custom_periods(self, provider: RepositoryProvider, clock: FrozenClock) -> None:
        service = CaseBindingService(provider, grace_period_days=1, delete_after_days=2, clock=clock)
        calc = _completed(provider, FINGERPRINT_A)

        record = service.schedule_detachment(calc.id)

        assert record is not None
        assert record.detach_at == FIXED_NOW + timedelta(days=1)
        assert record.delete_at == FIXED_NOW + timedelta(days=3)

    def test_non_positive_delete_after_rejected(self, provider: RepositoryProvider) -> None:
        with pytest.raises(ValueError):
            CaseBindingService(provider, delete_after_days=0)

    def test_markers_are_utc(self, binding: CaseBindingService, provider: RepositoryProvider) -> None:
        calc = _completed(provider, FINGERPRINT_A)

        record = binding.schedule_detachment(calc.id)

        assert record is not None
        assert record.delete_at is not None
        assert record.delete_at.tzinfo is not None
        assert record.delete_at.utcoffset() == timedelta(0)


@pytest.mark.usefixtures("case")
class TestCaseStats:
    def test_counts(self, binding: CaseBindingService, provider: RepositoryProvider) -> None:
        calc_a = _completed(provider, FINGERPRINT_A)
        calc_b = _completed(provider, FINGERPRINT_B)
        binding.bind("case-1", calc_a.id)
        binding.bind("case-1", calc_b.id)

        stats = binding.case_stats("case-1")

        assert stats == {
            "total": 2,
            "active": 1,
            "completed": 2,
            "scheduled_for_deletion": 1,
        }

    def test_unknown_case_is_empty(self, binding: CaseBindingService) -> None:
        assert binding.case_stats("nobody")["total"] == 0
