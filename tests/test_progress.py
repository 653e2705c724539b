"""Tests for the worker progress sink."""

from __future__ import annotations

import json
import uuid

import pytest

from ockham.cache import InMemoryCacheStore, progress_key
from ockham.events import InMemoryNotifier, ProgressMessage, case_topic
from ockham.models import CalculationMode, CalculationRecord, CalculationStatus
from ockham.persistence import RepositoryProvider
from ockham.services import ProgressReporter, read_progress
from tests.fixtures.clock import FrozenClock


@pytest.fixture
def record(provider: RepositoryProvider) -> CalculationRecord:
    with provider.transaction() as repos:
        return repos.calculations.create(
            CalculationRecord(
                id=str(uuid.uuid4()),
                case_id="case-1",
                fingerprint="f" * 64,
                mode=CalculationMode.STOCHASTIC,
                status=CalculationStatus.PROCESSING,
                iterations_total=100,
            )
        )


@pytest.fixture
def reporter(
    record: CalculationRecord,
    provider: RepositoryProvider,
    cache: InMemoryCacheStore,
    notifier: InMemoryNotifier,
    clock: FrozenClock,
) -> ProgressReporter:
    return ProgressReporter(
        record.id, record.case_id, provider, cache, notifier, ttl_seconds=300, clock=clock
    )


def _durable(provider: RepositoryProvider, calculation_id: str) -> tuple[int, str | None]:
    with provider.transaction() as repos:
        stored = repos.calculations.get(calculation_id)
    assert stored is not None
    return stored.progress_percentage, stored.progress_message


class TestProgressReporter:
    def test_every_report_reaches_cache_and_topic(
        self,
        reporter: ProgressReporter,
        record: CalculationRecord,
        cache: InMemoryCacheStore,
        notifier: InMemoryNotifier,
    ) -> None:
        reporter(3, "Completed iterations: 3/100")

        live = read_progress(cache, record.id)
        assert live is not None
        assert live["percentage"] == 3
        assert live["message"] == "Completed iterations: 3/100"
        messages = notifier.messages(case_topic("case-1"), ProgressMessage.event)
        assert len(messages) == 1
        assert messages[0].percentage == 3  # type: ignore[attr-defined]

    def test_durable_writes_throttled(
        self,
        reporter: ProgressReporter,
        record: CalculationRecord,
        provider: RepositoryProvider,
    ) -> None:
        for pct in (1, 2, 3, 4):
            reporter(pct, f"step {pct}")
        assert reporter.durable_writes == 0
        assert _durable(provider, record.id) == (0, None)

        reporter(5, "step 5")
        assert reporter.durable_writes == 1
        assert _durable(provider, record.id) == (5, "step 5")

        reporter(9, "step 9")
        assert reporter.durable_writes == 1

    def test_completion_always_persisted(
        self,
        reporter: ProgressReporter,
        record: CalculationRecord,
        provider: RepositoryProvider,
    ) -> None:
        reporter(98, "almost")
        reporter(100, "done")

        assert _durable(provider, record.id) == (100, "done")

    def test_percentage_clamped(
        self, reporter: ProgressReporter, record: CalculationRecord, cache: InMemoryCacheStore
    ) -> None:
        reporter(150, "over")

        live = read_progress(cache, record.id)
        assert live is not None
        assert live["percentage"] == 100

    def test_entry_expires(
        self,
        reporter: ProgressReporter,
        record: CalculationRecord,
        cache: InMemoryCacheStore,
        clock: FrozenClock,
    ) -> None:
        reporter(10, "ten")

        clock.advance(seconds=300)

        assert read_progress(cache, record.id) is None

    def test_clear(
        self, reporter: ProgressReporter, record: CalculationRecord, cache: InMemoryCacheStore
    ) -> None:
        reporter(10, "ten")

        reporter.clear()

        assert cache.get(progress_key(record.id)) is None


class TestReadProgress:
    def test_missing(self, cache: InMemoryCacheStore) -> None:
        assert read_progress(cache, "calc-1") is None

    def test_malformed_entry_discarded(self, cache: InMemoryCacheStore) -> None:
        cache.set(progress_key("calc-1"), "{not json", 60)

        assert read_progress(cache, "calc-1") is None

    def test_valid_entry(self, cache: InMemoryCacheStore) -> None:
        cache.set(progress_key("calc-1"), json.dumps({"percentage": 7}), 60)

        assert read_progress(cache, "calc-1") == {"percentage": 7}
