"""Pytest configuration and fixtures for Ockham tests.

Everything runs against in-memory stores or an in-memory SQLite engine;
no network services are required.
"""

from __future__ import annotations

import random
from collections.abc import Callable, Iterator
from typing import TYPE_CHECKING, Any

import pytest

from ockham.app import Services, build_services
from ockham.cache import InMemoryCacheStore
from ockham.calc import PipelineEngine
from ockham.config import CalculationSettings
from ockham.events import InMemoryNotifier
from ockham.models import CalculationInput, CaseRecord
from ockham.persistence import (
    InMemoryRepositoryProvider,
    RepositoryProvider,
    SqlRepositoryProvider,
    create_db_engine,
    create_schema,
)
from ockham.queue import InMemoryWorkQueue
from ockham.services import CaseBindingService
from tests.fixtures.clock import FrozenClock

if TYPE_CHECKING:
    from sqlalchemy import Engine

TEST_SEED = 42
CASE_ID = "case-1"

FIELD_PARAMS: dict[str, dict[str, Any]] = {
    "engineering": {
        "initial_reserves": 1_000_000,
        "well_count": 10,
        "productivity_index": 1.5,
        "decline_rate": 0.15,
    },
    "production": {"project_lifetime": 20},
    "sales": {"oil_price": 70},
    "capex": {"cost_per_well": 5_000_000, "facilities_cost": 10_000_000},
    "opex": {"fixed_opex": 1_000_000, "variable_opex_rate": 10},
    "tax": {"tax_rate": 0.20, "mining_tax_rate": 0.10},
}
"""Reference field: 10 wells, 1M bbl reserves, 20-year life."""

_ENV_VARS = (
    "OCKHAM_DATABASE_URL",
    "OCKHAM_REDIS_URL",
    "OCKHAM_OTEL_ENABLED",
    "OCKHAM_NOISE_SEED",
    "OCKHAM_DISCOUNT_RATE",
)


@pytest.fixture(autouse=True)
def isolated_environment(monkeypatch: pytest.MonkeyPatch) -> None:
    """Keep the developer's OCKHAM_* settings out of every test."""
    for name in _ENV_VARS:
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock()


@pytest.fixture
def field_params() -> dict[str, dict[str, Any]]:
    """A fresh copy of the reference field parameters."""
    return {group: dict(params) for group, params in FIELD_PARAMS.items()}


@pytest.fixture
def make_input(
    field_params: dict[str, dict[str, Any]],
) -> Callable[..., CalculationInput]:
    """Factory for calculation inputs over the reference field.

    Keyword arguments override top-level input fields.
    """

    def _make(mode: str = "deterministic", **overrides: Any) -> CalculationInput:
        data: dict[str, Any] = {"case_id": CASE_ID, "mode": mode, **field_params}
        if mode == "stochastic":
            data["iterations"] = 100
        data.update(overrides)
        return CalculationInput.model_validate(data)

    return _make


@pytest.fixture
def sqlite_engine() -> Iterator[Engine]:
    engine = create_db_engine("sqlite://")
    create_schema(engine)
    yield engine
    engine.dispose()


@pytest.fixture(params=["memory", "sqlite"])
def provider(request: pytest.FixtureRequest) -> RepositoryProvider:
    """Repository provider, run once per backend."""
    if request.param == "memory":
        return InMemoryRepositoryProvider()
    engine = request.getfixturevalue("sqlite_engine")
    return SqlRepositoryProvider(engine)


@pytest.fixture
def memory_provider() -> InMemoryRepositoryProvider:
    return InMemoryRepositoryProvider()


@pytest.fixture
def cache(clock: FrozenClock) -> InMemoryCacheStore:
    return InMemoryCacheStore(clock=clock)


@pytest.fixture
def queue(clock: FrozenClock) -> InMemoryWorkQueue:
    return InMemoryWorkQueue(clock=clock)


@pytest.fixture
def notifier() -> InMemoryNotifier:
    return InMemoryNotifier()


@pytest.fixture
def engine() -> PipelineEngine:
    return PipelineEngine(rng=random.Random(TEST_SEED))


@pytest.fixture
def binding(provider: RepositoryProvider, clock: FrozenClock) -> CaseBindingService:
    return CaseBindingService(provider, clock=clock)


@pytest.fixture
def case(provider: RepositoryProvider) -> CaseRecord:
    with provider.transaction() as repos:
        return repos.cases.create(CaseRecord(id=CASE_ID, name="Field A"))


@pytest.fixture
def settings() -> CalculationSettings:
    return CalculationSettings(retry_backoff_seconds=0)


@pytest.fixture
def services(
    settings: CalculationSettings,
    provider: RepositoryProvider,
    cache: InMemoryCacheStore,
    queue: InMemoryWorkQueue,
    notifier: InMemoryNotifier,
    engine: PipelineEngine,
    clock: FrozenClock,
    case: CaseRecord,
) -> Services:
    """Fully wired services over in-memory transports and a case."""
    return build_services(
        settings,
        provider=provider,
        cache=cache,
        queue=queue,
        notifier=notifier,
        engine=engine,
        clock=clock,
    )
