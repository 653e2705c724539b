"""Wiring of the calculation services from settings.

Backends are chosen by configuration: SQL persistence when a database URL
is set, Redis cache/queue/notifier when a Redis URL is set, in-memory
implementations otherwise.
"""

from __future__ import annotations

import logging
import random
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime

from ockham.cache import CacheStore, InMemoryCacheStore, RedisCacheStore
from ockham.calc import PipelineEngine, make_noise
from ockham.config import CalculationSettings
from ockham.events import InMemoryNotifier, Notifier, RedisNotifier
from ockham.hashing import FingerprintGenerator
from ockham.persistence import (
    InMemoryRepositoryProvider,
    RepositoryProvider,
    SqlRepositoryProvider,
    create_db_engine,
    create_schema,
)
from ockham.pipeline import CalculationJobHandler, CalculationWorker, RetryPolicy
from ockham.queue import InMemoryWorkQueue, RedisWorkQueue, WorkQueue
from ockham.services import CalculationService, CaseBindingService
from ockham.strategies import InteractiveStrategy, StochasticStrategy

logger = logging.getLogger(__name__)


@dataclass
class Services:
    """Fully wired service graph."""

    settings: CalculationSettings
    provider: RepositoryProvider
    cache: CacheStore
    queue: WorkQueue
    notifier: Notifier
    engine: PipelineEngine
    binding: CaseBindingService
    interactive: InteractiveStrategy
    stochastic: StochasticStrategy
    calculations: CalculationService
    handler: CalculationJobHandler
    clock: Callable[[], datetime] | None = None

    def create_worker(self, poll_interval: float = 1.0) -> CalculationWorker:
        return CalculationWorker(
            self.queue,
            self.handler,
            retry_policy=RetryPolicy.from_settings(self.settings),
            poll_interval=poll_interval,
            clock=self.clock,
        )


def build_engine(
    settings: CalculationSettings,
    fingerprints: FingerprintGenerator | None = None,
    seed: int | None = None,
) -> PipelineEngine:
    """Pipeline engine with the configured discount rate and noise policy.

    ``seed`` overrides OCKHAM_NOISE_SEED; with neither, noise is unseeded.
    """
    effective_seed = seed if seed is not None else settings.noise_seed
    return PipelineEngine(
        fingerprints=fingerprints,
        discount_rate=settings.discount_rate,
        noise=make_noise(settings.noise_distribution, settings.noise_amplitude),
        rng=random.Random(effective_seed),
    )


def build_provider(settings: CalculationSettings) -> RepositoryProvider:
    if settings.database_url:
        engine = create_db_engine(settings.database_url)
        create_schema(engine)
        return SqlRepositoryProvider(engine)
    logger.warning("No database configured; calculations are kept in memory only")
    return InMemoryRepositoryProvider()


def build_services(
    settings: CalculationSettings | None = None,
    *,
    provider: RepositoryProvider | None = None,
    cache: CacheStore | None = None,
    queue: WorkQueue | None = None,
    notifier: Notifier | None = None,
    engine: PipelineEngine | None = None,
    clock: Callable[[], datetime] | None = None,
) -> Services:
    """Assemble the services; explicit arguments override configured backends."""
    settings = settings or CalculationSettings.from_env()
    fingerprints = FingerprintGenerator()

    if settings.redis_url and (cache is None or queue is None or notifier is None):
        from redis import Redis

        client = Redis.from_url(settings.redis_url, decode_responses=True)
        cache = cache or RedisCacheStore(client)
        queue = queue or RedisWorkQueue(
            client,
            name=settings.queue_name,
            visibility_timeout_seconds=settings.visibility_timeout_seconds,
        )
        notifier = notifier or RedisNotifier(client)

    provider = provider or build_provider(settings)
    cache = cache or InMemoryCacheStore()
    queue = queue or InMemoryWorkQueue(
        visibility_timeout_seconds=settings.visibility_timeout_seconds
    )
    notifier = notifier or InMemoryNotifier()
    engine = engine or build_engine(settings, fingerprints)

    binding = CaseBindingService(
        provider,
        fingerprints=fingerprints,
        grace_period_days=settings.grace_period_days,
        delete_after_days=settings.delete_after_days,
        clock=clock,
    )
    interactive = InteractiveStrategy(
        engine, cache, fingerprints=fingerprints, ttl_seconds=settings.cache_ttl_seconds
    )
    stochastic = StochasticStrategy(provider, queue, fingerprints=fingerprints)
    handler = CalculationJobHandler(
        provider,
        engine,
        cache,
        notifier,
        binding,
        progress_ttl_seconds=settings.progress_ttl_seconds,
        progress_interval=settings.progress_interval,
        clock=clock,
    )

    return Services(
        settings=settings,
        provider=provider,
        cache=cache,
        queue=queue,
        notifier=notifier,
        engine=engine,
        binding=binding,
        interactive=interactive,
        stochastic=stochastic,
        calculations=CalculationService(provider, binding, interactive, stochastic, cache),
        handler=handler,
        clock=clock,
    )
