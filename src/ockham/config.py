"""Runtime settings for the calculation engine.

Environment Variables:
    OCKHAM_DATABASE_URL: SQLAlchemy URL of the durable store (optional)
    OCKHAM_REDIS_URL: Redis URL for cache, progress and queue (optional)
    OCKHAM_LOG_LEVEL: Logging level for the CLI (default: INFO)
    OCKHAM_CACHE_TTL_SECONDS: Interactive result cache TTL (default: 3600)
    OCKHAM_PROGRESS_TTL_SECONDS: Ephemeral progress TTL (default: 300)
    OCKHAM_PROGRESS_INTERVAL: Minimum percentage step between durable
        progress writes (default: 5)
    OCKHAM_QUEUE_NAME: Work queue name (default: calculations)
    OCKHAM_JOB_TIMEOUT_SECONDS: Hard per-attempt timeout (default: 3600)
    OCKHAM_RETRY_ATTEMPTS: Total attempts per calculation (default: 3)
    OCKHAM_RETRY_BACKOFF_SECONDS: Fixed delay between attempts (default: 60)
    OCKHAM_VISIBILITY_TIMEOUT_SECONDS: Redelivery timeout for unacked work
        (default: 3600, never below the job timeout)
    OCKHAM_GRACE_PERIOD_DAYS: Days until a displaced calculation detaches
        (default: 7)
    OCKHAM_DELETE_AFTER_DAYS: Days after detachment until deletion
        (default: 30)
    OCKHAM_DISCOUNT_RATE: NPV discount rate (default: 0.10)
    OCKHAM_NOISE_DISTRIBUTION: "uniform" or "triangular" (default: uniform)
    OCKHAM_NOISE_AMPLITUDE: Relative noise half-width (default: 0.10)
    OCKHAM_NOISE_SEED: Seed for Monte Carlo noise (default: unseeded)
"""

from __future__ import annotations

import os
from collections.abc import Mapping

from pydantic import BaseModel, Field, model_validator

DATABASE_URL_ENV = "OCKHAM_DATABASE_URL"
REDIS_URL_ENV = "OCKHAM_REDIS_URL"
LOG_LEVEL_ENV = "OCKHAM_LOG_LEVEL"

_ENV_PREFIX = "OCKHAM_"


class CalculationSettings(BaseModel):
    """Tunable knobs for strategies, worker and lifecycle service."""

    database_url: str | None = None
    redis_url: str | None = None
    log_level: str = "INFO"

    cache_ttl_seconds: int = Field(3600, gt=0)
    progress_ttl_seconds: int = Field(300, gt=0)
    progress_interval: int = Field(5, ge=1, le=100)

    queue_name: str = "calculations"
    job_timeout_seconds: int = Field(3600, gt=0)
    retry_attempts: int = Field(3, ge=1)
    retry_backoff_seconds: int = Field(60, ge=0)
    visibility_timeout_seconds: int = Field(3600, gt=0)

    grace_period_days: int = Field(7, ge=0)
    delete_after_days: int = Field(30, gt=0)

    discount_rate: float = Field(0.10, gt=-1.0)
    noise_distribution: str = "uniform"
    noise_amplitude: float = Field(0.10, ge=0.0, lt=1.0)
    noise_seed: int | None = None

    model_config = {"frozen": True, "extra": "forbid"}

    @model_validator(mode="after")
    def _check_timeouts(self) -> CalculationSettings:
        if self.visibility_timeout_seconds < self.job_timeout_seconds:
            raise ValueError(
                "visibility_timeout_seconds must be >= job_timeout_seconds "
                f"({self.visibility_timeout_seconds} < {self.job_timeout_seconds})"
            )
        return self

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> CalculationSettings:
        """Read settings from ``OCKHAM_*`` environment variables.

        Unset or blank variables keep their defaults. Values are validated
        by the model, so malformed numbers raise ``pydantic.ValidationError``.
        """
        env = os.environ if environ is None else environ
        values: dict[str, str] = {}
        for name in cls.model_fields:
            raw = env.get(f"{_ENV_PREFIX}{name.upper()}", "").strip()
            if raw:
                values[name] = raw
        return cls.model_validate(values)
