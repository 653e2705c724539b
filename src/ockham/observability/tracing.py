"""OpenTelemetry tracing for the calculation engine.

Tracing is off unless explicitly enabled. When off, ``traced_span`` is a
no-op and opentelemetry is never imported.

Environment Variables:
    OCKHAM_OTEL_ENABLED: Set to "1" to enable tracing (default: disabled)
    OCKHAM_OTEL_SERVICE_NAME: Service name for spans (default: "ockham")
    OCKHAM_OTEL_TEST_CAPTURE: Set to "1" to capture spans in memory for tests
"""

from __future__ import annotations

import logging
import os
from collections.abc import Iterator
from contextlib import contextmanager
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from opentelemetry.sdk.trace import ReadableSpan, TracerProvider

logger = logging.getLogger(__name__)

OTEL_ENABLED_ENV = "OCKHAM_OTEL_ENABLED"
OTEL_SERVICE_NAME_ENV = "OCKHAM_OTEL_SERVICE_NAME"
OTEL_TEST_CAPTURE_ENV = "OCKHAM_OTEL_TEST_CAPTURE"

TRACER_NAME = "ockham.calc"

_tracer_provider: TracerProvider | None = None
_test_exporter: Any = None


def _get_env_bool(key: str, default: bool = False) -> bool:
    val = os.environ.get(key, "").strip().lower()
    if val in ("1", "true", "yes"):
        return True
    if val in ("0", "false", "no"):
        return False
    return default


def is_tracing_enabled() -> bool:
    return _get_env_bool(OTEL_ENABLED_ENV, False)


def configure_tracing() -> bool:
    """Install a tracer provider when tracing is enabled.

    Idempotent. Spans go to the console exporter, or to an in-memory
    exporter when OCKHAM_OTEL_TEST_CAPTURE=1.

    Returns:
        True if tracing is enabled and configured, False otherwise.
    """
    global _tracer_provider, _test_exporter

    if not is_tracing_enabled():
        logger.debug("OpenTelemetry tracing disabled (%s not set)", OTEL_ENABLED_ENV)
        return False

    if _tracer_provider is not None:
        return True

    from opentelemetry import trace
    from opentelemetry.sdk.resources import Resource
    from opentelemetry.sdk.trace import TracerProvider
    from opentelemetry.sdk.trace.export import ConsoleSpanExporter, SimpleSpanProcessor

    service_name = os.environ.get(OTEL_SERVICE_NAME_ENV, "ockham").strip() or "ockham"
    provider = TracerProvider(resource=Resource.create({"service.name": service_name}))

    if _get_env_bool(OTEL_TEST_CAPTURE_ENV, False):
        from opentelemetry.sdk.trace.export.in_memory_span_exporter import (
            InMemorySpanExporter,
        )

        _test_exporter = InMemorySpanExporter()
        provider.add_span_processor(SimpleSpanProcessor(_test_exporter))
    else:
        provider.add_span_processor(SimpleSpanProcessor(ConsoleSpanExporter()))

    trace.set_tracer_provider(provider)
    _tracer_provider = provider
    logger.info("OpenTelemetry tracing configured: service=%s", service_name)
    return True


@contextmanager
def traced_span(name: str, attributes: dict[str, Any] | None = None) -> Iterator[None]:
    """Wrap a block in a span named ``ockham.<name>`` when tracing is enabled."""
    if not is_tracing_enabled():
        yield
        return

    from opentelemetry import trace

    tracer = trace.get_tracer(TRACER_NAME)
    with tracer.start_as_current_span(f"ockham.{name}") as span:
        for key, value in (attributes or {}).items():
            if value is not None:
                span.set_attribute(key, value if isinstance(value, (int, float, bool)) else str(value))
        yield


def get_test_spans() -> list[ReadableSpan]:
    """Spans captured by the in-memory exporter (empty when not capturing)."""
    if _test_exporter is None:
        return []
    return list(_test_exporter.get_finished_spans())


def clear_test_spans() -> None:
    if _test_exporter is not None:
        _test_exporter.clear()
