"""Observability helpers."""

from ockham.observability.tracing import configure_tracing, traced_span

__all__ = ["configure_tracing", "traced_span"]
