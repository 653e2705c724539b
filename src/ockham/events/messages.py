"""Notification messages published for calculation lifecycle events.

These three shapes are the whole contract with the notification transport.
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any, ClassVar

from pydantic import BaseModel, Field


def case_topic(case_id: str) -> str:
    """Topic on which all calculation events of a case are published."""
    return f"case.{case_id}.calculations"


def _now() -> datetime:
    return datetime.now(UTC)


class CalculationMessage(BaseModel):
    """Base for lifecycle messages."""

    event: ClassVar[str] = ""

    calculation_id: str
    timestamp: datetime = Field(default_factory=_now)

    model_config = {"frozen": True}

    def to_payload(self) -> dict[str, Any]:
        """JSON-ready body with the event name attached."""
        return {"event": self.event, **self.model_dump(mode="json")}


class ProgressMessage(CalculationMessage):
    event: ClassVar[str] = "calculation.progress"

    case_id: str
    percentage: int = Field(..., ge=0, le=100)
    message: str


class CompletedMessage(CalculationMessage):
    """Carries only the four key metrics (npv, irr, pi, payback_period)."""

    event: ClassVar[str] = "calculation.completed"

    results: dict[str, Any]


class FailedMessage(CalculationMessage):
    event: ClassVar[str] = "calculation.failed"

    error: str
