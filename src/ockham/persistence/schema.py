"""Table definitions for calculations and cases."""

from __future__ import annotations

from typing import TYPE_CHECKING

from sqlalchemy import (
    JSON,
    Column,
    DateTime,
    Float,
    Index,
    Integer,
    MetaData,
    String,
    Table,
    Text,
)

if TYPE_CHECKING:
    from sqlalchemy import Engine

PROGRESS_MESSAGE_LENGTH = 255

metadata = MetaData()

calculations = Table(
    "calculations",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("case_id", String(64), nullable=False, index=True),
    Column("fingerprint", String(64), nullable=False, index=True),
    Column("mode", String(16), nullable=False),
    Column("status", String(32), nullable=False, index=True),
    Column("input_params", JSON, nullable=True),
    Column("progress_percentage", Integer, nullable=False, default=0),
    Column("progress_message", String(PROGRESS_MESSAGE_LENGTH), nullable=True),
    Column("iterations_total", Integer, nullable=True),
    Column("iterations_completed", Integer, nullable=True),
    Column("attempts", Integer, nullable=False, default=0),
    Column("started_at", DateTime(timezone=True), nullable=True),
    Column("completed_at", DateTime(timezone=True), nullable=True),
    Column("failed_at", DateTime(timezone=True), nullable=True),
    Column("execution_time_seconds", Float, nullable=True),
    Column("engineering_results", JSON, nullable=True),
    Column("production_results", JSON, nullable=True),
    Column("sales_results", JSON, nullable=True),
    Column("capex_results", JSON, nullable=True),
    Column("opex_results", JSON, nullable=True),
    Column("tax_results", JSON, nullable=True),
    Column("final_metrics", JSON, nullable=True),
    Column("distributions", JSON, nullable=True),
    Column("error_message", Text, nullable=True),
    Column("error_trace", Text, nullable=True),
    Column("detach_at", DateTime(timezone=True), nullable=True),
    Column("delete_at", DateTime(timezone=True), nullable=True, index=True),
    Column("created_at", DateTime(timezone=True), nullable=False),
    Column("updated_at", DateTime(timezone=True), nullable=False),
    Index("idx_calculations_case_fingerprint", "case_id", "fingerprint"),
    Index("idx_calculations_fingerprint_completed", "fingerprint", "status", "completed_at"),
    Index("idx_calculations_cleanup", "delete_at", "status"),
)

cases = Table(
    "cases",
    metadata,
    Column("id", String(64), primary_key=True),
    Column("name", String(255), nullable=False, default=""),
    Column("description", Text, nullable=True),
    Column("current_calculation_id", String(36), nullable=True),
    Column("current_calculation_fingerprint", String(64), nullable=True, index=True),
    Column("created_at", DateTime(timezone=True), nullable=False),
    Column("updated_at", DateTime(timezone=True), nullable=False),
)


def create_schema(engine: Engine) -> None:
    """Create both tables if they do not exist."""
    metadata.create_all(engine)


def drop_schema(engine: Engine) -> None:
    metadata.drop_all(engine)
