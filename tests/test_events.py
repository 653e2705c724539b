"""Tests for lifecycle messages and notifiers."""

from __future__ import annotations

import json
from unittest.mock import MagicMock

import pytest
from pydantic import ValidationError
from redis.exceptions import ConnectionError as RedisConnectionError

from ockham.events import (
    CompletedMessage,
    FailedMessage,
    InMemoryNotifier,
    Notifier,
    NotifierError,
    ProgressMessage,
    RedisNotifier,
    case_topic,
)
from tests.fixtures.clock import FIXED_NOW
from tests.fixtures.redis_double import RedisDouble


class TestMessages:
    def test_case_topic(self) -> None:
        assert case_topic("case-1") == "case.case-1.calculations"

    def test_progress_payload(self) -> None:
        message = ProgressMessage(
            calculation_id="calc-1",
            case_id="case-1",
            percentage=40,
            message="Completed iterations: 40/100",
            timestamp=FIXED_NOW,
        )

        assert message.to_payload() == {
            "event": "calculation.progress",
            "calculation_id": "calc-1",
            "case_id": "case-1",
            "percentage": 40,
            "message": "Completed iterations: 40/100",
            "timestamp": "2026-03-01T12:00:00Z",
        }

    def test_completed_payload(self) -> None:
        results = {"npv": 1.0, "irr": 0.1, "pi": 1.2, "payback_period": 4}

        payload = CompletedMessage(calculation_id="calc-1", results=results).to_payload()

        assert payload["event"] == "calculation.completed"
        assert payload["results"] == results

    def test_failed_payload(self) -> None:
        payload = FailedMessage(calculation_id="calc-1", error="boom").to_payload()

        assert payload["event"] == "calculation.failed"
        assert payload["error"] == "boom"

    def test_percentage_bounds(self) -> None:
        with pytest.raises(ValidationError):
            ProgressMessage(calculation_id="c", case_id="k", percentage=101, message="x")


class TestInMemoryNotifier:
    def test_filters(self) -> None:
        notifier = InMemoryNotifier()
        notifier.publish("case.a.calculations", FailedMessage(calculation_id="1", error="x"))
        notifier.publish("case.b.calculations", FailedMessage(calculation_id="2", error="y"))
        notifier.publish(
            "case.a.calculations", CompletedMessage(calculation_id="3", results={})
        )

        assert len(notifier.messages()) == 3
        assert [m.calculation_id for m in notifier.messages("case.a.calculations")] == ["1", "3"]
        assert [m.calculation_id for m in notifier.messages(event="calculation.failed")] == [
            "1",
            "2",
        ]

        notifier.clear()
        assert notifier.published == []

    def test_satisfies_protocol(self) -> None:
        assert isinstance(InMemoryNotifier(), Notifier)


class TestRedisNotifier:
    def test_message_reaches_channel(self) -> None:
        client = RedisDouble()
        message = ProgressMessage(
            calculation_id="calc-1",
            case_id="case-1",
            percentage=55,
            message="Completed iterations: 55/100",
            timestamp=FIXED_NOW,
        )

        RedisNotifier(client).publish(case_topic("case-1"), message)  # type: ignore[arg-type]

        [(channel, body)] = client.published
        assert channel == "case.case-1.calculations"
        assert json.loads(body)["percentage"] == 55

    def test_publishes_json(self) -> None:
        client = MagicMock()
        message = FailedMessage(calculation_id="calc-1", error="boom", timestamp=FIXED_NOW)

        RedisNotifier(client).publish("case.case-1.calculations", message)

        topic, body = client.publish.call_args.args
        assert topic == "case.case-1.calculations"
        assert json.loads(body) == message.to_payload()

    def test_errors_wrapped(self) -> None:
        client = MagicMock()
        client.publish.side_effect = RedisConnectionError("down")

        with pytest.raises(NotifierError) as exc_info:
            RedisNotifier(client).publish("topic", FailedMessage(calculation_id="1", error="x"))

        assert exc_info.value.topic == "topic"
