"""Calculation lifecycle notifications."""

from ockham.events.messages import (
    CalculationMessage,
    CompletedMessage,
    FailedMessage,
    ProgressMessage,
    case_topic,
)
from ockham.events.notifier import InMemoryNotifier, Notifier, NotifierError, RedisNotifier

__all__ = [
    "CalculationMessage",
    "CompletedMessage",
    "FailedMessage",
    "InMemoryNotifier",
    "Notifier",
    "NotifierError",
    "ProgressMessage",
    "RedisNotifier",
    "case_topic",
]
