"""Work queue capability for asynchronous calculations."""

from ockham.queue.work_queue import (
    InMemoryWorkQueue,
    RedisWorkQueue,
    WorkQueue,
    WorkQueueError,
    WorkUnit,
)

__all__ = [
    "InMemoryWorkQueue",
    "RedisWorkQueue",
    "WorkQueue",
    "WorkQueueError",
    "WorkUnit",
]
