from clipstream_core.queue.memory import InMemoryJobQueue
from clipstream_core.queue.sqlite_queue import SqliteJobQueue
from clipstream_core.queue.types import JobQueue, QueueStats

__all__ = [
    "InMemoryJobQueue",
    "JobQueue",
    "QueueStats",
    "SqliteJobQueue",
]
