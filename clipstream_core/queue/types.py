from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol

from clipstream_core.pipeline.types import LeasedJob, ProcessingJob


@dataclass(frozen=True)
class QueueStats:
    depth: int
    ready: int
    delayed: int
    in_flight: int


class JobQueue(Protocol):
    """Durable work queue holding at most one job per video.

    Delivery is at-least-once: a dequeued job that is neither acknowledged nor
    released becomes visible again once its visibility timeout elapses.
    """

    def enqueue(self, job: ProcessingJob) -> bool: ...

    def dequeue(self, *, now: float, visibility_timeout: float) -> LeasedJob | None: ...

    def ack(self, receipt: str) -> bool: ...

    def release(
        self,
        receipt: str,
        *,
        not_before: float,
        attempt: int | None = None,
    ) -> bool: ...

    def get(self, video_id: str) -> ProcessingJob | None: ...

    def has_job(self, video_id: str) -> bool: ...

    def is_in_flight(self, video_id: str, *, now: float) -> bool: ...

    def remove(self, video_id: str, *, now: float) -> bool: ...

    def requeue_in_flight(self) -> int: ...

    def stats(self, *, now: float) -> QueueStats: ...
