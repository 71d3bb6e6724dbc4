from __future__ import annotations

import threading
import uuid
from dataclasses import dataclass, replace

from clipstream_core.pipeline.types import LeasedJob, ProcessingJob
from clipstream_core.queue.types import QueueStats


@dataclass
class _Entry:
    job: ProcessingJob
    available_at: float
    receipt: str | None = None
    deliveries: int = 0


class InMemoryJobQueue:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._entries: dict[str, _Entry] = {}

    def enqueue(self, job: ProcessingJob) -> bool:
        with self._lock:
            if job.video_id in self._entries:
                return False
            self._entries[job.video_id] = _Entry(job=job, available_at=job.not_before)
            return True

    def dequeue(self, *, now: float, visibility_timeout: float) -> LeasedJob | None:
        with self._lock:
            ready = [
                entry for entry in self._entries.values() if entry.available_at <= now
            ]
            if not ready:
                return None
            entry = min(
                ready,
                key=lambda item: (item.available_at, item.job.enqueued_at),
            )
            entry.receipt = uuid.uuid4().hex
            entry.available_at = now + visibility_timeout
            entry.deliveries += 1
            return LeasedJob(
                job=entry.job,
                receipt=entry.receipt,
                deliveries=entry.deliveries,
            )

    def ack(self, receipt: str) -> bool:
        with self._lock:
            entry = self._find(receipt)
            if entry is None:
                return False
            del self._entries[entry.job.video_id]
            return True

    def release(
        self,
        receipt: str,
        *,
        not_before: float,
        attempt: int | None = None,
    ) -> bool:
        with self._lock:
            entry = self._find(receipt)
            if entry is None:
                return False
            job = entry.job
            if attempt is not None:
                job = replace(job, attempt=attempt)
            entry.job = replace(job, not_before=not_before)
            entry.receipt = None
            entry.available_at = not_before
            return True

    def get(self, video_id: str) -> ProcessingJob | None:
        with self._lock:
            entry = self._entries.get(video_id)
            return entry.job if entry else None

    def has_job(self, video_id: str) -> bool:
        with self._lock:
            return video_id in self._entries

    def is_in_flight(self, video_id: str, *, now: float) -> bool:
        with self._lock:
            entry = self._entries.get(video_id)
            return _in_flight(entry, now) if entry else False

    def remove(self, video_id: str, *, now: float) -> bool:
        with self._lock:
            entry = self._entries.get(video_id)
            if entry is None or _in_flight(entry, now):
                return False
            del self._entries[video_id]
            return True

    def requeue_in_flight(self) -> int:
        with self._lock:
            count = 0
            for entry in self._entries.values():
                if entry.receipt is None:
                    continue
                entry.receipt = None
                entry.available_at = entry.job.not_before
                count += 1
            return count

    def stats(self, *, now: float) -> QueueStats:
        with self._lock:
            entries = list(self._entries.values())
        in_flight = sum(1 for entry in entries if _in_flight(entry, now))
        ready = sum(1 for entry in entries if entry.available_at <= now)
        return QueueStats(
            depth=len(entries),
            ready=ready,
            delayed=len(entries) - ready - in_flight,
            in_flight=in_flight,
        )

    def _find(self, receipt: str) -> _Entry | None:
        for entry in self._entries.values():
            if entry.receipt == receipt:
                return entry
        return None


def _in_flight(entry: _Entry, now: float) -> bool:
    return entry.receipt is not None and entry.available_at > now
