from __future__ import annotations

import threading
import time
import uuid
from dataclasses import dataclass
from typing import Callable

from clipstream_core.logging import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class Lease:
    video_id: str
    holder: str
    token: str
    expires_at: float


class LeaseManager:
    """Time-bounded exclusive claims on videos.

    ``acquire`` never blocks: it returns ``None`` when another holder owns an
    unexpired lease on the same video.
    """

    def __init__(
        self,
        ttl_seconds: float,
        now_fn: Callable[[], float] | None = None,
    ) -> None:
        self.ttl_seconds = ttl_seconds
        self._now = now_fn or time.time
        self._lock = threading.Lock()
        self._leases: dict[str, Lease] = {}

    def acquire(self, video_id: str, holder: str) -> Lease | None:
        now = self._now()
        with self._lock:
            current = self._leases.get(video_id)
            if current is not None and current.expires_at > now:
                return None
            if current is not None:
                logger.warning(
                    "Reclaiming expired lease",
                    extra={"video_id": video_id, "worker_id": current.holder},
                )
            lease = Lease(
                video_id=video_id,
                holder=holder,
                token=uuid.uuid4().hex,
                expires_at=now + self.ttl_seconds,
            )
            self._leases[video_id] = lease
            return lease

    def release(self, lease: Lease) -> bool:
        with self._lock:
            current = self._leases.get(lease.video_id)
            if current is None or current.token != lease.token:
                return False
            del self._leases[lease.video_id]
            return True

    def is_held(self, video_id: str) -> bool:
        now = self._now()
        with self._lock:
            current = self._leases.get(video_id)
            return current is not None and current.expires_at > now

    def active_count(self) -> int:
        now = self._now()
        with self._lock:
            return sum(1 for lease in self._leases.values() if lease.expires_at > now)

    def release_all(self) -> int:
        with self._lock:
            count = len(self._leases)
            self._leases.clear()
            return count
