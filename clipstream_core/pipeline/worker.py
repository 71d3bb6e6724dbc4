from __future__ import annotations

import threading

from clipstream_core.logging import get_logger
from clipstream_core.pipeline.orchestrator import Orchestrator, StepOutcome

logger = get_logger(__name__)


class WorkerPool:
    """Fixed number of threads pulling jobs through the orchestrator."""

    def __init__(
        self,
        orchestrator: Orchestrator,
        worker_count: int,
        poll_interval_seconds: float = 1.0,
        name: str = "worker",
    ) -> None:
        self.orchestrator = orchestrator
        self.worker_count = max(1, worker_count)
        self.poll_interval_seconds = poll_interval_seconds
        self.name = name
        self._stop = threading.Event()
        self._threads: list[threading.Thread] = []

    @property
    def running(self) -> bool:
        return any(thread.is_alive() for thread in self._threads)

    def start(self) -> None:
        if self._threads:
            return
        self._stop.clear()
        for index in range(self.worker_count):
            worker_id = f"{self.name}-{index}"
            thread = threading.Thread(
                target=self._run,
                args=(worker_id,),
                name=worker_id,
                daemon=True,
            )
            self._threads.append(thread)
            thread.start()
        logger.info("Worker pool started", extra={"worker_count": self.worker_count})

    def stop(self, timeout: float | None = None) -> None:
        self._stop.set()
        for thread in self._threads:
            thread.join(timeout=timeout)
        self._threads = []

    def wait(self) -> None:
        """Block until :meth:`stop` is called from another thread."""
        self._stop.wait()

    def _run(self, worker_id: str) -> None:
        while not self._stop.is_set():
            try:
                outcome = self.orchestrator.process_next(worker_id)
            except Exception:
                logger.exception(
                    "Worker step failed",
                    extra={"worker_id": worker_id},
                )
                outcome = StepOutcome.IDLE
            if outcome in (StepOutcome.IDLE, StepOutcome.BUSY):
                self._stop.wait(self.poll_interval_seconds)
