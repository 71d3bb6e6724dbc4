"""The pipeline orchestrator.

The orchestrator is the only component that changes a video's processing
state or a job's lifecycle. Every bookkeeping step (reading the catalog,
touching the queue, writing a transition) happens under one re-entrant lock;
stage executors always run outside it so a slow transcode never blocks
intake, cancellation or other workers.
"""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Callable, Mapping, Protocol

from pydantic import ValidationError as PydanticValidationError

from clipstream_core.embeddings.edges import EdgeKind, RelationshipEdge
from clipstream_core.errors import (
    InvalidTransitionError,
    RecoverableError,
    ValidationError,
)
from clipstream_core.ingestion.duplicates import (
    AWAITING_VERDICT_STATES,
    decide_duplicate,
    find_pending_predecessor,
)
from clipstream_core.logging import get_logger
from clipstream_core.pipeline.executors import ExecutorRegistry, run_stage
from clipstream_core.pipeline.lease import LeaseManager
from clipstream_core.pipeline.retry import RetryPolicy
from clipstream_core.pipeline.states import (
    ACTIVE_STATES,
    ProcessingState,
    Stage,
    check_transition,
    next_state,
)
from clipstream_core.pipeline.store import VideoStore
from clipstream_core.pipeline.types import (
    LeasedJob,
    OutcomeKind,
    ProcessingJob,
    StageResult,
    UploadCompletedEvent,
    Video,
    VideoReference,
    VideoStatus,
)
from clipstream_core.queue.types import JobQueue

logger = get_logger(__name__)


class EdgeRecorder(Protocol):
    def record_edge(self, edge: RelationshipEdge) -> bool: ...

    def count_by_kind(self) -> dict[str, int]: ...


class StepOutcome(str, Enum):
    IDLE = "idle"
    BUSY = "busy"
    STALE = "stale"
    APPLIED = "applied"
    DISCARDED = "discarded"


@dataclass(frozen=True)
class ProcessingStats:
    total: int
    by_state: dict[str, int]
    complete: int
    duplicates: int
    failed: int
    cancelled: int
    in_progress: int
    success_rate: float
    failures_by_stage: dict[str, int] = field(default_factory=dict)
    edges_by_kind: dict[str, int] = field(default_factory=dict)


class Orchestrator:
    def __init__(
        self,
        store: VideoStore,
        queue: JobQueue,
        leases: LeaseManager,
        executors: ExecutorRegistry,
        edges: EdgeRecorder,
        retry: RetryPolicy,
        *,
        visibility_timeout: float = 900.0,
        lease_retry_delay: float = 1.0,
        now_fn: Callable[[], float] | None = None,
    ) -> None:
        self.store = store
        self.queue = queue
        self.leases = leases
        self.executors = executors
        self.edges = edges
        self.retry = retry
        self.visibility_timeout = visibility_timeout
        self.lease_retry_delay = lease_retry_delay
        self._now = now_fn or time.time
        self._lock = threading.RLock()
        self._idle = threading.Condition(self._lock)
        self._in_flight = 0
        self._running: set[str] = set()
        self._accepting = True

    # Intake

    def handle_upload(
        self,
        event: UploadCompletedEvent | Mapping[str, Any],
    ) -> VideoStatus:
        """Register an uploaded video; re-delivered events are no-ops."""
        if not isinstance(event, UploadCompletedEvent):
            try:
                event = UploadCompletedEvent.model_validate(event)
            except PydanticValidationError as exc:
                raise ValidationError(f"Invalid upload event: {exc}") from exc
        now = self._now()
        with self._lock:
            if not self._accepting:
                raise RecoverableError("Orchestrator is shutting down")
            video = self.store.get(event.video_id)
            if video is None:
                candidate = Video(
                    video_id=event.video_id,
                    created_at=event.created_timestamp(now),
                    source_key=event.resolved_object_key(),
                    updated_at=now,
                )
                if self.store.create(candidate):
                    video = candidate
                    logger.info(
                        "Upload registered",
                        extra={
                            "video_id": video.video_id,
                            "object_key": video.source_key,
                        },
                    )
                else:
                    video = self.store.get(event.video_id)
                    if video is None:
                        raise RecoverableError(
                            f"Video {event.video_id} vanished during registration"
                        )
            elif video.state is not ProcessingState.UPLOADED:
                logger.info(
                    "Upload event already handled",
                    extra={"video_id": video.video_id, "state": video.state.value},
                )
                return VideoStatus.from_video(video)
            if video.state is ProcessingState.UPLOADED:
                video = self._transition(video, ProcessingState.DUPLICATE_CHECK, now)
                self._enqueue(video, now)
            return VideoStatus.from_video(video)

    # Processing

    def process_next(self, worker_id: str) -> StepOutcome:
        """Run at most one ready job to completion."""
        now = self._now()
        with self._lock:
            if not self._accepting:
                return StepOutcome.IDLE
            leased = self.queue.dequeue(
                now=now,
                visibility_timeout=self.visibility_timeout,
            )
            if leased is None:
                return StepOutcome.IDLE
            job = leased.job
            video = self.store.get(job.video_id)
            if video is None or video.current_stage is not job.stage:
                self._drop_stale(leased, video)
                return StepOutcome.STALE
            if video.cancel_requested:
                self._ack(leased)
                self._transition(video, ProcessingState.CANCELLED, now)
                return StepOutcome.DISCARDED
            executor = self.executors.get(job.stage)
            # Leases expire; a stage still running in this process keeps its video.
            lease = None
            if video.video_id not in self._running:
                lease = self.leases.acquire(video.video_id, worker_id)
            if lease is None:
                self.queue.release(
                    leased.receipt,
                    not_before=now + self.lease_retry_delay,
                )
                logger.info(
                    "Video is leased by another worker",
                    extra={"video_id": video.video_id, "worker_id": worker_id},
                )
                return StepOutcome.BUSY
            reference = VideoReference(
                video_id=video.video_id,
                source_key=video.source_key,
                created_at=video.created_at,
                duration_seconds=video.duration_seconds,
                fingerprint=video.fingerprint,
            )
            prior_outputs = dict(video.stage_outputs)
            self._running.add(video.video_id)
            self._in_flight += 1

        try:
            logger.info(
                "Stage started",
                extra={
                    "video_id": job.video_id,
                    "stage": job.stage.value,
                    "attempt_count": job.attempt,
                    "worker_id": worker_id,
                },
            )
            result = run_stage(executor, reference, prior_outputs)
            return self._apply(leased, result)
        finally:
            with self._lock:
                self.leases.release(lease)
                self._running.discard(job.video_id)
                self._in_flight -= 1
                self._idle.notify_all()

    def drain(self, worker_id: str = "drain", max_steps: int = 10_000) -> int:
        """Process ready jobs on the calling thread until none are left."""
        steps = 0
        while steps < max_steps:
            outcome = self.process_next(worker_id)
            if outcome in (StepOutcome.IDLE, StepOutcome.BUSY):
                break
            steps += 1
        return steps

    def _apply(self, leased: LeasedJob, result: StageResult) -> StepOutcome:
        job = leased.job
        now = self._now()
        with self._lock:
            video = self.store.get(job.video_id)
            if video is None or video.current_stage is not job.stage:
                self._drop_stale(leased, video)
                return StepOutcome.STALE
            if video.cancel_requested:
                self._ack(leased)
                self._transition(video, ProcessingState.CANCELLED, now)
                logger.info(
                    "Discarded result of cancelled video",
                    extra={"video_id": video.video_id, "stage": job.stage.value},
                )
                return StepOutcome.DISCARDED
            if result.kind is OutcomeKind.SUCCEEDED:
                self._on_success(video, leased, result, now)
            elif result.kind is OutcomeKind.RETRYABLE:
                self._on_retryable(video, leased, result, now)
            else:
                self._on_fatal(video, leased, result, now)
            return StepOutcome.APPLIED

    def _on_success(
        self,
        video: Video,
        leased: LeasedJob,
        result: StageResult,
        now: float,
    ) -> None:
        stage = leased.job.stage
        output = result.output
        outputs = dict(video.stage_outputs)
        if output is not None and output.object_key:
            outputs[stage.value] = output.object_key
        video = replace(
            video,
            stage_outputs=outputs,
            attempt_count=0,
            last_error=None,
        )
        logger.info(
            "Stage succeeded",
            extra={
                "video_id": video.video_id,
                "stage": stage.value,
                "duration_ms": result.duration_ms,
            },
        )

        if stage is Stage.DUPLICATE_CHECK:
            waiting_on = find_pending_predecessor(
                video.video_id,
                video.created_at,
                self.store.list_by_states(AWAITING_VERDICT_STATES),
            )
            if waiting_on is not None:
                self._defer_verdict(video, leased, waiting_on, now)
                return
            data = output.data if output is not None else {}
            fingerprint = str(data["fingerprint"])
            duration = data.get("duration_seconds")
            video = replace(
                video,
                fingerprint=fingerprint,
                duration_seconds=float(duration) if duration is not None else None,
            )
            verdict = decide_duplicate(
                video.video_id,
                video.created_at,
                fingerprint,
                self.store.find_by_fingerprint(fingerprint),
            )
            canonical_id = verdict.canonical_id
            if canonical_id is not None:
                self.edges.record_edge(
                    RelationshipEdge(
                        video_a=video.video_id,
                        video_b=canonical_id,
                        kind=EdgeKind.DUPLICATE,
                        score=0.0,
                        created_at=now,
                    )
                )
                self._ack(leased)
                self._transition(video, ProcessingState.DUPLICATE, now)
                logger.info(
                    "Video is a duplicate",
                    extra={
                        "video_id": video.video_id,
                        "canonical_id": canonical_id,
                    },
                )
                return

        self._ack(leased)
        target = next_state(video.state)
        video = self._transition(video, target, now)
        if not target.is_terminal:
            self._enqueue(video, now)

    def _defer_verdict(
        self,
        video: Video,
        leased: LeasedJob,
        waiting_on: Video,
        now: float,
    ) -> None:
        pending = self.queue.get(waiting_on.video_id)
        ready_at = max(now, pending.not_before) if pending is not None else now
        not_before = ready_at + self.lease_retry_delay
        if not self.queue.release(leased.receipt, not_before=not_before):
            self._ensure_job(video, not_before)
        logger.info(
            "Duplicate verdict waits for an earlier upload",
            extra={
                "video_id": video.video_id,
                "predecessor_id": waiting_on.video_id,
                "delay_s": not_before - now,
            },
        )

    def _on_retryable(
        self,
        video: Video,
        leased: LeasedJob,
        result: StageResult,
        now: float,
    ) -> None:
        stage = leased.job.stage
        attempts = video.attempt_count + 1
        failure_counts = dict(video.failure_counts)
        failure_counts[stage.value] = failure_counts.get(stage.value, 0) + 1
        video = replace(
            video,
            attempt_count=attempts,
            failure_counts=failure_counts,
            last_error=result.error,
            updated_at=now,
        )
        if not self.retry.should_retry(attempts):
            self._ack(leased)
            self._fail(video, stage, now)
            return
        delay = self.retry.delay_for(attempts)
        self.store.save(video)
        if not self.queue.release(
            leased.receipt,
            not_before=now + delay,
            attempt=attempts,
        ):
            self._ensure_job(video, now + delay)
        logger.warning(
            "Stage failed, retry scheduled",
            extra={
                "video_id": video.video_id,
                "stage": stage.value,
                "attempt_count": attempts,
                "delay_s": delay,
                "error_code": result.error.code if result.error else None,
            },
        )

    def _on_fatal(
        self,
        video: Video,
        leased: LeasedJob,
        result: StageResult,
        now: float,
    ) -> None:
        stage = leased.job.stage
        failure_counts = dict(video.failure_counts)
        failure_counts[stage.value] = failure_counts.get(stage.value, 0) + 1
        video = replace(
            video,
            attempt_count=video.attempt_count + 1,
            failure_counts=failure_counts,
            last_error=result.error,
        )
        self._ack(leased)
        self._fail(video, stage, now)

    def _fail(self, video: Video, stage: Stage, now: float) -> None:
        error = video.last_error
        self._transition(video, ProcessingState.FAILED, now, failed_stage=stage)
        logger.error(
            "Video processing failed",
            extra={
                "video_id": video.video_id,
                "stage": stage.value,
                "attempt_count": video.attempt_count,
                "error_kind": error.kind.value if error else None,
                "error_code": error.code if error else None,
                "error_message": error.message if error else None,
            },
        )

    # Operator actions

    def cancel(self, video_id: str) -> VideoStatus | None:
        """Cancel a video; an in-flight stage result is discarded when applied."""
        now = self._now()
        with self._lock:
            video = self.store.get(video_id)
            if video is None:
                return None
            if video.is_terminal:
                return VideoStatus.from_video(video)
            video = replace(video, cancel_requested=True, updated_at=now)
            self.store.save(video)
            if self.queue.is_in_flight(video_id, now=now) or self.leases.is_held(
                video_id
            ):
                logger.info(
                    "Cancellation requested for in-flight video",
                    extra={"video_id": video_id, "state": video.state.value},
                )
                return VideoStatus.from_video(video)
            self.queue.remove(video_id, now=now)
            video = self._transition(video, ProcessingState.CANCELLED, now)
            return VideoStatus.from_video(video)

    def requeue_failed(self, video_id: str) -> VideoStatus:
        """Send a failed video back to the stage that failed, attempts reset."""
        now = self._now()
        with self._lock:
            video = self.store.get(video_id)
            if video is None or video.state is not ProcessingState.FAILED:
                state = video.state.value if video else "unknown"
                raise InvalidTransitionError(
                    f"Only failed videos can be re-queued; {video_id} is {state}"
                )
            stage = video.failed_stage or Stage.DUPLICATE_CHECK
            video = replace(
                video,
                state=stage.state,
                attempt_count=0,
                last_error=None,
                failed_stage=None,
                cancel_requested=False,
                updated_at=now,
            )
            self.store.save(video, transition=True)
            self.queue.remove(video_id, now=now)
            self._enqueue(video, now)
            logger.info(
                "Failed video re-queued",
                extra={"video_id": video_id, "stage": stage.value},
            )
            return VideoStatus.from_video(video)

    def recover(self) -> int:
        """Rebuild the queue from the catalog after a restart.

        Must run before workers start: every in-flight delivery is assumed to
        belong to a process that no longer exists.
        """
        now = self._now()
        with self._lock:
            returned = self.queue.requeue_in_flight()
            self.leases.release_all()
            created = 0
            states = set(ACTIVE_STATES) | {ProcessingState.UPLOADED}
            for video in self.store.list_by_states(states):
                if video.cancel_requested:
                    self.queue.remove(video.video_id, now=now)
                    self._transition(video, ProcessingState.CANCELLED, now)
                    continue
                if video.state is ProcessingState.UPLOADED:
                    video = self._transition(video, ProcessingState.DUPLICATE_CHECK, now)
                if self._ensure_job(video, now):
                    created += 1
            recovered = returned + created
            logger.info(
                "Recovered pipeline jobs",
                extra={"recovered_jobs": recovered},
            )
            return recovered

    # Views

    def status(self, video_id: str) -> VideoStatus | None:
        video = self.store.get(video_id)
        return VideoStatus.from_video(video) if video else None

    def history(self, video_id: str) -> list[str]:
        return [state.value for state in self.store.history(video_id)]

    def queue_status(self) -> dict[str, int]:
        stats = self.queue.stats(now=self._now())
        return {
            "depth": stats.depth,
            "ready": stats.ready,
            "delayed": stats.delayed,
            "in_flight": stats.in_flight,
            "active_leases": self.leases.active_count(),
        }

    def processing_stats(self) -> ProcessingStats:
        by_state = self.store.count_by_state()
        total = sum(by_state.values())
        complete = by_state.get(ProcessingState.COMPLETE.value, 0)
        failed = by_state.get(ProcessingState.FAILED.value, 0)
        in_progress = sum(
            by_state.get(state.value, 0)
            for state in set(ACTIVE_STATES) | {ProcessingState.UPLOADED}
        )
        finished = complete + failed
        failures: dict[str, int] = {}
        for video in self.store.list_by_states(list(ProcessingState)):
            for stage, count in video.failure_counts.items():
                failures[stage] = failures.get(stage, 0) + count
        return ProcessingStats(
            total=total,
            by_state=by_state,
            complete=complete,
            duplicates=by_state.get(ProcessingState.DUPLICATE.value, 0),
            failed=failed,
            cancelled=by_state.get(ProcessingState.CANCELLED.value, 0),
            in_progress=in_progress,
            success_rate=round(complete / finished, 4) if finished else 0.0,
            failures_by_stage=failures,
            edges_by_kind=self.edges.count_by_kind(),
        )

    # Lifecycle

    def start(self) -> int:
        with self._lock:
            self._accepting = True
        return self.recover()

    def shutdown(self, timeout: float | None = None) -> bool:
        """Stop intake, wait for in-flight stages, then drop all leases."""
        with self._lock:
            self._accepting = False
            drained = self._idle.wait_for(lambda: self._in_flight == 0, timeout)
            released = self.leases.release_all()
        logger.info(
            "Orchestrator stopped",
            extra={"status": "drained" if drained else "timeout"},
        )
        if released:
            logger.warning("Released leases on shutdown")
        return bool(drained)

    # Bookkeeping helpers; callers hold the lock.

    def _transition(
        self,
        video: Video,
        target: ProcessingState,
        now: float,
        **changes: Any,
    ) -> Video:
        check_transition(video.state, target)
        updated = replace(video, state=target, updated_at=now, **changes)
        self.store.save(updated, transition=True)
        logger.info(
            "State transition",
            extra={
                "video_id": video.video_id,
                "previous_state": video.state.value,
                "state": target.value,
            },
        )
        return updated

    def _enqueue(self, video: Video, now: float, not_before: float | None = None) -> bool:
        stage = video.current_stage
        if stage is None:
            return False
        job = ProcessingJob(
            video_id=video.video_id,
            stage=stage,
            attempt=video.attempt_count,
            enqueued_at=now,
            not_before=not_before if not_before is not None else now,
            payload_key=video.source_key,
        )
        return self.queue.enqueue(job)

    def _ensure_job(self, video: Video, now: float) -> bool:
        if video.is_terminal or self.queue.has_job(video.video_id):
            return False
        return self._enqueue(video, self._now(), not_before=now)

    def _ack(self, leased: LeasedJob) -> None:
        if not self.queue.ack(leased.receipt):
            logger.warning(
                "Job receipt expired before acknowledgement",
                extra={
                    "video_id": leased.job.video_id,
                    "stage": leased.job.stage.value,
                },
            )

    def _drop_stale(self, leased: LeasedJob, video: Video | None) -> None:
        self._ack(leased)
        logger.info(
            "Dropped stale job",
            extra={
                "video_id": leased.job.video_id,
                "stage": leased.job.stage.value,
                "state": video.state.value if video else None,
            },
        )
        if video is not None and not video.is_terminal:
            self._ensure_job(video, self._now())

