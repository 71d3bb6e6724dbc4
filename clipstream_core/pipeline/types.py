from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Mapping

from pydantic import BaseModel, Field, field_validator

from clipstream_core.pipeline.states import ProcessingState, Stage, status_code
from clipstream_core.storage.paths import raw_upload_key


class ErrorKind(str, Enum):
    RETRYABLE = "retryable"
    FATAL = "fatal"


class OutcomeKind(str, Enum):
    SUCCEEDED = "succeeded"
    RETRYABLE = "retryable"
    FATAL = "fatal"


@dataclass(frozen=True)
class ErrorInfo:
    kind: ErrorKind
    code: str
    message: str


@dataclass(frozen=True)
class Video:
    video_id: str
    created_at: float
    source_key: str
    state: ProcessingState = ProcessingState.UPLOADED
    duration_seconds: float | None = None
    fingerprint: str | None = None
    attempt_count: int = 0
    failure_counts: dict[str, int] = field(default_factory=dict)
    last_error: ErrorInfo | None = None
    failed_stage: Stage | None = None
    stage_outputs: dict[str, str] = field(default_factory=dict)
    cancel_requested: bool = False
    updated_at: float | None = None

    @property
    def is_terminal(self) -> bool:
        return self.state.is_terminal

    @property
    def current_stage(self) -> Stage | None:
        return self.state.stage

    def order_key(self) -> tuple[float, str]:
        return (self.created_at, self.video_id)


@dataclass(frozen=True)
class ProcessingJob:
    video_id: str
    stage: Stage
    attempt: int
    enqueued_at: float
    not_before: float
    payload_key: str


@dataclass(frozen=True)
class LeasedJob:
    job: ProcessingJob
    receipt: str
    deliveries: int


@dataclass(frozen=True)
class VideoReference:
    video_id: str
    source_key: str
    created_at: float
    duration_seconds: float | None = None
    fingerprint: str | None = None


@dataclass(frozen=True)
class StageOutput:
    object_key: str | None = None
    data: Mapping[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class StageResult:
    kind: OutcomeKind
    output: StageOutput | None = None
    error: ErrorInfo | None = None
    duration_ms: float | None = None

    @property
    def succeeded(self) -> bool:
        return self.kind is OutcomeKind.SUCCEEDED


@dataclass(frozen=True)
class VideoStatus:
    """External view of a video; never carries stack detail."""

    video_id: str
    state: str
    status_code: int
    attempt_count: int
    stage: str | None
    error_kind: str | None = None
    error_code: str | None = None
    error_message: str | None = None

    @classmethod
    def from_video(cls, video: Video) -> "VideoStatus":
        error = video.last_error
        stage = video.current_stage or video.failed_stage
        return cls(
            video_id=video.video_id,
            state=video.state.value,
            status_code=status_code(video.state),
            attempt_count=video.attempt_count,
            stage=stage.value if stage else None,
            error_kind=error.kind.value if error else None,
            error_code=error.code if error else None,
            error_message=error.message if error else None,
        )


class UploadCompletedEvent(BaseModel):
    video_id: str = Field(min_length=1)
    object_key: str | None = None
    created_at: datetime | None = None

    @field_validator("video_id")
    @classmethod
    def _strip_id(cls, value: str) -> str:
        cleaned = value.strip()
        if not cleaned or "/" in cleaned:
            raise ValueError("video_id must be a non-empty id without '/'")
        return cleaned

    def resolved_object_key(self) -> str:
        return self.object_key or raw_upload_key(self.video_id)

    def created_timestamp(self, fallback: float) -> float:
        if self.created_at is None:
            return fallback
        created = self.created_at
        if created.tzinfo is None:
            created = created.replace(tzinfo=timezone.utc)
        return created.timestamp()
