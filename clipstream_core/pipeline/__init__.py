from clipstream_core.pipeline.states import (
    ProcessingState,
    Stage,
    check_transition,
    is_failed_code,
    next_state,
    status_code,
)
from clipstream_core.pipeline.types import (
    ErrorInfo,
    ErrorKind,
    OutcomeKind,
    ProcessingJob,
    StageOutput,
    StageResult,
    UploadCompletedEvent,
    Video,
    VideoReference,
    VideoStatus,
)

__all__ = [
    "ErrorInfo",
    "ErrorKind",
    "OutcomeKind",
    "ProcessingJob",
    "ProcessingState",
    "Stage",
    "StageOutput",
    "StageResult",
    "UploadCompletedEvent",
    "Video",
    "VideoReference",
    "VideoStatus",
    "check_transition",
    "is_failed_code",
    "next_state",
    "status_code",
]
