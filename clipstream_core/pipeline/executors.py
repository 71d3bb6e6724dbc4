from __future__ import annotations

import re
import time
from typing import Mapping, Protocol

from clipstream_core.errors import PermanentError, RecoverableError
from clipstream_core.logging import get_logger
from clipstream_core.pipeline.states import Stage
from clipstream_core.pipeline.types import (
    ErrorInfo,
    ErrorKind,
    OutcomeKind,
    StageOutput,
    StageResult,
    VideoReference,
)

logger = get_logger(__name__)

_MAX_ERROR_MESSAGE = 500
_CAMEL_RE = re.compile(r"(?<!^)(?=[A-Z])")


class StageExecutor(Protocol):
    stage: Stage

    def execute(
        self,
        video: VideoReference,
        prior_outputs: Mapping[str, str],
    ) -> StageOutput: ...


def _error_code(exc: BaseException) -> str:
    name = type(exc).__name__
    if name.endswith("Error") and name != "Error":
        name = name[: -len("Error")]
    return _CAMEL_RE.sub("_", name).upper()


def _error_message(exc: BaseException) -> str:
    message = str(exc).strip() or type(exc).__name__
    if len(message) > _MAX_ERROR_MESSAGE:
        message = message[: _MAX_ERROR_MESSAGE - 3] + "..."
    return message


def run_stage(
    executor: StageExecutor,
    video: VideoReference,
    prior_outputs: Mapping[str, str],
) -> StageResult:
    """Run one executor and classify every outcome.

    Nothing raised by the executor escapes this boundary; unexpected
    exceptions are reported as retryable.
    """
    start = time.perf_counter()

    def _elapsed() -> float:
        return round((time.perf_counter() - start) * 1000.0, 2)

    try:
        output = executor.execute(video, prior_outputs)
    except PermanentError as exc:
        return StageResult(
            kind=OutcomeKind.FATAL,
            error=ErrorInfo(
                kind=ErrorKind.FATAL,
                code=_error_code(exc),
                message=_error_message(exc),
            ),
            duration_ms=_elapsed(),
        )
    except RecoverableError as exc:
        return StageResult(
            kind=OutcomeKind.RETRYABLE,
            error=ErrorInfo(
                kind=ErrorKind.RETRYABLE,
                code=_error_code(exc),
                message=_error_message(exc),
            ),
            duration_ms=_elapsed(),
        )
    except Exception as exc:
        logger.exception(
            "Stage executor raised unexpected error",
            extra={"video_id": video.video_id, "stage": executor.stage.value},
        )
        return StageResult(
            kind=OutcomeKind.RETRYABLE,
            error=ErrorInfo(
                kind=ErrorKind.RETRYABLE,
                code="UNEXPECTED",
                message=_error_message(exc),
            ),
            duration_ms=_elapsed(),
        )
    return StageResult(kind=OutcomeKind.SUCCEEDED, output=output, duration_ms=_elapsed())


class ExecutorRegistry:
    def __init__(self, executors: Mapping[Stage, StageExecutor] | None = None) -> None:
        self._executors: dict[Stage, StageExecutor] = dict(executors or {})

    def register(self, executor: StageExecutor) -> None:
        self._executors[executor.stage] = executor

    def get(self, stage: Stage) -> StageExecutor:
        executor = self._executors.get(stage)
        if executor is None:
            raise KeyError(f"No executor registered for stage {stage.value}")
        return executor

    def stages(self) -> list[Stage]:
        return list(self._executors)
