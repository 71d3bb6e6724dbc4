"""Processing states, stages and the legacy integer status projection.

Internally a video's progress is a :class:`ProcessingState`. External callers
only ever see the flattened integer code returned by :func:`status_code`.
"""

from __future__ import annotations

from enum import Enum

from clipstream_core.errors import InvalidTransitionError


class ProcessingState(str, Enum):
    UPLOADED = "uploaded"
    DUPLICATE_CHECK = "duplicate_check"
    TRANSCODING = "transcoding"
    TRANSCRIBING = "transcribing"
    ANALYZING = "analyzing"
    COMPLETE = "complete"
    DUPLICATE = "duplicate"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATES

    @property
    def stage(self) -> "Stage | None":
        return _STAGE_FOR_STATE.get(self)


class Stage(str, Enum):
    DUPLICATE_CHECK = "duplicate_check"
    TRANSCODE = "transcode"
    TRANSCRIBE = "transcribe"
    ANALYZE = "analyze"

    @property
    def state(self) -> ProcessingState:
        return _STATE_FOR_STAGE[self]


PIPELINE_ORDER: tuple[ProcessingState, ...] = (
    ProcessingState.UPLOADED,
    ProcessingState.DUPLICATE_CHECK,
    ProcessingState.TRANSCODING,
    ProcessingState.TRANSCRIBING,
    ProcessingState.ANALYZING,
    ProcessingState.COMPLETE,
)

TERMINAL_STATES = frozenset(
    {
        ProcessingState.COMPLETE,
        ProcessingState.DUPLICATE,
        ProcessingState.FAILED,
        ProcessingState.CANCELLED,
    }
)

ACTIVE_STATES = frozenset(
    {
        ProcessingState.DUPLICATE_CHECK,
        ProcessingState.TRANSCODING,
        ProcessingState.TRANSCRIBING,
        ProcessingState.ANALYZING,
    }
)

_STATE_FOR_STAGE: dict[Stage, ProcessingState] = {
    Stage.DUPLICATE_CHECK: ProcessingState.DUPLICATE_CHECK,
    Stage.TRANSCODE: ProcessingState.TRANSCODING,
    Stage.TRANSCRIBE: ProcessingState.TRANSCRIBING,
    Stage.ANALYZE: ProcessingState.ANALYZING,
}
_STAGE_FOR_STATE: dict[ProcessingState, Stage] = {
    state: stage for stage, state in _STATE_FOR_STAGE.items()
}

STATUS_COMPLETE = 0
STATUS_DUPLICATE = -1
STATUS_FAILED = -2
STATUS_CANCELLED = -3

_STATUS_CODES: dict[ProcessingState, int] = {
    ProcessingState.UPLOADED: 1,
    ProcessingState.DUPLICATE_CHECK: 1,
    ProcessingState.TRANSCODING: 2,
    ProcessingState.TRANSCRIBING: 3,
    ProcessingState.ANALYZING: 4,
    ProcessingState.COMPLETE: STATUS_COMPLETE,
    ProcessingState.DUPLICATE: STATUS_DUPLICATE,
    ProcessingState.FAILED: STATUS_FAILED,
    ProcessingState.CANCELLED: STATUS_CANCELLED,
}


def status_code(state: ProcessingState) -> int:
    """Project an internal state onto the stable external integer code."""
    return _STATUS_CODES[state]


def is_failed_code(code: int) -> bool:
    """Any negative code other than the duplicate marker, or an unknown code."""
    if code == STATUS_DUPLICATE:
        return False
    return code < 0 or code > 4


def next_state(state: ProcessingState) -> ProcessingState:
    """The state that follows a successful stage, in pipeline order."""
    if state.is_terminal:
        raise InvalidTransitionError(f"{state.value} is terminal")
    index = PIPELINE_ORDER.index(state)
    return PIPELINE_ORDER[index + 1]


def check_transition(current: ProcessingState, target: ProcessingState) -> None:
    """Raise when ``current -> target`` is not an allowed forward transition.

    The operator re-queue from ``failed`` is the only backwards move and does
    not go through this check.
    """
    if current.is_terminal:
        raise InvalidTransitionError(
            f"Cannot leave terminal state {current.value} for {target.value}"
        )
    if target in (ProcessingState.FAILED, ProcessingState.CANCELLED):
        return
    if target is ProcessingState.DUPLICATE:
        if current is not ProcessingState.DUPLICATE_CHECK:
            raise InvalidTransitionError(
                f"duplicate is only reachable from duplicate_check, not {current.value}"
            )
        return
    if target is not next_state(current):
        raise InvalidTransitionError(
            f"Illegal transition {current.value} -> {target.value}"
        )
