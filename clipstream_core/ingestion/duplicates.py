from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable

from clipstream_core.pipeline.states import ProcessingState
from clipstream_core.pipeline.types import Video

# Videos in these states can never serve as the canonical original. A failed
# original stays eligible: an operator can re-queue it.
NON_CANONICAL_STATES = frozenset(
    {
        ProcessingState.DUPLICATE,
        ProcessingState.CANCELLED,
    }
)

AWAITING_VERDICT_STATES = frozenset(
    {
        ProcessingState.UPLOADED,
        ProcessingState.DUPLICATE_CHECK,
    }
)


@dataclass(frozen=True)
class DuplicateVerdict:
    fingerprint: str
    canonical_id: str | None

    @property
    def is_duplicate(self) -> bool:
        return self.canonical_id is not None


def find_canonical(
    video_id: str,
    created_at: float,
    fingerprint: str,
    candidates: Iterable[Video],
) -> Video | None:
    """Earliest-created video with the same fingerprint, ties by smallest id.

    Only videos created before ``video_id`` qualify, so a later upload is
    always the duplicate of an earlier one and never the reverse.
    """
    own_key = (created_at, video_id)
    eligible = [
        candidate
        for candidate in candidates
        if candidate.video_id != video_id
        and candidate.fingerprint == fingerprint
        and candidate.state not in NON_CANONICAL_STATES
        and candidate.order_key() < own_key
    ]
    if not eligible:
        return None
    return min(eligible, key=lambda item: item.order_key())


def decide_duplicate(
    video_id: str,
    created_at: float,
    fingerprint: str,
    candidates: Iterable[Video],
) -> DuplicateVerdict:
    canonical = find_canonical(video_id, created_at, fingerprint, candidates)
    return DuplicateVerdict(
        fingerprint=fingerprint,
        canonical_id=canonical.video_id if canonical else None,
    )


def find_pending_predecessor(
    video_id: str,
    created_at: float,
    candidates: Iterable[Video],
) -> Video | None:
    """Earliest video created before ``video_id`` that has no verdict yet.

    A later upload must not be judged until every earlier one has a
    fingerprint, otherwise a retried check on the earlier video would let
    both copies through.
    """
    own_key = (created_at, video_id)
    waiting = [
        candidate
        for candidate in candidates
        if candidate.video_id != video_id
        and candidate.state in AWAITING_VERDICT_STATES
        and candidate.fingerprint is None
        and not candidate.cancel_requested
        and candidate.order_key() < own_key
    ]
    if not waiting:
        return None
    return min(waiting, key=lambda item: item.order_key())
