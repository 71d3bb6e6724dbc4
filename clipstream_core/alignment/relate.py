from __future__ import annotations

import math
from dataclasses import dataclass
from typing import TYPE_CHECKING

import numpy as np

from clipstream_core.alignment.dtw import Alignment, dtw, subsequence_dtw
from clipstream_core.embeddings.edges import EdgeKind, RelationshipEdge
from clipstream_core.logging import get_logger

if TYPE_CHECKING:
    from clipstream_core.config import Config
    from clipstream_core.embeddings.store import EmbeddingStore, VideoEmbedding

logger = get_logger(__name__)


@dataclass(frozen=True)
class AlignmentRules:
    metric: str = "cosine"
    trimmed_cost_threshold: float = 0.1
    trimmed_min_span_ratio: float = 0.5
    pov_cost_threshold: float = 0.25
    pov_duration_tolerance: float = 0.1
    pov_max_deviation_ratio: float = 0.2

    @classmethod
    def from_config(cls, config: "Config") -> "AlignmentRules":
        return cls(
            metric=config.alignment_metric,
            trimmed_cost_threshold=config.trimmed_cost_threshold,
            trimmed_min_span_ratio=config.trimmed_min_span_ratio,
            pov_cost_threshold=config.pov_cost_threshold,
            pov_duration_tolerance=config.pov_duration_tolerance,
            pov_max_deviation_ratio=config.pov_max_deviation_ratio,
        )


def comparable_duration(m: int, n: int, tolerance: float) -> bool:
    longest = max(m, n)
    if longest == 0:
        return False
    return abs(m - n) / longest <= tolerance


def match_trimmed(
    clip: np.ndarray,
    source: np.ndarray,
    rules: AlignmentRules,
) -> Alignment | None:
    """Alignment of ``clip`` inside ``source`` when the clip was cut from it."""
    m, n = clip.shape[0], source.shape[0]
    if m >= n:
        return None
    alignment = subsequence_dtw(clip, source, rules.metric)
    if alignment.normalized_cost >= rules.trimmed_cost_threshold:
        return None
    if alignment.span < math.ceil(m * rules.trimmed_min_span_ratio):
        return None
    return alignment


def match_pov(
    a: np.ndarray,
    b: np.ndarray,
    rules: AlignmentRules,
) -> Alignment | None:
    """Alignment of two recordings of the same moment from different players."""
    if not comparable_duration(a.shape[0], b.shape[0], rules.pov_duration_tolerance):
        return None
    alignment = dtw(a, b, rules.metric)
    if alignment.normalized_cost >= rules.pov_cost_threshold:
        return None
    if alignment.deviation_ratio > rules.pov_max_deviation_ratio:
        return None
    return alignment


def classify_pair(
    entry: "VideoEmbedding",
    other: "VideoEmbedding",
    rules: AlignmentRules,
) -> RelationshipEdge | None:
    """The most specific alignment relationship between two videos, if any.

    A trimmed-from match wins over pov. Whole-clip similarity is decided by
    the caller from index distances.
    """
    m, n = entry.window_count, other.window_count
    if m < n:
        alignment = match_trimmed(entry.segments, other.segments, rules)
        if alignment is not None:
            return _trimmed_edge(entry.video_id, other.video_id, alignment)
    elif n < m:
        alignment = match_trimmed(other.segments, entry.segments, rules)
        if alignment is not None:
            return _trimmed_edge(other.video_id, entry.video_id, alignment)

    alignment = match_pov(entry.segments, other.segments, rules)
    if alignment is not None:
        return RelationshipEdge(
            video_a=entry.video_id,
            video_b=other.video_id,
            kind=EdgeKind.POV,
            score=alignment.normalized_cost,
            dtw_cost=alignment.normalized_cost,
        )
    return None


def _trimmed_edge(clip_id: str, source_id: str, alignment: Alignment) -> RelationshipEdge:
    return RelationshipEdge(
        video_a=clip_id,
        video_b=source_id,
        kind=EdgeKind.TRIMMED_FROM,
        score=alignment.normalized_cost,
        offset=alignment.start,
        dtw_cost=alignment.normalized_cost,
    )


class RelationshipFinder:
    """Relates a freshly analyzed video to the rest of the catalog.

    Alignment only runs against the index shortlist. Neighbours closer than
    the similarity threshold that match no alignment rule become ``similar``.
    """

    def __init__(
        self,
        store: "EmbeddingStore",
        rules: AlignmentRules,
        *,
        similarity_threshold: float,
        shortlist_k: int,
    ) -> None:
        self.store = store
        self.rules = rules
        self.similarity_threshold = similarity_threshold
        self.shortlist_k = shortlist_k

    def relate(self, video_id: str) -> list[RelationshipEdge]:
        entry = self.store.get(video_id)
        if entry is None:
            return []
        index = self.store.index
        shortlist = index.query(entry.clip_vector, self.shortlist_k, exclude={video_id})
        close = {
            neighbor.video_id: neighbor
            for neighbor in index.within(
                entry.clip_vector, self.similarity_threshold, exclude={video_id}
            )
        }

        edges: list[RelationshipEdge] = []
        aligned: set[str] = set()
        for neighbor in shortlist:
            other = self.store.get(neighbor.video_id)
            if other is None:
                continue
            edge = classify_pair(entry, other, self.rules)
            if edge is not None:
                edges.append(edge)
                aligned.add(neighbor.video_id)

        for other_id, neighbor in close.items():
            if other_id in aligned:
                continue
            edges.append(
                RelationshipEdge(
                    video_a=video_id,
                    video_b=other_id,
                    kind=EdgeKind.SIMILAR,
                    score=neighbor.distance,
                )
            )

        for edge in edges:
            self.store.record_edge(edge)
        logger.info(
            "Related video",
            extra={
                "video_id": video_id,
                "shortlist_size": len(shortlist),
                "edge_count": len(edges),
            },
        )
        return edges
