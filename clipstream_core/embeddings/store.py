from __future__ import annotations

import threading
from dataclasses import dataclass
from typing import Sequence

import numpy as np
import pyarrow as pa

from clipstream_core.embeddings.edges import EdgeKind, EdgeLog, RelationshipEdge
from clipstream_core.errors import DimensionMismatchError, RecoverableError
from clipstream_core.logging import get_logger
from clipstream_core.similarity.distance import as_matrix, as_vector
from clipstream_core.similarity.index import Neighbor, SimilarityIndex
from clipstream_core.storage.object_store import ObjectStore
from clipstream_core.storage.paths import EMBEDDINGS_PREFIX, embeddings_key
from clipstream_core.storage.writer import read_parquet, write_parquet

logger = get_logger(__name__)

EMBEDDING_SCHEMA = pa.schema(
    [
        ("video_id", pa.string()),
        ("kind", pa.string()),
        ("window_index", pa.int32()),
        ("start_seconds", pa.float64()),
        ("vector", pa.list_(pa.float64())),
    ]
)


def _read_only(array: np.ndarray) -> np.ndarray:
    array.setflags(write=False)
    return array


@dataclass(frozen=True)
class VideoEmbedding:
    video_id: str
    created_at: float
    clip_vector: np.ndarray
    segments: np.ndarray
    window_seconds: float

    @property
    def window_count(self) -> int:
        return int(self.segments.shape[0])

    @property
    def dim(self) -> int:
        return int(self.segments.shape[1])


@dataclass(frozen=True)
class TimelineEntry:
    """A clip placed on its source video's timeline."""

    video_id: str
    offset_windows: int
    start_seconds: float
    end_seconds: float
    dtw_cost: float | None


class EmbeddingStore:
    """Append-only store of clip and per-window embeddings.

    Entries are built completely, persisted, and only then published to the
    in-memory map and the similarity index, so readers never observe a
    partially written video. All relationship edges are written through here.
    """

    def __init__(
        self,
        index: SimilarityIndex,
        edges: EdgeLog,
        *,
        object_store: ObjectStore | None = None,
        dim: int | None = None,
        window_seconds: float = 1.0,
    ) -> None:
        self.index = index
        self.edges = edges
        self.object_store = object_store
        self.dim = dim
        self.window_seconds = window_seconds
        self._lock = threading.RLock()
        self._entries: dict[str, VideoEmbedding] = {}

    def insert(
        self,
        video_id: str,
        segments: Sequence[Sequence[float]] | np.ndarray,
        created_at: float,
        *,
        clip_vector: Sequence[float] | np.ndarray | None = None,
        window_seconds: float | None = None,
        persist: bool = True,
    ) -> VideoEmbedding:
        """Store embeddings for ``video_id``; a second insert returns the first."""
        existing = self._entries.get(video_id)
        if existing is not None:
            return existing
        matrix = as_matrix(segments, self.dim)
        if clip_vector is None:
            vector = matrix.mean(axis=0)
        else:
            vector = as_vector(clip_vector, matrix.shape[1])
        entry = VideoEmbedding(
            video_id=video_id,
            created_at=created_at,
            clip_vector=_read_only(np.array(vector, dtype=np.float64)),
            segments=_read_only(np.array(matrix, dtype=np.float64)),
            window_seconds=window_seconds or self.window_seconds,
        )
        with self._lock:
            existing = self._entries.get(video_id)
            if existing is not None:
                return existing
            if self.dim is None:
                self.dim = entry.dim
            elif entry.dim != self.dim:
                raise DimensionMismatchError(
                    f"Expected embeddings of dimension {self.dim}, got {entry.dim}"
                )
            if persist and self.object_store is not None:
                self._persist(self.object_store, entry)
            self._entries[video_id] = entry
            self.index.add(video_id, entry.clip_vector, created_at)
        return entry

    def get(self, video_id: str) -> VideoEmbedding | None:
        return self._entries.get(video_id)

    def __contains__(self, video_id: object) -> bool:
        return video_id in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def nearest(self, video_id: str, k: int) -> list[Neighbor]:
        entry = self.get(video_id)
        if entry is None:
            return []
        return self.index.query(entry.clip_vector, k, exclude={video_id})

    def record_edge(self, edge: RelationshipEdge) -> bool:
        created = self.edges.upsert(edge)
        if created:
            logger.info(
                "Recorded relationship edge",
                extra={"video_id": edge.video_a, "edge_kind": edge.kind.value},
            )
        return created

    def count_by_kind(self) -> dict[str, int]:
        return self.edges.count_by_kind()

    def relationships(
        self,
        video_id: str,
        kind: EdgeKind | None = None,
    ) -> list[RelationshipEdge]:
        return self.edges.edges_for(video_id, kind)

    def duplicate_of(self, video_id: str) -> str | None:
        edge = self.edges.duplicate_of(video_id)
        return edge.video_b if edge else None

    def trimmed_clips(self, source_id: str) -> list[TimelineEntry]:
        """Clips cut from ``source_id``, ordered by where they start."""
        entries: list[TimelineEntry] = []
        for edge in self.edges.edges_for(source_id, EdgeKind.TRIMMED_FROM):
            if edge.video_b != source_id:
                continue
            clip = self.get(edge.video_a)
            window_seconds = clip.window_seconds if clip else self.window_seconds
            length = clip.window_count if clip else 0
            offset = edge.offset or 0
            entries.append(
                TimelineEntry(
                    video_id=edge.video_a,
                    offset_windows=offset,
                    start_seconds=offset * window_seconds,
                    end_seconds=(offset + length) * window_seconds,
                    dtw_cost=edge.dtw_cost,
                )
            )
        return sorted(entries, key=lambda item: (item.offset_windows, item.video_id))

    def load(self, video_id: str) -> VideoEmbedding | None:
        """Reload a persisted entry into memory and the index."""
        existing = self.get(video_id)
        if existing is not None:
            return existing
        if self.object_store is None:
            return None
        key = embeddings_key(video_id)
        if not self.object_store.exists(key):
            return None
        try:
            table = read_parquet(self.object_store, key)
        except Exception as exc:
            raise RecoverableError(
                f"Failed reading embeddings for {video_id}: {exc}"
            ) from exc
        metadata = table.schema.metadata or {}
        created_at = float(metadata.get(b"created_at", b"0"))
        window_seconds = float(
            metadata.get(b"window_seconds", repr(self.window_seconds).encode())
        )
        clip_vector = None
        windows: list[tuple[int, list[float]]] = []
        for row in table.to_pylist():
            if row["kind"] == "clip":
                clip_vector = row["vector"]
            else:
                windows.append((row["window_index"], row["vector"]))
        if not windows:
            return None
        windows.sort(key=lambda item: item[0])
        return self.insert(
            video_id,
            [vector for _, vector in windows],
            created_at,
            clip_vector=clip_vector,
            window_seconds=window_seconds,
            persist=False,
        )

    def load_all(self) -> int:
        if self.object_store is None:
            return 0
        loaded = 0
        for key in self.object_store.list_keys(EMBEDDINGS_PREFIX):
            video_id = key.rsplit("/", 1)[-1]
            if video_id in self:
                continue
            if self.load(video_id) is not None:
                loaded += 1
        return loaded

    def _persist(self, object_store: ObjectStore, entry: VideoEmbedding) -> None:
        rows: list[dict[str, object]] = [
            {
                "video_id": entry.video_id,
                "kind": "clip",
                "window_index": -1,
                "start_seconds": 0.0,
                "vector": entry.clip_vector.tolist(),
            }
        ]
        for index, vector in enumerate(entry.segments):
            rows.append(
                {
                    "video_id": entry.video_id,
                    "kind": "window",
                    "window_index": index,
                    "start_seconds": index * entry.window_seconds,
                    "vector": vector.tolist(),
                }
            )
        schema = EMBEDDING_SCHEMA.with_metadata(
            {
                "created_at": repr(entry.created_at),
                "window_seconds": repr(entry.window_seconds),
                "dim": str(entry.dim),
            }
        )
        write_parquet(rows, schema, object_store, embeddings_key(entry.video_id))
