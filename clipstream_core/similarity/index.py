from __future__ import annotations

import threading
from dataclasses import dataclass
from typing import Collection, Protocol, Sequence

import numpy as np

from clipstream_core.errors import DimensionMismatchError
from clipstream_core.similarity.distance import as_vector, check_metric, distances_to


@dataclass(frozen=True)
class Neighbor:
    video_id: str
    distance: float
    created_at: float


class SimilarityIndex(Protocol):
    """Nearest-neighbour lookup over whole-clip embeddings.

    Results are ordered by ascending distance, ties by earliest-created video
    and then by id. Implementations may be exact or approximate.
    """

    metric: str

    def add(self, video_id: str, vector: Sequence[float], created_at: float) -> bool: ...

    def query(
        self,
        vector: Sequence[float],
        k: int,
        exclude: Collection[str] = (),
    ) -> list[Neighbor]: ...

    def within(
        self,
        vector: Sequence[float],
        threshold: float,
        exclude: Collection[str] = (),
    ) -> list[Neighbor]: ...

    def __contains__(self, video_id: object) -> bool: ...

    def __len__(self) -> int: ...


@dataclass(frozen=True)
class _Snapshot:
    ids: tuple[str, ...]
    created: np.ndarray
    matrix: np.ndarray
    count: int


class BruteForceIndex:
    """Exact linear scan.

    Rows are written into spare capacity before a new snapshot publishing the
    larger count is swapped in, so a concurrent reader only ever sees complete
    rows and inserts never require a rebuild.
    """

    def __init__(self, metric: str = "cosine", dim: int | None = None) -> None:
        self.metric = check_metric(metric)
        self.dim = dim
        self._lock = threading.Lock()
        self._positions: dict[str, int] = {}
        self._snapshot: _Snapshot | None = None

    def add(self, video_id: str, vector: Sequence[float], created_at: float) -> bool:
        row = as_vector(vector, self.dim)
        with self._lock:
            if video_id in self._positions:
                return False
            if self.dim is None:
                self.dim = row.shape[0]
            snapshot = self._snapshot
            if snapshot is None:
                matrix = np.zeros((16, row.shape[0]), dtype=np.float64)
                created = np.zeros(16, dtype=np.float64)
                ids: tuple[str, ...] = ()
                count = 0
            else:
                matrix, created = snapshot.matrix, snapshot.created
                ids, count = snapshot.ids, snapshot.count
            if count == matrix.shape[0]:
                capacity = max(16, count * 2)
                grown = np.zeros((capacity, matrix.shape[1]), dtype=np.float64)
                grown[:count] = matrix[:count]
                grown_created = np.zeros(capacity, dtype=np.float64)
                grown_created[:count] = created[:count]
                matrix, created = grown, grown_created
            matrix[count] = row
            created[count] = created_at
            self._snapshot = _Snapshot(
                ids=ids + (video_id,),
                created=created,
                matrix=matrix,
                count=count + 1,
            )
            self._positions[video_id] = count
            return True

    def query(
        self,
        vector: Sequence[float],
        k: int,
        exclude: Collection[str] = (),
    ) -> list[Neighbor]:
        if k <= 0:
            return []
        return self._ranked(vector, exclude)[:k]

    def within(
        self,
        vector: Sequence[float],
        threshold: float,
        exclude: Collection[str] = (),
    ) -> list[Neighbor]:
        return [
            neighbor
            for neighbor in self._ranked(vector, exclude)
            if neighbor.distance < threshold
        ]

    def vector(self, video_id: str) -> np.ndarray | None:
        snapshot = self._snapshot
        position = self._positions.get(video_id)
        if snapshot is None or position is None or position >= snapshot.count:
            return None
        return snapshot.matrix[position].copy()

    def __contains__(self, video_id: object) -> bool:
        return video_id in self._positions

    def __len__(self) -> int:
        snapshot = self._snapshot
        return snapshot.count if snapshot else 0

    def _ranked(
        self,
        vector: Sequence[float],
        exclude: Collection[str],
    ) -> list[Neighbor]:
        snapshot = self._snapshot
        if snapshot is None or snapshot.count == 0:
            return []
        query = as_vector(vector)
        if query.shape[0] != snapshot.matrix.shape[1]:
            raise DimensionMismatchError(
                f"Query dimension {query.shape[0]} does not match index "
                f"dimension {snapshot.matrix.shape[1]}"
            )
        count = snapshot.count
        dists = distances_to(query, snapshot.matrix[:count], self.metric)
        created = snapshot.created[:count]
        ids = np.array(snapshot.ids[:count])
        order = np.lexsort((ids, created, dists))
        excluded = set(exclude)
        results: list[Neighbor] = []
        for position in order:
            video_id = snapshot.ids[int(position)]
            if video_id in excluded:
                continue
            results.append(
                Neighbor(
                    video_id=video_id,
                    distance=float(dists[position]),
                    created_at=float(created[position]),
                )
            )
        return results
