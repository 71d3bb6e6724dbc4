"""Dynamic Time Warping over per-window embedding sequences.

Two variants share one recurrence::

    C[i][j] = d(A[i], B[j]) + min(C[i-1][j], C[i][j-1], C[i-1][j-1])

* :func:`dtw` anchors both ends: the path runs from ``(0, 0)`` to
  ``(m-1, n-1)`` and the first row and column accumulate monotonically.
* :func:`subsequence_dtw` leaves the start and end open along ``B``: the
  first row is not accumulated and the end column is chosen by minimum
  normalized cost, so ``A`` may align to any contiguous span of ``B``.

Only two rows are kept in memory. Each cell carries the statistics the
relationship rules need (path length, start column, horizontal and vertical
step counts), so the full matrix is only built by :func:`warping_path`.
Costs are normalized by path length to remove the bias towards short
sequences. When predecessors tie, the diagonal step wins, then the vertical
one.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Sequence

import numpy as np

from clipstream_core.errors import DimensionMismatchError
from clipstream_core.similarity.distance import as_matrix, check_metric, distances_to


@dataclass(frozen=True)
class Alignment:
    cost: float
    path_length: int
    start: int
    end: int
    horizontal_steps: int
    vertical_steps: int
    rows: int
    columns: int

    @property
    def normalized_cost(self) -> float:
        return self.cost / self.path_length

    @property
    def diagonal_steps(self) -> int:
        return self.path_length - 1 - self.horizontal_steps - self.vertical_steps

    @property
    def span(self) -> int:
        """Number of reference columns covered by the path."""
        return self.end - self.start + 1

    @property
    def deviation_ratio(self) -> float:
        """Share of path steps that leave the diagonal."""
        steps = self.path_length - 1
        if steps <= 0:
            return 0.0
        return (self.horizontal_steps + self.vertical_steps) / steps


def _prepare(
    a: Sequence[Sequence[float]] | np.ndarray,
    b: Sequence[Sequence[float]] | np.ndarray,
    metric: str,
) -> tuple[np.ndarray, np.ndarray]:
    check_metric(metric)
    left = as_matrix(a)
    right = as_matrix(b)
    if left.shape[1] != right.shape[1]:
        raise DimensionMismatchError(
            f"Sequences have different dimensions: {left.shape[1]} vs {right.shape[1]}"
        )
    return left, right


def _accumulate(
    a: np.ndarray,
    b: np.ndarray,
    metric: str,
    open_begin: bool,
) -> tuple[list[float], list[int], list[int], list[int], list[int]]:
    n = b.shape[0]
    first = distances_to(a[0], b, metric).tolist()

    if open_begin:
        cost = first
        start = list(range(n))
        length = [1] * n
        horiz = [0] * n
    else:
        cost = [0.0] * n
        running = 0.0
        for j, value in enumerate(first):
            running += value
            cost[j] = running
        start = [0] * n
        length = [j + 1 for j in range(n)]
        horiz = list(range(n))
    vert = [0] * n

    for i in range(1, a.shape[0]):
        row = distances_to(a[i], b, metric).tolist()
        cur_cost = [0.0] * n
        cur_start = [0] * n
        cur_length = [0] * n
        cur_horiz = [0] * n
        cur_vert = [0] * n

        cur_cost[0] = cost[0] + row[0]
        cur_start[0] = start[0]
        cur_length[0] = length[0] + 1
        cur_horiz[0] = horiz[0]
        cur_vert[0] = vert[0] + 1

        for j in range(1, n):
            diag = cost[j - 1]
            up = cost[j]
            left = cur_cost[j - 1]
            if diag <= up and diag <= left:
                cur_cost[j] = diag + row[j]
                cur_start[j] = start[j - 1]
                cur_length[j] = length[j - 1] + 1
                cur_horiz[j] = horiz[j - 1]
                cur_vert[j] = vert[j - 1]
            elif up <= left:
                cur_cost[j] = up + row[j]
                cur_start[j] = start[j]
                cur_length[j] = length[j] + 1
                cur_horiz[j] = horiz[j]
                cur_vert[j] = vert[j] + 1
            else:
                cur_cost[j] = left + row[j]
                cur_start[j] = cur_start[j - 1]
                cur_length[j] = cur_length[j - 1] + 1
                cur_horiz[j] = cur_horiz[j - 1] + 1
                cur_vert[j] = cur_vert[j - 1]

        cost, start, length = cur_cost, cur_start, cur_length
        horiz, vert = cur_horiz, cur_vert

    return cost, start, length, horiz, vert


def dtw(
    a: Sequence[Sequence[float]] | np.ndarray,
    b: Sequence[Sequence[float]] | np.ndarray,
    metric: str = "euclidean",
) -> Alignment:
    left, right = _prepare(a, b, metric)
    cost, start, length, horiz, vert = _accumulate(left, right, metric, False)
    end = right.shape[0] - 1
    return Alignment(
        cost=cost[end],
        path_length=length[end],
        start=start[end],
        end=end,
        horizontal_steps=horiz[end],
        vertical_steps=vert[end],
        rows=left.shape[0],
        columns=right.shape[0],
    )


def subsequence_dtw(
    a: Sequence[Sequence[float]] | np.ndarray,
    b: Sequence[Sequence[float]] | np.ndarray,
    metric: str = "euclidean",
) -> Alignment:
    left, right = _prepare(a, b, metric)
    cost, start, length, horiz, vert = _accumulate(left, right, metric, True)
    end = 0
    best = cost[0] / length[0]
    for j in range(1, right.shape[0]):
        value = cost[j] / length[j]
        if value < best:
            best = value
            end = j
    return Alignment(
        cost=cost[end],
        path_length=length[end],
        start=start[end],
        end=end,
        horizontal_steps=horiz[end],
        vertical_steps=vert[end],
        rows=left.shape[0],
        columns=right.shape[0],
    )


def dtw_distance(
    a: Sequence[Sequence[float]] | np.ndarray,
    b: Sequence[Sequence[float]] | np.ndarray,
    metric: str = "euclidean",
) -> float:
    return dtw(a, b, metric).normalized_cost


def warping_path(
    a: Sequence[Sequence[float]] | np.ndarray,
    b: Sequence[Sequence[float]] | np.ndarray,
    metric: str = "euclidean",
    *,
    subsequence: bool = False,
) -> list[tuple[int, int]]:
    """Materialize the full cost matrix and backtrack the optimal path."""
    left, right = _prepare(a, b, metric)
    m, n = left.shape[0], right.shape[0]
    local = np.vstack([distances_to(left[i], right, metric) for i in range(m)])
    acc = np.zeros((m, n), dtype=np.float64)
    steps = np.ones((m, n), dtype=np.int64)
    acc[0] = local[0] if subsequence else np.cumsum(local[0])
    if not subsequence:
        steps[0] = np.arange(1, n + 1)
    for i in range(1, m):
        acc[i, 0] = acc[i - 1, 0] + local[i, 0]
        steps[i, 0] = steps[i - 1, 0] + 1
        for j in range(1, n):
            diag, up, left_cost = acc[i - 1, j - 1], acc[i - 1, j], acc[i, j - 1]
            if diag <= up and diag <= left_cost:
                acc[i, j] = diag + local[i, j]
                steps[i, j] = steps[i - 1, j - 1] + 1
            elif up <= left_cost:
                acc[i, j] = up + local[i, j]
                steps[i, j] = steps[i - 1, j] + 1
            else:
                acc[i, j] = left_cost + local[i, j]
                steps[i, j] = steps[i, j - 1] + 1

    if subsequence:
        normalized = acc[m - 1] / steps[m - 1]
        j = int(np.argmin(normalized))
    else:
        j = n - 1
    i = m - 1
    path = [(i, j)]
    while i > 0 or j > 0:
        if i == 0:
            if subsequence:
                break
            j -= 1
        elif j == 0:
            i -= 1
        else:
            diag, up, left_cost = acc[i - 1, j - 1], acc[i - 1, j], acc[i, j - 1]
            if diag <= up and diag <= left_cost:
                i, j = i - 1, j - 1
            elif up <= left_cost:
                i -= 1
            else:
                j -= 1
        path.append((i, j))
    path.reverse()
    return path
