from __future__ import annotations

from typing import Sequence

import numpy as np

from clipstream_core.errors import DimensionMismatchError, ValidationError

METRICS = ("euclidean", "cosine")


def check_metric(metric: str) -> str:
    if metric not in METRICS:
        raise ValidationError(f"Unsupported distance metric: {metric}")
    return metric


def as_vector(values: Sequence[float] | np.ndarray, dim: int | None = None) -> np.ndarray:
    vector = np.asarray(values, dtype=np.float64)
    if vector.ndim != 1 or vector.size == 0:
        raise ValidationError("Embedding must be a non-empty 1-D vector")
    if dim is not None and vector.shape[0] != dim:
        raise DimensionMismatchError(
            f"Expected embedding of dimension {dim}, got {vector.shape[0]}"
        )
    if not np.all(np.isfinite(vector)):
        raise ValidationError("Embedding contains non-finite values")
    return vector


def as_matrix(
    rows: Sequence[Sequence[float]] | np.ndarray,
    dim: int | None = None,
) -> np.ndarray:
    matrix = np.asarray(rows, dtype=np.float64)
    if matrix.ndim != 2 or matrix.shape[0] == 0 or matrix.shape[1] == 0:
        raise ValidationError("Embedding sequence must be a non-empty 2-D array")
    if dim is not None and matrix.shape[1] != dim:
        raise DimensionMismatchError(
            f"Expected embeddings of dimension {dim}, got {matrix.shape[1]}"
        )
    if not np.all(np.isfinite(matrix)):
        raise ValidationError("Embedding sequence contains non-finite values")
    return matrix


def distances_to(query: np.ndarray, matrix: np.ndarray, metric: str) -> np.ndarray:
    """Distance from ``query`` to every row of ``matrix``."""
    if matrix.shape[0] == 0:
        return np.zeros(0, dtype=np.float64)
    if query.shape[0] != matrix.shape[1]:
        raise DimensionMismatchError(
            f"Query dimension {query.shape[0]} does not match {matrix.shape[1]}"
        )
    if metric == "euclidean":
        return np.linalg.norm(matrix - query, axis=1)
    if metric == "cosine":
        row_norms = np.linalg.norm(matrix, axis=1)
        query_norm = float(np.linalg.norm(query))
        denom = row_norms * query_norm
        dots = matrix @ query
        with np.errstate(divide="ignore", invalid="ignore"):
            similarity = np.where(denom > 0.0, dots / denom, 0.0)
        return np.clip(1.0 - similarity, 0.0, 2.0)
    raise ValidationError(f"Unsupported distance metric: {metric}")


def distance(a: np.ndarray, b: np.ndarray, metric: str) -> float:
    return float(distances_to(a, b.reshape(1, -1), metric)[0])
