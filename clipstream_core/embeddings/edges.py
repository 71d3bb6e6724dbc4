from __future__ import annotations

import sqlite3
import threading
import time
from dataclasses import dataclass, replace
from enum import Enum
from pathlib import Path
from typing import Protocol

from clipstream_core.errors import RecoverableError, ValidationError


class EdgeKind(str, Enum):
    DUPLICATE = "duplicate"
    SIMILAR = "similar"
    POV = "pov"
    TRIMMED_FROM = "trimmed-from"

    @property
    def directed(self) -> bool:
        return self in (EdgeKind.DUPLICATE, EdgeKind.TRIMMED_FROM)


@dataclass(frozen=True)
class RelationshipEdge:
    """``video_a -> video_b``; for directed kinds ``video_a`` is the copy or clip."""

    video_a: str
    video_b: str
    kind: EdgeKind
    score: float
    offset: int | None = None
    dtw_cost: float | None = None
    created_at: float | None = None

    def normalized(self) -> "RelationshipEdge":
        if self.video_a == self.video_b:
            raise ValidationError("A video cannot be related to itself")
        if self.kind is not EdgeKind.TRIMMED_FROM and self.offset is not None:
            raise ValidationError("Only trimmed-from edges carry an offset")
        if self.kind.directed or self.video_a < self.video_b:
            return self
        return replace(self, video_a=self.video_b, video_b=self.video_a)

    def involves(self, video_id: str) -> bool:
        return video_id in (self.video_a, self.video_b)

    def other(self, video_id: str) -> str:
        return self.video_b if self.video_a == video_id else self.video_a


class EdgeLog(Protocol):
    def upsert(self, edge: RelationshipEdge) -> bool: ...

    def edges_for(
        self,
        video_id: str,
        kind: EdgeKind | None = None,
    ) -> list[RelationshipEdge]: ...

    def duplicate_of(self, video_id: str) -> RelationshipEdge | None: ...

    def count_by_kind(self) -> dict[str, int]: ...


def _check_duplicate(existing: RelationshipEdge | None, edge: RelationshipEdge) -> bool:
    """True when the duplicate edge should be written."""
    if existing is None:
        return True
    if existing.video_b != edge.video_b:
        raise ValidationError(
            f"{edge.video_a} is already a duplicate of {existing.video_b}"
        )
    return False


class InMemoryEdgeLog:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._edges: dict[tuple[str, str, EdgeKind], RelationshipEdge] = {}

    def upsert(self, edge: RelationshipEdge) -> bool:
        edge = edge.normalized()
        if edge.created_at is None:
            edge = replace(edge, created_at=time.time())
        with self._lock:
            if edge.kind is EdgeKind.DUPLICATE:
                if not _check_duplicate(self._duplicate_of(edge.video_a), edge):
                    return False
            key = (edge.video_a, edge.video_b, edge.kind)
            existing = self._edges.get(key)
            if existing is not None:
                edge = replace(edge, created_at=existing.created_at)
            self._edges[key] = edge
            return existing is None

    def edges_for(
        self,
        video_id: str,
        kind: EdgeKind | None = None,
    ) -> list[RelationshipEdge]:
        with self._lock:
            edges = [
                edge
                for edge in self._edges.values()
                if edge.involves(video_id) and (kind is None or edge.kind is kind)
            ]
        return sorted(
            edges,
            key=lambda item: (item.kind.value, item.score, item.video_a, item.video_b),
        )

    def duplicate_of(self, video_id: str) -> RelationshipEdge | None:
        with self._lock:
            return self._duplicate_of(video_id)

    def count_by_kind(self) -> dict[str, int]:
        counts: dict[str, int] = {}
        with self._lock:
            for edge in self._edges.values():
                counts[edge.kind.value] = counts.get(edge.kind.value, 0) + 1
        return counts

    def _duplicate_of(self, video_id: str) -> RelationshipEdge | None:
        for edge in self._edges.values():
            if edge.kind is EdgeKind.DUPLICATE and edge.video_a == video_id:
                return edge
        return None


_EDGE_COLUMNS = "video_a, video_b, kind, score, offset_windows, dtw_cost, created_at"


@dataclass(frozen=True)
class SqliteEdgeLog:
    path: str

    def __post_init__(self) -> None:
        Path(self.path).parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    def _connect(self) -> sqlite3.Connection:
        return sqlite3.connect(self.path, timeout=30, isolation_level=None)

    def _init_db(self) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS relationship_edges (
                    video_a TEXT NOT NULL,
                    video_b TEXT NOT NULL,
                    kind TEXT NOT NULL,
                    score REAL NOT NULL,
                    offset_windows INTEGER,
                    dtw_cost REAL,
                    created_at REAL,
                    PRIMARY KEY (video_a, video_b, kind)
                )
                """
            )
            conn.execute(
                "CREATE UNIQUE INDEX IF NOT EXISTS idx_edges_one_duplicate "
                "ON relationship_edges(video_a) WHERE kind = 'duplicate'"
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_edges_video_b "
                "ON relationship_edges(video_b)"
            )

    def upsert(self, edge: RelationshipEdge) -> bool:
        edge = edge.normalized()
        created_at = edge.created_at if edge.created_at is not None else time.time()
        try:
            with self._connect() as conn:
                conn.execute("BEGIN IMMEDIATE")
                try:
                    if edge.kind is EdgeKind.DUPLICATE:
                        row = conn.execute(
                            f"SELECT {_EDGE_COLUMNS} FROM relationship_edges "
                            "WHERE video_a = ? AND kind = 'duplicate'",
                            (edge.video_a,),
                        ).fetchone()
                        existing = _edge_from_row(row) if row else None
                        if not _check_duplicate(existing, edge):
                            conn.execute("COMMIT")
                            return False
                    row = conn.execute(
                        "SELECT created_at FROM relationship_edges "
                        "WHERE video_a = ? AND video_b = ? AND kind = ?",
                        (edge.video_a, edge.video_b, edge.kind.value),
                    ).fetchone()
                    if row is not None:
                        created_at = row[0]
                    conn.execute(
                        f"INSERT OR REPLACE INTO relationship_edges ({_EDGE_COLUMNS}) "
                        "VALUES (?, ?, ?, ?, ?, ?, ?)",
                        (
                            edge.video_a,
                            edge.video_b,
                            edge.kind.value,
                            edge.score,
                            edge.offset,
                            edge.dtw_cost,
                            created_at,
                        ),
                    )
                    conn.execute("COMMIT")
                except BaseException:
                    conn.execute("ROLLBACK")
                    raise
                return row is None
        except sqlite3.Error as exc:  # pragma: no cover - infrastructure errors
            raise RecoverableError(f"SQLite edge upsert failed: {exc}") from exc

    def edges_for(
        self,
        video_id: str,
        kind: EdgeKind | None = None,
    ) -> list[RelationshipEdge]:
        query = (
            f"SELECT {_EDGE_COLUMNS} FROM relationship_edges "
            "WHERE (video_a = ? OR video_b = ?)"
        )
        params: list[object] = [video_id, video_id]
        if kind is not None:
            query += " AND kind = ?"
            params.append(kind.value)
        query += " ORDER BY kind, score, video_a, video_b"
        with self._connect() as conn:
            rows = conn.execute(query, params).fetchall()
        return [_edge_from_row(row) for row in rows]

    def duplicate_of(self, video_id: str) -> RelationshipEdge | None:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {_EDGE_COLUMNS} FROM relationship_edges "
                "WHERE video_a = ? AND kind = 'duplicate'",
                (video_id,),
            ).fetchone()
        return _edge_from_row(row) if row else None

    def count_by_kind(self) -> dict[str, int]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT kind, COUNT(*) FROM relationship_edges GROUP BY kind"
            ).fetchall()
        return {kind: int(count) for kind, count in rows}


def _edge_from_row(row: tuple) -> RelationshipEdge:
    return RelationshipEdge(
        video_a=row[0],
        video_b=row[1],
        kind=EdgeKind(row[2]),
        score=float(row[3]),
        offset=int(row[4]) if row[4] is not None else None,
        dtw_cost=float(row[5]) if row[5] is not None else None,
        created_at=float(row[6]) if row[6] is not None else None,
    )
