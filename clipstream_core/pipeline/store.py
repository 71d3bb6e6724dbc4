from __future__ import annotations

import json
import sqlite3
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, Protocol

from clipstream_core.errors import RecoverableError
from clipstream_core.pipeline.states import ProcessingState, Stage
from clipstream_core.pipeline.types import ErrorInfo, ErrorKind, Video


class VideoStore(Protocol):
    def create(self, video: Video) -> bool: ...

    def get(self, video_id: str) -> Video | None: ...

    def save(self, video: Video, *, transition: bool = False) -> None: ...

    def list_by_states(self, states: Iterable[ProcessingState]) -> list[Video]: ...

    def find_by_fingerprint(self, fingerprint: str) -> list[Video]: ...

    def history(self, video_id: str) -> list[ProcessingState]: ...

    def count_by_state(self) -> dict[str, int]: ...


class InMemoryVideoStore:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._videos: dict[str, Video] = {}
        self._history: dict[str, list[ProcessingState]] = {}

    def create(self, video: Video) -> bool:
        with self._lock:
            if video.video_id in self._videos:
                return False
            self._videos[video.video_id] = video
            self._history[video.video_id] = [video.state]
            return True

    def get(self, video_id: str) -> Video | None:
        with self._lock:
            return self._videos.get(video_id)

    def save(self, video: Video, *, transition: bool = False) -> None:
        with self._lock:
            self._videos[video.video_id] = video
            if transition:
                self._history.setdefault(video.video_id, []).append(video.state)

    def list_by_states(self, states: Iterable[ProcessingState]) -> list[Video]:
        wanted = set(states)
        with self._lock:
            videos = [video for video in self._videos.values() if video.state in wanted]
        return sorted(videos, key=lambda item: item.order_key())

    def find_by_fingerprint(self, fingerprint: str) -> list[Video]:
        with self._lock:
            videos = [
                video
                for video in self._videos.values()
                if video.fingerprint == fingerprint
            ]
        return sorted(videos, key=lambda item: item.order_key())

    def history(self, video_id: str) -> list[ProcessingState]:
        with self._lock:
            return list(self._history.get(video_id, []))

    def count_by_state(self) -> dict[str, int]:
        counts: dict[str, int] = {}
        with self._lock:
            for video in self._videos.values():
                counts[video.state.value] = counts.get(video.state.value, 0) + 1
        return counts


_VIDEO_COLUMNS = (
    "video_id, created_at, source_key, state, duration_seconds, fingerprint, "
    "attempt_count, failure_counts, last_error, failed_stage, stage_outputs, "
    "cancel_requested, updated_at"
)


@dataclass(frozen=True)
class SqliteVideoStore:
    path: str

    def __post_init__(self) -> None:
        Path(self.path).parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    def _connect(self) -> sqlite3.Connection:
        return sqlite3.connect(self.path, timeout=30)

    def _init_db(self) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS videos (
                    video_id TEXT PRIMARY KEY,
                    created_at REAL NOT NULL,
                    source_key TEXT NOT NULL,
                    state TEXT NOT NULL,
                    duration_seconds REAL,
                    fingerprint TEXT,
                    attempt_count INTEGER NOT NULL DEFAULT 0,
                    failure_counts TEXT,
                    last_error TEXT,
                    failed_stage TEXT,
                    stage_outputs TEXT,
                    cancel_requested INTEGER NOT NULL DEFAULT 0,
                    updated_at REAL
                )
                """
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_videos_fingerprint "
                "ON videos(fingerprint)"
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_videos_state ON videos(state)"
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS state_history (
                    seq INTEGER PRIMARY KEY AUTOINCREMENT,
                    video_id TEXT NOT NULL,
                    state TEXT NOT NULL,
                    recorded_at REAL
                )
                """
            )

    def create(self, video: Video) -> bool:
        try:
            with self._connect() as conn:
                cursor = conn.execute(
                    f"INSERT OR IGNORE INTO videos ({_VIDEO_COLUMNS}) "
                    "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                    _video_to_row(video),
                )
                if cursor.rowcount != 1:
                    return False
                conn.execute(
                    "INSERT INTO state_history (video_id, state, recorded_at) "
                    "VALUES (?, ?, ?)",
                    (video.video_id, video.state.value, video.updated_at),
                )
                return True
        except sqlite3.Error as exc:  # pragma: no cover - infrastructure errors
            raise RecoverableError(f"SQLite video create failed: {exc}") from exc

    def get(self, video_id: str) -> Video | None:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {_VIDEO_COLUMNS} FROM videos WHERE video_id = ?",
                (video_id,),
            ).fetchone()
        return _video_from_row(row) if row else None

    def save(self, video: Video, *, transition: bool = False) -> None:
        try:
            with self._connect() as conn:
                conn.execute(
                    f"INSERT OR REPLACE INTO videos ({_VIDEO_COLUMNS}) "
                    "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                    _video_to_row(video),
                )
                if transition:
                    conn.execute(
                        "INSERT INTO state_history (video_id, state, recorded_at) "
                        "VALUES (?, ?, ?)",
                        (video.video_id, video.state.value, video.updated_at),
                    )
        except sqlite3.Error as exc:  # pragma: no cover - infrastructure errors
            raise RecoverableError(f"SQLite video save failed: {exc}") from exc

    def list_by_states(self, states: Iterable[ProcessingState]) -> list[Video]:
        values = [state.value for state in states]
        if not values:
            return []
        placeholders = ", ".join("?" for _ in values)
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT {_VIDEO_COLUMNS} FROM videos "
                f"WHERE state IN ({placeholders}) ORDER BY created_at, video_id",
                values,
            ).fetchall()
        return [_video_from_row(row) for row in rows]

    def find_by_fingerprint(self, fingerprint: str) -> list[Video]:
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT {_VIDEO_COLUMNS} FROM videos WHERE fingerprint = ? "
                "ORDER BY created_at, video_id",
                (fingerprint,),
            ).fetchall()
        return [_video_from_row(row) for row in rows]

    def history(self, video_id: str) -> list[ProcessingState]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT state FROM state_history WHERE video_id = ? ORDER BY seq",
                (video_id,),
            ).fetchall()
        return [ProcessingState(row[0]) for row in rows]

    def count_by_state(self) -> dict[str, int]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT state, COUNT(*) FROM videos GROUP BY state"
            ).fetchall()
        return {state: int(count) for state, count in rows}


def _video_to_row(video: Video) -> tuple:
    error = None
    if video.last_error is not None:
        error = json.dumps(
            {
                "kind": video.last_error.kind.value,
                "code": video.last_error.code,
                "message": video.last_error.message,
            }
        )
    return (
        video.video_id,
        video.created_at,
        video.source_key,
        video.state.value,
        video.duration_seconds,
        video.fingerprint,
        video.attempt_count,
        json.dumps(video.failure_counts, sort_keys=True),
        error,
        video.failed_stage.value if video.failed_stage else None,
        json.dumps(video.stage_outputs, sort_keys=True),
        1 if video.cancel_requested else 0,
        video.updated_at,
    )


def _video_from_row(row: tuple) -> Video:
    last_error = None
    if row[8]:
        payload = json.loads(row[8])
        last_error = ErrorInfo(
            kind=ErrorKind(payload["kind"]),
            code=payload["code"],
            message=payload["message"],
        )
    return Video(
        video_id=row[0],
        created_at=float(row[1]),
        source_key=row[2],
        state=ProcessingState(row[3]),
        duration_seconds=float(row[4]) if row[4] is not None else None,
        fingerprint=row[5],
        attempt_count=int(row[6] or 0),
        failure_counts=json.loads(row[7]) if row[7] else {},
        last_error=last_error,
        failed_stage=Stage(row[9]) if row[9] else None,
        stage_outputs=json.loads(row[10]) if row[10] else {},
        cancel_requested=bool(row[11]),
        updated_at=float(row[12]) if row[12] is not None else None,
    )
