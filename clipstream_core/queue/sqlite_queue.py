from __future__ import annotations

import sqlite3
import uuid
from dataclasses import dataclass
from pathlib import Path

from clipstream_core.errors import RecoverableError
from clipstream_core.pipeline.states import Stage
from clipstream_core.pipeline.types import LeasedJob, ProcessingJob
from clipstream_core.queue.types import QueueStats

_COLUMNS = "video_id, stage, attempt, enqueued_at, not_before, payload_key"


@dataclass(frozen=True)
class SqliteJobQueue:
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
                CREATE TABLE IF NOT EXISTS processing_jobs (
                    video_id TEXT PRIMARY KEY,
                    stage TEXT NOT NULL,
                    attempt INTEGER NOT NULL,
                    enqueued_at REAL NOT NULL,
                    not_before REAL NOT NULL,
                    payload_key TEXT NOT NULL,
                    available_at REAL NOT NULL,
                    receipt TEXT,
                    deliveries INTEGER NOT NULL DEFAULT 0
                )
                """
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_jobs_available "
                "ON processing_jobs(available_at, enqueued_at)"
            )

    def enqueue(self, job: ProcessingJob) -> bool:
        try:
            with self._connect() as conn:
                cursor = conn.execute(
                    """
                    INSERT OR IGNORE INTO processing_jobs (
                        video_id, stage, attempt, enqueued_at, not_before,
                        payload_key, available_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        job.video_id,
                        job.stage.value,
                        job.attempt,
                        job.enqueued_at,
                        job.not_before,
                        job.payload_key,
                        job.not_before,
                    ),
                )
                return cursor.rowcount == 1
        except sqlite3.Error as exc:  # pragma: no cover - infrastructure errors
            raise RecoverableError(f"SQLite enqueue failed: {exc}") from exc

    def dequeue(self, *, now: float, visibility_timeout: float) -> LeasedJob | None:
        receipt = uuid.uuid4().hex
        try:
            with self._connect() as conn:
                conn.execute("BEGIN IMMEDIATE")
                try:
                    row = conn.execute(
                        f"SELECT {_COLUMNS}, deliveries FROM processing_jobs "
                        "WHERE available_at <= ? "
                        "ORDER BY available_at, enqueued_at LIMIT 1",
                        (now,),
                    ).fetchone()
                    if row is None:
                        conn.execute("COMMIT")
                        return None
                    deliveries = int(row[6]) + 1
                    conn.execute(
                        """
                        UPDATE processing_jobs
                        SET receipt = ?, available_at = ?, deliveries = ?
                        WHERE video_id = ?
                        """,
                        (receipt, now + visibility_timeout, deliveries, row[0]),
                    )
                    conn.execute("COMMIT")
                except BaseException:
                    conn.execute("ROLLBACK")
                    raise
        except sqlite3.Error as exc:  # pragma: no cover - infrastructure errors
            raise RecoverableError(f"SQLite dequeue failed: {exc}") from exc
        return LeasedJob(job=_job_from_row(row), receipt=receipt, deliveries=deliveries)

    def ack(self, receipt: str) -> bool:
        with self._connect() as conn:
            cursor = conn.execute(
                "DELETE FROM processing_jobs WHERE receipt = ?",
                (receipt,),
            )
            return cursor.rowcount == 1

    def release(
        self,
        receipt: str,
        *,
        not_before: float,
        attempt: int | None = None,
    ) -> bool:
        with self._connect() as conn:
            if attempt is None:
                cursor = conn.execute(
                    """
                    UPDATE processing_jobs
                    SET receipt = NULL, not_before = ?, available_at = ?
                    WHERE receipt = ?
                    """,
                    (not_before, not_before, receipt),
                )
            else:
                cursor = conn.execute(
                    """
                    UPDATE processing_jobs
                    SET receipt = NULL, not_before = ?, available_at = ?, attempt = ?
                    WHERE receipt = ?
                    """,
                    (not_before, not_before, attempt, receipt),
                )
            return cursor.rowcount == 1

    def get(self, video_id: str) -> ProcessingJob | None:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {_COLUMNS} FROM processing_jobs WHERE video_id = ?",
                (video_id,),
            ).fetchone()
        return _job_from_row(row) if row else None

    def has_job(self, video_id: str) -> bool:
        return self.get(video_id) is not None

    def is_in_flight(self, video_id: str, *, now: float) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT 1 FROM processing_jobs "
                "WHERE video_id = ? AND receipt IS NOT NULL AND available_at > ?",
                (video_id, now),
            ).fetchone()
        return row is not None

    def remove(self, video_id: str, *, now: float) -> bool:
        with self._connect() as conn:
            cursor = conn.execute(
                """
                DELETE FROM processing_jobs
                WHERE video_id = ? AND NOT (receipt IS NOT NULL AND available_at > ?)
                """,
                (video_id, now),
            )
            return cursor.rowcount == 1

    def requeue_in_flight(self) -> int:
        with self._connect() as conn:
            cursor = conn.execute(
                """
                UPDATE processing_jobs
                SET receipt = NULL, available_at = not_before
                WHERE receipt IS NOT NULL
                """
            )
            return cursor.rowcount

    def stats(self, *, now: float) -> QueueStats:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT
                    COUNT(*),
                    COALESCE(SUM(CASE WHEN available_at <= ? THEN 1 ELSE 0 END), 0),
                    COALESCE(SUM(
                        CASE WHEN receipt IS NOT NULL AND available_at > ?
                        THEN 1 ELSE 0 END
                    ), 0)
                FROM processing_jobs
                """,
                (now, now),
            ).fetchone()
        depth, ready, in_flight = (int(value) for value in row)
        return QueueStats(
            depth=depth,
            ready=ready,
            delayed=depth - ready - in_flight,
            in_flight=in_flight,
        )


def _job_from_row(row: tuple) -> ProcessingJob:
    return ProcessingJob(
        video_id=row[0],
        stage=Stage(row[1]),
        attempt=int(row[2]),
        enqueued_at=float(row[3]),
        not_before=float(row[4]),
        payload_key=row[5],
    )
