"""
SQLite ledger of build jobs.

The scheduler keeps its job table in memory; the ledger records every state
transition so the job history survives restarts. Jobs still recorded as queued
or running when a new process starts were interrupted: they are marked failed
and never re-run (at-most-once across restarts).
"""

import json
import sqlite3
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

from .models import JobDetail, JobEvent, JobState, TemplateSelection
from .utils import utcnow

DEFAULT_DB_PATH = Path("data/jobs.db")
INTERRUPTED_MESSAGE = "Interrupted by restart"

# Rank guards against an older snapshot overwriting a newer one.
STATE_RANK = {
    JobState.QUEUED: 0,
    JobState.RUNNING: 1,
    JobState.SUCCEEDED: 2,
    JobState.FAILED: 2,
    JobState.CANCELED: 2,
    JobState.UNKNOWN: 0,
}


def _serialize_datetime(dt: Optional[datetime]) -> Optional[str]:
    return dt.isoformat() if dt else None


def _deserialize_datetime(s: Optional[str]) -> Optional[datetime]:
    if not s:
        return None
    return datetime.fromisoformat(s)


class JobLedger:
    """
    SQLite job history.

    Thread-safe: every call opens its own connection and SQLite serializes
    writers in WAL mode.
    """

    def __init__(self, db_path: Path = DEFAULT_DB_PATH):
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    @contextmanager
    def _get_connection(self):
        conn = sqlite3.connect(str(self.db_path), timeout=30.0)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL")
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def _init_db(self) -> None:
        with self._get_connection() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS jobs (
                    id TEXT PRIMARY KEY,
                    fingerprint TEXT NOT NULL,
                    kind TEXT NOT NULL,
                    state TEXT NOT NULL,
                    state_rank INTEGER NOT NULL,
                    attempt INTEGER NOT NULL,
                    requester_id TEXT,
                    created_at TEXT NOT NULL,
                    started_at TEXT,
                    finished_at TEXT,
                    artifact_ref TEXT,
                    error TEXT,
                    error_kind TEXT,
                    retried_by TEXT,
                    template TEXT,
                    events TEXT
                )
            """)

            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_jobs_created_at
                ON jobs(created_at DESC)
            """)

            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_jobs_state
                ON jobs(state)
            """)

    def save_job(self, job: JobDetail) -> None:
        """
        Insert or update a job snapshot.

        A snapshot never replaces one of a later state, so writes arriving out
        of order from different threads leave the newest state in place.
        """
        with self._get_connection() as conn:
            conn.execute("""
                INSERT INTO jobs (
                    id, fingerprint, kind, state, state_rank, attempt,
                    requester_id, created_at, started_at, finished_at,
                    artifact_ref, error, error_kind, retried_by, template, events
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    state = excluded.state,
                    state_rank = excluded.state_rank,
                    started_at = excluded.started_at,
                    finished_at = excluded.finished_at,
                    artifact_ref = excluded.artifact_ref,
                    error = excluded.error,
                    error_kind = excluded.error_kind,
                    retried_by = excluded.retried_by,
                    events = excluded.events
                WHERE excluded.state_rank >= jobs.state_rank
            """, (
                job.id,
                job.fingerprint,
                job.kind.value,
                job.state.value,
                STATE_RANK[job.state],
                job.attempt,
                job.requester_id,
                _serialize_datetime(job.created_at),
                _serialize_datetime(job.started_at),
                _serialize_datetime(job.finished_at),
                job.artifact_ref,
                job.error,
                job.error_kind,
                job.retried_by,
                job.template.model_dump_json(by_alias=False),
                json.dumps([
                    {"timestamp": _serialize_datetime(e.timestamp), "message": e.message}
                    for e in job.events
                ]),
            ))

    def get_job(self, job_id: str) -> Optional[JobDetail]:
        with self._get_connection() as conn:
            row = conn.execute(
                "SELECT * FROM jobs WHERE id = ?", (job_id,)
            ).fetchone()

            if not row:
                return None

            return self._row_to_detail(row)

    def list_jobs(self, limit: int = 100) -> List[JobDetail]:
        """
        List jobs ordered by creation time (newest first).

        Args:
            limit: Maximum number of jobs returned
        """
        with self._get_connection() as conn:
            rows = conn.execute(
                "SELECT * FROM jobs ORDER BY created_at DESC LIMIT ?", (limit,)
            ).fetchall()

            return [self._row_to_detail(row) for row in rows]

    def mark_interrupted(self) -> int:
        """
        Fail every job a previous process left queued or running.

        Returns:
            Number of jobs marked
        """
        with self._get_connection() as conn:
            cursor = conn.execute("""
                UPDATE jobs
                SET state = ?, state_rank = ?, error = ?, error_kind = ?, finished_at = ?
                WHERE state IN (?, ?)
            """, (
                JobState.FAILED.value,
                STATE_RANK[JobState.FAILED],
                INTERRUPTED_MESSAGE,
                "transient",
                _serialize_datetime(utcnow()),
                JobState.QUEUED.value,
                JobState.RUNNING.value,
            ))
            return cursor.rowcount

    def delete_job(self, job_id: str) -> bool:
        with self._get_connection() as conn:
            cursor = conn.execute("DELETE FROM jobs WHERE id = ?", (job_id,))
            return cursor.rowcount > 0

    def _row_to_detail(self, row: sqlite3.Row) -> JobDetail:
        events_raw: List[Dict[str, Any]] = json.loads(row["events"] or "[]")
        return JobDetail(
            id=row["id"],
            fingerprint=row["fingerprint"],
            kind=row["kind"],
            state=row["state"],
            attempt=row["attempt"],
            requester_id=row["requester_id"],
            created_at=_deserialize_datetime(row["created_at"]),
            started_at=_deserialize_datetime(row["started_at"]),
            finished_at=_deserialize_datetime(row["finished_at"]),
            artifact_ref=row["artifact_ref"],
            error=row["error"],
            error_kind=row["error_kind"],
            retried_by=row["retried_by"],
            template=TemplateSelection.model_validate_json(row["template"] or "{}"),
            events=[
                JobEvent(timestamp=_deserialize_datetime(e["timestamp"]), message=e["message"])
                for e in events_raw
            ],
        )
