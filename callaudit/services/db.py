from __future__ import annotations

import json
import sqlite3
import uuid
from pathlib import Path
from typing import Any, Dict, List, Optional

from callaudit.core.errors import JobNotFound, JobStateError
from callaudit.core.models import Job, JobStatus, Report, can_transition
from callaudit.core.utils import now_str

JOB_COLUMNS = (
    "id, status, created_at, updated_at, audio_path, audio_sha256, "
    "rubric_path, lang, webhook_url, error"
)


def init_db(db_path: Path) -> sqlite3.Connection:
    db_path.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(str(db_path), check_same_thread=False)
    conn.execute("PRAGMA foreign_keys = ON")
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS jobs (
            id TEXT PRIMARY KEY,
            status TEXT NOT NULL DEFAULT 'uploaded',
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL,
            audio_path TEXT NOT NULL,
            audio_sha256 TEXT,
            rubric_path TEXT,
            lang TEXT DEFAULT 'auto',
            webhook_url TEXT,
            error TEXT
        );
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS reports (
            id TEXT PRIMARY KEY,
            job_id TEXT NOT NULL UNIQUE,
            json TEXT NOT NULL,
            final_score REAL,
            mandatory_avg REAL,
            general_avg REAL,
            ethics_flag INTEGER DEFAULT 0,
            created_at TEXT NOT NULL,
            FOREIGN KEY (job_id) REFERENCES jobs(id) ON DELETE CASCADE
        );
        """
    )
    _ensure_column(conn, "jobs", "audio_sha256", "TEXT")
    _ensure_column(conn, "jobs", "error", "TEXT")
    conn.execute("CREATE INDEX IF NOT EXISTS idx_jobs_sha ON jobs(audio_sha256)")
    conn.commit()
    return conn


def _ensure_column(conn: sqlite3.Connection, table: str, column: str, col_type: str) -> None:
    cols = [r[1] for r in conn.execute(f"PRAGMA table_info({table})")]
    if column not in cols:
        conn.execute(f"ALTER TABLE {table} ADD COLUMN {column} {col_type}")


def _row_to_job(r: tuple) -> Job:
    return Job(
        id=r[0],
        status=JobStatus(r[1]),
        created_at=r[2],
        updated_at=r[3],
        audio_path=r[4],
        audio_sha256=r[5] or "",
        rubric_path=r[6],
        lang=r[7] or "auto",
        webhook_url=r[8],
        error=r[9],
    )


def create_job(
    conn: sqlite3.Connection,
    audio_path: str,
    lang: str = "auto",
    rubric_path: Optional[str] = None,
    webhook_url: Optional[str] = None,
    audio_sha256: str = "",
) -> Job:
    now = now_str()
    job = Job(
        id=str(uuid.uuid4()),
        status=JobStatus.UPLOADED,
        created_at=now,
        updated_at=now,
        audio_path=audio_path,
        audio_sha256=audio_sha256,
        rubric_path=rubric_path,
        lang=lang or "auto",
        webhook_url=webhook_url,
    )
    conn.execute(
        f"INSERT INTO jobs ({JOB_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
        (
            job.id,
            job.status.value,
            job.created_at,
            job.updated_at,
            job.audio_path,
            job.audio_sha256,
            job.rubric_path,
            job.lang,
            job.webhook_url,
            None,
        ),
    )
    conn.commit()
    return job


def find_job(conn: sqlite3.Connection, job_id: str) -> Optional[Job]:
    row = conn.execute(f"SELECT {JOB_COLUMNS} FROM jobs WHERE id = ?", (job_id,)).fetchone()
    return _row_to_job(row) if row else None


def get_job(conn: sqlite3.Connection, job_id: str) -> Job:
    job = find_job(conn, job_id)
    if job is None:
        raise JobNotFound(job_id)
    return job


def find_job_by_hash(conn: sqlite3.Connection, audio_sha256: str, status: JobStatus) -> Optional[Job]:
    row = conn.execute(
        f"SELECT {JOB_COLUMNS} FROM jobs WHERE audio_sha256 = ? AND status = ? LIMIT 1",
        (audio_sha256, status.value),
    ).fetchone()
    return _row_to_job(row) if row else None


def list_jobs(conn: sqlite3.Connection, limit: int = 100, offset: int = 0) -> List[Job]:
    cur = conn.execute(
        f"SELECT {JOB_COLUMNS} FROM jobs ORDER BY created_at DESC, rowid DESC LIMIT ? OFFSET ?",
        (limit, offset),
    )
    return [_row_to_job(r) for r in cur.fetchall()]


def transition_status(
    conn: sqlite3.Connection, job_id: str, expected: JobStatus, new: JobStatus, error: Optional[str] = None
) -> None:
    """Move a job from ``expected`` to ``new`` as a single compare-and-set.

    Raises JobStateError when the transition is not a legal forward step or
    when the stored status is no longer ``expected`` (another run claimed the
    job, or it was marked failed externally).
    """
    if not can_transition(expected, new):
        raise JobStateError(f"illegal transition {expected.value} -> {new.value}")
    cur = conn.execute(
        "UPDATE jobs SET status = ?, updated_at = ?, error = COALESCE(?, error) WHERE id = ? AND status = ?",
        (new.value, now_str(), error, job_id, expected.value),
    )
    conn.commit()
    if cur.rowcount != 1:
        current = find_job(conn, job_id)
        if current is None:
            raise JobNotFound(job_id)
        raise JobStateError(
            f"job {job_id} is '{current.status.value}', expected '{expected.value}' before '{new.value}'"
        )


def update_audio_path(conn: sqlite3.Connection, job_id: str, audio_path: str) -> None:
    cur = conn.execute(
        "UPDATE jobs SET audio_path = ?, updated_at = ? WHERE id = ?",
        (audio_path, now_str(), job_id),
    )
    conn.commit()
    if cur.rowcount != 1:
        raise JobNotFound(job_id)


def mark_failed(conn: sqlite3.Connection, job_id: str, error: str = "") -> bool:
    """Mark any non-terminal job failed. Returns False if it already finished."""
    cur = conn.execute(
        "UPDATE jobs SET status = ?, updated_at = ?, error = ? WHERE id = ? AND status NOT IN (?, ?)",
        (
            JobStatus.FAILED.value,
            now_str(),
            error,
            job_id,
            JobStatus.DONE.value,
            JobStatus.FAILED.value,
        ),
    )
    conn.commit()
    return cur.rowcount == 1


def save_report_and_finish(conn: sqlite3.Connection, job_id: str, report: Report) -> str:
    """Insert the report and move the job ``assembling -> done`` atomically."""
    report_id = str(uuid.uuid4())
    now = now_str()
    scores = report.scores
    try:
        cur = conn.execute(
            "UPDATE jobs SET status = ?, updated_at = ? WHERE id = ? AND status = ?",
            (JobStatus.DONE.value, now, job_id, JobStatus.ASSEMBLING.value),
        )
        if cur.rowcount != 1:
            raise JobStateError(f"job {job_id} is no longer assembling, report discarded")
        conn.execute(
            """
            INSERT INTO reports (
                id, job_id, json, final_score, mandatory_avg, general_avg, ethics_flag, created_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                report_id,
                job_id,
                report.to_json(),
                scores.get("final_score", 0.0),
                scores.get("mandatory_avg", 0.0),
                scores.get("general_avg", 0.0),
                1 if scores.get("ethics_flag") else 0,
                now,
            ),
        )
    except Exception:
        conn.rollback()
        raise
    conn.commit()
    return report_id


def find_report(conn: sqlite3.Connection, job_id: str) -> Optional[Dict[str, Any]]:
    row = conn.execute(
        """
        SELECT id, job_id, json, final_score, mandatory_avg, general_avg, ethics_flag, created_at
        FROM reports WHERE job_id = ?
        """,
        (job_id,),
    ).fetchone()
    if not row:
        return None
    return {
        "id": row[0],
        "job_id": row[1],
        "json": json.loads(row[2]),
        "final_score": float(row[3] or 0.0),
        "mandatory_avg": float(row[4] or 0.0),
        "general_avg": float(row[5] or 0.0),
        "ethics_flag": bool(row[6]),
        "created_at": row[7],
    }
