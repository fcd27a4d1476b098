import math
import sqlite3
import uuid
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Union

from .utils import now_iso, to_iso, parse_iso, iso_after
from .models import Job, JobSpec, PENDING, PROCESSING, COMPLETED, DEAD, FAILED, STATES
from .config import DEFAULT_CONFIG, validate_config_value

Timestamp = Union[str, datetime, None]
SQLITE_INT_MAX = 2 ** 63 - 1


def _ts(value: Timestamp) -> str:
    if value is None:
        return now_iso()
    if isinstance(value, datetime):
        return to_iso(value)
    return value


# ---------- Config ----------
def get_config(conn) -> Dict[str, str]:
    cur = conn.execute("SELECT key, value FROM config")
    cfg = dict(DEFAULT_CONFIG)
    cfg.update({r["key"]: r["value"] for r in cur.fetchall()})
    return cfg


def get_config_value(conn, key: str) -> Optional[str]:
    row = conn.execute("SELECT value FROM config WHERE key=?", (key,)).fetchone()
    return row["value"] if row else None


def set_config(conn, key: str, value: str):
    value = validate_config_value(key, value)
    with conn:
        conn.execute(
            "INSERT INTO config(key,value) VALUES(?,?) "
            "ON CONFLICT(key) DO UPDATE SET value=excluded.value",
            (key, value),
        )


def reset_config(conn) -> int:
    """Drop every stored value and re-seed the defaults."""
    with conn:
        removed = conn.execute("DELETE FROM config").rowcount
        conn.executemany(
            "INSERT INTO config(key, value) VALUES(?,?)", DEFAULT_CONFIG.items()
        )
    return removed


# ---------- Jobs: enqueue ----------
def _finite_non_negative(value) -> bool:
    try:
        return math.isfinite(value) and value >= 0
    except OverflowError:
        return False


def enqueue_job(conn, spec: JobSpec, now: Timestamp = None) -> Job:
    if not isinstance(spec.command, str) or not spec.command.strip():
        raise ValueError("Command cannot be empty.")
    if spec.id is not None and not str(spec.id).strip():
        raise ValueError("Job id cannot be empty.")
    if spec.delay is not None and spec.run_at:
        raise ValueError("Use either delay or run_at, not both.")
    if spec.delay is not None and not _finite_non_negative(spec.delay):
        raise ValueError("delay must be a finite number of seconds >= 0")
    if spec.run_at is not None and not isinstance(spec.run_at, str):
        raise ValueError("run_at must be an ISO datetime string.")
    if spec.max_retries is not None and not 0 <= spec.max_retries <= SQLITE_INT_MAX:
        raise ValueError("max_retries must be >= 0")
    if not -SQLITE_INT_MAX <= int(spec.priority) <= SQLITE_INT_MAX:
        raise ValueError("priority is out of range")

    ts = _ts(now)
    job_id = str(spec.id).strip() if spec.id is not None else str(uuid.uuid4())

    if spec.delay is not None:
        try:
            run_after = iso_after(spec.delay, parse_iso(ts))
        except (OverflowError, ValueError):
            raise ValueError(f"delay of {spec.delay:g}s is out of range")
    elif spec.run_at:
        try:
            run_after = to_iso(parse_iso(spec.run_at))
        except ValueError as e:
            raise ValueError(f"Invalid run_at format: {spec.run_at} ({e})")
    else:
        run_after = ts

    exists = conn.execute("SELECT 1 FROM jobs WHERE id=?", (job_id,)).fetchone()
    if exists:
        raise ValueError(f"Job '{job_id}' already exists.")

    try:
        with conn:
            conn.execute(
                """INSERT INTO jobs
                   (id, command, state, attempts, max_retries, priority, run_after, created_at, updated_at)
                   VALUES (?, ?, ?, 0, ?, ?, ?, ?, ?)""",
                (job_id, spec.command, PENDING, spec.max_retries, int(spec.priority), run_after, ts, ts),
            )
    except sqlite3.IntegrityError:
        raise ValueError(f"Job '{job_id}' already exists.")
    return get_job(conn, job_id)


# ---------- Jobs: claim / complete / retry / dead-letter / reap ----------
CLAIM_SQL = """
UPDATE jobs
SET state = :processing,
    attempts = attempts + 1,
    worker_id = :worker_id,
    updated_at = :now
WHERE id = (
    SELECT id FROM jobs
    WHERE state = :pending AND run_after <= :now
    ORDER BY priority DESC, created_at ASC
    LIMIT 1
)
RETURNING *
"""


def claim_next(conn, worker_id: str, now: Timestamp = None) -> Optional[Job]:
    """Atomically take the next eligible pending job for `worker_id`.

    Selection and update are one statement, and BEGIN IMMEDIATE grabs the
    database write lock before it runs, so two processes can never come
    back with the same row.
    """
    params = {
        "processing": PROCESSING,
        "pending": PENDING,
        "worker_id": worker_id,
        "now": _ts(now),
    }
    with conn:
        conn.execute("BEGIN IMMEDIATE")
        rows = conn.execute(CLAIM_SQL, params).fetchall()
    return Job.from_row(rows[0]) if rows else None


def _finish(conn, job_id: str, state: str, now: Timestamp, worker_id: Optional[str], **fields) -> bool:
    assignments = ", ".join(f"{k}=:{k}" for k in fields)
    sql = (
        f"UPDATE jobs SET state=:state, updated_at=:now, worker_id=NULL, {assignments} "
        "WHERE id=:id AND state=:processing "
        "AND (:holder IS NULL OR worker_id=:holder)"
    )
    params = dict(fields, state=state, now=_ts(now), id=job_id, processing=PROCESSING, holder=worker_id)
    with conn:
        return conn.execute(sql, params).rowcount == 1


def complete_job(conn, job_id: str, now: Timestamp = None, stdout: str = "", stderr: str = "",
                 worker_id: Optional[str] = None) -> bool:
    return _finish(conn, job_id, COMPLETED, now, worker_id,
                   stdout=stdout, stderr=stderr, last_error=None)


def schedule_retry(conn, job_id: str, run_after: Timestamp, now: Timestamp = None,
                   last_error: Optional[str] = None, stdout: str = "", stderr: str = "",
                   worker_id: Optional[str] = None) -> bool:
    return _finish(conn, job_id, PENDING, now, worker_id, run_after=_ts(run_after),
                   last_error=last_error, stdout=stdout, stderr=stderr)


def dead_letter(conn, job_id: str, now: Timestamp = None, last_error: Optional[str] = None,
                stdout: str = "", stderr: str = "", worker_id: Optional[str] = None) -> bool:
    return _finish(conn, job_id, DEAD, now, worker_id,
                   last_error=last_error, stdout=stdout, stderr=stderr)


def reap_stale(conn, threshold_minutes: float, now: Timestamp = None) -> int:
    """Send jobs stuck in processing since before the cutoff back to pending.

    Attempts are left as they are: the crashed run still counts.
    """
    now = _ts(now)
    cutoff = to_iso(parse_iso(now) - timedelta(minutes=threshold_minutes))
    with conn:
        res = conn.execute(
            """UPDATE jobs
               SET state=?, run_after=?, updated_at=?, worker_id=NULL
               WHERE state=? AND updated_at <= ?""",
            (PENDING, now, now, PROCESSING, cutoff),
        )
    return res.rowcount


# ---------- Queries ----------
def get_job(conn, job_id: str) -> Optional[Job]:
    row = conn.execute("SELECT * FROM jobs WHERE id=?", (job_id,)).fetchone()
    return Job.from_row(row) if row else None


def list_jobs(conn, state: Optional[str] = None, limit: Optional[int] = None, offset: int = 0) -> List[Job]:
    limit = -1 if limit is None else int(limit)
    if state:
        rows = conn.execute(
            "SELECT * FROM jobs WHERE state=? ORDER BY updated_at DESC, id LIMIT ? OFFSET ?",
            (state, limit, int(offset)),
        ).fetchall()
    else:
        rows = conn.execute(
            "SELECT * FROM jobs ORDER BY updated_at DESC, id LIMIT ? OFFSET ?",
            (limit, int(offset)),
        ).fetchall()
    return [Job.from_row(r) for r in rows]


def counts(conn) -> Dict[str, int]:
    # 'failed' is never persisted; reported for completeness (always 0)
    out = {s: 0 for s in STATES + (FAILED,)}
    for r in conn.execute("SELECT state, COUNT(1) AS c FROM jobs GROUP BY state"):
        out[r["state"]] = r["c"]
    out["total"] = sum(out[s] for s in STATES)
    return out


# ---------- DLQ ----------
def dlq_list(conn) -> List[Job]:
    return list_jobs(conn, state=DEAD)


def dlq_retry(conn, job_id: str, now: Timestamp = None) -> bool:
    if not job_id or not job_id.strip():
        raise ValueError("Job id cannot be empty.")
    now = _ts(now)
    with conn:
        res = conn.execute(
            """UPDATE jobs
               SET state=?, attempts=0, updated_at=?, run_after=?, last_error=NULL,
                   stdout=NULL, stderr=NULL, worker_id=NULL
               WHERE id=? AND state=?""",
            (PENDING, now, now, job_id, DEAD),
        )
    return res.rowcount == 1


def dlq_purge(conn, job_id: Optional[str] = None) -> int:
    with conn:
        if job_id:
            res = conn.execute("DELETE FROM jobs WHERE id=? AND state=?", (job_id, DEAD))
        else:
            res = conn.execute("DELETE FROM jobs WHERE state=?", (DEAD,))
    return res.rowcount
