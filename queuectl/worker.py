import multiprocessing
import os
import signal
import sqlite3
import time
from typing import Dict, Optional

import structlog

from .config import config_float, config_int
from .db import connect_db
from .log import bind_context, setup_logging
from .models import Job, RunResult
from .repository import (
    claim_next, complete_job, schedule_retry, dead_letter, reap_stale, get_config
)
from .runner import run_command
from .utils import iso_after, parse_iso, utcnow

logger = structlog.get_logger(__name__)

COMPLETED = "completed"
RETRY = "retry"
DEAD = "dead"
LOST = "lost"

# keeps run_after inside datetime range for any base and attempt count
MAX_BACKOFF_SECONDS = 365 * 24 * 3600

SUPERVISOR_TICK_SECONDS = 0.5
# a worker that dies sooner than this counts towards the restart limit
STABLE_RUN_SECONDS = 30
MAX_RESTARTS = 5


def setup_signal_handlers(stop_event):
    def _handler(signum, frame):
        logger.info("shutdown_requested", signal=signal.Signals(signum).name)
        stop_event.set()

    for sig in (signal.SIGINT, signal.SIGTERM):
        signal.signal(sig, _handler)


def recover_stuck_jobs(conn, now=None) -> int:
    """Requeue jobs left in processing by a worker that died mid-run."""
    threshold = config_int(get_config(conn), "stuck-job-threshold")
    reset = reap_stale(conn, threshold, now)
    if reset:
        logger.info("recovery_reset", count=reset, threshold_minutes=threshold)
    return reset


def _record_outcome(conn, job: Job, result: RunResult, worker_id: str,
                    max_retries: int, base: int, timeout: int, now) -> str:
    finished = parse_iso(now) if isinstance(now, str) else (now or utcnow())

    if result.succeeded:
        if not complete_job(conn, job.id, finished, result.stdout, result.stderr, worker_id=worker_id):
            return _ownership_lost(job, COMPLETED)
        logger.info("job_completed", job_id=job.id, attempt=job.attempts,
                    duration=round(result.duration_seconds, 3))
        return COMPLETED

    error = result.error_message(timeout)
    # attempts already includes this run
    if job.attempts <= max_retries:
        delay = min(base ** job.attempts, MAX_BACKOFF_SECONDS)
        if not schedule_retry(conn, job.id, iso_after(delay, finished), finished, error,
                              result.stdout, result.stderr, worker_id=worker_id):
            return _ownership_lost(job, RETRY)
        logger.warning("job_retry_scheduled", job_id=job.id, attempt=job.attempts,
                       max_retries=max_retries, delay_seconds=delay, error=error)
        return RETRY

    if not dead_letter(conn, job.id, finished, error, result.stdout, result.stderr, worker_id=worker_id):
        return _ownership_lost(job, DEAD)
    logger.error("job_dead_lettered", job_id=job.id, attempts=job.attempts, error=error)
    return DEAD


def _ownership_lost(job: Job, outcome: str) -> str:
    logger.warning("job_ownership_lost", job_id=job.id, attempt=job.attempts, outcome=outcome)
    return LOST


def process_next(conn, worker_id: str, now=None, log_dir: Optional[str] = None) -> Optional[str]:
    """
    Claim one eligible job, run it and record the outcome.

    Returns "completed", "retry" or "dead", or None when nothing was ready.
    "lost" means the job was reaped and reclaimed elsewhere mid-run, so
    nothing was written.
    Store errors propagate; anything else going wrong with the job itself is
    recorded as a failed attempt.
    """
    job = claim_next(conn, worker_id, now)
    if job is None:
        return None

    # read fresh for every job so `config set` applies to running workers
    cfg = get_config(conn)
    max_retries = job.effective_max_retries(config_int(cfg, "max-retries"))
    base = config_int(cfg, "backoff-base")
    timeout = config_int(cfg, "job-timeout")

    logger.info("job_claimed", job_id=job.id, command=job.command,
                attempt=job.attempts, max_retries=max_retries)
    try:
        result = run_command(job.id, job.command, timeout=timeout, log_dir=log_dir)
    except Exception as e:
        logger.exception("job_execution_error", job_id=job.id)
        result = RunResult(exit_code=1, stderr=f"{type(e).__name__}: {e}")

    return _record_outcome(conn, job, result, worker_id, max_retries, base, timeout, now)


def worker_loop(worker_id: str, stop_event, db_path: Optional[str] = None,
                log_dir: Optional[str] = None):
    """Recover stuck jobs once, then poll until `stop_event` is set."""
    conn = connect_db(db_path)
    try:
        try:
            recover_stuck_jobs(conn)
        except sqlite3.Error as e:
            logger.warning("recovery_failed", error=str(e))

        logger.info("worker_started", pid=os.getpid())
        while not stop_event.is_set():
            if process_next(conn, worker_id, log_dir=log_dir) is None:
                stop_event.wait(config_float(get_config(conn), "poll-interval"))
    finally:
        conn.close()
    logger.info("worker_stopped")


def _worker_main(slot: int, stop_event, db_path: Optional[str], log_dir: Optional[str]):
    # Ctrl+C reaches the whole process group; the supervisor owns it and
    # flips the event. SIGTERM on a worker alone still means "stop".
    signal.signal(signal.SIGINT, signal.SIG_IGN)
    signal.signal(signal.SIGTERM, lambda signum, frame: stop_event.set())
    setup_logging()

    worker_id = f"worker-{slot}:{os.getpid()}"
    bind_context(worker_id=worker_id)
    try:
        worker_loop(worker_id, stop_event, db_path=db_path, log_dir=log_dir)
    except sqlite3.Error:
        logger.exception("worker_store_failure")
        raise SystemExit(1)


def _spawn(slot: int, stop_event, db_path, log_dir) -> multiprocessing.Process:
    proc = multiprocessing.Process(
        target=_worker_main,
        args=(slot, stop_event, db_path, log_dir),
        name=f"queuectl-worker-{slot}",
    )
    proc.start()
    logger.info("worker_spawned", slot=slot, pid=proc.pid)
    return proc


def start_workers(count: int, db_path: Optional[str] = None, log_dir: Optional[str] = None,
                  restart: bool = True, stop_event=None, max_restarts: int = MAX_RESTARTS):
    """
    Run `count` worker processes until SIGINT/SIGTERM.

    Shutdown is cooperative: a worker busy with a command finishes it (or
    hits the job timeout) before it notices the stop event. A worker that
    dies with a non-zero exit code is replaced in the same slot with a new
    worker id. A slot whose worker keeps dying within STABLE_RUN_SECONDS
    more than `max_restarts` times in a row stops the whole pool with
    RuntimeError.
    """
    if count < 1:
        raise ValueError("count must be >= 1")
    stop = stop_event or multiprocessing.Event()
    setup_signal_handlers(stop)

    procs: Dict[int, multiprocessing.Process] = {}
    started: Dict[int, float] = {}
    failures: Dict[int, int] = {}
    for slot in range(1, count + 1):
        procs[slot] = _spawn(slot, stop, db_path, log_dir)
        started[slot] = time.monotonic()
        failures[slot] = 0

    gave_up = None
    try:
        while procs and not stop.is_set():
            for slot, proc in list(procs.items()):
                if proc.is_alive():
                    continue
                proc.join()
                if proc.exitcode == 0 or not restart or stop.is_set():
                    del procs[slot]
                    continue

                if time.monotonic() - started[slot] < STABLE_RUN_SECONDS:
                    failures[slot] += 1
                else:
                    failures[slot] = 1
                logger.warning("worker_exited", slot=slot, exitcode=proc.exitcode,
                               consecutive_failures=failures[slot])
                if failures[slot] > max_restarts:
                    logger.error("worker_restart_limit", slot=slot, restarts=max_restarts)
                    del procs[slot]
                    gave_up = slot
                    stop.set()
                    break
                procs[slot] = _spawn(slot, stop, db_path, log_dir)
                started[slot] = time.monotonic()
            stop.wait(SUPERVISOR_TICK_SECONDS)
    finally:
        stop.set()
        for proc in procs.values():
            proc.join()
        logger.info("workers_stopped")

    if gave_up is not None:
        raise RuntimeError(
            f"worker slot {gave_up} crashed {max_restarts + 1} times in a row; giving up"
        )
