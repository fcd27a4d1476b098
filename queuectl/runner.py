import codecs
import os
import signal
import subprocess
import threading
import time
from typing import List, Optional

import structlog

from .config import log_dir as default_log_dir
from .models import RunResult
from .utils import now_iso

logger = structlog.get_logger(__name__)

# How long to keep draining pipes after the shell itself is gone. A
# background child that inherited stdout can hold the pipe open forever.
READER_GRACE_SECONDS = 5
CHUNK_SIZE = 4096


class JobLog:
    """Append-only log file for one job. Write failures are ignored."""

    def __init__(self, directory: str, job_id: str):
        self.path = os.path.join(directory, f"{job_id}.log")
        self._lock = threading.Lock()
        try:
            os.makedirs(directory, exist_ok=True)
        except OSError as e:
            logger.debug("job_log_dir_unavailable", path=directory, error=str(e))

    def write(self, text: str):
        with self._lock:
            try:
                with open(self.path, "a", encoding="utf-8") as fh:
                    fh.write(text)
            except OSError as e:
                logger.debug("job_log_write_failed", path=self.path, error=str(e))


def _drain(stream, sink: List[str], job_log: JobLog):
    decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
    try:
        while True:
            data = stream.read1(CHUNK_SIZE)
            if not data:
                break
            text = decoder.decode(data)
            if text:
                sink.append(text)
                job_log.write(text)
        tail = decoder.decode(b"", final=True)
        if tail:
            sink.append(tail)
            job_log.write(tail)
    except (OSError, ValueError):
        # pipe closed underneath us after a kill
        pass
    finally:
        stream.close()


def _kill(proc: subprocess.Popen):
    try:
        if os.name == "posix":
            os.killpg(proc.pid, signal.SIGKILL)
        else:
            proc.kill()
    except ProcessLookupError:
        pass


def run_command(job_id: str, command: str, timeout: Optional[float] = None,
                log_dir: Optional[str] = None) -> RunResult:
    """
    Run `command` through the shell in its own process group.

    stdout and stderr are read concurrently and mirrored into the job's log
    file as they arrive. If `timeout` (seconds, 0/None = unlimited) runs out,
    the whole group is killed and the result is flagged `timed_out`; output
    read up to that point is kept. Failing to start the process is reported
    as a result with a non-zero exit code, never raised.
    """
    job_log = JobLog(log_dir or default_log_dir(), job_id)
    job_log.write(f"\n=== Run at {now_iso()} ===\n")
    started = time.monotonic()

    try:
        proc = subprocess.Popen(
            command,
            shell=True,
            stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            start_new_session=True,
        )
    except OSError as e:
        job_log.write(f"\n=== Error: {e} ===\n")
        return RunResult(
            exit_code=127 if isinstance(e, FileNotFoundError) else 1,
            stderr=str(e),
            duration_seconds=time.monotonic() - started,
        )

    out: List[str] = []
    err: List[str] = []
    readers = [
        threading.Thread(target=_drain, args=(proc.stdout, out, job_log), daemon=True),
        threading.Thread(target=_drain, args=(proc.stderr, err, job_log), daemon=True),
    ]
    for t in readers:
        t.start()

    timed_out = False
    try:
        proc.wait(timeout=timeout or None)
    except subprocess.TimeoutExpired:
        timed_out = True
        _kill(proc)
        proc.wait()

    for t in readers:
        t.join(READER_GRACE_SECONDS)

    code = proc.returncode
    sig_name = None
    if code < 0:
        try:
            sig_name = signal.Signals(-code).name
        except ValueError:
            sig_name = str(-code)

    job_log.write(
        f"\n=== Exit code: {code if code >= 0 else None} | signal: {sig_name} "
        f"| timedOut: {str(timed_out).lower()} ===\n"
    )
    return RunResult(
        exit_code=code,
        stdout="".join(out),
        stderr="".join(err),
        timed_out=timed_out,
        signal=sig_name,
        duration_seconds=time.monotonic() - started,
    )
