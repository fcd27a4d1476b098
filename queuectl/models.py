import sqlite3
from dataclasses import dataclass, field, asdict
from typing import Optional

# Job States
PENDING = "pending"
PROCESSING = "processing"
COMPLETED = "completed"
FAILED = "failed"  # transient label, never persisted
DEAD = "dead"  # DLQ

STATES = (PENDING, PROCESSING, COMPLETED, DEAD)


@dataclass
class Job:
    id: str
    command: str
    state: str = PENDING
    attempts: int = 0
    max_retries: Optional[int] = None
    priority: int = 0
    run_after: Optional[str] = None
    worker_id: Optional[str] = None
    created_at: str = ""
    updated_at: str = ""
    last_error: Optional[str] = None
    stdout: Optional[str] = None
    stderr: Optional[str] = None

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "Job":
        return cls(**{k: row[k] for k in row.keys()})

    def effective_max_retries(self, default: int) -> int:
        return self.max_retries if self.max_retries is not None else default

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class JobSpec:
    """What a client submits; everything but `command` is optional."""

    command: str
    id: Optional[str] = None
    delay: Optional[float] = None
    run_at: Optional[str] = None
    priority: int = 0
    max_retries: Optional[int] = None

    @classmethod
    def from_dict(cls, data: dict) -> "JobSpec":
        if not isinstance(data, dict):
            raise ValueError("Job payload must be a JSON object.")
        unknown = set(data) - {"command", "id", "delay", "run_at", "priority", "max_retries"}
        if unknown:
            raise ValueError(f"Unknown job field(s): {', '.join(sorted(unknown))}")
        if not isinstance(data.get("command"), str):
            raise ValueError("command must be a string.")
        if data.get("run_at") is not None and not isinstance(data["run_at"], str):
            raise ValueError("run_at must be an ISO datetime string.")
        try:
            return cls(
                command=data["command"],
                id=data.get("id"),
                delay=float(data["delay"]) if data.get("delay") is not None else None,
                run_at=data.get("run_at"),
                priority=int(data.get("priority") or 0),
                max_retries=int(data["max_retries"]) if data.get("max_retries") is not None else None,
            )
        except (TypeError, ValueError, OverflowError) as e:
            raise ValueError(f"Invalid job field: {e}")


@dataclass
class RunResult:
    exit_code: int
    stdout: str = ""
    stderr: str = ""
    timed_out: bool = False
    signal: Optional[str] = None
    duration_seconds: float = field(default=0.0, compare=False)

    @property
    def succeeded(self) -> bool:
        return self.exit_code == 0 and not self.timed_out

    def error_message(self, timeout: Optional[float] = None) -> Optional[str]:
        if self.succeeded:
            return None
        if self.timed_out:
            return f"timed out after {timeout}s"
        if self.stderr.strip():
            return self.stderr.strip()
        return f"exit_code={self.exit_code}"
