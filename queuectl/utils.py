from datetime import datetime, timezone, timedelta
import re
from typing import Optional

# e.g., "20s", "5m", "1h30m", "2d3h", "90m", "  2h  "
DELAY_RE = re.compile(r"(?i)^\s*(?:(\d+)\s*d)?\s*(?:(\d+)\s*h)?\s*(?:(\d+)\s*m)?\s*(?:(\d+)\s*s)?\s*$")


def parse_delay_to_seconds(s: str) -> int:
    """
    Parse delay strings like '45', '20s', '5m', '1h30m', '2d3h'.
    A bare number is taken as seconds. Returns total seconds (int).
    Raises ValueError on bad input.
    """
    if s is None or not str(s).strip():
        raise ValueError("delay string is empty")
    s = str(s).strip()
    if s.isdigit():
        return int(s)
    m = DELAY_RE.match(s)
    if not m or not any(m.groups()):
        raise ValueError(f"Invalid delay format: {s!r}")
    d, h, m_, s_ = m.groups()
    total = 0
    if d:  total += int(d) * 86400
    if h:  total += int(h) * 3600
    if m_: total += int(m_) * 60
    if s_: total += int(s_)
    return total


def to_iso(dt: datetime) -> str:
    """Fixed-width UTC timestamp like '2025-11-06T09:12:34.123456Z'.

    Stored timestamps are compared as strings, so every one must carry
    microseconds and the same suffix.
    """
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat(timespec="microseconds").replace("+00:00", "Z")


def parse_iso(value: str) -> datetime:
    """Parse an ISO timestamp; naive values are taken as UTC."""
    dt = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def now_iso() -> str:
    return to_iso(utcnow())


def iso_after(seconds: float, start: Optional[datetime] = None) -> str:
    """Return the UTC ISO time `seconds` after `start` (default: now)."""
    return to_iso((start or utcnow()) + timedelta(seconds=seconds))
