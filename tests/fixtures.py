from datetime import datetime, timedelta, timezone

from queuectl.utils import to_iso

T0 = datetime(2025, 1, 1, 12, 0, 0, tzinfo=timezone.utc)


def at(seconds: float = 0, minutes: float = 0) -> str:
    """Timestamp relative to the fixed test epoch."""
    return to_iso(T0 + timedelta(seconds=seconds, minutes=minutes))
