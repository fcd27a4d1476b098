import math
import os

DB_FILE = os.environ.get("QUEUECTL_DB", "queue.db")
LOG_DIR = os.environ.get("QUEUECTL_LOG_DIR", "logs")

DEFAULT_CONFIG = {
    "max-retries": "3",
    "backoff-base": "2",
    "job-timeout": "60",            # seconds, 0 = no timeout
    "stuck-job-threshold": "10",    # minutes
    "poll-interval": "2",           # seconds
}

ALLOWED_CONFIG_KEYS = set(DEFAULT_CONFIG.keys())
FLOAT_KEYS = {"poll-interval"}
# 0 is rejected for these: no busy polling, no reaping of running jobs
POSITIVE_KEYS = {"poll-interval", "stuck-job-threshold"}


def db_path() -> str:
    return os.environ.get("QUEUECTL_DB", DB_FILE)


def log_dir() -> str:
    return os.environ.get("QUEUECTL_LOG_DIR", LOG_DIR)


def validate_config_value(key: str, value: str) -> str:
    if key not in ALLOWED_CONFIG_KEYS:
        raise ValueError(f"Allowed keys: {', '.join(sorted(ALLOWED_CONFIG_KEYS))}")
    value = str(value).strip()
    try:
        number = float(value) if key in FLOAT_KEYS else int(value)
    except ValueError:
        kind = "a number" if key in FLOAT_KEYS else "an integer"
        raise ValueError(f"{key} must be {kind}, got {value!r}")
    if not math.isfinite(number):
        raise ValueError(f"{key} must be finite")
    if key in POSITIVE_KEYS and not number > 0:
        raise ValueError(f"{key} must be > 0")
    if number < 0:
        raise ValueError(f"{key} must be >= 0")
    return value


def config_int(cfg: dict, key: str) -> int:
    """Read an integer setting, falling back to its default when unset or malformed."""
    try:
        value = int(cfg.get(key, DEFAULT_CONFIG[key]))
    except (TypeError, ValueError):
        return int(DEFAULT_CONFIG[key])
    if key in POSITIVE_KEYS and value <= 0:
        return int(DEFAULT_CONFIG[key])
    return value


def config_float(cfg: dict, key: str) -> float:
    try:
        value = float(cfg.get(key, DEFAULT_CONFIG[key]))
    except (TypeError, ValueError):
        return float(DEFAULT_CONFIG[key])
    if key in POSITIVE_KEYS and not value > 0:
        return float(DEFAULT_CONFIG[key])
    return value
