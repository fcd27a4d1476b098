"""
Pytest configuration and shared fixtures.
"""

import logging

import pytest

from queuectl.db import connect_db, init_db
from queuectl.models import JobSpec
from queuectl.repository import enqueue_job, set_config
from .fixtures import at


@pytest.fixture(autouse=True)
def _restore_log_handlers():
    """The CLI points the root handler at CliRunner's stream; put it back."""
    root = logging.getLogger()
    handlers, level = root.handlers[:], root.level
    yield
    root.handlers = handlers
    root.setLevel(level)


@pytest.fixture
def log_dir(tmp_path) -> str:
    return str(tmp_path / "logs")


@pytest.fixture
def db_path(tmp_path, monkeypatch, log_dir) -> str:
    """A fresh database with schema and default config, wired into the env."""
    path = str(tmp_path / "queue.db")
    monkeypatch.setenv("QUEUECTL_DB", path)
    monkeypatch.setenv("QUEUECTL_LOG_DIR", log_dir)
    init_db(path)
    return path


@pytest.fixture
def conn(db_path):
    conn = connect_db(db_path)
    yield conn
    conn.close()


@pytest.fixture
def make_job(conn):
    """Enqueue a job at the test epoch unless told otherwise."""

    def _make(command: str = "exit 0", now: str = None, **fields):
        return enqueue_job(conn, JobSpec(command=command, **fields), now=now or at(0))

    return _make


@pytest.fixture
def fast_config(conn):
    set_config(conn, "poll-interval", "0.1")
    set_config(conn, "job-timeout", "10")
    return conn
