"""
CLI tests: enqueue, status, listing, DLQ and config through click's runner.
"""

import json

import pytest
from click.testing import CliRunner

from queuectl.cli import cli
from queuectl.models import DEAD
from queuectl.repository import claim_next, dead_letter, get_job
from queuectl.worker import process_next


@pytest.fixture
def runner(db_path):
    return CliRunner()


def invoke(runner, *args):
    return runner.invoke(cli, list(args), catch_exceptions=False)


def test_enqueue_json(runner, conn):
    result = invoke(runner, "enqueue", '{"id": "okjob", "command": "echo 42", "priority": 3}')

    assert result.exit_code == 0, result.output
    assert "Enqueued okjob" in result.output
    job = get_job(conn, "okjob")
    assert job.command == "echo 42"
    assert job.priority == 3


def test_enqueue_flags(runner, conn):
    result = invoke(runner, "enqueue", "--id", "later", "--cmd", "echo hi",
                    "--delay", "1m", "--max-retries", "2")

    assert result.exit_code == 0, result.output
    job = get_job(conn, "later")
    assert job.max_retries == 2
    assert job.run_after > job.created_at


@pytest.mark.parametrize("args", [
    ["enqueue", '{"priority": 1}'],
    ["enqueue", "not json"],
    ["enqueue", "--cmd", "echo", "--delay", "soon"],
    ["enqueue", "--cmd", "echo", "--delay", "5s", "--run-at", "2025-01-01T00:00:00"],
    ["enqueue", '{"command": "echo"}', "--cmd", "echo"],
    ["enqueue", '{"command": 123}'],
    ["enqueue", '{"command": "echo", "run_at": 5}'],
    ["enqueue", '{"command": "echo", "delay": 1e300}'],
    ["enqueue", '{"command": "echo", "delay": 1e400}'],
    ["enqueue", "--cmd", "echo", "--delay", "99999999999999999d"],
])
def test_enqueue_rejects_bad_input(runner, conn, args):
    result = invoke(runner, *args)

    assert result.exit_code == 1
    assert "Error:" in result.output
    assert json.loads(invoke(runner, "status").stdout)["total"] == 0


def test_status_and_list(runner, conn, log_dir):
    invoke(runner, "enqueue", '{"id": "a", "command": "exit 0"}')
    invoke(runner, "enqueue", '{"id": "b", "command": "exit 1", "max_retries": 0}')
    process_next(conn, "w", log_dir=log_dir)
    process_next(conn, "w", log_dir=log_dir)

    stats = json.loads(invoke(runner, "status").stdout)
    assert stats["completed"] == 1
    assert stats["dead"] == 1
    assert stats["pending"] == 0

    listed = invoke(runner, "list", "--state", "completed").output
    assert "a" in listed and "completed" in listed
    assert invoke(runner, "list", "--state", "pending").output.strip() == "No jobs."


def test_show(runner, conn, log_dir):
    invoke(runner, "enqueue", '{"id": "shown", "command": "echo visible"}')
    process_next(conn, "w", log_dir=log_dir)

    record = json.loads(invoke(runner, "show", "shown").stdout)
    assert record["state"] == "completed"
    assert record["stdout"] == "visible\n"

    assert invoke(runner, "show", "missing").exit_code == 1


def test_dlq_flow(runner, conn):
    assert invoke(runner, "dlq", "list").output.strip() == "DLQ is empty."

    invoke(runner, "enqueue", '{"id": "badjob", "command": "exit 2"}')
    invoke(runner, "enqueue", '{"id": "worse", "command": "exit 3"}')
    for _ in range(2):
        job = claim_next(conn, "w")
        dead_letter(conn, job.id, last_error=f"exit_code={job.id}")

    listed = invoke(runner, "dlq", "list").output
    assert "badjob" in listed and "worse" in listed

    assert invoke(runner, "dlq", "retry", "badjob").exit_code == 0
    assert get_job(conn, "badjob").state == "pending"
    assert invoke(runner, "dlq", "retry", "badjob").exit_code == 1

    assert invoke(runner, "dlq", "purge", "badjob").exit_code == 1
    assert "Purged 1" in invoke(runner, "dlq", "purge").output
    assert get_job(conn, "worse") is None
    assert get_job(conn, "badjob").state != DEAD


def test_config_commands(runner):
    cfg = json.loads(invoke(runner, "config", "get").stdout)
    assert cfg["backoff-base"] == "2"

    assert invoke(runner, "config", "set", "backoff-base", "3").exit_code == 0
    assert invoke(runner, "config", "get", "backoff-base").stdout.strip() == "3"

    bad = invoke(runner, "config", "set", "backoff_base", "3")
    assert bad.exit_code == 1
    assert "Allowed keys" in bad.output

    assert invoke(runner, "config", "reset").exit_code == 0
    assert invoke(runner, "config", "get", "backoff-base").stdout.strip() == "2"
