import json
import click

from . import __version__
from .config import ALLOWED_CONFIG_KEYS
from .db import init_db, connect_db
from .log import setup_logging
from .models import JobSpec, STATES
from .repository import (
    enqueue_job, get_job, list_jobs, counts, dlq_list, dlq_retry, dlq_purge,
    get_config, get_config_value, set_config, reset_config
)
from .utils import parse_delay_to_seconds
from .worker import start_workers


def _fail(message):
    click.secho(f"Error: {message}", fg="red", err=True)
    raise SystemExit(1)


@click.group(help="queuectl — background job queue CLI")
@click.version_option(__version__, prog_name="queuectl")
def cli():
    setup_logging()
    # Ensure DB/schema exist before any command runs
    init_db()


# ---------- Enqueue ----------
@cli.command("enqueue", help="Add a new job, either as a JSON object or with --cmd")
@click.argument("job_json", required=False)
@click.option("--cmd", "command", default=None, help="Command to execute")
@click.option("--id", "job_id", default=None, help="Job ID (default: generated UUID)")
@click.option("--max-retries", default=None, type=int, help="Override max retry count")
@click.option("--priority", default=0, type=int, show_default=True,
              help="Higher number = claimed first")
@click.option("--run-at", default=None, help="ISO datetime; naive values are UTC")
@click.option("--delay", "delay_str", default=None,
              help="Run after a delay, e.g. 30, 20s, 5m, 1h30m (mutually exclusive with --run-at)")
def enqueue_cmd(job_json, command, job_id, max_retries, priority, run_at, delay_str):
    conn = connect_db()
    try:
        if job_json and command:
            raise ValueError("Pass either a JSON job or --cmd, not both.")
        if job_json:
            try:
                spec = JobSpec.from_dict(json.loads(job_json))
            except json.JSONDecodeError as e:
                raise ValueError(f"Invalid job JSON: {e}")
        else:
            spec = JobSpec(
                command=command or "",
                id=job_id,
                delay=parse_delay_to_seconds(delay_str) if delay_str else None,
                run_at=run_at,
                priority=priority,
                max_retries=max_retries,
            )

        job = enqueue_job(conn, spec)
        click.secho(
            f"Enqueued {job.id} -> `{job.command}` (priority={job.priority}, run_after={job.run_after})",
            fg="green"
        )
    except ValueError as e:
        _fail(e)
    finally:
        conn.close()


# ---------- Workers ----------
@cli.group("worker", help="Manage workers")
def worker_group():
    pass


@worker_group.command("start")
@click.option("--count", type=click.IntRange(min=1), default=1, show_default=True,
              help="Number of worker processes")
def worker_start(count):
    click.secho(f"Starting {count} worker(s). Press Ctrl+C to stop…", fg="cyan")
    try:
        start_workers(count)
    except RuntimeError as e:
        _fail(e)
    click.secho("Workers stopped.", fg="yellow")


# ---------- Jobs ----------
@cli.command("list")
@click.option("--state", type=click.Choice(STATES), default=None)
@click.option("--limit", type=click.IntRange(min=1), default=10, show_default=True)
@click.option("--offset", type=click.IntRange(min=0), default=0, show_default=True)
def list_cmd(state, limit, offset):
    conn = connect_db()
    try:
        jobs = list_jobs(conn, state=state, limit=limit, offset=offset)
        default_retries = get_config(conn)["max-retries"]
    finally:
        conn.close()

    if not jobs:
        click.echo("No jobs.")
        return

    for j in jobs:
        ceiling = j.max_retries if j.max_retries is not None else default_retries
        click.echo(
            f"{j.id:>36} | {j.state:<10} | attempts={j.attempts}/{ceiling} | prio={j.priority} "
            f"| next={j.run_after} | cmd={j.command} | last_error={j.last_error}"
        )


@cli.command("show", help="Show one job, including its captured output")
@click.argument("job_id")
def show_cmd(job_id):
    conn = connect_db()
    try:
        job = get_job(conn, job_id)
    finally:
        conn.close()
    if job is None:
        _fail(f"Job {job_id} not found.")
    click.echo(json.dumps(job.to_dict(), indent=2))


@cli.command("status")
def status_cmd():
    conn = connect_db()
    try:
        click.echo(json.dumps(counts(conn), indent=2))
    finally:
        conn.close()


# ---------- DLQ ----------
@cli.group("dlq", help="Dead Letter Queue")
def dlq_group():
    pass


@dlq_group.command("list")
def dlq_list_cmd():
    conn = connect_db()
    try:
        jobs = dlq_list(conn)
    finally:
        conn.close()

    if not jobs:
        click.echo("DLQ is empty.")
        return

    for j in jobs:
        click.echo(f"{j.id} | attempts={j.attempts} | last_error={j.last_error} | cmd={j.command}")


@dlq_group.command("retry")
@click.argument("job_id")
def dlq_retry_cmd(job_id):
    conn = connect_db()
    try:
        if not dlq_retry(conn, job_id):
            raise ValueError(f"Job {job_id} not found in DLQ.")
        click.secho(f"Re-queued DLQ job {job_id}.", fg="green")
    except ValueError as e:
        _fail(e)
    finally:
        conn.close()


@dlq_group.command("purge", help="Delete one dead job, or every dead job")
@click.argument("job_id", required=False)
def dlq_purge_cmd(job_id):
    conn = connect_db()
    try:
        deleted = dlq_purge(conn, job_id)
    finally:
        conn.close()

    if job_id and not deleted:
        _fail(f"Job {job_id} not found in DLQ.")
    click.secho(f"Purged {deleted} job(s) from DLQ.", fg="green")


# ---------- Config ----------
@cli.group("config", help="Configuration")
def config_group():
    pass


@config_group.command("get")
@click.argument("key", required=False, type=click.Choice(sorted(ALLOWED_CONFIG_KEYS)))
def config_get(key):
    conn = connect_db()
    try:
        if key:
            click.echo(get_config_value(conn, key))
        else:
            click.echo(json.dumps(get_config(conn), indent=2))
    finally:
        conn.close()


@config_group.command("set")
@click.argument("key")
@click.argument("value")
def config_set_cmd(key, value):
    conn = connect_db()
    try:
        set_config(conn, key, value)
        click.secho(f"Config updated: {key}={value}", fg="green")
    except ValueError as e:
        _fail(e)
    finally:
        conn.close()


@config_group.command("reset")
def config_reset_cmd():
    conn = connect_db()
    try:
        reset_config(conn)
    finally:
        conn.close()
    click.secho("Config reset to defaults.", fg="yellow")


def main():
    cli()
