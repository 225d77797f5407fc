from __future__ import annotations

import json
import time
from pathlib import Path
from typing import Optional

import typer
import uvicorn

from oikion import __version__
from oikion.config import get_settings
from oikion.logging_config import configure_logging

app = typer.Typer(add_completion=False, help="Oikion background jobs CLI")


@app.callback()
def _root() -> None:
    settings = get_settings()
    configure_logging(settings.LOG_LEVEL, settings.LOG_FORMAT)


def _services():
    from oikion.database import SessionLocal, init_db
    from oikion.jobs_engine.orchestrator import get_orchestrator
    from oikion.jobs_engine.services.job_service import JobService
    from oikion.jobs_engine.services.reconciliation_service import ReconciliationService

    init_db(create_tables=True)
    session = SessionLocal()
    orchestrator = get_orchestrator()
    job_service = JobService(session, orchestrator)
    return session, job_service, ReconciliationService(session, orchestrator, job_service=job_service)


def _load_payload(raw: str) -> dict:
    text = Path(raw[1:]).read_text(encoding="utf-8") if raw.startswith("@") else raw
    try:
        payload = json.loads(text)
    except json.JSONDecodeError as exc:
        typer.echo(f"Error: payload is not valid JSON ({exc})", err=True)
        raise typer.Exit(1)
    if not isinstance(payload, dict):
        typer.echo("Error: payload must be a JSON object", err=True)
        raise typer.Exit(1)
    return payload


@app.command()
def start(
    host: Optional[str] = typer.Option(None, help="Bind host"),
    port: Optional[int] = typer.Option(None, help="Bind port"),
    reload: bool = typer.Option(False, help="Auto-reload on changes (dev)"),
) -> None:
    settings = get_settings()
    uvicorn.run(
        "oikion.api.app:app",
        host=host or settings.HOST,
        port=port or settings.PORT,
        reload=reload,
    )


@app.command()
def version() -> None:
    typer.echo(__version__)


@app.command()
def submit(
    job_type: str = typer.Option(..., "--type", help="Job type, e.g. bulk-export"),
    tenant: str = typer.Option(..., "--tenant", help="Organization id"),
    payload: str = typer.Option("{}", help="JSON payload, or @path/to/file.json"),
    priority: str = typer.Option("normal", help="low|normal|high"),
    user: Optional[str] = typer.Option(None, "--user", help="Submitting user id"),
) -> None:
    """Submit a job and print the outcome as JSON."""
    from oikion.exceptions.handlers import ValidationError

    data = _load_payload(payload)
    session, job_service, _reconciler = _services()
    try:
        outcome = job_service.submit_job(
            job_type, tenant, data, priority=priority, created_by=user
        )
    except ValidationError as exc:
        typer.echo(json.dumps(exc.to_dict(), indent=2), err=True)
        raise typer.Exit(2)
    finally:
        session.close()
    typer.echo(
        json.dumps(
            {
                "success": outcome.success,
                "job_id": outcome.job_id,
                "status": outcome.status,
                "message": outcome.message,
            },
            indent=2,
        )
    )
    if not outcome.success:
        raise typer.Exit(1)


@app.command()
def reconcile(
    job_id: Optional[str] = typer.Option(None, "--job-id", help="Sync a single job"),
    limit: int = typer.Option(100, help="Max running jobs per sweep"),
    watch: bool = typer.Option(False, help="Keep sweeping until interrupted"),
    interval: int = typer.Option(30, help="Seconds between sweeps with --watch"),
) -> None:
    """
    Pull workload state from the orchestrator into job records.

    Backstop for workers whose completion callback never arrived.
    """
    session, _job_service, reconciler = _services()
    try:
        if job_id:
            changed = reconciler.sync_job_status_from_orchestrator(job_id)
            typer.echo(f"Job {job_id}: {'updated' if changed else 'unchanged'}")
            return
        while True:
            summary = reconciler.reconcile_active_jobs(limit=limit)
            typer.echo(json.dumps(summary.to_dict()))
            if not watch:
                return
            time.sleep(max(interval, 1))
    except KeyboardInterrupt:
        typer.echo("Reconciliation stopped.", err=True)
    finally:
        session.close()


@app.command()
def cleanup(
    days: Optional[int] = typer.Option(
        None, "--days", help="Retention in days (default: OIKION_JOB_RETENTION_DAYS)"
    ),
) -> None:
    """Delete finished jobs older than the retention window."""
    retention = days if days is not None else get_settings().JOB_RETENTION_DAYS
    session, _job_service, reconciler = _services()
    try:
        deleted = reconciler.cleanup_old_jobs(days_old=retention)
    finally:
        session.close()
    typer.echo(f"Deleted {deleted} jobs older than {retention} days.")


@app.command("db")
def db_command(
    action: str = typer.Argument(
        ..., help="upgrade|downgrade|revision|current|history"
    ),
    message: Optional[str] = typer.Option(
        None, "--message", "-m", help="Migration message (for revision)"
    ),
    autogenerate: bool = typer.Option(
        True, "--autogenerate/--no-autogenerate", help="Autogenerate migration"
    ),
    revision: Optional[str] = typer.Option(
        None, "--revision", "-r", help="Target revision (for upgrade/downgrade)"
    ),
) -> None:
    """Database migrations via Alembic."""
    import os
    import subprocess
    import sys

    alembic_ini = os.path.join(os.getcwd(), "alembic.ini")
    if not os.path.exists(alembic_ini):
        pkg_dir = os.path.dirname(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
        alembic_ini = os.path.join(pkg_dir, "alembic.ini")
        if not os.path.exists(alembic_ini):
            typer.echo("Error: alembic.ini not found", err=True)
            raise typer.Exit(1)

    cmd = [sys.executable, "-m", "alembic", "-c", alembic_ini]
    if action == "upgrade":
        cmd.extend(["upgrade", revision or "head"])
    elif action == "downgrade":
        cmd.extend(["downgrade", revision or "-1"])
    elif action == "revision":
        cmd.append("revision")
        if autogenerate:
            cmd.append("--autogenerate")
        cmd.extend(["-m", message or "auto migration"])
    elif action in ("current", "history"):
        cmd.append(action)
    else:
        typer.echo(f"Unknown action: {action}", err=True)
        raise typer.Exit(1)

    typer.echo(f"Running: {' '.join(cmd)}", err=True)
    result = subprocess.run(cmd, cwd=os.getcwd())
    raise typer.Exit(result.returncode)


def main() -> None:
    app()
