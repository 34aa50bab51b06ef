"""
CLI: ``cronqueue``, to install the tables and drive a scheduler from a shell.

Jobs are defined by a ``module:callable`` that receives the Scheduler:

    def register(scheduler):
        scheduler.schedule("reports.nightly", build_report).daily().hours(3)

    cronqueue forever --jobs myapp.jobs:register
"""
import asyncio
import json
import logging
from typing import Optional

import typer

from cronqueue.db.session import build_engine
from cronqueue.domain.handlers import resolve_identifier
from cronqueue.scheduler.service import Scheduler
from cronqueue.settings import settings

app = typer.Typer(no_args_is_help=True, help="Cron scheduler and job queue on a shared SQL store.")

logger = logging.getLogger(__name__)

def _configure_logging() -> None:
    logging.basicConfig(
        level=settings.LOG_LEVEL.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s"
    )

def _build(database: Optional[str], jobs: Optional[str]) -> Scheduler:
    scheduler = Scheduler(build_engine(database))
    jobs = jobs or settings.JOBS
    if jobs:
        resolve_identifier(jobs)(scheduler)
        logger.debug("Loaded %s job(s) from %s", len(scheduler.defined()), jobs)
    return scheduler

async def _finish(scheduler: Scheduler) -> None:
    await scheduler.close()
    await scheduler.engine.dispose()

@app.command("install")
def install(
    database: Optional[str] = typer.Option(None, "--database", "-d", help="SQLAlchemy URL"),
) -> None:
    """Create the jobs and job_slot_locks tables."""
    _configure_logging()

    async def _run():
        scheduler = _build(database, None)
        try:
            await scheduler.install()
        finally:
            await _finish(scheduler)

    asyncio.run(_run())
    typer.echo("installed")

@app.command("run")
def run(
    jobs: Optional[str] = typer.Option(None, "--jobs", "-j", help="module:callable defining the jobs"),
    batch: int = typer.Option(settings.BATCH_LIMIT, "--batch", "-b"),
    database: Optional[str] = typer.Option(None, "--database", "-d", help="SQLAlchemy URL"),
) -> None:
    """Run a single tick and print how many runs were processed."""
    _configure_logging()

    async def _run():
        scheduler = _build(database, jobs)
        try:
            return await scheduler.run_once(batch)
        finally:
            await _finish(scheduler)

    typer.echo(asyncio.run(_run()))

@app.command("forever")
def forever(
    jobs: Optional[str] = typer.Option(None, "--jobs", "-j", help="module:callable defining the jobs"),
    batch: int = typer.Option(settings.BATCH_LIMIT, "--batch", "-b"),
    sleep: float = typer.Option(settings.POLL_INTERVAL_SECONDS, "--sleep", help="Seconds to idle between light ticks"),
    database: Optional[str] = typer.Option(None, "--database", "-d", help="SQLAlchemy URL"),
) -> None:
    """Tick until SIGINT/SIGTERM."""
    _configure_logging()

    async def _run():
        scheduler = _build(database, jobs)
        try:
            await scheduler.run_forever(batch=batch, sleep=sleep)
        finally:
            await _finish(scheduler)

    asyncio.run(_run())

@app.command("prune")
def prune(
    older_than: int = typer.Option(settings.PRUNE_OLDER_THAN_SECONDS, "--older-than", help="Seconds since the lease ended"),
    database: Optional[str] = typer.Option(None, "--database", "-d", help="SQLAlchemy URL"),
) -> None:
    """Delete runs abandoned by dead workers."""
    _configure_logging()

    async def _run():
        scheduler = _build(database, None)
        try:
            return await scheduler.prune(older_than)
        finally:
            await _finish(scheduler)

    typer.echo(asyncio.run(_run()))

@app.command("status")
def status(
    jobs: Optional[str] = typer.Option(None, "--jobs", "-j", help="module:callable defining the jobs"),
    json_out: bool = typer.Option(False, "--json"),
    database: Optional[str] = typer.Option(None, "--database", "-d", help="SQLAlchemy URL"),
) -> None:
    """Per-job counts of pending and leased runs."""
    _configure_logging()

    async def _run():
        scheduler = _build(database, jobs)
        try:
            return await scheduler.status()
        finally:
            await _finish(scheduler)

    report = asyncio.run(_run())
    if json_out:
        typer.echo(json.dumps([s.as_dict() for s in report], indent=2))
        return

    if not report:
        typer.echo("no jobs")
        return
    for s in report:
        next_run = s.next_run_at.isoformat() if s.next_run_at else "-"
        typer.echo(f"{s.name}\tpending={s.pending}\tleased={s.leased}\tnext={next_run}\tattempts<={s.max_attempts_seen}")

if __name__ == "__main__":
    app()
