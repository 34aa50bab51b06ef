from datetime import datetime
from typing import Any

from sqlalchemy import update, or_
from sqlalchemy.ext.asyncio import AsyncSession

from cronqueue.db.models import Run
from cronqueue.domain.errors import PostDispatchConflict
from cronqueue.domain.models import JobSpec
from cronqueue.api.v1.metrics import RUNS_DISPATCHED

async def insert_run(
    session: AsyncSession,
    name: str,
    spec: JobSpec,
    run_at: datetime,
    args: dict[str, Any]
) -> int:
    """Inserts a fresh, unleased run and returns its id."""
    run = Run(
        name=name,
        queue=spec.queue,
        priority=spec.priority,
        run_at=run_at,
        locked_until=None,
        attempts=0,
        args=args,
        unique_key=None
    )
    session.add(run)
    await session.flush()

    RUNS_DISPATCHED.labels(job=name).inc()
    return run.id

async def retime_run(session: AsyncSession, run_id: int, run_at: datetime, now: datetime) -> None:
    """
    Moves a dispatched run to a new run_at.

    Only allowed while nobody holds a live lease on it; a row that is leased,
    finished or gone raises PostDispatchConflict.
    """
    stmt = (
        update(Run)
        .where(Run.id == run_id, or_(Run.locked_until.is_(None), Run.locked_until <= now))
        .values(run_at=run_at)
        .execution_options(synchronize_session=False)
    )
    result = await session.execute(stmt)
    if result.rowcount != 1:
        raise PostDispatchConflict(run_id)
