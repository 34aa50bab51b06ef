from datetime import datetime, timedelta
from typing import Mapping, Optional
import logging

from sqlalchemy import select, update, or_
from sqlalchemy.ext.asyncio import AsyncSession

from cronqueue.db.models import Run
from cronqueue.domain.models import ClaimedRun, JobSpec
from cronqueue.utils.locking import SlotLocks, slot_key
from cronqueue.api.v1.metrics import RUNS_CLAIMED, RUNS_DEFERRED, CLAIM_DELAY

logger = logging.getLogger(__name__)

def claimable(now: datetime):
    """Due and not under a live lease."""
    return (
        Run.run_at <= now,
        or_(Run.locked_until.is_(None), Run.locked_until <= now),
    )

async def claim_batch(
    session: AsyncSession,
    registry: Mapping[str, JobSpec],
    locks: SlotLocks,
    now: datetime,
    limit: int
) -> list[ClaimedRun]:
    """
    Leases up to `limit` due runs of the jobs this process knows about.

    Runs inside the caller's transaction, which should be short:
    1. SELECT ... FOR UPDATE SKIP LOCKED in (priority, run_at, id) order, so
       concurrent claimers split the rows instead of queueing on them.
    2. Per row, take a free concurrency slot of its job. No slot -> the row
       stays for a later tick.
    3. Lease the row (locked_until = now + lease, attempts + 1). The update
       repeats the claimable check, so on stores without SKIP LOCKED a row that
       another worker leased in between is simply passed over.

    Every returned run holds its slot; whoever executes it must release it.
    """
    names = list(registry)
    if not names or limit <= 0:
        return []

    stmt = (
        select(Run.id, Run.name, Run.args, Run.attempts, Run.run_at)
        .where(Run.name.in_(names), *claimable(now))
        .order_by(Run.priority.asc(), Run.run_at.asc(), Run.id.asc())
        .limit(limit)
        .with_for_update(skip_locked=True)
    )
    rows = (await session.execute(stmt)).all()

    claimed: list[ClaimedRun] = []
    for row in rows:
        spec = registry[row.name]
        locked_until = now + timedelta(seconds=spec.lease)

        slot = await _acquire_slot(session, locks, row.name, spec.concurrency, locked_until)
        if slot is None:
            logger.debug("No free slot for %s, leaving run #%s for a later tick", row.name, row.id)
            RUNS_DEFERRED.labels(job=row.name, reason="concurrency").inc()
            continue

        result = await session.execute(
            update(Run)
            .where(Run.id == row.id, *claimable(now))
            .values(locked_until=locked_until, attempts=Run.attempts + 1)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            logger.debug("Run #%s was claimed elsewhere", row.id)
            RUNS_DEFERRED.labels(job=row.name, reason="conflict").inc()
            await locks.release(session, slot)
            continue

        claimed.append(ClaimedRun(
            id=row.id,
            name=row.name,
            args=row.args or {},
            attempts=row.attempts + 1,
            run_at=row.run_at,
            locks=[slot]
        ))

        RUNS_CLAIMED.labels(job=row.name).inc()
        delay = (now - row.run_at).total_seconds()
        if delay >= 0:
            CLAIM_DELAY.observe(delay)

    return claimed

async def _acquire_slot(
    session: AsyncSession,
    locks: SlotLocks,
    name: str,
    concurrency: int,
    expires_at: datetime
) -> Optional[str]:
    for slot in range(max(1, concurrency)):
        key = slot_key(name, slot)
        if await locks.try_acquire(session, key, expires_at):
            return key
    return None
