from datetime import datetime

from sqlalchemy import delete
from sqlalchemy.ext.asyncio import AsyncSession

from cronqueue.db.models import Run, SlotLock
from cronqueue.api.v1.metrics import RUNS_PRUNED

async def prune_runs(session: AsyncSession, cutoff: datetime) -> int:
    """
    Deletes runs whose lease ended before `cutoff`.

    Those are runs whose worker died mid-execution: a live worker either
    deletes its run or clears locked_until when it finishes. Leases that only
    just expired are left alone; the claim query picks them up again.
    Returns the number of runs deleted.
    """
    result = await session.execute(
        delete(Run).where(
            Run.locked_until.is_not(None),
            Run.locked_until < cutoff
        )
    )
    await session.execute(delete(SlotLock).where(SlotLock.expires_at < cutoff))

    count = result.rowcount or 0
    if count > 0:
        RUNS_PRUNED.inc(count)
    return count
