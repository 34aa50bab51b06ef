from datetime import datetime, timedelta
from typing import Optional
import logging
import random

from sqlalchemy import select, update, delete
from sqlalchemy.ext.asyncio import AsyncSession

from cronqueue.db.models import Run
from cronqueue.domain.models import JobSpec
from cronqueue.domain.retry import backoff_delay
from cronqueue.domain.states import RunOutcome

logger = logging.getLogger(__name__)

async def complete_run(session: AsyncSession, run_id: int) -> None:
    """A run that succeeded leaves no trace."""
    await session.execute(delete(Run).where(Run.id == run_id))

async def fail_run(
    session: AsyncSession,
    run_id: int,
    spec: JobSpec,
    now: datetime,
    rng: Optional[random.Random] = None
) -> RunOutcome:
    """
    Reschedules a failed run with backoff, or deletes it when it has used up
    its attempts. The claim already counted this attempt.
    """
    attempts = await session.scalar(select(Run.attempts).where(Run.id == run_id))

    if attempts is None:
        logger.warning("Run #%s disappeared before its failure could be recorded", run_id)
        return RunOutcome.EXHAUSTED

    if attempts >= spec.max_attempts:
        await session.execute(delete(Run).where(Run.id == run_id))
        return RunOutcome.EXHAUSTED

    delay = backoff_delay(attempts, spec.backoff_base, spec.backoff_cap, spec.jitter, rng=rng)
    await session.execute(
        update(Run)
        .where(Run.id == run_id)
        .values(run_at=now + timedelta(seconds=delay), locked_until=None)
        .execution_options(synchronize_session=False)
    )
    logger.info("Run #%s will retry in %ss (attempt %s of %s)", run_id, delay, attempts, spec.max_attempts)
    return RunOutcome.RETRIED
