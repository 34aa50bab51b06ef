from datetime import datetime, timezone
from typing import Mapping
import logging

from sqlalchemy.ext.asyncio import AsyncSession

from cronqueue.db.models import Run
from cronqueue.db.session import insert_ignore
from cronqueue.domain import cron
from cronqueue.domain.models import JobSpec
from cronqueue.api.v1.metrics import RUNS_ENQUEUED

logger = logging.getLogger(__name__)

def cron_key(name: str, when: datetime) -> str:
    """
    Idempotency token of one cron occurrence.

    Second resolution: two occurrences inside the same second share a token,
    so sub-second schedules collapse into one run per second.
    """
    return f"{name}|{when.astimezone(timezone.utc):%Y-%m-%d %H:%M:%S}"

async def enqueue_occurrence(session: AsyncSession, name: str, spec: JobSpec, when: datetime) -> bool:
    """Inserts the run for one occurrence unless some worker already did."""
    when = when.replace(microsecond=0)
    stmt = insert_ignore(
        session,
        Run,
        name=name,
        queue=spec.queue,
        priority=spec.priority,
        run_at=when,
        attempts=0,
        args=spec.args,
        unique_key=cron_key(name, when)
    )
    result = await session.execute(stmt)
    return result.rowcount == 1

async def enqueue_cron(session: AsyncSession, registry: Mapping[str, JobSpec], now: datetime) -> int:
    """
    Materializes cron occurrences for every cron job: the current instant if it
    matches, and always the next match after it. Safe to run from any number of
    workers at once; the unique_key constraint keeps one row per occurrence.

    Returns the number of rows actually inserted.
    """
    inserted = 0
    for name, spec in registry.items():
        if not spec.cron:
            continue

        schedule = spec.parsed or cron.parse(spec.cron)

        occurrences = []
        if cron.matches(schedule, now):
            occurrences.append(now)
        occurrences.append(cron.next_match(schedule, now))

        for when in occurrences:
            if await enqueue_occurrence(session, name, spec, when):
                inserted += 1
                RUNS_ENQUEUED.labels(job=name).inc()
                logger.debug("Enqueued %s for %s", name, when.isoformat())

    return inserted
