import logging
from datetime import datetime, timedelta
from typing import Any, Optional, Union

from cronqueue.clock import Clock, as_instant
from cronqueue.commands.dispatch_run import insert_run, retime_run
from cronqueue.commands.enqueue_cron import enqueue_cron
from cronqueue.domain.models import JobSpec
from cronqueue.scheduler.executor import SessionFactory

logger = logging.getLogger(__name__)

class DispatchedRun:
    """
    Handle to a run that dispatch() just inserted.

    at()/delay() may move it only while no worker has leased it; after that
    they raise PostDispatchConflict and the row is left as it is.
    """

    def __init__(self, run_id: int, name: str, run_at: datetime, sessions: SessionFactory, clock: Clock):
        self.id = run_id
        self.name = name
        self.run_at = run_at
        self._sessions = sessions
        self._clock = clock

    def __repr__(self) -> str:
        return f"<DispatchedRun #{self.id} {self.name} at {self.run_at.isoformat()}>"

    async def at(self, when: Union[datetime, str]) -> "DispatchedRun":
        run_at = as_instant(when, self._clock.now().tzinfo)
        async with self._sessions() as session:
            async with session.begin():
                await retime_run(session, self.id, run_at, self._clock.now())
        self.run_at = run_at
        logger.debug("Run #%s of %s moved to %s", self.id, self.name, run_at.isoformat())
        return self

    async def delay(self, seconds: float) -> "DispatchedRun":
        return await self.at(self._clock.now() + timedelta(seconds=max(0, seconds)))

class Dispatcher:
    """Writes new runs: one-off dispatches and cron occurrences."""

    def __init__(self, sessions: SessionFactory, clock: Clock):
        self.sessions = sessions
        self.clock = clock

    async def dispatch(
        self,
        name: str,
        spec: JobSpec,
        args: Optional[dict[str, Any]] = None,
        run_at: Optional[datetime] = None
    ) -> DispatchedRun:
        if args is None:
            args = dict(spec.args)
        if run_at is None:
            run_at = self.clock.now()

        async with self.sessions() as session:
            async with session.begin():
                run_id = await insert_run(session, name, spec, run_at, args)

        logger.info("Dispatched %s as run #%s for %s", name, run_id, run_at.isoformat())
        return DispatchedRun(run_id, name, run_at, self.sessions, self.clock)

    async def enqueue(self, registry: dict[str, JobSpec]) -> int:
        async with self.sessions() as session:
            async with session.begin():
                inserted = await enqueue_cron(session, registry, self.clock.now())
        if inserted:
            logger.info("Enqueued %s cron occurrence(s)", inserted)
        return inserted
