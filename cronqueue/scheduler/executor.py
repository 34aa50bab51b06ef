import logging
import random
import time
from contextlib import AbstractAsyncContextManager
from typing import Callable, Mapping, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from cronqueue.clock import Clock
from cronqueue.commands.finish_run import complete_run, fail_run
from cronqueue.domain.errors import DefinitionError
from cronqueue.domain.handlers import Deferred, bind, call
from cronqueue.domain.models import ClaimedRun, JobSpec
from cronqueue.domain.states import RunOutcome
from cronqueue.utils.locking import SlotLocks
from cronqueue.api.v1.metrics import RUN_OUTCOMES, RUN_DURATION

logger = logging.getLogger(__name__)

SessionFactory = Callable[[], AbstractAsyncContextManager[AsyncSession]]

class Executor:
    """
    Runs one claimed run through its job's filters and hooks and settles the row.

    Pipeline:
        when (all) / skip (any)  -> vetoed: release the slot, leave the row
        before -> handler -> then       -> delete the row
                          \\-> catch     -> reschedule with backoff, or delete
        finally, release the slot       -> always

    No store transaction is open while user code runs; only the slot is held.
    """

    def __init__(
        self,
        registry: Mapping[str, JobSpec],
        sessions: SessionFactory,
        locks: SlotLocks,
        clock: Clock,
        rng: Optional[random.Random] = None,
        slot_sessions: Optional[SessionFactory] = None
    ):
        self.registry = registry
        self.sessions = sessions
        # Session-level slot locks must be released on the connection that took them.
        self.slot_sessions = slot_sessions or sessions
        self.locks = locks
        self.clock = clock
        self.rng = rng

    async def execute(self, run: ClaimedRun) -> RunOutcome:
        spec = self.registry[run.name]
        args = run.args if isinstance(run.args, dict) else {}

        try:
            admitted = await self._admitted(spec, args)
        except BaseException:
            await self.release(run.locks)
            raise

        if not admitted:
            await self.release(run.locks)
            logger.debug("Run #%s of %s skipped by filter", run.id, run.name)
            RUN_OUTCOMES.labels(job=run.name, outcome=RunOutcome.SKIPPED).inc()
            return RunOutcome.SKIPPED

        started = time.perf_counter()
        try:
            outcome = await self._run(run, spec, args)
        finally:
            RUN_DURATION.labels(job=run.name).observe(time.perf_counter() - started)
            await self._finally_hooks(run, spec, args)
            await self.release(run.locks)

        RUN_OUTCOMES.labels(job=run.name, outcome=outcome).inc()
        return outcome

    async def release(self, keys: list[str]) -> None:
        if not keys:
            return
        async with self.slot_sessions() as session:
            async with session.begin():
                for key in keys:
                    await self.locks.release(session, key)

    async def _admitted(self, spec: JobSpec, args: dict) -> bool:
        for fn in spec.when:
            if not await call(fn, args):
                return False
        for fn in spec.skip:
            if await call(fn, args):
                return False
        return True

    async def _run(self, run: ClaimedRun, spec: JobSpec, args: dict) -> RunOutcome:
        try:
            for fn in spec.before:
                await call(fn, args)

            handler = bind(spec.handler or Deferred(run.name))
            await call(handler, args)

            for fn in spec.then:
                await call(fn, args)

        except DefinitionError:
            # The row keeps its lease and comes back once it expires.
            raise
        except Exception as e:
            logger.error("Run #%s of %s failed on attempt %s: %s", run.id, run.name, run.attempts, e, exc_info=True)
            await self._catch_hooks(run, spec, e, args)

            async with self.sessions() as session:
                async with session.begin():
                    outcome = await fail_run(session, run.id, spec, self.clock.now(), rng=self.rng)

            if outcome == RunOutcome.EXHAUSTED:
                logger.error("Run #%s of %s gave up after %s attempt(s)", run.id, run.name, run.attempts)
            return outcome

        async with self.sessions() as session:
            async with session.begin():
                await complete_run(session, run.id)

        logger.debug("Run #%s of %s succeeded", run.id, run.name)
        return RunOutcome.SUCCEEDED

    async def _catch_hooks(self, run: ClaimedRun, spec: JobSpec, error: Exception, args: dict) -> None:
        for fn in spec.catch:
            try:
                await call(fn, error, args)
            except Exception:
                logger.exception("catch hook of %s raised while handling run #%s", run.name, run.id)

    async def _finally_hooks(self, run: ClaimedRun, spec: JobSpec, args: dict) -> None:
        for fn in spec.finally_:
            try:
                await call(fn, args)
            except Exception:
                logger.exception("finally hook of %s raised for run #%s", run.name, run.id)
