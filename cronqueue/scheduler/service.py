import asyncio
import logging
import random
import signal
from contextlib import asynccontextmanager
from datetime import timedelta
from typing import Any, AsyncIterator, Optional
from uuid import uuid4

from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine, AsyncSession

from cronqueue.clock import Clock, SystemClock
from cronqueue.commands.claim_batch import claim_batch
from cronqueue.commands.prune_runs import prune_runs
from cronqueue.commands.run_status import JobStatus, run_status
from cronqueue.db.models import Base
from cronqueue.db.session import build_sessionmaker
from cronqueue.domain.models import ClaimedRun
from cronqueue.scheduler.builder import JobBuilder, JobRegistry
from cronqueue.scheduler.dispatcher import DispatchedRun, Dispatcher
from cronqueue.scheduler.executor import Executor
from cronqueue.settings import settings
from cronqueue.utils.locking import AdvisoryLocks, lock_backend_for

logger = logging.getLogger(__name__)

class Scheduler(JobBuilder):
    """
    One scheduler loop: enqueue cron occurrences, claim due runs, execute them.

    Any number of Schedulers (in one process or many) can share a store. Each
    owns one dedicated connection, because concurrency slots may be
    session-level database locks that have to outlive the claim transaction.
    """

    def __init__(
        self,
        engine: AsyncEngine,
        clock: Optional[Clock] = None,
        registry: Optional[JobRegistry] = None,
        rng: Optional[random.Random] = None
    ):
        super().__init__(registry=registry, clock=clock or SystemClock(settings.TIMEZONE))
        self.engine = engine
        self.instance_id = uuid4().hex[:16]
        self.locks = lock_backend_for(engine.dialect.name, self.instance_id, self.clock)

        # Row work goes through the pool; only slot locks need the dedicated connection.
        self._pooled = build_sessionmaker(engine)
        self.dispatcher = Dispatcher(self._pooled, self.clock)
        self.executor = Executor(self.jobs, self._pooled, self.locks, self.clock, rng=rng, slot_sessions=self._session)

        self._conn: Optional[AsyncConnection] = None
        self._sessionmaker = None
        self._conn_lock = asyncio.Lock()
        self._running = False
        self._shutdown_event = asyncio.Event()
        self._task: Optional[asyncio.Task] = None

    # Connection ---------------------------------------------------------

    async def _connection(self) -> AsyncConnection:
        if self._conn is None or self._conn.closed:
            self._conn = await self.engine.connect()
            self._sessionmaker = build_sessionmaker(self._conn)
        return self._conn

    @asynccontextmanager
    async def _session(self) -> AsyncIterator[AsyncSession]:
        """
        Session on the dedicated connection. One user at a time: a connection
        carries a single transaction.
        """
        async with self._conn_lock:
            await self._connection()
            async with self._sessionmaker() as session:
                yield session

    async def _drop_connection(self) -> None:
        async with self._conn_lock:
            conn, self._conn = self._conn, None
            self._sessionmaker = None
            stranded = bool(self.locks.held)
            # Advisory locks die with the database session; table slots expire on their own.
            self.locks.held.clear()
            if conn is None:
                return
            try:
                if stranded and isinstance(self.locks, AdvisoryLocks):
                    # close() would hand the session back to the pool still holding them.
                    await conn.invalidate()
                await conn.close()
            except Exception:
                logger.warning("Closing the scheduler connection failed", exc_info=True)

    async def install(self) -> None:
        """Creates the jobs and job_slot_locks tables (and their indexes) if missing."""
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("Installed cronqueue tables on %s", self.engine.dialect.name)

    async def close(self) -> None:
        """Releases every slot this scheduler still holds and its connection."""
        if self.locks.held and self._conn is not None:
            await self.executor.release(list(self.locks.held))
        await self._drop_connection()

    # Operations ---------------------------------------------------------

    async def dispatch(self, identifier: Optional[str] = None, args: Optional[dict[str, Any]] = None) -> DispatchedRun:
        """
        Inserts one run of the selected job (or of the active job when no
        identifier is given). Staged at()/delay() and args() apply; the staged
        run_at is consumed by this call.
        """
        name = self.select(identifier)
        spec = self.jobs[name]
        run_at, spec.run_at = spec.run_at, None
        return await self.dispatcher.dispatch(name, spec, args=args, run_at=run_at)

    async def enqueue(self) -> int:
        """Materializes due and next cron occurrences. Returns rows inserted."""
        return await self.dispatcher.enqueue(self.defined())

    async def batch(self, limit: Optional[int] = None) -> list[ClaimedRun]:
        """Claims up to `limit` due runs; the caller must execute them (or release their slots)."""
        limit = settings.BATCH_LIMIT if limit is None else limit
        before = set(self.locks.held)
        try:
            async with self._session() as session:
                async with session.begin():
                    return await claim_batch(session, self.defined(), self.locks, self.clock.now(), limit)
        except BaseException:
            taken = list(self.locks.held - before)
            if taken:
                logger.warning("Claim failed, releasing %s slot(s) taken during it", len(taken))
                try:
                    await self.executor.release(taken)
                except Exception:
                    logger.error("Could not release slots %s", taken, exc_info=True)
                    await self._drop_connection()
            raise

    async def prune(self, older_than: Optional[int] = None) -> int:
        """Deletes runs whose lease ended more than `older_than` seconds ago."""
        older_than = settings.PRUNE_OLDER_THAN_SECONDS if older_than is None else older_than
        cutoff = self.clock.now() - timedelta(seconds=older_than)
        async with self._pooled() as session:
            async with session.begin():
                count = await prune_runs(session, cutoff)
        if count:
            logger.info("Pruned %s abandoned run(s) leased before %s", count, cutoff.isoformat())
        return count

    async def status(self) -> list[JobStatus]:
        async with self._pooled() as session:
            return await run_status(session, self.defined(), self.clock.now())

    async def run_once(self, batch: Optional[int] = None) -> int:
        """One tick: enqueue, claim, execute. Returns the number of runs processed."""
        await self.enqueue()
        runs = await self.batch(batch)

        processed = 0
        for index, run in enumerate(runs):
            try:
                await self.executor.execute(run)
            except BaseException:
                pending = [key for rest in runs[index + 1:] for key in rest.locks]
                if pending:
                    await self.executor.release(pending)
                raise
            processed += 1
        return processed

    # Loop ---------------------------------------------------------------

    async def run_forever(
        self,
        batch: Optional[int] = None,
        sleep: Optional[float] = None,
        handle_signals: bool = True
    ) -> None:
        """
        Ticks until stop() (or SIGINT/SIGTERM). Sleeps between ticks that had
        less than a full batch. A tick in progress always finishes its runs.
        """
        batch = settings.BATCH_LIMIT if batch is None else batch
        sleep = settings.POLL_INTERVAL_SECONDS if sleep is None else sleep

        self._running = True
        self._shutdown_event.clear()

        loop = asyncio.get_running_loop()
        installed = []
        if handle_signals:
            for sig in (signal.SIGINT, signal.SIGTERM):
                try:
                    loop.add_signal_handler(sig, self._on_signal, sig)
                    installed.append(sig)
                except NotImplementedError:
                    # Windows support
                    pass

        logger.info("Scheduler %s started (%s job(s))", self.instance_id, len(self.defined()))
        try:
            while self._running:
                try:
                    processed = await self.run_once(batch)
                except Exception as e:
                    logger.error(f"Error in scheduler tick: {e}", exc_info=True)
                    await self._drop_connection()
                    await self._wait(max(sleep, 1.0))
                    continue

                if processed < batch:
                    await self._wait(sleep)
        finally:
            for sig in installed:
                loop.remove_signal_handler(sig)
            await self.close()
            logger.info("Scheduler %s stopped", self.instance_id)

    def stop(self) -> None:
        self._running = False
        self._shutdown_event.set()

    def _on_signal(self, sig: signal.Signals) -> None:
        logger.info("Received %s, stopping after the current tick", sig.name)
        self.stop()

    async def _wait(self, seconds: float) -> None:
        try:
            await asyncio.wait_for(self._shutdown_event.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass

    async def start(self, **kwargs) -> None:
        """Runs the loop as a background task (used by the HTTP host)."""
        kwargs.setdefault("handle_signals", False)
        self._task = asyncio.create_task(self.run_forever(**kwargs))

    async def shutdown(self) -> None:
        self.stop()
        if self._task:
            await self._task
            self._task = None
