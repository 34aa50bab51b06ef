"""Tests for the scheduler loop."""

import asyncio
import signal
import time

from cronqueue.utils.locking import AdvisoryLocks
from tests import jobs
from tests.support import fetch_runs


async def wait_for(predicate, timeout=5.0):
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        assert asyncio.get_running_loop().time() < deadline, "condition not met in time"
        await asyncio.sleep(0.01)


class TestRunForever:
    async def test_processes_runs_until_stopped(self, scheduler, engine):
        scheduler.schedule("send", jobs.ping)
        for n in range(3):
            await scheduler.dispatch("send", args={"n": n})

        task = asyncio.create_task(scheduler.run_forever(batch=2, sleep=0.01, handle_signals=False))
        await wait_for(lambda: len(jobs.CALLS) == 3)
        scheduler.stop()
        await asyncio.wait_for(task, timeout=5)

        assert [args for _, args in jobs.CALLS] == [{"n": 0}, {"n": 1}, {"n": 2}]
        assert await fetch_runs(engine) == []

    async def test_start_and_shutdown(self, scheduler):
        scheduler.schedule("tests.jobs:ping").every_second()
        await scheduler.start(sleep=0.01)
        await wait_for(lambda: len(jobs.CALLS) >= 1)
        await scheduler.shutdown()
        assert scheduler.locks.held == set()

    async def test_errors_do_not_stop_the_loop(self, scheduler):
        scheduler.schedule("broken", "tests.jobs:NoHandle")
        await scheduler.dispatch("broken")

        task = asyncio.create_task(scheduler.run_forever(sleep=0.01, handle_signals=False))
        await asyncio.sleep(0.2)
        assert not task.done()
        scheduler.stop()
        await asyncio.wait_for(task, timeout=5)

    async def test_signal_stops_the_loop(self, scheduler):
        task = asyncio.create_task(scheduler.run_forever(sleep=0.01))
        await asyncio.sleep(0.05)
        scheduler._on_signal(signal.SIGTERM)
        await asyncio.wait_for(task, timeout=5)
        assert task.exception() is None


class TestConcurrentOperations:
    async def test_claim_and_dispatch_together(self, scheduler, engine):
        scheduler.schedule("send", jobs.ping)
        await scheduler.dispatch("send", args={"n": 1})

        claimed, handle = await asyncio.gather(
            scheduler.batch(10),
            scheduler.dispatch("send", args={"n": 2})
        )

        # One slot for "send", so only one of the two runs is claimed.
        assert len(claimed) == 1
        assert handle.id in [run.id for run in await fetch_runs(engine)]
        await scheduler.executor.execute(claimed[0])
        assert scheduler.locks.held == set()
        assert len(await fetch_runs(engine)) == 1

    async def test_concurrent_dispatches(self, scheduler, engine):
        scheduler.schedule("send", jobs.ping)
        handles = await asyncio.gather(*(scheduler.dispatch("send", args={"n": n}) for n in range(5)))
        assert sorted(h.id for h in handles) == [run.id for run in await fetch_runs(engine)]

    async def test_concurrent_claims_share_one_connection(self, scheduler):
        scheduler.schedule("send", jobs.ping).concurrency(3)
        for n in range(3):
            await scheduler.dispatch("send", args={"n": n})

        first, second = await asyncio.gather(scheduler.batch(2), scheduler.batch(2))
        assert len(first) + len(second) == 3
        assert len(scheduler.locks.held) == 3

        for run in first + second:
            await scheduler.executor.execute(run)
        assert scheduler.locks.held == set()

    async def test_status_while_a_claim_is_open(self, scheduler):
        scheduler.schedule("send", jobs.ping)
        await scheduler.dispatch("send")

        async with scheduler._session():
            report = await asyncio.wait_for(scheduler.status(), timeout=5)
        assert [(s.name, s.pending) for s in report] == [("send", 1)]


class TestBlockingHandlers:
    async def test_sync_handler_does_not_stall_the_loop(self, scheduler):
        scheduler.schedule("slow", lambda args: time.sleep(0.5))
        await scheduler.dispatch("slow")

        ticks = []

        async def heartbeat():
            while True:
                ticks.append(time.monotonic())
                await asyncio.sleep(0.02)

        beat = asyncio.create_task(heartbeat())
        try:
            assert await scheduler.run_once() == 1
        finally:
            beat.cancel()

        gaps = [b - a for a, b in zip(ticks, ticks[1:])]
        assert len(ticks) > 10
        assert max(gaps) < 0.3


class FakeConnection:
    def __init__(self):
        self.calls = []

    async def invalidate(self):
        self.calls.append("invalidate")

    async def close(self):
        self.calls.append("close")


class TestDropConnection:
    async def test_held_advisory_locks_discard_the_connection(self, scheduler):
        conn = FakeConnection()
        scheduler.locks = AdvisoryLocks()
        scheduler.locks.held.add("job:send:0")
        scheduler._conn = conn

        await scheduler._drop_connection()

        assert conn.calls == ["invalidate", "close"]
        assert scheduler.locks.held == set()
        assert scheduler._conn is None

    async def test_idle_connection_goes_back_to_the_pool(self, scheduler):
        conn = FakeConnection()
        scheduler.locks = AdvisoryLocks()
        scheduler._conn = conn

        await scheduler._drop_connection()
        assert conn.calls == ["close"]

    async def test_table_slots_expire_with_the_lease(self, scheduler, make_scheduler, clock):
        other = make_scheduler()
        scheduler.schedule("send", jobs.ping)
        other.schedule("send", jobs.ping)
        await scheduler.dispatch("send")

        [run] = await scheduler.batch(10)
        await scheduler._drop_connection()
        assert scheduler.locks.held == set()

        assert await other.batch(10) == []
        clock.advance(61)
        [again] = await other.batch(10)
        assert again.id == run.id
        await other.executor.execute(again)
        assert other.locks.held == set()
