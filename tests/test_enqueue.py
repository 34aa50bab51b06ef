"""Tests for materializing cron occurrences."""

from datetime import timedelta, timezone

from cronqueue.commands.enqueue_cron import cron_key
from tests import jobs
from tests.support import T0, fetch_runs


class TestEnqueue:
    async def test_current_and_next_occurrence(self, scheduler, engine):
        scheduler.schedule("tick", jobs.ping).every_five_seconds()
        assert await scheduler.enqueue() == 2

        runs = await fetch_runs(engine)
        assert [run.run_at for run in runs] == [T0, T0 + timedelta(seconds=5)]
        assert [run.unique_key for run in runs] == [
            "tick|2024-01-01 10:00:00",
            "tick|2024-01-01 10:00:05",
        ]
        assert all(run.attempts == 0 and run.locked_until is None for run in runs)

    async def test_only_the_due_occurrence_runs(self, scheduler, engine):
        scheduler.schedule("tick", jobs.ping).every_five_seconds().args({"k": "v"})

        assert await scheduler.run_once() == 1
        assert jobs.CALLS == [("ping", {"k": "v"})]

        runs = await fetch_runs(engine)
        assert [run.run_at for run in runs] == [T0 + timedelta(seconds=5)]

    async def test_repeated_enqueue_is_idempotent(self, scheduler, engine):
        scheduler.schedule("tick", jobs.ping).every_five_seconds()
        assert await scheduler.enqueue() == 2
        assert await scheduler.enqueue() == 0
        assert len(await fetch_runs(engine)) == 2

    async def test_many_schedulers_one_row_per_occurrence(self, scheduler, make_scheduler, engine):
        others = [make_scheduler() for _ in range(3)]
        for each in [scheduler, *others]:
            each.schedule("tick", jobs.ping).every_five_seconds()

        inserted = [await each.enqueue() for each in [scheduler, *others]]
        assert sum(inserted) == 2
        assert len(await fetch_runs(engine)) == 2

    async def test_off_beat_instant_only_enqueues_next(self, scheduler, engine, clock):
        scheduler.schedule("tick", jobs.ping).every_five_seconds()
        clock.advance(1)
        assert await scheduler.enqueue() == 1
        assert [run.run_at for run in await fetch_runs(engine)] == [T0 + timedelta(seconds=5)]

    async def test_sub_second_clock_is_truncated(self, scheduler, engine, clock):
        scheduler.schedule("tick", jobs.ping).every_five_seconds()
        clock.advance(milliseconds=250)
        await scheduler.enqueue()
        assert [run.run_at for run in await fetch_runs(engine)] == [T0, T0 + timedelta(seconds=5)]

    async def test_jobs_without_cron_are_ignored(self, scheduler, engine):
        scheduler.schedule("send", jobs.ping)
        assert await scheduler.enqueue() == 0
        assert await fetch_runs(engine) == []

    def test_token_is_utc_to_the_second(self):
        local = (T0 + timedelta(microseconds=999)).astimezone(timezone(timedelta(hours=2)))
        assert cron_key("tick", local) == "tick|2024-01-01 10:00:00"
