"""Tests for the per-job status report."""

from tests import jobs
from tests.support import T0


class TestStatus:
    async def test_counts_pending_and_leased(self, scheduler):
        scheduler.schedule("send", jobs.ping).queue("mail").priority(5)
        await scheduler.dispatch("send")
        await scheduler.delay(30).dispatch("send")
        await scheduler.batch(10)

        [send] = await scheduler.status()
        assert send.name == "send"
        assert send.pending == 1
        assert send.leased == 1
        assert send.next_run_at == T0
        assert send.max_attempts_seen == 1
        assert send.queue == "mail"
        assert send.priority == 5
        assert send.known

    async def test_idle_jobs_are_listed(self, scheduler):
        scheduler.schedule("tick", jobs.ping).hourly()
        [tick] = await scheduler.status()
        assert (tick.pending, tick.leased, tick.next_run_at) == (0, 0, None)
        assert tick.as_dict() == {
            "name": "tick",
            "pending": 0,
            "leased": 0,
            "next_run_at": None,
            "max_attempts_seen": 0,
            "queue": "default",
            "priority": 100,
            "cron": "0 0 * * * *",
            "known": True,
        }

    async def test_rows_of_unknown_jobs(self, scheduler, make_scheduler):
        scheduler.schedule("send", jobs.ping)
        await scheduler.dispatch("send")

        observer = make_scheduler()
        [send] = await observer.status()
        assert send.pending == 1
        assert not send.known
        assert send.as_dict()["next_run_at"] == T0.isoformat()

    async def test_expired_lease_counts_as_pending(self, scheduler, clock):
        scheduler.schedule("send", jobs.ping)
        await scheduler.dispatch("send")
        await scheduler.batch(10)

        clock.advance(61)
        [send] = await scheduler.status()
        assert (send.pending, send.leased) == (1, 0)
