"""Tests for job definitions through the fluent builder."""

from datetime import datetime, timedelta, timezone

import pytest

from cronqueue.clock import FixedClock
from cronqueue.domain.errors import DefinitionError
from cronqueue.domain.handlers import Deferred, Direct
from cronqueue.domain.states import Jitter
from cronqueue.scheduler.builder import JobBuilder, JobRegistry
from tests.support import T0


def noop(args):
    return None


@pytest.fixture
def builder():
    return JobBuilder(clock=FixedClock(T0))


class TestSchedule:
    def test_callable_handler(self, builder):
        builder.schedule("send", noop)
        spec = builder.jobs["send"]
        assert spec.handler == Direct(noop)
        assert spec.queue == "default"
        assert spec.priority == 100
        assert spec.lease == 60
        assert spec.concurrency == 1
        assert spec.max_attempts == 1

    def test_identifier_as_name(self, builder):
        builder.schedule("tests.jobs:SendInvoice")
        assert builder.jobs["tests.jobs:SendInvoice"].handler is None

    def test_identifier_as_handler(self, builder):
        builder.schedule("invoices", "tests.jobs.SendInvoice")
        assert builder.jobs["invoices"].handler == Deferred("tests.jobs.SendInvoice")

    def test_unknown_identifier(self, builder):
        with pytest.raises(DefinitionError):
            builder.schedule("no.such.module:Job")
        with pytest.raises(DefinitionError):
            builder.schedule("send", "no.such.module:Job")

    def test_blank_name(self, builder):
        with pytest.raises(DefinitionError):
            builder.schedule("  ", noop)

    def test_draft_is_renamed_with_its_modifiers(self, builder):
        builder.every_minute().queue("mail").priority(5).schedule("send", noop)
        assert list(builder.jobs) == ["send"]
        spec = builder.jobs["send"]
        assert spec.cron == "0 * * * * *"
        assert spec.queue == "mail"
        assert spec.priority == 5
        assert spec.handler == Direct(noop)

    def test_draft_is_not_a_defined_job(self, builder):
        builder.every_minute()
        assert builder.active_name is None
        assert builder.defined() == {}

    def test_redefining_keeps_settings(self, builder):
        builder.schedule("send", noop).priority(3)
        builder.schedule("send")
        assert builder.jobs["send"].priority == 3
        assert builder.jobs["send"].handler == Direct(noop)


class TestModifiers:
    def test_retries(self, builder):
        builder.schedule("send", noop).retries(3, base=2, cap=10, jitter="none")
        spec = builder.jobs["send"]
        assert (spec.max_attempts, spec.backoff_base, spec.backoff_cap, spec.jitter) == (3, 2, 10, Jitter.NONE)

    def test_retries_rejects_unknown_jitter(self, builder):
        with pytest.raises(DefinitionError):
            builder.schedule("send", noop).retries(3, jitter="sometimes")

    def test_lease_and_concurrency_are_at_least_one(self, builder):
        builder.schedule("send", noop).lease(0).concurrency(-2)
        assert builder.jobs["send"].lease == 1
        assert builder.jobs["send"].concurrency == 1

    def test_naive_at_uses_clock_zone(self):
        builder = JobBuilder(clock=FixedClock(T0.astimezone(timezone(timedelta(hours=2)))))
        builder.schedule("send", noop).at(datetime(2024, 1, 1, 14, 0))
        assert builder.jobs["send"].run_at == datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)

    def test_at_accepts_iso_strings(self, builder):
        builder.schedule("send", noop).at("2024-01-02T03:04:05+00:00")
        assert builder.jobs["send"].run_at == datetime(2024, 1, 2, 3, 4, 5, tzinfo=timezone.utc)

    def test_delay(self, builder):
        builder.schedule("send", noop).delay(30)
        assert builder.jobs["send"].run_at == T0 + timedelta(seconds=30)

    def test_args_are_copied(self, builder):
        args = {"n": 1}
        builder.schedule("send", noop).args(args)
        args["n"] = 2
        assert builder.jobs["send"].args == {"n": 1}


class TestCronModifiers:
    def test_field_editors_start_from_daily(self, builder):
        builder.schedule("report", noop).hours(3).minutes([0, 30])
        assert builder.jobs["report"].cron == "0 0,30 3 * * *"
        assert builder.jobs["report"].parsed.hours.values == (3,)

    def test_preset_then_editor(self, builder):
        builder.schedule("report", noop).weekdays().hours("9-17")
        assert builder.jobs["report"].cron == "0 0 9-17 * * 1-5"

    def test_five_field_expression(self, builder):
        builder.schedule("report", noop).cron("*/10 * * * *")
        assert builder.jobs["report"].cron == "0 */10 * * * *"

    def test_invalid_expression(self, builder):
        with pytest.raises(DefinitionError):
            builder.schedule("report", noop).cron("* * 99 * *")


class TestHooks:
    def test_hooks_accumulate_in_order(self, builder):
        first, second = (lambda args: 1), (lambda args: 2)
        builder.schedule("send", noop).before(first).before(second).finally_(first)
        assert builder.jobs["send"].before == [first, second]
        assert builder.jobs["send"].finally_ == [first]

    def test_hooks_must_be_callable(self, builder):
        with pytest.raises(DefinitionError):
            builder.schedule("send", noop).then("not callable")


class TestSelect:
    def test_known_name(self, builder):
        builder.schedule("send", noop)
        builder.schedule("other", noop)
        assert builder.select("send") == "send"
        assert builder.active_name == "send"

    def test_unknown_identifier_adopts_the_draft(self, builder):
        builder.args({"x": 1})
        assert builder.select("tests.jobs:ping") == "tests.jobs:ping"
        assert builder.jobs["tests.jobs:ping"].args == {"x": 1}
        assert builder.defined().keys() == {"tests.jobs:ping"}

    def test_unknown_name(self, builder):
        with pytest.raises(DefinitionError):
            builder.select("nope")

    def test_nothing_selected(self, builder):
        with pytest.raises(DefinitionError):
            builder.select(None)
        builder.every_minute()
        with pytest.raises(DefinitionError):
            builder.select(None)


class TestJobRegistry:
    def test_rename_to_existing_name(self):
        registry = JobRegistry(a=None, b=None)
        with pytest.raises(DefinitionError):
            registry.rename("a", "b")

    def test_registries_are_independent(self):
        one, two = JobBuilder(), JobBuilder()
        one.schedule("send", noop)
        assert "send" not in two.jobs
