import random

import pytest

from cronqueue.clock import FixedClock
from cronqueue.db.session import build_engine
from cronqueue.scheduler.service import Scheduler
from tests import jobs
from tests.support import T0


@pytest.fixture(autouse=True)
def _reset_calls():
    jobs.CALLS.clear()
    yield
    jobs.CALLS.clear()


@pytest.fixture
def clock():
    return FixedClock(T0)


@pytest.fixture
def database_url(tmp_path):
    return f"sqlite+aiosqlite:///{tmp_path / 'cronqueue.db'}"


@pytest.fixture
async def engine(database_url):
    engine = build_engine(database_url, connect_args={"timeout": 30})
    yield engine
    await engine.dispose()


@pytest.fixture
async def make_scheduler(engine, clock):
    """Schedulers sharing the store and the clock, each with its own connection."""
    created = []

    def _make(**kwargs):
        kwargs.setdefault("clock", clock)
        kwargs.setdefault("rng", random.Random(7))
        scheduler = Scheduler(engine, **kwargs)
        created.append(scheduler)
        return scheduler

    yield _make

    for scheduler in created:
        await scheduler.close()


@pytest.fixture
async def scheduler(make_scheduler):
    scheduler = make_scheduler()
    await scheduler.install()
    return scheduler
