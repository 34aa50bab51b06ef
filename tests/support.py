from datetime import datetime, timezone

from sqlalchemy import select

from cronqueue.db.models import Run
from cronqueue.db.session import build_sessionmaker

T0 = datetime(2024, 1, 1, 10, 0, 0, tzinfo=timezone.utc)  # a Monday


async def fetch_runs(engine) -> list[Run]:
    async with build_sessionmaker(engine)() as session:
        return list((await session.execute(select(Run).order_by(Run.id))).scalars().all())


async def fetch_run(engine, run_id: int):
    async with build_sessionmaker(engine)() as session:
        return await session.get(Run, run_id)
