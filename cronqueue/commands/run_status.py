from dataclasses import dataclass, asdict
from datetime import datetime
from typing import Any, Mapping, Optional

from sqlalchemy import select, func, case, and_
from sqlalchemy.ext.asyncio import AsyncSession

from cronqueue.db.models import Run
from cronqueue.domain.models import JobSpec

@dataclass
class JobStatus:
    name: str
    pending: int = 0
    leased: int = 0
    next_run_at: Optional[datetime] = None
    max_attempts_seen: int = 0
    # From the local definition; None for jobs this process does not know
    queue: Optional[str] = None
    priority: Optional[int] = None
    cron: Optional[str] = None

    @property
    def known(self) -> bool:
        return self.queue is not None

    def as_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["next_run_at"] = self.next_run_at.isoformat() if self.next_run_at else None
        data["known"] = self.known
        return data

async def run_status(session: AsyncSession, registry: Mapping[str, JobSpec], now: datetime) -> list[JobStatus]:
    """
    Per-job summary of the rows in the store, merged with the jobs this
    process defines (so idle jobs show up with zero counts).
    """
    leased = case(
        (and_(Run.locked_until.is_not(None), Run.locked_until > now), 1),
        else_=0
    )
    stmt = (
        select(
            Run.name,
            func.count(Run.id).label("total"),
            func.coalesce(func.sum(leased), 0).label("leased"),
            func.min(Run.run_at).label("next_run_at"),
            func.max(Run.attempts).label("max_attempts_seen"),
        )
        .group_by(Run.name)
    )
    rows = (await session.execute(stmt)).all()

    report: dict[str, JobStatus] = {}
    for row in rows:
        report[row.name] = JobStatus(
            name=row.name,
            pending=row.total - row.leased,
            leased=row.leased,
            next_run_at=row.next_run_at,
            max_attempts_seen=row.max_attempts_seen or 0,
        )

    for name, spec in registry.items():
        status = report.setdefault(name, JobStatus(name=name))
        status.queue = spec.queue
        status.priority = spec.priority
        status.cron = spec.cron

    return sorted(report.values(), key=lambda s: s.name)
