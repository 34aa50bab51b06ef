from datetime import datetime
from typing import Optional, Any

from sqlalchemy import BigInteger, Integer, SmallInteger, String, Index, JSON
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.dialects.postgresql import JSONB

from cronqueue.db.session import Base, UTCDateTime

class Run(Base):
    """One persisted execution of a job. Deleted on success or exhaustion."""
    __tablename__ = "jobs"

    # SQLite only autoincrements INTEGER PRIMARY KEY
    id: Mapped[int] = mapped_column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(191), nullable=False)
    queue: Mapped[str] = mapped_column(String(64), nullable=False, default="default", server_default="default")
    priority: Mapped[int] = mapped_column(Integer, nullable=False, default=100, server_default="100")

    # Scheduling and lease
    run_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    locked_until: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    attempts: Mapped[int] = mapped_column(SmallInteger, nullable=False, default=0, server_default="0")

    # Payload
    args: Mapped[Optional[dict[str, Any]]] = mapped_column(JSON().with_variant(JSONB, "postgresql"), nullable=True)

    # Cron idempotency token: "name|YYYY-mm-dd HH:MM:SS"
    unique_key: Mapped[Optional[str]] = mapped_column(String(191), nullable=True)

    __table_args__ = (
        Index("uq_jobs_unique_key", "unique_key", unique=True),
        # Claim query: due rows in (priority, run_at, id) order
        Index("ix_jobs_due", "run_at", "priority", "id"),
        Index("ix_jobs_name_due", "name", "run_at", "id"),
    )

class SlotLock(Base):
    """Concurrency slot held by a scheduler instance, for stores without advisory locks."""
    __tablename__ = "job_slot_locks"

    key: Mapped[str] = mapped_column(String(255), primary_key=True)
    owner: Mapped[str] = mapped_column(String(64), nullable=False)
    expires_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, index=True)
