"""
Per-job concurrency slots.

A job with concurrency N owns the lock keys "job:<name>:0" .. "job:<name>:N-1".
A worker must hold one of them while it executes a run of that job, so at most
N runs of the job are in flight across every worker sharing the store. Slot
ownership lives entirely in the lock primitive; there is no counter to keep
in sync.
"""
import hashlib
import logging
from datetime import datetime
from typing import Protocol

from sqlalchemy import delete, text
from sqlalchemy.ext.asyncio import AsyncSession

from cronqueue.clock import Clock
from cronqueue.db.models import SlotLock
from cronqueue.db.session import insert_ignore

logger = logging.getLogger(__name__)

def slot_key(name: str, slot: int) -> str:
    return f"job:{name}:{slot}"

def lock_id(key: str) -> int:
    """Maps a lock key onto the signed 64-bit space of Postgres advisory locks."""
    digest = hashlib.blake2b(key.encode("utf-8"), digest_size=8).digest()
    return int.from_bytes(digest, "big", signed=True)

class SlotLocks(Protocol):
    held: set[str]

    async def try_acquire(self, session: AsyncSession, key: str, expires_at: datetime) -> bool:
        ...

    async def release(self, session: AsyncSession, key: str) -> None:
        ...

class AdvisoryLocks:
    """
    Postgres session-level advisory locks.

    The lock belongs to the database session, not the transaction, so a slot
    taken inside the claim transaction is still held after it commits. The
    session has to stay on one connection for the whole time, which is why the
    scheduler keeps a dedicated connection.
    """

    def __init__(self):
        self.held: set[str] = set()

    async def try_acquire(self, session: AsyncSession, key: str, expires_at: datetime = None) -> bool:
        # Advisory locks stack within a session; a slot we already hold is busy.
        if key in self.held:
            return False
        result = await session.execute(
            text("SELECT pg_try_advisory_lock(:key)"),
            {"key": lock_id(key)}
        )
        if result.scalar() is True:
            self.held.add(key)
            return True
        return False

    async def release(self, session: AsyncSession, key: str) -> None:
        if key not in self.held:
            return
        await session.execute(
            text("SELECT pg_advisory_unlock(:key)"),
            {"key": lock_id(key)}
        )
        self.held.discard(key)

class TableLocks:
    """
    Slots as rows in job_slot_locks, for stores without advisory locks.

    A row that outlives its expiry (the holder crashed) is cleared by the next
    worker that wants the same slot.
    """

    def __init__(self, owner: str, clock: Clock):
        self.owner = owner
        self.clock = clock
        self.held: set[str] = set()

    async def try_acquire(self, session: AsyncSession, key: str, expires_at: datetime) -> bool:
        if key in self.held:
            return False

        await session.execute(
            delete(SlotLock).where(
                SlotLock.key == key,
                SlotLock.expires_at < self.clock.now()
            )
        )
        result = await session.execute(
            insert_ignore(session, SlotLock, key=key, owner=self.owner, expires_at=expires_at)
        )
        if result.rowcount == 1:
            self.held.add(key)
            return True
        return False

    async def release(self, session: AsyncSession, key: str) -> None:
        if key not in self.held:
            return
        await session.execute(
            delete(SlotLock).where(
                SlotLock.key == key,
                SlotLock.owner == self.owner
            )
        )
        self.held.discard(key)

def lock_backend_for(dialect_name: str, owner: str, clock: Clock) -> SlotLocks:
    if dialect_name == "postgresql":
        return AdvisoryLocks()
    logger.debug("No advisory locks on %s; using the job_slot_locks table", dialect_name)
    return TableLocks(owner, clock)
