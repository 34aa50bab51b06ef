from datetime import datetime, timezone
from typing import Optional, Union

from sqlalchemy import DateTime, event, insert
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase
from sqlalchemy.types import TypeDecorator

from cronqueue.settings import settings

def build_engine(url: Optional[str] = None, **kwargs) -> AsyncEngine:
    kwargs.setdefault("echo", False)
    kwargs.setdefault("pool_pre_ping", True)
    engine = create_async_engine(url or settings.SQLALCHEMY_DATABASE_URI, **kwargs)
    if engine.dialect.name == "sqlite":
        _immediate_transactions(engine)
    return engine

def _immediate_transactions(engine: AsyncEngine) -> None:
    """
    SQLite only takes the write lock at the first write, and two connections
    upgrading from a read at the same time fail instead of waiting. Taking it
    at BEGIN makes concurrent claimers queue on the busy timeout.
    """
    @event.listens_for(engine.sync_engine, "connect")
    def _no_driver_transactions(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _begin_immediate(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")

def build_sessionmaker(bind: Union[AsyncEngine, AsyncConnection]) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        bind=bind,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )

class UTCDateTime(TypeDecorator):
    """
    Stores aware datetimes as naive UTC with microseconds and hands them
    back as aware UTC, so PostgreSQL and SQLite compare them the same way.
    """
    impl = DateTime
    cache_ok = True

    def process_bind_param(self, value: Optional[datetime], dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc).replace(tzinfo=None)

    def process_result_value(self, value: Optional[datetime], dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)

class Base(DeclarativeBase):
    pass

def dialect_of(session: AsyncSession) -> str:
    return session.get_bind().dialect.name

def insert_ignore(session: AsyncSession, model, **values):
    """
    INSERT that silently does nothing when a unique constraint is hit.
    result.rowcount tells whether the row went in.
    """
    name = dialect_of(session)
    if name == "postgresql":
        return postgresql.insert(model).values(**values).on_conflict_do_nothing()
    if name == "sqlite":
        return sqlite.insert(model).values(**values).on_conflict_do_nothing()
    # MySQL / MariaDB
    return insert(model).values(**values).prefix_with("IGNORE")
