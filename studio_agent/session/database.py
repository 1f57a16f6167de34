"""Async database engine, session factory and per-session sequence allocation."""

from __future__ import annotations

from typing import TYPE_CHECKING

import structlog
from sqlalchemy import update
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from studio_agent.infra.errors import SessionNotFoundError
from studio_agent.session.models import Base, SessionRecord

if TYPE_CHECKING:
    from studio_agent.config.settings import DatabaseSettings

logger = structlog.get_logger()


def create_db_engine(settings: DatabaseSettings) -> AsyncEngine:
    """Create an async SQLAlchemy engine from DatabaseSettings.

    - PostgreSQL (asyncpg): connection pooling with pre-ping
    - SQLite (aiosqlite): check_same_thread=False, no pool sizing
    """
    kwargs: dict = {"echo": settings.echo, "pool_pre_ping": True}
    if settings.url.startswith("sqlite"):
        kwargs["connect_args"] = {"check_same_thread": False}
    else:
        kwargs["pool_size"] = settings.pool_size
        kwargs["max_overflow"] = settings.max_overflow
    engine = create_async_engine(settings.url, **kwargs)
    logger.info("db_engine_created", dialect=engine.dialect.name)
    return engine


async def ensure_schema(engine: AsyncEngine) -> None:
    """Create the agent tables if they do not exist yet."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("db_schema_ensured", tables=sorted(Base.metadata.tables))


def make_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Create an async session factory bound to the engine."""
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


async def allocate_seq(db_session: AsyncSession, session_id: str) -> int:
    """Atomically reserve the next insertion sequence number for a session.

    Must run inside the transaction that inserts the row using the seq;
    the row lock taken by the UPDATE serializes concurrent writers per session.
    Raises SessionNotFoundError if the session does not exist.
    """
    stmt = (
        update(SessionRecord)
        .where(SessionRecord.id == session_id)
        .values(next_seq=SessionRecord.next_seq + 1)
        .returning(SessionRecord.next_seq)
        .execution_options(synchronize_session=False)
    )
    result = await db_session.execute(stmt)
    seq = result.scalar_one_or_none()
    if seq is None:
        raise SessionNotFoundError(session_id)
    return seq
