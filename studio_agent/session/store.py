from __future__ import annotations

import uuid
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Literal

import structlog
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from studio_agent.infra.errors import ScopeCeilingError, SessionError, SessionNotFoundError
from studio_agent.session.database import allocate_seq
from studio_agent.session.models import MessageRecord, SessionRecord, as_utc, utcnow
from studio_agent.session.scopes import SessionMode, ceiling_excess

logger = structlog.get_logger()

Role = Literal["user", "assistant", "system", "tool"]
ROLES: frozenset[str] = frozenset({"user", "assistant", "system", "tool"})


@dataclass(frozen=True)
class Owner:
    user_id: str
    studio_id: str


@dataclass(frozen=True)
class Session:
    id: str
    owner: Owner
    mode: SessionMode
    scopes: frozenset[str]
    created_at: datetime
    updated_at: datetime


@dataclass(frozen=True)
class Message:
    role: Role
    content: str
    seq: int
    created_at: datetime
    tool_call_id: str | None = None
    id: int | None = field(default=None, compare=False)


def _to_session(record: SessionRecord) -> Session:
    return Session(
        id=record.id,
        owner=Owner(user_id=record.user_id, studio_id=record.studio_id),
        mode=SessionMode(record.mode),
        scopes=frozenset(record.scopes or ()),
        created_at=as_utc(record.created_at),
        updated_at=as_utc(record.updated_at),
    )


def _to_message(record: MessageRecord) -> Message:
    return Message(
        id=record.id,
        role=record.role,
        content=record.content,
        seq=record.seq,
        created_at=as_utc(record.created_at),
        tool_call_id=record.tool_call_id,
    )


class SessionStore:
    """Durable sessions and their append-only transcripts.

    Persist is synchronous: failures propagate to the caller, no silent drop.
    """

    def __init__(self, db_session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._db = db_session_factory

    async def create(
        self, owner: Owner, mode: SessionMode, scopes: Iterable[str] = ()
    ) -> Session:
        """Create a session. Raises ScopeCeilingError if scopes exceed the mode."""
        mode = SessionMode(mode)
        granted = frozenset(scopes)
        excess = ceiling_excess(mode, granted)
        if excess:
            raise ScopeCeilingError(mode.value, excess)

        now = utcnow()
        record = SessionRecord(
            id=uuid.uuid4().hex,
            studio_id=owner.studio_id,
            user_id=owner.user_id,
            mode=mode.value,
            scopes=sorted(granted),
            next_seq=0,
            created_at=now,
            updated_at=now,
        )
        async with self._db() as db_session:
            db_session.add(record)
            await db_session.commit()

        logger.info(
            "session_created",
            session_id=record.id,
            studio_id=owner.studio_id,
            mode=mode.value,
            scopes=record.scopes,
        )
        return _to_session(record)

    async def get(self, session_id: str) -> Session:
        async with self._db() as db_session:
            record = await db_session.get(SessionRecord, session_id)
            if record is None:
                raise SessionNotFoundError(session_id)
            return _to_session(record)

    async def escalate(
        self,
        session_id: str,
        new_scopes: Iterable[str],
        *,
        mode: SessionMode | None = None,
    ) -> Session:
        """Widen granted scopes (and optionally the mode). Never narrows.

        The result is the union of existing and new scopes, checked against
        the ceiling of the effective mode.
        """
        async with self._db() as db_session:
            stmt = select(SessionRecord).where(SessionRecord.id == session_id).with_for_update()
            record = (await db_session.execute(stmt)).scalar_one_or_none()
            if record is None:
                raise SessionNotFoundError(session_id)

            current_mode = SessionMode(record.mode)
            target_mode = current_mode if mode is None else SessionMode(mode)
            if current_mode == SessionMode.read_write and target_mode == SessionMode.read_only:
                raise SessionError(
                    f"Session {session_id} cannot be narrowed to read_only",
                    code="MODE_NARROWING",
                )

            merged = frozenset(record.scopes or ()) | frozenset(new_scopes)
            excess = ceiling_excess(target_mode, merged)
            if excess:
                raise ScopeCeilingError(target_mode.value, excess)

            record.mode = target_mode.value
            record.scopes = sorted(merged)
            record.updated_at = utcnow()
            await db_session.commit()
            session = _to_session(record)

        logger.info(
            "session_escalated",
            session_id=session_id,
            mode=session.mode.value,
            scopes=sorted(session.scopes),
        )
        return session

    async def touch(self, session_id: str) -> datetime:
        now = utcnow()
        async with self._db() as db_session:
            result = await db_session.execute(
                update(SessionRecord)
                .where(SessionRecord.id == session_id)
                .values(updated_at=now)
                .returning(SessionRecord.id)
                .execution_options(synchronize_session=False)
            )
            if result.scalar_one_or_none() is None:
                raise SessionNotFoundError(session_id)
            await db_session.commit()
        return now

    async def append(
        self,
        session_id: str,
        role: Role,
        content: str,
        *,
        tool_call_id: str | None = None,
    ) -> Message:
        """Append a message with an atomically allocated seq.

        Concurrent appends to one session are serialized by the seq row lock.
        """
        if role not in ROLES:
            raise SessionError(f"Invalid message role: {role}", code="INVALID_ROLE")

        async with self._db() as db_session:
            seq = await allocate_seq(db_session, session_id)
            now = utcnow()
            record = MessageRecord(
                session_id=session_id,
                seq=seq,
                role=role,
                content=content,
                tool_call_id=tool_call_id,
                created_at=now,
            )
            db_session.add(record)
            await db_session.execute(
                update(SessionRecord)
                .where(SessionRecord.id == session_id)
                .values(updated_at=now)
                .execution_options(synchronize_session=False)
            )
            await db_session.commit()
            message = _to_message(record)

        logger.debug("message_appended", role=role, session_id=session_id, seq=seq)
        return message

    async def transcript(self, session_id: str) -> list[Message]:
        """Return the session's messages in insertion order."""
        async with self._db() as db_session:
            if await db_session.get(SessionRecord, session_id) is None:
                raise SessionNotFoundError(session_id)
            stmt = (
                select(MessageRecord)
                .where(MessageRecord.session_id == session_id)
                .order_by(MessageRecord.seq)
            )
            records = (await db_session.execute(stmt)).scalars().all()
        return [_to_message(r) for r in records]

    async def purge(self, session_id: str) -> None:
        """Delete a session with its messages, audit records and shadow diffs."""
        async with self._db() as db_session:
            record = await db_session.get(SessionRecord, session_id)
            if record is None:
                raise SessionNotFoundError(session_id)
            await db_session.delete(record)
            await db_session.commit()
        logger.warning("session_purged", session_id=session_id)
