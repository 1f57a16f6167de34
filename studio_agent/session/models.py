"""SQLAlchemy 2.0 async models for sessions, transcripts and the audit trail.

Column types stay portable (generic JSON, no dialect types) so the same
models run on PostgreSQL/asyncpg and SQLite/aiosqlite.
"""

from __future__ import annotations

from datetime import UTC, datetime

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


def utcnow() -> datetime:
    return datetime.now(UTC)


class Base(DeclarativeBase):
    pass


class SessionRecord(Base):
    __tablename__ = "agent_sessions"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    studio_id: Mapped[str] = mapped_column(String(64), index=True)
    user_id: Mapped[str] = mapped_column(String(64))
    mode: Mapped[str] = mapped_column(String(16), default="read_only")
    scopes: Mapped[list] = mapped_column(JSON, default=list)
    # Shared insertion sequence for messages and audit records
    next_seq: Mapped[int] = mapped_column(Integer, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    messages: Mapped[list[MessageRecord]] = relationship(
        back_populates="session", order_by="MessageRecord.seq", cascade="all, delete-orphan"
    )
    audit_records: Mapped[list[AuditRecordRow]] = relationship(
        back_populates="session", order_by="AuditRecordRow.seq", cascade="all, delete-orphan"
    )
    shadow_diffs: Mapped[list[ShadowDiffRecord]] = relationship(
        back_populates="session", cascade="all, delete-orphan"
    )


class MessageRecord(Base):
    __tablename__ = "agent_messages"
    __table_args__ = (
        UniqueConstraint("session_id", "seq", name="uq_agent_messages_session_seq"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    session_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("agent_sessions.id", ondelete="CASCADE"), index=True
    )
    seq: Mapped[int] = mapped_column(Integer)
    role: Mapped[str] = mapped_column(String(16))
    content: Mapped[str] = mapped_column(Text, default="")
    tool_call_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    session: Mapped[SessionRecord] = relationship(back_populates="messages")


class AuditRecordRow(Base):
    __tablename__ = "agent_audit"
    __table_args__ = (
        UniqueConstraint("session_id", "seq", name="uq_agent_audit_session_seq"),
        Index("ix_agent_audit_created_at", "created_at"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    session_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("agent_sessions.id", ondelete="CASCADE"), index=True
    )
    seq: Mapped[int] = mapped_column(Integer)
    tool: Mapped[str] = mapped_column(String(128))
    args_json: Mapped[str] = mapped_column(Text)
    result_json: Mapped[str | None] = mapped_column(Text, nullable=True)
    ok: Mapped[bool] = mapped_column(Boolean, default=False)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)
    error_code: Mapped[str | None] = mapped_column(String(32), nullable=True)
    duration_ms: Mapped[int] = mapped_column(Integer, default=0)
    simulated: Mapped[bool] = mapped_column(Boolean, default=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    session: Mapped[SessionRecord] = relationship(back_populates="audit_records")


class ShadowDiffRecord(Base):
    __tablename__ = "agent_shadow_diffs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    session_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("agent_sessions.id", ondelete="CASCADE"), index=True
    )
    equivalent: Mapped[bool] = mapped_column(Boolean)
    policy: Mapped[str] = mapped_column(String(64))
    input_text: Mapped[str] = mapped_column(Text, default="")
    legacy_outcome: Mapped[dict] = mapped_column(JSON)
    current_outcome: Mapped[dict] = mapped_column(JSON)
    legacy_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    current_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    legacy_duration_ms: Mapped[int] = mapped_column(Integer, default=0)
    current_duration_ms: Mapped[int] = mapped_column(Integer, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    session: Mapped[SessionRecord] = relationship(back_populates="shadow_diffs")


def as_utc(value: datetime) -> datetime:
    """Normalize a loaded timestamp; SQLite returns naive datetimes."""
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)
