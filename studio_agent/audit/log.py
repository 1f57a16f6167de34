"""Append-only audit trail of every tool invocation attempt.

The audit write is a required part of execution, not a best-effort log
line: any persistence failure is raised as AuditWriteError.
"""

from __future__ import annotations

import json
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

import structlog
from pydantic import BaseModel
from sqlalchemy import case, func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from studio_agent.infra.errors import AuditWriteError
from studio_agent.session.database import allocate_seq
from studio_agent.session.models import AuditRecordRow, SessionRecord, as_utc, utcnow

logger = structlog.get_logger()


def _json_default(value: Any) -> Any:
    if isinstance(value, BaseModel):
        return value.model_dump(mode="json")
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, (set, frozenset)):
        return sorted(value)
    return str(value)


def serialize(value: Any) -> str:
    return json.dumps(value, default=_json_default, sort_keys=True, ensure_ascii=False)


@dataclass(frozen=True)
class AuditEntry:
    """One invocation attempt, as handed to AuditLog.record()."""

    session_id: str
    tool: str
    args: Any
    ok: bool
    duration_ms: int
    result: Any = None
    error: str | None = None
    error_code: str | None = None
    simulated: bool = False


@dataclass(frozen=True)
class AuditRecord:
    id: int
    session_id: str
    seq: int
    tool: str
    args: Any
    result: Any
    ok: bool
    error: str | None
    error_code: str | None
    duration_ms: int
    simulated: bool
    created_at: datetime


@dataclass(frozen=True)
class AuditFilters:
    tool: str | None = None
    ok: bool | None = None
    simulated: bool | None = None
    since: datetime | None = None
    until: datetime | None = None


@dataclass(frozen=True)
class AuditStats:
    total: int
    successful: int
    failed: int
    success_rate: float
    avg_duration_ms: int
    tool_usage: dict[str, int] = field(default_factory=dict)
    since: datetime | None = None
    until: datetime | None = None


def _to_record(row: AuditRecordRow) -> AuditRecord:
    return AuditRecord(
        id=row.id,
        session_id=row.session_id,
        seq=row.seq,
        tool=row.tool,
        args=json.loads(row.args_json),
        result=json.loads(row.result_json) if row.result_json is not None else None,
        ok=row.ok,
        error=row.error,
        error_code=row.error_code,
        duration_ms=row.duration_ms,
        simulated=row.simulated,
        created_at=as_utc(row.created_at),
    )


class AuditQuery:
    """Lazy, finite, restartable view over one session's audit records.

    Each `async for` starts a fresh keyset-paginated scan ordered by seq,
    which follows created_at within a session.
    """

    def __init__(
        self,
        db_session_factory: async_sessionmaker[AsyncSession],
        session_id: str,
        filters: AuditFilters,
        page_size: int,
    ) -> None:
        self._db = db_session_factory
        self._session_id = session_id
        self._filters = filters
        self._page_size = page_size

    def _statement(self, after_seq: int):
        f = self._filters
        stmt = select(AuditRecordRow).where(
            AuditRecordRow.session_id == self._session_id,
            AuditRecordRow.seq > after_seq,
        )
        if f.tool is not None:
            stmt = stmt.where(AuditRecordRow.tool == f.tool)
        if f.ok is not None:
            stmt = stmt.where(AuditRecordRow.ok == f.ok)
        if f.simulated is not None:
            stmt = stmt.where(AuditRecordRow.simulated == f.simulated)
        if f.since is not None:
            stmt = stmt.where(AuditRecordRow.created_at >= f.since)
        if f.until is not None:
            stmt = stmt.where(AuditRecordRow.created_at < f.until)
        return stmt.order_by(AuditRecordRow.seq).limit(self._page_size)

    async def __aiter__(self) -> AsyncIterator[AuditRecord]:
        after_seq = 0
        while True:
            async with self._db() as db_session:
                rows = (await db_session.execute(self._statement(after_seq))).scalars().all()
            for row in rows:
                yield _to_record(row)
            if len(rows) < self._page_size:
                return
            after_seq = rows[-1].seq

    async def all(self) -> list[AuditRecord]:
        return [record async for record in self]


class AuditLog:
    """Durable, append-only store of AuditRecords. Rows are never updated."""

    def __init__(
        self,
        db_session_factory: async_sessionmaker[AsyncSession],
        *,
        page_size: int = 200,
    ) -> None:
        self._db = db_session_factory
        self._page_size = page_size

    async def record(self, entry: AuditEntry) -> AuditRecord:
        """Persist one entry and return it as stored.

        Raises AuditWriteError on any failure; the caller must not continue
        as if the attempt had been recorded.
        """
        try:
            args_json = serialize(entry.args)
            result_json = serialize(entry.result) if entry.result is not None else None
            async with self._db() as db_session:
                seq = await allocate_seq(db_session, entry.session_id)
                row = AuditRecordRow(
                    session_id=entry.session_id,
                    seq=seq,
                    tool=entry.tool,
                    args_json=args_json,
                    result_json=result_json,
                    ok=entry.ok,
                    error=entry.error,
                    error_code=entry.error_code,
                    duration_ms=entry.duration_ms,
                    simulated=entry.simulated,
                    created_at=utcnow(),
                )
                db_session.add(row)
                await db_session.commit()
                record = _to_record(row)
        except Exception as exc:
            # includes raw driver OSErrors, which SQLAlchemy does not wrap
            logger.exception(
                "audit_write_failed",
                session_id=entry.session_id,
                tool_name=entry.tool,
                ok=entry.ok,
            )
            raise AuditWriteError(
                f"Audit record for '{entry.tool}' could not be persisted: {exc}",
                session_id=entry.session_id,
                effect_applied=entry.ok and not entry.simulated,
            ) from exc

        logger.info(
            "audit_recorded",
            session_id=record.session_id,
            audit_id=record.id,
            tool_name=record.tool,
            ok=record.ok,
            duration_ms=record.duration_ms,
            simulated=record.simulated,
        )
        return record

    def query(self, session_id: str, filters: AuditFilters | None = None) -> AuditQuery:
        return AuditQuery(self._db, session_id, filters or AuditFilters(), self._page_size)

    async def get(self, record_id: int) -> AuditRecord | None:
        async with self._db() as db_session:
            row = await db_session.get(AuditRecordRow, record_id)
            return _to_record(row) if row is not None else None

    async def stats(
        self, *, since: datetime, studio_id: str | None = None
    ) -> AuditStats:
        """Aggregate outcomes across sessions for the monitoring dashboard."""
        until = datetime.now(UTC)
        base = [AuditRecordRow.created_at >= since]
        if studio_id is not None:
            base.append(
                AuditRecordRow.session_id.in_(
                    select(SessionRecord.id).where(SessionRecord.studio_id == studio_id)
                )
            )

        async with self._db() as db_session:
            stmt = (
                select(
                    AuditRecordRow.tool,
                    func.count(AuditRecordRow.id),
                    func.sum(case((AuditRecordRow.ok.is_(True), 1), else_=0)),
                    func.sum(AuditRecordRow.duration_ms),
                )
                .where(*base)
                .group_by(AuditRecordRow.tool)
            )
            rows = (await db_session.execute(stmt)).all()

        tool_usage = {tool: int(count) for tool, count, _, _ in rows}
        total = sum(tool_usage.values())
        successful = sum(int(ok or 0) for _, _, ok, _ in rows)
        duration_sum = sum(int(d or 0) for _, _, _, d in rows)
        return AuditStats(
            total=total,
            successful=successful,
            failed=total - successful,
            success_rate=(successful / total) * 100 if total else 0.0,
            avg_duration_ms=round(duration_sum / total) if total else 0,
            tool_usage=tool_usage,
            since=since,
            until=until,
        )
