"""Persistence and statistics for shadow comparison verdicts."""

from __future__ import annotations

from dataclasses import dataclass, replace

import structlog
from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from studio_agent.agent.shadow import RunOutcome, ShadowVerdict
from studio_agent.infra.errors import AuditWriteError
from studio_agent.session.models import ShadowDiffRecord, as_utc, utcnow

logger = structlog.get_logger()


@dataclass(frozen=True)
class ShadowStats:
    total_comparisons: int
    matches: int
    mismatches: int
    legacy_errors: int
    current_errors: int
    avg_legacy_duration_ms: float
    avg_current_duration_ms: float


def _to_verdict(row: ShadowDiffRecord) -> ShadowVerdict:
    return ShadowVerdict(
        id=row.id,
        session_id=row.session_id,
        equivalent=row.equivalent,
        legacy_outcome=RunOutcome.from_dict(row.legacy_outcome),
        current_outcome=RunOutcome.from_dict(row.current_outcome),
        policy=row.policy,
        input_text=row.input_text,
        created_at=as_utc(row.created_at),
    )


class ShadowDiffLog:
    def __init__(self, db_session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._db = db_session_factory

    async def record(self, verdict: ShadowVerdict) -> ShadowVerdict:
        """Persist a verdict. Raises AuditWriteError rather than dropping it."""
        now = utcnow()
        try:
            async with self._db() as db_session:
                row = ShadowDiffRecord(
                    session_id=verdict.session_id,
                    equivalent=verdict.equivalent,
                    policy=verdict.policy,
                    input_text=verdict.input_text,
                    legacy_outcome=verdict.legacy_outcome.to_dict(),
                    current_outcome=verdict.current_outcome.to_dict(),
                    legacy_error=verdict.legacy_outcome.error,
                    current_error=verdict.current_outcome.error,
                    legacy_duration_ms=verdict.legacy_outcome.duration_ms,
                    current_duration_ms=verdict.current_outcome.duration_ms,
                    created_at=now,
                )
                db_session.add(row)
                await db_session.commit()
        except SQLAlchemyError as exc:
            logger.exception("shadow_diff_write_failed", session_id=verdict.session_id)
            raise AuditWriteError(
                f"Shadow verdict could not be persisted: {exc}",
                session_id=verdict.session_id,
            ) from exc
        return replace(verdict, id=row.id, created_at=now)

    async def list(self, *, session_id: str | None = None, limit: int = 50) -> list[ShadowVerdict]:
        stmt = select(ShadowDiffRecord).order_by(ShadowDiffRecord.id).limit(limit)
        if session_id is not None:
            stmt = stmt.where(ShadowDiffRecord.session_id == session_id)
        async with self._db() as db_session:
            rows = (await db_session.execute(stmt)).scalars().all()
        return [_to_verdict(r) for r in rows]

    async def stats(self) -> ShadowStats:
        async with self._db() as db_session:
            row = (
                await db_session.execute(
                    select(
                        func.count(ShadowDiffRecord.id),
                        func.count(ShadowDiffRecord.id).filter(
                            ShadowDiffRecord.equivalent.is_(True)
                        ),
                        func.count(ShadowDiffRecord.legacy_error),
                        func.count(ShadowDiffRecord.current_error),
                        func.avg(ShadowDiffRecord.legacy_duration_ms),
                        func.avg(ShadowDiffRecord.current_duration_ms),
                    )
                )
            ).one()
        total, matches, legacy_errors, current_errors, avg_legacy, avg_current = row
        return ShadowStats(
            total_comparisons=int(total),
            matches=int(matches or 0),
            mismatches=int(total) - int(matches or 0),
            legacy_errors=int(legacy_errors or 0),
            current_errors=int(current_errors or 0),
            avg_legacy_duration_ms=float(avg_legacy or 0.0),
            avg_current_duration_ms=float(avg_current or 0.0),
        )
