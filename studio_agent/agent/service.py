from __future__ import annotations

from collections.abc import Iterable
from typing import TYPE_CHECKING

import structlog

from studio_agent.agent.executor import ToolExecutor
from studio_agent.agent.plan import FailurePolicy, Plan, PlanResult, PlanRunner, default_policy_for
from studio_agent.agent.shadow import (
    EQUIVALENCE_POLICIES,
    AgentRunner,
    ShadowComparator,
    ShadowInput,
    ShadowVerdict,
)
from studio_agent.audit.log import AuditFilters, AuditLog, AuditQuery
from studio_agent.audit.shadow_log import ShadowDiffLog
from studio_agent.infra.errors import AgentError
from studio_agent.session.scopes import SessionMode
from studio_agent.session.store import Message, Owner, Session, SessionStore

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

    from studio_agent.agent.shadow import Planner
    from studio_agent.config.settings import Settings
    from studio_agent.tools.registry import ToolRegistry

logger = structlog.get_logger()


class AgentService:
    """Session API over the execution core.

    The registry is built and sealed by the caller at startup and injected here.
    """

    def __init__(
        self,
        *,
        registry: ToolRegistry,
        session_store: SessionStore,
        audit_log: AuditLog,
        diff_log: ShadowDiffLog,
        settings: Settings,
    ) -> None:
        self._settings = settings
        self._sessions = session_store
        self._audit = audit_log
        self.executor = ToolExecutor(
            registry,
            audit_log,
            default_timeout_s=settings.executor.default_timeout_s,
        )
        self.plans = PlanRunner(self.executor, session_store)
        self.comparator = ShadowComparator(
            self.plans,
            diff_log,
            equivalence=EQUIVALENCE_POLICIES[settings.shadow.equivalence],
        )

    @classmethod
    def from_session_factory(
        cls,
        db_session_factory: async_sessionmaker[AsyncSession],
        registry: ToolRegistry,
        settings: Settings,
    ) -> AgentService:
        return cls(
            registry=registry,
            session_store=SessionStore(db_session_factory),
            audit_log=AuditLog(db_session_factory, page_size=settings.executor.audit_page_size),
            diff_log=ShadowDiffLog(db_session_factory),
            settings=settings,
        )

    async def create_session(
        self, owner: Owner, mode: SessionMode, scopes: Iterable[str] = ()
    ) -> str:
        session = await self._sessions.create(owner, mode, scopes)
        return session.id

    async def get_session(self, session_id: str) -> Session:
        return await self._sessions.get(session_id)

    async def escalate(
        self, session_id: str, scopes: Iterable[str], *, mode: SessionMode | None = None
    ) -> Session:
        return await self._sessions.escalate(session_id, scopes, mode=mode)

    async def append_user_message(self, session_id: str, content: str) -> Message:
        return await self._sessions.append(session_id, "user", content)

    def failure_policy(self, session: Session) -> FailurePolicy:
        cfg = self._settings.executor
        return default_policy_for(
            session.mode,
            read_only=FailurePolicy(cfg.read_only_failure_policy),
            read_write=FailurePolicy(cfg.read_write_failure_policy),
        )

    async def execute_plan(
        self,
        session_id: str,
        plan: Plan,
        *,
        policy: FailurePolicy | None = None,
    ) -> PlanResult:
        """Run plan against the session as currently stored.

        The session is reloaded so scope escalations made elsewhere apply.
        """
        session = await self._sessions.get(session_id)
        result = await self.plans.run(session, plan, policy or self.failure_policy(session))
        if plan.reply:
            await self._sessions.append(session_id, "assistant", plan.reply)
        else:
            await self._sessions.touch(session_id)
        return result

    async def respond(self, session_id: str, text: str, planner: Planner) -> PlanResult:
        """Append the user's text, ask planner for a plan and execute it."""
        await self.append_user_message(session_id, text)
        session = await self._sessions.get(session_id)
        plan = await planner.plan(session, text)
        return await self.execute_plan(session_id, plan)

    async def transcript(self, session_id: str) -> list[Message]:
        return await self._sessions.transcript(session_id)

    def audit_trail(self, session_id: str, filters: AuditFilters | None = None) -> AuditQuery:
        return self._audit.query(session_id, filters)

    def abort_session(self, session_id: str) -> None:
        self.plans.abort(session_id)

    async def purge_session(self, session_id: str) -> None:
        """Delete the session and its history, and drop its in-process state."""
        await self._sessions.purge(session_id)
        self.plans.forget(session_id)

    async def shadow_compare(
        self,
        session_id: str,
        text: str,
        legacy_runner: AgentRunner,
        current_runner: AgentRunner,
    ) -> ShadowVerdict:
        if not self._settings.shadow.enabled:
            raise AgentError("Shadow comparison is disabled", code="SHADOW_DISABLED")
        session = await self._sessions.get(session_id)
        return await self.comparator.compare(
            ShadowInput(session=session, text=text), legacy_runner, current_runner
        )
