from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field, replace
from typing import TYPE_CHECKING, Any

import structlog

from studio_agent.agent.authz import AuthorizationGate
from studio_agent.agent.ordering import SessionOrdering, Ticket
from studio_agent.audit.log import AuditEntry
from studio_agent.infra.errors import (
    AuditWriteError,
    AuthorizationDeniedError,
    HandlerExecutionError,
    InvalidArgumentsError,
    ToolError,
    ToolTimeoutError,
    UnknownToolError,
)
from studio_agent.tools.base import RiskLevel
from studio_agent.tools.context import ToolContext

if TYPE_CHECKING:
    from pydantic import BaseModel

    from studio_agent.audit.log import AuditLog
    from studio_agent.session.store import Session
    from studio_agent.tools.registry import ToolDefinition, ToolRegistry

logger = structlog.get_logger()

# Failures decided before the handler runs; audited, never invoked.
_PREFLIGHT_ERRORS = (UnknownToolError, InvalidArgumentsError, AuthorizationDeniedError)


@dataclass(frozen=True)
class ToolOutcome:
    """Structured result of one execute() call.

    exception holds the typed ToolError for failed outcomes so callers can
    either branch on error_code or re-raise with raise_for_error().
    """

    tool: str
    ok: bool
    data: Any = None
    error: str | None = None
    error_code: str | None = None
    simulated: bool = False
    duration_ms: int = 0
    audit_id: int | None = None
    effect_unknown: bool = False
    exception: ToolError | None = field(default=None, repr=False, compare=False)

    def raise_for_error(self) -> None:
        if self.exception is not None:
            raise self.exception

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"tool": self.tool, "ok": self.ok}
        if self.ok:
            payload["data"] = self.data
        else:
            payload["error_code"] = self.error_code
            payload["error"] = self.error
        if self.simulated:
            payload["simulated"] = True
        if self.effect_unknown:
            payload["effect_unknown"] = True
        return payload


def _elapsed_ms(start: float) -> int:
    return int(round((time.monotonic() - start) * 1000))


def _failure(tool_name: str, exc: ToolError, *, simulated: bool, start: float) -> ToolOutcome:
    return ToolOutcome(
        tool=tool_name,
        ok=False,
        error=str(exc),
        error_code=exc.code,
        simulated=simulated,
        duration_ms=_elapsed_ms(start),
        effect_unknown=getattr(exc, "effect_unknown", False),
        exception=exc,
    )


class ToolExecutor:
    """Validate, authorize, invoke and audit a single tool call.

    Every call to execute() persists exactly one AuditRecord before it
    returns. Once submitted, an execution runs to completion and is audited
    even if the awaiting caller is cancelled.
    """

    def __init__(
        self,
        registry: ToolRegistry,
        audit_log: AuditLog,
        *,
        gate: AuthorizationGate | None = None,
        default_timeout_s: float = 30.0,
    ) -> None:
        self._registry = registry
        self._audit = audit_log
        self._gate = gate or AuthorizationGate()
        self._default_timeout_s = default_timeout_s
        self._ordering = SessionOrdering()
        self._halted: set[str] = set()

    @property
    def registry(self) -> ToolRegistry:
        return self._registry

    def is_halted(self, session_id: str) -> bool:
        return session_id in self._halted

    def forget(self, session_id: str) -> None:
        """Drop per-session state once the session has been purged."""
        self._halted.discard(session_id)

    async def execute(
        self,
        session: Session,
        tool_name: str,
        args: Any,
        *,
        simulated: bool = False,
    ) -> ToolOutcome:
        """Run one tool call for session.

        Expected failures (unknown tool, invalid args, denial, handler error,
        timeout) come back as ok=False outcomes. AuditWriteError is raised and
        halts further execution in the session.
        """
        if session.id in self._halted:
            raise AuditWriteError(
                f"Session {session.id} is halted: audit trail is incomplete",
                code="SESSION_HALTED",
                session_id=session.id,
            )

        ticket = self._ordering.enter(session.id)
        task = asyncio.ensure_future(
            self._execute_in_order(ticket, session, tool_name, args, simulated)
        )
        try:
            return await asyncio.shield(task)
        except asyncio.CancelledError:
            logger.warning(
                "tool_execution_detached",
                tool_name=tool_name,
                session_id=session.id,
                msg="Caller cancelled; execution continues and will be audited.",
            )
            task.add_done_callback(_log_detached_result)
            raise

    def _runs_for_real(self, definition: ToolDefinition, simulated: bool) -> bool:
        if not simulated:
            return True
        return not definition.mutating and definition.risk != RiskLevel.high

    async def _execute_in_order(
        self,
        ticket: Ticket,
        session: Session,
        tool_name: str,
        args: Any,
        simulated: bool,
    ) -> ToolOutcome:
        start = time.monotonic()
        try:
            try:
                definition = self._registry.get(tool_name)
                validated = definition.handler.validate(args)
                self._gate.authorize(session, definition)
            except _PREFLIGHT_ERRORS as exc:
                if isinstance(exc, AuthorizationDeniedError):
                    logger.warning(
                        "tool_denied",
                        tool_name=tool_name,
                        session_id=session.id,
                        mode=session.mode.value,
                        missing_scopes=list(exc.missing_scopes),
                        reason=exc.reason,
                    )
                else:
                    logger.info(
                        "tool_rejected",
                        tool_name=tool_name,
                        session_id=session.id,
                        error_code=exc.code,
                    )
                outcome = _failure(tool_name, exc, simulated=simulated, start=start)
                audit_args: Any = args
            else:
                audit_args = validated
                try:
                    outcome = await self._invoke(
                        session, definition, validated, simulated, start
                    )
                except asyncio.CancelledError as cancel:
                    # the execution task itself was cancelled: audit, then propagate
                    exc = HandlerExecutionError(tool_name, cancel, effect_unknown=True)
                    outcome = _failure(tool_name, exc, simulated=simulated, start=start)
                    await ticket.wait_turn()
                    await self._record(session, audit_args, outcome)
                    raise

            await ticket.wait_turn()
            return await self._record(session, audit_args, outcome)
        finally:
            ticket.release()

    async def _invoke(
        self,
        session: Session,
        definition: ToolDefinition,
        validated: BaseModel,
        simulated: bool,
        start: float,
    ) -> ToolOutcome:
        context = ToolContext(
            session_id=session.id,
            studio_id=session.owner.studio_id,
            user_id=session.owner.user_id,
            simulated=simulated,
        )
        handler = definition.handler
        run = handler.invoke if self._runs_for_real(definition, simulated) else handler.simulate
        timeout_s = definition.timeout_s or self._default_timeout_s

        try:
            result = await asyncio.wait_for(run(validated, context), timeout=timeout_s)
        except TimeoutError:
            logger.warning(
                "tool_timeout",
                tool_name=definition.name,
                session_id=session.id,
                timeout_s=timeout_s,
                msg="Effect unknown; handler was signalled to cancel.",
            )
            exc: ToolError = ToolTimeoutError(definition.name, timeout_s)
            return _failure(definition.name, exc, simulated=simulated, start=start)
        except asyncio.CancelledError as cause:
            current = asyncio.current_task()
            if current is not None and current.cancelling():
                raise
            logger.warning(
                "tool_handler_cancelled",
                tool_name=definition.name,
                session_id=session.id,
                msg="Handler raised CancelledError on its own; effect unknown.",
            )
            exc = HandlerExecutionError(definition.name, cause, effect_unknown=True)
            return _failure(definition.name, exc, simulated=simulated, start=start)
        except Exception as cause:
            logger.exception(
                "tool_execution_failed", tool_name=definition.name, session_id=session.id
            )
            exc = HandlerExecutionError(definition.name, cause)
            return _failure(definition.name, exc, simulated=simulated, start=start)

        duration_ms = _elapsed_ms(start)
        logger.info(
            "tool_executed",
            tool_name=definition.name,
            session_id=session.id,
            duration_ms=duration_ms,
            simulated=simulated,
        )
        return ToolOutcome(
            tool=definition.name,
            ok=True,
            data=result,
            simulated=simulated,
            duration_ms=duration_ms,
        )

    async def _record(self, session: Session, audit_args: Any, outcome: ToolOutcome) -> ToolOutcome:
        entry = AuditEntry(
            session_id=session.id,
            tool=outcome.tool,
            args=audit_args,
            result=outcome.data if outcome.ok else None,
            ok=outcome.ok,
            error=outcome.error,
            error_code=outcome.error_code,
            duration_ms=outcome.duration_ms,
            simulated=outcome.simulated,
        )
        try:
            record = await self._audit.record(entry)
        except AuditWriteError as exc:
            self._halted.add(session.id)
            logger.error(
                "session_halted",
                session_id=session.id,
                tool_name=outcome.tool,
                tool_ok=outcome.ok,
                effect_applied=exc.effect_applied,
            )
            raise
        return replace(outcome, audit_id=record.id)


def _log_detached_result(task: asyncio.Future) -> None:
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.error("detached_tool_execution_failed", error=str(exc))
