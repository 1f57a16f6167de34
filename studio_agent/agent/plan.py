from __future__ import annotations

import json
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from enum import StrEnum
from typing import TYPE_CHECKING, Any

import structlog

from studio_agent.audit.log import serialize
from studio_agent.session.scopes import SessionMode

if TYPE_CHECKING:
    from studio_agent.agent.executor import ToolExecutor, ToolOutcome
    from studio_agent.session.store import Session, SessionStore

logger = structlog.get_logger()


class FailurePolicy(StrEnum):
    continue_on_failure = "continue_on_failure"
    abort_on_first_failure = "abort_on_first_failure"


class StepStatus(StrEnum):
    ok = "ok"
    failed = "failed"
    skipped = "skipped"  # not attempted: earlier failure under abort policy
    aborted = "aborted"  # not attempted: session aborted


@dataclass(frozen=True)
class PlanStep:
    tool: str
    args: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class Plan:
    """Ordered tool-call intents emitted by a planner."""

    steps: tuple[PlanStep, ...] = ()
    reply: str = ""

    @classmethod
    def from_intents(cls, intents: Iterable[Mapping[str, Any]], *, reply: str = "") -> Plan:
        """Build from planner output of the form [{"tool": ..., "args": {...}}]."""
        steps = []
        for intent in intents:
            args = intent.get("args") or {}
            if isinstance(args, str):
                args = json.loads(args) if args.strip() else {}
            steps.append(PlanStep(tool=str(intent["tool"]), args=args))
        return cls(steps=tuple(steps), reply=reply)


@dataclass(frozen=True)
class StepOutcome:
    index: int
    tool: str
    status: StepStatus
    outcome: ToolOutcome | None = None

    @property
    def ok(self) -> bool:
        return self.status == StepStatus.ok


@dataclass(frozen=True)
class PlanResult:
    session_id: str
    policy: FailurePolicy
    steps: tuple[StepOutcome, ...]

    @property
    def ok(self) -> bool:
        return all(s.ok for s in self.steps)

    @property
    def attempted(self) -> int:
        return sum(1 for s in self.steps if s.outcome is not None)

    def tool_sequence(self) -> tuple[str, ...]:
        return tuple(s.tool for s in self.steps if s.outcome is not None)


def default_policy_for(
    mode: SessionMode,
    *,
    read_only: FailurePolicy = FailurePolicy.continue_on_failure,
    read_write: FailurePolicy = FailurePolicy.abort_on_first_failure,
) -> FailurePolicy:
    return read_write if mode == SessionMode.read_write else read_only


class PlanRunner:
    """Execute a plan step by step through the ToolExecutor.

    Tool results are appended to the transcript as tool messages whose
    tool_call_id is the id of the AuditRecord that produced them. Simulated
    runs are not user-visible and leave the transcript untouched.
    """

    def __init__(self, executor: ToolExecutor, session_store: SessionStore) -> None:
        self._executor = executor
        self._sessions = session_store
        self._aborted: set[str] = set()

    def abort(self, session_id: str) -> None:
        """Stop submitting further steps for session. In-flight steps still finish."""
        self._aborted.add(session_id)
        logger.warning("session_aborted", session_id=session_id)

    def resume(self, session_id: str) -> None:
        self._aborted.discard(session_id)

    def is_aborted(self, session_id: str) -> bool:
        return session_id in self._aborted

    def forget(self, session_id: str) -> None:
        self._aborted.discard(session_id)
        self._executor.forget(session_id)

    async def run(
        self,
        session: Session,
        plan: Plan,
        policy: FailurePolicy,
        *,
        simulated: bool = False,
    ) -> PlanResult:
        """Run plan; AuditWriteError propagates and stops the plan."""
        steps: list[StepOutcome] = []
        stop: StepStatus | None = None

        with structlog.contextvars.bound_contextvars(session_id=session.id):
            for index, step in enumerate(plan.steps):
                if stop is None and self.is_aborted(session.id):
                    stop = StepStatus.aborted
                if stop is not None:
                    steps.append(StepOutcome(index=index, tool=step.tool, status=stop))
                    continue

                outcome = await self._executor.execute(
                    session, step.tool, step.args, simulated=simulated
                )
                status = StepStatus.ok if outcome.ok else StepStatus.failed
                steps.append(
                    StepOutcome(index=index, tool=step.tool, status=status, outcome=outcome)
                )
                if not simulated:
                    await self._sessions.append(
                        session.id,
                        "tool",
                        serialize(outcome.to_dict()),
                        tool_call_id=str(outcome.audit_id),
                    )

                if not outcome.ok and policy == FailurePolicy.abort_on_first_failure:
                    stop = StepStatus.skipped

            result = PlanResult(session_id=session.id, policy=policy, steps=tuple(steps))
            logger.info(
                "plan_executed",
                steps=len(result.steps),
                attempted=result.attempted,
                ok=result.ok,
                policy=policy.value,
                simulated=simulated,
            )
        return result
