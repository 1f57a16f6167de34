"""Shadow comparison of the legacy (V1) and current (V2) agent.

Both runners receive the same input through an ExecutionChannel created by
the comparator. The legacy channel is always simulated: mutating and
high-risk tools are dry-run and flagged simulated=True in the audit log, so
the legacy path can never repeat an effect the current path already applied.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING, Any, Protocol

import structlog

from studio_agent.agent.plan import FailurePolicy, Plan, PlanResult
from studio_agent.infra.errors import AuditWriteError

if TYPE_CHECKING:
    from studio_agent.agent.plan import PlanRunner
    from studio_agent.audit.shadow_log import ShadowDiffLog
    from studio_agent.session.store import Session

logger = structlog.get_logger()


@dataclass(frozen=True)
class ShadowInput:
    session: Session
    text: str


@dataclass(frozen=True)
class RunOutcome:
    """What one runner did for a ShadowInput, in comparable form."""

    runner: str
    ok: bool
    reply: str = ""
    steps: tuple[dict[str, Any], ...] = ()
    error: str | None = None
    duration_ms: int = 0
    simulated: bool = False

    def tool_sequence(self) -> tuple[str, ...]:
        return tuple(s["tool"] for s in self.steps if s.get("attempted", True))

    def to_dict(self) -> dict[str, Any]:
        return {
            "runner": self.runner,
            "ok": self.ok,
            "reply": self.reply,
            "steps": [dict(s) for s in self.steps],
            "error": self.error,
            "duration_ms": self.duration_ms,
            "simulated": self.simulated,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RunOutcome:
        return cls(
            runner=data.get("runner", ""),
            ok=bool(data.get("ok")),
            reply=data.get("reply", ""),
            steps=tuple(data.get("steps") or ()),
            error=data.get("error"),
            duration_ms=int(data.get("duration_ms") or 0),
            simulated=bool(data.get("simulated")),
        )

    @classmethod
    def from_plan_result(
        cls, runner: str, result: PlanResult, *, reply: str = "", simulated: bool = False
    ) -> RunOutcome:
        steps = tuple(
            {
                "tool": s.tool,
                "status": s.status.value,
                "attempted": s.outcome is not None,
                "error_code": s.outcome.error_code if s.outcome is not None else None,
            }
            for s in result.steps
        )
        first_error = next(
            (s.outcome.error for s in result.steps if s.outcome is not None and not s.ok),
            None,
        )
        return cls(
            runner=runner,
            ok=result.ok,
            reply=reply,
            steps=steps,
            error=first_error,
            simulated=simulated,
        )


@dataclass(frozen=True)
class ShadowVerdict:
    session_id: str
    equivalent: bool
    legacy_outcome: RunOutcome
    current_outcome: RunOutcome
    policy: str
    input_text: str = ""
    id: int | None = field(default=None, compare=False)
    created_at: datetime | None = field(default=None, compare=False)


class Planner(Protocol):
    """Opaque upstream planner: turns user text into a Plan."""

    async def plan(self, session: Session, text: str) -> Plan: ...


class AgentRunner(Protocol):
    name: str

    async def run(self, request: ShadowInput, channel: ExecutionChannel) -> RunOutcome: ...


EquivalencePolicy = Callable[[RunOutcome, RunOutcome], bool]


def outcome_equivalence(legacy: RunOutcome, current: RunOutcome) -> bool:
    """Equivalent when both succeeded or both failed."""
    return legacy.ok == current.ok


def tool_sequence_equivalence(legacy: RunOutcome, current: RunOutcome) -> bool:
    """Stricter heuristic: same gross outcome and the same tools attempted in order."""
    return outcome_equivalence(legacy, current) and (
        legacy.tool_sequence() == current.tool_sequence()
    )


EQUIVALENCE_POLICIES: dict[str, EquivalencePolicy] = {
    "outcome": outcome_equivalence,
    "tool_sequence": tool_sequence_equivalence,
}


class ExecutionChannel:
    """The only path a runner has to the executor, bound to one session."""

    def __init__(self, plan_runner: PlanRunner, session: Session, *, simulated: bool) -> None:
        self._plans = plan_runner
        self._session = session
        self.simulated = simulated

    async def run_plan(
        self,
        plan: Plan,
        policy: FailurePolicy = FailurePolicy.continue_on_failure,
    ) -> PlanResult:
        return await self._plans.run(self._session, plan, policy, simulated=self.simulated)


class PlanningRunner:
    """Runner strategy built from a Planner: plan, then execute through the channel."""

    def __init__(
        self,
        name: str,
        planner: Planner,
        *,
        policy: FailurePolicy = FailurePolicy.continue_on_failure,
    ) -> None:
        self.name = name
        self._planner = planner
        self._policy = policy

    async def run(self, request: ShadowInput, channel: ExecutionChannel) -> RunOutcome:
        plan = await self._planner.plan(request.session, request.text)
        result = await channel.run_plan(plan, self._policy)
        return RunOutcome.from_plan_result(
            self.name, result, reply=plan.reply, simulated=channel.simulated
        )


class ShadowComparator:
    def __init__(
        self,
        plan_runner: PlanRunner,
        diff_log: ShadowDiffLog,
        *,
        equivalence: EquivalencePolicy = outcome_equivalence,
    ) -> None:
        self._plans = plan_runner
        self._diffs = diff_log
        self._equivalence = equivalence

    async def compare(
        self,
        request: ShadowInput,
        legacy_runner: AgentRunner,
        current_runner: AgentRunner,
    ) -> ShadowVerdict:
        """Run both runners concurrently, judge equivalence and persist the verdict.

        Runner failures become ok=False outcomes. AuditWriteError from either
        side is re-raised after both runners have finished.
        """
        session = request.session
        legacy_channel = ExecutionChannel(self._plans, session, simulated=True)
        current_channel = ExecutionChannel(self._plans, session, simulated=False)

        legacy_outcome, current_outcome = await asyncio.gather(
            self._run_guarded(legacy_runner, request, legacy_channel),
            self._run_guarded(current_runner, request, current_channel),
            return_exceptions=True,
        )
        for result in (current_outcome, legacy_outcome):
            if isinstance(result, BaseException):
                raise result

        verdict = ShadowVerdict(
            session_id=session.id,
            equivalent=bool(self._equivalence(legacy_outcome, current_outcome)),
            legacy_outcome=legacy_outcome,
            current_outcome=current_outcome,
            policy=getattr(self._equivalence, "__name__", repr(self._equivalence)),
            input_text=request.text,
        )
        verdict = await self._diffs.record(verdict)
        logger.info(
            "shadow_compared",
            session_id=session.id,
            equivalent=verdict.equivalent,
            legacy_ok=legacy_outcome.ok,
            current_ok=current_outcome.ok,
            legacy_duration_ms=legacy_outcome.duration_ms,
            current_duration_ms=current_outcome.duration_ms,
        )
        return verdict

    async def _run_guarded(
        self, runner: AgentRunner, request: ShadowInput, channel: ExecutionChannel
    ) -> RunOutcome:
        name = getattr(runner, "name", type(runner).__name__)
        start = time.monotonic()
        try:
            outcome = await runner.run(request, channel)
        except AuditWriteError:
            raise
        except Exception as exc:
            logger.exception("shadow_runner_failed", runner=name, simulated=channel.simulated)
            outcome = RunOutcome(runner=name, ok=False, error=str(exc) or type(exc).__name__)
        duration_ms = int(round((time.monotonic() - start) * 1000))
        return RunOutcome(
            runner=outcome.runner or name,
            ok=outcome.ok,
            reply=outcome.reply,
            steps=outcome.steps,
            error=outcome.error,
            duration_ms=duration_ms,
            simulated=channel.simulated,
        )
