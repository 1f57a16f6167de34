"""ShadowComparator: dual runs, simulated legacy path, persisted verdicts."""

from __future__ import annotations

import pytest
import pytest_asyncio

from studio_agent.agent.executor import ToolExecutor
from studio_agent.agent.plan import Plan, PlanRunner, PlanStep
from studio_agent.agent.shadow import (
    PlanningRunner,
    RunOutcome,
    ShadowComparator,
    ShadowInput,
    outcome_equivalence,
    tool_sequence_equivalence,
)
from studio_agent.audit.shadow_log import ShadowDiffLog
from studio_agent.session.scopes import SessionMode
from studio_agent.tools.builtins import register_builtins
from studio_agent.tools.registry import ToolRegistry

pytestmark = pytest.mark.integration

_UPDATE = PlanStep("crm_clients_update", {"client_id": "c1", "notes": "Prefers mornings"})
_SEARCH = PlanStep("crm_clients_search", {"query": "anna"})


class _StaticPlanner:
    def __init__(self, *steps: PlanStep, reply: str = "ok") -> None:
        self._plan = Plan(steps=steps, reply=reply)
        self.seen: list[str] = []

    async def plan(self, session, text):
        self.seen.append(text)
        return self._plan


class _ExplodingRunner:
    name = "legacy"

    async def run(self, request, channel):
        raise RuntimeError("legacy agent crashed")


@pytest.fixture
def plan_runner(crm, audit_log, session_store) -> PlanRunner:
    registry = ToolRegistry()
    register_builtins(registry, crm=crm)
    return PlanRunner(ToolExecutor(registry, audit_log), session_store)


@pytest.fixture
def comparator(plan_runner, diff_log: ShadowDiffLog) -> ShadowComparator:
    return ShadowComparator(plan_runner, diff_log)


@pytest_asyncio.fixture
async def writer_session(session_store, owner):
    return await session_store.create(
        owner, SessionMode.read_write, {"clients.read", "clients.write"}
    )


def _outcome(ok: bool, *tools: str) -> RunOutcome:
    return RunOutcome(runner="r", ok=ok, steps=tuple({"tool": t} for t in tools))


class TestEquivalencePolicies:
    def test_outcome(self):
        assert outcome_equivalence(_outcome(True), _outcome(True, "a"))
        assert outcome_equivalence(_outcome(False), _outcome(False))
        assert not outcome_equivalence(_outcome(True), _outcome(False))

    def test_tool_sequence(self):
        assert tool_sequence_equivalence(_outcome(True, "a", "b"), _outcome(True, "a", "b"))
        assert not tool_sequence_equivalence(_outcome(True, "a", "b"), _outcome(True, "b", "a"))
        assert not tool_sequence_equivalence(_outcome(True, "a"), _outcome(False, "a"))

    def test_unattempted_steps_are_ignored(self):
        legacy = RunOutcome(
            runner="l", ok=False, steps=({"tool": "a"}, {"tool": "b", "attempted": False})
        )
        assert legacy.tool_sequence() == ("a",)


class TestCompare:
    async def test_both_succeed_is_equivalent(self, comparator, writer_session, crm):
        legacy = PlanningRunner("legacy", _StaticPlanner(_SEARCH))
        current = PlanningRunner("current", _StaticPlanner(_SEARCH))

        verdict = await comparator.compare(
            ShadowInput(writer_session, "find anna"), legacy, current
        )

        assert verdict.equivalent is True
        assert verdict.id is not None
        assert verdict.input_text == "find anna"
        assert verdict.policy == "outcome_equivalence"
        assert verdict.legacy_outcome.simulated is True
        assert verdict.current_outcome.simulated is False

    async def test_legacy_ok_current_failed_is_not_equivalent(
        self, comparator, writer_session
    ):
        legacy = PlanningRunner("legacy", _StaticPlanner(_SEARCH))
        current = PlanningRunner("current", _StaticPlanner(PlanStep("crm_clients_purge", {})))

        verdict = await comparator.compare(ShadowInput(writer_session, "x"), legacy, current)

        assert verdict.equivalent is False
        assert verdict.legacy_outcome.ok is True
        assert verdict.current_outcome.ok is False
        assert verdict.current_outcome.error == "unknown tool"

    async def test_legacy_mutation_is_simulated(
        self, comparator, writer_session, crm, audit_log
    ):
        legacy = PlanningRunner("legacy", _StaticPlanner(_UPDATE))
        current = PlanningRunner("current", _StaticPlanner(_UPDATE))

        verdict = await comparator.compare(
            ShadowInput(writer_session, "add a note"), legacy, current
        )

        assert verdict.equivalent is True
        assert crm.mutations() == ["update_client"]
        records = await audit_log.query(writer_session.id).all()
        assert sorted(r.simulated for r in records) == [False, True]
        assert all(r.ok for r in records)

    async def test_runner_exception_becomes_failed_outcome(
        self, comparator, writer_session
    ):
        current = PlanningRunner("current", _StaticPlanner(_SEARCH))

        verdict = await comparator.compare(
            ShadowInput(writer_session, "x"), _ExplodingRunner(), current
        )

        assert verdict.equivalent is False
        assert verdict.legacy_outcome.ok is False
        assert verdict.legacy_outcome.runner == "legacy"
        assert verdict.legacy_outcome.error == "legacy agent crashed"
        assert verdict.current_outcome.ok is True

    async def test_both_runners_see_the_same_input(self, comparator, writer_session):
        legacy_planner = _StaticPlanner(_SEARCH)
        current_planner = _StaticPlanner(_SEARCH)
        await comparator.compare(
            ShadowInput(writer_session, "who is anna?"),
            PlanningRunner("legacy", legacy_planner),
            PlanningRunner("current", current_planner),
        )
        assert legacy_planner.seen == current_planner.seen == ["who is anna?"]

    async def test_tool_sequence_policy(self, plan_runner, diff_log, writer_session):
        comparator = ShadowComparator(
            plan_runner, diff_log, equivalence=tool_sequence_equivalence
        )
        legacy = PlanningRunner("legacy", _StaticPlanner(_SEARCH, _UPDATE))
        current = PlanningRunner("current", _StaticPlanner(_SEARCH))

        verdict = await comparator.compare(ShadowInput(writer_session, "x"), legacy, current)

        assert verdict.equivalent is False
        assert verdict.policy == "tool_sequence_equivalence"


class TestDiffLog:
    async def test_list_and_stats(self, comparator, diff_log, writer_session):
        ok_runner = PlanningRunner("current", _StaticPlanner(_SEARCH))
        await comparator.compare(ShadowInput(writer_session, "a"), ok_runner, ok_runner)
        await comparator.compare(
            ShadowInput(writer_session, "b"), _ExplodingRunner(), ok_runner
        )

        verdicts = await diff_log.list(session_id=writer_session.id)
        assert [v.input_text for v in verdicts] == ["a", "b"]
        assert verdicts[1].legacy_outcome.error == "legacy agent crashed"
        assert verdicts[0].created_at is not None

        stats = await diff_log.stats()
        assert stats.total_comparisons == 2
        assert stats.matches == 1
        assert stats.mismatches == 1
        assert stats.legacy_errors == 1
        assert stats.current_errors == 0

    async def test_empty_stats(self, diff_log):
        stats = await diff_log.stats()
        assert stats.total_comparisons == 0
        assert stats.avg_current_duration_ms == 0.0
