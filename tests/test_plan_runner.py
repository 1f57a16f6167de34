"""PlanRunner: failure policies, transcript linkage and session abort."""

from __future__ import annotations

import json

import pytest
from pydantic import BaseModel

from studio_agent.agent.executor import ToolExecutor
from studio_agent.agent.plan import (
    FailurePolicy,
    Plan,
    PlanRunner,
    PlanStep,
    StepStatus,
    default_policy_for,
)
from studio_agent.session.scopes import SessionMode
from studio_agent.tools.base import QueryTool
from studio_agent.tools.builtins import register_builtins
from studio_agent.tools.registry import ToolRegistry

pytestmark = pytest.mark.integration


@pytest.fixture
def runner(crm, audit_log, session_store) -> PlanRunner:
    registry = ToolRegistry()
    register_builtins(registry, crm=crm)
    return PlanRunner(ToolExecutor(registry, audit_log), session_store)


def _mixed_plan() -> Plan:
    return Plan(
        steps=(
            PlanStep("crm_clients_search", {"query": "anna"}),
            PlanStep("crm_clients_update", {"client_id": "c1", "notes": "VIP"}),
            PlanStep("report_leads_summary", {}),
        )
    )


class TestFromIntents:
    def test_dict_and_json_args(self):
        plan = Plan.from_intents(
            [
                {"tool": "crm_clients_search", "args": {"query": "ben"}},
                {"tool": "report_leads_summary", "args": '{"since": "2026-01-01"}'},
                {"tool": "crm_invoices_list"},
                {"tool": "crm_invoices_list", "args": "  "},
            ],
            reply="Done.",
        )
        assert plan.reply == "Done."
        assert [s.tool for s in plan.steps] == [
            "crm_clients_search",
            "report_leads_summary",
            "crm_invoices_list",
            "crm_invoices_list",
        ]
        assert plan.steps[1].args == {"since": "2026-01-01"}
        assert plan.steps[2].args == {}
        assert plan.steps[3].args == {}


class TestDefaultPolicy:
    def test_mode_defaults(self):
        assert default_policy_for(SessionMode.read_only) == FailurePolicy.continue_on_failure
        assert default_policy_for(SessionMode.read_write) == FailurePolicy.abort_on_first_failure

    def test_overrides(self):
        policy = default_policy_for(
            SessionMode.read_only, read_only=FailurePolicy.abort_on_first_failure
        )
        assert policy == FailurePolicy.abort_on_first_failure


class TestFailurePolicies:
    async def test_continue_runs_every_step(
        self, runner, session_store, owner, audit_log, crm
    ):
        session = await session_store.create(
            owner, SessionMode.read_only, {"clients.read", "reports.read"}
        )
        result = await runner.run(session, _mixed_plan(), FailurePolicy.continue_on_failure)

        assert [s.status for s in result.steps] == [
            StepStatus.ok,
            StepStatus.failed,
            StepStatus.ok,
        ]
        assert result.ok is False
        assert result.attempted == 3
        assert crm.mutations() == []
        records = await audit_log.query(session.id).all()
        assert [r.ok for r in records] == [True, False, True]

    async def test_abort_skips_remaining_steps(self, runner, session_store, owner, audit_log):
        session = await session_store.create(
            owner, SessionMode.read_only, {"clients.read", "reports.read"}
        )
        result = await runner.run(session, _mixed_plan(), FailurePolicy.abort_on_first_failure)

        assert [s.status for s in result.steps] == [
            StepStatus.ok,
            StepStatus.failed,
            StepStatus.skipped,
        ]
        assert result.steps[2].outcome is None
        assert result.tool_sequence() == ("crm_clients_search", "crm_clients_update")
        assert len(await audit_log.query(session.id).all()) == 2


class TestTranscript:
    async def test_tool_messages_reference_audit_records(
        self, runner, session_store, reports_session, audit_log
    ):
        plan = Plan(steps=(PlanStep("report_leads_summary", {}), PlanStep("unknown_tool", {})))
        await runner.run(reports_session, plan, FailurePolicy.continue_on_failure)

        messages = await session_store.transcript(reports_session.id)
        records = await audit_log.query(reports_session.id).all()
        assert [m.role for m in messages] == ["tool", "tool"]
        assert [m.tool_call_id for m in messages] == [str(r.id) for r in records]
        first = json.loads(messages[0].content)
        assert first["ok"] is True
        assert first["data"]["total"] == 6
        second = json.loads(messages[1].content)
        assert second == {"tool": "unknown_tool", "ok": False, "error_code": "UNKNOWN_TOOL",
                          "error": "unknown tool"}

    async def test_messages_and_records_share_one_sequence(
        self, runner, session_store, reports_session, audit_log
    ):
        plan = Plan(steps=(PlanStep("report_leads_summary", {}),) * 2)
        await runner.run(reports_session, plan, FailurePolicy.continue_on_failure)

        seqs = [m.seq for m in await session_store.transcript(reports_session.id)]
        seqs += [r.seq for r in await audit_log.query(reports_session.id).all()]
        assert sorted(seqs) == list(range(min(seqs), min(seqs) + 4))

    async def test_simulated_run_leaves_transcript_alone(
        self, runner, session_store, reports_session
    ):
        plan = Plan(steps=(PlanStep("report_leads_summary", {}),))
        result = await runner.run(
            reports_session, plan, FailurePolicy.continue_on_failure, simulated=True
        )

        assert result.steps[0].outcome.simulated is True
        assert await session_store.transcript(reports_session.id) == []


class TestAbort:
    async def test_aborted_session_attempts_nothing(self, runner, reports_session, audit_log):
        runner.abort(reports_session.id)
        plan = Plan(steps=(PlanStep("report_leads_summary", {}),) * 2)
        result = await runner.run(reports_session, plan, FailurePolicy.continue_on_failure)

        assert [s.status for s in result.steps] == [StepStatus.aborted, StepStatus.aborted]
        assert result.attempted == 0
        assert await audit_log.query(reports_session.id).all() == []

    async def test_resume(self, runner, reports_session):
        runner.abort(reports_session.id)
        runner.resume(reports_session.id)
        assert not runner.is_aborted(reports_session.id)

        plan = Plan(steps=(PlanStep("report_leads_summary", {}),))
        result = await runner.run(reports_session, plan, FailurePolicy.continue_on_failure)
        assert result.ok is True


class _LabOrderArgs(BaseModel):
    order_id: str


class _LabOrderStatus(QueryTool):
    name = "lab_order_status"
    description = "Print lab order status"
    input_model = _LabOrderArgs
    required_scopes = frozenset({"reports.read"})

    async def invoke(self, args, context):
        raise ConnectionError(f"print lab unreachable for {args.order_id}")


class TestHandlerFailureInPlan:
    async def test_thrown_message_preserved_and_plan_continues(
        self, crm, audit_log, session_store, reports_session
    ):
        registry = ToolRegistry()
        register_builtins(registry, crm=crm)
        registry.register(_LabOrderStatus())
        runner = PlanRunner(ToolExecutor(registry, audit_log), session_store)
        plan = Plan(
            steps=(
                PlanStep("lab_order_status", {"order_id": "L-42"}),
                PlanStep("report_leads_summary", {}),
            )
        )

        result = await runner.run(reports_session, plan, FailurePolicy.continue_on_failure)

        assert [s.status for s in result.steps] == [StepStatus.failed, StepStatus.ok]
        records = await audit_log.query(reports_session.id).all()
        assert [(r.tool, r.ok) for r in records] == [
            ("lab_order_status", False),
            ("report_leads_summary", True),
        ]
        assert records[0].error == "print lab unreachable for L-42"
