from __future__ import annotations

from datetime import date
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel, ConfigDict

from studio_agent.session.scopes import REPORTS_READ
from studio_agent.tools.base import QueryTool

if TYPE_CHECKING:
    from studio_agent.tools.builtins.gateways import CrmGateway
    from studio_agent.tools.context import ToolContext


class LeadsSummaryArgs(BaseModel):
    model_config = ConfigDict(extra="forbid")

    since: date | None = None


class LeadsSummaryTool(QueryTool):
    """Lead counts by status for the studio dashboard."""

    def __init__(self, crm: CrmGateway) -> None:
        self._crm = crm

    @property
    def name(self) -> str:
        return "report_leads_summary"

    @property
    def description(self) -> str:
        return "Summarize leads by status, optionally only those created since a date."

    @property
    def input_model(self) -> type[BaseModel]:
        return LeadsSummaryArgs

    @property
    def required_scopes(self) -> frozenset[str]:
        return frozenset({REPORTS_READ})

    async def invoke(self, args: LeadsSummaryArgs, context: ToolContext) -> dict[str, Any]:
        by_status = await self._crm.count_leads(context.studio_id, since=args.since)
        return {
            "by_status": by_status,
            "total": sum(by_status.values()),
            "since": args.since.isoformat() if args.since else None,
        }
