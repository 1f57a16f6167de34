from __future__ import annotations

from datetime import date
from decimal import Decimal
from typing import TYPE_CHECKING, Any, Literal

from pydantic import BaseModel, ConfigDict, Field

from studio_agent.session.scopes import INVOICES_READ, INVOICES_WRITE
from studio_agent.tools.base import MutationTool, QueryTool, RiskLevel
from studio_agent.tools.builtins.gateways import money

if TYPE_CHECKING:
    from studio_agent.tools.builtins.gateways import CrmGateway
    from studio_agent.tools.context import ToolContext

InvoiceStatus = Literal["draft", "sent", "paid", "overdue", "cancelled"]


class InvoicesListArgs(BaseModel):
    model_config = ConfigDict(extra="forbid")

    status: InvoiceStatus | None = None
    client_id: str | None = None
    limit: int = Field(20, ge=1, le=100)


class InvoicesListTool(QueryTool):
    def __init__(self, crm: CrmGateway) -> None:
        self._crm = crm

    @property
    def name(self) -> str:
        return "crm_invoices_list"

    @property
    def description(self) -> str:
        return "List invoices, optionally filtered by status or client."

    @property
    def input_model(self) -> type[BaseModel]:
        return InvoicesListArgs

    @property
    def required_scopes(self) -> frozenset[str]:
        return frozenset({INVOICES_READ})

    async def invoke(self, args: InvoicesListArgs, context: ToolContext) -> dict[str, Any]:
        invoices = await self._crm.list_invoices(
            context.studio_id, status=args.status, client_id=args.client_id, limit=args.limit
        )
        return {"invoices": invoices, "total": len(invoices)}


class InvoiceItem(BaseModel):
    model_config = ConfigDict(extra="forbid")

    description: str = Field(min_length=1, max_length=500)
    quantity: int = Field(1, ge=1)
    unit_price: Decimal = Field(ge=0, max_digits=12, decimal_places=2)


class InvoicesCreateArgs(BaseModel):
    model_config = ConfigDict(extra="forbid")

    client_id: str = Field(min_length=1)
    items: list[InvoiceItem] = Field(min_length=1)
    due_date: date | None = None
    currency: str = Field("EUR", pattern=r"^[A-Z]{3}$")

    def total(self) -> Decimal:
        return sum((i.unit_price * i.quantity for i in self.items), Decimal("0"))


class InvoicesCreateTool(MutationTool):
    """Creates a draft invoice. High risk: it commits the studio to an amount."""

    def __init__(self, crm: CrmGateway) -> None:
        self._crm = crm

    @property
    def name(self) -> str:
        return "crm_invoices_create"

    @property
    def description(self) -> str:
        return "Create a draft invoice for a client with one or more line items."

    @property
    def input_model(self) -> type[BaseModel]:
        return InvoicesCreateArgs

    @property
    def required_scopes(self) -> frozenset[str]:
        return frozenset({INVOICES_WRITE})

    @property
    def risk_level(self) -> RiskLevel:
        return RiskLevel.high

    async def invoke(self, args: InvoicesCreateArgs, context: ToolContext) -> dict[str, Any]:
        invoice = await self._crm.create_invoice(
            context.studio_id,
            args.client_id,
            [item.model_dump(mode="json") for item in args.items],
            due_date=args.due_date,
            currency=args.currency,
        )
        return {"invoice": invoice, "total": money(args.total()), "currency": args.currency}

    async def simulate(self, args: InvoicesCreateArgs, context: ToolContext) -> dict[str, Any]:
        return {
            "simulated": True,
            "tool": self.name,
            "would_create": {
                "client_id": args.client_id,
                "items": len(args.items),
                "total": money(args.total()),
                "currency": args.currency,
            },
        }
