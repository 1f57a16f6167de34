from __future__ import annotations

from typing import TYPE_CHECKING, Any

from pydantic import BaseModel, ConfigDict, EmailStr, Field, model_validator

from studio_agent.session.scopes import CLIENTS_READ, CLIENTS_WRITE
from studio_agent.tools.base import MutationTool, QueryTool

if TYPE_CHECKING:
    from studio_agent.tools.builtins.gateways import CrmGateway
    from studio_agent.tools.context import ToolContext


class ClientsSearchArgs(BaseModel):
    model_config = ConfigDict(extra="forbid")

    query: str = Field(min_length=1, max_length=200, description="Name, email or phone fragment.")
    limit: int = Field(10, ge=1, le=50)


class ClientsSearchTool(QueryTool):
    def __init__(self, crm: CrmGateway) -> None:
        self._crm = crm

    @property
    def name(self) -> str:
        return "crm_clients_search"

    @property
    def description(self) -> str:
        return "Search the studio's clients by name, email or phone."

    @property
    def input_model(self) -> type[BaseModel]:
        return ClientsSearchArgs

    @property
    def required_scopes(self) -> frozenset[str]:
        return frozenset({CLIENTS_READ})

    async def invoke(self, args: ClientsSearchArgs, context: ToolContext) -> dict[str, Any]:
        clients = await self._crm.search_clients(
            context.studio_id, args.query.strip(), limit=args.limit
        )
        return {"clients": clients, "total": len(clients)}


class ClientsUpdateArgs(BaseModel):
    model_config = ConfigDict(extra="forbid")

    client_id: str = Field(min_length=1)
    first_name: str | None = Field(None, max_length=100)
    last_name: str | None = Field(None, max_length=100)
    email: EmailStr | None = None
    phone: str | None = Field(None, max_length=40)
    notes: str | None = Field(None, max_length=2000)

    @model_validator(mode="after")
    def _require_change(self) -> ClientsUpdateArgs:
        if not self.changes():
            raise ValueError("at least one field to update is required")
        return self

    def changes(self) -> dict[str, Any]:
        return self.model_dump(exclude={"client_id"}, exclude_none=True)


class ClientsUpdateTool(MutationTool):
    def __init__(self, crm: CrmGateway) -> None:
        self._crm = crm

    @property
    def name(self) -> str:
        return "crm_clients_update"

    @property
    def description(self) -> str:
        return "Update contact details or notes of an existing client."

    @property
    def input_model(self) -> type[BaseModel]:
        return ClientsUpdateArgs

    @property
    def required_scopes(self) -> frozenset[str]:
        return frozenset({CLIENTS_WRITE})

    async def invoke(self, args: ClientsUpdateArgs, context: ToolContext) -> dict[str, Any]:
        client = await self._crm.update_client(context.studio_id, args.client_id, args.changes())
        return {"client": client, "updated_fields": sorted(args.changes())}
