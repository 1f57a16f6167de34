from __future__ import annotations

from typing import TYPE_CHECKING, Any

from pydantic import BaseModel, ConfigDict, EmailStr, Field

from studio_agent.session.scopes import EMAIL_SEND
from studio_agent.tools.base import ExternalCallTool

if TYPE_CHECKING:
    from studio_agent.tools.builtins.gateways import MailTransport
    from studio_agent.tools.context import ToolContext


class EmailSendArgs(BaseModel):
    model_config = ConfigDict(extra="forbid")

    to: EmailStr
    subject: str = Field(min_length=1, max_length=200)
    body: str = Field(min_length=1, max_length=20_000)


class EmailSendTool(ExternalCallTool):
    def __init__(self, mailer: MailTransport) -> None:
        self._mailer = mailer

    @property
    def name(self) -> str:
        return "email_send"

    @property
    def description(self) -> str:
        return "Send an email to a client from the studio's address."

    @property
    def input_model(self) -> type[BaseModel]:
        return EmailSendArgs

    @property
    def required_scopes(self) -> frozenset[str]:
        return frozenset({EMAIL_SEND})

    @property
    def timeout_s(self) -> float | None:
        return 15.0

    async def invoke(self, args: EmailSendArgs, context: ToolContext) -> dict[str, Any]:
        message_id = await self._mailer.send(
            context.studio_id, to=str(args.to), subject=args.subject, body=args.body
        )
        return {"sent": True, "message_id": message_id, "to": str(args.to)}
