from __future__ import annotations

from typing import TYPE_CHECKING

from studio_agent.tools.builtins.clients import ClientsSearchTool, ClientsUpdateTool
from studio_agent.tools.builtins.email import EmailSendTool
from studio_agent.tools.builtins.invoices import InvoicesCreateTool, InvoicesListTool
from studio_agent.tools.builtins.reports import LeadsSummaryTool

if TYPE_CHECKING:
    from studio_agent.tools.builtins.gateways import CrmGateway, MailTransport
    from studio_agent.tools.registry import ToolRegistry


def register_builtins(
    registry: ToolRegistry,
    *,
    crm: CrmGateway,
    mailer: MailTransport | None = None,
) -> None:
    """Register all built-in CRM tools with the registry.

    email_send is registered only when a mail transport is configured.
    """
    registry.register(ClientsSearchTool(crm))
    registry.register(ClientsUpdateTool(crm))
    registry.register(InvoicesListTool(crm))
    registry.register(InvoicesCreateTool(crm))
    registry.register(LeadsSummaryTool(crm))

    if mailer is not None:
        registry.register(EmailSendTool(mailer))
