"""Narrow contracts the built-in tools need from the rest of the CRM.

Implementations live outside the agent core (query modules over the studio
database, the mail transport). Every call is scoped to one studio.
"""

from __future__ import annotations

from datetime import date
from decimal import Decimal
from typing import Any, Protocol


class CrmGateway(Protocol):
    async def search_clients(
        self, studio_id: str, query: str, *, limit: int
    ) -> list[dict[str, Any]]: ...

    async def update_client(
        self, studio_id: str, client_id: str, changes: dict[str, Any]
    ) -> dict[str, Any]: ...

    async def list_invoices(
        self, studio_id: str, *, status: str | None, client_id: str | None, limit: int
    ) -> list[dict[str, Any]]: ...

    async def create_invoice(
        self,
        studio_id: str,
        client_id: str,
        items: list[dict[str, Any]],
        *,
        due_date: date | None,
        currency: str,
    ) -> dict[str, Any]: ...

    async def count_leads(
        self, studio_id: str, *, since: date | None
    ) -> dict[str, int]: ...


class MailTransport(Protocol):
    async def send(
        self, studio_id: str, *, to: str, subject: str, body: str
    ) -> str:
        """Send one message and return the transport's message id."""
        ...


def money(value: Decimal) -> str:
    return f"{value.quantize(Decimal('0.01'))}"
