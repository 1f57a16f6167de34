"""Shared pytest fixtures for the agent core tests.

Persistence tests run against a file-backed SQLite database (aiosqlite)
created per test in tmp_path, so concurrent writers get real connections.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncGenerator
from datetime import date
from typing import Any

import pytest
import pytest_asyncio
import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from studio_agent.audit.log import AuditLog
from studio_agent.audit.shadow_log import ShadowDiffLog
from studio_agent.config.settings import DatabaseSettings
from studio_agent.session.database import create_db_engine, ensure_schema, make_session_factory
from studio_agent.session.scopes import SessionMode
from studio_agent.session.store import Owner, SessionStore


class FakeCrm:
    """In-memory CrmGateway that records every call."""

    def __init__(self) -> None:
        self.calls: list[tuple[str, tuple, dict]] = []
        self.clients = [
            {"id": "c1", "name": "Anna Berger", "email": "anna@example.com"},
            {"id": "c2", "name": "Ben Novak", "email": "ben@example.com"},
        ]
        self.invoices: list[dict[str, Any]] = [
            {"id": "inv-1", "client_id": "c1", "status": "paid", "total": "120.00"},
        ]

    async def search_clients(self, studio_id: str, query: str, *, limit: int) -> list[dict]:
        self.calls.append(("search_clients", (studio_id, query), {"limit": limit}))
        q = query.lower()
        return [c for c in self.clients if q in c["name"].lower()][:limit]

    async def update_client(self, studio_id: str, client_id: str, changes: dict) -> dict:
        self.calls.append(("update_client", (studio_id, client_id), changes))
        return {"id": client_id, **changes}

    async def list_invoices(
        self, studio_id: str, *, status: str | None, client_id: str | None, limit: int
    ) -> list[dict]:
        self.calls.append(("list_invoices", (studio_id,), {"status": status}))
        return [i for i in self.invoices if status is None or i["status"] == status][:limit]

    async def create_invoice(
        self,
        studio_id: str,
        client_id: str,
        items: list[dict],
        *,
        due_date: date | None,
        currency: str,
    ) -> dict:
        self.calls.append(("create_invoice", (studio_id, client_id), {"items": items}))
        invoice = {"id": f"inv-{len(self.invoices) + 1}", "client_id": client_id}
        self.invoices.append(invoice)
        return invoice

    async def count_leads(self, studio_id: str, *, since: date | None) -> dict[str, int]:
        self.calls.append(("count_leads", (studio_id,), {"since": since}))
        return {"new": 3, "contacted": 2, "converted": 1}

    def mutations(self) -> list[str]:
        return [name for name, _, _ in self.calls if name in {"update_client", "create_invoice"}]


class FakeMailer:
    def __init__(self) -> None:
        self.sent: list[dict[str, str]] = []

    async def send(self, studio_id: str, *, to: str, subject: str, body: str) -> str:
        self.sent.append({"studio_id": studio_id, "to": to, "subject": subject})
        return f"msg-{len(self.sent)}"


@pytest_asyncio.fixture
async def db_engine(tmp_path):
    """Async SQLite engine with all agent tables created."""
    engine = create_db_engine(DatabaseSettings(url=f"sqlite+aiosqlite:///{tmp_path}/agent.db"))
    await ensure_schema(engine)
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture
async def db_session_factory(db_engine) -> async_sessionmaker[AsyncSession]:
    return make_session_factory(db_engine)


@pytest.fixture
def session_store(db_session_factory) -> SessionStore:
    return SessionStore(db_session_factory)


@pytest.fixture
def audit_log(db_session_factory) -> AuditLog:
    return AuditLog(db_session_factory, page_size=3)


@pytest.fixture
def diff_log(db_session_factory) -> ShadowDiffLog:
    return ShadowDiffLog(db_session_factory)


@pytest.fixture
def owner() -> Owner:
    return Owner(user_id="u-1", studio_id="studio-1")


@pytest_asyncio.fixture
async def reports_session(session_store: SessionStore, owner: Owner) -> AsyncGenerator:
    """read_only session holding only reports.read."""
    yield await session_store.create(owner, SessionMode.read_only, {"reports.read"})


@pytest.fixture
def crm() -> FakeCrm:
    return FakeCrm()


@pytest.fixture
def mailer() -> FakeMailer:
    return FakeMailer()


@pytest.fixture
def restore_logging():
    """Undo setup_logging() so later tests keep the default configuration."""
    root = logging.getLogger()
    level = root.level
    yield
    for handler in root.handlers[:]:
        if isinstance(handler.formatter, structlog.stdlib.ProcessorFormatter):
            root.removeHandler(handler)
    root.setLevel(level)
    structlog.reset_defaults()
