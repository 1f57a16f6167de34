"""Process startup: logging, database, sealed tool registry and the agent service."""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

import structlog

from studio_agent.agent.service import AgentService
from studio_agent.config.settings import Settings, get_settings
from studio_agent.infra.logging import setup_logging
from studio_agent.session.database import create_db_engine, ensure_schema, make_session_factory
from studio_agent.tools.builtins import register_builtins
from studio_agent.tools.registry import ToolRegistry

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncEngine

    from studio_agent.tools.builtins.gateways import CrmGateway, MailTransport

logger = structlog.get_logger()


@dataclass
class AgentRuntime:
    engine: AsyncEngine
    registry: ToolRegistry
    service: AgentService

    async def close(self) -> None:
        await self.engine.dispose()


def build_registry(crm: CrmGateway, mailer: MailTransport | None = None) -> ToolRegistry:
    """Register the built-in tools once and seal the registry."""
    registry = ToolRegistry()
    register_builtins(registry, crm=crm, mailer=mailer)
    registry.seal()
    return registry


async def start_runtime(
    crm: CrmGateway,
    *,
    mailer: MailTransport | None = None,
    settings: Settings | None = None,
) -> AgentRuntime:
    settings = settings or get_settings()
    setup_logging(json_output=settings.logging.json_output, log_level=settings.logging.level)

    engine = create_db_engine(settings.database)
    await ensure_schema(engine)
    registry = build_registry(crm, mailer)
    service = AgentService.from_session_factory(make_session_factory(engine), registry, settings)

    stats = registry.stats()
    logger.info(
        "agent_runtime_started",
        total_tools=stats.total_tools,
        by_risk=dict(stats.by_risk),
        shadow_enabled=settings.shadow.enabled,
    )
    return AgentRuntime(engine=engine, registry=registry, service=service)
