from __future__ import annotations

from collections import Counter
from collections.abc import Iterable
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import TYPE_CHECKING

import structlog

from studio_agent.infra.errors import DuplicateToolError, RegistrySealedError, UnknownToolError
from studio_agent.tools.base import BaseTool, RiskLevel

if TYPE_CHECKING:
    from collections.abc import Mapping

    from pydantic import BaseModel

logger = structlog.get_logger()


@dataclass(frozen=True)
class ToolDefinition:
    """Immutable snapshot of a tool taken at registration time."""

    name: str
    description: str
    risk: RiskLevel
    authz: frozenset[str]
    input_model: type[BaseModel]
    mutating: bool
    timeout_s: float | None
    handler: BaseTool = field(repr=False, compare=False)

    @classmethod
    def from_tool(cls, tool: BaseTool) -> ToolDefinition:
        return cls(
            name=tool.name,
            description=tool.description,
            risk=RiskLevel(tool.risk_level),
            authz=frozenset(tool.required_scopes),
            input_model=tool.input_model,
            mutating=tool.mutating,
            timeout_s=tool.timeout_s,
            handler=tool,
        )


@dataclass(frozen=True)
class RegistryStats:
    total_tools: int
    by_risk: Mapping[str, int]
    by_scope: Mapping[str, int]


class ToolRegistry:
    """Catalog of agent tools, built once at startup and injected into executors.

    Re-registering a name is always a hard failure, even for an identical tool.
    """

    def __init__(self) -> None:
        self._tools: dict[str, ToolDefinition] = {}
        self._sealed = False

    @property
    def sealed(self) -> bool:
        return self._sealed

    def register(self, tool: BaseTool) -> ToolDefinition:
        """Register a tool. Raises DuplicateToolError if name already registered."""
        if self._sealed:
            raise RegistrySealedError(tool.name)
        if tool.name in self._tools:
            raise DuplicateToolError(tool.name)
        definition = ToolDefinition.from_tool(tool)
        if not definition.authz:
            logger.warning(
                "tool_registered_without_scopes",
                tool_name=definition.name,
                msg="Tool declares no required scopes; any session may call it.",
            )
        self._tools[definition.name] = definition
        logger.info(
            "tool_registered",
            tool_name=definition.name,
            risk=definition.risk.value,
            scopes=sorted(definition.authz),
        )
        return definition

    def seal(self) -> None:
        """Make the registry read-only. Called once startup registration is done."""
        self._sealed = True
        logger.info("tool_registry_sealed", total_tools=len(self._tools))

    def get(self, name: str) -> ToolDefinition:
        """Get a tool definition by name. Raises UnknownToolError if absent."""
        try:
            return self._tools[name]
        except KeyError:
            raise UnknownToolError(name) from None

    def __contains__(self, name: object) -> bool:
        return name in self._tools

    def __len__(self) -> int:
        return len(self._tools)

    def list(self) -> Iterable[str]:
        """Registered names as a live view; each iteration starts over."""
        return self._tools.keys()

    def authorized_for(self, scopes: Iterable[str]) -> list[ToolDefinition]:
        """Tools whose required scopes are all contained in scopes."""
        granted = frozenset(scopes)
        return [d for d in self._tools.values() if d.authz <= granted]

    def tools_schema(self, scopes: Iterable[str]) -> list[dict]:
        """Return tools in OpenAI function calling format, filtered by scopes.

        Output format:
        [{"type": "function", "function": {"name": ..., "description": ..., "parameters": ...}}]
        """
        return [
            {
                "type": "function",
                "function": {
                    "name": d.name,
                    "description": d.description,
                    "parameters": d.handler.parameters,
                },
            }
            for d in self.authorized_for(scopes)
        ]

    def stats(self) -> RegistryStats:
        """Aggregate counts by risk tier and by referenced scope. Monitoring only."""
        by_risk = {level.value: 0 for level in RiskLevel}
        by_scope: Counter[str] = Counter()
        for d in self._tools.values():
            by_risk[d.risk.value] += 1
            by_scope.update(d.authz)
        return RegistryStats(
            total_tools=len(self._tools),
            by_risk=MappingProxyType(by_risk),
            by_scope=MappingProxyType(dict(by_scope)),
        )
