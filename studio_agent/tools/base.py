from __future__ import annotations

from abc import ABC, abstractmethod
from enum import StrEnum
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel, ValidationError

from studio_agent.infra.errors import InvalidArgumentsError

if TYPE_CHECKING:
    from studio_agent.tools.context import ToolContext


class RiskLevel(StrEnum):
    """Tool-level risk classification.

    high-risk tools require a read_write session regardless of scopes.
    Undeclared tools default to 'high' (fail-closed).
    """

    low = "low"
    medium = "medium"
    high = "high"


def _format_validation_error(exc: ValidationError) -> str:
    parts = []
    for err in exc.errors():
        loc = ".".join(str(p) for p in err.get("loc", ())) or "<root>"
        parts.append(f"{loc}: {err.get('msg', 'invalid')}")
    return "; ".join(parts)


class BaseTool(ABC):
    """Abstract base class for agent tools.

    A tool is a capability exposing validate(arguments) and invoke(args, context).
    Handlers depend only on their own collaborators, never on executor internals.
    """

    @property
    @abstractmethod
    def name(self) -> str:
        """Unique tool name used in function calling."""
        ...

    @property
    @abstractmethod
    def description(self) -> str:
        """Human-readable description of what the tool does."""
        ...

    @property
    @abstractmethod
    def input_model(self) -> type[BaseModel]:
        """Pydantic model describing the accepted argument shape."""
        ...

    @property
    @abstractmethod
    def required_scopes(self) -> frozenset[str]:
        """Authorization scopes that must ALL be granted to the session."""
        ...

    @property
    def risk_level(self) -> RiskLevel:
        """Fail-closed default: high. Read-only tools should declare low."""
        return RiskLevel.high

    @property
    def mutating(self) -> bool:
        """Whether invoke() changes state outside the process. Fail-closed: True."""
        return True

    @property
    def timeout_s(self) -> float | None:
        """Per-tool time budget. None falls back to the executor default."""
        return None

    @property
    def parameters(self) -> dict:
        """JSON Schema derived from input_model."""
        return self.input_model.model_json_schema()

    def validate(self, arguments: Any) -> BaseModel:
        """Validate raw arguments against input_model.

        Raises InvalidArgumentsError on any mismatch.
        """
        if not isinstance(arguments, dict):
            raise InvalidArgumentsError(
                self.name, f"expected object, got {type(arguments).__name__}"
            )
        try:
            return self.input_model.model_validate(arguments)
        except ValidationError as exc:
            raise InvalidArgumentsError(self.name, _format_validation_error(exc)) from exc

    @abstractmethod
    async def invoke(self, args: BaseModel, context: ToolContext) -> Any:
        """Run the tool with validated arguments. Raise on failure."""
        ...

    async def simulate(self, args: BaseModel, context: ToolContext) -> Any:
        """Dry-run counterpart of invoke(). Must not produce external effects."""
        return {
            "simulated": True,
            "tool": self.name,
            "would_apply": args.model_dump(mode="json"),
        }


class QueryTool(BaseTool):
    """Read-only lookup against the CRM store."""

    @property
    def risk_level(self) -> RiskLevel:
        return RiskLevel.low

    @property
    def mutating(self) -> bool:
        return False


class MutationTool(BaseTool):
    """Creates or updates CRM records."""

    @property
    def risk_level(self) -> RiskLevel:
        return RiskLevel.medium


class ExternalCallTool(BaseTool):
    """Calls a third-party service (mail transport, labs, payment links)."""

    @property
    def risk_level(self) -> RiskLevel:
        return RiskLevel.high
