"""Authorization gate: scope containment plus the high-risk mode rule.

Pure and side-effect-free; performs no I/O. Denials are logged by the
executor that acts on them.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

from studio_agent.infra.errors import AuthorizationDeniedError
from studio_agent.session.scopes import SessionMode
from studio_agent.tools.base import RiskLevel

if TYPE_CHECKING:
    from studio_agent.session.store import Session
    from studio_agent.tools.registry import ToolDefinition


@dataclass(frozen=True)
class AuthzDecision:
    allowed: bool
    missing_scopes: frozenset[str] = frozenset()
    mode_blocked: bool = False

    @property
    def reason(self) -> str:
        parts = []
        if self.missing_scopes:
            parts.append(f"Missing required scopes: {', '.join(sorted(self.missing_scopes))}")
        if self.mode_blocked:
            parts.append("high-risk tool requires read_write mode")
        return "; ".join(parts)


class AuthorizationGate:
    def check(self, session: Session, tool: ToolDefinition) -> AuthzDecision:
        """Decide without raising. Same inputs always give the same decision."""
        missing = frozenset(tool.authz - session.scopes)
        mode_blocked = tool.risk == RiskLevel.high and session.mode != SessionMode.read_write
        return AuthzDecision(
            allowed=not missing and not mode_blocked,
            missing_scopes=missing,
            mode_blocked=mode_blocked,
        )

    def authorize(self, session: Session, tool: ToolDefinition) -> None:
        """Raise AuthorizationDeniedError unless the session may call tool."""
        decision = self.check(session, tool)
        if not decision.allowed:
            raise AuthorizationDeniedError(
                tool.name,
                missing_scopes=decision.missing_scopes,
                reason=decision.reason,
            )
