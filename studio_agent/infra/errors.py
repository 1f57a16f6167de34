"""Custom exception hierarchy for the studio agent core.

All application-specific exceptions inherit from StudioAgentError,
which carries a stable error code for structured step results.
"""

from __future__ import annotations

from collections.abc import Iterable


class StudioAgentError(Exception):
    """Base exception for all studio agent errors."""

    def __init__(self, message: str, *, code: str = "INTERNAL_ERROR") -> None:
        super().__init__(message)
        self.code = code


class SessionError(StudioAgentError):
    """Errors in session management."""

    def __init__(self, message: str, *, code: str = "SESSION_ERROR") -> None:
        super().__init__(message, code=code)


class SessionNotFoundError(SessionError):
    def __init__(self, session_id: str) -> None:
        super().__init__(f"Session not found: {session_id}", code="SESSION_NOT_FOUND")
        self.session_id = session_id


class ScopeCeilingError(SessionError):
    """Requested scopes exceed what the session mode permits."""

    def __init__(self, mode: str, excess: Iterable[str]) -> None:
        self.mode = mode
        self.excess = tuple(sorted(excess))
        super().__init__(
            f"Scopes not permitted in '{mode}' mode: {', '.join(self.excess)}",
            code="SCOPE_CEILING",
        )


class AgentError(StudioAgentError):
    """Errors in the agent runtime."""

    def __init__(self, message: str, *, code: str = "AGENT_ERROR") -> None:
        super().__init__(message, code=code)


class ToolError(AgentError):
    """Errors during tool resolution or execution."""

    def __init__(self, message: str, *, code: str = "TOOL_ERROR") -> None:
        super().__init__(message, code=code)


class DuplicateToolError(ToolError):
    def __init__(self, name: str) -> None:
        super().__init__(f"Tool already registered: {name}", code="DUPLICATE_TOOL")
        self.tool_name = name


class RegistrySealedError(ToolError):
    def __init__(self, name: str) -> None:
        super().__init__(
            f"Cannot register '{name}': registry is sealed", code="REGISTRY_SEALED"
        )
        self.tool_name = name


class UnknownToolError(ToolError):
    def __init__(self, name: str) -> None:
        super().__init__("unknown tool", code="UNKNOWN_TOOL")
        self.tool_name = name


class InvalidArgumentsError(ToolError):
    """Arguments do not satisfy the tool's input contract."""

    def __init__(self, tool_name: str, detail: str) -> None:
        super().__init__(f"Invalid arguments for '{tool_name}': {detail}", code="INVALID_ARGS")
        self.tool_name = tool_name
        self.detail = detail


class AuthorizationDeniedError(ToolError):
    """Gate denial. missing_scopes is empty when only the mode blocked the call."""

    def __init__(
        self,
        tool_name: str,
        *,
        missing_scopes: Iterable[str] = (),
        reason: str | None = None,
    ) -> None:
        self.tool_name = tool_name
        self.missing_scopes = tuple(sorted(missing_scopes))
        if reason is None:
            reason = f"Missing required scopes: {', '.join(self.missing_scopes)}"
        self.reason = reason
        super().__init__(reason, code="AUTHZ_DENIED")


class HandlerExecutionError(ToolError):
    """Wraps any failure raised by a tool handler.

    effect_unknown is set when the handler stopped part-way (cancelled)
    and may already have produced its external effect.
    """

    def __init__(
        self, tool_name: str, cause: BaseException, *, effect_unknown: bool = False
    ) -> None:
        message = str(cause) or type(cause).__name__
        super().__init__(message, code="EXECUTION_ERROR")
        self.tool_name = tool_name
        self.effect_unknown = effect_unknown
        self.__cause__ = cause


class ToolTimeoutError(ToolError):
    """Handler exceeded its time budget. The external effect is unknown."""

    effect_unknown = True

    def __init__(self, tool_name: str, timeout_s: float) -> None:
        super().__init__("timeout", code="TIMEOUT")
        self.tool_name = tool_name
        self.timeout_s = timeout_s


class AuditWriteError(AgentError):
    """Persisting an audit entry failed; forensic completeness is lost."""

    def __init__(
        self,
        message: str = "Audit record could not be persisted",
        *,
        code: str = "AUDIT_WRITE_FAILED",
        session_id: str | None = None,
        effect_applied: bool = False,
    ) -> None:
        super().__init__(message, code=code)
        self.session_id = session_id
        self.effect_applied = effect_applied
