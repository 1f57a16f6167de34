from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class ToolContext:
    """Runtime context injected into tool execution by ToolExecutor.

    studio_id/user_id: session owner. Tools MUST scope their CRM queries
    to studio_id and never accept it from arguments.
    simulated: True for shadow runs; invoke() is not called for tools
    with external effects.
    """

    session_id: str
    studio_id: str
    user_id: str
    simulated: bool = False
