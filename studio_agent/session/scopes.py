"""Session modes and the scope ceiling each mode permits."""

from __future__ import annotations

from collections.abc import Iterable
from enum import StrEnum


class SessionMode(StrEnum):
    read_only = "read_only"
    read_write = "read_write"


CLIENTS_READ = "clients.read"
CLIENTS_WRITE = "clients.write"
INVOICES_READ = "invoices.read"
INVOICES_WRITE = "invoices.write"
REPORTS_READ = "reports.read"
EMAIL_SEND = "email.send"

READ_SUFFIX = ".read"


def mode_permits(mode: SessionMode, scope: str) -> bool:
    """read_only sessions may only hold '*.read' scopes; read_write may hold any."""
    if mode == SessionMode.read_write:
        return True
    return scope.endswith(READ_SUFFIX)


def ceiling_excess(mode: SessionMode, scopes: Iterable[str]) -> frozenset[str]:
    """Return the scopes that exceed the ceiling of mode (empty when within)."""
    return frozenset(s for s in scopes if not mode_permits(mode, s))
