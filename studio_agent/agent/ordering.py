"""Per-session submission ordering.

Each execution takes a ticket when it is submitted. Handlers run
concurrently; a ticket only waits for its predecessor before the audit
write, so records land in submission order without holding any lock
across handler I/O. Different sessions never wait on each other.
"""

from __future__ import annotations

import asyncio


class Ticket:
    def __init__(self, ordering: SessionOrdering, session_id: str, previous: Ticket | None) -> None:
        self._ordering = ordering
        self._session_id = session_id
        self._previous = previous
        self._done = asyncio.Event()

    async def wait_turn(self) -> None:
        if self._previous is not None:
            await self._previous._done.wait()
            self._previous = None

    def release(self) -> None:
        """Let the next ticket proceed. Safe to call more than once."""
        if self._done.is_set():
            return
        self._done.set()
        self._ordering._forget(self._session_id, self)


class SessionOrdering:
    def __init__(self) -> None:
        self._tails: dict[str, Ticket] = {}

    def enter(self, session_id: str) -> Ticket:
        ticket = Ticket(self, session_id, self._tails.get(session_id))
        self._tails[session_id] = ticket
        return ticket

    def _forget(self, session_id: str, ticket: Ticket) -> None:
        if self._tails.get(session_id) is ticket:
            del self._tails[session_id]
