"""Voting-window waits keyed by round id.

The runner waits on a per-round ``asyncio.Event`` with a timeout bounded
by the time left in the window. Shortening the window sets the event, so
the runner re-reads the deadline at once instead of sleeping through it.
The timeout cap still bounds the wait when the deadline is changed from
another process.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable

from sqlalchemy.ext.asyncio import AsyncEngine

from quipslop.db.engine import get_session
from quipslop.db.models import now_ms
from quipslop.db.repository import Repository

logger = logging.getLogger(__name__)

MIN_WAIT_SECONDS = 0.1


class VotingWindowRegistry:
    def __init__(self) -> None:
        self._events: dict[str, asyncio.Event] = {}

    def notify(self, round_id: str) -> None:
        """Wake a runner waiting on *round_id* (deadline changed or phase moved)."""
        event = self._events.get(round_id)
        if event is not None:
            event.set()

    def notify_all(self) -> None:
        for event in self._events.values():
            event.set()

    async def wait(self, round_id: str, timeout: float) -> bool:
        """Sleep up to *timeout* seconds. True if woken by ``notify``."""
        event = self._events.setdefault(round_id, asyncio.Event())
        try:
            await asyncio.wait_for(event.wait(), timeout=timeout)
            return True
        except TimeoutError:
            return False
        finally:
            event.clear()

    def discard(self, round_id: str) -> None:
        self._events.pop(round_id, None)

    @property
    def waiting(self) -> int:
        return len(self._events)

    async def wait_for_close(
        self,
        engine: AsyncEngine,
        round_id: str,
        *,
        poll_max_seconds: float = 1.0,
        keep_alive: Callable[[], Awaitable[bool]] | None = None,
    ) -> bool:
        """Block until the round's viewer voting window is over.

        The window counts as over once its deadline passes, or when the
        round disappears or leaves the voting phase. Returns False if
        *keep_alive* reports the runner should give up (lease lost).
        """
        try:
            while True:
                async with get_session(engine) as session:
                    rnd = await Repository(session).get_round(round_id)
                if rnd is None or rnd.phase != "voting" or rnd.viewer_voting_ends_at is None:
                    return True
                remaining = (rnd.viewer_voting_ends_at - now_ms()) / 1000
                if remaining <= 0:
                    return True
                if keep_alive is not None and not await keep_alive():
                    return False
                await self.wait(round_id, min(max(remaining, MIN_WAIT_SECONDS), poll_max_seconds))
        finally:
            self.discard(round_id)
