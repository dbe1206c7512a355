"""Runner lease: at most one round runner advances the game at a time.

A lease is an id plus an absolute expiry stored on Engine State. It can
only be acquired when none is held or the held one has expired, which is
how exclusivity is reclaimed from a crashed runner. Renewal fails once the
stored id differs from the caller's, which is how a runner notices it has
been preempted.
"""

from __future__ import annotations

import logging
import uuid

from sqlalchemy.ext.asyncio import AsyncEngine

from quipslop.db.engine import get_session
from quipslop.db.models import EngineStateRow, now_ms
from quipslop.db.repository import Repository

logger = logging.getLogger(__name__)


class LeaseManager:
    """Acquire, renew, release and validate the runner lease."""

    def __init__(self, engine: AsyncEngine, lease_seconds: float = 60.0) -> None:
        self.engine = engine
        self.lease_ms = int(lease_seconds * 1000)

    async def acquire(self) -> str | None:
        """Mint a new lease. Returns its id, or None when a valid lease exists."""
        lease_id = str(uuid.uuid4())
        at = now_ms()
        async with get_session(self.engine) as session:
            acquired = await Repository(session).acquire_lease(lease_id, at + self.lease_ms, at)
        if not acquired:
            return None
        logger.info("lease_acquired lease=%s", lease_id)
        return lease_id

    async def renew(self, lease_id: str) -> bool:
        async with get_session(self.engine) as session:
            renewed = await Repository(session).renew_lease(lease_id, now_ms() + self.lease_ms)
        if not renewed:
            logger.info("lease_lost lease=%s", lease_id)
        return renewed

    async def release(self, lease_id: str) -> bool:
        async with get_session(self.engine) as session:
            released = await Repository(session).release_lease(lease_id)
        if released:
            logger.info("lease_released lease=%s", lease_id)
        return released

    async def validate(self, lease_id: str) -> EngineStateRow | None:
        """Engine State if *lease_id* is the stored, unexpired lease; else None."""
        async with get_session(self.engine) as session:
            state = await Repository(session).get_engine_state()
        if state is None or not state.lease_valid(lease_id):
            return None
        return state

    async def is_held(self) -> bool:
        """True if any unexpired lease is stored."""
        async with get_session(self.engine) as session:
            state = await Repository(session).get_engine_state()
        return state is not None and state.lease_valid()
