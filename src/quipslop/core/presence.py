"""Viewer presence: heartbeats with an expiry, summed into a live viewer count.

A viewer's first heartbeat adds one to its count shard; later heartbeats
only push the expiry out. The reaper removes expired rows in batches and
takes their shard back down.
"""

from __future__ import annotations

import logging

from sqlalchemy.ext.asyncio import AsyncEngine

from quipslop.core.tally import hash_to_shard
from quipslop.db.engine import get_session
from quipslop.db.models import now_ms
from quipslop.db.repository import Repository

logger = logging.getLogger(__name__)

VALID_PAGES = ("live", "broadcast")


async def heartbeat(
    engine: AsyncEngine,
    viewer_id: str,
    page: str = "live",
    ttl_seconds: float = 30.0,
    at_ms: int | None = None,
) -> bool:
    """Mark *viewer_id* present for *ttl_seconds*. True if newly present."""
    at = now_ms() if at_ms is None else at_ms
    shard = hash_to_shard(viewer_id)
    async with get_session(engine) as session:
        repo = Repository(session)
        created = await repo.upsert_presence(
            viewer_id, page, at + int(ttl_seconds * 1000), at, shard
        )
        if created:
            await repo.adjust_viewer_count_shard(shard, 1)
    return created


async def reap_expired(engine: AsyncEngine, batch: int = 500, at_ms: int | None = None) -> int:
    """Remove up to *batch* expired presence rows. Returns how many were removed."""
    at = now_ms() if at_ms is None else at_ms
    removed = 0
    async with get_session(engine) as session:
        repo = Repository(session)
        for row in await repo.get_expired_presence(at, batch):
            # A heartbeat may have refreshed the row since the select.
            if await repo.delete_presence_if_expired(row.viewer_id, at):
                await repo.adjust_viewer_count_shard(row.count_shard, -1)
                removed += 1
    if removed:
        logger.info("presence_reaped count=%d", removed)
    return removed


async def read_viewer_count(engine: AsyncEngine) -> int:
    async with get_session(engine) as session:
        return await Repository(session).sum_viewer_count()
