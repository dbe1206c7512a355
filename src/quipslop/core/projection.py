"""Spectator projection: the live snapshot and the task that pushes it.

``build_live_state`` reads Engine State, the active and last completed
rounds, the sharded viewer tallies and the viewer count into one
``LiveStatePayload``. A fresh generation with no rounds yet reads as an
empty game even while the old generation is still being purged.

``LiveStateBroadcaster`` turns bursts of ``state.changed`` events into
at most a few ``live.state`` snapshots per second.
"""

from __future__ import annotations

import asyncio
import logging
import time

from quipslop.core.event_bus import LIVE_STATE, STATE_CHANGED
from quipslop.core.round_store import to_round_state
from quipslop.core.runtime import Runtime
from quipslop.db.engine import get_session
from quipslop.db.repository import Repository
from quipslop.models.catalog import normalize_scores
from quipslop.models.round import GameState, LiveStatePayload, RoundState

logger = logging.getLogger(__name__)

BROADCAST_MIN_INTERVAL_SECONDS = 0.25


async def build_live_state(rt: Runtime) -> LiveStatePayload:
    async with get_session(rt.engine) as session:
        repo = Repository(session)
        state = await repo.get_or_create_engine_state(total_rounds=rt.settings.quipslop_total_rounds)

        active: RoundState | None = None
        if state.active_round_id:
            row = await repo.get_round(state.active_round_id)
            if row is not None and row.generation == state.generation:
                tallies = await repo.sum_tallies(row.id) if row.phase == "voting" else None
                active = to_round_state(row, tallies)

        last_completed: RoundState | None = None
        if state.last_completed_round_id:
            row = await repo.get_round(state.last_completed_round_id)
            if row is not None and row.generation == state.generation:
                last_completed = to_round_state(row)

        viewer_count = await repo.sum_viewer_count()

    return LiveStatePayload(
        data=GameState(
            active=active,
            last_completed=last_completed,
            scores=normalize_scores(state.scores),
            human_scores=normalize_scores(state.human_scores),
            human_vote_totals=normalize_scores(state.human_vote_totals),
            done=state.done,
            is_paused=state.is_paused,
            generation=state.generation,
        ),
        total_rounds=state.total_rounds if state.is_finite else None,
        viewer_count=viewer_count,
    )


class LiveStateBroadcaster:
    """Background task publishing coalesced ``live.state`` snapshots."""

    def __init__(self, rt: Runtime, min_interval: float = BROADCAST_MIN_INTERVAL_SECONDS) -> None:
        self.rt = rt
        self.min_interval = min_interval
        self._task: asyncio.Task[None] | None = None
        self._ready = asyncio.Event()

    def start(self) -> None:
        if self._task is None or self._task.done():
            self._ready.clear()
            self._task = asyncio.create_task(self.run(), name="live-state-broadcaster")

    async def wait_ready(self) -> None:
        """Wait until the broadcaster is subscribed and has sent its first snapshot."""
        await self._ready.wait()

    async def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            await asyncio.gather(self._task, return_exceptions=True)
            self._task = None

    async def publish_now(self) -> LiveStatePayload | None:
        try:
            payload = await build_live_state(self.rt)
        except Exception:
            logger.exception("live_state_build_failed")
            return None
        await self.rt.event_bus.publish(LIVE_STATE, payload.to_wire())
        return payload

    async def run(self) -> None:
        async with self.rt.event_bus.subscribe(STATE_CHANGED, max_size=1000) as sub:
            await self.publish_now()
            self._ready.set()
            last_sent = time.monotonic()
            async for _event in sub:
                wait = self.min_interval - (time.monotonic() - last_sent)
                if wait > 0:
                    await asyncio.sleep(wait)
                sub.drain()
                await self.publish_now()
                last_sent = time.monotonic()
