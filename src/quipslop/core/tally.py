"""Viewer vote tally store.

Human votes land in ``viewer_vote_tallies`` rows keyed by (round, side,
shard). The shard is a deterministic hash of a stable source id, so
concurrent voters spread over 64 counters instead of contending on one,
and a re-delivered external total maps to the same counter.

Two write paths:
- ``cast_viewer_vote``: a direct viewer. At most one counted vote per
  (round, viewer); voting again for the other side moves the vote.
- ``sync_poll_counts``: an external poll reporting absolute totals. The
  store diffs against the last seen totals and applies only the delta.
"""

from __future__ import annotations

import logging

from sqlalchemy.ext.asyncio import AsyncEngine

from quipslop.config import VIEWER_SHARD_COUNT
from quipslop.db.engine import get_session
from quipslop.db.models import now_ms
from quipslop.db.repository import Repository

logger = logging.getLogger(__name__)

SIDES = ("A", "B")


class VoteRejectedError(Exception):
    """A viewer vote that cannot be counted. The message is shown to the viewer."""


def hash_to_shard(value: str, shards: int = VIEWER_SHARD_COUNT) -> int:
    """31-multiplier string hash over UTF-16 code units, wrapped to int32."""
    data = value.encode("utf-16-le")
    h = 0
    for i in range(0, len(data), 2):
        unit = data[i] | (data[i + 1] << 8)
        h = (h * 31 + unit) & 0xFFFFFFFF
    if h >= 0x80000000:
        h -= 0x100000000
    return abs(h) % shards


def poll_shard(poll_id: str) -> int:
    return hash_to_shard(f"telegram:poll:{poll_id}")


async def cast_viewer_vote(
    engine: AsyncEngine,
    round_id: str,
    viewer_id: str,
    side: str,
    at_ms: int | None = None,
) -> str:
    """Count *viewer_id*'s vote for *side* in the active round.

    Returns "counted" for a first vote, "switched" when the viewer changed
    sides, "unchanged" for a repeat. Raises VoteRejectedError when the
    round is unknown, not accepting votes, or from a superseded generation.
    """
    if side not in SIDES:
        raise VoteRejectedError("Side must be A or B")
    viewer_id = viewer_id.strip()
    if not viewer_id:
        raise VoteRejectedError("Missing viewer id")
    at = now_ms() if at_ms is None else at_ms

    async with get_session(engine) as session:
        repo = Repository(session)
        state = await repo.get_engine_state()
        if state is None:
            raise VoteRejectedError("Round not found")

        async def _apply(r: Repository) -> str:
            rnd = await r.get_round(round_id)
            if rnd is None or rnd.generation != state.generation:
                raise VoteRejectedError("Round not found")
            if rnd.phase != "voting":
                raise VoteRejectedError("Voting is closed for this round")
            if rnd.viewer_voting_ends_at is not None and at >= rnd.viewer_voting_ends_at:
                raise VoteRejectedError("Voting window has ended")

            shard = hash_to_shard(viewer_id)
            existing = await r.get_viewer_vote(round_id, viewer_id)
            if existing is None:
                await r.add_viewer_vote(rnd.generation, round_id, viewer_id, side, shard)
                await r.adjust_tally(rnd.generation, round_id, side, shard, 1)
                return "counted"
            if existing.side == side:
                return "unchanged"
            await r.adjust_tally(rnd.generation, round_id, existing.side, existing.shard, -1)
            await r.adjust_tally(rnd.generation, round_id, side, shard, 1)
            existing.side = side
            existing.shard = shard
            existing.updated_at = at
            await r.session.flush()
            return "switched"

        outcome = await repo.write_if_generation_matches(state.generation, _apply)

    if outcome is None:
        raise VoteRejectedError("Round is no longer current")
    logger.debug("viewer_vote round=%s side=%s outcome=%s", round_id, side, outcome)
    return outcome


async def sync_poll_counts(engine: AsyncEngine, poll_id: str, votes_a: int, votes_b: int) -> bool:
    """Bring a mirrored poll's tallies up to its latest absolute totals.

    Replaying the same totals applies a zero delta. Negative inputs count
    as zero. Returns False for an unknown poll or a superseded generation.
    """
    next_a = max(0, int(votes_a))
    next_b = max(0, int(votes_b))
    async with get_session(engine) as session:
        repo = Repository(session)
        poll = await repo.get_poll_by_poll_id(poll_id)
        if poll is None:
            return False
        generation = poll.generation

        async def _apply(r: Repository) -> bool:
            await r.session.refresh(poll)
            shard = poll_shard(poll.poll_id)
            await r.adjust_tally(generation, poll.round_id, "A", shard, next_a - poll.votes_a)
            await r.adjust_tally(generation, poll.round_id, "B", shard, next_b - poll.votes_b)
            poll.votes_a = next_a
            poll.votes_b = next_b
            poll.updated_at = now_ms()
            await r.session.flush()
            return True

        applied = await repo.write_if_generation_matches(generation, _apply)
    return bool(applied)


async def read_round_tallies(engine: AsyncEngine, round_id: str) -> dict[str, int]:
    """Human votes for a round, summed over every shard."""
    async with get_session(engine) as session:
        return await Repository(session).sum_tallies(round_id)
