"""Repository pattern for database access.

Wraps SQLAlchemy async sessions. Engine State is a single row that is only
ever patched; per-round rows are created by the runner and removed by the
generation purge.

``write_if_generation_matches`` is the one consistency primitive: any write
that follows an await point runs through it so a stale writer can never
resurrect a round from a superseded generation.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from typing import TypeVar

from sqlalchemy import delete, func, or_, select, update
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession

from quipslop.db.models import (
    ENGINE_STATE_KEY,
    EngineStateRow,
    IntegrationStatusRow,
    LLMUsageEventRow,
    RoundRow,
    TelegramRoundPollRow,
    ViewerCountShardRow,
    ViewerPresenceRow,
    ViewerVoteRow,
    ViewerVoteTallyRow,
    now_ms,
)
from quipslop.models.catalog import default_scores

T = TypeVar("T")

# Tables holding per-generation rows, in purge order.
GENERATION_TABLES = (
    RoundRow,
    ViewerVoteRow,
    ViewerVoteTallyRow,
    TelegramRoundPollRow,
    LLMUsageEventRow,
)


class Repository:
    """Async repository for all database operations."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    # --- Engine State ---

    async def get_engine_state(self) -> EngineStateRow | None:
        return await self.session.get(
            EngineStateRow, ENGINE_STATE_KEY, populate_existing=True
        )

    async def get_or_create_engine_state(
        self, total_rounds: int | None = None
    ) -> EngineStateRow:
        """Return the singleton state, creating it on first use.

        ``INSERT OR IGNORE`` keeps creation idempotent when two callers race.
        """
        existing = await self.get_engine_state()
        if existing is not None:
            return existing
        scores = default_scores()
        stmt = (
            sqlite_insert(EngineStateRow)
            .values(
                key=ENGINE_STATE_KEY,
                generation=1,
                is_paused=False,
                done=False,
                runs_mode="finite" if total_rounds is not None else "infinite",
                total_rounds=total_rounds,
                next_round_num=1,
                scores=scores,
                human_scores=dict(scores),
                human_vote_totals=dict(scores),
                completed_rounds=0,
                updated_at=now_ms(),
            )
            .on_conflict_do_nothing(index_elements=["key"])
        )
        await self.session.execute(stmt)
        state = await self.get_engine_state()
        if state is None:
            raise RuntimeError("failed to initialize engine state")
        return state

    async def patch_engine_state(self, **values: object) -> bool:
        values.setdefault("updated_at", now_ms())
        result = await self.session.execute(
            update(EngineStateRow).where(EngineStateRow.key == ENGINE_STATE_KEY).values(**values)
        )
        return result.rowcount == 1

    async def claim_generation(self, expected_generation: int) -> bool:
        """Touch Engine State only if it is still on *expected_generation*.

        On SQLite this statement also takes the database write lock, so the
        check stays true for the rest of the transaction.
        """
        result = await self.session.execute(
            update(EngineStateRow)
            .where(
                EngineStateRow.key == ENGINE_STATE_KEY,
                EngineStateRow.generation == expected_generation,
            )
            .values(updated_at=now_ms())
        )
        return result.rowcount == 1

    async def write_if_generation_matches(
        self,
        expected_generation: int,
        mutation: Callable[[Repository], Awaitable[T]],
    ) -> T | None:
        """Run *mutation* only while the generation is still *expected_generation*.

        Returns the mutation's result, or None when the generation moved on
        (compare-and-ignore: the caller drops its work, nothing is raised).
        """
        if not await self.claim_generation(expected_generation):
            return None
        return await mutation(self)

    # --- Runner lease ---

    async def acquire_lease(self, lease_id: str, until_ms: int, at_ms: int) -> bool:
        """Store *lease_id* only if no lease is held or the held one has expired."""
        result = await self.session.execute(
            update(EngineStateRow)
            .where(
                EngineStateRow.key == ENGINE_STATE_KEY,
                or_(
                    EngineStateRow.runner_lease_id.is_(None),
                    EngineStateRow.runner_lease_until.is_(None),
                    EngineStateRow.runner_lease_until <= at_ms,
                ),
            )
            .values(runner_lease_id=lease_id, runner_lease_until=until_ms, updated_at=at_ms)
        )
        return result.rowcount == 1

    async def renew_lease(self, lease_id: str, until_ms: int) -> bool:
        """Extend the lease; False when *lease_id* is no longer the stored one."""
        result = await self.session.execute(
            update(EngineStateRow)
            .where(
                EngineStateRow.key == ENGINE_STATE_KEY,
                EngineStateRow.runner_lease_id == lease_id,
            )
            .values(runner_lease_until=until_ms, updated_at=now_ms())
        )
        return result.rowcount == 1

    async def release_lease(self, lease_id: str) -> bool:
        result = await self.session.execute(
            update(EngineStateRow)
            .where(
                EngineStateRow.key == ENGINE_STATE_KEY,
                EngineStateRow.runner_lease_id == lease_id,
            )
            .values(runner_lease_id=None, runner_lease_until=None, updated_at=now_ms())
        )
        return result.rowcount == 1

    # --- Rounds ---

    async def create_round(
        self,
        generation: int,
        num: int,
        prompter: dict,
        contestants: list[dict],
        created_at_ms: int,
    ) -> RoundRow:
        row = RoundRow(
            generation=generation,
            num=num,
            phase="prompting",
            prompter=prompter,
            prompt_task={"model": prompter, "started_at": created_at_ms},
            contestants=contestants,
            answer_tasks=[{"model": c, "started_at": 0} for c in contestants],
            votes=[],
            created_at_ms=created_at_ms,
            updated_at=created_at_ms,
        )
        self.session.add(row)
        await self.session.flush()
        return row

    async def get_round(self, round_id: str) -> RoundRow | None:
        return await self.session.get(RoundRow, round_id, populate_existing=True)

    async def update_round(self, round_id: str, **values: object) -> bool:
        values.setdefault("updated_at", now_ms())
        result = await self.session.execute(
            update(RoundRow).where(RoundRow.id == round_id).values(**values)
        )
        return result.rowcount == 1

    async def get_rounds_for_generation(self, generation: int) -> list[RoundRow]:
        stmt = select(RoundRow).where(RoundRow.generation == generation).order_by(RoundRow.num)
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def get_completed_rounds(
        self, generation: int, offset: int = 0, limit: int = 20
    ) -> list[RoundRow]:
        """Finished rounds of a generation, most recent first."""
        stmt = (
            select(RoundRow)
            .where(RoundRow.generation == generation, RoundRow.phase == "done")
            .order_by(RoundRow.completed_at_ms.desc(), RoundRow.num.desc())
            .offset(offset)
            .limit(limit)
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def count_completed_rounds(self, generation: int) -> int:
        result = await self.session.execute(
            select(func.count(RoundRow.id)).where(
                RoundRow.generation == generation, RoundRow.phase == "done"
            )
        )
        return result.scalar_one()

    # --- Viewer votes & tallies ---

    async def get_viewer_vote(self, round_id: str, viewer_id: str) -> ViewerVoteRow | None:
        stmt = select(ViewerVoteRow).where(
            ViewerVoteRow.round_id == round_id, ViewerVoteRow.viewer_id == viewer_id
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def add_viewer_vote(
        self, generation: int, round_id: str, viewer_id: str, side: str, shard: int
    ) -> ViewerVoteRow:
        row = ViewerVoteRow(
            generation=generation, round_id=round_id, viewer_id=viewer_id, side=side, shard=shard
        )
        self.session.add(row)
        await self.session.flush()
        return row

    async def get_tally(self, round_id: str, side: str, shard: int) -> ViewerVoteTallyRow | None:
        stmt = select(ViewerVoteTallyRow).where(
            ViewerVoteTallyRow.round_id == round_id,
            ViewerVoteTallyRow.side == side,
            ViewerVoteTallyRow.shard == shard,
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def adjust_tally(
        self, generation: int, round_id: str, side: str, shard: int, delta: int
    ) -> None:
        """Add *delta* to one (round, side, shard) counter, clamped at zero.

        A single upsert, so concurrent writers on different shards never
        touch the same row and writers on the same shard never lose updates.
        """
        if delta == 0:
            return
        stmt = sqlite_insert(ViewerVoteTallyRow).values(
            generation=generation,
            round_id=round_id,
            side=side,
            shard=shard,
            count=max(0, delta),
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["round_id", "side", "shard"],
            set_={
                "count": func.max(0, ViewerVoteTallyRow.count + delta),
                "updated_at": now_ms(),
            },
        )
        await self.session.execute(stmt)

    async def sum_tallies(self, round_id: str) -> dict[str, int]:
        """Sum every shard of a round's tallies, per side."""
        stmt = (
            select(ViewerVoteTallyRow.side, func.sum(ViewerVoteTallyRow.count))
            .where(ViewerVoteTallyRow.round_id == round_id)
            .group_by(ViewerVoteTallyRow.side)
        )
        result = await self.session.execute(stmt)
        totals = {"A": 0, "B": 0}
        for side, total in result.all():
            totals[side] = int(total or 0)
        return totals

    # --- Viewer presence ---

    async def get_presence(self, viewer_id: str) -> ViewerPresenceRow | None:
        return await self.session.get(ViewerPresenceRow, viewer_id, populate_existing=True)

    async def upsert_presence(
        self, viewer_id: str, page: str, expires_at_ms: int, seen_at_ms: int, count_shard: int
    ) -> bool:
        """Record a heartbeat. Returns True when the viewer was not present before."""
        inserted = await self.session.execute(
            sqlite_insert(ViewerPresenceRow)
            .values(
                viewer_id=viewer_id,
                page=page,
                expires_at_ms=expires_at_ms,
                last_seen_at_ms=seen_at_ms,
                count_shard=count_shard,
            )
            .on_conflict_do_nothing(index_elements=["viewer_id"])
        )
        if inserted.rowcount == 1:
            return True
        await self.session.execute(
            update(ViewerPresenceRow)
            .where(ViewerPresenceRow.viewer_id == viewer_id)
            .values(page=page, expires_at_ms=expires_at_ms, last_seen_at_ms=seen_at_ms)
        )
        return False

    async def delete_presence_if_expired(self, viewer_id: str, at_ms: int) -> bool:
        result = await self.session.execute(
            delete(ViewerPresenceRow).where(
                ViewerPresenceRow.viewer_id == viewer_id,
                ViewerPresenceRow.expires_at_ms <= at_ms,
            )
        )
        return result.rowcount == 1

    async def get_expired_presence(self, at_ms: int, limit: int) -> list[ViewerPresenceRow]:
        stmt = (
            select(ViewerPresenceRow)
            .where(ViewerPresenceRow.expires_at_ms <= at_ms)
            .order_by(ViewerPresenceRow.expires_at_ms)
            .limit(limit)
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def adjust_viewer_count_shard(self, shard: int, delta: int) -> None:
        """Add *delta* to a live-count shard, never dropping below zero."""
        if delta == 0:
            return
        stmt = sqlite_insert(ViewerCountShardRow).values(shard=shard, count=max(0, delta))
        stmt = stmt.on_conflict_do_update(
            index_elements=["shard"],
            set_={
                "count": func.max(0, ViewerCountShardRow.count + delta),
                "updated_at": now_ms(),
            },
        )
        await self.session.execute(stmt)

    async def sum_viewer_count(self) -> int:
        result = await self.session.execute(select(func.sum(ViewerCountShardRow.count)))
        return int(result.scalar() or 0)

    async def clear_viewer_presence(self) -> None:
        await self.session.execute(delete(ViewerPresenceRow))
        await self.session.execute(
            update(ViewerCountShardRow).values(count=0, updated_at=now_ms())
        )

    # --- Telegram polls ---

    async def get_poll_by_round(self, round_id: str) -> TelegramRoundPollRow | None:
        stmt = select(TelegramRoundPollRow).where(TelegramRoundPollRow.round_id == round_id)
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_poll_by_poll_id(self, poll_id: str) -> TelegramRoundPollRow | None:
        stmt = select(TelegramRoundPollRow).where(TelegramRoundPollRow.poll_id == poll_id)
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_polls_for_generation(self, generation: int) -> list[TelegramRoundPollRow]:
        stmt = select(TelegramRoundPollRow).where(TelegramRoundPollRow.generation == generation)
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def add_poll(
        self, generation: int, round_id: str, poll_id: str, chat_id: str, message_id: int
    ) -> TelegramRoundPollRow:
        row = TelegramRoundPollRow(
            generation=generation,
            round_id=round_id,
            poll_id=poll_id,
            chat_id=chat_id,
            message_id=message_id,
        )
        self.session.add(row)
        await self.session.flush()
        return row

    # --- Integration status ---

    async def get_integration_status(self, key: str) -> IntegrationStatusRow | None:
        return await self.session.get(IntegrationStatusRow, key, populate_existing=True)

    async def get_or_create_integration_status(self, key: str) -> IntegrationStatusRow:
        row = await self.get_integration_status(key)
        if row is None:
            row = IntegrationStatusRow(key=key)
            self.session.add(row)
            await self.session.flush()
        return row

    # --- Usage log ---

    async def record_usage(self, **values: object) -> LLMUsageEventRow:
        row = LLMUsageEventRow(**values)
        self.session.add(row)
        await self.session.flush()
        return row

    async def get_usage_for_round(self, round_id: str) -> list[LLMUsageEventRow]:
        stmt = (
            select(LLMUsageEventRow)
            .where(LLMUsageEventRow.round_id == round_id)
            .order_by(LLMUsageEventRow.created_at)
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    # --- Purge ---

    async def delete_superseded_batch(
        self, table: type, current_generation: int, limit: int
    ) -> int:
        """Delete up to *limit* rows of *table* older than *current_generation*.

        Returns the number deleted; fewer than *limit* means the table is clean.
        """
        ids_stmt = (
            select(table.id).where(table.generation < current_generation).limit(limit)
        )
        ids = list((await self.session.execute(ids_stmt)).scalars().all())
        if not ids:
            return 0
        await self.session.execute(delete(table).where(table.id.in_(ids)))
        return len(ids)

    async def count_generation_rows(self, table: type, generation: int) -> int:
        result = await self.session.execute(
            select(func.count(table.id)).where(table.generation == generation)
        )
        return result.scalar_one()
