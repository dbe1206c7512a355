"""Admin operations: start, pause, resume, reset, export, status, timing.

Pause and resume flip flags on Engine State; the runner observes them at
its next iteration. Reset moves the game to a new generation at once (the
live read path sees an empty game immediately) and purges the old
generation's rows in the background, one bounded batch at a time.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import UTC, datetime

from quipslop.core import round_store
from quipslop.core.round_runner import RoundRunner
from quipslop.core.runtime import Runtime
from quipslop.db.engine import get_session
from quipslop.db.models import TELEGRAM_STATUS_KEY, EngineStateRow
from quipslop.db.repository import GENERATION_TABLES, Repository
from quipslop.models.catalog import MIN_ACTIVE_MODELS, active_roster, default_scores
from quipslop.models.round import AdminSnapshot, RoundTiming, TelegramStatus

logger = logging.getLogger(__name__)

RESET_CONFIRMATION = "RESET"


class AdminError(ValueError):
    """A rejected admin request. The message is returned to the caller."""


async def load_state(rt: Runtime) -> EngineStateRow:
    async with get_session(rt.engine) as session:
        return await Repository(session).get_or_create_engine_state(
            total_rounds=rt.settings.quipslop_total_rounds
        )


async def ensure_started(rt: Runtime, runner: RoundRunner) -> bool:
    """Start a runner unless a valid lease exists or the game is done.

    Creates Engine State on first use. Called at startup and on every
    scheduler tick, which is how a crashed runner's lease gets reclaimed.
    Returns True when this call started a runner.
    """
    state = await load_state(rt)
    if state.done or state.lease_valid():
        return False
    lease_id = await rt.leases.acquire()
    if lease_id is None:
        return False
    runner.start(lease_id)
    return True


async def pause(rt: Runtime) -> None:
    await load_state(rt)
    async with get_session(rt.engine) as session:
        await Repository(session).patch_engine_state(is_paused=True)
    logger.info("admin_pause")
    await rt.state_changed("paused")


async def resume(rt: Runtime, runner: RoundRunner) -> bool:
    """Clear pause and done; mint a lease and start a runner if none is valid.

    Concurrent calls start at most one runner: lease acquisition is a
    conditional update only one caller can win. Returns True if this call
    started the runner.
    """
    await load_state(rt)
    async with get_session(rt.engine) as session:
        await Repository(session).patch_engine_state(is_paused=False, done=False)
    logger.info("admin_resume")
    await rt.state_changed("resumed")
    lease_id = await rt.leases.acquire()
    if lease_id is None:
        return False
    runner.start(lease_id)
    return True


async def reset(rt: Runtime, confirm: str) -> int:
    """Start a new generation, paused, with zeroed scores. Returns the new generation.

    The lease is cleared so the current runner stops at its next check.
    Old rows are purged in the background.
    """
    if confirm != RESET_CONFIRMATION:
        raise AdminError(f'Reset confirmation must be "{RESET_CONFIRMATION}"')

    await load_state(rt)
    async with get_session(rt.engine) as session:
        repo = Repository(session)
        scores = default_scores()
        # Incremented in SQL: concurrent resets each move the generation.
        await repo.patch_engine_state(
            generation=EngineStateRow.generation + 1,
            is_paused=True,
            done=False,
            next_round_num=1,
            active_round_id=None,
            last_completed_round_id=None,
            completed_rounds=0,
            scores=scores,
            human_scores=dict(scores),
            human_vote_totals=dict(scores),
            runner_lease_id=None,
            runner_lease_until=None,
        )
        await repo.clear_viewer_presence()
        state = await repo.get_engine_state()
        if state is None:
            raise RuntimeError("Engine state missing after reset")
        new_generation = state.generation

    old_generation = new_generation - 1
    logger.info("admin_reset old_generation=%d generation=%d", old_generation, new_generation)
    rt.windows.notify_all()
    rt.spawn(purge_superseded(rt, new_generation), name=f"purge-before-generation-{new_generation}")
    await rt.state_changed("reset", generation=new_generation)
    return new_generation


async def purge_superseded(rt: Runtime, current_generation: int | None = None) -> int:
    """Delete every row older than the current generation, table by table, in bounded batches.

    Runs after each reset and again at startup, so a purge cut short by a
    restart is finished by the next process.
    """
    if current_generation is None:
        current_generation = (await load_state(rt)).generation
    batch = rt.settings.purge_batch_size
    total = 0
    for table in GENERATION_TABLES:
        while True:
            async with get_session(rt.engine) as session:
                deleted = await Repository(session).delete_superseded_batch(
                    table, current_generation, batch
                )
            total += deleted
            if deleted < batch:
                break
            # Let the runner and web requests at the database between batches.
            await asyncio.sleep(0)
    if total:
        logger.info("purge_complete before_generation=%d rows=%d", current_generation, total)
    return total


async def update_timing(rt: Runtime, **values: float | None) -> RoundTiming:
    """Override round pacing at runtime. Values are clamped to 1..3600 seconds."""
    unknown = set(values) - set(round_store.TIMING_FIELDS)
    if unknown:
        raise AdminError(f"Unknown timing fields: {', '.join(sorted(unknown))}")
    state = await load_state(rt)
    overrides = dict(state.timing or {})
    for name, value in values.items():
        if value is not None:
            overrides[name] = round_store.clamp_timing(value)
    async with get_session(rt.engine) as session:
        await Repository(session).patch_engine_state(timing=overrides)
    timing = round_store.effective_timing(rt.settings, overrides)
    logger.info("admin_timing %s", timing.model_dump())
    await rt.state_changed("timing_updated")
    return timing


def mask_token(token: str) -> str | None:
    if not token:
        return None
    if len(token) <= 8:
        return f"{token[:1]}***{token[-1:]}"
    return f"{token[:4]}...{token[-4:]}"


async def telegram_status(rt: Runtime) -> TelegramStatus:
    settings = rt.settings
    async with get_session(rt.engine) as session:
        status = await Repository(session).get_integration_status(TELEGRAM_STATUS_KEY)
    token = settings.telegram_bot_token.strip()
    return TelegramStatus(
        enabled=settings.telegram_enabled,
        channel_id=settings.telegram_channel_id.strip(),
        has_bot_token=bool(token),
        token_preview=mask_token(token),
        last_polled_at=status.last_polled_at_ms if status else None,
        last_error=(status.last_error or None) if status else None,
    )


async def snapshot(rt: Runtime) -> AdminSnapshot:
    state = await load_state(rt)
    async with get_session(rt.engine) as session:
        repo = Repository(session)
        persisted = len(await repo.get_rounds_for_generation(state.generation))
        viewers = await repo.sum_viewer_count()
    active_count = len(active_roster(rt.settings.enabled_model_ids))
    can_run = active_count >= MIN_ACTIVE_MODELS
    return AdminSnapshot(
        is_paused=state.is_paused,
        is_running_round=state.active_round_id is not None,
        done=state.done,
        generation=state.generation,
        completed_in_memory=state.completed_rounds,
        persisted_rounds=persisted,
        viewer_count=viewers,
        active_model_count=active_count,
        can_run_rounds=can_run,
        run_blocked_reason=None if can_run else "insufficient_active_models",
        lease_active=state.lease_valid(),
        telegram=await telegram_status(rt),
    )


def engine_state_record(state: EngineStateRow) -> dict:
    return {
        "generation": state.generation,
        "isPaused": state.is_paused,
        "done": state.done,
        "runsMode": state.runs_mode,
        "totalRounds": state.total_rounds,
        "nextRoundNum": state.next_round_num,
        "activeRoundId": state.active_round_id,
        "lastCompletedRoundId": state.last_completed_round_id,
        "scores": state.scores,
        "humanScores": state.human_scores,
        "humanVoteTotals": state.human_vote_totals,
        "completedRounds": state.completed_rounds,
        "timing": state.timing,
        "updatedAt": state.updated_at,
    }


async def export_data(rt: Runtime) -> dict:
    """Everything needed to archive the current generation."""
    state = await load_state(rt)
    async with get_session(rt.engine) as session:
        repo = Repository(session)
        rounds = await repo.get_rounds_for_generation(state.generation)
        polls = await repo.get_polls_for_generation(state.generation)
    return {
        "exportedAt": datetime.now(UTC).isoformat(),
        "state": engine_state_record(state),
        "models": [m.model_dump() for m in active_roster(rt.settings.enabled_model_ids)],
        "telegramRoundPolls": [
            {
                "roundId": p.round_id,
                "pollId": p.poll_id,
                "chatId": p.chat_id,
                "messageId": p.message_id,
                "votesA": p.votes_a,
                "votesB": p.votes_b,
                "status": p.status,
                "lastError": p.last_error,
            }
            for p in polls
        ],
        "rounds": [round_store.to_round_state(r).to_wire() for r in rounds],
    }
