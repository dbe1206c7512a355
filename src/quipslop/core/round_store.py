"""Guarded round transitions.

Every function here is one persistence step of the round lifecycle. Each
runs inside ``write_if_generation_matches`` pinned to the generation the
runner captured when it started the round, and re-reads the round inside
that transaction before patching it. A reset between the runner's await
and the write turns the step into a no-op (False / None), never an error.

Phases only move forward: prompting -> answering -> voting -> done, or
prompting -> done when the prompt fails.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable, Sequence
from typing import TypeVar

from sqlalchemy.ext.asyncio import AsyncEngine

from quipslop.config import Settings
from quipslop.db.engine import get_session
from quipslop.db.models import EngineStateRow, RoundRow, now_ms
from quipslop.db.repository import Repository
from quipslop.models.catalog import Model, normalize_scores
from quipslop.models.round import NO_ANSWER, RoundState, RoundTiming, TaskInfo, VoteInfo

logger = logging.getLogger(__name__)

T = TypeVar("T")

TIMING_MIN_SECONDS = 1.0
TIMING_MAX_SECONDS = 3600.0
TIMING_FIELDS = (
    "viewer_vote_window_active_seconds",
    "viewer_vote_window_idle_seconds",
    "post_round_delay_seconds",
)


def clamp_timing(value: float) -> float:
    return min(TIMING_MAX_SECONDS, max(TIMING_MIN_SECONDS, float(value)))


def effective_timing(settings: Settings, overrides: dict | None = None) -> RoundTiming:
    """Configured round pacing with admin overrides from Engine State applied."""
    values = {name: float(getattr(settings, name)) for name in TIMING_FIELDS}
    for name, value in (overrides or {}).items():
        if name in values and value is not None:
            values[name] = clamp_timing(value)
    return RoundTiming(**values)


def model_record(model: Model) -> dict:
    return model.model_dump()


def to_round_state(row: RoundRow, tallies: dict[str, int] | None = None) -> RoundState:
    """Client view of a round row. *tallies* overrides the stored viewer votes."""
    viewer_a = row.viewer_votes_a
    viewer_b = row.viewer_votes_b
    if tallies is not None:
        viewer_a, viewer_b = tallies.get("A", 0), tallies.get("B", 0)
    return RoundState(
        id=row.id,
        generation=row.generation,
        num=row.num,
        phase=row.phase,
        prompter=Model(**row.prompter),
        prompt_task=TaskInfo(**row.prompt_task),
        prompt=row.prompt,
        contestants=[Model(**c) for c in row.contestants],
        answer_tasks=[TaskInfo(**t) for t in row.answer_tasks],
        votes=[VoteInfo(**v) for v in row.votes or []],
        score_a=row.score_a,
        score_b=row.score_b,
        viewer_votes_a=viewer_a,
        viewer_votes_b=viewer_b,
        viewer_voting_ends_at=row.viewer_voting_ends_at,
        created_at=row.created_at_ms,
        completed_at=row.completed_at_ms,
    )


async def _guarded(
    engine: AsyncEngine,
    generation: int,
    mutation: Callable[[Repository], Awaitable[T]],
) -> T | None:
    async with get_session(engine) as session:
        return await Repository(session).write_if_generation_matches(generation, mutation)


async def _current_round(
    repo: Repository, round_id: str, generation: int, phase: str | None = None
) -> RoundRow | None:
    rnd = await repo.get_round(round_id)
    if rnd is None or rnd.generation != generation:
        return None
    if phase is not None and rnd.phase != phase:
        return None
    return rnd


def _finish_bookkeeping(state: EngineStateRow, round_id: str) -> dict:
    """Engine State patch shared by every way a round can end."""
    completed = state.completed_rounds + 1
    done = state.is_finite and completed >= (state.total_rounds or 0)
    return {
        "active_round_id": None,
        "last_completed_round_id": round_id,
        "completed_rounds": completed,
        "next_round_num": state.next_round_num + 1,
        "done": done,
    }


async def start_round(
    engine: AsyncEngine,
    generation: int,
    prompter: Model,
    contestants: Sequence[Model],
) -> RoundRow | None:
    """Create the next round and make it active.

    Compare-and-swap: fails (None) if the generation moved, a round is
    already active, or the game is done.
    """

    async def _create(repo: Repository) -> RoundRow | None:
        state = await repo.get_engine_state()
        if state is None or state.active_round_id or state.done:
            return None
        rnd = await repo.create_round(
            generation=generation,
            num=state.next_round_num,
            prompter=model_record(prompter),
            contestants=[model_record(c) for c in contestants],
            created_at_ms=now_ms(),
        )
        await repo.patch_engine_state(active_round_id=rnd.id)
        return rnd

    rnd = await _guarded(engine, generation, _create)
    if rnd is not None:
        logger.info("round_created round=%s num=%d generation=%d", rnd.id, rnd.num, generation)
    return rnd


async def set_prompt_result(engine: AsyncEngine, generation: int, round_id: str, prompt: str) -> bool:
    async def _apply(repo: Repository) -> bool:
        rnd = await _current_round(repo, round_id, generation, "prompting")
        if rnd is None:
            return False
        task = {**rnd.prompt_task, "finished_at": now_ms(), "result": prompt, "error": None}
        return await repo.update_round(round_id, prompt=prompt, prompt_task=task)

    return bool(await _guarded(engine, generation, _apply))


async def set_prompt_error(engine: AsyncEngine, generation: int, round_id: str, error: str) -> bool:
    """End the round early: no prompt means nothing to answer."""

    async def _apply(repo: Repository) -> bool:
        rnd = await _current_round(repo, round_id, generation, "prompting")
        state = await repo.get_engine_state()
        if rnd is None or state is None:
            return False
        at = now_ms()
        task = {**rnd.prompt_task, "finished_at": at, "error": error}
        await repo.update_round(round_id, phase="done", prompt_task=task, completed_at_ms=at)
        await repo.patch_engine_state(**_finish_bookkeeping(state, round_id))
        return True

    ok = bool(await _guarded(engine, generation, _apply))
    if ok:
        logger.warning("round_prompt_failed round=%s error=%s", round_id, error)
    return ok


async def start_answering(engine: AsyncEngine, generation: int, round_id: str) -> bool:
    async def _apply(repo: Repository) -> bool:
        rnd = await _current_round(repo, round_id, generation, "prompting")
        if rnd is None or rnd.prompt is None:
            return False
        at = now_ms()
        tasks = [{**t, "started_at": at} for t in rnd.answer_tasks]
        return await repo.update_round(round_id, phase="answering", answer_tasks=tasks)

    return bool(await _guarded(engine, generation, _apply))


async def set_answer_result(
    engine: AsyncEngine,
    generation: int,
    round_id: str,
    index: int,
    result: str | None = None,
    error: str | None = None,
) -> bool:
    """Finish one answer task. A missing result becomes the no-answer sentinel."""

    async def _apply(repo: Repository) -> bool:
        rnd = await _current_round(repo, round_id, generation, "answering")
        if rnd is None or index not in (0, 1):
            return False
        tasks = list(rnd.answer_tasks)
        task = tasks[index]
        tasks[index] = {
            **task,
            "finished_at": now_ms(),
            "result": result if result is not None else (task.get("result") or NO_ANSWER),
            "error": error,
        }
        return await repo.update_round(round_id, answer_tasks=tasks)

    return bool(await _guarded(engine, generation, _apply))


async def start_voting(
    engine: AsyncEngine,
    generation: int,
    round_id: str,
    voters: Sequence[Model],
    timing: RoundTiming,
) -> int | None:
    """Open model and viewer voting. Returns the viewer window deadline (ms).

    The window is the short "active" one when anyone is watching, the long
    "idle" one otherwise.
    """

    async def _apply(repo: Repository) -> int | None:
        rnd = await _current_round(repo, round_id, generation, "answering")
        if rnd is None:
            return None
        at = now_ms()
        viewers = await repo.sum_viewer_count()
        window = (
            timing.viewer_vote_window_active_seconds
            if viewers > 0
            else timing.viewer_vote_window_idle_seconds
        )
        ends_at = at + int(window * 1000)
        votes = [{"voter": model_record(v), "started_at": at} for v in voters]
        await repo.update_round(
            round_id,
            phase="voting",
            votes=votes,
            voting_started_at_ms=at,
            viewer_voting_ends_at=ends_at,
        )
        return ends_at

    ends_at = await _guarded(engine, generation, _apply)
    if ends_at is not None:
        logger.info("round_voting round=%s voters=%d ends_at=%d", round_id, len(voters), ends_at)
    return ends_at


async def set_model_vote(
    engine: AsyncEngine,
    generation: int,
    round_id: str,
    index: int,
    side: str | None = None,
    error: bool | None = None,
) -> bool:
    async def _apply(repo: Repository) -> bool:
        rnd = await _current_round(repo, round_id, generation, "voting")
        if rnd is None or not 0 <= index < len(rnd.votes):
            return False
        votes = list(rnd.votes)
        votes[index] = {**votes[index], "finished_at": now_ms(), "voted_for_side": side, "error": error}
        return await repo.update_round(round_id, votes=votes)

    return bool(await _guarded(engine, generation, _apply))


async def abandon_round(engine: AsyncEngine, generation: int, round_id: str, reason: str) -> bool:
    """Close a round whose runner died mid-flight, without scoring it.

    Unfinished tasks and votes are marked as errors so the round renders
    like any other failed work.
    """

    async def _apply(repo: Repository) -> bool:
        rnd = await _current_round(repo, round_id, generation)
        state = await repo.get_engine_state()
        if rnd is None or state is None or rnd.phase == "done":
            return False
        at = now_ms()
        prompt_task = dict(rnd.prompt_task)
        if prompt_task.get("finished_at") is None:
            prompt_task.update(finished_at=at, error=reason)
        answer_tasks = [
            t if t.get("finished_at") is not None or not t.get("started_at")
            else {**t, "finished_at": at, "result": NO_ANSWER, "error": reason}
            for t in rnd.answer_tasks
        ]
        votes = [
            v if v.get("finished_at") is not None else {**v, "finished_at": at, "error": True}
            for v in rnd.votes or []
        ]
        await repo.update_round(
            round_id,
            phase="done",
            prompt_task=prompt_task,
            answer_tasks=answer_tasks,
            votes=votes,
            completed_at_ms=at,
        )
        await repo.patch_engine_state(**_finish_bookkeeping(state, round_id))
        return True

    ok = bool(await _guarded(engine, generation, _apply))
    if ok:
        logger.warning("round_abandoned round=%s reason=%s", round_id, reason)
    return ok


async def shorten_voting_window(engine: AsyncEngine, active_seconds: float) -> str | None:
    """Pull the active round's deadline in to the active window once viewers appear.

    The new deadline is the voting start plus the active window, so a
    viewer arriving late may close the window at once. Only ever moves the
    deadline earlier. Returns the round id when it did.
    """
    active_ms = int(active_seconds * 1000)
    async with get_session(engine) as session:
        state = await Repository(session).get_engine_state()
    if state is None or not state.active_round_id:
        return None
    generation = state.generation
    round_id = state.active_round_id

    async def _apply(repo: Repository) -> str | None:
        rnd = await _current_round(repo, round_id, generation, "voting")
        if rnd is None or rnd.viewer_voting_ends_at is None:
            return None
        started_at = rnd.voting_started_at_ms
        if started_at is None:
            started_at = min((v["started_at"] for v in rnd.votes or []), default=now_ms())
        deadline = started_at + active_ms
        if deadline >= rnd.viewer_voting_ends_at:
            return None
        if await repo.sum_viewer_count() <= 0:
            return None
        await repo.update_round(round_id, viewer_voting_ends_at=deadline)
        return round_id

    shortened = await _guarded(engine, generation, _apply)
    if shortened:
        logger.info("voting_window_shortened round=%s", round_id)
    return shortened


async def finalize_round(engine: AsyncEngine, generation: int, round_id: str) -> bool:
    """Score the round and fold it into the running totals.

    The model-vote winner gets one point, the viewer-vote winner one human
    point; ties award nothing. Viewer votes always add to the contestants'
    human vote totals.
    """

    async def _apply(repo: Repository) -> bool:
        rnd = await _current_round(repo, round_id, generation, "voting")
        state = await repo.get_engine_state()
        if rnd is None or state is None:
            return False

        votes_a = sum(1 for v in rnd.votes if v.get("voted_for_side") == "A")
        votes_b = sum(1 for v in rnd.votes if v.get("voted_for_side") == "B")
        tallies = await repo.sum_tallies(round_id)
        viewer_a, viewer_b = tallies["A"], tallies["B"]

        scores = normalize_scores(state.scores)
        human_scores = normalize_scores(state.human_scores)
        human_totals = normalize_scores(state.human_vote_totals)
        cont_a, cont_b = rnd.contestants[0]["name"], rnd.contestants[1]["name"]
        if votes_a > votes_b:
            scores[cont_a] += 1
        elif votes_b > votes_a:
            scores[cont_b] += 1
        human_totals[cont_a] += viewer_a
        human_totals[cont_b] += viewer_b
        if viewer_a > viewer_b:
            human_scores[cont_a] += 1
        elif viewer_b > viewer_a:
            human_scores[cont_b] += 1

        await repo.update_round(
            round_id,
            phase="done",
            score_a=votes_a * 100,
            score_b=votes_b * 100,
            viewer_votes_a=viewer_a,
            viewer_votes_b=viewer_b,
            completed_at_ms=now_ms(),
        )
        await repo.patch_engine_state(
            scores=scores,
            human_scores=human_scores,
            human_vote_totals=human_totals,
            **_finish_bookkeeping(state, round_id),
        )
        return True

    ok = bool(await _guarded(engine, generation, _apply))
    if ok:
        logger.info("round_finalized round=%s generation=%d", round_id, generation)
    return ok
