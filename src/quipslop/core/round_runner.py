"""Round runner: drives rounds from creation to finalization, one after another.

The runner is one long-lived asyncio task per lease (``supervise``). Each
loop pass is one ``run_iteration``: validate and renew the lease, honor
pause and done, pick the models, then play a whole round. The iteration
returns an ``Outcome`` telling the supervisor whether to go straight on,
wait, or stop. Exceptions never escape an iteration: the supervisor logs
them and carries on.

Every write is pinned to the generation captured at the start of the
iteration, and the lease is re-checked after every model call. A runner
that loses either simply stops writing; its round is left for the purge
(after a reset) or closed by the next lease holder.
"""

from __future__ import annotations

import asyncio
import enum
import logging
import random
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass

from sqlalchemy.exc import SQLAlchemyError

from quipslop.ai.contestant import generate_answer, generate_prompt, generate_vote
from quipslop.ai.provider import ProviderError
from quipslop.ai.usage import UsageContext
from quipslop.core import round_store
from quipslop.core.event_bus import ROUND_COMPLETED, VOTING_STARTED
from quipslop.core.runtime import Runtime
from quipslop.models.catalog import MIN_ACTIVE_MODELS, Model, active_roster
from quipslop.models.round import NO_ANSWER, RoundTiming

logger = logging.getLogger(__name__)

PROMPT_FAILED_ERROR = "Failed after 3 attempts"
ANSWER_FAILED_ERROR = "Failed to answer"
ABANDONED_ERROR = "Abandoned by a previous runner"


class Outcome(enum.Enum):
    STOP = "stop"  # lease lost, generation moved, or game done
    PAUSED = "paused"  # poll again after paused_poll_seconds
    RETRY = "retry"  # lost a race; back off briefly
    NEXT = "next"  # start the next round now


@dataclass(frozen=True)
class RoundPicks:
    prompter: Model
    contestants: tuple[Model, Model]
    voters: list[Model]


def pick_models(roster: Sequence[Model], rng: random.Random) -> RoundPicks:
    """Shuffle the roster: first writes the prompt, next two answer, the rest vote.

    The prompter votes too, so every model except the contestants judges.
    """
    if len(roster) < MIN_ACTIVE_MODELS:
        raise ValueError(f"need at least {MIN_ACTIVE_MODELS} models, got {len(roster)}")
    shuffled = list(roster)
    rng.shuffle(shuffled)
    return RoundPicks(
        prompter=shuffled[0],
        contestants=(shuffled[1], shuffled[2]),
        voters=[shuffled[0], *shuffled[3:]],
    )


def true_side(label: str, show_a_first: bool) -> str:
    """Map the label a judge saw back to the contestant's real side."""
    if show_a_first:
        return label
    return "B" if label == "A" else "A"


class RoundRunner:
    """Owns the supervisor task for whichever lease this process holds."""

    def __init__(self, rt: Runtime) -> None:
        self.rt = rt
        self._task: asyncio.Task[None] | None = None
        self._lease_id: str | None = None
        self._background: set[asyncio.Future] = set()

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def lease_id(self) -> str | None:
        return self._lease_id

    def start(self, lease_id: str) -> bool:
        """Start supervising *lease_id*. False if already doing so."""
        if self.running and self._lease_id == lease_id:
            return False
        if self.running:
            # The old loop stops at its next lease check.
            self._track(self._task)  # type: ignore[arg-type]
        self._lease_id = lease_id
        self._task = asyncio.create_task(self.supervise(lease_id), name=f"round-runner-{lease_id[:8]}")
        return True

    async def stop(self) -> None:
        """Cancel the supervisor and any detached work (process shutdown)."""
        pending = [t for t in (self._task, *self._background) if t is not None and not t.done()]
        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)
        self._task = None

    async def wait_stopped(self) -> None:
        if self._task is not None:
            await asyncio.gather(self._task, return_exceptions=True)

    async def supervise(self, lease_id: str) -> None:
        settings = self.rt.settings
        logger.info("runner_started lease=%s", lease_id)
        try:
            while True:
                try:
                    outcome = await self.run_iteration(lease_id)
                except Exception:
                    logger.exception("runner_iteration_failed lease=%s", lease_id)
                    await asyncio.sleep(settings.paused_poll_seconds)
                    continue
                if outcome is Outcome.STOP:
                    return
                if outcome is Outcome.PAUSED:
                    await asyncio.sleep(settings.paused_poll_seconds)
                elif outcome is Outcome.RETRY:
                    await asyncio.sleep(settings.create_round_backoff_seconds)
        finally:
            logger.info("runner_stopped lease=%s", lease_id)

    async def run_iteration(self, lease_id: str) -> Outcome:
        rt = self.rt
        state = await rt.leases.validate(lease_id)
        if state is None:
            logger.info("runner_abandoned lease=%s reason=lease_invalid", lease_id)
            return Outcome.STOP
        if not await rt.leases.renew(lease_id):
            return Outcome.STOP
        if state.is_paused:
            return Outcome.PAUSED
        if state.done:
            await rt.leases.release(lease_id)
            logger.info("runner_done lease=%s completed=%d", lease_id, state.completed_rounds)
            return Outcome.STOP

        generation = state.generation
        if state.active_round_id:
            # We hold the lease and are between rounds, so this round's runner is gone.
            if await round_store.abandon_round(
                rt.engine, generation, state.active_round_id, ABANDONED_ERROR
            ):
                await rt.state_changed("round_abandoned", round_id=state.active_round_id)
            return Outcome.RETRY

        roster = active_roster(rt.settings.enabled_model_ids)
        if len(roster) < MIN_ACTIVE_MODELS:
            logger.warning("runner_blocked reason=insufficient_active_models count=%d", len(roster))
            return Outcome.PAUSED

        picks = pick_models(roster, rt.rng)
        rnd = await round_store.start_round(rt.engine, generation, picks.prompter, picks.contestants)
        if rnd is None:
            return Outcome.RETRY
        await rt.state_changed("round_started", round_id=rnd.id)

        timing = round_store.effective_timing(rt.settings, state.timing)
        if not await self.play_round(lease_id, generation, rnd.id, picks, timing):
            logger.info("runner_abandoned lease=%s round=%s reason=superseded", lease_id, rnd.id)
            return Outcome.STOP

        await asyncio.sleep(timing.post_round_delay_seconds)
        return Outcome.NEXT

    async def play_round(
        self,
        lease_id: str,
        generation: int,
        round_id: str,
        picks: RoundPicks,
        timing: RoundTiming,
    ) -> bool:
        """Run one round's phases. False if the round was abandoned midway.

        The lease is renewed in the background for the whole round, so slow
        model calls never outlive it.
        """
        renewer = asyncio.create_task(
            self._renew_lease(lease_id), name=f"lease-renewer-{lease_id[:8]}"
        )
        try:
            return await self._play_phases(lease_id, generation, round_id, picks, timing)
        finally:
            renewer.cancel()
            await asyncio.gather(renewer, return_exceptions=True)

    async def _play_phases(
        self,
        lease_id: str,
        generation: int,
        round_id: str,
        picks: RoundPicks,
        timing: RoundTiming,
    ) -> bool:
        rt = self.rt
        engine = rt.engine
        usage = UsageContext(engine, generation, round_id)
        backoff = rt.settings.retry_backoff_seconds

        # Prompting
        try:
            prompt = await generate_prompt(
                rt.provider, picks.prompter, usage=usage, backoff_seconds=backoff, rng=rt.rng
            )
        except ProviderError:
            if not await self._still_valid(lease_id, generation):
                return False
            if not await round_store.set_prompt_error(engine, generation, round_id, PROMPT_FAILED_ERROR):
                return False
            await rt.state_changed("round_completed", round_id=round_id)
            await rt.event_bus.publish(ROUND_COMPLETED, {"round_id": round_id, "generation": generation})
            return True

        if not await self._still_valid(lease_id, generation):
            return False
        if not await round_store.set_prompt_result(engine, generation, round_id, prompt):
            return False
        if not await round_store.start_answering(engine, generation, round_id):
            return False
        await rt.state_changed("answering_started", round_id=round_id)

        # Answering
        answer_a, answer_b = await asyncio.gather(
            *(
                self._answer(lease_id, generation, round_id, index, contestant, prompt, usage)
                for index, contestant in enumerate(picks.contestants)
            )
        )

        if not await self._still_valid(lease_id, generation):
            return False
        ends_at = await round_store.start_voting(engine, generation, round_id, picks.voters, timing)
        if ends_at is None:
            return False
        await rt.event_bus.publish(
            VOTING_STARTED,
            {
                "round_id": round_id,
                "generation": generation,
                "prompt": prompt,
                "answer_a": answer_a,
                "answer_b": answer_b,
                "ends_at": ends_at,
            },
        )
        await rt.state_changed("voting_started", round_id=round_id)

        # Voting: model votes and the viewer window run side by side.
        votes = asyncio.ensure_future(
            asyncio.gather(
                *(
                    self._vote(lease_id, generation, round_id, index, voter, prompt, answer_a, answer_b, usage)
                    for index, voter in enumerate(picks.voters)
                )
            )
        )
        keep_alive = self._keep_alive(lease_id, generation)
        try:
            if not await rt.windows.wait_for_close(
                engine,
                round_id,
                poll_max_seconds=rt.settings.voting_poll_max_seconds,
                keep_alive=keep_alive,
            ):
                return False
            while not votes.done():
                await asyncio.wait({votes}, timeout=rt.settings.voting_poll_max_seconds)
                if not votes.done() and not await keep_alive():
                    return False
            await votes
        finally:
            if not votes.done():
                # In-flight calls finish on their own; their writes are discarded.
                self._track(votes)

        if not await self._still_valid(lease_id, generation):
            return False
        if not await round_store.finalize_round(engine, generation, round_id):
            return False
        await rt.event_bus.publish(ROUND_COMPLETED, {"round_id": round_id, "generation": generation})
        await rt.state_changed("round_completed", round_id=round_id)
        return True

    async def _answer(
        self,
        lease_id: str,
        generation: int,
        round_id: str,
        index: int,
        contestant: Model,
        prompt: str,
        usage: UsageContext,
    ) -> str:
        error: str | None = None
        try:
            result = await generate_answer(
                self.rt.provider,
                contestant,
                prompt,
                usage=usage,
                backoff_seconds=self.rt.settings.retry_backoff_seconds,
            )
        except ProviderError:
            result, error = NO_ANSWER, ANSWER_FAILED_ERROR
        if await self._still_valid(lease_id, generation) and await round_store.set_answer_result(
            self.rt.engine, generation, round_id, index, result=result, error=error
        ):
            await self.rt.state_changed("answer_finished", round_id=round_id)
        return result

    async def _vote(
        self,
        lease_id: str,
        generation: int,
        round_id: str,
        index: int,
        voter: Model,
        prompt: str,
        answer_a: str,
        answer_b: str,
        usage: UsageContext,
    ) -> None:
        show_a_first = self.rt.rng.random() > 0.5
        first, second = (answer_a, answer_b) if show_a_first else (answer_b, answer_a)
        side: str | None = None
        error: bool | None = None
        try:
            label = await generate_vote(
                self.rt.provider,
                voter,
                prompt,
                first,
                second,
                usage=usage,
                backoff_seconds=self.rt.settings.retry_backoff_seconds,
            )
            side = true_side(label, show_a_first)
        except ProviderError:
            error = True
        if await self._still_valid(lease_id, generation) and await round_store.set_model_vote(
            self.rt.engine, generation, round_id, index, side=side, error=error
        ):
            await self.rt.state_changed("vote_finished", round_id=round_id)

    async def _still_valid(self, lease_id: str, generation: int) -> bool:
        state = await self.rt.leases.validate(lease_id)
        return state is not None and state.generation == generation

    def _keep_alive(self, lease_id: str, generation: int) -> Callable[[], Awaitable[bool]]:
        """Lease check for long waits."""

        async def keep_alive() -> bool:
            return await self._still_valid(lease_id, generation)

        return keep_alive

    async def _renew_lease(self, lease_id: str) -> None:
        """Renew every renew interval until the lease is lost or the task is cancelled."""
        interval = self.rt.settings.lease_renew_interval_seconds
        while True:
            await asyncio.sleep(interval)
            try:
                if not await self.rt.leases.renew(lease_id):
                    return
            except SQLAlchemyError:
                logger.exception("lease_renew_failed lease=%s", lease_id)

    def _track(self, fut: asyncio.Future) -> None:
        self._background.add(fut)
        fut.add_done_callback(self._untrack)

    def _untrack(self, fut: asyncio.Future) -> None:
        self._background.discard(fut)
        if not fut.cancelled() and fut.exception() is not None:
            logger.warning("detached_task_failed error=%s", fut.exception())
