"""Tests for admin operations: pause, resume, reset, purge, timing, export."""

import asyncio

import pytest

from quipslop.core import admin
from quipslop.core.event_bus import EventBus
from quipslop.core.presence import heartbeat, read_viewer_count
from quipslop.core.round_runner import RoundRunner
from quipslop.core.runtime import build_runtime
from quipslop.core.tally import cast_viewer_vote
from quipslop.db.engine import get_session
from quipslop.db.models import RoundRow, ViewerVoteRow, ViewerVoteTallyRow
from quipslop.db.repository import Repository
from quipslop.models.catalog import MODELS


async def _state(rt):
    async with get_session(rt.engine) as session:
        return await Repository(session).get_engine_state()


class TestEnsureStarted:
    async def test_starts_runner_once(self, rt):
        runner = RoundRunner(rt)
        await admin.pause(rt)
        assert await admin.ensure_started(rt, runner)
        assert runner.running
        assert not await admin.ensure_started(rt, runner)
        await runner.stop()

    async def test_done_game_is_not_started(self, rt):
        async with get_session(rt.engine) as session:
            await Repository(session).patch_engine_state(done=True)
        runner = RoundRunner(rt)
        assert not await admin.ensure_started(rt, runner)
        assert not runner.running


class TestPauseResume:
    async def test_pause_sets_flag(self, rt):
        await admin.pause(rt)
        assert (await _state(rt)).is_paused

    async def test_resume_clears_pause_and_done(self, rt):
        async with get_session(rt.engine) as session:
            await Repository(session).patch_engine_state(is_paused=True, done=True)
        runner = RoundRunner(rt)
        assert await admin.resume(rt, runner)
        state = await _state(rt)
        assert not state.is_paused and not state.done
        assert state.lease_valid(runner.lease_id)
        await runner.stop()

    async def test_concurrent_resumes_start_one_runner(self, rt):
        await admin.pause(rt)
        runners = [RoundRunner(rt) for _ in range(4)]
        started = await asyncio.gather(*(admin.resume(rt, r) for r in runners))
        assert started.count(True) == 1
        await asyncio.gather(*(r.stop() for r in runners))

    async def test_resume_with_valid_lease_starts_nothing(self, rt):
        await rt.leases.acquire()
        assert not await admin.resume(rt, RoundRunner(rt))


class TestReset:
    async def test_requires_confirmation(self, rt):
        with pytest.raises(admin.AdminError, match="RESET"):
            await admin.reset(rt, "reset")
        assert (await _state(rt)).generation == 1

    async def test_new_generation_is_empty_and_paused(self, rt, voting_round):
        await cast_viewer_vote(rt.engine, voting_round, "v1", "A")
        await heartbeat(rt.engine, "v1")
        lease_id = await rt.leases.acquire()
        async with get_session(rt.engine) as session:
            await Repository(session).patch_engine_state(
                completed_rounds=4, scores={MODELS[0].name: 3}
            )

        assert await admin.reset(rt, "RESET") == 2

        state = await _state(rt)
        assert state.generation == 2
        assert state.is_paused
        assert state.active_round_id is None
        assert state.completed_rounds == 0
        assert state.next_round_num == 1
        assert set(state.scores.values()) == {0}
        assert len(state.scores) == len(MODELS)
        assert state.runner_lease_id is None
        assert await rt.leases.validate(lease_id) is None
        assert await read_viewer_count(rt.engine) == 0

    async def test_old_generation_is_purged(self, rt, voting_round):
        await cast_viewer_vote(rt.engine, voting_round, "v1", "A")
        await admin.reset(rt, "RESET")
        await asyncio.gather(*rt.background)

        async with get_session(rt.engine) as session:
            repo = Repository(session)
            for table in (RoundRow, ViewerVoteRow, ViewerVoteTallyRow):
                assert await repo.count_generation_rows(table, 1) == 0

    async def test_concurrent_resets_each_increment(self, rt):
        results = await asyncio.gather(admin.reset(rt, "RESET"), admin.reset(rt, "RESET"))
        assert sorted(results) == [2, 3]
        assert (await _state(rt)).generation == 3

    async def test_reset_wakes_voting_waiters(self, rt, voting_round):
        waiter = asyncio.create_task(rt.windows.wait(voting_round, 30))
        await asyncio.sleep(0)
        await admin.reset(rt, "RESET")
        assert await asyncio.wait_for(waiter, 1)


class TestPurge:
    async def test_batches_until_clean(self, rt, settings):
        settings.purge_batch_size = 2
        async with get_session(rt.engine) as session:
            repo = Repository(session)
            for shard in range(5):
                await repo.adjust_tally(0, "r-old", "A", shard, 1)
            await repo.adjust_tally(1, "r-live", "A", 0, 1)
        assert await admin.purge_superseded(rt) == 5
        async with get_session(rt.engine) as session:
            repo = Repository(session)
            assert await repo.count_generation_rows(ViewerVoteTallyRow, 0) == 0
            assert await repo.count_generation_rows(ViewerVoteTallyRow, 1) == 1

    async def test_restart_finishes_interrupted_purge(self, rt, engine, settings, provider, voting_round):
        await cast_viewer_vote(rt.engine, voting_round, "v1", "A")
        await admin.reset(rt, "RESET")
        # Shutdown cancels the background purge.
        await rt.drain()

        restarted = build_runtime(engine, settings, EventBus(), provider)
        await admin.purge_superseded(restarted)

        async with get_session(engine) as session:
            repo = Repository(session)
            for table in (RoundRow, ViewerVoteRow, ViewerVoteTallyRow):
                assert await repo.count_generation_rows(table, 1) == 0


class TestTiming:
    async def test_overrides_are_clamped_and_stored(self, rt):
        timing = await admin.update_timing(
            rt, viewer_vote_window_active_seconds=0.2, viewer_vote_window_idle_seconds=9999
        )
        assert timing.viewer_vote_window_active_seconds == 1.0
        assert timing.viewer_vote_window_idle_seconds == 3600.0
        assert timing.post_round_delay_seconds == rt.settings.post_round_delay_seconds
        assert (await _state(rt)).timing == {
            "viewer_vote_window_active_seconds": 1.0,
            "viewer_vote_window_idle_seconds": 3600.0,
        }

    async def test_unknown_field(self, rt):
        with pytest.raises(admin.AdminError, match="Unknown timing fields"):
            await admin.update_timing(rt, round_length=5)


class TestStatusAndExport:
    def test_mask_token(self):
        assert admin.mask_token("") is None
        assert admin.mask_token("abcdef") == "a***f"
        assert admin.mask_token("123456:ABCDEFGHIJ") == "1234...GHIJ"

    async def test_snapshot(self, rt, voting_round):
        await heartbeat(rt.engine, "v1")
        snap = await admin.snapshot(rt)
        assert snap.is_running_round
        assert snap.persisted_rounds == 1
        assert snap.viewer_count == 1
        assert snap.active_model_count == len(MODELS)
        assert snap.can_run_rounds
        assert snap.run_blocked_reason is None
        assert snap.telegram.enabled is False
        assert snap.to_wire()["isRunningRound"] is True

    async def test_snapshot_blocked_with_two_models(self, rt):
        rt.settings.enabled_model_ids = [MODELS[0].id, MODELS[1].id]
        snap = await admin.snapshot(rt)
        assert not snap.can_run_rounds
        assert snap.run_blocked_reason == "insufficient_active_models"

    async def test_export(self, rt, voting_round):
        async with get_session(rt.engine) as session:
            await Repository(session).add_poll(1, voting_round, "poll-1", "@channel", 42)
        data = await admin.export_data(rt)
        assert set(data) == {"exportedAt", "state", "models", "telegramRoundPolls", "rounds"}
        assert data["state"]["generation"] == 1
        assert [r["id"] for r in data["rounds"]] == [voting_round]
        assert data["rounds"][0]["phase"] == "voting"
        assert data["telegramRoundPolls"][0]["pollId"] == "poll-1"
        assert len(data["models"]) == len(MODELS)
