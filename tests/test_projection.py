"""Tests for the live-state projection and its broadcaster."""

import asyncio

from quipslop.core import round_store
from quipslop.core.admin import reset
from quipslop.core.event_bus import LIVE_STATE, EventBus
from quipslop.core.presence import heartbeat
from quipslop.core.projection import LiveStateBroadcaster, build_live_state
from quipslop.core.runtime import build_runtime
from quipslop.core.tally import cast_viewer_vote


class TestBuildLiveState:
    async def test_empty_game(self, rt):
        payload = await build_live_state(rt)
        assert payload.data.active is None
        assert payload.data.last_completed is None
        assert payload.data.generation == 1
        assert payload.total_rounds is None
        assert payload.viewer_count == 0
        assert set(payload.data.scores.values()) == {0}

    async def test_active_round_merges_live_tallies(self, rt, voting_round):
        await cast_viewer_vote(rt.engine, voting_round, "v1", "A")
        await cast_viewer_vote(rt.engine, voting_round, "v2", "B")
        await cast_viewer_vote(rt.engine, voting_round, "v3", "B")
        await heartbeat(rt.engine, "v1")

        payload = await build_live_state(rt)
        active = payload.data.active
        assert active.id == voting_round
        assert (active.viewer_votes_a, active.viewer_votes_b) == (1, 2)
        assert payload.viewer_count == 1

    async def test_between_rounds(self, rt, voting_round):
        assert await round_store.finalize_round(rt.engine, 1, voting_round)
        payload = await build_live_state(rt)
        assert payload.data.active is None
        assert payload.data.last_completed.id == voting_round
        assert payload.data.last_completed.phase == "done"

    async def test_reset_reads_as_empty_immediately(self, rt, voting_round):
        await reset(rt, "RESET")
        payload = await build_live_state(rt)
        assert payload.data.active is None
        assert payload.data.last_completed is None
        assert payload.data.generation == 2
        assert payload.data.is_paused

    async def test_finite_mode_exposes_total_rounds(self, engine, settings, make_provider):
        settings.quipslop_total_rounds = 5
        rt = build_runtime(engine, settings, EventBus(), make_provider())
        assert (await build_live_state(rt)).total_rounds == 5

    async def test_wire_shape_is_camel_case(self, rt, voting_round):
        wire = (await build_live_state(rt)).to_wire()
        assert set(wire) == {"data", "totalRounds", "viewerCount"}
        assert "lastCompleted" in wire["data"]
        assert "humanVoteTotals" in wire["data"]
        assert "viewerVotingEndsAt" in wire["data"]["active"]


class TestLiveStateBroadcaster:
    async def test_publishes_initial_snapshot(self, rt):
        broadcaster = LiveStateBroadcaster(rt)
        broadcaster.start()
        await asyncio.wait_for(broadcaster.wait_ready(), 2)
        latest = rt.event_bus.latest(LIVE_STATE)
        assert latest["data"]["data"]["generation"] == 1
        await broadcaster.stop()

    async def test_coalesces_bursts(self, rt):
        broadcaster = LiveStateBroadcaster(rt, min_interval=0.2)
        broadcaster.start()
        await broadcaster.wait_ready()

        async with rt.event_bus.subscribe(LIVE_STATE) as sub:
            for i in range(20):
                await rt.state_changed("burst", n=i)
            snapshots = []
            while (event := await sub.get(timeout=0.5)) is not None:
                snapshots.append(event)
        await broadcaster.stop()

        assert 1 <= len(snapshots) <= 2

    async def test_reflects_changes(self, rt, voting_round):
        broadcaster = LiveStateBroadcaster(rt, min_interval=0)
        broadcaster.start()
        await broadcaster.wait_ready()

        async with rt.event_bus.subscribe(LIVE_STATE) as sub:
            await heartbeat(rt.engine, "v9")
            await rt.state_changed("viewer_joined")
            event = await sub.get(timeout=2)
        await broadcaster.stop()

        assert event["data"]["viewerCount"] == 1
