"""Tests for viewer presence heartbeats and the reaper."""

from quipslop.core.presence import heartbeat, read_viewer_count, reap_expired
from quipslop.core.scheduler_runner import tick_reaper
from quipslop.db.engine import get_session
from quipslop.db.models import now_ms
from quipslop.db.repository import Repository


class TestHeartbeat:
    async def test_first_heartbeat_counts_viewer(self, engine):
        assert await heartbeat(engine, "v1", "live", ttl_seconds=30)
        assert not await heartbeat(engine, "v1", "live", ttl_seconds=30)
        assert await heartbeat(engine, "v2", "broadcast", ttl_seconds=30)
        assert await read_viewer_count(engine) == 2

    async def test_heartbeat_pushes_expiry(self, engine):
        await heartbeat(engine, "v1", ttl_seconds=30, at_ms=1_000)
        await heartbeat(engine, "v1", ttl_seconds=30, at_ms=5_000)
        async with get_session(engine) as session:
            row = await Repository(session).get_presence("v1")
        assert row.expires_at_ms == 35_000
        assert row.last_seen_at_ms == 5_000


class TestReaper:
    async def test_reaps_only_expired(self, engine):
        await heartbeat(engine, "old", ttl_seconds=1, at_ms=1_000)
        await heartbeat(engine, "new", ttl_seconds=60, at_ms=1_000)
        assert await reap_expired(engine, at_ms=10_000) == 1
        assert await read_viewer_count(engine) == 1
        assert await reap_expired(engine, at_ms=10_000) == 0

    async def test_respects_batch_size(self, engine):
        for i in range(5):
            await heartbeat(engine, f"v{i}", ttl_seconds=1, at_ms=1_000)
        assert await reap_expired(engine, batch=2, at_ms=10_000) == 2
        assert await read_viewer_count(engine) == 3

    async def test_returning_viewer_counts_again(self, engine):
        await heartbeat(engine, "v1", ttl_seconds=1, at_ms=1_000)
        await reap_expired(engine, at_ms=10_000)
        assert await heartbeat(engine, "v1", ttl_seconds=1, at_ms=11_000)
        assert await read_viewer_count(engine) == 1

    async def test_tick_reaper_publishes_change(self, rt):
        await heartbeat(rt.engine, "gone", ttl_seconds=1, at_ms=now_ms() - 60_000)
        async with rt.event_bus.subscribe("state.changed") as sub:
            assert await tick_reaper(rt) == 1
            event = await sub.get(timeout=1.0)
        assert event["data"] == {"reason": "viewers_reaped", "count": 1}
