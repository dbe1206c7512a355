"""Tests for application startup and shutdown."""

import asyncio

from quipslop.db.engine import get_session
from quipslop.db.models import ViewerVoteTallyRow
from quipslop.db.repository import Repository
from quipslop.main import create_app, lifespan


class TestLifespan:
    async def test_startup_finishes_superseded_purge(self, engine, settings):
        settings.auto_start = False
        async with get_session(engine) as session:
            repo = Repository(session)
            await repo.get_or_create_engine_state()
            await repo.patch_engine_state(generation=3)
            await repo.adjust_tally(2, "r-old", "A", 0, 4)
            await repo.adjust_tally(3, "r-new", "B", 0, 1)

        app = create_app(settings)
        async with lifespan(app):
            startup = [
                t for t in app.state.runtime.background if t.get_name() == "purge-superseded-startup"
            ]
            await asyncio.gather(*startup)
            assert app.state.telegram is None
            assert not app.state.runner.running

        async with get_session(engine) as session:
            repo = Repository(session)
            assert await repo.count_generation_rows(ViewerVoteTallyRow, 2) == 0
            assert await repo.count_generation_rows(ViewerVoteTallyRow, 3) == 1
