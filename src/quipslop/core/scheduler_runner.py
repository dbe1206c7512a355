"""Scheduled maintenance ticks, run by APScheduler.

- ``tick_engine``: keeps a runner alive (``ensure_started``) and pulls a
  long idle voting window in once viewers show up.
- ``tick_reaper``: drops expired viewer presence.

Errors are logged but never propagated so the scheduler keeps running.
"""

from __future__ import annotations

import logging

from sqlalchemy.exc import SQLAlchemyError

from quipslop.core import round_store
from quipslop.core.admin import ensure_started, load_state
from quipslop.core.presence import reap_expired
from quipslop.core.round_runner import RoundRunner
from quipslop.core.runtime import Runtime

logger = logging.getLogger(__name__)


async def tick_engine(rt: Runtime, runner: RoundRunner, auto_start: bool = True) -> None:
    try:
        if auto_start and await ensure_started(rt, runner):
            logger.info("tick_engine_started_runner")

        state = await load_state(rt)
        timing = round_store.effective_timing(rt.settings, state.timing)
        round_id = await round_store.shorten_voting_window(
            rt.engine, timing.viewer_vote_window_active_seconds
        )
        if round_id is not None:
            rt.windows.notify(round_id)
            await rt.state_changed("voting_window_shortened", round_id=round_id)
    except SQLAlchemyError:
        logger.exception("tick_engine_db_error")
    except Exception:
        logger.exception("tick_engine_failed")


async def tick_reaper(rt: Runtime) -> int:
    try:
        removed = await reap_expired(rt.engine, batch=rt.settings.viewer_reaper_batch)
    except Exception:
        logger.exception("tick_reaper_failed")
        return 0
    if removed:
        await rt.state_changed("viewers_reaped", count=removed)
    return removed
