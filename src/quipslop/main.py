"""FastAPI application factory."""

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
from fastapi import FastAPI

from quipslop.ai.provider import create_provider
from quipslop.api.admin import router as admin_router
from quipslop.api.events import router as events_router
from quipslop.api.history import router as history_router
from quipslop.api.live import router as live_router
from quipslop.config import Settings
from quipslop.core.admin import ensure_started, purge_superseded
from quipslop.core.event_bus import EventBus
from quipslop.core.projection import LiveStateBroadcaster
from quipslop.core.round_runner import RoundRunner
from quipslop.core.runtime import build_runtime
from quipslop.core.scheduler_runner import tick_engine, tick_reaper
from quipslop.db.engine import create_engine, init_schema

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Startup: tables, runtime, broadcaster, runner, scheduler, Telegram bridge."""
    settings: Settings = app.state.settings
    settings.require_provider_credentials()

    engine = create_engine(settings.database_url)
    await init_schema(engine)

    event_bus = EventBus()
    provider = create_provider(settings)
    rt = build_runtime(engine, settings, event_bus, provider)
    runner = RoundRunner(rt)
    broadcaster = LiveStateBroadcaster(rt)

    app.state.engine = engine
    app.state.event_bus = event_bus
    app.state.runtime = rt
    app.state.runner = runner
    app.state.broadcaster = broadcaster

    broadcaster.start()
    await broadcaster.wait_ready()

    # Finish any purge a previous process was stopped in the middle of.
    rt.spawn(purge_superseded(rt), name="purge-superseded-startup")

    telegram = None
    from quipslop.integrations.telegram import TelegramBridge, is_telegram_configured

    if settings.telegram_enabled:
        telegram = TelegramBridge(rt)
        telegram.start()
        app.state.telegram = telegram
        if is_telegram_configured(settings):
            logger.info("telegram_integration_started channel=%s", settings.telegram_channel_id)
        else:
            logger.warning("telegram_integration_misconfigured")
    else:
        app.state.telegram = None
        logger.info("telegram_integration_disabled")

    if settings.auto_start and await ensure_started(rt, runner):
        logger.info("runner_auto_started")

    scheduler = AsyncIOScheduler()
    scheduler.add_job(
        tick_engine,
        trigger=IntervalTrigger(seconds=settings.scheduler_tick_seconds),
        kwargs={"rt": rt, "runner": runner, "auto_start": settings.auto_start},
        id="tick_engine",
        name="Keep the round runner alive",
        replace_existing=True,
        max_instances=1,
        coalesce=True,
    )
    scheduler.add_job(
        tick_reaper,
        trigger=IntervalTrigger(seconds=settings.scheduler_tick_seconds),
        kwargs={"rt": rt},
        id="tick_reaper",
        name="Reap expired viewer presence",
        replace_existing=True,
        max_instances=1,
        coalesce=True,
    )
    if telegram is not None:
        scheduler.add_job(
            telegram.poll_updates,
            trigger=IntervalTrigger(seconds=settings.telegram_poll_interval_seconds),
            id="telegram_poll_updates",
            name="Sync Telegram poll votes",
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
    scheduler.start()
    app.state.scheduler = scheduler
    logger.info("scheduler_started tick=%ss", settings.scheduler_tick_seconds)

    yield

    scheduler.shutdown(wait=False)
    logger.info("scheduler_stopped")

    lease_id = runner.lease_id
    await runner.stop()
    if lease_id is not None:
        await rt.leases.release(lease_id)

    if telegram is not None:
        await telegram.close()
        logger.info("telegram_integration_stopped")

    await broadcaster.stop()
    await rt.drain()
    await provider.aclose()
    await engine.dispose()


def create_app(settings: Settings | None = None) -> FastAPI:
    """Create and configure the Quipslop FastAPI application."""
    settings = settings or Settings()

    logging.basicConfig(
        level=getattr(logging, settings.quipslop_log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    app = FastAPI(
        title="Quipslop",
        version="0.1.0",
        description="AI models play a fill-in-the-blank comedy game while viewers vote",
        docs_url="/docs" if settings.quipslop_env != "production" else None,
        lifespan=lifespan,
    )
    app.state.settings = settings

    app.include_router(live_router)
    app.include_router(history_router)
    app.include_router(events_router)
    app.include_router(admin_router)

    @app.get("/health")
    async def health() -> dict[str, str]:
        return {"status": "ok", "env": settings.quipslop_env}

    return app


app = create_app()
