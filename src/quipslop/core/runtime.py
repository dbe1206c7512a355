"""The handle every engine operation receives.

Nothing in the core reaches for module-level state: the database engine,
settings, event bus, model provider, lease manager and voting-window
registry travel together in one ``Runtime`` passed in explicitly.
"""

from __future__ import annotations

import asyncio
import logging
import random
from collections.abc import Coroutine
from dataclasses import dataclass, field
from typing import Any

from sqlalchemy.ext.asyncio import AsyncEngine

from quipslop.ai.provider import ProviderClient
from quipslop.config import Settings
from quipslop.core.event_bus import STATE_CHANGED, EventBus
from quipslop.core.lease import LeaseManager
from quipslop.core.voting_window import VotingWindowRegistry

logger = logging.getLogger(__name__)


@dataclass
class Runtime:
    engine: AsyncEngine
    settings: Settings
    event_bus: EventBus
    provider: ProviderClient
    leases: LeaseManager
    windows: VotingWindowRegistry = field(default_factory=VotingWindowRegistry)
    rng: random.Random = field(default_factory=random.Random)
    background: set[asyncio.Task] = field(default_factory=set)

    async def state_changed(self, reason: str, **data: Any) -> None:
        await self.event_bus.publish(STATE_CHANGED, {"reason": reason, **data})

    def spawn(self, coro: Coroutine[Any, Any, Any], name: str) -> asyncio.Task:
        """Run *coro* in the background, keeping a reference until it finishes."""
        task = asyncio.create_task(coro, name=name)
        self.background.add(task)
        task.add_done_callback(self._finished)
        return task

    def _finished(self, task: asyncio.Task) -> None:
        self.background.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("background_task_failed name=%s error=%s", task.get_name(), task.exception())

    async def drain(self) -> None:
        """Cancel unfinished background tasks (shutdown)."""
        pending = [t for t in self.background if not t.done()]
        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)


def build_runtime(
    engine: AsyncEngine,
    settings: Settings,
    event_bus: EventBus,
    provider: ProviderClient,
    seed: int | None = None,
) -> Runtime:
    return Runtime(
        engine=engine,
        settings=settings,
        event_bus=event_bus,
        provider=provider,
        leases=LeaseManager(engine, settings.runner_lease_seconds),
        rng=random.Random(seed),
    )
