"""Model usage tracking: one row per provider call attempt.

``record_call()`` inserts an ``LLMUsageEventRow`` through the generation
guard, so a runner left over from before a reset cannot add rows the purge
has already swept. Logging failures are reported and swallowed.
"""

from __future__ import annotations

import logging
import time
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from dataclasses import dataclass

from sqlalchemy.ext.asyncio import AsyncEngine

from quipslop.db.engine import get_session
from quipslop.db.repository import Repository

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class UsageContext:
    """Where a provider call belongs: the generation and round it serves."""

    engine: AsyncEngine
    generation: int
    round_id: str | None = None


async def record_call(
    ctx: UsageContext | None,
    *,
    call_type: str,
    model_id: str,
    attempt: int,
    success: bool,
    input_tokens: int = 0,
    output_tokens: int = 0,
    latency_ms: float = 0.0,
) -> None:
    """Record a provider call attempt. A missing context records nothing.

    Parameters
    ----------
    call_type : str
        "prompt", "answer" or "vote".
    attempt : int
        1-based attempt number within the retry loop.
    success : bool
        False when the call raised or its text failed validation.
    """
    if ctx is None:
        return

    async def _insert(repo: Repository) -> None:
        await repo.record_usage(
            generation=ctx.generation,
            round_id=ctx.round_id,
            call_type=call_type,
            model_id=model_id,
            attempt=attempt,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            latency_ms=latency_ms,
            success=success,
        )

    try:
        async with get_session(ctx.engine) as session:
            await Repository(session).write_if_generation_matches(ctx.generation, _insert)
    except Exception:
        # Usage logging should never break the caller.
        logger.warning("usage_log_failed call_type=%s model=%s", call_type, model_id, exc_info=True)


@asynccontextmanager
async def track_latency() -> AsyncGenerator[dict[str, float], None]:
    """Context manager that yields a dict; after exit, 'latency_ms' is set.

    Usage::

        async with track_latency() as timing:
            response = await client.post(...)
        latency = timing["latency_ms"]
    """
    timing: dict[str, float] = {"latency_ms": 0.0}
    start = time.monotonic()
    try:
        yield timing
    finally:
        timing["latency_ms"] = (time.monotonic() - start) * 1000
