"""Model calls made by the round runner: write a prompt, answer it, vote.

Each call runs through ``with_retry``: 3 attempts, linear backoff of
``backoff_seconds * attempt`` between them, and a validation step. A call
that raises or fails validation counts as a failed attempt. When every
attempt fails the last error is raised to the caller, which decides how
the round degrades.
"""

from __future__ import annotations

import asyncio
import logging
import random
from collections.abc import Awaitable, Callable
from typing import TypeVar

from quipslop.ai.prompts import (
    ANSWER_SYSTEM,
    PROMPT_USER,
    VOTE_SYSTEM,
    answer_user_prompt,
    build_prompt_system,
    vote_user_prompt,
)
from quipslop.ai.provider import Completion, InvalidResponseError, ProviderClient
from quipslop.ai.usage import UsageContext, record_call
from quipslop.models.catalog import Model

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_ATTEMPTS = 3
PROMPT_MIN_LENGTH = 10
ANSWER_MIN_LENGTH = 3


def clean_response(text: str) -> str:
    """Trim whitespace and one pair of matching wrapping quotes."""
    trimmed = text.strip()
    if len(trimmed) >= 2 and trimmed[0] == trimmed[-1] and trimmed[0] in ("'", '"'):
        return trimmed[1:-1]
    return trimmed


def is_real_string(text: str, min_length: int) -> bool:
    return len(text) >= min_length


def parse_vote(text: str) -> str:
    """Map a judge's reply to "A" or "B"; anything else is invalid."""
    cleaned = text.strip().upper()
    if cleaned.startswith("A"):
        return "A"
    if cleaned.startswith("B"):
        return "B"
    raise InvalidResponseError(f"Invalid vote: {text.strip()[:100]}")


async def with_retry(
    call: Callable[[int], Awaitable[T]],
    validate: Callable[[T], bool],
    *,
    label: str,
    attempts: int = DEFAULT_ATTEMPTS,
    backoff_seconds: float = 1.0,
) -> T:
    """Run ``call(attempt)`` until ``validate`` accepts its result.

    Raises the last exception (``InvalidResponseError`` for a validation
    failure) once *attempts* are exhausted.
    """
    last_error: Exception | None = None
    for attempt in range(1, attempts + 1):
        try:
            result = await call(attempt)
            if validate(result):
                if attempt > 1:
                    logger.info("retry_succeeded label=%s attempt=%d", label, attempt)
                return result
            last_error = InvalidResponseError(
                f"validation failed (attempt {attempt}/{attempts}): {str(result)[:100]!r}"
            )
        except Exception as e:
            last_error = e
        logger.warning(
            "retry_attempt_failed label=%s attempt=%d/%d error=%s",
            label,
            attempt,
            attempts,
            last_error,
        )
        if attempt < attempts:
            await asyncio.sleep(backoff_seconds * attempt)

    logger.error("retry_exhausted label=%s attempts=%d error=%s", label, attempts, last_error)
    if last_error is None:
        raise ValueError(f"attempts must be at least 1, got {attempts}")
    raise last_error


async def _complete_logged(
    provider: ProviderClient,
    model: Model,
    system: str,
    prompt: str,
    *,
    call_type: str,
    attempt: int,
    usage: UsageContext | None,
    parse: Callable[[str], str],
    validate: Callable[[str], bool] | None = None,
) -> str:
    """One attempt: call the provider, parse, and log the usage row."""
    completion: Completion | None = None
    try:
        completion = await provider.complete(model.id, system, prompt)
        text = parse(completion.text)
    except Exception:
        await _record(usage, call_type, model, attempt, completion, success=False)
        raise
    ok = validate(text) if validate is not None else True
    await _record(usage, call_type, model, attempt, completion, success=ok)
    return text


async def _record(
    usage: UsageContext | None,
    call_type: str,
    model: Model,
    attempt: int,
    completion: Completion | None,
    *,
    success: bool,
) -> None:
    await record_call(
        usage,
        call_type=call_type,
        model_id=model.id,
        attempt=attempt,
        success=success,
        input_tokens=completion.input_tokens if completion else 0,
        output_tokens=completion.output_tokens if completion else 0,
        latency_ms=completion.latency_ms if completion else 0.0,
    )


async def generate_prompt(
    provider: ProviderClient,
    model: Model,
    *,
    usage: UsageContext | None = None,
    backoff_seconds: float = 1.0,
    rng: random.Random | None = None,
) -> str:
    """Ask *model* for a fresh fill-in-the-blank prompt (at least 10 chars)."""

    def _valid(s: str) -> bool:
        return is_real_string(s, PROMPT_MIN_LENGTH)

    async def _attempt(attempt: int) -> str:
        return await _complete_logged(
            provider,
            model,
            build_prompt_system(rng),
            PROMPT_USER,
            call_type="prompt",
            attempt=attempt,
            usage=usage,
            parse=clean_response,
            validate=_valid,
        )

    return await with_retry(
        _attempt, _valid, label=f"prompt:{model.name}", backoff_seconds=backoff_seconds
    )


async def generate_answer(
    provider: ProviderClient,
    model: Model,
    prompt: str,
    *,
    usage: UsageContext | None = None,
    backoff_seconds: float = 1.0,
) -> str:
    """Ask a contestant to answer *prompt* (at least 3 chars)."""

    def _valid(s: str) -> bool:
        return is_real_string(s, ANSWER_MIN_LENGTH)

    async def _attempt(attempt: int) -> str:
        return await _complete_logged(
            provider,
            model,
            ANSWER_SYSTEM,
            answer_user_prompt(prompt),
            call_type="answer",
            attempt=attempt,
            usage=usage,
            parse=clean_response,
            validate=_valid,
        )

    return await with_retry(
        _attempt, _valid, label=f"answer:{model.name}", backoff_seconds=backoff_seconds
    )


async def generate_vote(
    provider: ProviderClient,
    voter: Model,
    prompt: str,
    answer_a: str,
    answer_b: str,
    *,
    usage: UsageContext | None = None,
    backoff_seconds: float = 1.0,
) -> str:
    """Ask *voter* which of the two displayed answers is funnier.

    Returns the displayed label, "A" or "B". The caller maps it back to the
    true contestant side when it randomized the display order.
    """

    async def _attempt(attempt: int) -> str:
        return await _complete_logged(
            provider,
            voter,
            VOTE_SYSTEM,
            vote_user_prompt(prompt, answer_a, answer_b),
            call_type="vote",
            attempt=attempt,
            usage=usage,
            parse=parse_vote,
        )

    return await with_retry(
        _attempt,
        lambda v: v in ("A", "B"),
        label=f"vote:{voter.name}",
        backoff_seconds=backoff_seconds,
    )
