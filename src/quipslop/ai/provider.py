"""Text-generation backends.

Every backend exposes one coroutine, ``complete(model_id, system, prompt)``,
returning a ``Completion``. Failures of any kind surface as ``ProviderError``
so callers retry on one exception type.

Backends:
- ``openrouter``: OpenAI-compatible chat completions over httpx. Reaches
  every model in the catalog.
- ``anthropic``: the Anthropic Messages API, for Claude-only rosters.
- ``mock``: canned, offline responses for local development.
"""

from __future__ import annotations

import logging
import random
from dataclasses import dataclass

import anthropic
import httpx

from quipslop.ai.usage import track_latency
from quipslop.config import Settings

logger = logging.getLogger(__name__)


class ProviderError(Exception):
    """A provider call failed (transport, HTTP status, or empty content)."""


class InvalidResponseError(ProviderError):
    """The provider answered, but the text failed validation."""


@dataclass(frozen=True)
class Completion:
    text: str
    input_tokens: int = 0
    output_tokens: int = 0
    latency_ms: float = 0.0


class ProviderClient:
    """Base class for text-generation backends."""

    name = "base"

    async def complete(self, model_id: str, system: str, prompt: str) -> Completion:
        raise NotImplementedError

    async def aclose(self) -> None:
        return None


class OpenRouterProvider(ProviderClient):
    """OpenRouter chat completions via a shared ``httpx.AsyncClient``."""

    name = "openrouter"

    def __init__(
        self,
        api_key: str,
        base_url: str = "https://openrouter.ai/api/v1",
        reasoning_effort: str = "medium",
        timeout_seconds: float = 60.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._reasoning_effort = reasoning_effort
        self._client = client or httpx.AsyncClient(
            base_url=base_url,
            headers={"Authorization": f"Bearer {api_key}"},
            timeout=httpx.Timeout(timeout_seconds, connect=5.0),
        )

    async def complete(self, model_id: str, system: str, prompt: str) -> Completion:
        body: dict[str, object] = {
            "model": model_id,
            "messages": [
                {"role": "system", "content": system},
                {"role": "user", "content": prompt},
            ],
        }
        if self._reasoning_effort:
            body["reasoning"] = {"effort": self._reasoning_effort}

        try:
            async with track_latency() as timing:
                response = await self._client.post("/chat/completions", json=body)
            response.raise_for_status()
            payload = response.json()
        except httpx.HTTPStatusError as e:
            raise ProviderError(
                f"{model_id}: HTTP {e.response.status_code} {e.response.text[:200]}"
            ) from e
        except (httpx.HTTPError, ValueError) as e:
            raise ProviderError(f"{model_id}: {e}") from e
        try:
            text = payload["choices"][0]["message"]["content"] or ""
        except (KeyError, IndexError, TypeError) as e:
            raise ProviderError(f"{model_id}: malformed response") from e
        if not text.strip():
            raise ProviderError(f"{model_id}: empty response")

        usage = payload.get("usage") or {}
        return Completion(
            text=text,
            input_tokens=int(usage.get("prompt_tokens") or 0),
            output_tokens=int(usage.get("completion_tokens") or 0),
            latency_ms=timing["latency_ms"],
        )

    async def aclose(self) -> None:
        await self._client.aclose()


def anthropic_model_name(model_id: str) -> str:
    """Map a catalog id such as ``anthropic/claude-sonnet-4.6`` to ``claude-sonnet-4-6``."""
    return model_id.split("/", 1)[-1].replace(".", "-")


class AnthropicProvider(ProviderClient):
    """Anthropic Messages API backend.

    SDK retries are disabled (max_retries=0) so that the app-level retry
    loop in ``quipslop.ai.contestant`` is the only retry layer.
    """

    name = "anthropic"

    def __init__(
        self,
        api_key: str,
        timeout_seconds: float = 60.0,
        max_tokens: int = 300,
        client: anthropic.AsyncAnthropic | None = None,
    ) -> None:
        self._max_tokens = max_tokens
        self._client = client or anthropic.AsyncAnthropic(
            api_key=api_key,
            timeout=httpx.Timeout(timeout_seconds, connect=5.0),
            max_retries=0,
        )

    async def complete(self, model_id: str, system: str, prompt: str) -> Completion:
        try:
            async with track_latency() as timing:
                response = await self._client.messages.create(
                    model=anthropic_model_name(model_id),
                    max_tokens=self._max_tokens,
                    system=system,
                    messages=[{"role": "user", "content": prompt}],
                )
        except anthropic.APIError as e:
            raise ProviderError(f"{model_id}: {e}") from e
        text = "".join(
            getattr(block, "text", "") for block in response.content if block.type == "text"
        )
        if not text.strip():
            raise ProviderError(f"{model_id}: empty response")
        usage = getattr(response, "usage", None)
        return Completion(
            text=text,
            input_tokens=getattr(usage, "input_tokens", 0) or 0,
            output_tokens=getattr(usage, "output_tokens", 0) or 0,
            latency_ms=timing["latency_ms"],
        )

    async def aclose(self) -> None:
        await self._client.close()


_MOCK_PROMPTS = [
    "The worst thing to hear from your dentist mid-procedure",
    "A rejected flavor of sparkling water",
    "What your houseplant whispers when you leave for work",
    "The least reassuring thing a pilot can say over the intercom",
    "A terrible name for a retirement home",
]

_MOCK_ANSWERS = [
    "Oops, wrong tooth",
    "Damp Cardboard",
    "Finally, the sunlight is mine",
    "Does anyone know how to land these?",
    "Shady Acres Final Stop",
]


class MockProvider(ProviderClient):
    """Offline backend with canned answers. Recognizes the three call kinds."""

    name = "mock"

    def __init__(self, rng: random.Random | None = None) -> None:
        self._rng = rng or random.Random()

    async def complete(self, model_id: str, system: str, prompt: str) -> Completion:
        if "Reply with just A or B" in prompt:
            text = self._rng.choice(["A", "B"])
        elif prompt.startswith("Fill in the blank"):
            text = self._rng.choice(_MOCK_ANSWERS)
        else:
            text = self._rng.choice(_MOCK_PROMPTS)
        return Completion(text=text)


def create_provider(settings: Settings) -> ProviderClient:
    """Build the backend selected by ``settings.provider_backend``."""
    if settings.provider_backend == "anthropic":
        return AnthropicProvider(
            settings.anthropic_api_key, timeout_seconds=settings.provider_timeout_seconds
        )
    if settings.provider_backend == "mock":
        logger.warning("provider_backend=mock: model calls return canned text")
        return MockProvider()
    return OpenRouterProvider(
        settings.openrouter_api_key,
        base_url=settings.openrouter_base_url,
        reasoning_effort=settings.openrouter_reasoning_effort,
        timeout_seconds=settings.provider_timeout_seconds,
    )
