"""Tests for the text-generation backends, over mocked HTTP transports."""

import json
import random

import anthropic
import httpx
import pytest

from quipslop.ai.provider import (
    AnthropicProvider,
    MockProvider,
    OpenRouterProvider,
    ProviderError,
    anthropic_model_name,
    create_provider,
)
from quipslop.config import Settings


def _openrouter(handler) -> OpenRouterProvider:
    client = httpx.AsyncClient(
        base_url="https://openrouter.test/api/v1", transport=httpx.MockTransport(handler)
    )
    return OpenRouterProvider("sk-test", reasoning_effort="low", client=client)


def _anthropic(handler) -> AnthropicProvider:
    client = anthropic.AsyncAnthropic(
        api_key="sk-ant-test",
        max_retries=0,
        http_client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
    )
    return AnthropicProvider("sk-ant-test", client=client)


class TestOpenRouterProvider:
    async def test_completion(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["path"] = request.url.path
            seen["body"] = json.loads(request.content)
            return httpx.Response(
                200,
                json={
                    "choices": [{"message": {"content": "Damp Cardboard"}}],
                    "usage": {"prompt_tokens": 40, "completion_tokens": 3},
                },
            )

        provider = _openrouter(handler)
        completion = await provider.complete("openai/gpt-5.2", "be funny", "Fill in the blank: x")
        await provider.aclose()

        assert completion.text == "Damp Cardboard"
        assert (completion.input_tokens, completion.output_tokens) == (40, 3)
        assert seen["path"] == "/api/v1/chat/completions"
        assert seen["body"]["model"] == "openai/gpt-5.2"
        assert seen["body"]["reasoning"] == {"effort": "low"}
        assert [m["role"] for m in seen["body"]["messages"]] == ["system", "user"]

    async def test_http_error(self):
        provider = _openrouter(lambda request: httpx.Response(429, text="slow down"))
        with pytest.raises(ProviderError, match="HTTP 429"):
            await provider.complete("openai/gpt-5.2", "s", "p")

    async def test_empty_content(self):
        provider = _openrouter(
            lambda request: httpx.Response(200, json={"choices": [{"message": {"content": "  "}}]})
        )
        with pytest.raises(ProviderError, match="empty response"):
            await provider.complete("openai/gpt-5.2", "s", "p")

    async def test_malformed_payload(self):
        provider = _openrouter(lambda request: httpx.Response(200, json={"choices": []}))
        with pytest.raises(ProviderError, match="malformed"):
            await provider.complete("openai/gpt-5.2", "s", "p")

    async def test_transport_error(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("refused", request=request)

        with pytest.raises(ProviderError):
            await _openrouter(handler).complete("openai/gpt-5.2", "s", "p")


class TestAnthropicProvider:
    def test_model_name_mapping(self):
        assert anthropic_model_name("anthropic/claude-sonnet-4.6") == "claude-sonnet-4-6"
        assert anthropic_model_name("claude-haiku-4-5") == "claude-haiku-4-5"

    async def test_completion(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["body"] = json.loads(request.content)
            return httpx.Response(
                200,
                json={
                    "id": "msg_1",
                    "type": "message",
                    "role": "assistant",
                    "model": "claude-sonnet-4-6",
                    "content": [{"type": "text", "text": "Sir Hisses"}],
                    "stop_reason": "end_turn",
                    "stop_sequence": None,
                    "usage": {"input_tokens": 11, "output_tokens": 4},
                },
            )

        completion = await _anthropic(handler).complete("anthropic/claude-sonnet-4.6", "s", "p")
        assert completion.text == "Sir Hisses"
        assert completion.output_tokens == 4
        assert seen["body"]["model"] == "claude-sonnet-4-6"
        assert seen["body"]["system"] == "s"

    async def test_api_error(self):
        provider = _anthropic(
            lambda request: httpx.Response(
                500, json={"type": "error", "error": {"type": "api_error", "message": "down"}}
            )
        )
        with pytest.raises(ProviderError):
            await provider.complete("anthropic/claude-sonnet-4.6", "s", "p")


class TestMockProvider:
    async def test_recognizes_call_kinds(self):
        provider = MockProvider(random.Random(1))
        vote = await provider.complete("m", "s", "Which is funnier? Reply with just A or B.")
        assert vote.text in ("A", "B")
        answer = await provider.complete("m", "s", "Fill in the blank: x")
        assert len(answer.text) >= 3
        prompt = await provider.complete("m", "s", "Write one prompt")
        assert len(prompt.text) >= 10


class TestCreateProvider:
    def test_selects_backend(self):
        assert isinstance(create_provider(Settings(_env_file=None, provider_backend="mock")), MockProvider)
        s = Settings(_env_file=None, provider_backend="openrouter", openrouter_api_key="k")
        assert isinstance(create_provider(s), OpenRouterProvider)
        s = Settings(_env_file=None, provider_backend="anthropic", anthropic_api_key="k")
        assert isinstance(create_provider(s), AnthropicProvider)
