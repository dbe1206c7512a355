"""Shared test fixtures."""

import pytest

from quipslop.ai.provider import Completion, ProviderClient, ProviderError
from quipslop.config import Settings
from quipslop.core import round_store
from quipslop.core.admin import load_state
from quipslop.core.event_bus import EventBus
from quipslop.core.runtime import build_runtime
from quipslop.db.engine import create_engine, get_session, init_schema
from quipslop.db.repository import Repository
from quipslop.models.catalog import MODELS


class ScriptedProvider(ProviderClient):
    """Offline backend whose replies are chosen by the test.

    Answers are ``"<model id> punchline"``. Judges vote for whichever
    displayed answer is ``favorite`` (the first one when unset). Call kinds
    listed in ``fail`` raise ``ProviderError``.
    """

    name = "scripted"

    def __init__(self, prompt: str = "The worst thing to say at a wedding", fail=()):
        self.prompt = prompt
        self.fail = set(fail)
        self.favorite: str | None = None
        self.calls: list[tuple[str, str]] = []

    async def complete(self, model_id: str, system: str, prompt: str) -> Completion:
        if "Reply with just A or B" in prompt:
            kind = "vote"
        elif prompt.startswith("Fill in the blank"):
            kind = "answer"
        else:
            kind = "prompt"
        self.calls.append((kind, model_id))
        if kind in self.fail:
            raise ProviderError(f"{kind} failed for {model_id}")
        if kind == "prompt":
            return Completion(text=self.prompt, input_tokens=12, output_tokens=8)
        if kind == "answer":
            return Completion(text=f"{model_id} punchline", input_tokens=20, output_tokens=4)
        if self.favorite is not None and f'Answer B: "{self.favorite}"' in prompt:
            return Completion(text="B")
        return Completion(text="A")

    def count(self, kind: str) -> int:
        return sum(1 for k, _ in self.calls if k == kind)


@pytest.fixture
def settings(tmp_path) -> Settings:
    """Test settings: a temp-file database and near-instant pacing."""
    return Settings(
        _env_file=None,
        quipslop_env="development",
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'quipslop.db'}",
        provider_backend="mock",
        viewer_vote_window_active_seconds=0.1,
        viewer_vote_window_idle_seconds=0.3,
        post_round_delay_seconds=0,
        paused_poll_seconds=0.01,
        create_round_backoff_seconds=0.01,
        voting_poll_max_seconds=0.05,
        retry_backoff_seconds=0,
        scheduler_tick_seconds=60,
    )


@pytest.fixture
async def engine(settings):
    engine = create_engine(settings.database_url)
    await init_schema(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
async def repo(engine):
    async with get_session(engine) as session:
        yield Repository(session)


@pytest.fixture
def provider() -> ScriptedProvider:
    return ScriptedProvider()


@pytest.fixture
async def rt(engine, settings, provider):
    runtime = build_runtime(engine, settings, EventBus(), provider, seed=7)
    await load_state(runtime)
    yield runtime
    await runtime.drain()


@pytest.fixture
async def voting_round(rt):
    """A round of generation 1 sitting in its voting phase. Returns its id."""
    prompter, cont_a, cont_b, judge = MODELS[:4]
    rnd = await round_store.start_round(rt.engine, 1, prompter, [cont_a, cont_b])
    assert rnd is not None
    await round_store.set_prompt_result(rt.engine, 1, rnd.id, "A bad name for a cat")
    await round_store.start_answering(rt.engine, 1, rnd.id)
    await round_store.set_answer_result(rt.engine, 1, rnd.id, 0, result="Sir Hisses")
    await round_store.set_answer_result(rt.engine, 1, rnd.id, 1, result="Dog")
    timing = round_store.effective_timing(rt.settings).model_copy(
        update={"viewer_vote_window_idle_seconds": 600.0}
    )
    ends_at = await round_store.start_voting(rt.engine, 1, rnd.id, [prompter, judge], timing)
    assert ends_at is not None
    return rnd.id


@pytest.fixture
def make_provider():
    """The scripted provider class, for tests that need their own instance."""
    return ScriptedProvider
