"""Model catalog: the roster of contestants.

A Model is one external text generator; the Roster is the active subset.
"""

from __future__ import annotations

import re
from collections.abc import Iterable, Mapping

from pydantic import BaseModel, ConfigDict, field_validator

DEFAULT_MODEL_COLOR = "#A1A1A1"

_HEX_COLOR_RE = re.compile(r"^#[0-9a-fA-F]{6}$")

# A round needs a prompter and two contestants; every other model votes.
MIN_ACTIVE_MODELS = 3


def normalize_hex_color(value: str | None) -> str:
    """Return an uppercase ``#RRGGBB`` color, or the default gray."""
    candidate = (value or "").strip()
    if _HEX_COLOR_RE.match(candidate):
        return candidate.upper()
    return DEFAULT_MODEL_COLOR


class Model(BaseModel):
    """An external text-generation model taking part in the show."""

    model_config = ConfigDict(frozen=True)

    id: str  # provider identifier, e.g. "openai/gpt-5.2"
    name: str  # display name, also the key of every score mapping
    color: str = DEFAULT_MODEL_COLOR

    @field_validator("color", mode="before")
    @classmethod
    def _normalize_color(cls, value: str | None) -> str:
        return normalize_hex_color(value)


MODELS: list[Model] = [
    Model(id="google/gemini-3-flash", name="Gemini 3 Flash", color="#06B6D4"),
    Model(id="moonshotai/kimi-k2", name="Kimi K2", color="#22C55E"),
    Model(id="deepseek/deepseek-v3.2", name="DeepSeek 3.2", color="#3B82F6"),
    Model(id="qwen/qwen3.5-plus-02-15", name="Qwen 3.5 Plus", color="#A855F7"),
    Model(id="z-ai/glm-5", name="GLM-5", color="#14B8A6"),
    Model(id="openai/gpt-5.2", name="GPT-5.2", color="#10A37F"),
    Model(id="anthropic/claude-sonnet-4.6", name="Sonnet 4.6", color="#F97316"),
    Model(id="x-ai/grok-4.1-fast", name="Grok 4.1", color="#F43F5E"),
]


def active_roster(enabled_ids: Iterable[str] | None = None) -> list[Model]:
    """Models eligible for the next round, in catalog order.

    An empty or missing selection means the whole catalog. Unknown ids are
    ignored.
    """
    wanted = set(enabled_ids or ())
    if not wanted:
        return list(MODELS)
    return [m for m in MODELS if m.id in wanted]


def default_scores(models: Iterable[Model] | None = None) -> dict[str, int]:
    """A zeroed score for every catalog model (never an empty mapping)."""
    return {m.name: 0 for m in (MODELS if models is None else models)}


def normalize_scores(raw: Mapping[str, object] | None) -> dict[str, int]:
    """Overlay stored scores on the zeroed defaults, coercing junk to 0."""
    scores = default_scores()
    for name, value in (raw or {}).items():
        try:
            scores[name] = int(value)  # type: ignore[call-overload]
        except (TypeError, ValueError):
            scores[name] = 0
    return scores
