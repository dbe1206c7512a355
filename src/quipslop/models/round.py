"""Round and live-state models: the shapes spectators and admins see.

Field names are snake_case in Python and camelCase on the wire
(``model_dump(by_alias=True)``). Timestamps are epoch milliseconds.
"""

from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

from quipslop.models.catalog import Model

Side = Literal["A", "B"]
Phase = Literal["prompting", "answering", "voting", "done"]

PHASE_ORDER: dict[str, int] = {"prompting": 0, "answering": 1, "voting": 2, "done": 3}

NO_ANSWER = "[no answer]"


class WireModel(BaseModel):
    """Base for models serialized to clients in camelCase."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_wire(self) -> dict:
        return self.model_dump(by_alias=True, mode="json")


class TaskInfo(WireModel):
    """One asynchronous unit of work (a prompt or an answer)."""

    model: Model
    started_at: int
    finished_at: int | None = None
    result: str | None = None
    error: str | None = None


class VoteInfo(WireModel):
    """One model's vote. ``voted_for_side`` is the true contestant side."""

    voter: Model
    started_at: int
    finished_at: int | None = None
    voted_for_side: Side | None = None
    error: bool | None = None


class RoundState(WireModel):
    """Client view of a Round Aggregate."""

    id: str
    generation: int
    num: int
    phase: Phase
    prompter: Model
    prompt_task: TaskInfo
    prompt: str | None = None
    contestants: list[Model]
    answer_tasks: list[TaskInfo]
    votes: list[VoteInfo] = []
    score_a: int | None = None
    score_b: int | None = None
    viewer_votes_a: int | None = None
    viewer_votes_b: int | None = None
    viewer_voting_ends_at: int | None = None
    created_at: int
    completed_at: int | None = None


class GameState(WireModel):
    active: RoundState | None = None
    last_completed: RoundState | None = None
    scores: dict[str, int]
    human_scores: dict[str, int]
    human_vote_totals: dict[str, int]
    done: bool = False
    is_paused: bool = False
    generation: int = 1


class LiveStatePayload(WireModel):
    """Snapshot pushed to spectators.

    No ``active`` round plus a ``last_completed`` round means the show is
    between rounds.
    """

    data: GameState
    total_rounds: int | None = None
    viewer_count: int = 0


class TelegramStatus(WireModel):
    enabled: bool
    channel_id: str
    has_bot_token: bool
    token_preview: str | None = None
    last_polled_at: int | None = None
    last_error: str | None = None


class AdminSnapshot(WireModel):
    is_paused: bool
    is_running_round: bool
    done: bool
    generation: int
    completed_in_memory: int
    persisted_rounds: int
    viewer_count: int
    active_model_count: int
    can_run_rounds: bool
    run_blocked_reason: Literal["insufficient_active_models"] | None = None
    lease_active: bool = False
    telegram: TelegramStatus | None = None


class RoundTiming(WireModel):
    """Round pacing, in seconds. Admin overrides are stored on Engine State."""

    viewer_vote_window_active_seconds: float
    viewer_vote_window_idle_seconds: float
    post_round_delay_seconds: float
