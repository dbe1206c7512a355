"""SQLAlchemy ORM models for the Quipslop database.

Tables: engine_state (singleton), rounds, viewer_votes, viewer_vote_tallies,
viewer_presence, viewer_count_shards, telegram_round_polls,
integration_status, llm_usage_events.

Every per-round table carries ``generation`` so a reset can purge the
superseded epoch in batches. Timestamps the engine compares against are
stored as epoch milliseconds.
"""

from __future__ import annotations

import time
import uuid
from datetime import UTC, datetime

from sqlalchemy import (
    BigInteger,
    Boolean,
    DateTime,
    Float,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.dialects.sqlite import JSON
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

ENGINE_STATE_KEY = "main"
TELEGRAM_STATUS_KEY = "telegram"


def _uuid() -> str:
    return str(uuid.uuid4())


def now_ms() -> int:
    """Current wall-clock time in epoch milliseconds."""
    return int(time.time() * 1000)


class Base(DeclarativeBase):
    """Base class for all ORM models."""


class EngineStateRow(Base):
    __tablename__ = "engine_state"

    key: Mapped[str] = mapped_column(String(20), primary_key=True, default=ENGINE_STATE_KEY)
    generation: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    is_paused: Mapped[bool] = mapped_column(Boolean, default=False)
    done: Mapped[bool] = mapped_column(Boolean, default=False)
    runs_mode: Mapped[str] = mapped_column(String(10), default="infinite")
    total_rounds: Mapped[int | None] = mapped_column(Integer, nullable=True)
    next_round_num: Mapped[int] = mapped_column(Integer, default=1)
    active_round_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    last_completed_round_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    scores: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    human_scores: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    human_vote_totals: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    completed_rounds: Mapped[int] = mapped_column(Integer, default=0)
    runner_lease_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    runner_lease_until: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    timing: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    updated_at: Mapped[int] = mapped_column(BigInteger, default=now_ms)

    @property
    def is_finite(self) -> bool:
        return self.runs_mode == "finite" and self.total_rounds is not None

    def lease_valid(self, lease_id: str | None = None, at_ms: int | None = None) -> bool:
        """True if a lease is held (by *lease_id*, when given) and unexpired."""
        if not self.runner_lease_id or not self.runner_lease_until:
            return False
        if lease_id is not None and self.runner_lease_id != lease_id:
            return False
        return self.runner_lease_until > (now_ms() if at_ms is None else at_ms)


class RoundRow(Base):
    __tablename__ = "rounds"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    generation: Mapped[int] = mapped_column(Integer, nullable=False)
    num: Mapped[int] = mapped_column(Integer, nullable=False)
    phase: Mapped[str] = mapped_column(String(12), nullable=False, default="prompting")
    prompter: Mapped[dict] = mapped_column(JSON, nullable=False)
    prompt_task: Mapped[dict] = mapped_column(JSON, nullable=False)
    prompt: Mapped[str | None] = mapped_column(Text, nullable=True)
    contestants: Mapped[list] = mapped_column(JSON, nullable=False)
    answer_tasks: Mapped[list] = mapped_column(JSON, nullable=False)
    votes: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    score_a: Mapped[int | None] = mapped_column(Integer, nullable=True)
    score_b: Mapped[int | None] = mapped_column(Integer, nullable=True)
    viewer_votes_a: Mapped[int | None] = mapped_column(Integer, nullable=True)
    viewer_votes_b: Mapped[int | None] = mapped_column(Integer, nullable=True)
    voting_started_at_ms: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    viewer_voting_ends_at: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    created_at_ms: Mapped[int] = mapped_column(BigInteger, default=now_ms)
    completed_at_ms: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    updated_at: Mapped[int] = mapped_column(BigInteger, default=now_ms)

    __table_args__ = (
        UniqueConstraint("generation", "num", name="uq_round_generation_num"),
        Index("ix_rounds_generation_completed", "generation", "completed_at_ms"),
        Index("ix_rounds_generation_phase", "generation", "phase"),
    )


class ViewerVoteRow(Base):
    """Idempotency record: one counted vote per (round, viewer)."""

    __tablename__ = "viewer_votes"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    generation: Mapped[int] = mapped_column(Integer, nullable=False)
    round_id: Mapped[str] = mapped_column(String(36), nullable=False)
    viewer_id: Mapped[str] = mapped_column(String(100), nullable=False)
    side: Mapped[str] = mapped_column(String(1), nullable=False)
    shard: Mapped[int] = mapped_column(Integer, nullable=False)
    updated_at: Mapped[int] = mapped_column(BigInteger, default=now_ms)

    __table_args__ = (
        UniqueConstraint("round_id", "viewer_id", name="uq_viewer_vote_round_viewer"),
        Index("ix_viewer_votes_generation", "generation"),
    )


class ViewerVoteTallyRow(Base):
    __tablename__ = "viewer_vote_tallies"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    generation: Mapped[int] = mapped_column(Integer, nullable=False)
    round_id: Mapped[str] = mapped_column(String(36), nullable=False)
    side: Mapped[str] = mapped_column(String(1), nullable=False)
    shard: Mapped[int] = mapped_column(Integer, nullable=False)
    count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    updated_at: Mapped[int] = mapped_column(BigInteger, default=now_ms)

    __table_args__ = (
        UniqueConstraint("round_id", "side", "shard", name="uq_tally_round_side_shard"),
        Index("ix_viewer_vote_tallies_generation", "generation"),
    )


class ViewerPresenceRow(Base):
    __tablename__ = "viewer_presence"

    viewer_id: Mapped[str] = mapped_column(String(100), primary_key=True)
    page: Mapped[str] = mapped_column(String(10), nullable=False, default="live")
    expires_at_ms: Mapped[int] = mapped_column(BigInteger, nullable=False)
    last_seen_at_ms: Mapped[int] = mapped_column(BigInteger, nullable=False)
    count_shard: Mapped[int] = mapped_column(Integer, nullable=False)

    __table_args__ = (Index("ix_viewer_presence_expires", "expires_at_ms"),)


class ViewerCountShardRow(Base):
    __tablename__ = "viewer_count_shards"

    shard: Mapped[int] = mapped_column(Integer, primary_key=True)
    count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    updated_at: Mapped[int] = mapped_column(BigInteger, default=now_ms)


class TelegramRoundPollRow(Base):
    """A Telegram poll mirroring one round's A/B choice."""

    __tablename__ = "telegram_round_polls"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    generation: Mapped[int] = mapped_column(Integer, nullable=False)
    round_id: Mapped[str] = mapped_column(String(36), nullable=False, unique=True)
    poll_id: Mapped[str] = mapped_column(String(100), nullable=False, unique=True)
    chat_id: Mapped[str] = mapped_column(String(100), nullable=False)
    message_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    votes_a: Mapped[int] = mapped_column(Integer, default=0)
    votes_b: Mapped[int] = mapped_column(Integer, default=0)
    status: Mapped[str] = mapped_column(String(10), default="active")
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=lambda: datetime.now(UTC))
    updated_at: Mapped[int] = mapped_column(BigInteger, default=now_ms)

    __table_args__ = (Index("ix_telegram_round_polls_generation", "generation"),)


class IntegrationStatusRow(Base):
    """Polling bookkeeping and last configuration error of an integration."""

    __tablename__ = "integration_status"

    key: Mapped[str] = mapped_column(String(50), primary_key=True)
    last_polled_at_ms: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    last_update_id: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    updated_at: Mapped[int] = mapped_column(BigInteger, default=now_ms)


class LLMUsageEventRow(Base):
    """One provider call: who, what for, how long, whether it worked."""

    __tablename__ = "llm_usage_events"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    generation: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    round_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    call_type: Mapped[str] = mapped_column(String(20), nullable=False)
    model_id: Mapped[str] = mapped_column(String(100), nullable=False)
    attempt: Mapped[int] = mapped_column(Integer, default=1)
    input_tokens: Mapped[int] = mapped_column(Integer, default=0)
    output_tokens: Mapped[int] = mapped_column(Integer, default=0)
    latency_ms: Mapped[float] = mapped_column(Float, default=0.0)
    success: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=lambda: datetime.now(UTC))

    __table_args__ = (Index("ix_llm_usage_events_generation", "generation"),)
