"""Application settings via pydantic-settings. Loads from environment and .env file."""

from __future__ import annotations

from pydantic import model_validator
from pydantic_settings import BaseSettings

VALID_PROVIDER_BACKENDS = frozenset({"openrouter", "anthropic", "mock"})

# Shards for viewer vote tallies and live viewer counts. Changing this
# re-buckets every stored counter, so it is a constant rather than a setting.
VIEWER_SHARD_COUNT = 64


class Settings(BaseSettings):
    """Quipslop application configuration.

    All values can be overridden via environment variables or .env file.
    Durations are in seconds.
    """

    # Database
    database_url: str = "sqlite+aiosqlite:///quipslop.db"

    # Environment
    quipslop_env: str = "development"
    quipslop_log_level: str = "INFO"

    # Model providers
    provider_backend: str = "openrouter"
    openrouter_api_key: str = ""
    openrouter_base_url: str = "https://openrouter.ai/api/v1"
    openrouter_reasoning_effort: str = "medium"
    anthropic_api_key: str = ""
    provider_timeout_seconds: float = 60.0

    # Game
    quipslop_total_rounds: int | None = None  # None = run forever
    enabled_model_ids: list[str] = []

    # Round timing
    viewer_vote_window_active_seconds: float = 30.0
    viewer_vote_window_idle_seconds: float = 120.0
    post_round_delay_seconds: float = 5.0
    runner_lease_seconds: float = 60.0
    lease_renew_interval_seconds: float = 20.0
    paused_poll_seconds: float = 1.0
    create_round_backoff_seconds: float = 0.3
    voting_poll_max_seconds: float = 1.0
    retry_backoff_seconds: float = 1.0

    # Viewers
    viewer_session_ttl_seconds: float = 30.0
    viewer_reaper_batch: int = 500

    # Reset purge
    purge_batch_size: int = 200

    # Scheduler
    scheduler_tick_seconds: float = 5.0
    auto_start: bool = True

    # Admin
    admin_secret: str = ""

    # Telegram poll bridge
    telegram_enabled: bool = False
    telegram_bot_token: str = ""
    telegram_channel_id: str = ""
    telegram_poll_interval_seconds: float = 3.0

    model_config = {"env_prefix": "", "env_file": ".env", "extra": "ignore"}

    @model_validator(mode="after")
    def _check_provider_backend(self) -> Settings:
        if self.provider_backend not in VALID_PROVIDER_BACKENDS:
            msg = (
                f"PROVIDER_BACKEND must be one of {sorted(VALID_PROVIDER_BACKENDS)}, "
                f"got {self.provider_backend!r}"
            )
            raise ValueError(msg)
        return self

    @model_validator(mode="after")
    def _check_lease_cadence(self) -> Settings:
        """The lease must survive at least three missed renewals."""
        if self.runner_lease_seconds < 3 * self.lease_renew_interval_seconds:
            msg = (
                "RUNNER_LEASE_SECONDS must be at least 3x LEASE_RENEW_INTERVAL_SECONDS "
                f"(got {self.runner_lease_seconds} vs {self.lease_renew_interval_seconds})"
            )
            raise ValueError(msg)
        return self

    @property
    def is_finite(self) -> bool:
        return self.quipslop_total_rounds is not None

    def require_provider_credentials(self) -> None:
        """Refuse to start when the selected provider backend has no credential."""
        if self.provider_backend == "openrouter" and not self.openrouter_api_key:
            raise RuntimeError("Missing required environment variable: OPENROUTER_API_KEY")
        if self.provider_backend == "anthropic" and not self.anthropic_api_key:
            raise RuntimeError("Missing required environment variable: ANTHROPIC_API_KEY")
