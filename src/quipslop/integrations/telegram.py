"""Telegram poll bridge.

When a round opens voting, a two-option anonymous poll is posted to the
configured channel. ``poll_updates`` (an APScheduler interval job) reads
``getUpdates`` and feeds each poll's absolute option counts into
``sync_poll_counts``, which applies only the change since the last read.
When the round completes the poll is stopped and its final counts synced.

Failures are stored as ``last_error`` on the ``integration_status`` row
(key "telegram") and shown on the admin status endpoint. They never reach
the round runner.
"""

from __future__ import annotations

import asyncio
import logging
import re
from typing import Any

import httpx

from quipslop.config import Settings
from quipslop.core.event_bus import ROUND_COMPLETED, VOTING_STARTED
from quipslop.core.runtime import Runtime
from quipslop.core.tally import sync_poll_counts
from quipslop.db.engine import get_session
from quipslop.db.models import TELEGRAM_STATUS_KEY, now_ms
from quipslop.db.repository import Repository

logger = logging.getLogger(__name__)

API_BASE = "https://api.telegram.org"
ALLOWED_UPDATES = [
    "poll",
    "message",
    "edited_message",
    "channel_post",
    "edited_channel_post",
]
MAX_UPDATES_PER_POLL = 100
POLL_QUESTION_MAX_LENGTH = 300
POLL_OPTION_MAX_LENGTH = 100
_POLL_CONTAINERS = ("message", "edited_message", "channel_post", "edited_channel_post")
_WHITESPACE_RE = re.compile(r"\s+")


class TelegramError(Exception):
    """The Bot API answered ``ok: false`` or could not be reached."""


def is_telegram_configured(settings: Settings) -> bool:
    return bool(
        settings.telegram_enabled
        and settings.telegram_bot_token.strip()
        and settings.telegram_channel_id.strip()
    )


def normalize_poll_text(value: str | None) -> str:
    return _WHITESPACE_RE.sub(" ", value or "").strip()


def truncate_poll_text(value: str, max_length: int) -> str:
    if max_length <= 0:
        return ""
    if len(value) <= max_length:
        return value
    if max_length <= 3:
        return value[:max_length]
    return value[: max_length - 3] + "..."


def build_poll_question(round_num: int, prompt: str | None) -> str:
    text = normalize_poll_text(prompt)
    if not text:
        return truncate_poll_text(f"Round {round_num} - Vote for the best", POLL_QUESTION_MAX_LENGTH)
    return truncate_poll_text(f"Round {round_num} - Prompt: {text}", POLL_QUESTION_MAX_LENGTH)


def build_poll_option(label: str, contestant: str | None, answer: str | None) -> str:
    name = normalize_poll_text(contestant) or "Model"
    prefix = f"{label} - {name}: "
    available = POLL_OPTION_MAX_LENGTH - len(prefix)
    if available <= 0:
        return truncate_poll_text(prefix, POLL_OPTION_MAX_LENGTH)
    return prefix + truncate_poll_text(normalize_poll_text(answer) or "[no answer]", available)


def extract_polls(update: dict[str, Any]) -> list[dict[str, Any]]:
    """Every poll object carried by one update, wherever it sits."""
    polls = []
    if update.get("poll"):
        polls.append(update["poll"])
    for container in _POLL_CONTAINERS:
        poll = (update.get(container) or {}).get("poll")
        if poll:
            polls.append(poll)
    return polls


def option_counts(poll: dict[str, Any]) -> tuple[int, int]:
    options = poll.get("options") or []

    def _count(index: int) -> int:
        try:
            return max(0, int(options[index].get("voter_count") or 0))
        except (IndexError, TypeError, ValueError):
            return 0

    return _count(0), _count(1)


class TelegramBridge:
    """Mirrors rounds to Telegram polls and feeds poll votes back."""

    def __init__(self, rt: Runtime, client: httpx.AsyncClient | None = None) -> None:
        self.rt = rt
        self.settings = rt.settings
        self._client = client or httpx.AsyncClient(timeout=httpx.Timeout(15.0, connect=5.0))
        self._listener: asyncio.Task[None] | None = None

    @property
    def configured(self) -> bool:
        return is_telegram_configured(self.settings)

    # --- Lifecycle ---

    def start(self) -> None:
        if self._listener is None or self._listener.done():
            self._listener = asyncio.create_task(self._listen(), name="telegram-event-listener")

    async def close(self) -> None:
        if self._listener is not None:
            self._listener.cancel()
            await asyncio.gather(self._listener, return_exceptions=True)
            self._listener = None
        await self._client.aclose()

    async def _listen(self) -> None:
        async with self.rt.event_bus.subscribe(None) as subscription:
            async for event in subscription:
                try:
                    await self.dispatch(event)
                except Exception:  # Last-resort handler: the listener must survive
                    logger.exception("telegram_event_dispatch_error event=%s", event.get("type"))

    async def dispatch(self, event: dict[str, Any]) -> None:
        data = event.get("data") or {}
        if event.get("type") == VOTING_STARTED:
            await self.open_round_poll(data["round_id"])
        elif event.get("type") == ROUND_COMPLETED:
            await self.close_round_poll(data["round_id"])

    # --- Bot API ---

    async def _call(self, method: str, payload: dict[str, Any]) -> Any:
        token = self.settings.telegram_bot_token.strip()
        try:
            response = await self._client.post(f"{API_BASE}/bot{token}/{method}", json=payload)
            body = response.json()
        except (httpx.HTTPError, ValueError) as e:
            raise TelegramError(f"{method}: {e}") from e
        if not body.get("ok"):
            raise TelegramError(f"{method}: {body.get('description') or response.status_code}")
        return body.get("result")

    # --- Status bookkeeping ---

    async def _set_error(self, message: str) -> None:
        logger.warning("telegram_error %s", message)
        async with get_session(self.rt.engine) as session:
            status = await Repository(session).get_or_create_integration_status(TELEGRAM_STATUS_KEY)
            status.last_error = message
            status.last_polled_at_ms = now_ms()
            status.updated_at = now_ms()

    async def _record_success(self, last_update_id: int | None = None) -> None:
        async with get_session(self.rt.engine) as session:
            status = await Repository(session).get_or_create_integration_status(TELEGRAM_STATUS_KEY)
            status.last_polled_at_ms = now_ms()
            if last_update_id is not None:
                status.last_update_id = last_update_id
            status.last_error = None
            status.updated_at = now_ms()

    async def _check_configuration(self) -> bool:
        """False when disabled; records an error when enabled but incomplete."""
        if not self.settings.telegram_enabled:
            return False
        if not self.configured:
            await self._set_error("Telegram bot token and channel id are required when enabled")
            return False
        return True

    # --- Round polls ---

    async def open_round_poll(self, round_id: str) -> str | None:
        """Post the round's poll. Returns the poll id, or None when skipped."""
        if not await self._check_configuration():
            return None
        async with get_session(self.rt.engine) as session:
            repo = Repository(session)
            rnd = await repo.get_round(round_id)
            existing = await repo.get_poll_by_round(round_id)
        if rnd is None or rnd.phase != "voting" or existing is not None:
            return None

        answers = [t.get("result") for t in rnd.answer_tasks]
        try:
            message = await self._call(
                "sendPoll",
                {
                    "chat_id": self.settings.telegram_channel_id.strip(),
                    "question": build_poll_question(rnd.num, rnd.prompt),
                    "options": [
                        build_poll_option("1", rnd.contestants[0]["name"], answers[0]),
                        build_poll_option("2", rnd.contestants[1]["name"], answers[1]),
                    ],
                    "is_anonymous": True,
                    "allows_multiple_answers": False,
                },
            )
            poll_id = (message.get("poll") or {}).get("id")
            if not poll_id:
                raise TelegramError("sendPoll returned no poll id")
        except TelegramError as e:
            await self._set_error(str(e))
            return None

        generation = rnd.generation

        async def _store(repo: Repository) -> None:
            await repo.add_poll(
                generation=generation,
                round_id=round_id,
                poll_id=poll_id,
                chat_id=str(message["chat"]["id"]),
                message_id=int(message["message_id"]),
            )

        async with get_session(self.rt.engine) as session:
            await Repository(session).write_if_generation_matches(generation, _store)
        logger.info("telegram_poll_opened round=%s poll=%s", round_id, poll_id)
        return poll_id

    async def close_round_poll(self, round_id: str) -> bool:
        """Stop the round's poll and apply its final counts."""
        async with get_session(self.rt.engine) as session:
            poll = await Repository(session).get_poll_by_round(round_id)
        if poll is None or poll.status in ("closed", "deleted"):
            return False
        if not self.settings.telegram_bot_token.strip():
            await self._set_poll_status(round_id, "error", "Telegram bot token missing while closing poll")
            await self._set_error("Telegram bot token missing while closing poll")
            return False

        try:
            result = await self._call(
                "stopPoll", {"chat_id": poll.chat_id, "message_id": poll.message_id}
            )
        except TelegramError as e:
            if "poll has already been closed" not in str(e).lower():
                await self._set_poll_status(round_id, "error", str(e))
                await self._set_error(str(e))
                return False
        else:
            votes_a, votes_b = option_counts(result or {})
            await sync_poll_counts(self.rt.engine, poll.poll_id, votes_a, votes_b)
        await self._set_poll_status(round_id, "closed", None)
        logger.info("telegram_poll_closed round=%s poll=%s", round_id, poll.poll_id)
        return True

    async def _set_poll_status(self, round_id: str, status: str, error: str | None) -> None:
        async with get_session(self.rt.engine) as session:
            poll = await Repository(session).get_poll_by_round(round_id)
            if poll is not None:
                poll.status = status
                poll.last_error = error
                poll.updated_at = now_ms()

    # --- Update polling ---

    async def poll_updates(self) -> int:
        """Fetch pending updates and sync every poll snapshot in them.

        Returns the number of poll snapshots applied. Errors are recorded,
        never raised.
        """
        if not await self._check_configuration():
            return 0
        async with get_session(self.rt.engine) as session:
            status = await Repository(session).get_integration_status(TELEGRAM_STATUS_KEY)
        offset = status.last_update_id + 1 if status and status.last_update_id is not None else None

        payload: dict[str, Any] = {"limit": MAX_UPDATES_PER_POLL, "allowed_updates": ALLOWED_UPDATES}
        if offset is not None:
            payload["offset"] = offset
        try:
            try:
                updates = await self._call("getUpdates", payload)
            except TelegramError as e:
                if "webhook is active" not in str(e).lower():
                    raise
                await self._call("deleteWebhook", {"drop_pending_updates": False})
                updates = await self._call("getUpdates", payload)
        except TelegramError as e:
            await self._set_error(str(e))
            return 0

        synced = 0
        max_update_id: int | None = None
        for update in updates or []:
            for poll in extract_polls(update):
                if not poll.get("id"):
                    continue
                votes_a, votes_b = option_counts(poll)
                if await sync_poll_counts(self.rt.engine, str(poll["id"]), votes_a, votes_b):
                    synced += 1
            update_id = update.get("update_id")
            if isinstance(update_id, int):
                max_update_id = update_id if max_update_id is None else max(max_update_id, update_id)

        await self._record_success(max_update_id)
        if synced:
            await self.rt.state_changed("telegram_votes_synced", count=synced)
        return synced
