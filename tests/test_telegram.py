"""Tests for the Telegram poll bridge, over a mocked Bot API."""

import asyncio
import json

import httpx
import pytest

from quipslop.core.event_bus import VOTING_STARTED
from quipslop.core.tally import read_round_tallies
from quipslop.db.engine import get_session
from quipslop.db.models import TELEGRAM_STATUS_KEY
from quipslop.db.repository import Repository
from quipslop.integrations.telegram import (
    POLL_OPTION_MAX_LENGTH,
    POLL_QUESTION_MAX_LENGTH,
    TelegramBridge,
    build_poll_option,
    build_poll_question,
    extract_polls,
    is_telegram_configured,
    option_counts,
)

TOKEN = "123456:ABCDEF"


class FakeBotApi:
    """Records Bot API calls and answers from a per-method script."""

    def __init__(self):
        self.calls: list[tuple[str, dict]] = []
        self.responses: dict[str, list[dict]] = {}

    def script(self, method: str, *bodies: dict) -> None:
        self.responses.setdefault(method, []).extend(bodies)

    def methods(self) -> list[str]:
        return [m for m, _ in self.calls]

    def handler(self, request: httpx.Request) -> httpx.Response:
        assert request.url.path.startswith(f"/bot{TOKEN}/")
        method = request.url.path.rsplit("/", 1)[-1]
        self.calls.append((method, json.loads(request.content)))
        queued = self.responses.get(method) or [{"ok": True, "result": True}]
        body = queued.pop(0) if len(queued) > 1 else queued[0]
        return httpx.Response(200, json=body)


def _poll(poll_id: str, votes_a: int, votes_b: int) -> dict:
    return {
        "id": poll_id,
        "options": [{"text": "1", "voter_count": votes_a}, {"text": "2", "voter_count": votes_b}],
    }


@pytest.fixture
def bot_api() -> FakeBotApi:
    return FakeBotApi()


@pytest.fixture
async def bridge(rt, settings, bot_api):
    settings.telegram_enabled = True
    settings.telegram_bot_token = TOKEN
    settings.telegram_channel_id = "@quipslop"
    bridge = TelegramBridge(rt, client=httpx.AsyncClient(transport=httpx.MockTransport(bot_api.handler)))
    yield bridge
    await bridge.close()


async def _status(rt):
    async with get_session(rt.engine) as session:
        return await Repository(session).get_integration_status(TELEGRAM_STATUS_KEY)


async def _poll_row(rt, round_id):
    async with get_session(rt.engine) as session:
        return await Repository(session).get_poll_by_round(round_id)


def _send_poll_ok(poll_id: str = "poll-1") -> dict:
    return {
        "ok": True,
        "result": {"message_id": 77, "chat": {"id": -100123}, "poll": _poll(poll_id, 0, 0)},
    }


class TestPollText:
    def test_question(self):
        assert build_poll_question(3, "  A bad   name\nfor a cat ") == "Round 3 - Prompt: A bad name for a cat"
        assert build_poll_question(3, None) == "Round 3 - Vote for the best"

    def test_question_truncated(self):
        question = build_poll_question(1, "x" * 500)
        assert len(question) == POLL_QUESTION_MAX_LENGTH
        assert question.endswith("...")

    def test_option(self):
        assert build_poll_option("1", "GPT-5.2", "Sir Hisses") == "1 - GPT-5.2: Sir Hisses"
        assert build_poll_option("2", "GPT-5.2", None) == "2 - GPT-5.2: [no answer]"

    def test_option_truncated(self):
        option = build_poll_option("1", "Kimi K2", "y" * 300)
        assert len(option) == POLL_OPTION_MAX_LENGTH
        assert option.startswith("1 - Kimi K2: ")
        assert option.endswith("...")

    def test_extract_polls_from_every_container(self):
        update = {
            "update_id": 5,
            "poll": _poll("a", 1, 0),
            "channel_post": {"poll": _poll("b", 0, 1)},
            "message": {"text": "hi"},
        }
        assert [p["id"] for p in extract_polls(update)] == ["a", "b"]

    def test_option_counts_tolerates_junk(self):
        assert option_counts(_poll("a", 4, 2)) == (4, 2)
        assert option_counts({"options": [{"voter_count": "x"}]}) == (0, 0)

    def test_configured(self, settings):
        assert not is_telegram_configured(settings)
        settings.telegram_enabled = True
        settings.telegram_bot_token = TOKEN
        assert not is_telegram_configured(settings)
        settings.telegram_channel_id = "@quipslop"
        assert is_telegram_configured(settings)


class TestOpenRoundPoll:
    async def test_posts_anonymous_two_option_poll(self, rt, bridge, bot_api, voting_round):
        bot_api.script("sendPoll", _send_poll_ok())

        assert await bridge.open_round_poll(voting_round) == "poll-1"

        method, payload = bot_api.calls[0]
        assert method == "sendPoll"
        assert payload["chat_id"] == "@quipslop"
        assert payload["question"] == "Round 1 - Prompt: A bad name for a cat"
        assert payload["options"][0].startswith("1 - ") and payload["options"][0].endswith(": Sir Hisses")
        assert payload["options"][1].endswith(": Dog")
        assert payload["is_anonymous"] is True
        assert payload["allows_multiple_answers"] is False

        row = await _poll_row(rt, voting_round)
        assert (row.poll_id, row.chat_id, row.message_id, row.status) == ("poll-1", "-100123", 77, "active")

    async def test_only_one_poll_per_round(self, rt, bridge, bot_api, voting_round):
        bot_api.script("sendPoll", _send_poll_ok())
        await bridge.open_round_poll(voting_round)
        assert await bridge.open_round_poll(voting_round) is None
        assert bot_api.methods() == ["sendPoll"]

    async def test_disabled_does_nothing(self, rt, bridge, bot_api, settings, voting_round):
        settings.telegram_enabled = False
        assert await bridge.open_round_poll(voting_round) is None
        assert bot_api.calls == []
        assert await _status(rt) is None

    async def test_missing_channel_records_error(self, rt, bridge, bot_api, settings, voting_round):
        settings.telegram_channel_id = ""
        assert await bridge.open_round_poll(voting_round) is None
        assert bot_api.calls == []
        assert "channel id" in (await _status(rt)).last_error

    async def test_api_error_records_error(self, rt, bridge, bot_api, voting_round):
        bot_api.script("sendPoll", {"ok": False, "description": "Bad Request: chat not found"})
        assert await bridge.open_round_poll(voting_round) is None
        assert "chat not found" in (await _status(rt)).last_error
        assert await _poll_row(rt, voting_round) is None


class TestClosePoll:
    async def test_stop_syncs_final_counts(self, rt, bridge, bot_api, voting_round):
        bot_api.script("sendPoll", _send_poll_ok())
        bot_api.script("stopPoll", {"ok": True, "result": _poll("poll-1", 4, 1)})
        await bridge.open_round_poll(voting_round)

        assert await bridge.close_round_poll(voting_round)

        assert bot_api.calls[-1] == ("stopPoll", {"chat_id": "-100123", "message_id": 77})
        assert await read_round_tallies(rt.engine, voting_round) == {"A": 4, "B": 1}
        assert (await _poll_row(rt, voting_round)).status == "closed"

    async def test_already_closed_counts_as_closed(self, rt, bridge, bot_api, voting_round):
        bot_api.script("sendPoll", _send_poll_ok())
        bot_api.script("stopPoll", {"ok": False, "description": "Bad Request: poll has already been closed"})
        await bridge.open_round_poll(voting_round)
        assert await bridge.close_round_poll(voting_round)
        assert (await _poll_row(rt, voting_round)).status == "closed"

    async def test_other_errors_mark_poll(self, rt, bridge, bot_api, voting_round):
        bot_api.script("sendPoll", _send_poll_ok())
        bot_api.script("stopPoll", {"ok": False, "description": "Forbidden: bot was kicked"})
        await bridge.open_round_poll(voting_round)
        assert not await bridge.close_round_poll(voting_round)
        row = await _poll_row(rt, voting_round)
        assert row.status == "error"
        assert "kicked" in row.last_error

    async def test_round_without_poll(self, bridge, bot_api, voting_round):
        assert not await bridge.close_round_poll(voting_round)
        assert bot_api.calls == []


class TestPollUpdates:
    async def test_syncs_polls_and_advances_offset(self, rt, bridge, bot_api, voting_round):
        bot_api.script("sendPoll", _send_poll_ok())
        await bridge.open_round_poll(voting_round)
        bot_api.script(
            "getUpdates",
            {
                "ok": True,
                "result": [
                    {"update_id": 10, "poll": _poll("poll-1", 1, 0)},
                    {"update_id": 11, "channel_post": {"poll": _poll("poll-1", 2, 3)}},
                    {"update_id": 12, "poll": _poll("someone-elses", 9, 9)},
                ],
            },
            {"ok": True, "result": []},
        )

        assert await bridge.poll_updates() == 2
        assert await read_round_tallies(rt.engine, voting_round) == {"A": 2, "B": 3}
        status = await _status(rt)
        assert status.last_update_id == 12
        assert status.last_error is None
        assert status.last_polled_at_ms is not None

        await bridge.poll_updates()
        _, payload = bot_api.calls[-1]
        assert payload["offset"] == 13
        assert payload["limit"] == 100
        assert "poll" in payload["allowed_updates"]

    async def test_replayed_totals_do_not_double_count(self, rt, bridge, bot_api, voting_round):
        bot_api.script("sendPoll", _send_poll_ok())
        await bridge.open_round_poll(voting_round)
        update = {"ok": True, "result": [{"update_id": 1, "poll": _poll("poll-1", 3, 1)}]}
        bot_api.script("getUpdates", update, update)
        await bridge.poll_updates()
        await bridge.poll_updates()
        assert await read_round_tallies(rt.engine, voting_round) == {"A": 3, "B": 1}

    async def test_active_webhook_is_removed(self, rt, bridge, bot_api):
        bot_api.script(
            "getUpdates",
            {"ok": False, "description": "Conflict: can't use getUpdates method while webhook is active"},
            {"ok": True, "result": []},
        )
        assert await bridge.poll_updates() == 0
        assert bot_api.methods() == ["getUpdates", "deleteWebhook", "getUpdates"]
        assert bot_api.calls[1][1] == {"drop_pending_updates": False}
        assert (await _status(rt)).last_error is None

    async def test_error_is_recorded_not_raised(self, rt, bridge, bot_api):
        bot_api.script("getUpdates", {"ok": False, "description": "Unauthorized"})
        assert await bridge.poll_updates() == 0
        assert "Unauthorized" in (await _status(rt)).last_error

    async def test_success_clears_previous_error(self, rt, bridge, bot_api):
        bot_api.script("getUpdates", {"ok": False, "description": "Unauthorized"}, {"ok": True, "result": []})
        await bridge.poll_updates()
        await bridge.poll_updates()
        assert (await _status(rt)).last_error is None


class TestListener:
    async def test_voting_started_opens_poll(self, rt, bridge, bot_api, voting_round):
        bot_api.script("sendPoll", _send_poll_ok())
        bridge.start()
        await asyncio.sleep(0.01)
        await rt.event_bus.publish(VOTING_STARTED, {"round_id": voting_round, "generation": 1})

        for _ in range(100):
            if await _poll_row(rt, voting_round) is not None:
                break
            await asyncio.sleep(0.02)
        assert (await _poll_row(rt, voting_round)).poll_id == "poll-1"

    async def test_dispatch_errors_do_not_stop_listener(self, rt, bridge, bot_api, voting_round):
        bot_api.script("sendPoll", _send_poll_ok())
        bridge.start()
        await asyncio.sleep(0.01)
        await rt.event_bus.publish(VOTING_STARTED, {})
        await rt.event_bus.publish(VOTING_STARTED, {"round_id": voting_round})

        for _ in range(100):
            if await _poll_row(rt, voting_round) is not None:
                break
            await asyncio.sleep(0.02)
        assert await _poll_row(rt, voting_round) is not None
