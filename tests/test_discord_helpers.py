"""
Safe Discord wrappers: presence label, sends, disconnects.
"""

import asyncio
from types import SimpleNamespace

import disnake
import pytest

from utils import discord_helpers
from utils.discord_helpers import format_user_log, safe_disconnect, safe_send, update_presence


class FakePresenceBot:
    def __init__(self, error=None):
        self.calls = []
        self.error = error

    async def change_presence(self, activity=None, status=None):
        if self.error is not None:
            raise self.error
        self.calls.append((activity, status))


@pytest.fixture(autouse=True)
def reset_presence(monkeypatch):
    monkeypatch.setattr(discord_helpers, "_last_presence_update", 0)
    monkeypatch.setattr(discord_helpers, "_current_presence_text", None)
    monkeypatch.setattr(discord_helpers, "_presence_lock", asyncio.Lock())


class TestUpdatePresence:

    def test_sets_cleaned_listening_activity(self):
        bot = FakePresenceBot()
        assert asyncio.run(update_presence(bot, "episode_12-pilot.mp3")) is True

        activity, status = bot.calls[0]
        assert activity.type is disnake.ActivityType.listening
        assert activity.name == "Episode 12 Pilot"
        assert status is disnake.Status.online

    def test_same_label_is_deduplicated(self):
        bot = FakePresenceBot()

        async def scenario():
            await update_presence(bot, "Episode 1")
            await update_presence(bot, "Episode 1")
            await update_presence(bot, "Episode 2")

        asyncio.run(scenario())
        assert [call[0].name for call in bot.calls] == ["Episode 1", "Episode 2"]

    def test_long_label_is_clipped(self):
        bot = FakePresenceBot()
        asyncio.run(update_presence(bot, "x" * 300))
        assert len(bot.calls[0][0].name) == 128

    def test_none_clears_activity(self):
        bot = FakePresenceBot()
        asyncio.run(update_presence(bot, None))
        assert bot.calls[0][0] is None

    def test_failure_is_reported_and_retried(self):
        response = SimpleNamespace(status=500, reason="Server Error")
        bot = FakePresenceBot(error=disnake.HTTPException(response, "boom"))
        assert asyncio.run(update_presence(bot, "Episode 1")) is False

        bot.error = None
        assert asyncio.run(update_presence(bot, "Episode 1")) is True
        assert len(bot.calls) == 1


class FakeClient:
    def __init__(self, error=None):
        self.error = error
        self.calls = 0

    async def disconnect(self, *, force=False):
        self.calls += 1
        if self.error is not None:
            raise self.error


def test_safe_disconnect():
    assert asyncio.run(safe_disconnect(None)) is True
    assert asyncio.run(safe_disconnect(FakeClient())) is True
    assert asyncio.run(safe_disconnect(FakeClient(disnake.ClientException("gone")))) is False
    assert asyncio.run(safe_disconnect(FakeClient(ConnectionResetError()))) is False


def test_safe_send_suppresses_mentions():
    sent = []

    class Channel:
        async def send(self, content=None, **kwargs):
            sent.append((content, kwargs))
            return "message"

    assert asyncio.run(safe_send(Channel(), "hi @everyone")) == "message"
    assert isinstance(sent[0][1]["allowed_mentions"], disnake.AllowedMentions)
    assert asyncio.run(safe_send(None, "hi")) is None


def test_format_user_log():
    assert format_user_log(None) == "Unknown"
    assert format_user_log(SimpleNamespace(id=3)) == "User #3"
    assert format_user_log(SimpleNamespace(id=3, name="ada")) in ("ada", "ada (#3)")
