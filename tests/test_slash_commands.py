"""
Slash command handlers against a fake bot, player and interaction.
"""

import asyncio
from pathlib import Path
from types import SimpleNamespace

import pytest

from core.session import NowPlaying, SessionState
from handlers import slash_commands
from utils.config import ConfigManager
from tests.test_doubles import make_source


class FakeBot:
    """Collects the coroutines registered with @bot.slash_command."""

    def __init__(self):
        self.commands = {}

    def slash_command(self, name, description=""):
        def decorator(func):
            self.commands[name] = func
            return func
        return decorator


class FakeResponse:
    def __init__(self):
        self.messages = []
        self.deferred = False

    def is_done(self):
        return self.deferred or bool(self.messages)

    async def send_message(self, content=None, ephemeral=False):
        self.messages.append((content, ephemeral))

    async def defer(self, ephemeral=False):
        self.deferred = True


class FakeInteraction:
    def __init__(self):
        self.response = FakeResponse()
        self.followup = SimpleNamespace(send=self._followup)
        self.followups = []
        self.deleted = False
        self.author = SimpleNamespace(id=5, name="ada")

    async def _followup(self, content=None, ephemeral=False):
        self.followups.append(content)

    async def delete_original_response(self):
        self.deleted = True

    @property
    def reply(self):
        return self.response.messages[0][0]


class FakePlayer:
    def __init__(self):
        self.session = SimpleNamespace(held=False)
        self.info = None
        self.next_source = make_source(1)
        self.restart_source = make_source(0)
        self.pause_result = True
        self.resume_result = True

    def now_playing(self):
        return self.info

    def skip(self):
        return self.next_source

    def restart_current(self):
        return self.restart_source

    def pause(self):
        if self.pause_result:
            self.session.held = True
        return self.pause_result

    def resume(self):
        self.session.held = False
        return self.resume_result


@pytest.fixture
def bot():
    bot = FakeBot()
    slash_commands.setup(bot)
    bot.config_manager = ConfigManager(Path("unused"))
    bot.radio_player = FakePlayer()
    return bot


def invoke(bot, name):
    inter = FakeInteraction()
    asyncio.run(bot.commands[name](inter))
    return inter


def test_all_commands_registered(bot):
    assert set(bot.commands) == {"nowplaying", "skip", "restart", "pause", "resume"}


def test_not_ready_before_startup(bot):
    bot.radio_player = None
    inter = invoke(bot, "skip")
    assert inter.reply == "still tuning in, try again in a moment"
    assert inter.response.messages[0][1] is True


class TestNowPlaying:

    def test_nothing_yet(self, bot):
        assert invoke(bot, "nowplaying").reply == "nothing on air yet"

    def test_playing(self, bot):
        bot.radio_player.info = NowPlaying(make_source(2), 2, 5, 65_000, SessionState.PLAYING)
        assert invoke(bot, "nowplaying").reply == "📻 **Episode 2** (3/5) at 01:05"

    def test_paused(self, bot):
        bot.radio_player.info = NowPlaying(make_source(2), 2, 5, 5_000, SessionState.PAUSED_EMPTY)
        assert invoke(bot, "nowplaying").reply.startswith("⏸️ **Episode 2**")


class TestNavigation:

    def test_skip(self, bot):
        assert invoke(bot, "skip").reply == "⏭️ skipping to **Episode 1**"

    def test_skip_without_sources(self, bot):
        bot.radio_player.next_source = None
        assert invoke(bot, "skip").reply == "no episodes loaded"

    def test_skip_disabled(self, bot):
        bot.config_manager.settings = {"commands": {"skip_command": False}}
        assert invoke(bot, "skip").reply == "that command is turned off"

    def test_restart(self, bot):
        assert invoke(bot, "restart").reply == "🔁 restarting **Episode 0** from the top"

    def test_nothing_to_restart(self, bot):
        bot.radio_player.restart_source = None
        assert invoke(bot, "restart").reply == "nothing to restart"


class TestPauseResume:

    def test_pause_then_already_paused(self, bot):
        assert invoke(bot, "pause").reply.startswith("⏸️ paused")
        assert invoke(bot, "pause").reply == "already paused"

    def test_pause_with_nothing_playing(self, bot):
        bot.radio_player.pause_result = False
        assert invoke(bot, "pause").reply == "nothing on air yet"

    def test_resume_not_paused(self, bot):
        assert invoke(bot, "resume").reply == "not paused"

    def test_resume_plays(self, bot):
        bot.radio_player.session.held = True
        assert invoke(bot, "resume").reply == "▶️ back on air"

    def test_resume_into_empty_room(self, bot):
        bot.radio_player.session.held = True
        bot.radio_player.resume_result = False
        assert invoke(bot, "resume").reply.startswith("unpaused")


def test_disabled_message_acknowledges_silently(bot):
    bot.config_manager.messages = {"skipped": {"text": "x", "enabled": False}}
    inter = invoke(bot, "skip")
    assert inter.response.deferred
    assert inter.deleted
    assert inter.response.messages == []
