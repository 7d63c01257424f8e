# Copyright (C) 2025 grodz
#
# This file is part of Relay.
#
# Relay is free software: you can redistribute it and/or modify
# it under the terms of the GNU General Public License as published by
# the Free Software Foundation, either version 3 of the License, or
# (at your option) any later version.
#
# This program is distributed in the hope that it will be useful,
# but WITHOUT ANY WARRANTY; without even the implied warranty of
# MERCHANTABILITY or FITNESS FOR A PARTICULAR PURPOSE. See the
# GNU General Public License for more details.
#
# You should have received a copy of the GNU General Public License
# along with this program. If not, see <https://www.gnu.org/licenses/>.

"""Configuration management for Relay."""

import asyncio
import copy
import os
import shutil
import sys
import tempfile
from pathlib import Path
from typing import Any, Callable

import yaml
from loguru import logger


# =============================================================================
# DEFAULT SETTINGS SCHEMA
# =============================================================================
# These defaults are used when settings.yaml is missing or incomplete.
# Environment variables can override these (see ENV_OVERRIDES below).
#
#   presence_enabled         - Show "Listening to [episode]" in bot status
#
# Announcement Settings (announce.*):
#   enabled                - Post a "Now Playing" embed when an episode starts
#   color                  - Embed accent color as hex integer (e.g., 0x2B6CB0)
#   description_limit      - Characters of episode description shown (50-1000)
#   footer                 - Embed footer text
#   button_label           - Label of the link button to the episode page
#
# Command Settings (commands.*):
#   skip_command           - Enable /skip
#   restart_command        - Enable /restart
#   pause_command          - Enable /pause and /resume
# =============================================================================

DEFAULT_SETTINGS = {
    "presence_enabled": True,
    "announce": {
        "enabled": True,
        "color": 0x2B6CB0,
        "description_limit": 300,
        "footer": "Podcast Radio",
        "button_label": "Open Episode",
    },
    "commands": {
        "skip_command": True,
        "restart_command": True,
        "pause_command": True,
    },
}

# =============================================================================
# DEFAULT MESSAGES SCHEMA
# =============================================================================
# Slash command replies. Each message has:
#   text    - Template (supports {variables})
#   enabled - Show the text (True) or acknowledge silently (False)
# =============================================================================

DEFAULT_MESSAGES = {
    # Now playing
    "now_playing": {"text": "📻 **{title}** ({index}/{total}) at {position}", "enabled": True},
    "now_playing_paused": {"text": "⏸️ **{title}** ({index}/{total}) paused at {position}", "enabled": True},
    "nothing_playing": {"text": "nothing on air yet", "enabled": True},
    # Navigation
    "skipped": {"text": "⏭️ skipping to **{title}**", "enabled": True},
    "nothing_to_skip": {"text": "no episodes loaded", "enabled": True},
    "restarted": {"text": "🔁 restarting **{title}** from the top", "enabled": True},
    "nothing_to_restart": {"text": "nothing to restart", "enabled": True},
    # Pause / resume
    "paused": {"text": "⏸️ paused, use /resume to continue", "enabled": True},
    "already_paused": {"text": "already paused", "enabled": True},
    "resumed": {"text": "▶️ back on air", "enabled": True},
    "resume_waiting": {"text": "unpaused, playback starts when someone joins the channel", "enabled": True},
    "not_paused": {"text": "not paused", "enabled": True},
    # Errors
    "command_disabled": {"text": "that command is turned off", "enabled": True},
    "not_ready": {"text": "still tuning in, try again in a moment", "enabled": True},
    "command_error": {"text": "something went wrong", "enabled": True},
}


def deep_merge(user: dict, defaults: dict) -> dict:
    """Return a fresh copy of ``defaults`` with ``user`` values laid over it.

    Sections merge key by key. Keys the defaults don't know are dropped
    with a warning, so a typo in settings.yaml never reaches the bot.
    """
    result = copy.deepcopy(defaults)
    for key, value in user.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = deep_merge(value, result[key])
        elif key in defaults:
            result[key] = value
        else:
            logger.warning(f"unknown config key: {key}")
    return result


def load_yaml(path: Path, defaults: dict) -> dict:
    """Read ``path`` merged over ``defaults``; unreadable files yield the defaults."""
    if not path.exists():
        return copy.deepcopy(defaults)

    try:
        with open(path, 'r', encoding='utf-8') as f:
            user = yaml.safe_load(f) or {}

        if not isinstance(user, dict):
            logger.warning(f"{path.name} invalid, using defaults")
            return copy.deepcopy(defaults)

        return deep_merge(user, defaults)

    except yaml.YAMLError:
        logger.opt(exception=True).error(f"failed to parse {path.name}")
        return copy.deepcopy(defaults)


def save_yaml(path: Path, data: dict, header: str = "") -> None:
    """Save YAML atomically (temp file then rename) with optional header comment."""
    temp_path = None
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        temp_fd, temp_path = tempfile.mkstemp(dir=path.parent, suffix='.tmp')
        try:
            f = os.fdopen(temp_fd, 'w', encoding='utf-8')
        except Exception:
            os.close(temp_fd)
            raise
        with f:
            if header:
                f.write(header)
            yaml.dump(data, f, default_flow_style=False, sort_keys=False, allow_unicode=True)
        Path(temp_path).replace(path)
    except Exception:
        if temp_path:
            Path(temp_path).unlink(missing_ok=True)
        raise


def _parse_hex_color(value: Any) -> int:
    """Accept 0x2B6CB0, "2B6CB0", "0x2B6CB0" or "#2B6CB0"."""
    if isinstance(value, int) and not isinstance(value, bool):
        return value
    text = str(value).strip().lstrip("#").removeprefix("0x").removeprefix("0X")
    return int(text, 16)


def _as_bool(value: str) -> bool:
    return value.strip().lower() == "true"


# ENV_VAR -> (dotted setting key, converter)
ENV_OVERRIDES: dict[str, tuple[str, Callable[[str], Any]]] = {
    "PRESENCE_ENABLED": ("presence_enabled", _as_bool),
    "ANNOUNCE_ENABLED": ("announce.enabled", _as_bool),
    "ANNOUNCE_COLOR": ("announce.color", _parse_hex_color),
    "ANNOUNCE_DESCRIPTION_LIMIT": ("announce.description_limit", int),
    "ANNOUNCE_FOOTER": ("announce.footer", str),
    "SKIP_COMMAND": ("commands.skip_command", _as_bool),
    "RESTART_COMMAND": ("commands.restart_command", _as_bool),
    "PAUSE_COMMAND": ("commands.pause_command", _as_bool),
}


def _set_setting(settings: dict, dotted_key: str, value: Any) -> bool:
    """Assign ``value`` at ``dotted_key``; False if a parent is not a mapping."""
    *sections, leaf = dotted_key.split(".")
    target = settings
    for name in sections:
        target = target.setdefault(name, {})
        if not isinstance(target, dict):
            return False
    target[leaf] = value
    return True


class ConfigManager:
    """Manages bot configuration from settings.yaml and messages.yaml.

    Loads configuration at startup with this priority (highest wins):
    1. DEFAULT_SETTINGS / DEFAULT_MESSAGES (built-in defaults)
    2. settings.yaml / messages.yaml (user customization)
    3. Environment variables (Docker/deployment override)

    Access patterns:
        config_manager.get("key")           # Get setting value
        config_manager.section("announce")  # Get a nested section
        config_manager.msg("key", **vars)   # Get formatted message
        config_manager.is_enabled("key")    # Check if message should show
    """

    def __init__(self, config_path: Path) -> None:
        self.config_path = config_path
        self.settings: dict = {}
        self.messages: dict = {}

    async def load(self) -> None:
        """Load settings and messages from YAML, apply env overrides, validate.

        Generates missing config files with default values and header comments.
        """
        settings_path = self.config_path / "settings.yaml"
        self.settings = await asyncio.to_thread(load_yaml, settings_path, DEFAULT_SETTINGS)

        if not settings_path.exists():
            header = "# Relay Settings\n# Edit these values to customize behavior\n\n"
            await asyncio.to_thread(save_yaml, settings_path, DEFAULT_SETTINGS, header)
            logger.debug(f"generated {settings_path.name}")

        messages_path = self.config_path / "messages.yaml"
        self.messages = await asyncio.to_thread(load_yaml, messages_path, DEFAULT_MESSAGES)

        if not messages_path.exists():
            header = "# Relay's Replies\n# Customize slash command responses here\n\n"
            await asyncio.to_thread(save_yaml, messages_path, DEFAULT_MESSAGES, header)
            logger.debug(f"generated {messages_path.name}")

        self._apply_env_overrides()
        self._validate_settings()

        logger.debug("config loaded")

    def _validate_settings(self) -> None:
        """Validate and clamp settings after loading from all sources.

        1. Null-restore: YAML "key:" with no value becomes None, restore defaults
        2. announce.color: coerce hex strings to int
        3. announce.description_limit: clamp to 50-1000
        """
        for key in list(self.settings):
            if self.settings[key] is None and key in DEFAULT_SETTINGS:
                self.settings[key] = copy.deepcopy(DEFAULT_SETTINGS[key])
        for section in ("announce", "commands"):
            sect = self.settings.get(section)
            defaults = DEFAULT_SETTINGS[section]
            if not isinstance(sect, dict):
                logger.warning(f"{section} section invalid, using defaults")
                self.settings[section] = dict(defaults)
                continue
            for key in list(sect):
                if sect[key] is None and key in defaults:
                    sect[key] = defaults[key]

        announce = self.settings["announce"]

        color = announce.get("color")
        try:
            announce["color"] = _parse_hex_color(color)
        except (ValueError, TypeError):
            logger.warning(f"announce.color={color!r} invalid, using default")
            announce["color"] = DEFAULT_SETTINGS["announce"]["color"]

        limit = announce.get("description_limit")
        try:
            v = int(limit)
            clamped = max(50, min(1000, v))
            if clamped != v:
                logger.warning(f"announce.description_limit={v} out of range, clamped to {clamped} (valid: 50-1000)")
            announce["description_limit"] = clamped
        except (ValueError, TypeError):
            logger.warning(f"announce.description_limit={limit!r} invalid, using default")
            announce["description_limit"] = DEFAULT_SETTINGS["announce"]["description_limit"]

    def _apply_env_overrides(self) -> None:
        """Apply ENV_OVERRIDES on top of the YAML settings.

        Unset or empty variables are skipped. Values the converter rejects
        are logged and ignored.
        """
        for env_key, (setting_key, converter) in ENV_OVERRIDES.items():
            raw = os.getenv(env_key)
            if not raw:
                continue
            try:
                value = converter(raw)
            except (ValueError, TypeError) as e:
                logger.warning(f"ignoring {env_key}={raw!r}: {e}")
                continue
            if _set_setting(self.settings, setting_key, value):
                logger.debug(f"{setting_key} set from {env_key}")
            else:
                logger.warning(f"cannot apply {env_key}: parent of {setting_key} is not a mapping")

    def get(self, key: str, default=None) -> Any:
        """Get a top-level setting value."""
        return self.settings.get(key, default)

    def section(self, name: str) -> dict:
        """Get a nested settings section, falling back to its defaults."""
        value = self.settings.get(name)
        return value if isinstance(value, dict) else dict(DEFAULT_SETTINGS.get(name, {}))

    def command_enabled(self, key: str) -> bool:
        return bool(self.section("commands").get(key, True))

    def msg(self, key: str, **kwargs) -> str:
        """Get formatted message text. Returns the key itself if unknown."""
        entry = self.messages.get(key, DEFAULT_MESSAGES.get(key, {}))
        template = entry.get("text", key) if isinstance(entry, dict) else entry
        try:
            return template.format(**kwargs)
        except (KeyError, IndexError):
            return template

    def is_enabled(self, key: str) -> bool:
        """Check if a message should be shown (False = acknowledge silently)."""
        entry = self.messages.get(key, DEFAULT_MESSAGES.get(key, {}))
        return entry.get("enabled", True) if isinstance(entry, dict) else True


async def validate_configuration() -> None:
    """Validate configuration before bot starts, exit on failure.

    Checks performed:
    - DISCORD_TOKEN is set and has valid format (3 dot-separated sections)
    - VOICE_CHANNEL_ID is set and numeric
    - One catalog is usable: RSS_URL is reachable, or MUSIC_PATH exists
    - FFmpeg executable can be found
    - Config directory exists (creates if missing)

    Also warns (non-fatal) if GUILD_ID is not set.

    On failure: Logs all errors and calls sys.exit(1).
    """
    import aiohttp
    from config import FFMPEG_EXECUTABLE, FEED_USER_AGENT

    errors = []

    token = os.getenv("DISCORD_TOKEN")
    if not token:
        errors.append("DISCORD_TOKEN not set - add it to .env or the container environment")
    else:
        parts = token.strip().split(".")
        if len(parts) != 3:
            errors.append(
                "DISCORD_TOKEN format appears invalid.\n"
                "Token should have three dot-separated sections.\n"
                "Get a fresh token from: https://discord.com/developers/applications"
            )
        elif any(not part for part in parts):
            errors.append(
                "DISCORD_TOKEN has empty sections.\n"
                "Get a fresh token from: https://discord.com/developers/applications"
            )

    channel_id = os.getenv("VOICE_CHANNEL_ID")
    if not channel_id:
        errors.append("VOICE_CHANNEL_ID not set - right-click the voice channel and copy its ID")
    elif not channel_id.strip().isdigit():
        errors.append(f"VOICE_CHANNEL_ID={channel_id!r} is not a numeric channel ID")

    if not os.getenv("GUILD_ID"):
        logger.warning("GUILD_ID not set - commands may take up to 1 hour to show up")

    if shutil.which(FFMPEG_EXECUTABLE) is None and not Path(FFMPEG_EXECUTABLE).exists():
        errors.append(f"ffmpeg not found ({FFMPEG_EXECUTABLE}) - install it or set FFMPEG_PATH")

    _default_config = Path(__file__).parent.parent / "config"
    config_path = Path(os.getenv("CONFIG_PATH") or str(_default_config))
    if not config_path.exists():
        try:
            config_path.mkdir(parents=True)
            logger.warning(f"created missing config directory: {config_path}")
        except OSError as e:
            errors.append(f"cannot create config directory {config_path}: {e}")

    rss_url = os.getenv("RSS_URL")
    if rss_url:
        try:
            timeout = aiohttp.ClientTimeout(total=30)
            async with aiohttp.ClientSession(timeout=timeout, headers={"User-Agent": FEED_USER_AGENT}) as session:
                async with session.get(rss_url) as resp:
                    if resp.status != 200:
                        errors.append(f"RSS feed returned HTTP {resp.status}: {rss_url}")
                    else:
                        logger.info(f"rss feed reachable: {rss_url}")
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            errors.append(f"cannot reach RSS feed {rss_url}: {e}")
    else:
        music_path = Path(os.getenv("MUSIC_PATH", "./music"))
        if not music_path.is_dir():
            errors.append(f"no RSS_URL set and music directory {music_path} does not exist")

    if errors:
        for error in errors:
            logger.error(error)
        sys.exit(1)
