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

"""
Discord API Helper Functions

Wrappers for the Discord calls the radio makes. They accept None where a
channel or client may be missing, log Discord errors and report success
as a bool (or the sent message) instead of raising.
"""

import asyncio
import disnake
import logging
from time import monotonic as _now
from typing import Optional

logger = logging.getLogger(__name__)

from config import BOT_STATUS
from core.source import clean_title

_STATUSES = {
    'online': disnake.Status.online,
    'dnd': disnake.Status.dnd,
    'idle': disnake.Status.idle,
    'invisible': disnake.Status.invisible,
}

# Presence dedupe state, shared by the whole bot
_last_presence_update: float = 0
_current_presence_text: Optional[str] = None
_presence_lock = asyncio.Lock()


def format_user_log(user) -> str:
    """Name of ``user`` for log lines; DEBUG logging appends the ID."""
    if user is None:
        return "Unknown"
    name = getattr(user, 'name', None)
    if name is None:
        return f"User #{getattr(user, 'id', '?')}"
    if logger.isEnabledFor(logging.DEBUG):
        return f"{name} (#{user.id})"
    return name


def _bot_status() -> disnake.Status:
    key = str(BOT_STATUS).lower()
    if key not in _STATUSES:
        logger.warning(f"Unknown BOT_STATUS '{BOT_STATUS}', using 'online'")
    return _STATUSES.get(key, disnake.Status.online)


async def safe_disconnect(voice_client: Optional[disnake.VoiceClient], force: bool = True) -> bool:
    """
    Leave voice. A missing client counts as already disconnected.

    Returns:
        bool: False only when the disconnect call itself failed
    """
    if not voice_client:
        return True
    try:
        await voice_client.disconnect(force=force)
        return True
    except (disnake.ClientException, disnake.HTTPException) as e:
        logger.debug("Disconnect failed: %s", e)
        return False
    except Exception as e:
        # gateway transport already torn down
        logger.debug("Disconnect failed on a closed transport: %s", e)
        return False


async def safe_send(channel: Optional[disnake.abc.Messageable], content: Optional[str] = None, **kwargs) -> Optional[disnake.Message]:
    """
    Post to ``channel`` with every mention disabled.

    Keyword arguments (embed, components, ...) pass through to send().
    Returns the message, or None when there is no channel or Discord
    refused it.
    """
    if not channel:
        return None
    try:
        return await channel.send(content, allowed_mentions=disnake.AllowedMentions.none(), **kwargs)
    except (disnake.NotFound, disnake.Forbidden, disnake.HTTPException) as e:
        logger.warning("Could not post to %s: %s", getattr(channel, 'id', channel), e)
        return None


async def safe_voice_state_change(guild: disnake.Guild, channel: disnake.VoiceChannel, self_deaf: bool = True) -> bool:
    """Set the bot's deafen flag in ``channel``; False if Discord rejected it."""
    try:
        await guild.change_voice_state(channel=channel, self_deaf=self_deaf)
    except (disnake.ClientException, disnake.HTTPException) as e:
        logger.debug("Voice state change failed: %s", e)
        return False
    return True


async def update_presence(bot, status_text: Optional[str]) -> bool:
    """
    Show "Listening to <episode>" under the bot's name, or clear it.

    The title is cleaned and clipped to Discord's 128 character activity
    limit. Repeating the current text within 10 seconds is a no-op. The
    dedupe state only advances after Discord accepts the change, so a
    failed update is retried on the next call.

    Example:
        update_presence(bot, "episode_12-pilot.mp3")  # "Listening to Episode 12 Pilot"
    """
    global _last_presence_update, _current_presence_text

    if status_text:
        status_text = clean_title(status_text)[:128]

    now = _now()
    async with _presence_lock:
        if status_text == _current_presence_text and now - _last_presence_update < 10:
            return True

        activity = None
        if status_text:
            activity = disnake.Activity(type=disnake.ActivityType.listening, name=status_text)
        try:
            await bot.change_presence(activity=activity, status=_bot_status())
        except (disnake.ClientException, disnake.HTTPException) as e:
            logger.debug("Presence update failed: %s", e)
            return False

        _last_presence_update = now
        _current_presence_text = status_text
        return True
