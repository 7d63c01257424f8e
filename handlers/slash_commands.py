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
Slash Commands

/nowplaying /skip /restart /pause /resume with ephemeral replies (only the
invoking user sees them). Reply texts come from messages.yaml.

The radio (player + config) is created in on_ready, after commands are
registered, so every command looks it up at invocation time.
"""

import logging
from typing import Optional
import disnake

logger = logging.getLogger(__name__)
user_logger = logging.getLogger('relay')

from core.session import SessionState, format_position
from utils.discord_helpers import format_user_log


async def send_response(inter: disnake.ApplicationCommandInteraction, config_manager, key: str, **kwargs) -> None:
    """
    Reply ephemerally with message ``key``.

    Disabled messages still acknowledge the interaction so Discord doesn't
    show "interaction failed".
    """
    if config_manager is not None and not config_manager.is_enabled(key):
        if not inter.response.is_done():
            await inter.response.defer(ephemeral=True)
        await inter.delete_original_response()
        return

    content = config_manager.msg(key, **kwargs) if config_manager is not None else key
    if not inter.response.is_done():
        await inter.response.send_message(content=content, ephemeral=True)
    else:
        await inter.followup.send(content=content, ephemeral=True)


def _get_radio(bot):
    """Return (player, config_manager); player is None until startup finished."""
    return getattr(bot, 'radio_player', None), getattr(bot, 'config_manager', None)


def setup(bot):
    """Register slash commands with the bot."""

    logger.info("Registering slash commands...")

    async def _ready_player(inter, command_key: Optional[str] = None):
        player, cfg = _get_radio(bot)
        if player is None:
            await send_response(inter, cfg, 'not_ready')
            return None, cfg
        if command_key and cfg is not None and not cfg.command_enabled(command_key):
            await send_response(inter, cfg, 'command_disabled')
            return None, cfg
        return player, cfg

    # =========================================================================
    # SLASH COMMANDS
    # =========================================================================

    @bot.slash_command(name='nowplaying', description="Show the episode on air and its position")
    async def nowplaying_slash(inter: disnake.ApplicationCommandInteraction):
        """Show what's playing."""
        player, cfg = await _ready_player(inter)
        if player is None:
            return

        info = player.now_playing()
        if info is None:
            await send_response(inter, cfg, 'nothing_playing')
            return

        key = 'now_playing' if info.state is SessionState.PLAYING else 'now_playing_paused'
        await send_response(
            inter, cfg, key,
            title=info.source.display_name,
            index=info.index + 1,
            total=info.total,
            position=format_position(info.position_ms),
        )

    @bot.slash_command(name='skip', description="Skip to the next episode")
    async def skip_slash(inter: disnake.ApplicationCommandInteraction):
        """Skip the current source."""
        player, cfg = await _ready_player(inter, 'skip_command')
        if player is None:
            return

        source = player.skip()
        if source is None:
            await send_response(inter, cfg, 'nothing_to_skip')
            return
        user_logger.info(f"{format_user_log(inter.author)} skipped to {source.display_name}")
        await send_response(inter, cfg, 'skipped', title=source.display_name)

    @bot.slash_command(name='restart', description="Restart the current episode from the beginning")
    async def restart_slash(inter: disnake.ApplicationCommandInteraction):
        """Restart the current source from zero."""
        player, cfg = await _ready_player(inter, 'restart_command')
        if player is None:
            return

        source = player.restart_current()
        if source is None:
            await send_response(inter, cfg, 'nothing_to_restart')
            return
        user_logger.info(f"{format_user_log(inter.author)} restarted {source.display_name}")
        await send_response(inter, cfg, 'restarted', title=source.display_name)

    @bot.slash_command(name='pause', description="Pause the radio")
    async def pause_slash(inter: disnake.ApplicationCommandInteraction):
        """Hold playback until /resume."""
        player, cfg = await _ready_player(inter, 'pause_command')
        if player is None:
            return

        if player.session.held:
            await send_response(inter, cfg, 'already_paused')
            return
        if not player.pause():
            await send_response(inter, cfg, 'nothing_playing')
            return
        user_logger.info(f"{format_user_log(inter.author)} paused the radio")
        await send_response(inter, cfg, 'paused')

    @bot.slash_command(name='resume', description="Resume the radio")
    async def resume_slash(inter: disnake.ApplicationCommandInteraction):
        """Release a /pause hold."""
        player, cfg = await _ready_player(inter, 'pause_command')
        if player is None:
            return

        if not player.session.held:
            await send_response(inter, cfg, 'not_paused')
            return
        playing = player.resume()
        user_logger.info(f"{format_user_log(inter.author)} resumed the radio")
        await send_response(inter, cfg, 'resumed' if playing else 'resume_waiting')

    logger.debug("Slash commands registered")
