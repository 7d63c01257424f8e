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
Relay Podcast Radio Bot
========================================================
VERSION: 1.0.0
========================================================

Streams a folder of audio files or an RSS podcast feed into one Discord
voice channel, pausing while nobody listens and resuming (or restarting the
episode after a long break) when someone comes back.
"""

import disnake
from disnake.ext import commands
import asyncio
import logging
import signal
import sys
from pathlib import Path
from dotenv import load_dotenv
import os

# Load environment variables
load_dotenv()

from config import (
    LOG_LEVEL, SUPPRESS_LIBRARY_LOGS, VOICE_CHANNEL_ID, ANNOUNCE_CHANNEL_ID, GUILD_ID,
    RSS_URL, MUSIC_FOLDER,
)

# =============================================================================
# LOGGING SETUP
# =============================================================================

LOG_LEVEL_MAP = {
    'DEBUG': logging.DEBUG,
    'INFO': logging.INFO,
    'WARNING': logging.WARNING,
    'ERROR': logging.ERROR,
    'CRITICAL': logging.CRITICAL,
}


class RelayFormatter(logging.Formatter):
    """
    Custom formatter with 4-character level names for clean, aligned logs.

    - DEBUG    → [DBUG] - Technical details for debugging
    - INFO     → [INFO] - Normal operation messages
    - WARNING  → [WARN] - Issues that don't stop operation
    - ERROR    → [FAIL] - Recoverable failures
    - CRITICAL → [CRIT] - Catastrophic failures
    """

    LEVEL_NAMES = {
        'DEBUG': 'DBUG',
        'INFO': 'INFO',
        'WARNING': 'WARN',
        'ERROR': 'FAIL',
        'CRITICAL': 'CRIT',
    }

    def format(self, record):
        # Swap levelname only for this call so other handlers see the original
        original_levelname = record.levelname
        record.levelname = self.LEVEL_NAMES.get(record.levelname, record.levelname)
        result = super().format(record)
        record.levelname = original_levelname
        return result


handler = logging.StreamHandler()
handler.setFormatter(RelayFormatter(
    fmt='[%(asctime)s] [%(levelname)s] %(name)s: %(message)s',
    datefmt='%Y-%m-%d %H:%M:%S'
))
logging.basicConfig(
    level=LOG_LEVEL_MAP[LOG_LEVEL],
    handlers=[handler]
)
logger = logging.getLogger('relay')

# Reduce disnake noise (if enabled)
_library_level = logging.WARNING if SUPPRESS_LIBRARY_LOGS else LOG_LEVEL_MAP[LOG_LEVEL]
for _name in ('disnake', 'disnake.player', 'disnake.voice_client', 'disnake.gateway'):
    logging.getLogger(_name).setLevel(_library_level)

# =============================================================================
# ASYNCIO EXCEPTION HANDLER
# =============================================================================

def custom_exception_handler(loop, context):
    """Suppress aiohttp's cosmetic shutdown warnings, pass everything else through."""
    message = context.get("message", "")
    if message in ["Unclosed client session", "Unclosed connector"]:
        return
    loop.default_exception_handler(context)

# =============================================================================
# BOT SETUP
# =============================================================================

intents = disnake.Intents.default()
intents.voice_states = True

bot = commands.InteractionBot(
    intents=intents,
    test_guilds=[GUILD_ID] if GUILD_ID else None,
    command_sync_flags=commands.CommandSyncFlags.default(),
)

# Import our modules
from core.catalog import LocalFolderCatalog, RssCatalog
from core.errors import CatalogEmpty, TransportDisconnected
from core.player import RadioPlayer
from core.session import PlaybackSession, SessionConfig
from systems.announcer import Announcer
from systems.presence import PresenceGate
from systems.voice_manager import ConnectionSupervisor
from systems.watchdog import catalog_refresh_watchdog
from utils.config import ConfigManager, validate_configuration
from utils.discord_helpers import update_presence, format_user_log

CONFIG_PATH = Path(os.getenv("CONFIG_PATH") or str(Path(__file__).parent / "config"))

# Runtime singletons (one channel, one radio)
_supervisor: ConnectionSupervisor = None
_gate: PresenceGate = None
_refresh_task = None

# Shutdown flag to prevent on_disconnect/voice handlers from running during shutdown
_is_shutting_down = False

# Initialization flag to prevent on_ready from running setup code on reconnects
_is_initialized = False

# Process exit status (1 when startup failed)
_exit_code = 0

# =============================================================================
# STARTUP
# =============================================================================

async def _resolve_voice_channel() -> disnake.VoiceChannel:
    """Look up the configured voice channel, from cache or the API."""
    channel = bot.get_channel(VOICE_CHANNEL_ID)
    if channel is None:
        channel = await bot.fetch_channel(VOICE_CHANNEL_ID)
    if not isinstance(channel, (disnake.VoiceChannel, disnake.StageChannel)):
        raise ValueError(f"channel {VOICE_CHANNEL_ID} is not a voice channel")
    return channel


def _on_transport_escalation(error: TransportDisconnected) -> None:
    logger.critical(f"Voice transport keeps failing, still retrying: {error}")


async def _start_radio() -> bool:
    """
    Build the radio and join voice.

    Returns:
        False if startup failed fatally (empty catalog, bad channel)
    """
    global _supervisor, _gate, _refresh_task

    config_manager = ConfigManager(CONFIG_PATH)
    await config_manager.load()
    bot.config_manager = config_manager

    catalog = RssCatalog(RSS_URL) if RSS_URL else LocalFolderCatalog(MUSIC_FOLDER)

    announce_channel = None
    if ANNOUNCE_CHANNEL_ID:
        announce_channel = bot.get_channel(ANNOUNCE_CHANNEL_ID)
        if announce_channel is None:
            logger.warning(f"Announcement channel {ANNOUNCE_CHANNEL_ID} not found, announcements disabled")
    announcer = Announcer(announce_channel, config_manager.section("announce"))

    async def set_label(text):
        await update_presence(bot, text)

    player = RadioPlayer(
        PlaybackSession(SessionConfig.from_settings()),
        catalog=catalog,
        announce=announcer.announce_start,
        set_label=set_label if config_manager.get("presence_enabled", True) else None,
    )

    try:
        await player.load_catalog()
    except CatalogEmpty as e:
        logger.critical(f"No playable sources in {catalog.describe()}: {e}")
        return False

    try:
        channel = await _resolve_voice_channel()
    except (ValueError, disnake.NotFound, disnake.Forbidden) as e:
        logger.critical(f"Cannot use voice channel {VOICE_CHANNEL_ID}: {e}")
        return False

    _supervisor = ConnectionSupervisor(_resolve_voice_channel)
    _supervisor.add_ready_listener(player.attach_voice)
    _supervisor.add_lost_listener(player.detach_voice)
    _supervisor.add_escalation_listener(_on_transport_escalation)

    try:
        await _supervisor.ensure_connected()
    except (asyncio.TimeoutError, disnake.ClientException, disnake.HTTPException, OSError) as e:
        logger.error(f"Initial voice join failed: {e!r}, retrying in the background")
        _supervisor.handle_disconnect()

    _gate = PresenceGate(channel.id, player.set_occupied)
    player.open()
    bot.radio_player = player

    # Someone may already be waiting in the channel
    _gate.evaluate(channel)

    _refresh_task = bot.loop.create_task(catalog_refresh_watchdog(bot, player))
    return True

# =============================================================================
# BOT EVENTS
# =============================================================================

@bot.event
async def on_ready():
    """
    Bot connected to Discord.

    Builds the radio on first connect; gateway reconnects only re-check voice.
    """
    global _is_initialized, _exit_code

    if _is_initialized:
        logger.info("Gateway reconnected via on_ready")
        await _restore_voice_connection()
        return

    _is_initialized = True
    bot.loop.set_exception_handler(custom_exception_handler)

    logger.info('Relay v1.0.0 - Copyright (C) 2025 grodz')
    logger.info('Licensed under GPL 3.0 - See LICENSE.md for details')
    logger.info(f'Bot connected as {bot.user}')

    if not await _start_radio():
        _exit_code = 1
        await shutdown_bot()
        return

    logger.info("Press Ctrl+C or send SIGTERM to shutdown")


async def _restore_voice_connection():
    """Gateway reconnects can leave the voice client stale; rejoin if so."""
    if _supervisor is None or _is_shutting_down:
        return
    try:
        await _supervisor.ensure_connected()
    except (asyncio.TimeoutError, disnake.ClientException, disnake.HTTPException, OSError, ValueError) as e:
        logger.warning(f"Voice restore after gateway reconnect failed: {e!r}")
        _supervisor.handle_disconnect()


@bot.event
async def on_resumed():
    """Gateway session resumed - make sure voice survived."""
    await _restore_voice_connection()


@bot.event
async def on_voice_state_update(member, before, after):
    """Route voice updates: our own drops to the supervisor, the rest to the presence gate."""
    if _is_shutting_down or _supervisor is None:
        return

    if member.id == bot.user.id:
        if before.channel and not after.channel:
            _supervisor.handle_disconnect()
        return

    _gate.on_voice_state_update(member, before, after)


@bot.event
async def on_slash_command_error(inter, error):
    """Log command failures and tell the user something went wrong."""
    logger.error(f"Command error in /{inter.data.name} from {format_user_log(inter.author)}: {error}", exc_info=error)
    cfg = getattr(bot, 'config_manager', None)
    text = cfg.msg('command_error') if cfg else "something went wrong"
    try:
        if inter.response.is_done():
            await inter.followup.send(text, ephemeral=True)
        else:
            await inter.response.send_message(text, ephemeral=True)
    except disnake.HTTPException:
        pass  # Interaction expired

# =============================================================================
# GRACEFUL SHUTDOWN
# =============================================================================

async def shutdown_bot():
    """
    Gracefully shutdown the radio and close the bot.

    Called by signal handlers (SIGTERM, SIGINT) and by a failed startup.
    """
    global _is_shutting_down
    if _is_shutting_down:
        return
    _is_shutting_down = True
    logger.info("Initiating graceful shutdown...")

    if _refresh_task and not _refresh_task.done():
        _refresh_task.cancel()
        try:
            await _refresh_task
        except asyncio.CancelledError:
            pass

    player = getattr(bot, 'radio_player', None)
    if player is not None:
        logger.info("Stopping playback...")
        try:
            await player.shutdown()
        except Exception as e:
            logger.error(f"Error during player shutdown: {e}")

    if _supervisor is not None:
        await _supervisor.destroy()

    await update_presence(bot, None)

    logger.info("Closing bot connection...")
    logger.info("Shutdown complete")
    await bot.close()


def handle_shutdown_signal(signum, frame):
    """Signal handler for SIGTERM and SIGINT: schedule the async shutdown."""
    signal_name = signal.Signals(signum).name
    logger.info(f"Received {signal_name} signal, shutting down...")

    if bot.loop and bot.loop.is_running():
        bot.loop.call_soon_threadsafe(lambda: bot.loop.create_task(shutdown_bot()))
    else:
        logger.warning("No event loop running, forcing exit")
        os._exit(0)

# =============================================================================
# COMMANDS
# =============================================================================

from handlers import slash_commands
slash_commands.setup(bot)
logger.info("Slash commands loaded")

# =============================================================================
# MAIN
# =============================================================================

def main():
    """Validate the environment, install signal handlers and run the bot."""
    global _exit_code

    # Pre-flight checks on the loop the bot will run on
    bot.loop.run_until_complete(validate_configuration())

    token = os.getenv('DISCORD_TOKEN').strip()

    # SIGINT = Ctrl+C, SIGTERM = systemd stop / kill
    signal.signal(signal.SIGINT, handle_shutdown_signal)
    signal.signal(signal.SIGTERM, handle_shutdown_signal)

    logger.info("Starting bot...")

    try:
        bot.run(token)
    except KeyboardInterrupt:
        logger.info("Bot stopped by user (Ctrl+C)")
    except Exception as e:
        logger.error(f"Bot crashed: {e}", exc_info=True)
        _exit_code = 1

    sys.exit(_exit_code)


if __name__ == '__main__':
    main()
