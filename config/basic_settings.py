# Part of Relay - Licensed under GPL 3.0
# See LICENSE.md for details

r"""
========================================================================================================
RELAY RADIO BOT - BASIC SETTINGS
========================================================================================================

Settings most deployments touch: which channels to use, where the episodes
come from, and how chatty the logs are.

HOW TO CUSTOMIZE:
  1. Find the setting you want to change below
  2. Change 'None' to your desired value (see examples in comments)
  3. Save the file and restart the bot

DOCKER / RAILWAY USERS:
  Leave settings as 'None' and set environment variables instead (see .env.example)

PRIORITY:
  Python setting (if not None) > .env file > built-in default

========================================================================================================
"""

import os
from pathlib import Path

# =========================================================================================================
# Internal helper functions (used by settings below - scroll down to skip to settings)
# =========================================================================================================

def _str_to_bool(value):
    """Convert string to boolean (for environment variables)."""
    if isinstance(value, bool):
        return value
    return str(value).lower() in ('true', '1', 'yes', 'on')

def _to_optional_int(value):
    """Convert a snowflake-ish env value to int, empty string -> None."""
    value = str(value).strip()
    return int(value) if value else None

def _get_config(python_value, env_name, default, converter=None):
    """Get configuration value using priority system (Python > .env > default)."""
    if python_value is not None:
        return python_value
    env_value = os.getenv(env_name)
    if env_value is not None:
        return converter(env_value) if converter else env_value
    return default

# =========================================================================================================
# DISCORD TARGETS
# =========================================================================================================

# ----------------------------------------
# Voice Channel
# ----------------------------------------
# The one voice channel the radio lives in (right click channel -> Copy Channel ID)
#
VOICE_CHANNEL_ID = None  # Leave as None to use .env
VOICE_CHANNEL_ID = _get_config(VOICE_CHANNEL_ID, 'VOICE_CHANNEL_ID', None, _to_optional_int)

# ----------------------------------------
# Announcement Channel
# ----------------------------------------
# Text channel for "Now Playing" embeds. None = announcements disabled
#
ANNOUNCE_CHANNEL_ID = None  # Leave as None to use .env
ANNOUNCE_CHANNEL_ID = _get_config(ANNOUNCE_CHANNEL_ID, 'ANNOUNCE_CHANNEL_ID', None, _to_optional_int)

# ----------------------------------------
# Guild (for instant slash command sync)
# ----------------------------------------
GUILD_ID = None  # Leave as None to use .env
GUILD_ID = _get_config(GUILD_ID, 'GUILD_ID', None, _to_optional_int)

# =========================================================================================================
# EPISODE SOURCES
# =========================================================================================================

# ----------------------------------------
# RSS Feed
# ----------------------------------------
# Podcast feed URL. When set, the feed is the catalog and MUSIC_PATH is ignored
#
RSS_URL = None  # Leave as None to use .env
RSS_URL = _get_config(RSS_URL, 'RSS_URL', None)

# ----------------------------------------
# Local Folder
# ----------------------------------------
# Folder of audio files played in filename order when no RSS_URL is set
#
MUSIC_FOLDER = None  # Leave as None to use .env or default (./music)
MUSIC_FOLDER = _get_config(MUSIC_FOLDER, 'MUSIC_PATH', Path('./music'), Path)

# ----------------------------------------
# Start Position
# ----------------------------------------
# Index of the first source played when the first listener joins (0 = first)
#
START_INDEX = None  # Leave as None to use .env or default (0)
START_INDEX = _get_config(START_INDEX, 'START_INDEX', 0, int)

# =========================================================================================================
# VOICE BEHAVIOUR
# =========================================================================================================

SELF_DEAFEN = None  # Leave as None to use .env or default (True)
SELF_DEAFEN = _get_config(SELF_DEAFEN, 'SELF_DEAFEN', True, _str_to_bool)

# ----------------------------------------
# Bot Status Indicator
# ----------------------------------------
# online, dnd, idle or invisible
#
BOT_STATUS = None  # Leave as None to use .env or default ('online')
BOT_STATUS = _get_config(BOT_STATUS, 'BOT_STATUS', 'online', str.lower)

# =========================================================================================================
# LOGGING
# =========================================================================================================

LOG_LEVEL = None  # Leave as None to use .env or default ('INFO')
LOG_LEVEL = _get_config(LOG_LEVEL, 'LOG_LEVEL', 'INFO', str.upper)

# Validate log level
if LOG_LEVEL not in ['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL']:
    raise ValueError(f"Invalid LOG_LEVEL '{LOG_LEVEL}'. Must be: DEBUG, INFO, WARNING, ERROR, or CRITICAL")

# ----------------------------------------
# Library Log Suppression
# ----------------------------------------
# True = Only show disnake warnings and errors
# False = Disnake shows everything at LOG_LEVEL (very noisy)
#
SUPPRESS_LIBRARY_LOGS = None  # Leave as None to use .env or default (True)
SUPPRESS_LIBRARY_LOGS = _get_config(SUPPRESS_LIBRARY_LOGS, 'SUPPRESS_LIBRARY_LOGS', True, _str_to_bool)

# =========================================================================================================
# Export Configuration
# =========================================================================================================

__all__ = [
    'VOICE_CHANNEL_ID',
    'ANNOUNCE_CHANNEL_ID',
    'GUILD_ID',
    'RSS_URL',
    'MUSIC_FOLDER',
    'START_INDEX',
    'SELF_DEAFEN',
    'BOT_STATUS',
    'LOG_LEVEL',
    'SUPPRESS_LIBRARY_LOGS',
]
