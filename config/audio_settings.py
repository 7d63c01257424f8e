# Part of Relay - Licensed under GPL 3.0
# See LICENSE.md for details

r"""
========================================================================================================
RELAY RADIO BOT - AUDIO & TRANSCODER SETTINGS
========================================================================================================

FFmpeg and Opus settings for the transcoder. Every source, local or remote,
is converted to Ogg/Opus so the voice sink never has to guess formats.

Most users won't need to change these unless experiencing audio quality or
bandwidth issues.

PRIORITY:
  Python setting (if not None) > .env file > built-in default

========================================================================================================
"""

from typing import Final

from .basic_settings import _get_config

# =========================================================================================================
# FFMPEG EXECUTABLE
# =========================================================================================================

FFMPEG_EXECUTABLE = None  # Leave as None to use .env or default ('ffmpeg' on PATH)
FFMPEG_EXECUTABLE = _get_config(FFMPEG_EXECUTABLE, 'FFMPEG_PATH', 'ffmpeg')

# Only show errors on stderr; stderr is drained into DEBUG logs
FFMPEG_LOGLEVEL: Final[str] = 'error'

# Protocols FFmpeg may open for remote sources
FFMPEG_PROTOCOL_WHITELIST: Final[str] = 'file,http,https,tcp,tls,pipe'

# =========================================================================================================
# OPUS OUTPUT
# =========================================================================================================

# ----------------------------------------
# Bitrate
# ----------------------------------------
# '96k' is transparent for speech and music, '64k' saves ~30-50% bandwidth
#
OPUS_BITRATE = None  # Leave as None to use .env or default ('96k')
OPUS_BITRATE = _get_config(OPUS_BITRATE, 'OPUS_BITRATE', '96k')

OPUS_CHANNELS: Final[int] = 2
OPUS_SAMPLE_RATE: Final[int] = 48000  # Discord voice is always 48kHz
OPUS_APPLICATION: Final[str] = 'audio'  # audio, voip or lowdelay

# =========================================================================================================
# REMOTE FETCH HEADERS
# =========================================================================================================

FETCH_USER_AGENT: Final[str] = 'Mozilla/5.0 (PodcastPlayer/1.0; +https://discord.com)'
FETCH_ACCEPT: Final[str] = 'audio/mpeg,audio/*;q=0.9,*/*;q=0.8'
FEED_USER_AGENT: Final[str] = 'discord-podcast-radio/1.0'

# =========================================================================================================
# SOURCE FORMATS
# =========================================================================================================

# Local formats the folder catalog accepts (in preference order when a stem has several)
SUPPORTED_AUDIO_FORMATS = ('.opus', '.mp3', '.flac', '.wav', '.m4a', '.ogg')

# =========================================================================================================
# SINK BUFFER
# =========================================================================================================

# Bytes of Ogg/Opus kept ahead of the voice sink. When full (e.g. voice is
# reconnecting) FFmpeg is back-pressured instead of buffering without bound.
SINK_BUFFER_BYTES: Final[int] = 256 * 1024

# Size of each read from FFmpeg stdout
TRANSCODE_READ_CHUNK: Final[int] = 4096

# =========================================================================================================
# Export Configuration
# =========================================================================================================

__all__ = [
    'FFMPEG_EXECUTABLE',
    'FFMPEG_LOGLEVEL',
    'FFMPEG_PROTOCOL_WHITELIST',
    'OPUS_BITRATE',
    'OPUS_CHANNELS',
    'OPUS_SAMPLE_RATE',
    'OPUS_APPLICATION',
    'FETCH_USER_AGENT',
    'FETCH_ACCEPT',
    'FEED_USER_AGENT',
    'SUPPORTED_AUDIO_FORMATS',
    'SINK_BUFFER_BYTES',
    'TRANSCODE_READ_CHUNK',
]
