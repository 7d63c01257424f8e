# Part of Relay - Licensed under GPL 3.0
# See LICENSE.md for details

"""
Timing Settings - All timing and recovery configurations

Controls how long the bot waits for a transcoder to start, when a returning
listener gets a fresh start instead of a resume, and how the voice connection
recovers from network drops.

PRIORITY:
  Python setting (if not None) > .env file > built-in default
"""

from .basic_settings import _get_config

# =========================================================================================================
# RESUME / RESTART
# =========================================================================================================

RESUME_RESTART_THRESHOLD_MS = None  # Leave as None to use .env or default (300000 = 5 min)
RESUME_RESTART_THRESHOLD_MS = _get_config(
    RESUME_RESTART_THRESHOLD_MS, 'RESUME_RESTART_THRESHOLD_MS', 300_000, int
)
                                   # Paused for this long (accumulated) or more = start the episode over
                                   # LOWER = restarts more often, HIGHER = resumes more often

# =========================================================================================================
# STARTUP WATCHDOG
# =========================================================================================================

STARTUP_TIMEOUT_LOCAL = None       # Leave as None to use .env or default (8 seconds)
STARTUP_TIMEOUT_LOCAL = _get_config(STARTUP_TIMEOUT_LOCAL, 'STARTUP_TIMEOUT_LOCAL', 8.0, float)
                                   # Seconds a local file may take to produce its first audio bytes

STARTUP_TIMEOUT_REMOTE = None      # Leave as None to use .env or default (45 seconds)
STARTUP_TIMEOUT_REMOTE = _get_config(STARTUP_TIMEOUT_REMOTE, 'STARTUP_TIMEOUT_REMOTE', 45.0, float)
                                   # Remote fetches get longer: redirects, slow CDNs, big headers

# =========================================================================================================
# RETRY DELAYS
# =========================================================================================================

RETRY_DELAY = 1.0                  # Seconds between a failed source and the next spawn
                                   # Prevents a tight crash loop when several sources are broken

CATALOG_RETRY_DELAY = 30.0         # Seconds before asking an empty catalog again

CATALOG_REFRESH_INTERVAL = None    # Leave as None to use .env or default (3600 = 1 hour)
CATALOG_REFRESH_INTERVAL = _get_config(CATALOG_REFRESH_INTERVAL, 'CATALOG_REFRESH_INTERVAL', 3600.0, float)

# =========================================================================================================
# VOICE CONNECTION
# =========================================================================================================
#
# DON'T CHANGE THESE unless experiencing specific voice connection issues

VOICE_CONNECT_TIMEOUT = 10.0       # Seconds to wait for channel.connect()
KEEPALIVE_INTERVAL = 15.0          # Seconds between keepalive probes while connected
VOICE_RECOVERY_WINDOW = 5.0        # Seconds to wait for the library's own reconnect after a drop
VOICE_RECOVERY_POLL = 0.25         # Poll interval inside the recovery window
VOICE_REJOIN_DELAY = 5.0           # Seconds before tearing down and recreating the connection
VOICE_MAX_REJOIN_FAILURES = 5      # Consecutive failed rejoins before escalating at ERROR level

# =========================================================================================================
# Export Configuration
# =========================================================================================================

__all__ = [
    'RESUME_RESTART_THRESHOLD_MS',
    'STARTUP_TIMEOUT_LOCAL',
    'STARTUP_TIMEOUT_REMOTE',
    'RETRY_DELAY',
    'CATALOG_RETRY_DELAY',
    'CATALOG_REFRESH_INTERVAL',
    'VOICE_CONNECT_TIMEOUT',
    'KEEPALIVE_INTERVAL',
    'VOICE_RECOVERY_WINDOW',
    'VOICE_RECOVERY_POLL',
    'VOICE_REJOIN_DELAY',
    'VOICE_MAX_REJOIN_FAILURES',
]
