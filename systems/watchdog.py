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
Watchdog Systems

1. StartupWatchdog - One-shot timer per transcoder handle. If no audio byte
   arrives within the bound, the handle is treated as stalled.
2. Catalog refresh watchdog - Background loop that reloads the source catalog
   every CATALOG_REFRESH_INTERVAL seconds.
"""

import asyncio
import logging
from typing import Callable, Optional

logger = logging.getLogger(__name__)

from config import CATALOG_REFRESH_INTERVAL


class StartupWatchdog:
    """
    Identity-guarded startup timer.

    Only one handle can be armed at a time. A timer that fires for a handle
    other than the armed one (superseded, disarmed, re-armed) does nothing.

    Usage:
        watchdog = StartupWatchdog()
        watchdog.arm(handle_id, 8.0, on_timeout)
        watchdog.disarm(handle_id)  # first byte arrived
    """

    def __init__(self, loop: Optional[asyncio.AbstractEventLoop] = None):
        self._loop = loop
        self._timer: Optional[asyncio.TimerHandle] = None
        self._handle_id: Optional[int] = None

    @property
    def armed_for(self) -> Optional[int]:
        """Handle id currently guarded, None when disarmed."""
        return self._handle_id

    def arm(self, handle_id: int, bound: float, on_timeout: Callable[[int], None]) -> None:
        """Start the timer for ``handle_id``, replacing any previous one."""
        self._cancel()
        loop = self._loop or asyncio.get_running_loop()
        self._handle_id = handle_id
        self._timer = loop.call_later(bound, self._fire, handle_id, on_timeout)
        logger.debug(f"Startup watchdog armed for handle {handle_id} ({bound:.0f}s)")

    def disarm(self, handle_id: Optional[int] = None) -> None:
        """Stop the timer. With a handle id, only if that handle is the armed one."""
        if handle_id is not None and handle_id != self._handle_id:
            return
        if self._handle_id is not None:
            logger.debug(f"Startup watchdog disarmed for handle {self._handle_id}")
        self._cancel()

    def _cancel(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
        self._timer = None
        self._handle_id = None

    def _fire(self, handle_id: int, on_timeout: Callable[[int], None]) -> None:
        if handle_id != self._handle_id:
            logger.debug(f"Ignoring stale watchdog fire for handle {handle_id}")
            return
        self._timer = None
        self._handle_id = None
        logger.warning(f"No audio from handle {handle_id} before the startup timeout")
        on_timeout(handle_id)


async def catalog_refresh_watchdog(bot, player, interval: float = CATALOG_REFRESH_INTERVAL):
    """
    Reload the catalog periodically so new episodes join the rotation.

    Runs in background until the bot closes. A failed refresh keeps the
    current list; the player logs the reason.

    Args:
        bot: Discord bot instance
        player: RadioPlayer whose catalog is refreshed
        interval: Seconds between refreshes
    """
    await bot.wait_until_ready()
    logger.debug(f"Catalog refresh watchdog started (every {interval:.0f}s)")

    while not bot.is_closed():
        try:
            await asyncio.sleep(interval)
            await player.refresh_catalog()

        except asyncio.CancelledError:
            logger.debug("Catalog refresh watchdog cancelled, shutting down")
            break
        except Exception:
            logger.exception("Catalog refresh watchdog error")
