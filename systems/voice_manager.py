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
Voice Connection Supervisor

Keeps the one outbound voice connection alive:
- ensure_connected(): join the configured channel and self-deafen
- keepalive loop: periodically verify the client is still connected
- recovery: on disconnect, give the library a short window to reconnect on
  its own, then destroy the client and rejoin after a backoff

Only one reconnect is in flight at a time. A generation counter makes an
older recovery attempt stand down once a newer connection exists.
"""

import asyncio
import logging
from enum import Enum
from typing import Awaitable, Callable, List, Optional

import disnake

logger = logging.getLogger(__name__)  # For debug/error logs
user_logger = logging.getLogger('relay')  # For user-facing messages

from config import (
    SELF_DEAFEN,
    VOICE_CONNECT_TIMEOUT,
    KEEPALIVE_INTERVAL,
    VOICE_RECOVERY_WINDOW,
    VOICE_RECOVERY_POLL,
    VOICE_REJOIN_DELAY,
    VOICE_MAX_REJOIN_FAILURES,
)
from core.errors import TransportDisconnected
from utils.context_managers import reconnecting_state
from utils.discord_helpers import safe_disconnect, safe_voice_state_change

# Errors a rejoin attempt may raise that are worth retrying
_CONNECT_ERRORS = (asyncio.TimeoutError, disnake.ClientException, disnake.HTTPException, OSError, ValueError)


class ConnectionState(Enum):
    """
    Voice transport lifecycle. Written only by ConnectionSupervisor.

    DISCONNECTED: No voice client
    SIGNALLING: Joining or waiting for the gateway/library to recover
    CONNECTING: Voice handshake in progress
    READY: Connected, audio can be sent
    DESTROYED: Shut down for good
    """
    DISCONNECTED = 0
    SIGNALLING = 1
    CONNECTING = 2
    READY = 3
    DESTROYED = 4


class ConnectionSupervisor:
    """
    Owns the voice client for the configured channel.

    Ready listeners are called with each new voice client so the player can
    re-attach its sink; lost listeners are called when the client is given up.
    """

    def __init__(
        self,
        resolve_channel: Callable[[], Awaitable[disnake.VoiceChannel]],
        *,
        self_deaf: bool = SELF_DEAFEN,
        connect_timeout: float = VOICE_CONNECT_TIMEOUT,
        keepalive_interval: float = KEEPALIVE_INTERVAL,
        recovery_window: float = VOICE_RECOVERY_WINDOW,
        recovery_poll: float = VOICE_RECOVERY_POLL,
        rejoin_delay: float = VOICE_REJOIN_DELAY,
        max_failures: int = VOICE_MAX_REJOIN_FAILURES,
    ):
        """
        Args:
            resolve_channel: Coroutine function returning the target voice channel
            self_deaf: Self-deafen after joining
            connect_timeout: Seconds allowed for one voice handshake
            keepalive_interval: Seconds between health probes
            recovery_window: Seconds to wait for the library's own reconnect
            recovery_poll: Poll interval inside the recovery window
            rejoin_delay: Backoff before each rejoin attempt
            max_failures: Consecutive failed rejoins before escalating
        """
        self._resolve_channel = resolve_channel
        self.self_deaf = self_deaf
        self.connect_timeout = connect_timeout
        self.keepalive_interval = keepalive_interval
        self.recovery_window = recovery_window
        self.recovery_poll = recovery_poll
        self.rejoin_delay = rejoin_delay
        self.max_failures = max_failures

        self.state = ConnectionState.DISCONNECTED
        self.voice_client: Optional[disnake.VoiceClient] = None
        self.generation = 0
        self.failures = 0
        self.last_error: Optional[TransportDisconnected] = None

        self._connect_lock = asyncio.Lock()
        self._reconnecting = False
        self._recovery_task: Optional[asyncio.Task] = None
        self._keepalive_task: Optional[asyncio.Task] = None
        self._ready_listeners: List[Callable[[disnake.VoiceClient], None]] = []
        self._lost_listeners: List[Callable[[], None]] = []
        self._escalation_listeners: List[Callable[[TransportDisconnected], None]] = []

    # =========================================================================
    # Listeners
    # =========================================================================

    def add_ready_listener(self, callback: Callable[[disnake.VoiceClient], None]) -> None:
        self._ready_listeners.append(callback)

    def add_lost_listener(self, callback: Callable[[], None]) -> None:
        self._lost_listeners.append(callback)

    def add_escalation_listener(self, callback: Callable[[TransportDisconnected], None]) -> None:
        self._escalation_listeners.append(callback)

    def _notify(self, listeners, *args) -> None:
        for callback in listeners:
            try:
                callback(*args)
            except Exception:
                logger.exception("Connection listener failed")

    # =========================================================================
    # Connection
    # =========================================================================

    @property
    def is_ready(self) -> bool:
        return self.state is ConnectionState.READY

    @property
    def is_reconnecting(self) -> bool:
        return self._reconnecting

    async def ensure_connected(self) -> ConnectionState:
        """
        Make sure a ready voice client exists, joining the channel if needed.

        Raises:
            asyncio.TimeoutError: voice handshake timed out
            disnake.ClientException / disnake.HTTPException: Discord refused the join
        """
        async with self._connect_lock:
            if self.state is ConnectionState.DESTROYED:
                return self.state

            vc = self.voice_client
            if vc is not None and vc.is_connected():
                self.state = ConnectionState.READY
                return self.state

            self.state = ConnectionState.SIGNALLING
            channel = await self._resolve_channel()

            if vc is not None:
                self.voice_client = None
                await safe_disconnect(vc, force=True)

            self.state = ConnectionState.CONNECTING
            try:
                vc = await channel.connect(timeout=self.connect_timeout, reconnect=True)
            except BaseException:
                self.state = ConnectionState.DISCONNECTED
                raise

            if self.state is ConnectionState.DESTROYED:
                await safe_disconnect(vc, force=True)
                return self.state

            self.generation += 1
            self.voice_client = vc
            self.state = ConnectionState.READY
            self.failures = 0
            self.last_error = None

            if self.self_deaf:
                await safe_voice_state_change(channel.guild, channel, self_deaf=True)

            user_logger.info(f"Connected to voice channel: {channel.name}")
            self._start_keepalive()
            self._notify(self._ready_listeners, vc)
            return self.state

    def handle_disconnect(self) -> None:
        """
        Report that the voice client dropped.

        Starts one recovery task; further reports while it runs are ignored.
        """
        if self.state is ConnectionState.DESTROYED:
            return
        if self._recovery_task is not None and not self._recovery_task.done():
            logger.debug("Reconnect already in flight, ignoring disconnect report")
            return
        self._recovery_task = asyncio.get_running_loop().create_task(self._recover(self.generation))

    async def _recover(self, generation: int) -> None:
        with reconnecting_state(self):
            user_logger.warning("Voice connection lost, waiting for it to recover")
            self.state = ConnectionState.SIGNALLING

            if await self._wait_for_recovery():
                self.state = ConnectionState.READY
                user_logger.info("Voice connection recovered")
                return

            self._notify(self._lost_listeners)

            while self.state is not ConnectionState.DESTROYED:
                await asyncio.sleep(self.rejoin_delay)
                if generation != self.generation or self.state is ConnectionState.DESTROYED:
                    logger.debug("Newer connection exists, recovery standing down")
                    return

                stale = self.voice_client
                self.voice_client = None
                await safe_disconnect(stale, force=True)

                try:
                    await self.ensure_connected()
                    return
                except _CONNECT_ERRORS as e:
                    self.failures += 1
                    if self.failures >= self.max_failures:
                        self.last_error = TransportDisconnected(
                            f"voice rejoin failed {self.failures} times in a row: {e!r}")
                        user_logger.error(f"Voice transport down: {self.last_error}")
                        self._notify(self._escalation_listeners, self.last_error)
                    else:
                        user_logger.warning(
                            f"Voice rejoin failed ({self.failures}/{self.max_failures}): {e!r}, "
                            f"retrying in {self.rejoin_delay:.0f}s"
                        )
                    generation = self.generation

    async def _wait_for_recovery(self) -> bool:
        """Poll the client for up to recovery_window seconds. True if it came back."""
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.recovery_window
        while loop.time() < deadline:
            vc = self.voice_client
            if vc is not None and vc.is_connected():
                return True
            await asyncio.sleep(self.recovery_poll)
        vc = self.voice_client
        return vc is not None and vc.is_connected()

    # =========================================================================
    # Keepalive
    # =========================================================================

    def _start_keepalive(self) -> None:
        if self._keepalive_task is None or self._keepalive_task.done():
            self._keepalive_task = asyncio.get_running_loop().create_task(self._keepalive())

    async def _keepalive(self) -> None:
        """Probe the client every keepalive_interval seconds."""
        logger.debug(f"Voice keepalive started (every {self.keepalive_interval:.0f}s)")
        while self.state is not ConnectionState.DESTROYED:
            try:
                await asyncio.sleep(self.keepalive_interval)
                if self._reconnecting:
                    continue

                vc = self.voice_client
                if vc is None or not vc.is_connected():
                    logger.debug("Keepalive found the voice client disconnected")
                    self.handle_disconnect()
                    continue

                logger.debug(f"Voice keepalive ok (latency {vc.latency * 1000:.0f}ms)")
                await self._reassert_deafen(vc)

            except asyncio.CancelledError:
                logger.debug("Voice keepalive cancelled, shutting down")
                break
            except Exception:
                logger.exception("Voice keepalive error")

    async def _reassert_deafen(self, vc: disnake.VoiceClient) -> None:
        if not self.self_deaf:
            return
        me = vc.guild.me
        voice_state = me.voice if me else None
        if voice_state is not None and not voice_state.self_deaf:
            logger.debug("Re-applying self-deafen")
            await safe_voice_state_change(vc.guild, vc.channel, self_deaf=True)

    # =========================================================================
    # Shutdown
    # =========================================================================

    async def destroy(self) -> None:
        """Leave voice for good. Idempotent."""
        if self.state is ConnectionState.DESTROYED:
            return
        self.state = ConnectionState.DESTROYED
        for task in (self._keepalive_task, self._recovery_task):
            if task is not None and not task.done():
                task.cancel()
        vc, self.voice_client = self.voice_client, None
        await safe_disconnect(vc, force=True)
        logger.debug("Voice connection supervisor destroyed")
