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
Radio Player - Runtime for the playback session

Feeds events into PlaybackSession and executes the effects it returns:
spawning and killing transcoders, pumping their output into the voice sink,
arming the startup watchdog, scheduling retries and catalog reloads, and
firing announcements and presence updates.

Everything runs on the bot's event loop. The only foreign thread is
disnake's audio player, which reaches us through call_soon_threadsafe.
"""

import asyncio
import logging
from time import monotonic as _now
from typing import Awaitable, Callable, Dict, Optional, Set

import disnake

logger = logging.getLogger(__name__)  # For debug/error logs
user_logger = logging.getLogger('relay')  # For user-facing messages

from config import SINK_BUFFER_BYTES
from core.catalog import SourceCatalog
from core.errors import CatalogEmpty, PlaybackFailure, SourceUnavailable, SubprocessCrashed
from core.session import (
    PlaybackSession, SessionState, NowPlaying,
    Open, OccupancyChanged, CatalogLoaded, FirstByte, StreamFinished, StreamFailed,
    WatchdogTimeout, RetryElapsed, Skip, RestartCurrent, Pause, Resume, VoiceLost, VoiceReady,
    Spawn, Kill, ArmWatchdog, DisarmWatchdog, ScheduleRetry, ReloadCatalog, Announce, SetLabel,
)
from core.sink import OggOpusSource, StreamBuffer
from core.source import Source
from core.transcode import TranscodeHandle, TranscodeProcess, pump_stream
from systems.watchdog import StartupWatchdog


class RadioPlayer:
    """
    Executes one PlaybackSession against real subprocesses and a voice client.

    Uses composition: the session decides, the transcoder and the watchdog
    act, and the voice client is handed in by the connection supervisor.
    """

    def __init__(
        self,
        session: PlaybackSession,
        transcoder: Optional[TranscodeProcess] = None,
        watchdog: Optional[StartupWatchdog] = None,
        *,
        catalog: Optional[SourceCatalog] = None,
        announce: Optional[Callable[[Source, int, int], Awaitable]] = None,
        set_label: Optional[Callable[[Optional[str]], Awaitable]] = None,
        loop: Optional[asyncio.AbstractEventLoop] = None,
        clock: Callable[[], float] = _now,
        buffer_limit: int = SINK_BUFFER_BYTES,
    ):
        self.session = session
        self.transcoder = transcoder or TranscodeProcess()
        self.watchdog = watchdog or StartupWatchdog(loop)
        self.catalog = catalog
        self._announce = announce
        self._set_label = set_label
        self._loop = loop
        self._clock = clock
        self._buffer_limit = buffer_limit

        # =====================================================================
        # VOICE CONNECTION
        # =====================================================================
        self.voice_client: Optional[disnake.VoiceClient] = None

        # =====================================================================
        # LIVE ATTEMPTS (keyed by handle id)
        # =====================================================================
        self._handles: Dict[int, TranscodeHandle] = {}
        self._sinks: Dict[int, OggOpusSource] = {}
        self._spawn_lock = asyncio.Lock()

        # =====================================================================
        # TIMERS & TASKS
        # =====================================================================
        self._retry_timer: Optional[asyncio.TimerHandle] = None
        self._catalog_task: Optional[asyncio.Task] = None
        self._tasks: Set[asyncio.Task] = set()
        self._closed = False

    # =========================================================================
    # Event plumbing
    # =========================================================================

    @property
    def loop(self) -> asyncio.AbstractEventLoop:
        return self._loop or asyncio.get_running_loop()

    def now_ms(self) -> float:
        return self._clock() * 1000

    def dispatch(self, event) -> None:
        """Hand one event to the session and run the resulting effects."""
        if self._closed:
            return
        effects = self.session.handle(event, self.now_ms())
        for effect in effects:
            self._execute(effect)

    def _execute(self, effect) -> None:
        if isinstance(effect, Kill):
            self._stop_handle(effect.handle_id)
        elif isinstance(effect, Spawn):
            self._track(self._spawn(effect))
        elif isinstance(effect, ArmWatchdog):
            self.watchdog.arm(effect.handle_id, effect.bound, self._on_watchdog_timeout)
        elif isinstance(effect, DisarmWatchdog):
            self.watchdog.disarm(effect.handle_id)
        elif isinstance(effect, ScheduleRetry):
            self._schedule_retry(effect.generation, effect.delay)
        elif isinstance(effect, ReloadCatalog):
            self._schedule_catalog_reload(effect.delay)
        elif isinstance(effect, Announce):
            if self._announce:
                self._track(self._fire_and_forget(
                    self._announce(effect.source, effect.index, effect.total), "announcement"))
        elif isinstance(effect, SetLabel):
            if self._set_label:
                self._track(self._fire_and_forget(self._set_label(effect.text), "presence update"))
        else:
            raise TypeError(f"Unknown session effect: {effect!r}")

    def _track(self, coro) -> asyncio.Task:
        task = self.loop.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    @staticmethod
    async def _fire_and_forget(coro, what: str) -> None:
        try:
            await coro
        except Exception:
            logger.exception(f"Failed to send {what}")

    # =========================================================================
    # Transcoder lifecycle
    # =========================================================================

    async def _spawn(self, effect: Spawn) -> None:
        async with self._spawn_lock:
            # Kill-before-replace: nothing older may survive this spawn
            for old_id in list(self._handles):
                if old_id != effect.handle_id:
                    self._stop_handle(old_id)

            if self.session.handle_id != effect.handle_id:
                return  # Superseded while waiting for the lock

            try:
                handle = await self.transcoder.start(effect.source, effect.offset_ms, handle_id=effect.handle_id)
            except SourceUnavailable as e:
                self.dispatch(StreamFailed(effect.handle_id, e))
                return

            if self.session.handle_id != effect.handle_id or self._closed:
                self.transcoder.stop(handle)
                return

            sink = OggOpusSource(StreamBuffer(self._buffer_limit), effect.handle_id)
            self._handles[effect.handle_id] = handle
            self._sinks[effect.handle_id] = sink
            self._attach(effect.handle_id)
            self._track(self._pump(handle, sink))

    async def _pump(self, handle: TranscodeHandle, sink: OggOpusSource) -> None:
        handle_id = handle.id
        try:
            total, returncode = await pump_stream(
                handle, sink.buffer.feed, lambda: self.dispatch(FirstByte(handle_id)))
        except Exception as e:
            if handle_id in self._handles:
                logger.exception(f"Sink error on handle {handle_id}")
                self.dispatch(StreamFailed(handle_id, PlaybackFailure(handle.source.id, f"sink error: {e}")))
            return
        finally:
            sink.buffer.close()

        if handle_id not in self._handles or handle.killed:
            return  # Killed by us, the session already moved on

        if returncode != 0:
            error_type = SubprocessCrashed if total else SourceUnavailable
            self.dispatch(StreamFailed(handle_id, error_type(handle.source.id, f"ffmpeg exited with {returncode}")))
        elif total == 0:
            self.dispatch(StreamFailed(handle_id, SourceUnavailable(handle.source.id, "no audio produced")))
        # Otherwise the sink drains and the after-callback reports the end

    def _stop_handle(self, handle_id: int) -> None:
        handle = self._handles.pop(handle_id, None)
        sink = self._sinks.pop(handle_id, None)
        if handle is not None:
            self.transcoder.stop(handle)
        if sink is not None:
            sink.buffer.close()
            vc = self.voice_client
            if vc is not None and getattr(vc, 'source', None) is sink:
                vc.stop()

    def _on_watchdog_timeout(self, handle_id: int) -> None:
        self.dispatch(WatchdogTimeout(handle_id))

    # =========================================================================
    # Voice sink
    # =========================================================================

    def attach_voice(self, voice_client: disnake.VoiceClient) -> None:
        """
        Use a (new) voice client.

        A source suspended by detach_voice() is respawned at its offset; a
        live sink that no player has read yet is attached as is.
        """
        self.voice_client = voice_client
        self.dispatch(VoiceReady())
        handle_id = self.session.handle_id
        if handle_id is not None and handle_id in self._sinks:
            logger.debug(f"Attaching handle {handle_id} to the new voice client")
            self._attach(handle_id)

    def detach_voice(self) -> None:
        """
        The voice client is being torn down.

        Its player will clean up (close) the live sink, so the attempt is
        suspended: the offset is kept and the transcoder killed.
        """
        self.voice_client = None
        self.dispatch(VoiceLost())

    def _attach(self, handle_id: int) -> None:
        vc = self.voice_client
        sink = self._sinks.get(handle_id)
        if vc is None or sink is None or not vc.is_connected():
            return
        if sink.released:
            logger.debug(f"Sink for handle {handle_id} was released by its player, not re-attaching")
            return
        loop = self.loop  # the after-callback runs on the audio thread
        try:
            if vc.is_playing() or vc.is_paused():
                vc.stop()
            vc.play(sink, after=lambda error: loop.call_soon_threadsafe(self._on_sink_done, handle_id, sink, error))
        except disnake.ClientException as e:
            logger.debug(f"Could not attach handle {handle_id}: {e}")

    def _on_sink_done(self, handle_id: int, sink: OggOpusSource, error: Optional[Exception]) -> None:
        """After-callback from the audio player, already on the event loop."""
        if handle_id != self.session.handle_id:
            return
        vc = self.voice_client
        if error is not None:
            if vc is None or not vc.is_connected():
                logger.debug(f"Sink for handle {handle_id} detached by voice loss: {error}")
                return
            source_id = self._source_id(handle_id)
            self.dispatch(StreamFailed(handle_id, PlaybackFailure(source_id, f"sink error: {error}")))
            return
        if not sink.exhausted:
            logger.debug(f"Sink for handle {handle_id} stopped before end of stream")
            return
        self.dispatch(StreamFinished(handle_id))

    def _source_id(self, handle_id: int) -> Optional[str]:
        handle = self._handles.get(handle_id)
        if handle is not None:
            return handle.source.id
        source = self.session.current_source
        return source.id if source else None

    # =========================================================================
    # Timers
    # =========================================================================

    def _schedule_retry(self, generation: int, delay: float) -> None:
        if self._retry_timer is not None:
            self._retry_timer.cancel()
        self._retry_timer = self.loop.call_later(delay, self.dispatch, RetryElapsed(generation))

    def _schedule_catalog_reload(self, delay: float) -> None:
        if self._catalog_task is not None and not self._catalog_task.done():
            return
        self._catalog_task = self._track(self._reload_catalog_after(delay))

    async def _reload_catalog_after(self, delay: float) -> None:
        await asyncio.sleep(delay)
        sources = await self._list_sources_or_empty()
        self.dispatch(CatalogLoaded(sources))

    async def _list_sources_or_empty(self):
        if self.catalog is None:
            return ()
        try:
            return tuple(await self.catalog.list_sources())
        except CatalogEmpty as e:
            user_logger.warning(f"Catalog still empty: {e}")
            return ()

    # =========================================================================
    # Catalog
    # =========================================================================

    async def load_catalog(self) -> int:
        """
        Initial catalog load.

        Raises:
            CatalogEmpty: no playable sources (fatal at startup)
        """
        sources = tuple(await self.catalog.list_sources())
        self.dispatch(CatalogLoaded(sources))
        user_logger.info(f"Loaded {len(sources)} source(s) from {self.catalog.describe()}")
        return len(sources)

    async def refresh_catalog(self) -> None:
        """Periodic reload. Failures keep the current list."""
        sources = await self._list_sources_or_empty()
        if sources:
            before = self.session.total
            self.dispatch(CatalogLoaded(sources))
            if len(sources) != before:
                user_logger.info(f"Catalog refreshed: {before} -> {len(sources)} source(s)")

    # =========================================================================
    # Session inputs
    # =========================================================================

    def open(self) -> None:
        self.dispatch(Open())

    def set_occupied(self, occupied: bool) -> None:
        self.dispatch(OccupancyChanged(occupied))

    def skip(self) -> Optional[Source]:
        """Jump to the next source. Returns the source now selected."""
        self.dispatch(Skip())
        return self.session.current_source

    def restart_current(self) -> Optional[Source]:
        """Restart the current source from zero. None when nothing to restart."""
        if self.session.state not in (SessionState.PLAYING, SessionState.RETRYING, SessionState.PAUSED_EMPTY):
            return None
        if self.session.state is SessionState.PLAYING and self.session.current is None:
            return None  # live source is no longer in the catalog
        self.dispatch(RestartCurrent())
        return self.session.current_source or self._selected_source()

    def pause(self) -> bool:
        """Hold playback. False if already paused or nothing to pause."""
        if self.session.held:
            return False
        self.dispatch(Pause())
        return self.session.held

    def resume(self) -> bool:
        """Clear a hold. True when playback actually restarted."""
        if not self.session.held:
            return False
        self.dispatch(Resume())
        return self.session.state is SessionState.PLAYING

    def now_playing(self) -> Optional[NowPlaying]:
        return self.session.now_playing(self.now_ms())

    def _selected_source(self) -> Optional[Source]:
        if not self.session.sources:
            return None
        return self.session.sources[self.session.index]

    # =========================================================================
    # Shutdown
    # =========================================================================

    async def shutdown(self) -> None:
        """Kill every transcoder and cancel timers. Safe to call twice."""
        if self._closed:
            return
        self._closed = True
        self.watchdog.disarm()
        if self._retry_timer is not None:
            self._retry_timer.cancel()
            self._retry_timer = None
        for handle_id in list(self._handles):
            self._stop_handle(handle_id)
        for task in list(self._tasks):
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        vc = self.voice_client
        if vc is not None and (vc.is_playing() or vc.is_paused()):
            vc.stop()
        logger.debug("Radio player shut down")
