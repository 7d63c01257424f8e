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
Playback Session - Resume State Machine

Owns the current source index, the paused offset and the identity of the one
live transcoder, and decides play / resume / restart / advance / skip.

The session never touches subprocesses, timers or Discord. Every input is an
event passed to ``handle(event, now_ms)`` and every output is a list of
effects (spawn, kill, arm watchdog, schedule retry, announce, set label) that
the caller executes. Events that carry a handle id or timer generation are
ignored unless they match the current one, so callbacks queued before a
supersession can never act on the replacement.

States:
    IDLE -> AWAITING_FIRST_LISTENER -> PLAYING <-> PAUSED_EMPTY
                                          |  ^
                                          v  |
                                        RETRYING
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, List, Optional, Sequence, Tuple

logger = logging.getLogger(__name__)  # For debug/error logs
user_logger = logging.getLogger('relay')  # For user-facing messages

from core.errors import PlaybackFailure, SourceUnavailable, StreamStalled
from core.source import Source


class SessionState(Enum):
    """
    Playback lifecycle for the one voice channel the session serves.

    IDLE: Created, not opened yet
    AWAITING_FIRST_LISTENER: Connected, nobody has joined since startup
    PLAYING: One live transcoder feeding the sink
    PAUSED_EMPTY: Transcoder killed, offset kept (room empty, paused by command
        or voice connection being rebuilt)
    RETRYING: Last attempt failed, waiting out the retry delay before the next source
    """
    IDLE = 0
    AWAITING_FIRST_LISTENER = 1
    PLAYING = 2
    PAUSED_EMPTY = 3
    RETRYING = 4


def format_position(ms: float) -> str:
    """
    Format milliseconds as [h:]mm:ss.

    Examples:
        65000 -> "01:05"
        3725000 -> "1:02:05"
    """
    s = max(0, int(ms // 1000))
    h, rem = divmod(s, 3600)
    m, sec = divmod(rem, 60)
    return (f"{h}:" if h else "") + f"{m:02d}:{sec:02d}"


@dataclass
class SessionConfig:
    """Tunables for one session. Times in seconds unless suffixed _ms."""

    resume_threshold_ms: int = 300_000
    retry_delay: float = 1.0
    startup_timeout_local: float = 8.0
    startup_timeout_remote: float = 45.0
    catalog_retry_delay: float = 30.0
    start_index: int = 0

    @classmethod
    def from_settings(cls) -> 'SessionConfig':
        """Build from config/ constants (env-aware)."""
        from config import (
            RESUME_RESTART_THRESHOLD_MS, RETRY_DELAY, STARTUP_TIMEOUT_LOCAL,
            STARTUP_TIMEOUT_REMOTE, CATALOG_RETRY_DELAY, START_INDEX,
        )
        return cls(
            resume_threshold_ms=RESUME_RESTART_THRESHOLD_MS,
            retry_delay=RETRY_DELAY,
            startup_timeout_local=STARTUP_TIMEOUT_LOCAL,
            startup_timeout_remote=STARTUP_TIMEOUT_REMOTE,
            catalog_retry_delay=CATALOG_RETRY_DELAY,
            start_index=START_INDEX,
        )


# =============================================================================
# EVENTS (inputs)
# =============================================================================

@dataclass(frozen=True)
class Open:
    """Voice connection is up; start waiting for listeners."""


@dataclass(frozen=True)
class OccupancyChanged:
    occupied: bool


@dataclass(frozen=True)
class CatalogLoaded:
    sources: Tuple[Source, ...]


@dataclass(frozen=True)
class FirstByte:
    handle_id: int


@dataclass(frozen=True)
class StreamFinished:
    """Sink drained the stream to its end."""
    handle_id: int


@dataclass(frozen=True)
class StreamFailed:
    """Transcoder crashed, could not spawn, or the sink raised."""
    handle_id: int
    error: PlaybackFailure


@dataclass(frozen=True)
class WatchdogTimeout:
    handle_id: int


@dataclass(frozen=True)
class RetryElapsed:
    generation: int


@dataclass(frozen=True)
class Skip:
    pass


@dataclass(frozen=True)
class RestartCurrent:
    pass


@dataclass(frozen=True)
class Pause:
    pass


@dataclass(frozen=True)
class Resume:
    pass


@dataclass(frozen=True)
class VoiceLost:
    """Voice client was torn down; its player will not read the sink again."""


@dataclass(frozen=True)
class VoiceReady:
    """A (new) voice client is connected."""


# =============================================================================
# EFFECTS (outputs)
# =============================================================================

@dataclass(frozen=True)
class Spawn:
    handle_id: int
    source: Source
    index: int
    offset_ms: int


@dataclass(frozen=True)
class Kill:
    handle_id: int


@dataclass(frozen=True)
class ArmWatchdog:
    handle_id: int
    bound: float


@dataclass(frozen=True)
class DisarmWatchdog:
    handle_id: int


@dataclass(frozen=True)
class ScheduleRetry:
    generation: int
    delay: float


@dataclass(frozen=True)
class ReloadCatalog:
    delay: float


@dataclass(frozen=True)
class Announce:
    source: Source
    index: int
    total: int


@dataclass(frozen=True)
class SetLabel:
    text: Optional[str]


@dataclass(frozen=True)
class PlaybackPosition:
    source_id: Optional[str]
    offset_ms: int
    started_at_ms: Optional[float]


@dataclass(frozen=True)
class NowPlaying:
    source: Source
    index: int
    total: int
    position_ms: int
    state: SessionState


# =============================================================================
# SESSION
# =============================================================================

class PlaybackSession:
    """
    Resume/restart state machine for one voice channel.

    Usage:
        session = PlaybackSession(SessionConfig(), sources)
        effects = session.handle(Open(), now_ms)
        effects = session.handle(OccupancyChanged(True), now_ms)
        # -> [Spawn(...), ArmWatchdog(...), SetLabel(...)]

    Invariants:
        - offset_ms >= 0
        - at most one handle id is live; every Spawn is preceded by a Kill of
          the previous live handle in the same effect list
        - PLAYING implies a live handle
    """

    def __init__(self, config: Optional[SessionConfig] = None, sources: Sequence[Source] = ()):
        self.config = config or SessionConfig()
        self.sources: Tuple[Source, ...] = tuple(sources)
        self.state = SessionState.IDLE

        # Position
        self.index = self.config.start_index % len(self.sources) if self.sources else 0
        self.current: Optional[int] = None  # index whose offset is tracked, None after a skip-on-failure
        self.offset_ms = 0
        self.started_at_ms: Optional[float] = None
        self.live_source: Optional[Source] = None  # may have left the catalog since it was spawned

        # Live transcoder identity
        self.handle_id: Optional[int] = None
        self._last_handle_id = 0
        self.first_byte_seen = False
        self._announce_pending = False

        # Timers and flags
        self.retry_generation = 0
        self.occupied = False
        self.held = False  # paused by command, occupancy must not resume
        self.has_played = False
        self._awaiting_catalog = False
        self._resume_on_voice = False  # suspended by voice loss, listeners never left

        self._handlers: Dict[type, Callable] = {
            Open: self._on_open,
            OccupancyChanged: self._on_occupancy,
            CatalogLoaded: self._on_catalog_loaded,
            FirstByte: self._on_first_byte,
            StreamFinished: self._on_stream_finished,
            StreamFailed: self._on_stream_failed,
            WatchdogTimeout: self._on_watchdog_timeout,
            RetryElapsed: self._on_retry_elapsed,
            Skip: self._on_skip,
            RestartCurrent: self._on_restart,
            Pause: self._on_pause,
            Resume: self._on_resume,
            VoiceLost: self._on_voice_lost,
            VoiceReady: self._on_voice_ready,
        }

    # =========================================================================
    # Public API
    # =========================================================================

    def handle(self, event, now_ms: float) -> List[object]:
        """Apply one event and return the effects to execute, in order."""
        handler = self._handlers.get(type(event))
        if handler is None:
            raise TypeError(f"Unknown session event: {event!r}")
        effects: List[object] = []
        handler(event, now_ms, effects)
        return effects

    @property
    def total(self) -> int:
        return len(self.sources)

    @property
    def current_source(self) -> Optional[Source]:
        if self.state is SessionState.PLAYING:
            return self.live_source
        if self.current is None or not self.sources:
            return None
        return self.sources[self.current]

    @property
    def position(self) -> PlaybackPosition:
        source = self.current_source
        return PlaybackPosition(
            source_id=source.id if source else None,
            offset_ms=self.offset_ms,
            started_at_ms=self.started_at_ms,
        )

    def elapsed_ms(self, now_ms: float) -> int:
        """Milliseconds played since the current attempt's first byte."""
        if self.state is not SessionState.PLAYING or self.started_at_ms is None:
            return 0
        return max(0, int(now_ms - self.started_at_ms))

    def now_playing(self, now_ms: float) -> Optional[NowPlaying]:
        """Snapshot for /nowplaying. None before anything has been selected."""
        if not self.sources:
            return None
        index = self.current if self.current is not None else self.index
        if self.current is None and not self.has_played:
            return None
        source = self.current_source or self.sources[index]
        return NowPlaying(
            source=source,
            index=index,
            total=self.total,
            position_ms=self.offset_ms + self.elapsed_ms(now_ms),
            state=self.state,
        )

    # =========================================================================
    # Transition helpers
    # =========================================================================

    def _kill_live(self, effects: List[object]) -> None:
        if self.handle_id is not None:
            effects.append(DisarmWatchdog(self.handle_id))
            effects.append(Kill(self.handle_id))
            self.handle_id = None

    def _cancel_retry(self) -> None:
        self.retry_generation += 1

    def _start(self, index: int, offset_ms: int, announce: bool, effects: List[object]) -> None:
        """Kill whatever is live, then spawn ``index`` from ``offset_ms``."""
        self._kill_live(effects)
        self._cancel_retry()

        if not self.sources:
            logger.info("No sources loaded yet, asking the catalog again")
            self.state = SessionState.RETRYING
            self._awaiting_catalog = True
            effects.append(ReloadCatalog(self.config.catalog_retry_delay))
            return

        index %= self.total
        source = self.sources[index]

        self._last_handle_id += 1
        self.handle_id = self._last_handle_id
        self.index = self.current = index
        self.offset_ms = max(0, int(offset_ms))
        self.started_at_ms = None
        self.first_byte_seen = False
        self._announce_pending = announce
        self._resume_on_voice = False
        self.live_source = source
        self.has_played = True
        self.state = SessionState.PLAYING

        resume_note = f" (resume @ {format_position(self.offset_ms)})" if self.offset_ms else ""
        user_logger.info(f"Now playing ({index + 1}/{self.total}): {source.display_name}{resume_note}")

        bound = self.config.startup_timeout_remote if source.is_remote else self.config.startup_timeout_local
        effects.append(Spawn(self.handle_id, source, index, self.offset_ms))
        effects.append(ArmWatchdog(self.handle_id, bound))
        effects.append(SetLabel(source.display_name))

    def _suspend(self, now_ms: float, effects: List[object]) -> None:
        """PLAYING -> PAUSED_EMPTY, accumulating the played time into the offset."""
        self.offset_ms += self.elapsed_ms(now_ms)
        self.started_at_ms = None
        self._kill_live(effects)
        self.state = SessionState.PAUSED_EMPTY

    def _fail(self, error: PlaybackFailure, effects: List[object]) -> None:
        """Skip the failing source after the retry delay. Never announces."""
        source = self.current_source
        source_id = source.id if source else error.source_id
        user_logger.warning(f"Skipping source {source_id}: {error.reason}"
                            + (f" ({error.detail})" if error.detail else ""))

        self._kill_live(effects)
        if self.current is not None:
            self.index = (self.current + 1) % self.total
        elif self.total:
            self.index %= self.total  # live source left the catalog, index already names the next one
        else:
            self.index = 0
        self.current = None
        self.offset_ms = 0
        self.started_at_ms = None
        self._resume_on_voice = False
        self.state = SessionState.RETRYING

        self._cancel_retry()
        effects.append(ScheduleRetry(self.retry_generation, self.config.retry_delay))

    def _resume_or_restart(self, effects: List[object]) -> None:
        """PAUSED_EMPTY -> PLAYING using the threshold rule."""
        if self.current is None:
            # Nothing recorded to resume: treat as a natural advance
            self._start(self.index, 0, announce=True, effects=effects)
            return

        if self._resume_on_voice:
            # Nobody left, so the threshold rule does not apply
            user_logger.info(f"Voice back - resuming from {format_position(self.offset_ms)}")
            self._start(self.current, self.offset_ms, announce=False, effects=effects)
            return

        if self.offset_ms >= self.config.resume_threshold_ms:
            user_logger.info(
                f"Returning listener - played {format_position(self.offset_ms)}, "
                f"over the {format_position(self.config.resume_threshold_ms)} threshold, restarting"
            )
            self._start(self.current, 0, announce=False, effects=effects)
        else:
            user_logger.info(f"Listener returned - resuming from {format_position(self.offset_ms)}")
            self._start(self.current, self.offset_ms, announce=False, effects=effects)

    def _is_live(self, handle_id: int) -> bool:
        return self.state is SessionState.PLAYING and handle_id == self.handle_id

    # =========================================================================
    # Event handlers
    # =========================================================================

    def _on_open(self, event: Open, now_ms: float, effects: List[object]) -> None:
        if self.state is SessionState.IDLE:
            self.state = SessionState.AWAITING_FIRST_LISTENER
            logger.debug("Session opened, waiting for the first listener")

    def _on_occupancy(self, event: OccupancyChanged, now_ms: float, effects: List[object]) -> None:
        self.occupied = event.occupied

        if event.occupied:
            if self.state is SessionState.AWAITING_FIRST_LISTENER:
                user_logger.info("First listener joined - starting playback")
                self.offset_ms = 0
                self._start(self.index, 0, announce=True, effects=effects)
            elif self.state is SessionState.PAUSED_EMPTY and not self.held:
                self._resume_or_restart(effects)
            return

        self._resume_on_voice = False
        if self.state is SessionState.PLAYING:
            self._suspend(now_ms, effects)
            user_logger.info(f"No listeners - paused @ {format_position(self.offset_ms)}")
        elif self.state is SessionState.RETRYING and not self._awaiting_catalog:
            self._cancel_retry()
            self.state = SessionState.PAUSED_EMPTY
            user_logger.info("No listeners - holding before the next source")

    def _on_catalog_loaded(self, event: CatalogLoaded, now_ms: float, effects: List[object]) -> None:
        if not event.sources:
            if self._awaiting_catalog:
                effects.append(ReloadCatalog(self.config.catalog_retry_delay))
            return

        previous = self.sources[self.current] if self.current is not None else None
        self.sources = tuple(event.sources)

        # Keep pointing at the same source when the list shifts around it
        if previous is not None:
            for i, source in enumerate(self.sources):
                if source.id == previous.id:
                    self.index = self.current = i
                    break
            else:
                # The offset belongs to the vanished source. A live attempt
                # plays on, and whatever now sits at its slot comes next.
                logger.info(f"Source {previous.id} left the catalog")
                self.index %= self.total
                self.current = None
                self.offset_ms = 0
                self._resume_on_voice = False
        else:
            self.index %= self.total

        if self._awaiting_catalog:
            self._awaiting_catalog = False
            if self.state is SessionState.RETRYING and self.occupied and not self.held:
                self._start(self.index, 0, announce=True, effects=effects)
            elif self.state is SessionState.RETRYING:
                self.state = SessionState.PAUSED_EMPTY

    def _on_first_byte(self, event: FirstByte, now_ms: float, effects: List[object]) -> None:
        if not self._is_live(event.handle_id) or self.first_byte_seen:
            return
        self.first_byte_seen = True
        self.started_at_ms = now_ms
        effects.append(DisarmWatchdog(event.handle_id))
        logger.debug(f"Audio stream started (handle {event.handle_id})")

        if self._announce_pending:
            self._announce_pending = False
            effects.append(Announce(self.live_source, self.index, self.total))

    def _on_stream_finished(self, event: StreamFinished, now_ms: float, effects: List[object]) -> None:
        if not self._is_live(event.handle_id):
            return
        if not self.first_byte_seen:
            source = self.current_source
            self._fail(SourceUnavailable(source.id if source else None, "ended before any audio"), effects)
            return

        self.offset_ms = 0
        next_index = self.index if self.current is None else (self.current + 1) % self.total
        self._start(next_index, 0, announce=True, effects=effects)

    def _on_stream_failed(self, event: StreamFailed, now_ms: float, effects: List[object]) -> None:
        if not self._is_live(event.handle_id):
            return
        self._fail(event.error, effects)

    def _on_watchdog_timeout(self, event: WatchdogTimeout, now_ms: float, effects: List[object]) -> None:
        if not self._is_live(event.handle_id) or self.first_byte_seen:
            return
        source = self.current_source
        self._fail(StreamStalled(source.id if source else None, "no audio before startup timeout"), effects)

    def _on_retry_elapsed(self, event: RetryElapsed, now_ms: float, effects: List[object]) -> None:
        if event.generation != self.retry_generation or self.state is not SessionState.RETRYING:
            return
        if self._awaiting_catalog:
            return
        self._start(self.index, 0, announce=False, effects=effects)

    # =========================================================================
    # Commands
    # =========================================================================

    def _on_skip(self, event: Skip, now_ms: float, effects: List[object]) -> None:
        if not self.sources:
            return
        base = self.current if self.current is not None else self.index
        next_index = (base + 1) % self.total
        self.offset_ms = 0

        if self.state in (SessionState.PLAYING, SessionState.RETRYING):
            self._start(next_index, 0, announce=False, effects=effects)
        elif self.state is SessionState.PAUSED_EMPTY:
            self._kill_live(effects)
            self._cancel_retry()
            self.index = self.current = next_index
        else:
            self.index = next_index

    def _on_restart(self, event: RestartCurrent, now_ms: float, effects: List[object]) -> None:
        if self.state is SessionState.PLAYING and self.current is not None:
            self.offset_ms = 0
            self._start(self.current, 0, announce=False, effects=effects)
        elif self.state is SessionState.RETRYING and not self._awaiting_catalog:
            self.offset_ms = 0
            self._start(self.index, 0, announce=False, effects=effects)
        elif self.state is SessionState.PAUSED_EMPTY:
            self.offset_ms = 0

    def _on_pause(self, event: Pause, now_ms: float, effects: List[object]) -> None:
        if self.state is SessionState.PLAYING:
            self._suspend(now_ms, effects)
            user_logger.info(f"Paused by command @ {format_position(self.offset_ms)}")
        elif self.state is SessionState.RETRYING and not self._awaiting_catalog:
            self._cancel_retry()
            self.state = SessionState.PAUSED_EMPTY
        elif self.state is not SessionState.PAUSED_EMPTY:
            return
        self.held = True

    def _on_resume(self, event: Resume, now_ms: float, effects: List[object]) -> None:
        was_held = self.held
        self.held = False
        if self.state is SessionState.PAUSED_EMPTY and self.occupied:
            self._resume_or_restart(effects)
        elif was_held:
            logger.debug("Resume requested with nobody listening, will play when someone joins")

    # =========================================================================
    # Voice connection
    # =========================================================================

    def _on_voice_lost(self, event: VoiceLost, now_ms: float, effects: List[object]) -> None:
        if self.state is not SessionState.PLAYING:
            return
        self._suspend(now_ms, effects)
        self._resume_on_voice = self.current is not None
        user_logger.info(f"Voice connection lost - holding @ {format_position(self.offset_ms)}")

    def _on_voice_ready(self, event: VoiceReady, now_ms: float, effects: List[object]) -> None:
        if not self._resume_on_voice:
            return
        if self.state is SessionState.PAUSED_EMPTY and self.occupied and not self.held:
            self._resume_or_restart(effects)
