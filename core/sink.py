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
Voice Sink

Bridges the transcoder (event loop) and disnake's audio player thread.

StreamBuffer is a bounded byte FIFO: the event loop feeds it asynchronously,
the player thread reads it with blocking file semantics. When full, feeding
waits, which back-pressures FFmpeg instead of growing without bound (e.g.
a resume while the voice connection is still coming up).

OggOpusSource replays the Ogg/Opus packets as a native opus AudioSource, so
Discord receives the transcoder's packets without re-encoding.
"""

import asyncio
import threading
from collections import deque
from typing import Optional

import disnake
from disnake.oggparse import OggStream

from config.audio_settings import SINK_BUFFER_BYTES


class StreamBuffer:
    """
    Thread-safe bounded byte FIFO with an end-of-stream marker.

    A feeder that finds the buffer full parks on an asyncio.Event; the reader
    thread sets it through call_soon_threadsafe once it has made room.
    """

    def __init__(self, limit: int = SINK_BUFFER_BYTES):
        self.limit = limit
        self._chunks: deque = deque()
        self._size = 0
        self._closed = False
        self._cond = threading.Condition()
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._space: Optional[asyncio.Event] = None

    @property
    def size(self) -> int:
        return self._size

    @property
    def closed(self) -> bool:
        return self._closed

    async def feed(self, data: bytes) -> None:
        """Append data, waiting while the buffer is over its limit. Dropped once closed."""
        while self._size >= self.limit and not self._closed:
            if self._space is None:
                self._loop = asyncio.get_running_loop()
                self._space = asyncio.Event()
            self._space.clear()
            if self._size < self.limit or self._closed:
                break
            await self._space.wait()
        with self._cond:
            if self._closed:
                return
            self._chunks.append(data)
            self._size += len(data)
            self._cond.notify_all()

    def close(self) -> None:
        """Mark end of stream. Readers drain what is left, then get b''."""
        with self._cond:
            self._closed = True
            self._cond.notify_all()
        self._wake_feeder()

    def read(self, n: int = -1) -> bytes:
        """
        Blocking read of exactly ``n`` bytes, fewer only at end of stream.

        Called from the audio player thread only.
        """
        out = bytearray()
        with self._cond:
            while n < 0 or len(out) < n:
                if not self._chunks:
                    if self._closed:
                        break
                    self._cond.wait()
                    continue
                chunk = self._chunks.popleft()
                want = len(chunk) if n < 0 else n - len(out)
                if len(chunk) > want:
                    self._chunks.appendleft(chunk[want:])
                    chunk = chunk[:want]
                out += chunk
                self._size -= len(chunk)
        if out and self._size < self.limit:
            self._wake_feeder()
        return bytes(out)

    def _wake_feeder(self) -> None:
        loop, space = self._loop, self._space
        if loop is None or space is None or space.is_set():
            return
        try:
            loop.call_soon_threadsafe(space.set)
        except RuntimeError:
            pass  # loop already closed, no feeder left to wake


class OggOpusSource(disnake.AudioSource):
    """
    Native opus AudioSource backed by a StreamBuffer.

    ``exhausted`` becomes True only when the stream reached its real end, so
    the after-callback can tell a natural end from a detach (voice dropped,
    source stopped by a newer attempt).

    disnake calls cleanup() whenever its player stops, for any reason. After
    that the buffer is closed and ``released`` is set, so the source must
    never be handed to play() again.
    """

    def __init__(self, buffer: StreamBuffer, handle_id: int):
        self.buffer = buffer
        self.handle_id = handle_id
        self.exhausted = False
        self.released = False
        self._packets = OggStream(buffer).iter_packets()

    def read(self) -> bytes:
        packet = next(self._packets, b'')
        if not packet:
            self.exhausted = True
        return packet

    def is_opus(self) -> bool:
        return True

    def cleanup(self) -> None:
        self.released = True
        self.buffer.close()
