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
Transcoder Process

Wraps one FFmpeg invocation that turns a source (optionally seeked) into a
continuous Ogg/Opus byte stream on stdout. One TranscodeHandle per attempt;
handles are never reused.

stderr is drained by a background task into DEBUG logs so FFmpeg can never
stall on a full diagnostic pipe.
"""

import asyncio
import logging
from typing import Awaitable, Callable, List, Optional, Tuple

logger = logging.getLogger(__name__)

from config.audio_settings import (
    FFMPEG_EXECUTABLE,
    FFMPEG_LOGLEVEL,
    FFMPEG_PROTOCOL_WHITELIST,
    OPUS_BITRATE,
    OPUS_CHANNELS,
    OPUS_SAMPLE_RATE,
    OPUS_APPLICATION,
    FETCH_USER_AGENT,
    FETCH_ACCEPT,
    TRANSCODE_READ_CHUNK,
)
from core.errors import SourceUnavailable
from core.source import Source


def build_ffmpeg_args(
    source: Source,
    offset_ms: int = 0,
    *,
    executable: str = FFMPEG_EXECUTABLE,
    bitrate: str = OPUS_BITRATE,
) -> List[str]:
    """
    Build the FFmpeg command line for one attempt.

    The seek (-ss) is an input option placed before -i so FFmpeg seeks the
    demuxer instead of decoding and discarding everything up to the offset.

    Raises:
        ValueError: offset_ms is negative
    """
    if offset_ms < 0:
        raise ValueError(f"offset_ms must be >= 0, got {offset_ms}")

    args = [executable, '-hide_banner', '-loglevel', FFMPEG_LOGLEVEL, '-nostdin']

    if source.is_remote:
        args += [
            '-protocol_whitelist', FFMPEG_PROTOCOL_WHITELIST,
            '-user_agent', FETCH_USER_AGENT,
            '-headers', f'Accept: {FETCH_ACCEPT}\r\n',
            '-reconnect', '1',
            '-reconnect_streamed', '1',
            '-reconnect_delay_max', '5',
        ]

    seek_seconds = offset_ms // 1000
    if seek_seconds > 0:
        args += ['-ss', str(seek_seconds)]

    if source.format_hint:
        args += ['-f', source.format_hint]

    args += [
        '-i', source.locator,
        '-vn',
        '-ac', str(OPUS_CHANNELS),
        '-ar', str(OPUS_SAMPLE_RATE),
        '-c:a', 'libopus',
        '-b:a', bitrate,
        '-application', OPUS_APPLICATION,
        '-f', 'ogg',
        'pipe:1',
    ]
    return args


class TranscodeHandle:
    """
    One running transcoder.

    Attributes:
        id: Handle identity assigned by the playback session
        source: Source being transcoded
        offset_ms: Offset the attempt started from
        process: asyncio subprocess
    """

    def __init__(self, handle_id: int, source: Source, offset_ms: int, process: asyncio.subprocess.Process):
        self.id = handle_id
        self.source = source
        self.offset_ms = offset_ms
        self.process = process
        self.killed = False
        self._stderr_task: Optional[asyncio.Task] = None

    @property
    def pid(self) -> Optional[int]:
        return self.process.pid

    @property
    def stdout(self) -> asyncio.StreamReader:
        return self.process.stdout

    @property
    def alive(self) -> bool:
        return not self.killed and self.process.returncode is None

    def kill(self) -> None:
        """Request SIGKILL without waiting. Safe to call repeatedly."""
        if self.killed:
            return
        self.killed = True
        if self.process.returncode is not None:
            return
        try:
            self.process.kill()
        except ProcessLookupError:
            pass  # Exited between the check and the kill

    def __repr__(self) -> str:
        return f"<TranscodeHandle id={self.id} pid={self.pid} alive={self.alive}>"


async def _drain_stderr(stream: Optional[asyncio.StreamReader], handle_id: int) -> None:
    """Read FFmpeg diagnostics until EOF, logging each line at DEBUG."""
    if stream is None:
        return
    while True:
        try:
            line = await stream.readline()
        except ValueError:
            # Line longer than the reader limit, the buffer was discarded
            continue
        if not line:
            break
        text = line.decode(errors='replace').strip()
        if text:
            logger.debug(f"[ffmpeg {handle_id}] {text}")


class TranscodeProcess:
    """
    Starts and stops FFmpeg transcoders.

    Usage:
        transcoder = TranscodeProcess()
        handle = await transcoder.start(source, offset_ms=10_000, handle_id=3)
        ...
        transcoder.stop(handle)  # non-blocking, idempotent
    """

    def __init__(
        self,
        executable: str = FFMPEG_EXECUTABLE,
        bitrate: str = OPUS_BITRATE,
        spawn: Callable[..., Awaitable[asyncio.subprocess.Process]] = asyncio.create_subprocess_exec,
    ):
        self.executable = executable
        self.bitrate = bitrate
        self._spawn = spawn

    async def start(self, source: Source, offset_ms: int = 0, *, handle_id: int) -> TranscodeHandle:
        """
        Spawn FFmpeg for ``source`` starting at ``offset_ms``.

        Raises:
            ValueError: offset_ms is negative
            SourceUnavailable: FFmpeg could not be started at all
        """
        args = build_ffmpeg_args(source, offset_ms, executable=self.executable, bitrate=self.bitrate)
        try:
            process = await self._spawn(
                *args,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise SourceUnavailable(source.id, f"cannot start ffmpeg: {e}") from e

        handle = TranscodeHandle(handle_id, source, offset_ms, process)
        handle._stderr_task = asyncio.create_task(_drain_stderr(process.stderr, handle_id))
        logger.debug(f"Spawned ffmpeg pid={process.pid} for handle {handle_id} @ {offset_ms}ms")
        return handle

    def stop(self, handle: Optional[TranscodeHandle]) -> None:
        """Kill the transcoder. Never waits for the exit."""
        if handle is None:
            return
        if handle.alive:
            logger.debug(f"Killing ffmpeg pid={handle.pid} (handle {handle.id})")
        handle.kill()


async def pump_stream(
    handle: TranscodeHandle,
    write: Callable[[bytes], Awaitable[None]],
    on_first_byte: Callable[[], None],
    chunk_size: int = TRANSCODE_READ_CHUNK,
) -> Tuple[int, Optional[int]]:
    """
    Copy transcoder stdout into ``write`` until EOF.

    ``on_first_byte`` is called once, as soon as the first chunk arrives.

    Returns:
        (total bytes copied, process return code)
    """
    total = 0
    stdout = handle.stdout
    while True:
        chunk = await stdout.read(chunk_size)
        if not chunk:
            break
        if total == 0:
            on_first_byte()
        total += len(chunk)
        await write(chunk)

    returncode = await handle.process.wait()
    return total, returncode
