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
Error Taxonomy

Per-source failures (SourceUnavailable, StreamStalled, SubprocessCrashed) are
absorbed by the playback session and turned into a skip. Only CatalogEmpty at
boot and repeated TransportDisconnected reach the process boundary.
"""

from typing import Optional


class RelayError(Exception):
    """Base class for all radio errors."""


class PlaybackFailure(RelayError):
    """A single source attempt failed. Never fatal for the process."""

    reason = "failed"

    def __init__(self, source_id: Optional[str] = None, detail: str = ""):
        self.source_id = source_id
        self.detail = detail
        message = f"{self.reason}: {source_id}" if source_id else self.reason
        if detail:
            message = f"{message} ({detail})"
        super().__init__(message)


class SourceUnavailable(PlaybackFailure):
    """Transcoder produced no bytes or the locator could not be opened."""

    reason = "source unavailable"


class StreamStalled(PlaybackFailure):
    """Startup watchdog bound exceeded before the first byte."""

    reason = "stream stalled"


class SubprocessCrashed(PlaybackFailure):
    """Transcoder exited with an error after audio had started."""

    reason = "transcoder crashed"


class TransportDisconnected(RelayError):
    """Voice connection could not be re-established after repeated attempts."""


class CatalogEmpty(RelayError):
    """Catalog has no eligible sources."""


# Name used by catalog implementations
EmptyCatalog = CatalogEmpty
