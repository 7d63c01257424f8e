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
Source Descriptor

One playable unit in the catalog: a local file or a remote URL, plus the
metadata announcements need. Sources are immutable once listed.
"""

import re
from dataclasses import dataclass
from pathlib import PurePosixPath
from typing import Optional
from urllib.parse import urlparse

# Content-type fragments -> FFmpeg demuxer names
_CONTENT_TYPE_FORMATS = (
    ('mpeg', 'mp3'),
    ('x-m4a', 'mp4'),
    ('mp4', 'mp4'),
    ('aac', 'mp4'),
)

# File extensions -> FFmpeg demuxer names (only where probing is known to be slow)
_EXTENSION_FORMATS = {
    '.mp3': 'mp3',
    '.m4a': 'mp4',
    '.mp4': 'mp4',
    '.aac': 'mp4',
}

_EXTENSION_PATTERN = re.compile(r'\.(opus|mp3|flac|wav|m4a|ogg|aac|mp4)$', re.IGNORECASE)
_SEPARATOR_PATTERN = re.compile(r'[-_]+')
_SPACE_PATTERN = re.compile(r'\s+')


def infer_input_format(content_type: Optional[str]) -> Optional[str]:
    """
    Map an HTTP/RSS content type to an FFmpeg input format.

    Returns None when FFmpeg should probe on its own.

    Examples:
        "audio/mpeg" -> "mp3"
        "audio/x-m4a" -> "mp4"
        "application/octet-stream" -> None
    """
    ct = (content_type or '').lower()
    for fragment, fmt in _CONTENT_TYPE_FORMATS:
        if fragment in ct:
            return fmt
    return None


def format_from_locator(locator: str) -> Optional[str]:
    """Guess an FFmpeg input format from a path or URL extension."""
    path = urlparse(locator).path if is_remote_locator(locator) else locator
    return _EXTENSION_FORMATS.get(PurePosixPath(path).suffix.lower())


def is_remote_locator(locator: str) -> bool:
    return locator.startswith(('http://', 'https://'))


def clean_title(title: Optional[str], fallback: str = 'Podcast') -> str:
    """
    Turn a file name or episode title into a presence-friendly label.

    Strips the extension, turns dashes/underscores into spaces, collapses
    whitespace and title-cases each word.

    Examples:
        "01_the-long-road.mp3" -> "01 The Long Road"
        "" -> "Podcast"
    """
    if not title:
        return fallback
    text = _EXTENSION_PATTERN.sub('', str(title))
    text = _SEPARATOR_PATTERN.sub(' ', text)
    text = _SPACE_PATTERN.sub(' ', text).strip()
    text = re.sub(r'\b\w', lambda m: m.group(0).upper(), text)
    return text or fallback


@dataclass(frozen=True)
class Source:
    """
    A playable source.

    Attributes:
        id: Stable identifier (file path or episode guid/URL), used in logs
        locator: Local path or http(s) URL handed to the transcoder
        display_name: Human-readable title
        format_hint: FFmpeg input format (-f) or None to let FFmpeg probe
        link: Web page for the "Open Episode" button (remote sources)
        description: Plain-text summary for announcements
        published: Publication time as epoch seconds (0 = unknown)
    """

    id: str
    locator: str
    display_name: str
    format_hint: Optional[str] = None
    link: Optional[str] = None
    description: str = ''
    published: float = 0.0

    @property
    def is_remote(self) -> bool:
        return is_remote_locator(self.locator)

    def __str__(self) -> str:
        return self.display_name
