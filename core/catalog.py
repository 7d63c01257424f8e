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
Source Catalogs

Produce the ordered, cyclable list of sources the radio plays:
- LocalFolderCatalog: audio files in a folder, in filename order
- RssCatalog: podcast feed episodes, oldest first

Both raise CatalogEmpty when nothing is playable.
"""

import asyncio
import logging
import re
import xml.etree.ElementTree as ET
from email.utils import parsedate_to_datetime
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple

import aiohttp

logger = logging.getLogger(__name__)

from config.audio_settings import SUPPORTED_AUDIO_FORMATS, FEED_USER_AGENT
from core.errors import CatalogEmpty
from core.source import Source, clean_title, format_from_locator, infer_input_format

_WHITESPACE = re.compile(r'\s+')
_TAGS = re.compile(r'<[^>]+>')


class SourceCatalog:
    """Interface every catalog implements."""

    async def list_sources(self) -> Tuple[Source, ...]:
        """
        Return the ordered, non-empty source list.

        Raises:
            CatalogEmpty: No eligible sources exist right now
        """
        raise NotImplementedError

    def describe(self) -> str:
        return self.__class__.__name__


# =============================================================================
# LOCAL FOLDER
# =============================================================================

def collect_audio_files(target_path: Path, formats: Sequence[str] = SUPPORTED_AUDIO_FORMATS) -> List[Path]:
    """
    Collect audio files from a folder, one file per stem.

    When multiple formats of the same file exist (e.g., ep1.opus and ep1.mp3),
    the format listed first in ``formats`` wins.

    Returns:
        Files sorted by name (case-insensitive)

    Examples:
        files: [b.mp3, a.opus, a.mp3, notes.txt]
        Returns: [a.opus, b.mp3]
    """
    if not target_path.is_dir():
        return []

    allowed = [ext.lower() for ext in formats]
    files_by_stem: Dict[str, List[Path]] = {}
    for filepath in target_path.iterdir():
        if filepath.is_file() and filepath.suffix.lower() in allowed:
            files_by_stem.setdefault(filepath.stem, []).append(filepath)

    selected = []
    for stem, group in files_by_stem.items():
        preferred = min(group, key=lambda f: allowed.index(f.suffix.lower()))
        if len(group) > 1:
            others = [f.suffix for f in group if f != preferred]
            logger.debug(f"Multiple formats found for '{stem}', preferring {preferred.suffix} over {others}")
        selected.append(preferred)

    return sorted(selected, key=lambda f: f.name.lower())


class LocalFolderCatalog(SourceCatalog):
    """Plays every supported audio file in a folder, in filename order."""

    def __init__(self, folder: Path):
        self.folder = Path(folder)

    async def list_sources(self) -> Tuple[Source, ...]:
        files = await asyncio.to_thread(collect_audio_files, self.folder)
        if not files:
            raise CatalogEmpty(f"no audio files in {self.folder}")

        return tuple(
            Source(
                id=str(path),
                locator=str(path),
                display_name=clean_title(path.name),
                format_hint=format_from_locator(str(path)),
            )
            for path in files
        )

    def describe(self) -> str:
        return f"folder {self.folder}"


# =============================================================================
# RSS FEED
# =============================================================================

def _text(element: Optional[ET.Element]) -> str:
    if element is None or element.text is None:
        return ''
    return element.text.strip()


def _plain(text: str) -> str:
    return _WHITESPACE.sub(' ', _TAGS.sub(' ', text)).strip()


def _published(raw: str) -> float:
    if not raw:
        return 0.0
    try:
        return parsedate_to_datetime(raw).timestamp()
    except (TypeError, ValueError, IndexError, OverflowError):
        return 0.0


def parse_feed(xml_text: str) -> List[Source]:
    """
    Parse RSS 2.0 feed text into sources, oldest first.

    Each <item> uses its enclosure URL, falling back to <link> then <guid>.
    Items without an http(s) URL are dropped. Episodes with the same
    publication time keep feed order.

    Raises:
        xml.etree.ElementTree.ParseError: Feed is not valid XML
    """
    root = ET.fromstring(xml_text)
    sources = []
    for item in root.iter('item'):
        enclosure = item.find('enclosure')
        link = _text(item.find('link'))
        guid = _text(item.find('guid'))

        url = ''
        content_type = None
        if enclosure is not None:
            url = (enclosure.get('url') or '').strip()
            content_type = enclosure.get('type')
        url = url or link or guid
        if not url.startswith(('http://', 'https://')):
            continue

        description = _text(item.find('description'))
        if not description:
            description = _text(item.find('{http://purl.org/rss/1.0/modules/content/}encoded'))

        title = _text(item.find('title')) or 'Untitled'
        sources.append(Source(
            id=guid or url,
            locator=url,
            display_name=title,
            format_hint=infer_input_format(content_type) or format_from_locator(url),
            link=link or url,
            description=_plain(description),
            published=_published(_text(item.find('pubDate'))),
        ))

    sources.sort(key=lambda s: s.published)
    return sources


class RssCatalog(SourceCatalog):
    """
    Podcast feed catalog.

    A failed or empty refresh keeps the last good episode list so a flaky feed
    never interrupts the rotation. CatalogEmpty is only raised when no list
    has ever been loaded.
    """

    def __init__(self, url: str, timeout: float = 30.0):
        self.url = url
        self.timeout = timeout
        self._episodes: Tuple[Source, ...] = ()

    async def fetch(self) -> List[Source]:
        """Download and parse the feed."""
        headers = {'User-Agent': FEED_USER_AGENT}
        client_timeout = aiohttp.ClientTimeout(total=self.timeout)
        async with aiohttp.ClientSession(headers=headers, timeout=client_timeout) as session:
            async with session.get(self.url) as resp:
                resp.raise_for_status()
                body = await resp.text()
        return parse_feed(body)

    async def list_sources(self) -> Tuple[Source, ...]:
        try:
            episodes = await self.fetch()
        except (aiohttp.ClientError, asyncio.TimeoutError, ET.ParseError, UnicodeDecodeError) as e:
            logger.error(f"RSS fetch failed: {e}")
            episodes = []

        if episodes:
            self._episodes = tuple(episodes)
            logger.info(f"RSS loaded: {len(self._episodes)} episodes")
        elif self._episodes:
            logger.warning("RSS refresh returned nothing, keeping previous episode list")

        if not self._episodes:
            raise CatalogEmpty(f"no playable episodes in {self.url}")
        return self._episodes

    def describe(self) -> str:
        return f"feed {self.url}"
