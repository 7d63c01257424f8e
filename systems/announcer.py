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
Now Playing Announcements

Posts an embed to the announcement channel when a new episode goes on air
(first play after startup and natural advance, never on resume or skip).
Failures are logged and swallowed; playback never waits on Discord.
"""

import logging
import re
from datetime import datetime, timezone
from typing import List, Optional, Tuple

import disnake

logger = logging.getLogger(__name__)

from core.source import Source
from utils.config import DEFAULT_SETTINGS
from utils.discord_helpers import safe_send

_TAG_PATTERN = re.compile(r'<[^>]+>')
_SPACE_PATTERN = re.compile(r'\s+')


def trim_description(text: Optional[str], limit: int) -> str:
    """Strip HTML tags, collapse whitespace and cut to ``limit`` chars with an ellipsis."""
    if not text:
        return ""
    plain = _SPACE_PATTERN.sub(' ', _TAG_PATTERN.sub(' ', text)).strip()
    if len(plain) <= limit:
        return plain
    return plain[:limit - 1].rstrip() + "…"


class Announcer:
    """
    Builds and sends "Now Playing" embeds.

    Args:
        channel: Text channel to post in (None disables announcements)
        settings: The ``announce`` settings section from ConfigManager
    """

    def __init__(self, channel: Optional[disnake.abc.Messageable], settings: Optional[dict] = None):
        self.channel = channel
        self.settings = dict(DEFAULT_SETTINGS["announce"])
        if settings:
            self.settings.update(settings)

    @property
    def enabled(self) -> bool:
        return self.channel is not None and bool(self.settings.get("enabled", True))

    def build_message(self, source: Source, index: int, total: int) -> Tuple[disnake.Embed, List[disnake.ui.Button]]:
        """Embed plus link button for ``source`` at 0-based ``index``."""
        embed = disnake.Embed(
            title=f"📻 Now Playing: {source.display_name}"[:256],
            description=trim_description(source.description, self.settings["description_limit"]) or None,
            color=self.settings["color"],
            url=source.link or None,
        )
        embed.add_field(name="Episode", value=f"{index + 1} of {total}", inline=True)
        if source.published:
            published = datetime.fromtimestamp(source.published, tz=timezone.utc)
            embed.add_field(name="Published", value=disnake.utils.format_dt(published, 'D'), inline=True)
        embed.set_footer(text=self.settings["footer"])

        components = []
        if source.link:
            components.append(disnake.ui.Button(
                label=self.settings["button_label"],
                style=disnake.ButtonStyle.link,
                url=source.link,
            ))
        return embed, components

    async def announce_start(self, source: Source, index: int, total: int) -> bool:
        """
        Post the announcement.

        Returns:
            True if the message was sent
        """
        if not self.enabled:
            return False
        embed, components = self.build_message(source, index, total)
        kwargs = {"embed": embed}
        if components:
            kwargs["components"] = components
        msg = await safe_send(self.channel, **kwargs)
        if msg is None:
            logger.warning(f"Announcement for {source.id} was not delivered")
            return False
        logger.debug(f"Announced {source.display_name} ({index + 1}/{total})")
        return True
