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
Presence Gate

Turns voice state updates for the target channel into an "occupied" level:
True while at least one non-bot member is in the channel. The level is
emitted on every relevant update with no debounce; repeats are harmless
because the playback session treats identical levels as no-ops.
"""

import logging
from typing import Callable, Optional

import disnake

logger = logging.getLogger(__name__)


def count_listeners(channel: Optional[disnake.VoiceChannel]) -> int:
    """Number of human members in the channel. Bots never count."""
    if channel is None:
        return 0
    return sum(1 for m in channel.members if not m.bot)


class PresenceGate:
    """
    Occupancy detector for one voice channel.

    Usage:
        gate = PresenceGate(channel_id, player.set_occupied)
        gate.evaluate(channel)  # startup check
        gate.on_voice_state_update(member, before, after)
    """

    def __init__(self, channel_id: int, on_change: Callable[[bool], None]):
        self.channel_id = channel_id
        self._on_change = on_change
        self.occupied: Optional[bool] = None

    def evaluate(self, channel: Optional[disnake.VoiceChannel]) -> bool:
        """Compute and emit the current level for ``channel``."""
        listeners = count_listeners(channel)
        occupied = listeners > 0
        if occupied != self.occupied:
            logger.debug(f"Occupancy changed: {listeners} listener(s)")
        self.occupied = occupied
        self._on_change(occupied)
        return occupied

    def on_voice_state_update(self, member: disnake.Member, before: disnake.VoiceState, after: disnake.VoiceState) -> Optional[bool]:
        """
        Re-evaluate when an update touches the target channel.

        Returns:
            The emitted level, or None if the update was for another channel
        """
        channel = None
        if after.channel is not None and after.channel.id == self.channel_id:
            channel = after.channel
        elif before.channel is not None and before.channel.id == self.channel_id:
            channel = before.channel

        if channel is None:
            return None
        return self.evaluate(channel)
