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
Context Managers for Safe State Management

Guarantee that flags set for the duration of an operation are cleared even
when the operation raises or is cancelled.
"""

from contextlib import contextmanager
from typing import Any


@contextmanager
def reconnecting_state(supervisor: Any):
    """
    Mark a connection supervisor as having a reconnect in flight.

    Usage, as in ConnectionSupervisor._recover:
        async def _recover(self, generation):
            with reconnecting_state(self):
                ...  # wait out the recovery window, then rejoin

    While set, further disconnect reports are ignored so only one reconnect
    runs at a time.

    Args:
        supervisor: ConnectionSupervisor with a _reconnecting attribute
    """
    # Preserve previous state to handle nested calls correctly
    prev = getattr(supervisor, "_reconnecting", False)
    supervisor._reconnecting = True
    try:
        yield
    finally:
        supervisor._reconnecting = prev
