"""
Startup watchdog identity guard and the catalog refresh loop.
"""

import asyncio

from systems.watchdog import StartupWatchdog, catalog_refresh_watchdog


class TestStartupWatchdog:

    def test_fires_after_bound(self, fake_loop):
        fired = []
        watchdog = StartupWatchdog(loop=fake_loop)
        watchdog.arm(1, 8.0, fired.append)

        fake_loop.advance(7.9)
        assert fired == []
        fake_loop.advance(0.2)
        assert fired == [1]
        assert watchdog.armed_for is None

    def test_disarm_prevents_fire(self, fake_loop):
        fired = []
        watchdog = StartupWatchdog(loop=fake_loop)
        watchdog.arm(1, 8.0, fired.append)
        watchdog.disarm(1)

        fake_loop.advance(10)
        assert fired == []

    def test_disarm_for_other_handle_is_ignored(self, fake_loop):
        fired = []
        watchdog = StartupWatchdog(loop=fake_loop)
        watchdog.arm(2, 8.0, fired.append)
        watchdog.disarm(1)

        assert watchdog.armed_for == 2
        fake_loop.advance(8)
        assert fired == [2]

    def test_rearm_replaces_previous_handle(self, fake_loop):
        fired = []
        watchdog = StartupWatchdog(loop=fake_loop)
        watchdog.arm(1, 8.0, fired.append)
        fake_loop.advance(5)
        watchdog.arm(2, 8.0, fired.append)

        fake_loop.advance(5)
        assert fired == []
        fake_loop.advance(3)
        assert fired == [2]

    def test_stale_fire_already_queued_is_ignored(self, fake_loop):
        fired = []
        watchdog = StartupWatchdog(loop=fake_loop)
        watchdog.arm(1, 8.0, fired.append)
        stale = fake_loop.timers[0]
        watchdog.arm(2, 45.0, fired.append)

        # Callback was already queued when the timer got cancelled
        stale.callback(*stale.args)
        assert fired == []
        assert watchdog.armed_for == 2

    def test_uses_running_loop_by_default(self):
        async def scenario():
            fired = []
            watchdog = StartupWatchdog()
            watchdog.arm(5, 0.01, fired.append)
            await asyncio.sleep(0.05)
            return fired

        assert asyncio.run(scenario()) == [5]


class FakeBot:
    def __init__(self):
        self.closed = False

    async def wait_until_ready(self):
        return None

    def is_closed(self):
        return self.closed


class FakePlayer:
    def __init__(self, bot, stop_after):
        self.bot = bot
        self.stop_after = stop_after
        self.refreshes = 0

    async def refresh_catalog(self):
        self.refreshes += 1
        if self.refreshes == 2:
            raise RuntimeError("feed exploded")
        if self.refreshes >= self.stop_after:
            self.bot.closed = True


def test_catalog_refresh_survives_errors_and_stops_on_close():
    bot = FakeBot()
    player = FakePlayer(bot, stop_after=3)

    asyncio.run(asyncio.wait_for(catalog_refresh_watchdog(bot, player, interval=0.001), timeout=2))
    assert player.refreshes == 3
