"""
PlaybackSession transitions.

The session is a pure reducer, so these tests feed events with explicit
timestamps (milliseconds) and inspect the returned effects.
"""

import logging

import pytest

from core.errors import SubprocessCrashed, SourceUnavailable
from core.session import (
    PlaybackSession, SessionConfig, SessionState, format_position,
    Open, OccupancyChanged, CatalogLoaded, FirstByte, StreamFinished, StreamFailed,
    WatchdogTimeout, RetryElapsed, Skip, RestartCurrent, Pause, Resume, VoiceLost, VoiceReady,
    Spawn, Kill, ArmWatchdog, DisarmWatchdog, ScheduleRetry, ReloadCatalog, Announce, SetLabel,
)
from tests.test_doubles import make_source, make_sources


def of_type(effects, cls):
    return [e for e in effects if isinstance(e, cls)]


def spawned(effects) -> Spawn:
    spawns = of_type(effects, Spawn)
    assert len(spawns) == 1, f"expected one spawn, got {effects}"
    return spawns[0]


def start_playing(session, now=0):
    """Open, first listener joins, first byte arrives at ``now``."""
    session.handle(Open(), now)
    spawn = spawned(session.handle(OccupancyChanged(True), now))
    session.handle(FirstByte(spawn.handle_id), now)
    return spawn


class TestFirstListener:

    def test_open_waits_for_listener(self, session):
        assert session.handle(Open(), 0) == []
        assert session.state is SessionState.AWAITING_FIRST_LISTENER

    def test_empty_room_before_first_listener_does_nothing(self, session):
        session.handle(Open(), 0)
        assert session.handle(OccupancyChanged(False), 0) == []
        assert session.state is SessionState.AWAITING_FIRST_LISTENER

    def test_first_listener_spawns_from_zero(self, session, sources):
        session.handle(Open(), 0)
        effects = session.handle(OccupancyChanged(True), 0)

        assert [type(e) for e in effects] == [Spawn, ArmWatchdog, SetLabel]
        spawn = effects[0]
        assert spawn.source == sources[0]
        assert spawn.index == 0
        assert spawn.offset_ms == 0
        assert effects[1] == ArmWatchdog(spawn.handle_id, 8.0)
        assert effects[2] == SetLabel("Episode 0")
        assert session.state is SessionState.PLAYING

    def test_remote_source_gets_longer_startup_bound(self, remote_sources):
        session = PlaybackSession(SessionConfig(), remote_sources)
        session.handle(Open(), 0)
        effects = session.handle(OccupancyChanged(True), 0)
        assert of_type(effects, ArmWatchdog)[0].bound == 45.0

    def test_start_index_wraps_into_catalog(self, sources):
        session = PlaybackSession(SessionConfig(start_index=4), sources)
        session.handle(Open(), 0)
        assert spawned(session.handle(OccupancyChanged(True), 0)).index == 1

    def test_announce_after_first_byte(self, session, sources):
        session.handle(Open(), 0)
        spawn = spawned(session.handle(OccupancyChanged(True), 0))
        effects = session.handle(FirstByte(spawn.handle_id), 250)
        assert effects == [DisarmWatchdog(spawn.handle_id), Announce(sources[0], 0, 3)]
        assert session.started_at_ms == 250

    def test_repeated_occupied_level_is_idempotent(self, session):
        start_playing(session)
        assert session.handle(OccupancyChanged(True), 5_000) == []


class TestSuspendAndResume:

    def test_empty_room_kills_and_keeps_offset(self, session):
        spawn = start_playing(session, now=0)
        effects = session.handle(OccupancyChanged(False), 10_000)

        assert effects == [DisarmWatchdog(spawn.handle_id), Kill(spawn.handle_id)]
        assert session.state is SessionState.PAUSED_EMPTY
        assert session.offset_ms == 10_000
        assert session.index == 0

    def test_repeated_empty_level_is_idempotent(self, session):
        start_playing(session, now=0)
        session.handle(OccupancyChanged(False), 10_000)
        assert session.handle(OccupancyChanged(False), 20_000) == []
        assert session.offset_ms == 10_000

    def test_short_absence_resumes_at_offset_without_announcing(self, session):
        start_playing(session, now=0)
        session.handle(OccupancyChanged(False), 10_000)

        spawn = spawned(session.handle(OccupancyChanged(True), 11_000))
        assert spawn.index == 0
        assert spawn.offset_ms == 10_000
        assert of_type(session.handle(FirstByte(spawn.handle_id), 11_500), Announce) == []

    def test_offset_accumulates_across_suspensions(self, session):
        start_playing(session, now=0)
        session.handle(OccupancyChanged(False), 10_000)
        spawn = spawned(session.handle(OccupancyChanged(True), 11_000))
        session.handle(FirstByte(spawn.handle_id), 12_000)
        session.handle(OccupancyChanged(False), 292_000)

        assert session.offset_ms == 290_000
        assert spawned(session.handle(OccupancyChanged(True), 293_000)).offset_ms == 290_000

    def test_offset_at_threshold_restarts_from_zero(self, session):
        start_playing(session, now=0)
        session.handle(OccupancyChanged(False), 300_000)

        spawn = spawned(session.handle(OccupancyChanged(True), 301_000))
        assert spawn.index == 0
        assert spawn.offset_ms == 0
        assert session.offset_ms == 0

    def test_offset_just_below_threshold_resumes(self, session):
        start_playing(session, now=0)
        session.handle(OccupancyChanged(False), 299_999)
        assert spawned(session.handle(OccupancyChanged(True), 300_500)).offset_ms == 299_999

    def test_suspend_before_first_byte_keeps_offset(self, session):
        session.handle(Open(), 0)
        session.handle(OccupancyChanged(True), 0)
        session.handle(OccupancyChanged(False), 4_000)
        assert session.offset_ms == 0

    def test_late_first_byte_from_killed_handle_is_ignored(self, session):
        session.handle(Open(), 0)
        spawn = spawned(session.handle(OccupancyChanged(True), 0))
        session.handle(OccupancyChanged(False), 1_000)

        assert session.handle(FirstByte(spawn.handle_id), 1_500) == []
        assert session.started_at_ms is None


class TestNaturalAdvance:

    def test_finished_stream_advances_and_announces(self, session, sources):
        first = start_playing(session, now=0)
        effects = session.handle(StreamFinished(first.handle_id), 120_000)

        assert effects[:2] == [DisarmWatchdog(first.handle_id), Kill(first.handle_id)]
        second = spawned(effects)
        assert second.index == 1
        assert second.offset_ms == 0
        assert second.handle_id != first.handle_id
        assert Announce(sources[1], 1, 3) in session.handle(FirstByte(second.handle_id), 120_300)

    def test_last_source_wraps_to_first(self, sources):
        session = PlaybackSession(SessionConfig(start_index=2), sources)
        first = start_playing(session)
        assert spawned(session.handle(StreamFinished(first.handle_id), 1_000)).index == 0

    def test_single_source_replays_itself(self):
        only = make_source(0)
        session = PlaybackSession(SessionConfig(), (only,))
        first = start_playing(session)
        spawn = spawned(session.handle(StreamFinished(first.handle_id), 1_000))
        assert spawn.source == only
        assert spawn.offset_ms == 0

    def test_advance_then_short_absence_resumes_second_source(self, session):
        first = start_playing(session, now=0)
        second = spawned(session.handle(StreamFinished(first.handle_id), 120_000))
        session.handle(FirstByte(second.handle_id), 120_000)
        session.handle(OccupancyChanged(False), 130_000)

        spawn = spawned(session.handle(OccupancyChanged(True), 131_000))
        assert spawn.index == 1
        assert spawn.offset_ms == 10_000


class TestFailures:

    def test_crash_schedules_retry_on_next_source(self, session):
        first = start_playing(session, now=0)
        session.handle(OccupancyChanged(False), 10_000)
        spawn = spawned(session.handle(OccupancyChanged(True), 11_000))

        effects = session.handle(StreamFailed(spawn.handle_id, SubprocessCrashed("src-0")), 12_000)
        retry = of_type(effects, ScheduleRetry)
        assert Kill(spawn.handle_id) in effects
        assert len(retry) == 1 and retry[0].delay == 1.0
        assert of_type(effects, Spawn) == []
        assert session.state is SessionState.RETRYING
        assert session.index == 1
        assert session.offset_ms == 0
        assert first.handle_id != spawn.handle_id

    def test_retry_starts_next_source_without_announcing(self, session):
        first = start_playing(session)
        effects = session.handle(StreamFailed(first.handle_id, SubprocessCrashed("src-0")), 5_000)
        generation = of_type(effects, ScheduleRetry)[0].generation

        spawn = spawned(session.handle(RetryElapsed(generation), 6_000))
        assert spawn.index == 1
        assert spawn.offset_ms == 0
        assert of_type(session.handle(FirstByte(spawn.handle_id), 6_200), Announce) == []

    def test_stale_retry_is_ignored(self, session):
        first = start_playing(session)
        effects = session.handle(StreamFailed(first.handle_id, SubprocessCrashed("src-0")), 5_000)
        generation = of_type(effects, ScheduleRetry)[0].generation
        assert session.handle(RetryElapsed(generation - 1), 6_000) == []
        assert session.state is SessionState.RETRYING

    def test_watchdog_timeout_before_first_byte_fails_source(self, session):
        session.handle(Open(), 0)
        spawn = spawned(session.handle(OccupancyChanged(True), 0))
        effects = session.handle(WatchdogTimeout(spawn.handle_id), 8_000)
        assert Kill(spawn.handle_id) in effects
        assert session.state is SessionState.RETRYING

    def test_watchdog_timeout_after_first_byte_is_ignored(self, session):
        spawn = start_playing(session)
        assert session.handle(WatchdogTimeout(spawn.handle_id), 8_000) == []
        assert session.state is SessionState.PLAYING

    def test_stale_watchdog_for_superseded_handle_is_ignored(self, session):
        session.handle(Open(), 0)
        old = spawned(session.handle(OccupancyChanged(True), 0))
        session.handle(Skip(), 1_000)
        assert session.handle(WatchdogTimeout(old.handle_id), 8_000) == []
        assert session.state is SessionState.PLAYING

    def test_stream_ending_without_audio_is_a_failure(self, session):
        session.handle(Open(), 0)
        spawn = spawned(session.handle(OccupancyChanged(True), 0))
        effects = session.handle(StreamFinished(spawn.handle_id), 500)
        assert of_type(effects, ScheduleRetry)
        assert session.state is SessionState.RETRYING

    def test_spawn_error_is_a_failure(self, session):
        session.handle(Open(), 0)
        spawn = spawned(session.handle(OccupancyChanged(True), 0))
        session.handle(StreamFailed(spawn.handle_id, SourceUnavailable("src-0", "cannot start ffmpeg")), 10)
        assert session.index == 1

    def test_empty_room_while_retrying_holds(self, session):
        first = start_playing(session)
        effects = session.handle(StreamFailed(first.handle_id, SubprocessCrashed("src-0")), 5_000)
        generation = of_type(effects, ScheduleRetry)[0].generation

        session.handle(OccupancyChanged(False), 5_500)
        assert session.state is SessionState.PAUSED_EMPTY
        assert session.handle(RetryElapsed(generation), 6_000) == []

        spawn = spawned(session.handle(OccupancyChanged(True), 9_000))
        assert spawn.index == 1
        assert spawn.offset_ms == 0

    @pytest.mark.parametrize("failure", ["no_audio", "watchdog"])
    def test_failing_last_source_wraps_to_first(self, sources, caplog, failure):
        session = PlaybackSession(SessionConfig(start_index=2), sources)
        session.handle(Open(), 0)
        spawn = spawned(session.handle(OccupancyChanged(True), 0))
        assert spawn.index == 2

        event = StreamFinished(spawn.handle_id) if failure == "no_audio" else WatchdogTimeout(spawn.handle_id)
        with caplog.at_level(logging.WARNING, logger="relay"):
            effects = session.handle(event, 8_000)
        assert "Skipping source src-2" in caplog.text
        assert Kill(spawn.handle_id) in effects
        assert session.state is SessionState.RETRYING

        generation = of_type(effects, ScheduleRetry)[0].generation
        nxt = spawned(session.handle(RetryElapsed(generation), 9_000))
        assert nxt.index == 0
        assert nxt.source == sources[0]
        assert nxt.offset_ms == 0


class TestCatalog:

    def test_empty_catalog_asks_again_instead_of_failing(self, sources):
        session = PlaybackSession(SessionConfig(), ())
        session.handle(Open(), 0)
        effects = session.handle(OccupancyChanged(True), 0)
        assert effects == [ReloadCatalog(30.0)]
        assert session.state is SessionState.RETRYING

        assert session.handle(CatalogLoaded(()), 30_000) == [ReloadCatalog(30.0)]
        spawn = spawned(session.handle(CatalogLoaded(sources), 60_000))
        assert spawn.index == 0

    def test_reload_keeps_pointing_at_current_source(self, session, sources):
        first = start_playing(session)
        second = spawned(session.handle(StreamFinished(first.handle_id), 1_000))
        newer = (make_source(99),) + sources

        assert session.handle(CatalogLoaded(newer), 2_000) == []
        assert session.current_source == sources[1]
        assert session.index == 2
        assert session.handle_id == second.handle_id

    def test_reload_without_current_source_wraps_index(self, sources):
        session = PlaybackSession(SessionConfig(start_index=2), sources)
        session.handle(CatalogLoaded(sources[:2]), 0)
        assert session.index == 0

    def test_reload_dropping_paused_source_discards_its_offset(self, session, sources):
        first = start_playing(session)
        second = spawned(session.handle(StreamFinished(first.handle_id), 1_000))
        session.handle(FirstByte(second.handle_id), 1_000)
        session.handle(OccupancyChanged(False), 121_000)
        assert session.offset_ms == 120_000

        session.handle(CatalogLoaded((sources[0], sources[2])), 122_000)
        assert session.current_source is None
        assert session.offset_ms == 0

        effects = session.handle(OccupancyChanged(True), 123_000)
        spawn = spawned(effects)
        assert spawn.source == sources[2]
        assert spawn.offset_ms == 0
        assert session.handle(FirstByte(spawn.handle_id), 124_000)[-1] == Announce(sources[2], 1, 2)

    def test_reload_dropping_live_source_plays_it_out(self, session, sources):
        first = start_playing(session)
        assert session.handle(CatalogLoaded(sources[1:]), 5_000) == []

        assert session.current_source == sources[0]
        assert session.now_playing(6_000).source == sources[0]
        assert session.position.source_id == "src-0"

        nxt = spawned(session.handle(StreamFinished(first.handle_id), 10_000))
        assert nxt.source == sources[1]
        assert nxt.offset_ms == 0

    def test_reload_dropping_live_source_then_failure_goes_to_next(self, session, sources):
        first = start_playing(session)
        session.handle(CatalogLoaded(sources[1:]), 5_000)
        effects = session.handle(StreamFailed(first.handle_id, SubprocessCrashed("src-0")), 6_000)
        generation = of_type(effects, ScheduleRetry)[0].generation
        assert spawned(session.handle(RetryElapsed(generation), 7_000)).source == sources[1]


class TestCommands:

    def test_skip_while_playing_starts_next_without_announcing(self, session):
        spawn = start_playing(session)
        effects = session.handle(Skip(), 30_000)
        assert effects.index(Kill(spawn.handle_id)) < effects.index(spawned(effects))
        nxt = spawned(effects)
        assert nxt.index == 1
        assert of_type(session.handle(FirstByte(nxt.handle_id), 30_100), Announce) == []

    def test_skip_while_paused_moves_without_playing(self, session):
        start_playing(session)
        session.handle(OccupancyChanged(False), 20_000)
        assert of_type(session.handle(Skip(), 21_000), Spawn) == []
        assert session.index == 1
        assert session.offset_ms == 0

        spawn = spawned(session.handle(OccupancyChanged(True), 22_000))
        assert spawn.index == 1
        assert spawn.offset_ms == 0

    def test_skip_before_first_listener_changes_start(self, session):
        session.handle(Open(), 0)
        session.handle(Skip(), 0)
        assert spawned(session.handle(OccupancyChanged(True), 0)).index == 1

    def test_restart_replays_current_from_zero(self, session):
        start_playing(session)
        spawn = spawned(session.handle(RestartCurrent(), 50_000))
        assert spawn.index == 0
        assert spawn.offset_ms == 0

    def test_pause_holds_even_when_listeners_return(self, session):
        spawn = start_playing(session)
        effects = session.handle(Pause(), 40_000)
        assert Kill(spawn.handle_id) in effects
        assert session.held
        assert session.offset_ms == 40_000

        assert session.handle(OccupancyChanged(True), 41_000) == []
        resumed = spawned(session.handle(Resume(), 42_000))
        assert resumed.offset_ms == 40_000
        assert not session.held

    def test_resume_into_empty_room_waits_for_listener(self, session):
        start_playing(session)
        session.handle(Pause(), 40_000)
        session.handle(OccupancyChanged(False), 41_000)

        assert session.handle(Resume(), 42_000) == []
        assert not session.held
        assert spawned(session.handle(OccupancyChanged(True), 43_000)).offset_ms == 40_000

    def test_pause_before_first_listener_is_ignored(self, session):
        session.handle(Open(), 0)
        assert session.handle(Pause(), 0) == []
        assert not session.held


class TestVoiceConnection:

    def test_voice_loss_suspends_and_ready_resumes_at_offset(self, session, sources):
        spawn = start_playing(session, now=0)
        effects = session.handle(VoiceLost(), 400_000)
        assert effects == [DisarmWatchdog(spawn.handle_id), Kill(spawn.handle_id)]
        assert session.state is SessionState.PAUSED_EMPTY
        assert session.offset_ms == 400_000

        resumed = spawned(session.handle(VoiceReady(), 410_000))
        assert resumed.source == sources[0]
        assert resumed.offset_ms == 400_000
        assert of_type(session.handle(FirstByte(resumed.handle_id), 411_000), Announce) == []

    def test_ready_without_loss_does_nothing(self, session):
        start_playing(session)
        assert session.handle(VoiceReady(), 1_000) == []
        assert session.state is SessionState.PLAYING

    def test_room_emptied_during_outage_uses_threshold(self, session):
        start_playing(session, now=0)
        session.handle(VoiceLost(), 400_000)
        session.handle(OccupancyChanged(False), 401_000)
        assert session.handle(VoiceReady(), 402_000) == []

        spawn = spawned(session.handle(OccupancyChanged(True), 403_000))
        assert spawn.index == 0
        assert spawn.offset_ms == 0

    def test_hold_survives_voice_rebuild(self, session):
        start_playing(session, now=0)
        session.handle(VoiceLost(), 30_000)
        session.handle(Pause(), 31_000)
        assert session.handle(VoiceReady(), 32_000) == []
        assert spawned(session.handle(Resume(), 33_000)).offset_ms == 30_000

    def test_voice_loss_while_waiting_is_ignored(self, session):
        session.handle(Open(), 0)
        assert session.handle(VoiceLost(), 0) == []
        assert session.state is SessionState.AWAITING_FIRST_LISTENER


class TestSnapshots:

    def test_now_playing_is_none_before_start(self, session):
        session.handle(Open(), 0)
        assert session.now_playing(0) is None

    def test_now_playing_counts_elapsed_time(self, session, sources):
        session.handle(Open(), 0)
        spawn = spawned(session.handle(OccupancyChanged(True), 0))
        session.handle(FirstByte(spawn.handle_id), 1_000)

        info = session.now_playing(6_000)
        assert info.source == sources[0]
        assert info.position_ms == 5_000
        assert info.total == 3
        assert info.state is SessionState.PLAYING

    def test_now_playing_while_paused_reports_offset(self, session):
        start_playing(session, now=0)
        session.handle(OccupancyChanged(False), 7_000)
        info = session.now_playing(60_000)
        assert info.position_ms == 7_000
        assert info.state is SessionState.PAUSED_EMPTY

    def test_position_snapshot(self, session):
        start_playing(session, now=100)
        position = session.position
        assert position.source_id == "src-0"
        assert position.offset_ms == 0
        assert position.started_at_ms == 100

    def test_unknown_event_is_rejected(self, session):
        with pytest.raises(TypeError):
            session.handle(object(), 0)


@pytest.mark.parametrize("ms, expected", [
    (0, "00:00"),
    (65_000, "01:05"),
    (299_999, "04:59"),
    (3_725_000, "1:02:05"),
    (-5, "00:00"),
])
def test_format_position(ms, expected):
    assert format_position(ms) == expected
