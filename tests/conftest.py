"""
Shared pytest fixtures.

Tests use the doubles in tests/test_doubles.py; nothing spawns FFmpeg or
talks to Discord. Async code runs through asyncio.run inside plain tests.
"""

import pytest

from core.session import PlaybackSession, SessionConfig
from tests.test_doubles import FakeClock, FakeLoop, FakeTranscoder, make_sources


@pytest.fixture
def sources():
    """Three local sources: src-0, src-1, src-2."""
    return make_sources(3)


@pytest.fixture
def remote_sources():
    return make_sources(3, remote=True)


@pytest.fixture
def config():
    return SessionConfig()


@pytest.fixture
def session(config, sources):
    """A session over three local sources, not opened yet."""
    return PlaybackSession(config, sources)


@pytest.fixture
def fake_loop():
    return FakeLoop()


@pytest.fixture
def fake_clock():
    return FakeClock()


@pytest.fixture
def fake_transcoder():
    return FakeTranscoder()
