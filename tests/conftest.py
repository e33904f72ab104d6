"""Shared fixtures for peersync tests."""

from __future__ import annotations

from typing import Callable

import pytest

from peersync.rtc.media import LocalMedia
from peersync.session.config import SessionConfig

from tests.fakes import FakeRelay, FakeTrack, PeerConnectionFactory


@pytest.fixture
def pc_factory() -> PeerConnectionFactory:
    """Records every fake peer connection a PeerLink creates."""
    return PeerConnectionFactory()


@pytest.fixture
def relay() -> FakeRelay:
    return FakeRelay()


@pytest.fixture
def session_config() -> SessionConfig:
    """Timers far in the future so tests drive tick()/proximity_tick() by hand."""
    return SessionConfig(
        server_url="ws://relay.test",
        stun_url=None,
        broadcast_interval=3600.0,
        proximity_interval=3600.0,
        enable_media=False,
    )


@pytest.fixture
def make_media() -> Callable[[], LocalMedia]:
    def make() -> LocalMedia:
        return LocalMedia.from_tracks([FakeTrack("audio", label="mic"), FakeTrack("video", label="cam")])

    return make
