"""Events the session publishes to its collaborators (renderer, mixer, UI)."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional, Union

from ..rtc.classifier import TrackKind
from ..rtc.peer_link import TrackStream
from .state import LocalState


# Event type constants
CONNECTED = "connected"
DISCONNECTED_PERMANENT = "disconnected-permanent"
PEER_JOINED = "peer-joined"
PEER_UPDATED = "peer-updated"
PEER_LEFT = "peer-left"
TRACK_STREAM_READY = "track-stream-ready"
TRACK_STREAM_REMOVED = "track-stream-removed"


@dataclass(frozen=True)
class SessionEvent:
    type: str
    peer_id: Optional[str] = None
    data: Optional[LocalState] = None
    kind: Optional[TrackKind] = None
    stream: Optional[TrackStream] = None
    error: Optional[BaseException] = None


# Handlers may be plain functions or coroutines.
EventHandler = Callable[[SessionEvent], Union[None, Awaitable[Any]]]
