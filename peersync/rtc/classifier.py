"""Inbound media track classification.

A remote peer can send up to three kinds of media: microphone audio, a camera
video track, and screen-share video tracks. aiortc only tells us audio from
video, so video tracks go through an ordered rule chain; the first rule that
matches wins.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, FrozenSet, Iterable, Optional


class TrackKind(str, Enum):
    AUDIO = "audio"
    CAMERA = "camera"
    SCREEN = "screen"


SCREEN_LABEL_MARKERS = ("screen", "monitor", "window")


@dataclass(frozen=True)
class TrackMetadata:
    """Out-of-band facts a peer announced about its own tracks."""

    screen_track_ids: FrozenSet[str] = field(default_factory=frozenset)

    @classmethod
    def from_ids(cls, track_ids: Iterable[str]) -> "TrackMetadata":
        return cls(screen_track_ids=frozenset(track_ids))


def _display_surface(track: Any) -> Optional[str]:
    surface = getattr(track, "display_surface", None)
    if surface:
        return str(surface)
    settings = getattr(track, "settings", None)
    if isinstance(settings, dict) and settings.get("displaySurface"):
        return str(settings["displaySurface"])
    return None


def classify(track: Any, metadata: Optional[TrackMetadata] = None) -> TrackKind:
    """Map a track to audio, camera or screen.

    Rules, in priority order:
    1. audio kind -> AUDIO
    2. id announced in the peer's screen track metadata -> SCREEN
    3. a display-surface capability hint on the track -> SCREEN
    4. label mentions screen/monitor/window (case-insensitive) -> SCREEN
    5. otherwise CAMERA
    """
    if getattr(track, "kind", None) == "audio":
        return TrackKind.AUDIO

    if metadata is not None and getattr(track, "id", None) in metadata.screen_track_ids:
        return TrackKind.SCREEN

    if _display_surface(track) is not None:
        return TrackKind.SCREEN

    label = str(getattr(track, "label", "") or "").casefold()
    if any(marker in label for marker in SCREEN_LABEL_MARKERS):
        return TrackKind.SCREEN

    return TrackKind.CAMERA
