"""Per-peer storage of classified remote tracks."""

from __future__ import annotations

from typing import Any, Dict, Iterable, List, Optional, Set, Tuple

from .classifier import TrackKind, TrackMetadata, classify


class ClassifiedTracks:
    """Three ordered track sets plus the ids already seen.

    A track id lands in exactly one set. The only move allowed afterwards is
    camera -> screen when late metadata names it.
    """

    def __init__(self) -> None:
        self._sets: Dict[TrackKind, List[Any]] = {kind: [] for kind in TrackKind}
        self.seen_track_ids: Set[str] = set()

    def add(self, track: Any, metadata: Optional[TrackMetadata] = None) -> Optional[TrackKind]:
        """Classify and store a track; returns None if its id was already seen."""
        track_id = str(getattr(track, "id", ""))
        if track_id in self.seen_track_ids:
            return None
        self.seen_track_ids.add(track_id)
        kind = classify(track, metadata)
        self._sets[kind].append(track)
        return kind

    def reclassify_as_screen(self, track_ids: Iterable[str]) -> bool:
        ids = set(track_ids)
        camera = self._sets[TrackKind.CAMERA]
        moving = [t for t in camera if getattr(t, "id", None) in ids]
        if not moving:
            return False
        self._sets[TrackKind.CAMERA] = [t for t in camera if getattr(t, "id", None) not in ids]
        self._sets[TrackKind.SCREEN].extend(moving)
        return True

    def discard(self, kind: TrackKind) -> bool:
        """Drop every track of one kind; their ids may be seen again later."""
        dropped = self._sets[kind]
        if not dropped:
            return False
        self._sets[kind] = []
        self.seen_track_ids.difference_update(str(getattr(t, "id", "")) for t in dropped)
        return True

    def tracks(self, kind: TrackKind) -> Tuple[Any, ...]:
        return tuple(self._sets[kind])

    def track_ids(self, kind: TrackKind) -> Tuple[str, ...]:
        return tuple(str(getattr(t, "id", "")) for t in self._sets[kind])

    def kinds_present(self) -> List[TrackKind]:
        return [kind for kind in TrackKind if self._sets[kind]]

    def clear(self) -> None:
        for tracks in self._sets.values():
            tracks.clear()
        self.seen_track_ids.clear()

    def __len__(self) -> int:
        return sum(len(t) for t in self._sets.values())
