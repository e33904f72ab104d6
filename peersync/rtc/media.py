"""Local capture helpers for aiortc.

Scope:
- Camera + microphone capture (best-effort, per-platform ffmpeg formats).
- Screen capture for screen sharing, or a caller-supplied track.
- Any capture failure degrades to "no media" instead of failing the session.
"""

from __future__ import annotations

import logging
import os
import sys
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Tuple

from aiortc import MediaStreamTrack
from aiortc.contrib.media import MediaPlayer


logger = logging.getLogger(__name__)


# (file, format, options)
CaptureSource = Tuple[str, str, Dict[str, str]]


class MediaUnavailable(RuntimeError):
	"""No capture source could be opened."""


def _env_str(name: str, default: str) -> str:
	v = os.environ.get(name, "").strip()
	return v or default


def _is_windows() -> bool:
	return sys.platform.startswith("win")


def _is_macos() -> bool:
	return sys.platform == "darwin"


def _camera_sources(video_size: str) -> List[CaptureSource]:
	opts = {"video_size": video_size, "framerate": "30"}
	if _is_windows():
		device = _env_str("PEERSYNC_CAMERA_DEVICE", "Integrated Camera")
		return [(f"video={device}", "dshow", opts)]
	if _is_macos():
		return [("default:none", "avfoundation", opts)]
	return [(_env_str("PEERSYNC_CAMERA_DEVICE", "/dev/video0"), "v4l2", opts)]


def _microphone_sources() -> List[CaptureSource]:
	if _is_windows():
		device = _env_str("PEERSYNC_MIC_DEVICE", "Microphone")
		return [(f"audio={device}", "dshow", {})]
	if _is_macos():
		return [("none:default", "avfoundation", {})]
	# PulseAudio is typical on desktop Linux, ALSA as fallback.
	return [("default", "pulse", {}), ("default", "alsa", {})]


def _screen_sources(video_size: Optional[str]) -> List[CaptureSource]:
	opts = {"framerate": "15"}
	if video_size:
		opts["video_size"] = video_size
	if _is_windows():
		return [("desktop", "gdigrab", opts)]
	if _is_macos():
		return [("Capture screen 0:none", "avfoundation", opts)]
	return [(os.environ.get("DISPLAY", ":0.0"), "x11grab", opts)]


def _try_create_player(sources: Sequence[CaptureSource], *, what: str) -> Tuple[Optional[MediaPlayer], Optional[str]]:
	"""Open the first capture source that works."""
	for file, fmt, options in sources:
		try:
			player = MediaPlayer(file, format=fmt, options=options)
			return player, fmt
		except Exception as e:
			logger.debug("media %s capture unavailable format=%s file=%s error=%s", what, fmt, file, e)
	return None, None


def _stop_track(track: Optional[MediaStreamTrack]) -> None:
	if track is None:
		return
	try:
		track.stop()
	except Exception as e:
		logger.debug("media track stop error=%s", e)


@dataclass
class LocalMedia:
	"""Owns the capture players so their tracks stay alive."""

	audio: Optional[MediaStreamTrack] = None
	video: Optional[MediaStreamTrack] = None
	backend: Optional[str] = None
	screen_tracks: List[MediaStreamTrack] = field(default_factory=list)
	_players: List[Any] = field(default_factory=list, repr=False)
	_screen_player: Optional[Any] = field(default=None, repr=False)

	@classmethod
	def create(cls, *, enabled: bool = True, video_size: str = "320x240") -> "LocalMedia":
		if not enabled:
			logger.info("local media disabled")
			return cls()

		media = cls()
		cam, cam_backend = _try_create_player(_camera_sources(video_size), what="camera")
		if cam is not None:
			media._players.append(cam)
			media.video = cam.video
			# avfoundation/dshow players may carry audio as well.
			media.audio = cam.audio

		if media.audio is None:
			mic, mic_backend = _try_create_player(_microphone_sources(), what="microphone")
			if mic is not None:
				media._players.append(mic)
				media.audio = mic.audio
				cam_backend = cam_backend or mic_backend

		media.backend = cam_backend
		if not media.has_media:
			logger.warning("local media unavailable; continuing without camera/microphone")
		else:
			logger.info("local media backend=%s audio=%s video=%s", media.backend, bool(media.audio), bool(media.video))
		return media

	@classmethod
	def from_tracks(cls, tracks: Sequence[MediaStreamTrack]) -> "LocalMedia":
		"""Adopt externally created tracks (synthetic sources, tests); close() stops them."""
		media = cls(backend="external")
		for track in tracks:
			if track.kind == "audio" and media.audio is None:
				media.audio = track
			elif track.kind == "video" and media.video is None:
				media.video = track
		return media

	@property
	def tracks(self) -> List[MediaStreamTrack]:
		"""The primary stream: microphone then camera."""
		return [t for t in (self.audio, self.video) if t is not None]

	@property
	def has_media(self) -> bool:
		return bool(self.tracks)

	@property
	def screen_sharing(self) -> bool:
		return bool(self.screen_tracks)

	def start_screen(self, tracks: Optional[Sequence[MediaStreamTrack]] = None, *, video_size: Optional[str] = None) -> List[MediaStreamTrack]:
		self.stop_screen()
		if tracks:
			self.screen_tracks = list(tracks)
			return list(self.screen_tracks)

		player, backend = _try_create_player(_screen_sources(video_size), what="screen")
		if player is None or player.video is None:
			raise MediaUnavailable("no screen capture source available")
		logger.info("screen capture backend=%s", backend)
		self._screen_player = player
		self.screen_tracks = [player.video]
		return list(self.screen_tracks)

	def stop_screen(self) -> None:
		for track in self.screen_tracks:
			_stop_track(track)
		self.screen_tracks = []
		self._screen_player = None

	def close(self) -> None:
		"""Best-effort stop for every capture track and its ffmpeg process."""
		self.stop_screen()
		_stop_track(self.audio)
		_stop_track(self.video)
		self.audio = None
		self.video = None
		self._players.clear()
