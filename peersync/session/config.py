from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Optional

from aiortc import RTCConfiguration, RTCIceServer

from ..net.backoff import ReconnectPolicy
from .state import ChangeThresholds


def _env_truthy(name: str, default: bool) -> bool:
    v = os.environ.get(name)
    if v is None:
        return default
    return v.strip().casefold() in {"1", "true", "yes", "on"}


def _env_int(name: str, default: int) -> int:
    v = os.environ.get(name)
    if v is None:
        return default
    try:
        return int(v)
    except Exception:
        return default


def _env_float(name: str, default: Optional[float]) -> Optional[float]:
    v = os.environ.get(name)
    if v is None:
        return default
    try:
        return float(v)
    except Exception:
        return default


@dataclass
class SessionConfig:
    """Tunables for one peer session.

    Every field can be overridden with a PEERSYNC_<FIELD> environment variable
    via `from_env()`. An empty PEERSYNC_STUN_URL disables the STUN server.
    """

    server_url: str = "ws://localhost:8080"
    stun_url: Optional[str] = "stun:stun.l.google.com:19302"
    broadcast_interval: float = 0.1
    proximity_interval: float = 1.0
    max_media_distance: float = 400.0
    position_threshold: float = 0.01
    velocity_threshold: float = 0.001
    rotation_threshold: float = 0.01
    spawn_spread: float = 150.0
    spawn_height: float = 20.0
    reconnect_base_delay: float = 1.0
    reconnect_cap_delay: float = 30.0
    reconnect_max_attempts: int = 10
    connect_timeout: float = 5.0
    peer_timeout: Optional[float] = None
    enable_media: bool = True

    @classmethod
    def from_env(cls) -> "SessionConfig":
        d = cls()
        stun = os.environ.get("PEERSYNC_STUN_URL")
        return cls(
            server_url=os.environ.get("PEERSYNC_SERVER_URL", d.server_url),
            stun_url=d.stun_url if stun is None else (stun.strip() or None),
            broadcast_interval=float(_env_float("PEERSYNC_BROADCAST_INTERVAL", d.broadcast_interval)),
            proximity_interval=float(_env_float("PEERSYNC_PROXIMITY_INTERVAL", d.proximity_interval)),
            max_media_distance=float(_env_float("PEERSYNC_MAX_MEDIA_DISTANCE", d.max_media_distance)),
            position_threshold=float(_env_float("PEERSYNC_POSITION_THRESHOLD", d.position_threshold)),
            velocity_threshold=float(_env_float("PEERSYNC_VELOCITY_THRESHOLD", d.velocity_threshold)),
            rotation_threshold=float(_env_float("PEERSYNC_ROTATION_THRESHOLD", d.rotation_threshold)),
            spawn_spread=float(_env_float("PEERSYNC_SPAWN_SPREAD", d.spawn_spread)),
            spawn_height=float(_env_float("PEERSYNC_SPAWN_HEIGHT", d.spawn_height)),
            reconnect_base_delay=float(_env_float("PEERSYNC_RECONNECT_BASE_DELAY", d.reconnect_base_delay)),
            reconnect_cap_delay=float(_env_float("PEERSYNC_RECONNECT_CAP_DELAY", d.reconnect_cap_delay)),
            reconnect_max_attempts=_env_int("PEERSYNC_RECONNECT_MAX_ATTEMPTS", d.reconnect_max_attempts),
            connect_timeout=float(_env_float("PEERSYNC_CONNECT_TIMEOUT", d.connect_timeout)),
            peer_timeout=_env_float("PEERSYNC_PEER_TIMEOUT", d.peer_timeout),
            enable_media=_env_truthy("PEERSYNC_ENABLE_MEDIA", d.enable_media),
        )

    @property
    def thresholds(self) -> ChangeThresholds:
        return ChangeThresholds(
            position=self.position_threshold,
            velocity=self.velocity_threshold,
            rotation=self.rotation_threshold,
        )

    def reconnect_policy(self) -> ReconnectPolicy:
        return ReconnectPolicy(
            base_delay=self.reconnect_base_delay,
            cap_delay=self.reconnect_cap_delay,
            max_attempts=self.reconnect_max_attempts,
        )

    def rtc_configuration(self) -> Optional[RTCConfiguration]:
        if not self.stun_url:
            return None
        return RTCConfiguration(iceServers=[RTCIceServer(urls=self.stun_url)])
