"""Player state as exchanged between peers.

The wire shape is the camelCase JSON object carried in `join`/`state`
envelopes; browser clients of the same relay send `rotation` and
`billboardData`, which are accepted as aliases.
"""

from __future__ import annotations

import random
import string
from dataclasses import dataclass, fields
from typing import Any, Dict, Optional

import numpy as np

from ..net.protocol import ProtocolError


PEER_ID_PREFIX = "peer-"
_PEER_ID_ALPHABET = string.ascii_lowercase + string.digits


@dataclass(frozen=True)
class Vec3:
    x: float = 0.0
    y: float = 0.0
    z: float = 0.0

    def as_array(self) -> np.ndarray:
        return np.array((self.x, self.y, self.z), dtype=np.float64)

    def to_wire(self) -> Dict[str, float]:
        return {"x": self.x, "y": self.y, "z": self.z}

    @classmethod
    def coerce(cls, value: Any) -> "Vec3":
        if isinstance(value, Vec3):
            return value
        if isinstance(value, dict):
            return cls.from_wire(value)
        x, y, z = (float(v) for v in value)
        return cls(x, y, z)

    @classmethod
    def from_wire(cls, obj: Any) -> "Vec3":
        if not isinstance(obj, dict):
            raise ProtocolError("invalid-vector")
        try:
            return cls(_number(obj.get("x", 0.0)), _number(obj.get("y", 0.0)), _number(obj.get("z", 0.0)))
        except (TypeError, ValueError):
            raise ProtocolError("invalid-vector") from None


@dataclass(frozen=True)
class Billboard:
    """Where a screen-sharing player shows their screen in the world."""

    position: Vec3
    width: float
    height: float

    def to_wire(self) -> Dict[str, Any]:
        return {"position": self.position.to_wire(), "width": self.width, "height": self.height}

    @classmethod
    def from_wire(cls, obj: Any) -> Optional["Billboard"]:
        if obj is None:
            return None
        if not isinstance(obj, dict):
            raise ProtocolError("invalid-billboard")
        try:
            return cls(
                position=Vec3.from_wire(obj.get("position", {})),
                width=_number(obj.get("width", 0.0)),
                height=_number(obj.get("height", 0.0)),
            )
        except (TypeError, ValueError):
            raise ProtocolError("invalid-billboard") from None


def _number(value: Any) -> float:
    # bool is an int subclass; reject it so {"x": true} is not position 1.0.
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise TypeError(f"not a number: {value!r}")
    return float(value)


@dataclass
class LocalState:
    id: str
    position: Vec3 = Vec3()
    velocity: Vec3 = Vec3()
    yaw: float = 0.0
    color: str = ""
    display_name: str = ""
    has_media: bool = False
    screen_sharing: bool = False
    billboard: Optional[Billboard] = None

    def to_wire(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "position": self.position.to_wire(),
            "velocity": self.velocity.to_wire(),
            "yaw": self.yaw,
            "color": self.color,
            "displayName": self.display_name,
            "hasMedia": self.has_media,
            "screenSharing": self.screen_sharing,
            "billboard": self.billboard.to_wire() if self.billboard else None,
        }

    @classmethod
    def from_wire(cls, obj: Any, *, peer_id: Optional[str] = None) -> "LocalState":
        if not isinstance(obj, dict):
            raise ProtocolError("invalid-state")
        state_id = obj.get("id", peer_id)
        if not isinstance(state_id, str) or not state_id:
            raise ProtocolError("state-missing-id")
        if peer_id is not None and state_id != peer_id:
            raise ProtocolError(f"state-id-mismatch peer={peer_id} id={state_id}")

        yaw = obj.get("yaw", obj.get("rotation", 0.0))
        try:
            yaw = _number(yaw)
        except TypeError:
            raise ProtocolError("invalid-yaw") from None

        return cls(
            id=state_id,
            position=Vec3.from_wire(obj.get("position", {})),
            velocity=Vec3.from_wire(obj.get("velocity", {})),
            yaw=yaw,
            color=str(obj.get("color", "") or ""),
            display_name=str(obj.get("displayName", "") or ""),
            has_media=bool(obj.get("hasMedia", False)),
            screen_sharing=bool(obj.get("screenSharing", False)),
            billboard=Billboard.from_wire(obj.get("billboard", obj.get("billboardData"))),
        )


# Fields the game loop may change through update().
UPDATABLE_FIELDS = frozenset(f.name for f in fields(LocalState)) - {"id"}
# Changes to these are always material; the motion fields go through thresholds.
DISCRETE_FIELDS = frozenset({"color", "display_name", "has_media", "screen_sharing", "billboard"})


def coerce_field(name: str, value: Any) -> Any:
    if name not in UPDATABLE_FIELDS:
        raise ValueError(f"unknown or read-only state field: {name}")
    if name in ("position", "velocity"):
        return Vec3.coerce(value)
    if name == "yaw":
        return float(value)
    if name in ("has_media", "screen_sharing"):
        return bool(value)
    if name == "billboard" and value is not None and not isinstance(value, Billboard):
        raise ValueError("billboard must be a Billboard or None")
    return value


@dataclass
class PeerRecord:
    id: str
    state: LocalState
    last_seen: float


@dataclass(frozen=True)
class ChangeThresholds:
    position: float = 0.01
    velocity: float = 0.001
    rotation: float = 0.01


@dataclass(frozen=True)
class BroadcastBaseline:
    """The motion fields as they were last broadcast."""

    position: Vec3
    velocity: Vec3
    yaw: float

    @classmethod
    def of(cls, state: LocalState) -> "BroadcastBaseline":
        return cls(position=state.position, velocity=state.velocity, yaw=state.yaw)


def has_material_change(
    current: LocalState,
    baseline: Optional[BroadcastBaseline],
    thresholds: ChangeThresholds = ChangeThresholds(),
) -> bool:
    if baseline is None:
        return True
    if np.any(np.abs(current.position.as_array() - baseline.position.as_array()) > thresholds.position):
        return True
    if np.any(np.abs(current.velocity.as_array() - baseline.velocity.as_array()) > thresholds.velocity):
        return True
    return abs(current.yaw - baseline.yaw) > thresholds.rotation


def planar_distance(a: Vec3, b: Vec3) -> float:
    """Distance on the ground plane (x/z); height is ignored."""
    return float(np.hypot(a.x - b.x, a.z - b.z))


def _to_int32(n: int) -> int:
    n &= 0xFFFFFFFF
    return n - 0x100000000 if n >= 0x80000000 else n


def _id_hash(peer_id: str) -> int:
    # Same arithmetic as the browser client's `hash = c + ((hash << 5) - hash)`,
    # so every client derives the same color for a given id.
    h = 0
    data = peer_id.encode("utf-16-le")
    for i in range(0, len(data), 2):
        unit = data[i] | (data[i + 1] << 8)
        h = unit + (_to_int32(_to_int32(h) << 5) - h)
    return h


def deterministic_color(peer_id: str) -> str:
    hue = abs(_id_hash(peer_id)) % 360
    return f"hsl({hue}, 100%, 50%)"


def generate_peer_id(rng: Optional[random.Random] = None) -> str:
    rng = rng or random.Random()
    return PEER_ID_PREFIX + "".join(rng.choice(_PEER_ID_ALPHABET) for _ in range(9))


def random_spawn_position(rng: Optional[random.Random] = None, *, spread: float = 150.0, height: float = 20.0) -> Vec3:
    """Uniform placement over a square of side `spread` around the origin.

    Spawning high lets the player drop onto the ground. Nothing checks the
    spot against other players; collisions are only made unlikely.
    """
    rng = rng or random.Random()
    return Vec3(
        x=(rng.random() - 0.5) * spread,
        y=height,
        z=(rng.random() - 0.5) * spread,
    )
