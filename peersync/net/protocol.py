"""Envelope protocol helpers.

Every message is a single JSON object, on the signaling WebSocket and on peer
data channels alike. See `peersync.relay` for the routing rules the relay
applies to these envelopes.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple, TypedDict, Union


# Message type constants
JOIN = "join"
STATE = "state"
LEAVE = "leave"

OFFER = "offer"
ANSWER = "answer"
ICE = "ice"

SCREEN_TRACK_METADATA = "screen_track_metadata"

# Envelopes the relay forwards only to `targetPeer`.
UNICAST_TYPES = frozenset({OFFER, ANSWER, ICE})


class SessionDescriptionDict(TypedDict):
	type: str
	sdp: str


class IceCandidateDict(TypedDict, total=False):
	candidate: str
	sdpMid: Optional[str]
	sdpMLineIndex: Optional[int]


@dataclass(frozen=True)
class ProtocolError(Exception):
	message: str


@dataclass(frozen=True)
class Join:
	peer_id: str
	data: Dict[str, Any]


@dataclass(frozen=True)
class State:
	peer_id: str
	data: Dict[str, Any]


@dataclass(frozen=True)
class Leave:
	peer_id: str


@dataclass(frozen=True)
class Offer:
	peer_id: str
	target_peer: str
	description: SessionDescriptionDict


@dataclass(frozen=True)
class Answer:
	peer_id: str
	target_peer: str
	description: SessionDescriptionDict


@dataclass(frozen=True)
class Ice:
	peer_id: str
	target_peer: str
	# None marks end-of-candidates.
	candidate: Optional[IceCandidateDict]


@dataclass(frozen=True)
class ScreenTrackMetadata:
	peer_id: str
	track_ids: Tuple[str, ...]


@dataclass(frozen=True)
class Unknown:
	peer_id: str
	type: str
	raw: Dict[str, Any]


Envelope = Union[Join, State, Leave, Offer, Answer, Ice, ScreenTrackMetadata, Unknown]


def make_join(peer_id: str, data: Dict[str, Any]) -> Dict[str, Any]:
	return {"type": JOIN, "peerId": peer_id, "data": data}


def make_state(peer_id: str, data: Dict[str, Any]) -> Dict[str, Any]:
	return {"type": STATE, "peerId": peer_id, "data": data}


def make_leave(peer_id: str) -> Dict[str, Any]:
	return {"type": LEAVE, "peerId": peer_id}


def make_offer(peer_id: str, to_peer: str, sdp: str) -> Dict[str, Any]:
	return {"type": OFFER, "peerId": peer_id, "targetPeer": to_peer, "offer": {"type": "offer", "sdp": sdp}}


def make_answer(peer_id: str, to_peer: str, sdp: str) -> Dict[str, Any]:
	return {"type": ANSWER, "peerId": peer_id, "targetPeer": to_peer, "answer": {"type": "answer", "sdp": sdp}}


def make_ice(peer_id: str, to_peer: str, candidate: Optional[IceCandidateDict]) -> Dict[str, Any]:
	return {"type": ICE, "peerId": peer_id, "targetPeer": to_peer, "candidate": candidate}


def make_screen_track_metadata(peer_id: str, track_ids: list[str]) -> Dict[str, Any]:
	return {"type": SCREEN_TRACK_METADATA, "peerId": peer_id, "trackIds": list(track_ids)}


def encode(payload: Dict[str, Any]) -> str:
	return json.dumps(payload, separators=(",", ":"), ensure_ascii=False)


def decode(raw: Union[str, bytes], *, default_peer: Optional[str] = None) -> Envelope:
	"""Parse one raw JSON message into an envelope.

	Raises ProtocolError for anything that is not a well-formed envelope.
	"""
	try:
		msg = json.loads(raw)
	except (json.JSONDecodeError, UnicodeDecodeError) as e:
		raise ProtocolError(f"invalid-json: {e}") from None
	return parse_envelope(msg, default_peer=default_peer)


def parse_envelope(msg: Any, *, default_peer: Optional[str] = None) -> Envelope:
	"""Validate a decoded JSON object and return the matching envelope variant.

	Data-channel messages may omit `peerId`; the link that received them passes
	its remote id as `default_peer`.
	"""
	if not isinstance(msg, dict):
		raise ProtocolError("invalid-message")

	mtype = msg.get("type")
	if not isinstance(mtype, str) or not mtype:
		raise ProtocolError("missing-type")

	peer_id = msg.get("peerId", default_peer)
	if not isinstance(peer_id, str) or not peer_id:
		raise ProtocolError(f"missing-peer-id type={mtype}")

	if mtype in (JOIN, STATE):
		data = msg.get("data")
		if not isinstance(data, dict):
			raise ProtocolError(f"missing-data type={mtype}")
		if mtype == JOIN:
			return Join(peer_id=peer_id, data=data)
		return State(peer_id=peer_id, data=data)

	if mtype == LEAVE:
		return Leave(peer_id=peer_id)

	if mtype in UNICAST_TYPES:
		target = msg.get("targetPeer")
		if not isinstance(target, str) or not target:
			raise ProtocolError(f"missing-target type={mtype}")

		if mtype == ICE:
			candidate = msg.get("candidate")
			if candidate is not None and not isinstance(candidate, dict):
				raise ProtocolError("invalid-candidate")
			return Ice(peer_id=peer_id, target_peer=target, candidate=candidate)

		desc = _parse_description(msg.get(mtype), expected=mtype)
		if mtype == OFFER:
			return Offer(peer_id=peer_id, target_peer=target, description=desc)
		return Answer(peer_id=peer_id, target_peer=target, description=desc)

	if mtype == SCREEN_TRACK_METADATA:
		track_ids = msg.get("trackIds")
		if not isinstance(track_ids, list) or not all(isinstance(t, str) for t in track_ids):
			raise ProtocolError("invalid-track-ids")
		return ScreenTrackMetadata(peer_id=peer_id, track_ids=tuple(track_ids))

	return Unknown(peer_id=peer_id, type=mtype, raw=msg)


def _parse_description(obj: Any, *, expected: str) -> SessionDescriptionDict:
	# Browsers send the RTCSessionDescription object; a bare SDP string is accepted too.
	if isinstance(obj, str) and obj:
		return {"type": expected, "sdp": obj}
	if not isinstance(obj, dict):
		raise ProtocolError(f"missing-sdp type={expected}")
	sdp = obj.get("sdp")
	if not isinstance(sdp, str) or not sdp:
		raise ProtocolError(f"missing-sdp type={expected}")
	dtype = obj.get("type", expected)
	if dtype != expected:
		raise ProtocolError(f"sdp-type-mismatch expected={expected} got={dtype}")
	return {"type": expected, "sdp": sdp}
