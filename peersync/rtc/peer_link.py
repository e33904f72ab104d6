"""One direct WebRTC connection to one remote peer.

A PeerLink owns the RTCPeerConnection, the auxiliary "playerState" data
channel, the offer/answer state machine and the classified remote tracks.
Negotiation steps for a peer run one at a time, in arrival order, on a
per-link worker task, so one peer's setup never waits on another's.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Tuple

from aiortc import RTCIceCandidate, RTCPeerConnection, RTCSessionDescription
from aiortc.rtcconfiguration import RTCConfiguration
from aiortc.sdp import candidate_from_sdp, candidate_to_sdp

from ..net import protocol
from .classifier import TrackKind, TrackMetadata
from .track_store import ClassifiedTracks


logger = logging.getLogger(__name__)


DATA_CHANNEL_LABEL = "playerState"

AsyncPeerCallback = Callable[..., Awaitable[None]]
PeerConnectionFactory = Callable[[Optional[RTCConfiguration]], Any]
Job = Callable[[], Awaitable[None]]


def _candidate_to_json(candidate: RTCIceCandidate) -> protocol.IceCandidateDict:
    return {
        "candidate": "candidate:" + candidate_to_sdp(candidate),
        "sdpMid": getattr(candidate, "sdpMid", None),
        "sdpMLineIndex": getattr(candidate, "sdpMLineIndex", None),
    }


def _candidate_from_json(obj: Dict[str, Any]) -> RTCIceCandidate:
    cand_sdp = obj.get("candidate")
    if not isinstance(cand_sdp, str) or not cand_sdp:
        raise ValueError("missing candidate")
    # Browsers prefix the attribute name; aiortc parses the bare value.
    if cand_sdp.startswith("candidate:"):
        cand_sdp = cand_sdp[len("candidate:"):]
    cand = candidate_from_sdp(cand_sdp)
    cand.sdpMid = obj.get("sdpMid")
    cand.sdpMLineIndex = obj.get("sdpMLineIndex")
    return cand


def _default_pc_factory(rtc_config: Optional[RTCConfiguration]) -> RTCPeerConnection:
    return RTCPeerConnection(configuration=rtc_config)


class NegotiationState(str, Enum):
    IDLE = "idle"
    OFFER_SENT = "offer-sent"
    OFFER_RECEIVED = "offer-received"
    ANSWER_EXCHANGED = "answer-exchanged"
    CONNECTED = "connected"
    RENEGOTIATING = "renegotiating"
    CLOSED = "closed"


class DataChannelState(str, Enum):
    CONNECTING = "connecting"
    OPEN = "open"
    CLOSED = "closed"


class NegotiationError(Exception):
    """A negotiation step arrived in a state that cannot accept it."""


class NegotiationCollision(Exception):
    """Both sides sent renegotiation offers at once; the link cannot settle."""


@dataclass(frozen=True)
class TrackStream:
    """The current set of one peer's tracks of one kind."""

    peer_id: str
    kind: TrackKind
    tracks: Tuple[Any, ...]

    @property
    def track_ids(self) -> Tuple[str, ...]:
        return tuple(str(getattr(t, "id", "")) for t in self.tracks)


@dataclass
class PeerCallbacks:
    on_log: Optional[AsyncPeerCallback] = None  # (msg: str)
    on_offer: Optional[AsyncPeerCallback] = None  # (peer_id: str, sdp: str)
    on_answer: Optional[AsyncPeerCallback] = None  # (peer_id: str, sdp: str)
    on_local_ice: Optional[AsyncPeerCallback] = None  # (peer_id: str, candidate: dict)
    on_connection_state: Optional[AsyncPeerCallback] = None  # (peer_id: str, state: str)
    on_data_channel_open: Optional[AsyncPeerCallback] = None  # (peer_id: str)
    on_data_message: Optional[AsyncPeerCallback] = None  # (peer_id: str, envelope)
    on_stream_ready: Optional[AsyncPeerCallback] = None  # (peer_id: str, kind: TrackKind, stream: TrackStream)
    on_stream_removed: Optional[AsyncPeerCallback] = None  # (peer_id: str, kind: TrackKind)
    on_failed: Optional[AsyncPeerCallback] = None  # (peer_id: str, reason: str)


class PeerLink:
    def __init__(
        self,
        peer_id: str,
        *,
        initiator: bool,
        local_tracks: Sequence[Any] = (),
        screen_tracks: Sequence[Any] = (),
        callbacks: Optional[PeerCallbacks] = None,
        rtc_config: Optional[RTCConfiguration] = None,
        pc_factory: Optional[PeerConnectionFactory] = None,
    ):
        self.peer_id = peer_id
        self.initiator = initiator
        self.state = NegotiationState.IDLE
        self.pending_candidates: List[protocol.IceCandidateDict] = []
        self.data_channel: Optional[Any] = None
        self.data_channel_state = DataChannelState.CONNECTING
        self.tracks = ClassifiedTracks()
        self.metadata = TrackMetadata()

        self._callbacks = callbacks or PeerCallbacks()
        self._pc = (pc_factory or _default_pc_factory)(rtc_config)
        self._primary_track_ids = {str(t.id) for t in local_tracks}
        self._remote_description_set = False
        self._local_offer_pending = False
        self._renegotiate_when_connected = False
        self._published: Dict[TrackKind, Tuple[str, ...]] = {}
        self._queue: asyncio.Queue[Tuple[str, Job]] = asyncio.Queue()
        self._worker: Optional[asyncio.Task[None]] = None

        for track in local_tracks:
            self._pc.addTrack(track)
        for track in screen_tracks:
            self._pc.addTrack(track)

        @self._pc.on("icecandidate")
        async def on_icecandidate(event) -> None:
            candidate = getattr(event, "candidate", None)
            if candidate is None or self.state is NegotiationState.CLOSED:
                return
            if self._callbacks.on_local_ice:
                await self._callbacks.on_local_ice(self.peer_id, _candidate_to_json(candidate))

        @self._pc.on("connectionstatechange")
        async def on_connectionstatechange() -> None:
            await self._on_connection_state(self._pc.connectionState)

        @self._pc.on("datachannel")
        async def on_datachannel(channel) -> None:
            if self.state is NegotiationState.CLOSED:
                return
            await self._log(f"pc[{self.peer_id}] received data channel {getattr(channel, 'label', '')}")
            await self._attach_data_channel(channel)

        @self._pc.on("track")
        async def on_track(track) -> None:
            await self._on_track(track)

    @property
    def data_channel_open(self) -> bool:
        return self.data_channel is not None and self.data_channel_state is DataChannelState.OPEN

    @property
    def closed(self) -> bool:
        return self.state is NegotiationState.CLOSED

    # ----------------------
    # Negotiation entry points (queued, in arrival order)
    # ----------------------
    def start(self) -> None:
        """Begin negotiation; only the initiator sends the first offer."""
        if self.initiator:
            self._submit("offer", self._send_initial_offer)

    def handle_offer(self, description: protocol.SessionDescriptionDict) -> None:
        self._submit("apply-offer", lambda: self._apply_offer(description))

    def handle_answer(self, description: protocol.SessionDescriptionDict) -> None:
        self._submit("apply-answer", lambda: self._apply_answer(description))

    def handle_ice(self, candidate: Optional[protocol.IceCandidateDict]) -> None:
        self._submit("ice", lambda: self._add_ice(candidate))

    def add_screen_tracks(self, tracks: Sequence[Any]) -> None:
        """Add non-primary tracks and renegotiate without a second connection."""

        async def job() -> None:
            for track in tracks:
                self._pc.addTrack(track)
            await self._renegotiate()

        self._submit("add-tracks", job)

    def remove_extra_tracks(self) -> None:
        """Stop sending every track outside the primary camera/mic set."""
        self._submit("remove-tracks", self._remove_extra_tracks)

    async def join(self) -> None:
        """Wait until every queued negotiation step has run."""
        await self._queue.join()

    # ----------------------
    # Data channel
    # ----------------------
    def send_json(self, payload: Dict[str, Any]) -> bool:
        channel = self.data_channel
        if channel is None or not self.data_channel_open:
            return False
        try:
            channel.send(protocol.encode(payload))
        except Exception as e:
            logger.warning("rtc data channel send failed peer=%s error=%s", self.peer_id, e)
            return False
        return True

    async def apply_screen_metadata(self, track_ids: Sequence[str]) -> None:
        self.metadata = TrackMetadata.from_ids(track_ids)
        logger.info("rtc screen metadata peer=%s track_ids=%s", self.peer_id, list(track_ids))
        if self.tracks.reclassify_as_screen(track_ids):
            await self._log(f"pc[{self.peer_id}] reclassified tracks as screen")
            await self._publish_changes()

    async def clear_screen_tracks(self) -> None:
        """Forget the peer's screen tracks once it reports it stopped sharing."""
        self.metadata = TrackMetadata()
        if self.tracks.discard(TrackKind.SCREEN):
            logger.info("rtc screen tracks cleared peer=%s", self.peer_id)
            await self._publish_changes()

    # ----------------------
    # Teardown
    # ----------------------
    async def close(self) -> List[TrackKind]:
        """Release the transport, data channel and all track sets.

        Returns the stream kinds that were published, so the caller can
        announce their removal.
        """
        if self.state is NegotiationState.CLOSED:
            return []
        self._set_state(NegotiationState.CLOSED)

        worker = self._worker
        self._worker = None
        if worker is not None and worker is not asyncio.current_task():
            worker.cancel()
        self._drop_queued_jobs()
        self.pending_candidates.clear()

        channel = self.data_channel
        self.data_channel = None
        self.data_channel_state = DataChannelState.CLOSED
        if channel is not None:
            try:
                channel.close()
            except Exception as e:
                logger.debug("rtc data channel close error peer=%s error=%s", self.peer_id, e)

        removed = list(self._published.keys())
        self._published.clear()
        self.tracks.clear()

        if worker is not None and worker is not asyncio.current_task():
            await asyncio.wait([worker])
        await self._pc.close()
        return removed

    # ----------------------
    # Internals
    # ----------------------
    def _submit(self, step: str, job: Job) -> None:
        if self.state is NegotiationState.CLOSED:
            logger.debug("rtc step ignored (closed) peer=%s step=%s", self.peer_id, step)
            return
        if self._worker is None:
            self._worker = asyncio.create_task(self._run(), name=f"peer-link-{self.peer_id}")
        self._queue.put_nowait((step, job))

    async def _run(self) -> None:
        while True:
            step, job = await self._queue.get()
            try:
                if self.state is NegotiationState.CLOSED:
                    continue
                await job()
            except NegotiationError as e:
                logger.warning("rtc negotiation step dropped peer=%s step=%s reason=%s", self.peer_id, step, e)
                await self._log(f"pc[{self.peer_id}] dropped {step}: {e}")
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.warning("rtc negotiation failed peer=%s step=%s error=%s", self.peer_id, step, e, exc_info=True)
                if self._callbacks.on_failed and self.state is not NegotiationState.CLOSED:
                    await self._callbacks.on_failed(self.peer_id, f"{step}: {e}")
            finally:
                self._queue.task_done()

    def _drop_queued_jobs(self) -> None:
        while True:
            try:
                self._queue.get_nowait()
            except asyncio.QueueEmpty:
                return
            self._queue.task_done()

    def _set_state(self, state: NegotiationState) -> None:
        if state is self.state:
            return
        logger.debug("rtc link state peer=%s %s -> %s", self.peer_id, self.state.value, state.value)
        self.state = state

    async def _send_initial_offer(self) -> None:
        if self.state is not NegotiationState.IDLE:
            raise NegotiationError(f"cannot start offer in state {self.state.value}")

        channel = self._pc.createDataChannel(DATA_CHANNEL_LABEL)
        await self._attach_data_channel(channel)

        await self._log(f"Creating offer to {self.peer_id}")
        logger.info("rtc creating offer to=%s", self.peer_id)
        sdp = await self._create_local_description(offer=True)
        self._set_state(NegotiationState.OFFER_SENT)
        self._local_offer_pending = True
        if self._callbacks.on_offer:
            await self._callbacks.on_offer(self.peer_id, sdp)

    async def _renegotiate(self) -> None:
        if self.state is not NegotiationState.CONNECTED:
            # The new tracks ride along once the link settles.
            self._renegotiate_when_connected = True
            logger.debug("rtc renegotiation deferred peer=%s state=%s", self.peer_id, self.state.value)
            return

        self._renegotiate_when_connected = False
        self._set_state(NegotiationState.RENEGOTIATING)
        logger.info("rtc renegotiating with=%s", self.peer_id)
        # A failure here propagates to the worker, which reports the link as failed.
        sdp = await self._create_local_description(offer=True)
        self._local_offer_pending = True
        if self._callbacks.on_offer:
            await self._callbacks.on_offer(self.peer_id, sdp)

    async def _apply_offer(self, description: protocol.SessionDescriptionDict) -> None:
        previous = self.state
        if previous is NegotiationState.IDLE:
            self._set_state(NegotiationState.OFFER_RECEIVED)
        elif previous in (NegotiationState.CONNECTED, NegotiationState.ANSWER_EXCHANGED) and not self._local_offer_pending:
            logger.info("rtc renegotiation offer from=%s", self.peer_id)
            self._set_state(NegotiationState.RENEGOTIATING)
        elif previous is NegotiationState.RENEGOTIATING and self._local_offer_pending:
            # Neither offer can be answered; the link fails and is rebuilt.
            raise NegotiationCollision(f"offer from {self.peer_id} crossed our renegotiation offer")
        else:
            raise NegotiationError(f"offer received in state {previous.value}")

        await self._pc.setRemoteDescription(RTCSessionDescription(sdp=description["sdp"], type="offer"))
        self._remote_description_set = True
        await self._drain_candidates()

        sdp = await self._create_local_description(offer=False)
        if previous is NegotiationState.CONNECTED:
            self._set_state(NegotiationState.CONNECTED)
        else:
            self._set_state(NegotiationState.ANSWER_EXCHANGED)
            self._check_connected()
        if self._callbacks.on_answer:
            await self._callbacks.on_answer(self.peer_id, sdp)

    async def _apply_answer(self, description: protocol.SessionDescriptionDict) -> None:
        if not self._local_offer_pending or self.state not in (
            NegotiationState.OFFER_SENT,
            NegotiationState.RENEGOTIATING,
        ):
            raise NegotiationError(f"answer received in state {self.state.value}")

        renegotiating = self.state is NegotiationState.RENEGOTIATING
        logger.info("rtc answer applied from=%s renegotiation=%s", self.peer_id, renegotiating)
        await self._pc.setRemoteDescription(RTCSessionDescription(sdp=description["sdp"], type="answer"))
        self._local_offer_pending = False
        self._remote_description_set = True
        await self._drain_candidates()

        if renegotiating:
            self._set_state(NegotiationState.CONNECTED)
        else:
            self._set_state(NegotiationState.ANSWER_EXCHANGED)
            self._check_connected()

    async def _create_local_description(self, *, offer: bool) -> str:
        desc = await (self._pc.createOffer() if offer else self._pc.createAnswer())
        await self._pc.setLocalDescription(desc)
        assert self._pc.localDescription is not None
        return self._pc.localDescription.sdp

    async def _add_ice(self, candidate: Optional[protocol.IceCandidateDict]) -> None:
        if not candidate:
            logger.debug("rtc ice end-of-candidates from=%s", self.peer_id)
            return
        if not self._remote_description_set:
            self.pending_candidates.append(candidate)
            logger.debug("rtc ice queued from=%s pending=%s", self.peer_id, len(self.pending_candidates))
            return
        await self._apply_candidate(candidate)

    async def _drain_candidates(self) -> None:
        queued = self.pending_candidates
        self.pending_candidates = []
        if queued:
            logger.debug("rtc ice draining from=%s count=%s", self.peer_id, len(queued))
        for candidate in queued:
            await self._apply_candidate(candidate)

    async def _apply_candidate(self, obj: protocol.IceCandidateDict) -> None:
        try:
            cand = _candidate_from_json(dict(obj))
        except Exception as e:
            logger.warning("rtc ice dropped malformed candidate from=%s error=%s", self.peer_id, e)
            return
        try:
            await self._pc.addIceCandidate(cand)
        except Exception as e:
            logger.warning("rtc ice add failed from=%s error=%s", self.peer_id, e)

    async def _remove_extra_tracks(self) -> None:
        removed = 0
        for sender in self._pc.getSenders():
            track = getattr(sender, "track", None)
            if track is None or str(track.id) in self._primary_track_ids:
                continue
            result = sender.replaceTrack(None)
            if inspect.isawaitable(result):
                await result
            removed += 1
        logger.info("rtc removed extra tracks peer=%s count=%s", self.peer_id, removed)

    def _check_connected(self) -> None:
        if self.state is NegotiationState.ANSWER_EXCHANGED and self._pc.connectionState == "connected":
            self._set_state(NegotiationState.CONNECTED)
            if self._renegotiate_when_connected:
                self._submit("renegotiate", self._renegotiate)

    async def _on_connection_state(self, state: str) -> None:
        if self.state is NegotiationState.CLOSED:
            return
        await self._log(f"pc[{self.peer_id}] connectionState={state}")
        if state == "connected":
            self._check_connected()
        if self._callbacks.on_connection_state:
            await self._callbacks.on_connection_state(self.peer_id, state)
        if state == "failed" and self._callbacks.on_failed:
            await self._callbacks.on_failed(self.peer_id, "connection-failed")

    async def _attach_data_channel(self, channel: Any) -> None:
        self.data_channel = channel
        self.data_channel_state = DataChannelState.CONNECTING

        @channel.on("open")
        async def on_open() -> None:
            await self._on_channel_open(channel)

        @channel.on("close")
        def on_close() -> None:
            if self.data_channel is channel:
                logger.info("rtc data channel closed peer=%s", self.peer_id)
                self.data_channel_state = DataChannelState.CLOSED

        @channel.on("message")
        async def on_message(message) -> None:
            await self._on_data_message(message)

        # A channel announced by the remote side may already be open.
        if getattr(channel, "readyState", None) == "open":
            await self._on_channel_open(channel)

    async def _on_channel_open(self, channel: Any) -> None:
        if self.data_channel is not channel or self.data_channel_state is DataChannelState.OPEN:
            return
        self.data_channel_state = DataChannelState.OPEN
        logger.info("rtc data channel open peer=%s", self.peer_id)
        if self._callbacks.on_data_channel_open:
            await self._callbacks.on_data_channel_open(self.peer_id)

    async def _on_data_message(self, message: Any) -> None:
        if self.state is NegotiationState.CLOSED:
            return
        try:
            envelope = protocol.decode(message, default_peer=self.peer_id)
        except protocol.ProtocolError as e:
            logger.warning("rtc data channel dropped malformed message peer=%s reason=%s", self.peer_id, e.message)
            return

        if envelope.peer_id != self.peer_id:
            logger.warning("rtc data channel dropped message for wrong peer link=%s claimed=%s", self.peer_id, envelope.peer_id)
            return

        if isinstance(envelope, protocol.ScreenTrackMetadata):
            await self.apply_screen_metadata(envelope.track_ids)
            return

        if self._callbacks.on_data_message:
            await self._callbacks.on_data_message(self.peer_id, envelope)

    async def _on_track(self, track: Any) -> None:
        if self.state is NegotiationState.CLOSED:
            return
        kind = self.tracks.add(track, self.metadata)
        if kind is None:
            logger.debug("rtc remote track already processed peer=%s id=%s", self.peer_id, getattr(track, "id", None))
            return
        logger.info(
            "rtc remote track peer=%s kind=%s id=%s classified=%s",
            self.peer_id,
            getattr(track, "kind", None),
            getattr(track, "id", None),
            kind.value,
        )
        await self._publish_changes()

    async def _publish_changes(self) -> None:
        for kind in TrackKind:
            ids = self.tracks.track_ids(kind)
            if ids:
                if self._published.get(kind) == ids:
                    continue
                self._published[kind] = ids
                stream = TrackStream(peer_id=self.peer_id, kind=kind, tracks=self.tracks.tracks(kind))
                if self._callbacks.on_stream_ready:
                    await self._callbacks.on_stream_ready(self.peer_id, kind, stream)
            elif kind in self._published:
                del self._published[kind]
                if self._callbacks.on_stream_removed:
                    await self._callbacks.on_stream_removed(self.peer_id, kind)

    async def _log(self, msg: str) -> None:
        if self._callbacks.on_log:
            await self._callbacks.on_log(msg)
