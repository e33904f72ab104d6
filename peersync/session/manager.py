"""Peer session manager (state sync + proximity media mesh).

Owns the local player state, the roster of remote peers and one PeerLink per
peer with a direct connection. Everything runs on one asyncio loop; the roster
and link maps are only touched from here.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import random
import time
from dataclasses import replace
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Set

from ..net import protocol
from ..net.signaling_client import SignalingCallbacks, SignalingClient, SignalingExhausted
from ..rtc.classifier import TrackKind
from ..rtc.media import LocalMedia, MediaUnavailable
from ..rtc.peer_link import NegotiationState, PeerCallbacks, PeerLink, TrackStream
from . import events
from .config import SessionConfig
from .events import EventHandler, SessionEvent
from .state import (
    Billboard,
    BroadcastBaseline,
    DISCRETE_FIELDS,
    LocalState,
    PeerRecord,
    coerce_field,
    deterministic_color,
    generate_peer_id,
    has_material_change,
    planar_distance,
    random_spawn_position,
)


logger = logging.getLogger(__name__)


AsyncCallback = Callable[..., Awaitable[None]]
SignalingFactory = Callable[..., Any]
LinkFactory = Callable[..., PeerLink]

# Links still in these states after a signaling reconnect lost their envelopes.
_UNSETTLED = (NegotiationState.IDLE, NegotiationState.OFFER_SENT, NegotiationState.OFFER_RECEIVED)


def should_initiate(local_id: str, remote_id: str) -> bool:
    """Tie-break: only the lexicographically greater id sends the offer."""
    return local_id > remote_id


class PeerSessionManager:
    def __init__(
        self,
        config: Optional[SessionConfig] = None,
        *,
        media: Optional[LocalMedia] = None,
        signaling_factory: Optional[SignalingFactory] = None,
        link_factory: Optional[LinkFactory] = None,
        rng: Optional[random.Random] = None,
        clock: Callable[[], float] = time.monotonic,
        on_log: Optional[AsyncCallback] = None,
    ):
        self.config = config or SessionConfig()
        self.local: Optional[LocalState] = None

        self._media = media
        self._signaling: Optional[Any] = None
        self._signaling_factory = signaling_factory or SignalingClient
        self._link_factory = link_factory or PeerLink
        self._rtc_config = self.config.rtc_configuration()
        self._rng = rng or random.Random()
        self._clock = clock
        self._on_log = on_log

        self._roster: Dict[str, PeerRecord] = {}
        self._links: Dict[str, PeerLink] = {}
        self._handlers: List[EventHandler] = []
        self._baseline: Optional[BroadcastBaseline] = None
        self._force_broadcast = False
        self._timers: List[asyncio.Task[None]] = []
        self._background: Set[asyncio.Task[Any]] = set()
        self._ever_connected = False
        self._shut_down = False

    # ----------------------
    # Lifecycle
    # ----------------------
    def init(self, local_id: Optional[str] = None, *, display_name: str = "") -> LocalState:
        """Acquire local media and build the initial local state.

        Media failures degrade to a session without camera/microphone.
        """
        if self._media is None:
            try:
                self._media = LocalMedia.create(enabled=self.config.enable_media)
            except Exception as e:
                logger.warning("session media init failed, continuing without media error=%s", e)
                self._media = LocalMedia()

        peer_id = local_id or generate_peer_id(self._rng)
        self.local = LocalState(
            id=peer_id,
            position=random_spawn_position(
                self._rng,
                spread=self.config.spawn_spread,
                height=self.config.spawn_height,
            ),
            color=deterministic_color(peer_id),
            display_name=display_name,
            has_media=self._media.has_media,
        )
        self._baseline = None
        logger.info("session init peer_id=%s color=%s has_media=%s", peer_id, self.local.color, self.local.has_media)
        return self.local

    async def start(self) -> bool:
        """Connect to the relay and start the broadcast and proximity timers.

        Returns whether the first connection attempt succeeded; reconnects
        continue in the background either way.
        """
        local = self._require_local()
        if self._signaling is None:
            self._signaling = self._signaling_factory(
                self.config.server_url,
                local.id,
                SignalingCallbacks(
                    on_log=self._on_log,
                    on_envelope=self.on_peer_envelope,
                    on_connected=self._on_signaling_connected,
                    on_disconnected_permanent=self._on_signaling_exhausted,
                ),
                policy=self.config.reconnect_policy(),
                connect_timeout=self.config.connect_timeout,
            )

        if not self._timers:
            self._timers = [
                asyncio.create_task(self._every(self.config.broadcast_interval, self.tick), name="session-broadcast"),
                asyncio.create_task(self._every(self.config.proximity_interval, self.proximity_tick), name="session-proximity"),
            ]
        return await self._signaling.connect()

    async def shutdown(self) -> None:
        if self._shut_down:
            return
        self._shut_down = True
        logger.info("session shutdown peers=%s links=%s", len(self._roster), len(self._links))

        timers, self._timers = self._timers, []
        for task in timers:
            task.cancel()
        await asyncio.gather(*timers, return_exceptions=True)

        signaling = self._signaling
        if signaling is not None and self.local is not None and signaling.is_connected:
            await signaling.leave()

        for peer_id in list(self._links.keys()):
            await self.close_link(peer_id, reason="shutdown")

        background, self._background = self._background, set()
        for task in background:
            task.cancel()
        await asyncio.gather(*background, return_exceptions=True)

        if signaling is not None:
            await signaling.close()
        if self._media is not None:
            self._media.close()

    # ----------------------
    # Local state
    # ----------------------
    def update(self, **changes: Any) -> None:
        """Merge fields into the local state. Broadcasting is left to tick()."""
        local = self._require_local()
        coerced = {name: coerce_field(name, value) for name, value in changes.items()}
        for name, value in coerced.items():
            if name in DISCRETE_FIELDS and getattr(local, name) != value:
                self._force_broadcast = True
            setattr(local, name, value)

    async def tick(self) -> bool:
        """Broadcast the full local state if it changed materially."""
        if self.local is None:
            return False
        if not self._force_broadcast and not has_material_change(self.local, self._baseline, self.config.thresholds):
            return False
        await self._broadcast_state()
        return True

    async def proximity_tick(self) -> None:
        """Keep direct media links bounded to nearby peers."""
        local = self.local
        if local is None:
            return
        await self._expire_stale_peers()

        for peer_id, record in list(self._roster.items()):
            distance = planar_distance(local.position, record.state.position)
            link = self._links.get(peer_id)
            if distance > self.config.max_media_distance:
                if link is not None:
                    logger.info("session media link out of range peer=%s distance=%.1f", peer_id, distance)
                    await self.close_link(peer_id, reason="out-of-range")
            elif link is None and self._wants_link(record):
                logger.info("session media link in range peer=%s distance=%.1f", peer_id, distance)
                self._open_link(peer_id, initiator=True)

    # ----------------------
    # Screen sharing
    # ----------------------
    async def start_screen_share(self, tracks: Optional[Sequence[Any]] = None, billboard: Optional[Billboard] = None) -> bool:
        local = self._require_local()
        media = self._media
        if media is None:
            return False
        try:
            screen = media.start_screen(tracks)
        except MediaUnavailable as e:
            logger.warning("session screen share unavailable error=%s", e)
            return False

        local.screen_sharing = True
        local.billboard = billboard
        track_ids = [str(t.id) for t in screen]
        logger.info("session screen share started track_ids=%s links=%s", track_ids, len(self._links))

        for peer_id, link in list(self._links.items()):
            link.add_screen_tracks(screen)
            if not link.send_json(protocol.make_screen_track_metadata(local.id, track_ids)):
                logger.info("session screen metadata deferred until channel open peer=%s", peer_id)

        await self._broadcast_state()
        return True

    async def stop_screen_share(self) -> None:
        local = self._require_local()
        media = self._media
        if media is None or not media.screen_sharing:
            return
        for link in list(self._links.values()):
            link.remove_extra_tracks()
        media.stop_screen()
        local.screen_sharing = False
        local.billboard = None
        logger.info("session screen share stopped")
        await self._broadcast_state()

    # ----------------------
    # Roster and links
    # ----------------------
    def on_event(self, handler: EventHandler) -> None:
        self._handlers.append(handler)

    def peers(self) -> List[PeerRecord]:
        return [replace(record) for record in self._roster.values()]

    def get_link(self, peer_id: str) -> Optional[PeerLink]:
        return self._links.get(peer_id)

    async def close_link(self, peer_id: str, *, reason: str = "") -> bool:
        link = self._links.pop(peer_id, None)
        if link is None:
            return False
        logger.info("session closing link peer=%s reason=%s", peer_id, reason)
        await self._log(f"Closing link to {peer_id} ({reason})")
        removed = await link.close()
        for kind in removed:
            await self._emit(SessionEvent(type=events.TRACK_STREAM_REMOVED, peer_id=peer_id, kind=kind))
        return True

    async def on_peer_envelope(self, envelope: protocol.Envelope) -> None:
        local = self.local
        if local is None or envelope.peer_id == local.id:
            return

        if isinstance(envelope, (protocol.Join, protocol.State)):
            await self._on_peer_state(envelope.peer_id, envelope.data, joined=isinstance(envelope, protocol.Join))
        elif isinstance(envelope, protocol.Leave):
            await self._on_peer_leave(envelope.peer_id, reason="left")
        elif isinstance(envelope, protocol.Offer):
            if envelope.target_peer != local.id:
                logger.warning("session dropped offer for other target peer=%s target=%s", envelope.peer_id, envelope.target_peer)
                return
            link = self._links.get(envelope.peer_id)
            if link is None:
                logger.info("session accepting link from=%s", envelope.peer_id)
                link = self._open_link(envelope.peer_id, initiator=False)
            link.handle_offer(envelope.description)
        elif isinstance(envelope, protocol.Answer):
            link = self._links.get(envelope.peer_id)
            if link is None:
                logger.warning("session dropped answer without link peer=%s", envelope.peer_id)
                return
            link.handle_answer(envelope.description)
        elif isinstance(envelope, protocol.Ice):
            link = self._links.get(envelope.peer_id)
            if link is None:
                logger.debug("session dropped ice without link peer=%s", envelope.peer_id)
                return
            link.handle_ice(envelope.candidate)
        elif isinstance(envelope, protocol.ScreenTrackMetadata):
            link = self._links.get(envelope.peer_id)
            if link is not None:
                await link.apply_screen_metadata(envelope.track_ids)
        elif isinstance(envelope, protocol.Unknown):
            logger.info("session ignored unknown envelope type=%s peer=%s", envelope.type, envelope.peer_id)
        else:
            raise AssertionError(f"unhandled envelope {envelope!r}")

    def _wants_link(self, record: PeerRecord) -> bool:
        local = self.local
        return (
            local is not None
            and local.has_media
            and record.state.has_media
            and should_initiate(local.id, record.id)
        )

    def _open_link(self, peer_id: str, *, initiator: bool) -> PeerLink:
        existing = self._links.get(peer_id)
        if existing is not None:
            return existing

        media = self._media
        link = self._link_factory(
            peer_id,
            initiator=initiator,
            local_tracks=media.tracks if media else [],
            screen_tracks=media.screen_tracks if media else [],
            callbacks=PeerCallbacks(
                on_log=self._on_log,
                on_offer=self._send_offer,
                on_answer=self._send_answer,
                on_local_ice=self._send_ice,
                on_connection_state=self._on_link_state,
                on_data_channel_open=self._on_data_channel_open,
                on_data_message=self._on_link_message,
                on_stream_ready=self._on_stream_ready,
                on_stream_removed=self._on_stream_removed,
                on_failed=self._on_link_failed,
            ),
            rtc_config=self._rtc_config,
        )
        self._links[peer_id] = link
        logger.debug("session created link peer=%s initiator=%s", peer_id, initiator)
        link.start()
        return link

    async def _on_peer_state(self, peer_id: str, data: Dict[str, Any], *, joined: bool) -> None:
        try:
            state = LocalState.from_wire(data, peer_id=peer_id)
        except protocol.ProtocolError as e:
            logger.warning("session dropped malformed state peer=%s reason=%s", peer_id, e.message)
            return

        now = self._clock()
        record = self._roster.get(peer_id)
        is_new = record is None
        if record is None:
            record = PeerRecord(id=peer_id, state=state, last_seen=now)
            self._roster[peer_id] = record
            logger.info("session peer joined peer=%s has_media=%s", peer_id, state.has_media)
            await self._emit(SessionEvent(type=events.PEER_JOINED, peer_id=peer_id, data=state))
        else:
            stopped_sharing = record.state.screen_sharing and not state.screen_sharing
            record.state = state
            record.last_seen = now
            link = self._links.get(peer_id)
            if stopped_sharing and link is not None:
                await link.clear_screen_tracks()

        if joined:
            # Newcomers only hear about us when we broadcast.
            self._force_broadcast = True

        await self._emit(SessionEvent(type=events.PEER_UPDATED, peer_id=peer_id, data=state))

        if is_new and peer_id not in self._links and self._wants_link(record) and self.local is not None:
            if planar_distance(self.local.position, state.position) <= self.config.max_media_distance:
                logger.info("session initiating link to=%s", peer_id)
                self._open_link(peer_id, initiator=True)

    async def _on_peer_leave(self, peer_id: str, *, reason: str) -> None:
        record = self._roster.pop(peer_id, None)
        await self.close_link(peer_id, reason=reason)
        if record is not None:
            logger.info("session peer left peer=%s reason=%s", peer_id, reason)
            await self._emit(SessionEvent(type=events.PEER_LEFT, peer_id=peer_id))

    async def _expire_stale_peers(self) -> None:
        timeout = self.config.peer_timeout
        if not timeout:
            return
        now = self._clock()
        for peer_id, record in list(self._roster.items()):
            if now - record.last_seen > timeout:
                await self._on_peer_leave(peer_id, reason="timeout")

    async def _broadcast_state(self) -> int:
        """Send the full local state on every open data channel and the relay."""
        local = self._require_local()
        data = local.to_wire()
        message = protocol.make_state(local.id, data)

        sent = 0
        for link in list(self._links.values()):
            if link.data_channel_open and link.send_json(message):
                sent += 1
        if self._signaling is not None:
            await self._signaling.send_state(data)

        self._baseline = BroadcastBaseline.of(local)
        self._force_broadcast = False
        logger.debug("session broadcast state peers_direct=%s", sent)
        return sent

    # ----------------------
    # Signaling callbacks
    # ----------------------
    async def _on_signaling_connected(self) -> None:
        local = self._require_local()
        reconnect = self._ever_connected
        self._ever_connected = True

        if reconnect:
            for peer_id, link in list(self._links.items()):
                if link.state in _UNSETTLED:
                    await self.close_link(peer_id, reason="signaling-reconnect")

        assert self._signaling is not None
        await self._signaling.join(local.to_wire())
        await self._broadcast_state()
        await self._emit(SessionEvent(type=events.CONNECTED, peer_id=local.id))

    async def _on_signaling_exhausted(self, error: SignalingExhausted) -> None:
        await self._emit(SessionEvent(type=events.DISCONNECTED_PERMANENT, error=error))

    # ----------------------
    # PeerLink callbacks
    # ----------------------
    async def _send_offer(self, peer_id: str, sdp: str) -> None:
        if self._signaling is None or not await self._signaling.send_offer(peer_id, sdp):
            raise ConnectionError("signaling unavailable for offer")

    async def _send_answer(self, peer_id: str, sdp: str) -> None:
        if self._signaling is None or not await self._signaling.send_answer(peer_id, sdp):
            raise ConnectionError("signaling unavailable for answer")

    async def _send_ice(self, peer_id: str, candidate: protocol.IceCandidateDict) -> None:
        if self._signaling is not None:
            await self._signaling.send_ice(peer_id, candidate)

    async def _on_link_state(self, peer_id: str, state: str) -> None:
        logger.debug("session link connection state peer=%s state=%s", peer_id, state)

    async def _on_data_channel_open(self, peer_id: str) -> None:
        link = self._links.get(peer_id)
        local = self.local
        if link is None or local is None:
            return
        link.send_json(protocol.make_state(local.id, local.to_wire()))
        media = self._media
        if media is not None and media.screen_sharing:
            track_ids = [str(t.id) for t in media.screen_tracks]
            link.send_json(protocol.make_screen_track_metadata(local.id, track_ids))
            logger.info("session sent screen metadata on channel open peer=%s track_ids=%s", peer_id, track_ids)

    async def _on_link_message(self, peer_id: str, envelope: protocol.Envelope) -> None:
        if isinstance(envelope, (protocol.State, protocol.Join)):
            await self._on_peer_state(peer_id, envelope.data, joined=False)
        elif isinstance(envelope, protocol.Leave):
            await self._on_peer_leave(peer_id, reason="left")
        else:
            logger.info("session ignored data channel envelope type=%s peer=%s", type(envelope).__name__, peer_id)

    async def _on_stream_ready(self, peer_id: str, kind: TrackKind, stream: TrackStream) -> None:
        await self._emit(SessionEvent(type=events.TRACK_STREAM_READY, peer_id=peer_id, kind=kind, stream=stream))

    async def _on_stream_removed(self, peer_id: str, kind: TrackKind) -> None:
        await self._emit(SessionEvent(type=events.TRACK_STREAM_REMOVED, peer_id=peer_id, kind=kind))

    async def _on_link_failed(self, peer_id: str, reason: str) -> None:
        link = self._links.get(peer_id)
        if link is None:
            return
        logger.warning("session link failed peer=%s reason=%s", peer_id, reason)
        # Closing cancels the link's own worker, which may be the caller.
        self._spawn(self._close_if_current(peer_id, link, reason))

    async def _close_if_current(self, peer_id: str, link: PeerLink, reason: str) -> None:
        if self._links.get(peer_id) is link:
            await self.close_link(peer_id, reason=reason)

    # ----------------------
    # Helpers
    # ----------------------
    async def _every(self, interval: float, fn: Callable[[], Awaitable[Any]]) -> None:
        while True:
            await asyncio.sleep(interval)
            try:
                await fn()
            except Exception:
                logger.exception("session periodic task failed fn=%s", getattr(fn, "__name__", fn))

    def _spawn(self, coro: Awaitable[Any]) -> None:
        task = asyncio.ensure_future(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _emit(self, event: SessionEvent) -> None:
        for handler in list(self._handlers):
            try:
                result = handler(event)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception("session event handler failed type=%s", event.type)

    def _require_local(self) -> LocalState:
        if self.local is None:
            raise RuntimeError("PeerSessionManager.init() has not been called")
        return self.local

    async def _log(self, message: str) -> None:
        if self._on_log:
            await self._on_log(message)
