import asyncio
import functools
import random

import pytest

from peersync.net import protocol
from peersync.rtc import media as media_module
from peersync.rtc.classifier import TrackKind
from peersync.rtc.media import LocalMedia
from peersync.rtc.peer_link import NegotiationState, PeerLink
from peersync.session import events
from peersync.session.config import SessionConfig
from peersync.session.manager import PeerSessionManager, should_initiate
from peersync.session.state import Vec3

from tests.fakes import FakeDataChannel, FakeTrack, PeerConnectionFactory


def make_manager(config, relay, peer_id, *, media=None, pc_factory=None, clock=None):
    manager = PeerSessionManager(
        config,
        media=media if media is not None else LocalMedia(),
        signaling_factory=relay.factory,
        link_factory=functools.partial(PeerLink, pc_factory=pc_factory or PeerConnectionFactory()),
        rng=random.Random(peer_id),
        clock=clock or (lambda: 0.0),
    )
    manager.init(peer_id)
    return manager


def record_events(manager):
    seen = []
    manager.on_event(seen.append)
    return seen


def types(seen, peer_id=None):
    return [e.type for e in seen if peer_id is None or e.peer_id == peer_id]


async def until(predicate, timeout=1.0):
    async def poll():
        while not predicate():
            await asyncio.sleep(0.01)

    await asyncio.wait_for(poll(), timeout)


def remote_state(peer_id, position=(0, 20, 0), has_media=False):
    x, y, z = position
    return {"id": peer_id, "position": {"x": x, "y": y, "z": z}, "hasMedia": has_media}


async def connected_pair(relay, config, make_media):
    """Two media peers whose link has negotiated and both data channels are open."""
    pcs_a, pcs_b = PeerConnectionFactory(), PeerConnectionFactory()
    a = make_manager(config, relay, "peer-a", media=make_media(), pc_factory=pcs_a)
    b = make_manager(config, relay, "peer-b", media=make_media(), pc_factory=pcs_b)
    await a.start()
    await b.start()
    # peer-a heard peer-b's join; its forced broadcast introduces it to peer-b.
    assert await a.tick() is True

    link_b = b.get_link("peer-a")
    assert link_b is not None and link_b.initiator
    await link_b.join()
    link_a = a.get_link("peer-b")
    assert link_a is not None and not link_a.initiator
    await link_a.join()
    await link_b.join()

    await pcs_a.created[0].set_connection_state("connected")
    await pcs_b.created[0].set_connection_state("connected")
    await pcs_b.created[0].channels[0].open()
    await pcs_a.created[0].emit("datachannel", FakeDataChannel(ready_state="open"))
    return a, b, pcs_a, pcs_b


def test_tie_break():
    assert should_initiate("b", "a")
    assert not should_initiate("a", "b")
    assert not should_initiate("a", "a")


@pytest.mark.asyncio
async def test_start_announces_and_shutdown_leaves(relay, session_config):
    manager = make_manager(session_config, relay, "peer-a")
    seen = record_events(manager)

    assert await manager.start() is True
    sig = relay.clients["peer-a"]
    assert [m["type"] for m in sig.sent] == ["join", "state"]
    assert sig.sent[0]["data"]["id"] == "peer-a"
    assert sig.sent[0]["data"]["color"] == manager.local.color
    assert types(seen) == [events.CONNECTED]

    await manager.shutdown()
    assert sig.sent[-1] == {"type": "leave", "peerId": "peer-a"}
    assert sig.closed


@pytest.mark.asyncio
async def test_methods_require_init(session_config, relay):
    manager = PeerSessionManager(session_config, media=LocalMedia(), signaling_factory=relay.factory)
    with pytest.raises(RuntimeError):
        await manager.start()
    with pytest.raises(RuntimeError):
        manager.update(yaw=1.0)
    assert await manager.tick() is False


@pytest.mark.asyncio
async def test_tick_broadcasts_only_material_changes(relay, session_config):
    manager = make_manager(session_config, relay, "peer-a")
    await manager.start()
    sig = relay.clients["peer-a"]
    baseline = len(sig.of_type("state"))

    for _ in range(5):
        assert await manager.tick() is False
    assert len(sig.of_type("state")) == baseline

    p = manager.local.position
    manager.update(position=(p.x + 0.001, p.y, p.z))
    assert await manager.tick() is False

    manager.update(position=(p.x + 1, p.y, p.z))
    assert await manager.tick() is True
    assert sig.of_type("state")[-1]["data"]["position"]["x"] == pytest.approx(p.x + 1)

    manager.update(display_name="Ada")
    assert await manager.tick() is True
    manager.update(display_name="Ada")
    assert await manager.tick() is False
    assert len(sig.of_type("state")) == baseline + 2
    await manager.shutdown()


@pytest.mark.asyncio
async def test_update_is_all_or_nothing(relay, session_config):
    manager = make_manager(session_config, relay, "peer-a")
    with pytest.raises(ValueError):
        manager.update(yaw=2.0, speed=3)
    assert manager.local.yaw == 0.0
    with pytest.raises(ValueError):
        manager.update(id="peer-z")


@pytest.mark.asyncio
async def test_roster_events(relay, session_config):
    manager = make_manager(session_config, relay, "peer-a")
    seen = record_events(manager)
    await manager.start()
    sig = relay.clients["peer-a"]

    await sig.deliver(protocol.make_join("peer-z", remote_state("peer-z")))
    await sig.deliver(protocol.make_state("peer-z", remote_state("peer-z", position=(3, 20, 4))))
    assert types(seen, "peer-z") == [events.PEER_JOINED, events.PEER_UPDATED, events.PEER_UPDATED]
    [record] = manager.peers()
    assert record.state.position == Vec3(3, 20, 4)

    await sig.deliver(protocol.make_leave("peer-z"))
    assert types(seen, "peer-z")[-1] == events.PEER_LEFT
    assert manager.peers() == []
    await manager.shutdown()


@pytest.mark.asyncio
async def test_state_from_unknown_peer_creates_record(relay, session_config):
    manager = make_manager(session_config, relay, "peer-a")
    seen = record_events(manager)
    await manager.start()
    await relay.clients["peer-a"].deliver(protocol.make_state("peer-q", remote_state("peer-q")))
    assert types(seen, "peer-q") == [events.PEER_JOINED, events.PEER_UPDATED]
    await manager.shutdown()


@pytest.mark.asyncio
async def test_join_from_newcomer_forces_broadcast(relay, session_config):
    manager = make_manager(session_config, relay, "peer-a")
    await manager.start()
    assert await manager.tick() is False
    await relay.clients["peer-a"].deliver(protocol.make_join("peer-z", remote_state("peer-z")))
    assert await manager.tick() is True
    await manager.shutdown()


@pytest.mark.asyncio
async def test_malformed_state_is_dropped(relay, session_config):
    manager = make_manager(session_config, relay, "peer-a")
    seen = record_events(manager)
    await manager.start()
    await relay.clients["peer-a"].deliver(protocol.make_state("peer-z", {"position": "north"}))
    await relay.clients["peer-a"].deliver(protocol.make_state("peer-z", {"id": "peer-y"}))
    assert manager.peers() == []
    assert types(seen) == [events.CONNECTED]
    await manager.shutdown()


@pytest.mark.asyncio
async def test_failing_event_handler_does_not_block_others(relay, session_config):
    manager = make_manager(session_config, relay, "peer-a")

    def broken(event):
        raise RuntimeError("renderer crashed")

    seen = []

    async def collect(event):
        seen.append(event.type)

    manager.on_event(broken)
    manager.on_event(collect)
    await manager.start()
    assert seen == [events.CONNECTED]
    await manager.shutdown()


@pytest.mark.asyncio
async def test_stray_negotiation_envelopes_are_dropped(relay, session_config, make_media):
    manager = make_manager(session_config, relay, "peer-a", media=make_media())
    await manager.start()
    sig = relay.clients["peer-a"]

    await sig.deliver(protocol.make_answer("peer-z", "peer-a", "v=0"))
    await sig.deliver(protocol.make_ice("peer-z", "peer-a", {"candidate": "candidate:1 1 udp 1 192.0.2.1 1 typ host"}))
    await sig.deliver(protocol.make_offer("peer-z", "peer-q", "v=0"))
    await sig.deliver({"type": "emote", "peerId": "peer-z"})
    assert manager.get_link("peer-z") is None
    await manager.shutdown()


@pytest.mark.asyncio
async def test_offer_from_unknown_peer_creates_responder_link(relay, session_config):
    pcs = PeerConnectionFactory()
    manager = make_manager(session_config, relay, "peer-a", pc_factory=pcs)
    await manager.start()
    await relay.clients["peer-a"].deliver(protocol.make_offer("peer-0", "peer-a", "v=0 hello"))

    link = manager.get_link("peer-0")
    assert link is not None and not link.initiator
    await link.join()
    assert link.state is NegotiationState.ANSWER_EXCHANGED
    assert pcs.created[0].offers == 0
    assert relay.clients["peer-a"].of_type("answer")[0]["targetPeer"] == "peer-0"
    await manager.shutdown()


@pytest.mark.asyncio
async def test_only_greater_id_initiates(relay, session_config, make_media):
    a, b, pcs_a, pcs_b = await connected_pair(relay, session_config, make_media)

    assert pcs_a.created[0].offers == 0
    assert pcs_b.created[0].offers == 1
    assert relay.clients["peer-b"].of_type("offer")[0]["targetPeer"] == "peer-a"
    assert relay.clients["peer-a"].of_type("offer") == []
    assert a.get_link("peer-b").state is NegotiationState.CONNECTED
    assert b.get_link("peer-a").state is NegotiationState.CONNECTED
    assert len(pcs_a.created) == len(pcs_b.created) == 1

    await a.shutdown()
    await b.shutdown()


@pytest.mark.asyncio
async def test_open_channel_receives_state_and_broadcasts(relay, session_config, make_media):
    a, b, pcs_a, pcs_b = await connected_pair(relay, session_config, make_media)
    channel = pcs_b.created[0].channels[0]
    # Opening the channel pushes the current state to that peer.
    assert channel.messages()[0]["type"] == "state"
    assert channel.messages()[0]["data"]["id"] == "peer-b"

    b.update(yaw=1.0)
    assert await b.tick() is True
    assert channel.messages()[-1]["data"]["yaw"] == 1.0
    assert relay.clients["peer-b"].of_type("state")[-1]["data"]["yaw"] == 1.0

    await a.shutdown()
    await b.shutdown()


@pytest.mark.asyncio
async def test_state_over_data_channel_updates_roster(relay, session_config, make_media):
    a, b, pcs_a, pcs_b = await connected_pair(relay, session_config, make_media)
    seen = record_events(a)
    channel = a.get_link("peer-b").data_channel

    await channel.emit("message", protocol.encode(protocol.make_state("peer-b", remote_state("peer-b", (7, 20, 7), True))))
    assert types(seen) == [events.PEER_UPDATED]
    assert {r.id: r.state.position for r in a.peers()}["peer-b"] == Vec3(7, 20, 7)

    await a.shutdown()
    await b.shutdown()


@pytest.mark.asyncio
async def test_proximity_teardown_removes_each_stream(relay, session_config, make_media):
    a, b, pcs_a, pcs_b = await connected_pair(relay, session_config, make_media)
    seen = record_events(b)
    pc = pcs_b.created[0]
    await pc.emit("track", FakeTrack("audio", id="a-mic"))
    await pc.emit("track", FakeTrack("video", id="a-cam"))
    ready = [(e.kind, e.stream.track_ids) for e in seen if e.type == events.TRACK_STREAM_READY]
    assert ready == [(TrackKind.AUDIO, ("a-mic",)), (TrackKind.CAMERA, ("a-cam",))]

    home = b.local.position
    b.update(position=(home.x + 1000, home.y, home.z))
    await b.proximity_tick()

    assert b.get_link("peer-a") is None
    assert pc.closed
    removed = [e.kind for e in seen if e.type == events.TRACK_STREAM_REMOVED]
    assert sorted(removed) == sorted([TrackKind.AUDIO, TrackKind.CAMERA])

    # Walking back in range reconnects with a fresh connection.
    b.update(position=home)
    await b.proximity_tick()
    link = b.get_link("peer-a")
    assert link is not None and link.initiator
    assert len(pcs_b.created) == 2

    await a.shutdown()
    await b.shutdown()


@pytest.mark.asyncio
async def test_far_peer_gets_no_link(relay, session_config, make_media):
    pcs = PeerConnectionFactory()
    manager = make_manager(session_config, relay, "peer-m", media=make_media(), pc_factory=pcs)
    await manager.start()
    await relay.clients["peer-m"].deliver(protocol.make_state("peer-0", remote_state("peer-0", (5000, 0, 0), True)))
    assert manager.get_link("peer-0") is None
    await manager.proximity_tick()
    assert manager.get_link("peer-0") is None
    assert pcs.created == []
    await manager.shutdown()


@pytest.mark.asyncio
async def test_no_link_when_either_side_lacks_media(relay, session_config, make_media):
    with_media = make_manager(session_config, relay, "peer-m", media=make_media())
    await with_media.start()
    await relay.clients["peer-m"].deliver(protocol.make_state("peer-0", remote_state("peer-0", has_media=False)))
    await with_media.proximity_tick()
    assert with_media.get_link("peer-0") is None
    await with_media.shutdown()

    without_media = make_manager(session_config, relay, "peer-n")
    await without_media.start()
    await relay.clients["peer-n"].deliver(protocol.make_state("peer-0", remote_state("peer-0", has_media=True)))
    assert without_media.get_link("peer-0") is None
    await without_media.shutdown()


@pytest.mark.asyncio
async def test_reconnect_drops_unsettled_links(relay, session_config, make_media):
    manager = make_manager(session_config, relay, "peer-m", media=make_media())
    await manager.start()
    sig = relay.clients["peer-m"]
    here = manager.local.position
    await sig.deliver(protocol.make_state("peer-0", remote_state("peer-0", (here.x, here.y, here.z), True)))

    link = manager.get_link("peer-0")
    assert link is not None and link.initiator
    await link.join()
    assert link.state is NegotiationState.OFFER_SENT

    await sig.connect()
    assert manager.get_link("peer-0") is None
    assert link.closed
    assert len(sig.of_type("join")) == 2
    await manager.shutdown()


@pytest.mark.asyncio
async def test_link_failure_closes_only_that_link(relay, session_config, make_media):
    a, b, pcs_a, pcs_b = await connected_pair(relay, session_config, make_media)
    b_pc = pcs_b.created[0]
    await b_pc.set_connection_state("failed")
    # The link leaves the map before its transport finishes closing.
    await until(lambda: b_pc.closed)
    assert b.get_link("peer-a") is None
    assert a.get_link("peer-b") is not None
    assert [r.id for r in b.peers()] == ["peer-a"]

    await a.shutdown()
    await b.shutdown()


@pytest.mark.asyncio
async def test_stale_peers_expire(relay, make_media):
    now = [0.0]
    config = SessionConfig(broadcast_interval=3600, proximity_interval=3600, enable_media=False, peer_timeout=5.0)
    manager = make_manager(config, relay, "peer-a", clock=lambda: now[0])
    seen = record_events(manager)
    await manager.start()
    await relay.clients["peer-a"].deliver(protocol.make_state("peer-z", remote_state("peer-z")))

    now[0] = 4.0
    await manager.proximity_tick()
    assert [r.id for r in manager.peers()] == ["peer-z"]

    now[0] = 10.0
    await manager.proximity_tick()
    assert manager.peers() == []
    assert types(seen, "peer-z")[-1] == events.PEER_LEFT
    await manager.shutdown()


@pytest.mark.asyncio
async def test_shutdown_tears_down_remote_side(relay, session_config, make_media):
    a, b, pcs_a, pcs_b = await connected_pair(relay, session_config, make_media)
    seen = record_events(a)
    await b.shutdown()

    assert pcs_b.created[0].closed
    assert a.get_link("peer-b") is None
    assert types(seen, "peer-b")[-1] == events.PEER_LEFT
    await a.shutdown()


@pytest.mark.asyncio
async def test_screen_share_renegotiates_and_announces(relay, session_config, make_media):
    a, b, pcs_a, pcs_b = await connected_pair(relay, session_config, make_media)
    link_b = b.get_link("peer-a")
    screen = FakeTrack("video", id="screen-b", label="screen")

    assert await b.start_screen_share([screen]) is True
    assert b.local.screen_sharing

    channel_b = pcs_b.created[0].channels[0]
    metadata = [m for m in channel_b.messages() if m["type"] == "screen_track_metadata"]
    assert metadata == [{"type": "screen_track_metadata", "peerId": "peer-b", "trackIds": ["screen-b"]}]
    assert relay.clients["peer-b"].of_type("state")[-1]["data"]["screenSharing"] is True

    # The renegotiation offer travels over the relay; peer-a answers on its existing link.
    await link_b.join()
    await a.get_link("peer-b").join()
    await link_b.join()
    assert pcs_b.created[0].offers == 2
    assert link_b.state is NegotiationState.CONNECTED
    assert len(pcs_a.created) == 1

    # Metadata reaches peer-a before the track, so it is classified as screen on arrival.
    seen = record_events(a)
    channel_a = a.get_link("peer-b").data_channel
    await channel_a.emit("message", channel_b.sent[-2])
    await pcs_a.created[0].emit("track", FakeTrack("video", id="screen-b"))
    assert [(e.type, e.kind) for e in seen if e.type == events.TRACK_STREAM_READY] == [
        (events.TRACK_STREAM_READY, TrackKind.SCREEN)
    ]

    await b.stop_screen_share()
    await link_b.join()
    assert not b.local.screen_sharing
    assert screen.stopped
    senders = pcs_b.created[0].senders
    assert [s.track for s in senders if s.track is not None and s.track.id == "screen-b"] == []
    assert relay.clients["peer-b"].of_type("state")[-1]["data"]["screenSharing"] is False

    await a.shutdown()
    await b.shutdown()


@pytest.mark.asyncio
async def test_peer_that_stops_sharing_loses_its_screen_stream(relay, session_config, make_media):
    a, b, pcs_a, pcs_b = await connected_pair(relay, session_config, make_media)
    link_a = a.get_link("peer-b")
    await link_a.apply_screen_metadata(["screen-b"])
    await pcs_a.created[0].emit("track", FakeTrack("video", id="screen-b"))
    seen = record_events(a)

    sig_a = relay.clients["peer-a"]
    sharing = dict(remote_state("peer-b", has_media=True), screenSharing=True)
    await sig_a.deliver(protocol.make_state("peer-b", sharing))
    assert events.TRACK_STREAM_REMOVED not in types(seen)

    await sig_a.deliver(protocol.make_state("peer-b", dict(sharing, screenSharing=False)))
    removed = [e.kind for e in seen if e.type == events.TRACK_STREAM_REMOVED]
    assert removed == [TrackKind.SCREEN]
    assert link_a.tracks.track_ids(TrackKind.SCREEN) == ()

    await a.shutdown()
    await b.shutdown()


@pytest.mark.asyncio
async def test_screen_share_without_capture_source(relay, session_config, monkeypatch):
    monkeypatch.setattr(media_module, "_try_create_player", lambda sources, what: (None, None))
    manager = make_manager(session_config, relay, "peer-a")
    await manager.start()
    assert await manager.start_screen_share() is False
    assert not manager.local.screen_sharing
    await manager.shutdown()
