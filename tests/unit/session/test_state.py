import random
import re

import pytest
from hypothesis import given
from hypothesis import strategies as st

from peersync.net.protocol import ProtocolError
from peersync.session.state import (
    Billboard,
    BroadcastBaseline,
    ChangeThresholds,
    LocalState,
    Vec3,
    coerce_field,
    deterministic_color,
    generate_peer_id,
    has_material_change,
    planar_distance,
    random_spawn_position,
)


def test_deterministic_color_matches_browser_hash():
    assert deterministic_color("a") == "hsl(97, 100%, 50%)"
    assert deterministic_color("ab") == "hsl(225, 100%, 50%)"


@given(st.text(min_size=1, max_size=64))
def test_deterministic_color_is_stable_and_in_range(peer_id):
    color = deterministic_color(peer_id)
    assert color == deterministic_color(peer_id)
    hue = int(re.fullmatch(r"hsl\((\d+), 100%, 50%\)", color).group(1))
    assert 0 <= hue < 360


def test_generate_peer_id_format():
    rng = random.Random(7)
    ids = {generate_peer_id(rng) for _ in range(50)}
    assert len(ids) == 50
    assert all(re.fullmatch(r"peer-[a-z0-9]{9}", i) for i in ids)


def test_spawn_position_bounds():
    rng = random.Random(1)
    for _ in range(200):
        p = random_spawn_position(rng, spread=150, height=20)
        assert -75 <= p.x <= 75
        assert -75 <= p.z <= 75
        assert p.y == 20


def test_planar_distance_ignores_height():
    assert planar_distance(Vec3(0, 0, 0), Vec3(3, 100, 4)) == pytest.approx(5.0)


def test_no_baseline_is_a_change():
    assert has_material_change(LocalState(id="a"), None)


def test_change_thresholds_are_strict():
    state = LocalState(id="a", position=Vec3(1, 2, 3), yaw=0.5)
    baseline = BroadcastBaseline.of(state)
    assert not has_material_change(state, baseline)

    state.position = Vec3(1.005, 2, 3)
    assert not has_material_change(state, baseline)
    state.position = Vec3(1.02, 2, 3)
    assert has_material_change(state, baseline)

    state.position = Vec3(1, 2, 3)
    state.velocity = Vec3(0, 0, 0.002)
    assert has_material_change(state, baseline)

    state.velocity = Vec3()
    state.yaw = 0.505
    assert not has_material_change(state, baseline)
    state.yaw = 0.6
    assert has_material_change(state, baseline)


def test_custom_thresholds():
    state = LocalState(id="a")
    baseline = BroadcastBaseline.of(state)
    state.position = Vec3(0.5, 0, 0)
    assert not has_material_change(state, baseline, ChangeThresholds(position=1.0))


def test_wire_shape():
    state = LocalState(
        id="peer-a",
        position=Vec3(1, 2, 3),
        yaw=1.25,
        color="hsl(1, 100%, 50%)",
        display_name="Ada",
        has_media=True,
        screen_sharing=True,
        billboard=Billboard(position=Vec3(0, 5, 0), width=4, height=3),
    )
    wire = state.to_wire()
    assert wire["position"] == {"x": 1, "y": 2, "z": 3}
    assert wire["displayName"] == "Ada"
    assert wire["hasMedia"] is True
    assert wire["billboard"] == {"position": {"x": 0, "y": 5, "z": 0}, "width": 4, "height": 3}
    assert LocalState.from_wire(wire, peer_id="peer-a") == state


def test_from_wire_accepts_browser_aliases():
    state = LocalState.from_wire(
        {"id": "p", "position": {"x": 1, "y": 0, "z": 2}, "rotation": 0.75, "billboardData": {"width": 2, "height": 1}},
        peer_id="p",
    )
    assert state.yaw == 0.75
    assert state.billboard == Billboard(position=Vec3(), width=2.0, height=1.0)


def test_from_wire_fills_missing_id_from_envelope():
    assert LocalState.from_wire({"yaw": 0}, peer_id="p").id == "p"


@pytest.mark.parametrize(
    "data",
    [
        {"id": "other"},
        {"position": {"x": "1"}},
        {"position": {"x": True}},
        {"velocity": [1, 2, 3]},
        {"yaw": "left"},
        {"billboard": "big"},
    ],
)
def test_from_wire_rejects_malformed(data):
    with pytest.raises(ProtocolError):
        LocalState.from_wire(data, peer_id="p")


def test_coerce_field():
    assert coerce_field("position", (1, 2, 3)) == Vec3(1.0, 2.0, 3.0)
    assert coerce_field("velocity", {"x": 1}) == Vec3(1.0, 0.0, 0.0)
    assert coerce_field("yaw", 1) == 1.0
    with pytest.raises(ValueError):
        coerce_field("id", "x")
    with pytest.raises(ValueError):
        coerce_field("speed", 3)
    with pytest.raises(ValueError):
        coerce_field("billboard", {"width": 1})
