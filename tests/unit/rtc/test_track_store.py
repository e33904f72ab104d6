from hypothesis import given
from hypothesis import strategies as st

from peersync.rtc.classifier import TrackKind, TrackMetadata
from peersync.rtc.track_store import ClassifiedTracks

from tests.fakes import FakeTrack


def test_duplicate_track_id_is_ignored():
    store = ClassifiedTracks()
    assert store.add(FakeTrack("video", id="v1")) is TrackKind.CAMERA
    assert store.add(FakeTrack("video", id="v1", label="screen")) is None
    assert store.track_ids(TrackKind.CAMERA) == ("v1",)
    assert store.track_ids(TrackKind.SCREEN) == ()


def test_late_metadata_moves_camera_track_to_screen():
    store = ClassifiedTracks()
    store.add(FakeTrack("audio", id="a1"))
    store.add(FakeTrack("video", id="v1"))
    store.add(FakeTrack("video", id="v2"))

    assert store.reclassify_as_screen(["v2"]) is True
    assert store.track_ids(TrackKind.CAMERA) == ("v1",)
    assert store.track_ids(TrackKind.SCREEN) == ("v2",)
    assert store.kinds_present() == [TrackKind.AUDIO, TrackKind.CAMERA, TrackKind.SCREEN]
    assert store.reclassify_as_screen(["v2", "a1"]) is False


def test_clear():
    store = ClassifiedTracks()
    store.add(FakeTrack("audio", id="a1"))
    store.clear()
    assert len(store) == 0
    assert store.add(FakeTrack("audio", id="a1")) is TrackKind.AUDIO


track_strategy = st.builds(
    FakeTrack,
    kind=st.sampled_from(["audio", "video"]),
    id=st.sampled_from(["t1", "t2", "t3", "t4", "t5"]),
    label=st.sampled_from(["", "cam", "screen 1"]),
)
step_strategy = st.one_of(
    st.tuples(st.just("add"), track_strategy, st.frozensets(st.sampled_from(["t1", "t2", "t3"]))),
    st.tuples(st.just("meta"), st.lists(st.sampled_from(["t1", "t2", "t3", "t4", "t5"]))),
)


@given(st.lists(step_strategy, max_size=30))
def test_every_track_id_lives_in_at_most_one_set(steps):
    store = ClassifiedTracks()
    for step in steps:
        if step[0] == "add":
            _, track, screen_ids = step
            store.add(track, TrackMetadata(screen_track_ids=screen_ids))
        else:
            store.reclassify_as_screen(step[1])

        all_ids = [tid for kind in TrackKind for tid in store.track_ids(kind)]
        assert len(all_ids) == len(set(all_ids))
        assert set(all_ids) == store.seen_track_ids


def test_discard_drops_one_kind_and_forgets_its_ids():
    store = ClassifiedTracks()
    store.add(FakeTrack("video", id="cam"))
    store.add(FakeTrack("video", id="s1", label="screen"))

    assert store.discard(TrackKind.SCREEN) is True
    assert store.kinds_present() == [TrackKind.CAMERA]
    assert store.discard(TrackKind.SCREEN) is False
    assert store.add(FakeTrack("video", id="s1", label="screen")) is TrackKind.SCREEN
    assert store.add(FakeTrack("video", id="cam")) is None
