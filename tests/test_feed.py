"""
Pruebas del feed de heartbeats del lado viewer (staleness, suscripciones, snapshots).
"""
import pytest

from heartshare.config import MAX_TIMESTAMP_MS
from heartshare.feed import SORT_BPM, SORT_RECENT, HeartbeatFeed, decode_record
from heartshare.models import LiveHeartbeatRecord
from heartshare.ports import StaticFollowGraph


@pytest.fixture
def feed(store, clock):
    return HeartbeatFeed(store, clock, validity_window_seconds=300, staleness_enabled=True)


def now_ms(clock):
    return int(clock.time() * 1000)


def write(store, user_id, bpm, timestamp_ms):
    store.write(user_id, LiveHeartbeatRecord(bpm=bpm, timestamp=timestamp_ms))


def test_fresh_reading_is_emitted(store, feed, clock):
    received = []
    feed.subscribe("user_1", received.append)
    write(store, "user_1", 72, now_ms(clock) - 299_000)

    assert received[0] is None
    assert received[1].bpm == 72
    assert received[1].user_id == "user_1"


def test_stale_reading_is_emitted_as_none(store, feed, clock):
    """Una lectura más vieja que la ventana nunca se muestra."""
    received = []
    feed.subscribe("user_1", received.append)
    write(store, "user_1", 72, now_ms(clock) - 301_000)
    assert received == [None, None]


def test_window_boundary_is_inclusive(store, feed, clock):
    write(store, "user_1", 72, now_ms(clock) - 300_000)
    assert feed.get_once("user_1").bpm == 72


def test_custom_window_per_subscription(store, feed, clock):
    received = []
    feed.subscribe("user_1", received.append, validity_window_seconds=10)
    write(store, "user_1", 72, now_ms(clock) - 30_000)
    assert received[-1] is None


def test_staleness_disabled_keeps_old_readings(store, clock):
    feed = HeartbeatFeed(store, clock, validity_window_seconds=300, staleness_enabled=False)
    write(store, "user_1", 72, now_ms(clock) - 3_600_000)
    assert feed.get_once("user_1").bpm == 72


@pytest.mark.parametrize("raw", ["garbage", {"bpm": "abc", "timestamp": 1}, {"bpm": 72}, [1, 2]])
def test_malformed_payload_is_none(store, feed, raw):
    received = []
    feed.subscribe("user_1", received.append)
    store._publish("user_1", raw)
    assert received == [None, None]


@pytest.mark.parametrize("timestamp", [1e20, -5, float("inf"), float("nan"), MAX_TIMESTAMP_MS + 1])
def test_out_of_range_timestamp_is_none(store, feed, clock, timestamp):
    """Un timestamp que datetime no puede representar se trata como registro malformado."""
    write(store, "user_2", 72, now_ms(clock))
    store._data["user_1"] = {"bpm": 72, "timestamp": timestamp}

    received = []
    feed.subscribe("user_1", received.append)
    store._publish("user_1", {"bpm": 72, "timestamp": timestamp})

    assert received == [None, None]
    assert feed.get_once("user_1") is None
    assert feed.get_many(["user_1", "user_2"])["user_1"] is None
    assert feed.active_user_ids() == ["user_2"]


def test_decode_record_accepts_last_representable_timestamp():
    heartbeat = decode_record("user_1", {"bpm": 72, "timestamp": MAX_TIMESTAMP_MS})
    assert heartbeat is not None
    assert heartbeat.timestamp.year == 9999
    assert decode_record("user_1", {"bpm": 72, "timestamp": MAX_TIMESTAMP_MS + 1}) is None


def test_unsubscribe_is_idempotent(store, feed, clock):
    received = []
    subscription = feed.subscribe("user_1", received.append)
    assert subscription.active
    subscription.unsubscribe()
    subscription.unsubscribe()
    write(store, "user_1", 72, now_ms(clock))
    assert received == [None]
    assert not subscription.active
    assert store.observer_count("user_1") == 0


def test_subscription_keeps_latest(store, feed, clock):
    subscription = feed.subscribe("user_1", lambda hb: None)
    write(store, "user_1", 90, now_ms(clock))
    assert subscription.latest.bpm == 90


def test_subscribe_many_aggregates(store, feed, clock):
    snapshots = []
    feed_set = feed.subscribe_many(["a", "b", "a"], snapshots.append)
    assert feed_set.user_ids == ["a", "b"]

    write(store, "a", 70, now_ms(clock))
    write(store, "b", 95, now_ms(clock))
    assert {uid: hb.bpm for uid, hb in snapshots[-1].items()} == {"a": 70, "b": 95}

    store.remove("a")
    assert set(snapshots[-1]) == {"b"}

    feed_set.unsubscribe()
    write(store, "b", 100, now_ms(clock))
    assert snapshots[-1]["b"].bpm == 95


def test_get_many(store, feed, clock):
    write(store, "a", 70, now_ms(clock))
    write(store, "b", 80, now_ms(clock) - 600_000)
    result = feed.get_many(["a", "b", "c"])
    assert result["a"].bpm == 70
    assert result["b"] is None
    assert result["c"] is None


def test_active_user_ids(store, feed, clock):
    write(store, "b", 70, now_ms(clock))
    write(store, "a", 80, now_ms(clock) - 10_000)
    write(store, "old", 90, now_ms(clock) - 600_000)
    assert feed.active_user_ids() == ["a", "b"]


def test_following_heartbeats_sorting(store, feed, clock):
    graph = StaticFollowGraph({"viewer": ["a", "b", "c"]})
    write(store, "a", 70, now_ms(clock) - 10_000)
    write(store, "b", 90, now_ms(clock) - 60_000)

    recent = feed.following_heartbeats("viewer", graph, SORT_RECENT)
    assert [uid for uid, _ in recent] == ["a", "b", "c"]
    assert recent[2][1] is None

    by_bpm = feed.following_heartbeats("viewer", graph, SORT_BPM)
    assert [uid for uid, _ in by_bpm] == ["b", "a", "c"]


def test_following_heartbeats_rejects_unknown_sort(feed):
    with pytest.raises(ValueError):
        feed.following_heartbeats("viewer", StaticFollowGraph(), "name")


def test_following_nobody(feed):
    assert feed.following_heartbeats("viewer", StaticFollowGraph()) == []
