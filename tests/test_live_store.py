"""
Pruebas del LiveStore: fan-out en memoria y backend Redis con un cliente mock.
"""
import json
from unittest.mock import MagicMock

import pytest
from redis.exceptions import RedisError

from heartshare.live_store import MemoryLiveStore, RedisLiveStore, decode_value
from heartshare.models import LiveHeartbeatRecord, NotificationTriggerRecord

RECORD = LiveHeartbeatRecord(bpm=72, timestamp=1700000000000)


def test_every_observer_receives_every_write(store):
    """Fan-out: dos observers de la misma clave reciben cada escritura."""
    first, second = [], []
    store.observe("user_1", first.append)
    store.observe("user_1", second.append)

    store.write("user_1", RECORD)
    store.write("user_1", LiveHeartbeatRecord(bpm=80, timestamp=1700000001000))

    expected = [None, {"bpm": 72, "timestamp": 1700000000000}, {"bpm": 80, "timestamp": 1700000001000}]
    assert first == expected
    assert second == expected


def test_observe_delivers_current_value(store):
    store.write("user_1", RECORD)
    received = []
    store.observe("user_1", received.append)
    assert received == [{"bpm": 72, "timestamp": 1700000000000}]


def test_cancel_is_idempotent_and_stops_delivery(store):
    received = []
    handle = store.observe("user_1", received.append)
    handle.cancel()
    handle.cancel()
    store.write("user_1", RECORD)
    assert received == [None]
    assert store.observer_count("user_1") == 0


def test_remove_notifies_none(store):
    received = []
    store.write("user_1", RECORD)
    store.observe("user_1", received.append)
    done = []
    store.remove("user_1", on_complete=done.append)
    assert received[-1] is None
    assert done == [None]
    assert store.read_once("user_1") is None


def test_read_many_and_read_all(store):
    store.write("a", RECORD)
    store.write("b", LiveHeartbeatRecord(bpm=90, timestamp=1700000000000))
    assert store.read_many(["a", "c"]) == {"a": {"bpm": 72, "timestamp": 1700000000000}, "c": None}
    assert set(store.read_all()) == {"a", "b"}


def test_failing_observer_does_not_break_fan_out(store):
    received = []

    def boom(value):
        raise RuntimeError("boom")

    store.observe("user_1", boom)
    store.observe("user_1", received.append)
    store.write("user_1", RECORD)
    assert received[-1]["bpm"] == 72


def test_viewer_count_and_ranking(store):
    handle_a = store.observe("a", lambda v: None)
    store.observe("a", lambda v: None)
    store.observe("b", lambda v: None)
    assert store.viewer_count("a") == 1
    handle_a.cancel()
    assert store.viewer_count("a") == 1
    assert store.ranking(10) == ["a", "b"]


def test_post_defers_callbacks(scheduler):
    store = MemoryLiveStore(post=scheduler.call_soon)
    received = []
    store.observe("user_1", received.append)
    store.write("user_1", RECORD)
    assert received == [None]
    scheduler.run_pending()
    assert received == [None, {"bpm": 72, "timestamp": 1700000000000}]


def test_decode_value():
    assert decode_value(None) is None
    assert decode_value("null") is None
    assert decode_value('{"bpm": 60, "timestamp": 1}') == {"bpm": 60, "timestamp": 1}
    assert decode_value("not json") == "not json"


# ----------------------------------------------------------------------
# RedisLiveStore
# ----------------------------------------------------------------------
@pytest.fixture
def redis_client():
    client = MagicMock()
    client.get.return_value = None
    client.incr.return_value = 1
    client.decr.return_value = 0
    return client


@pytest.fixture
def redis_store(redis_client):
    store = RedisLiveStore(
        redis_client,
        key_prefix="live_heartbeats",
        trigger_prefix="notification_triggers",
        ranking_key="ranking:maxConnections",
    )
    yield store
    store.close()


def test_redis_write_sets_and_publishes(redis_store, redis_client):
    done = []
    redis_store.write("user_1", RECORD, on_complete=done.append)
    redis_store.flush(timeout=2)

    payload = json.dumps({"bpm": 72, "timestamp": 1700000000000})
    pipe = redis_client.pipeline.return_value
    pipe.set.assert_called_once_with("live_heartbeats:user_1", payload)
    pipe.publish.assert_called_once_with("live_heartbeats:changes:user_1", payload)
    pipe.execute.assert_called_once()
    assert done == [None]
    assert redis_store.connection_status.value == "connected"


def test_redis_write_failure_reports_error(redis_store, redis_client):
    redis_client.pipeline.return_value.execute.side_effect = RedisError("connection refused")
    done = []
    redis_store.write("user_1", RECORD, on_complete=done.append)
    redis_store.flush(timeout=2)

    assert len(done) == 1
    assert isinstance(done[0], RedisError)
    assert redis_store.connection_status.value.startswith("error")


def test_redis_remove_publishes_null(redis_store, redis_client):
    redis_store.remove("user_1")
    redis_store.flush(timeout=2)
    pipe = redis_client.pipeline.return_value
    pipe.delete.assert_called_once_with("live_heartbeats:user_1")
    pipe.publish.assert_called_once_with("live_heartbeats:changes:user_1", "null")


def test_redis_notification_trigger(redis_store, redis_client):
    redis_store.set_notification_trigger("user_1", NotificationTriggerRecord(t=1700000000000.0))
    redis_store.flush(timeout=2)
    redis_client.set.assert_called_once_with("notification_triggers:user_1", json.dumps({"t": 1700000000000.0}))


def test_redis_read_many_uses_single_mget(redis_store, redis_client):
    redis_client.mget.return_value = ['{"bpm": 70, "timestamp": 1}', None, "garbage"]
    result = redis_store.read_many(["a", "b", "c"])

    redis_client.mget.assert_called_once_with(["live_heartbeats:a", "live_heartbeats:b", "live_heartbeats:c"])
    assert result == {"a": {"bpm": 70, "timestamp": 1}, "b": None, "c": "garbage"}


def test_redis_read_many_empty(redis_store, redis_client):
    assert redis_store.read_many([]) == {}
    redis_client.mget.assert_not_called()


def test_redis_read_all(redis_store, redis_client):
    redis_client.scan_iter.return_value = iter(["live_heartbeats:a", "live_heartbeats:b"])
    redis_client.mget.return_value = ['{"bpm": 70, "timestamp": 1}', None]
    assert redis_store.read_all() == {"a": {"bpm": 70, "timestamp": 1}}


def test_redis_observe_subscribes_and_dispatches(redis_store, redis_client):
    redis_client.mget.return_value = [None]
    pipe = redis_client.pipeline.return_value
    pipe.execute.return_value = [1]
    received = []
    handle = redis_store.observe("user_1", received.append)
    redis_store.flush(timeout=2)

    pubsub = redis_client.pubsub.return_value
    pubsub.run_in_thread.assert_called_once()
    redis_client.mget.assert_called_once_with(["live_heartbeats:user_1"])
    pipe.incr.assert_called_once_with("live_heartbeats_connections:user_1")
    pipe.zadd.assert_called_once_with("ranking:maxConnections", {"user_1": 1}, gt=True)
    assert received == [None]

    redis_store._on_message({"channel": "live_heartbeats:changes:user_1", "data": '{"bpm": 80, "timestamp": 5}'})
    redis_store._on_message({"channel": "other:changes:user_1", "data": "{}"})
    assert received == [None, {"bpm": 80, "timestamp": 5}]

    handle.cancel()
    redis_store.flush(timeout=2)
    pubsub.unsubscribe.assert_called_once_with("live_heartbeats:changes:user_1")
    redis_client.decr.assert_called_once_with("live_heartbeats_connections:user_1")


def test_redis_ping_failure(redis_store, redis_client):
    redis_client.ping.side_effect = RedisError("down")
    assert redis_store.ping() is False
    assert redis_store.connection_status.value.startswith("error")


def test_redis_observe_many_batches_round_trips(redis_store, redis_client):
    """Un lote de observers: un MGET, una suscripción y un pipeline de contadores."""
    user_ids = ["a", "b", "c", "d"]
    redis_client.mget.return_value = ['{"bpm": 70, "timestamp": 1}', None, None, None]
    pipe = redis_client.pipeline.return_value
    pipe.execute.return_value = [1, 2, 1, 1]
    received = {user_id: [] for user_id in user_ids}

    handles = redis_store.observe_many({user_id: received[user_id].append for user_id in user_ids})
    redis_store.flush(timeout=2)

    assert [handle.user_id for handle in handles] == user_ids
    assert redis_client.mget.call_count == 1
    assert redis_client.get.call_count == 0
    assert redis_client.incr.call_count == 0
    pubsub = redis_client.pubsub.return_value
    assert pubsub.subscribe.call_count == 1
    assert set(pubsub.subscribe.call_args.kwargs) == {f"live_heartbeats:changes:{u}" for u in user_ids}
    assert pipe.incr.call_count == 4
    pipe.zadd.assert_any_call("ranking:maxConnections", {"b": 2}, gt=True)
    assert received == {"a": [{"bpm": 70, "timestamp": 1}], "b": [None], "c": [None], "d": [None]}


def test_observe_many_registers_in_order(store):
    store.write("b", RECORD)
    existing = store.observe("a", lambda v: None)
    received = {"a": [], "b": []}

    handles = store.observe_many({"a": received["a"].append, "b": received["b"].append})

    assert [handle.user_id for handle in handles] == ["a", "b"]
    assert received == {"a": [None], "b": [{"bpm": 72, "timestamp": 1700000000000}]}
    assert store.observer_count("a") == 2
    # "a" ya tenía observer: solo "b" suma una conexión
    assert store.viewer_count("a") == 1
    assert store.viewer_count("b") == 1
    existing.cancel()
    assert store.observer_count("a") == 1
