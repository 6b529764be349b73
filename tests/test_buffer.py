"""
Pruebas del buffer de entregas en background.
"""
import pytest

from heartshare.buffer import BackgroundDeliveryQueue, sender_id
from heartshare.ports import NullBackgroundTaskHost


def message(user_id, bpm):
    data = {"heartNum": bpm}
    if user_id is not None:
        data["userId"] = user_id
    return {"type": "heartRate", "data": data}


@pytest.fixture
def host():
    return NullBackgroundTaskHost()


@pytest.fixture
def delivered():
    return []


@pytest.fixture
def queue(scheduler, delivered, host):
    return BackgroundDeliveryQueue(scheduler, delivered.append, host=host, drain_interval=2)


def test_sender_id():
    assert sender_id(message("a", 70)) == "a"
    assert sender_id(message(None, 70)) is None
    assert sender_id({"type": "heartRate"}) is None


def test_foreground_delivers_directly(queue, delivered):
    assert queue.submit(message("a", 70)) is True
    assert delivered == [message("a", 70)]
    assert len(queue) == 0


def test_drain_keeps_latest_per_sender(queue, scheduler, delivered, host):
    queue.start()
    queue.on_background()
    assert len(host.active) == 1

    assert queue.submit(message("a", 70), 1.0) is False
    queue.submit(message("b", 80), 2.0)
    queue.submit(message("a", 75), 3.0)
    queue.submit(message(None, 99), 4.0)
    assert len(queue) == 4

    scheduler.advance(2)
    assert delivered == [message("b", 80), message("a", 75)]
    assert len(queue) == 0
    assert host.active == {}


def test_drain_ignores_arrival_order(queue):
    queue.enqueue(message("a", 75), 3.0)
    queue.enqueue(message("a", 70), 1.0)
    assert queue.drain_latest_per_sender() == [message("a", 75)]


def test_foreground_flushes_pending(queue, delivered, host):
    queue.on_background()
    queue.submit(message("a", 70))
    queue.on_foreground()
    assert delivered == [message("a", 70)]
    assert queue.foreground
    assert host.active == {}


def test_expiration_flushes_and_ends_task(queue, delivered, host):
    queue.on_background()
    queue.submit(message("a", 70))
    host.expire_all()
    assert delivered == [message("a", 70)]
    assert host.active == {}


def test_delivery_error_does_not_lose_other_senders(scheduler, host):
    delivered = []

    def deliver(msg):
        if msg["data"]["userId"] == "bad":
            raise RuntimeError("boom")
        delivered.append(msg)

    queue = BackgroundDeliveryQueue(scheduler, deliver, host=host)
    queue.on_background()
    queue.submit(message("bad", 70), 1.0)
    queue.submit(message("good", 80), 2.0)
    assert queue.flush() == 2
    assert delivered == [message("good", 80)]
