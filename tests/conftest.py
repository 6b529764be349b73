"""
Fixtures compartidas: reloj simulado, scheduler, store en memoria y estado local temporal.
"""
import os
import sys

import pytest

# Agregar el directorio raíz al PYTHONPATH para que pueda encontrar el paquete 'heartshare'
project_root = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if project_root not in sys.path:
    sys.path.insert(0, project_root)

from heartshare.live_store import MemoryLiveStore
from heartshare.models import HeartRateData
from heartshare.pipeline import HeartbeatIngestPipeline
from heartshare.scheduler import ManualClock, Scheduler
from heartshare.state import FileStateStore
from heartshare.throttle import NotificationThrottle
from heartshare.timeout_monitor import TimeoutMonitor


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def scheduler(clock):
    return Scheduler(clock)


@pytest.fixture
def store():
    return MemoryLiveStore()


@pytest.fixture
def state(tmp_path):
    """Estado durable en un directorio temporal."""
    return FileStateStore(str(tmp_path / "state" / "device_state.json"))


@pytest.fixture
def throttle(state, clock):
    return NotificationThrottle(state, clock, cooldown_seconds=3600)


@pytest.fixture
def monitor(scheduler):
    return TimeoutMonitor(scheduler, timeout_seconds=10, tick_seconds=1)


@pytest.fixture
def pipeline(store, throttle, monitor, clock):
    return HeartbeatIngestPipeline(store, throttle, monitor, clock, publish_reset=True)


@pytest.fixture
def make_sample(clock):
    """Arma un HeartRateData con timestamp = ahora (ms)."""

    def make(bpm, user_id="user_1", **extra):
        data = {"userId": user_id, "heartNum": bpm, "timestamp": clock.time() * 1000}
        data.update(extra)
        return HeartRateData.model_validate(data)

    return make
