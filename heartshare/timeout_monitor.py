# heartshare/timeout_monitor.py
"""
TimeoutMonitor: watchdog del bpm local del dispositivo emisor.

Estados: IDLE (sin valor) y LIVE(bpm, last_received_at). Un tick de 1s pasa a
IDLE si no llegó ninguna muestra en 10s; un reset explícito lo hace al
instante. Es independiente de la ventana de staleness del feed (10s del lado
emisor contra hasta 300s del lado viewer).
"""
from enum import Enum
from typing import Optional

from heartshare.config import HEART_RATE_TIMEOUT_SECONDS, TIMEOUT_TICK_SECONDS
from heartshare.events import EventStream, ObservableValue
from heartshare.logger import get_logger
from heartshare.scheduler import ScheduledHandle, Scheduler

logger = get_logger(__name__)


class MonitorState(str, Enum):
    IDLE = "idle"
    LIVE = "live"


class TimeoutMonitor:
    def __init__(
        self,
        scheduler: Scheduler,
        timeout_seconds: float = HEART_RATE_TIMEOUT_SECONDS,
        tick_seconds: float = TIMEOUT_TICK_SECONDS,
    ):
        self.scheduler = scheduler
        self.timeout_seconds = timeout_seconds
        self.tick_seconds = tick_seconds
        self.state = MonitorState.IDLE
        self.last_received_at: Optional[float] = None
        self.current_bpm: ObservableValue[int] = ObservableValue("current_bpm", 0)
        # emite el motivo ("timeout", "stop", "disconnected", ...) al entrar en IDLE
        self.idle: EventStream[str] = EventStream("idle")
        self._timer: Optional[ScheduledHandle] = None

    @property
    def bpm(self) -> int:
        return self.current_bpm.value or 0

    def start(self) -> None:
        if self._timer is not None and not self._timer.cancelled:
            return
        self._timer = self.scheduler.call_every(self.tick_seconds, self._tick)

    def stop(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def record_sample(self, bpm: int) -> None:
        """IDLE -> LIVE o LIVE -> LIVE: actualiza el bpm y reinicia el reloj de timeout."""
        self.last_received_at = self.scheduler.clock.monotonic()
        self.state = MonitorState.LIVE
        self.current_bpm.set(bpm)

    def reset(self, reason: str) -> None:
        """LIVE -> IDLE: pone el bpm local en 0 y notifica a los interesados."""
        was_live = self.state == MonitorState.LIVE
        self.state = MonitorState.IDLE
        self.last_received_at = None
        self.current_bpm.set(0)
        if was_live:
            logger.info(f"Frecuencia cardíaca reseteada - motivo: {reason}")
        self.idle.emit(reason)

    def _tick(self) -> None:
        if self.state != MonitorState.LIVE or self.last_received_at is None:
            return
        elapsed = self.scheduler.clock.monotonic() - self.last_received_at
        if elapsed >= self.timeout_seconds:
            logger.info(f"Timeout de frecuencia cardíaca: {elapsed:.1f}s sin datos")
            self.reset("timeout")
