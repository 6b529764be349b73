# heartshare/pulse.py
"""
PulseScheduler: convierte un bpm en un stream recurrente de latidos.

- intervalo base = 60 / bpm, con jitter uniforme de +-3% resorteado en cada
  latido (simula la variabilidad natural, HRV)
- cada latido: pulso fuerte inmediato + pulso medio 0.12s después ("lub-dub");
  ambos fire-and-forget, nunca bloquean la programación del siguiente
- cambio de bpm en marcha: se encola y se aplica después del latido en curso,
  para no cortar un pulso a la mitad
- `start()` repetido en ráfaga no duplica pulsos físicos (cooldown de 0.3s)
"""
import random
from enum import Enum
from typing import Optional

from heartshare.config import (
    HRV_JITTER,
    MAX_VIBRATION_BPM,
    MIN_EFFECT_INTERVAL_SECONDS,
    SECONDARY_PULSE_DELAY_SECONDS,
)
from heartshare.events import EventStream
from heartshare.logger import get_logger
from heartshare.ports import HapticSink, INTENSITY_MEDIUM, INTENSITY_STRONG
from heartshare.scheduler import ScheduledHandle, Scheduler
from heartshare.state import FileStateStore

logger = get_logger(__name__)

VIBRATION_ENABLED_KEY = "vibration_enabled"


class PulseState(str, Enum):
    IDLE = "idle"
    RUNNING = "running"


class VibrationSettings:
    """Preferencia de vibración persistida; habilitada por defecto."""

    def __init__(self, state: Optional[FileStateStore] = None):
        self.state = state
        stored = state.get(VIBRATION_ENABLED_KEY) if state is not None else None
        self.enabled = True if stored is None else bool(stored)
        logger.info(f"Vibration setting loaded: {self.enabled}")

    def set_enabled(self, enabled: bool) -> None:
        self.enabled = enabled
        if self.state is not None:
            self.state.set(VIBRATION_ENABLED_KEY, enabled)
        logger.info(f"Vibration setting saved: {enabled}")


class PulseScheduler:
    def __init__(
        self,
        scheduler: Scheduler,
        sink: HapticSink,
        settings: Optional[VibrationSettings] = None,
        rng: Optional[random.Random] = None,
        jitter: float = HRV_JITTER,
        min_effect_interval: float = MIN_EFFECT_INTERVAL_SECONDS,
        secondary_delay: float = SECONDARY_PULSE_DELAY_SECONDS,
    ):
        self.scheduler = scheduler
        self.sink = sink
        self.settings = settings or VibrationSettings()
        self.rng = rng or random.Random()
        self.jitter = jitter
        self.min_effect_interval = min_effect_interval
        self.secondary_delay = secondary_delay

        self.state = PulseState.IDLE
        self.bpm = 0
        self.pending_bpm: Optional[int] = None
        self.next_fire_at: Optional[float] = None
        # emite el instante (monotonic) de cada latido; lo usa la animación
        self.beats: EventStream[float] = EventStream("beats")

        self._next_beat: Optional[ScheduledHandle] = None
        self._secondary: Optional[ScheduledHandle] = None
        self._stop_timer: Optional[ScheduledHandle] = None
        self._last_effect_at: Optional[float] = None

    @property
    def is_running(self) -> bool:
        return self.state == PulseState.RUNNING

    def start(self, bpm: int) -> None:
        if bpm <= 0:
            self.stop()
            return
        if bpm > MAX_VIBRATION_BPM:
            logger.warning(f"bpm fuera de rango para vibración, ignorado: {bpm}")
            return

        if self.is_running:
            if bpm == self.bpm:
                self.pending_bpm = None
                return
            # se aplica al terminar el latido en curso
            self.pending_bpm = bpm
            logger.debug(f"Cambio de BPM reservado: {self.bpm} -> {bpm}")
            return

        self.state = PulseState.RUNNING
        self.bpm = bpm
        self.pending_bpm = None
        self._beat(from_start=True)

    def start_temporary(self, bpm: int, duration: float) -> None:
        self.start(bpm)
        if self._stop_timer is not None:
            self._stop_timer.cancel()
        self._stop_timer = self.scheduler.call_later(duration, self.stop)

    def stop(self) -> None:
        """Cancela el latido pendiente y vuelve a IDLE. Idempotente."""
        for handle in (self._next_beat, self._secondary, self._stop_timer):
            if handle is not None:
                handle.cancel()
        self._next_beat = None
        self._secondary = None
        self._stop_timer = None
        self.state = PulseState.IDLE
        self.bpm = 0
        self.pending_bpm = None
        self.next_fire_at = None

    def enable(self) -> None:
        self.settings.set_enabled(True)

    def disable(self) -> None:
        self.settings.set_enabled(False)
        self.stop()

    def toggle(self) -> None:
        if self.settings.enabled:
            self.disable()
        else:
            self.enable()

    def next_interval(self, bpm: int) -> float:
        base = 60.0 / bpm
        return base * (1.0 + self.rng.uniform(-self.jitter, self.jitter))

    def _beat(self, from_start: bool = False) -> None:
        if not self.is_running:
            return
        now = self.scheduler.clock.monotonic()

        # cooldown solo para el latido inmediato de start(): los programados ya respetan su intervalo
        suppressed = (
            from_start
            and self._last_effect_at is not None
            and now - self._last_effect_at < self.min_effect_interval
        )
        if not suppressed:
            self._last_effect_at = now
            self.beats.emit(now)
            if self.settings.enabled:
                self._pulse(INTENSITY_STRONG)
                self._secondary = self.scheduler.call_later(self.secondary_delay, self._pulse, INTENSITY_MEDIUM)

        if self.pending_bpm is not None:
            logger.debug(f"Cambio de BPM aplicado: {self.bpm} -> {self.pending_bpm}")
            self.bpm = self.pending_bpm
            self.pending_bpm = None

        interval = self.next_interval(self.bpm)
        self.next_fire_at = now + interval
        self._next_beat = self.scheduler.call_later(interval, self._beat)

    def _pulse(self, intensity: str) -> None:
        try:
            self.sink.pulse(intensity)
        except Exception:
            logger.exception(f"Error en haptic sink - intensidad: {intensity}")
