# heartshare/throttle.py
"""
Filtros del lado emisor:
- should_write: solo se persisten transiciones de bpm en el LiveStore
- NotificationThrottle: cooldown fijo (1 hora) para el trigger de notificación,
  con el último envío persistido en el estado durable
"""
from typing import NamedTuple, Optional

from heartshare.config import NOTIFICATION_COOLDOWN_SECONDS
from heartshare.logger import get_logger
from heartshare.scheduler import Clock, SystemClock
from heartshare.state import FileStateStore

logger = get_logger(__name__)

LAST_NOTIFICATION_KEY = "last_notification_sent_at"


def should_write(candidate_bpm: int, last_accepted_bpm: Optional[int]) -> bool:
    """False solo si ya hay un bpm aceptado y es igual al candidato."""
    return last_accepted_bpm is None or candidate_bpm != last_accepted_bpm


class TriggerDecision(NamedTuple):
    fire: bool
    remaining_seconds: int = 0


class NotificationThrottle:
    def __init__(
        self,
        state: FileStateStore,
        clock: Optional[Clock] = None,
        cooldown_seconds: float = NOTIFICATION_COOLDOWN_SECONDS,
    ):
        self.state = state
        self.clock = clock or SystemClock()
        self.cooldown_seconds = cooldown_seconds
        self._in_flight = False

        stored = self.state.get(LAST_NOTIFICATION_KEY)
        if stored is not None:
            logger.info(f"Último envío de notificación restaurado: {stored}")

    @property
    def last_sent_at(self) -> Optional[float]:
        value = self.state.get(LAST_NOTIFICATION_KEY)
        return float(value) if value is not None else None

    def maybe_trigger(self, now: Optional[float] = None) -> TriggerDecision:
        if now is None:
            now = self.clock.time()
        if self._in_flight:
            # hay un trigger escribiéndose; el resultado decide si avanza el cooldown
            return TriggerDecision(False, int(self.cooldown_seconds))

        last = self.last_sent_at
        if last is not None:
            elapsed = now - last
            if elapsed < self.cooldown_seconds:
                remaining = int(self.cooldown_seconds - elapsed)
                logger.debug(f"Notificación en cooldown: faltan {remaining}s")
                return TriggerDecision(False, remaining)

        return TriggerDecision(True)

    def begin(self) -> None:
        self._in_flight = True

    def complete(self, sent_at: float, error: Optional[BaseException] = None) -> None:
        """Resultado de la escritura del trigger: solo un éxito avanza el cooldown."""
        self._in_flight = False
        if error is not None:
            logger.warning(f"Error escribiendo trigger de notificación, cooldown sin cambios: {error}")
            return
        try:
            self.state.set(LAST_NOTIFICATION_KEY, sent_at)
        except OSError as e:
            logger.error(f"No se pudo persistir el último envío de notificación: {e}", exc_info=True)
            return
        logger.info("Trigger de notificación enviado")
