"""
Buffer de entregas mientras la app está en background.

En foreground las muestras pasan directo al pipeline. En background se
acumulan y un drain periódico (cada 2s, o al volver a foreground) colapsa la
cola a una sola entrada por emisor, la más reciente, antes de entregarla:
no tiene sentido reproducir lecturas intermedias ya irrelevantes.
"""
from typing import Any, Callable, Dict, List, Optional, Tuple

from heartshare.config import DRAIN_INTERVAL_SECONDS
from heartshare.logger import get_logger
from heartshare.ports import BackgroundTaskHost, NullBackgroundTaskHost
from heartshare.scheduler import ScheduledHandle, Scheduler

logger = get_logger(__name__)

BACKGROUND_TASK_NAME = "HeartRateSync"

Deliver = Callable[[Dict[str, Any]], Any]


def sender_id(message: Dict[str, Any]) -> Optional[str]:
    data = message.get("data")
    if isinstance(data, dict):
        user_id = data.get("userId")
        if isinstance(user_id, str):
            return user_id
    return None


class BackgroundDeliveryQueue:
    def __init__(
        self,
        scheduler: Scheduler,
        deliver: Deliver,
        host: Optional[BackgroundTaskHost] = None,
        drain_interval: float = DRAIN_INTERVAL_SECONDS,
    ):
        self.scheduler = scheduler
        self.deliver = deliver
        self.host = host or NullBackgroundTaskHost()
        self.drain_interval = drain_interval
        self.foreground = True
        self._queue: List[Tuple[Dict[str, Any], float]] = []
        self._timer: Optional[ScheduledHandle] = None
        self._task_token: Any = None

    def __len__(self) -> int:
        return len(self._queue)

    def start(self) -> None:
        if self._timer is None:
            self._timer = self.scheduler.call_every(self.drain_interval, self.flush)

    def stop(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        self._end_background_task()

    def submit(self, message: Dict[str, Any], timestamp: Optional[float] = None) -> bool:
        """Entrega directa en foreground; en background encola. True si se entregó."""
        if self.foreground:
            self.deliver(message)
            return True
        self.enqueue(message, timestamp)
        return False

    def enqueue(self, message: Dict[str, Any], timestamp: Optional[float] = None) -> None:
        if timestamp is None:
            timestamp = self.scheduler.clock.time()
        self._queue.append((message, timestamp))
        if self._task_token is None:
            self._begin_background_task()

    def drain_latest_per_sender(self) -> List[Dict[str, Any]]:
        """Vacía la cola y devuelve la entrada más reciente de cada emisor (orden por timestamp)."""
        items, self._queue = self._queue, []
        latest: Dict[str, Tuple[Dict[str, Any], float]] = {}
        for message, timestamp in items:
            user_id = sender_id(message)
            if user_id is None:
                logger.debug("Entrada sin userId descartada del buffer")
                continue
            current = latest.get(user_id)
            if current is None or timestamp >= current[1]:
                latest[user_id] = (message, timestamp)
        ordered = sorted(latest.values(), key=lambda item: item[1])
        return [message for message, _ in ordered]

    def flush(self) -> int:
        if not self._queue:
            return 0
        batch = self.drain_latest_per_sender()
        logger.info(f"Buffer: entregando {len(batch)} muestras (más reciente por emisor)")
        for message in batch:
            try:
                self.deliver(message)
            except Exception:
                logger.exception("Error entregando muestra del buffer")
        if not self._queue:
            self._end_background_task()
        return len(batch)

    # ------------------------------------------------------------------
    # Ciclo de vida de la app
    # ------------------------------------------------------------------
    def on_foreground(self) -> None:
        self.foreground = True
        self.flush()
        self._end_background_task()

    def on_background(self) -> None:
        self.foreground = False
        if self._task_token is None:
            self._begin_background_task()

    def _begin_background_task(self) -> None:
        self._task_token = self.host.begin_background_task(BACKGROUND_TASK_NAME, self._on_expire)

    def _end_background_task(self) -> None:
        if self._task_token is not None:
            self.host.end_background_task(self._task_token)
            self._task_token = None

    def _on_expire(self) -> None:
        # best effort: lo que no alcance a salir antes de la suspensión se pierde
        logger.warning("Tiempo de background agotado, drenando buffer")
        try:
            self.flush()
        finally:
            self._end_background_task()
