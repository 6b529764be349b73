# heartshare/scheduler.py
"""
Scheduler de eventos temporizados (min-heap) con handles de cancelación.

Todo el estado compartido del pipeline (bpm actual, último bpm aceptado,
estado del PulseScheduler) se muta únicamente desde callbacks de este
scheduler, así un callback del transporte y un tick de timer nunca corren
en paralelo. Otros threads (handlers HTTP, thread de pub/sub de Redis)
entran con `call_soon` o `submit`.
"""
import heapq
import itertools
import threading
import time
from concurrent.futures import Future
from typing import Any, Callable, List, Optional, Tuple

from heartshare.logger import get_logger

logger = get_logger(__name__)


class Clock:
    """Reloj inyectable: `time()` es epoch en segundos, `monotonic()` para timers."""

    def time(self) -> float:
        raise NotImplementedError

    def monotonic(self) -> float:
        raise NotImplementedError


class SystemClock(Clock):
    def time(self) -> float:
        return time.time()

    def monotonic(self) -> float:
        return time.monotonic()


class ManualClock(Clock):
    """Reloj simulado para pruebas; solo avanza con `advance()`."""

    def __init__(self, start: float = 1_700_000_000.0):
        self._wall = float(start)
        self._mono = 0.0

    def time(self) -> float:
        return self._wall

    def monotonic(self) -> float:
        return self._mono

    def advance(self, seconds: float) -> None:
        if seconds < 0:
            raise ValueError("el reloj no puede retroceder")
        self._wall += seconds
        self._mono += seconds


class ScheduledHandle:
    def __init__(
        self,
        scheduler: "Scheduler",
        due: float,
        callback: Callable[..., Any],
        args: Tuple[Any, ...],
        interval: Optional[float] = None,
    ):
        self._scheduler = scheduler
        self.due = due
        self.callback = callback
        self.args = args
        self.interval = interval
        self._cancelled = False

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self) -> None:
        if self._cancelled:
            return
        self._cancelled = True
        self._scheduler._wakeup()


class Scheduler:
    def __init__(self, clock: Optional[Clock] = None, name: str = "HeartshareScheduler"):
        self.clock = clock or SystemClock()
        self.name = name
        self._heap: List[Tuple[float, int, ScheduledHandle]] = []
        self._seq = itertools.count()
        self._cond = threading.Condition()
        self._thread: Optional[threading.Thread] = None
        self._thread_lock = threading.Lock()
        self._running = False

    # ------------------------------------------------------------------
    # API de programación
    # ------------------------------------------------------------------
    def call_later(self, delay: float, callback: Callable[..., Any], *args: Any) -> ScheduledHandle:
        due = self.clock.monotonic() + max(0.0, delay)
        return self._push(ScheduledHandle(self, due, callback, args))

    def call_soon(self, callback: Callable[..., Any], *args: Any) -> ScheduledHandle:
        return self.call_later(0.0, callback, *args)

    def call_every(
        self,
        interval: float,
        callback: Callable[..., Any],
        *args: Any,
        first_delay: Optional[float] = None,
    ) -> ScheduledHandle:
        if interval <= 0:
            raise ValueError("interval debe ser > 0")
        delay = interval if first_delay is None else max(0.0, first_delay)
        due = self.clock.monotonic() + delay
        return self._push(ScheduledHandle(self, due, callback, args, interval=interval))

    def submit(self, callback: Callable[..., Any], *args: Any) -> Future:
        """Ejecuta `callback` en el contexto del scheduler y devuelve un Future con el resultado."""
        future: Future = Future()

        def run():
            if not future.set_running_or_notify_cancel():
                return
            try:
                future.set_result(callback(*args))
            except Exception as e:
                future.set_exception(e)

        self.call_soon(run)
        return future

    # ------------------------------------------------------------------
    # Ejecución
    # ------------------------------------------------------------------
    def next_due(self) -> Optional[float]:
        with self._cond:
            return self._next_due_locked()

    def pending_count(self) -> int:
        with self._cond:
            return sum(1 for _, _, handle in self._heap if not handle.cancelled)

    def run_pending(self) -> int:
        """Corre todos los eventos vencidos en orden (due, inserción)."""
        count = 0
        while True:
            handle = self._pop_due(self.clock.monotonic())
            if handle is None:
                return count
            self._execute(handle)
            count += 1

    def advance(self, seconds: float) -> None:
        """Avanza un ManualClock evento por evento hasta `now + seconds`."""
        if not isinstance(self.clock, ManualClock):
            raise TypeError("advance() requiere un ManualClock")
        target = self.clock.monotonic() + seconds
        self.run_pending()
        while True:
            due = self.next_due()
            if due is None or due > target:
                break
            self.clock.advance(max(0.0, due - self.clock.monotonic()))
            self.run_pending()
        self.clock.advance(max(0.0, target - self.clock.monotonic()))
        self.run_pending()

    # ------------------------------------------------------------------
    # Thread de tiempo real
    # ------------------------------------------------------------------
    def start(self) -> None:
        """Inicia el loop en un thread daemon (una sola instancia por scheduler)."""
        with self._thread_lock:
            if self._thread is not None and self._thread.is_alive():
                logger.debug("Scheduler thread ya está corriendo, no se inicia otro")
                return
            self._running = True
            self._thread = threading.Thread(target=self._loop, daemon=True, name=self.name)
            self._thread.start()
            logger.info(f"Scheduler thread iniciado: {self.name}")

    def stop(self, timeout: float = 2.0) -> None:
        with self._thread_lock:
            with self._cond:
                self._running = False
                self._cond.notify_all()
            thread = self._thread
            self._thread = None
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout)
            logger.info(f"Scheduler thread detenido: {self.name}")

    @property
    def is_running(self) -> bool:
        thread = self._thread
        return thread is not None and thread.is_alive()

    def _loop(self) -> None:
        while True:
            with self._cond:
                if not self._running:
                    break
                due = self._next_due_locked()
                now = self.clock.monotonic()
                if due is None:
                    self._cond.wait(timeout=0.5)
                    continue
                if due > now:
                    self._cond.wait(timeout=due - now)
                    continue
            self.run_pending()

    # ------------------------------------------------------------------
    # Internos
    # ------------------------------------------------------------------
    def _push(self, handle: ScheduledHandle) -> ScheduledHandle:
        with self._cond:
            heapq.heappush(self._heap, (handle.due, next(self._seq), handle))
            self._cond.notify()
        return handle

    def _next_due_locked(self) -> Optional[float]:
        while self._heap and self._heap[0][2].cancelled:
            heapq.heappop(self._heap)
        return self._heap[0][0] if self._heap else None

    def _pop_due(self, now: float) -> Optional[ScheduledHandle]:
        with self._cond:
            due = self._next_due_locked()
            if due is None or due > now:
                return None
            return heapq.heappop(self._heap)[2]

    def _execute(self, handle: ScheduledHandle) -> None:
        if handle.interval is not None:
            # reprogramar antes de correr: el callback puede cancelar su propio handle
            handle.due += handle.interval
            self._push(handle)
        try:
            handle.callback(*handle.args)
        except Exception:
            logger.exception(f"Error ejecutando callback programado {getattr(handle.callback, '__name__', handle.callback)}")

    def _wakeup(self) -> None:
        with self._cond:
            self._cond.notify_all()
