"""
Streams de eventos publish/subscribe con handles explícitos.
Reemplazan las propiedades observables de la UI: cada suscripción se cancela
de forma explícita, nunca depende del garbage collector.
"""
import itertools
from typing import Any, Callable, Dict, Generic, Optional, TypeVar

from heartshare.logger import get_logger

logger = get_logger(__name__)

T = TypeVar("T")


class Subscription:
    """Handle de una suscripción. `cancel()` es idempotente."""

    def __init__(self, stream: "EventStream", key: int):
        self._stream = stream
        self._key = key
        self._active = True

    @property
    def active(self) -> bool:
        return self._active

    def cancel(self) -> None:
        if not self._active:
            return
        self._active = False
        self._stream._detach(self._key)


class EventStream(Generic[T]):
    def __init__(self, name: str):
        self.name = name
        self._subscribers: Dict[int, Callable[[T], Any]] = {}
        self._ids = itertools.count()

    def subscribe(self, callback: Callable[[T], Any]) -> Subscription:
        key = next(self._ids)
        self._subscribers[key] = callback
        return Subscription(self, key)

    def emit(self, value: T) -> None:
        for key, callback in list(self._subscribers.items()):
            if key not in self._subscribers:
                continue
            try:
                callback(value)
            except Exception:
                logger.exception(f"Error en subscriber de '{self.name}'")

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def _detach(self, key: int) -> None:
        self._subscribers.pop(key, None)


class ObservableValue(EventStream[T]):
    """Valor actual + stream; solo emite cuando el valor cambia."""

    def __init__(self, name: str, initial: Optional[T] = None):
        super().__init__(name)
        self._value = initial

    @property
    def value(self) -> Optional[T]:
        return self._value

    def set(self, value: T) -> None:
        if value == self._value:
            return
        self._value = value
        self.emit(value)
