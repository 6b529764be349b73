# heartshare/ports.py
"""
Interfaces de los colaboradores externos (auth, grafo de follows, haptics,
background tasks del sistema operativo, transporte hacia el companion) y las
implementaciones simples que usa el bridge.
"""
import itertools
from typing import Any, Callable, Dict, List, Optional, Protocol

from heartshare.events import ObservableValue
from heartshare.logger import get_logger

logger = get_logger(__name__)

INTENSITY_STRONG = "strong"
INTENSITY_MEDIUM = "medium"


class AuthProvider(Protocol):
    user: ObservableValue

    def current_user_id(self) -> Optional[str]: ...

    def current_user_name(self) -> Optional[str]: ...


class FollowGraph(Protocol):
    def get_following_ids(self, user_id: str) -> List[str]: ...


class HapticSink(Protocol):
    def pulse(self, intensity: str) -> None: ...


class BackgroundTaskHost(Protocol):
    def begin_background_task(self, name: str, on_expire: Callable[[], Any]) -> Any: ...

    def end_background_task(self, token: Any) -> None: ...


class CompanionTransport(Protocol):
    def transfer_user_info(self, message: Dict[str, Any]) -> None: ...

    def send_message(self, message: Dict[str, Any]) -> None: ...

    def is_reachable(self) -> bool: ...


class StaticAuthProvider:
    """Identidad fija del dispositivo (configurada por entorno)."""

    def __init__(self, user_id: Optional[str], user_name: Optional[str] = None):
        self.user = ObservableValue("current_user", user_id or None)
        self._user_name = user_name

    def current_user_id(self) -> Optional[str]:
        return self.user.value

    def current_user_name(self) -> Optional[str]:
        return self._user_name

    def sign_in(self, user_id: str, user_name: Optional[str] = None) -> None:
        self._user_name = user_name
        self.user.set(user_id)


class StaticFollowGraph:
    def __init__(self, following: Optional[Dict[str, List[str]]] = None):
        self.following = following or {}

    def get_following_ids(self, user_id: str) -> List[str]:
        return list(self.following.get(user_id, []))


class LoggingHapticSink:
    def __init__(self, label: str = ""):
        self.label = label

    def pulse(self, intensity: str) -> None:
        logger.debug(f"pulse {intensity} {self.label}".rstrip())


class RecordingHapticSink:
    """Guarda cada pulso; util para scripts de diagnóstico y pruebas."""

    def __init__(self, clock=None):
        self.clock = clock
        self.pulses: List[tuple] = []

    def pulse(self, intensity: str) -> None:
        at = self.clock.monotonic() if self.clock is not None else None
        self.pulses.append((at, intensity))


class NullBackgroundTaskHost:
    """Host sin límite de suspensión: entrega tokens y registra en debug."""

    def __init__(self):
        self._ids = itertools.count(1)
        self.active: Dict[int, Callable[[], Any]] = {}

    def begin_background_task(self, name: str, on_expire: Callable[[], Any]) -> int:
        token = next(self._ids)
        self.active[token] = on_expire
        logger.debug(f"Background task iniciada: {name} ({token})")
        return token

    def end_background_task(self, token: Any) -> None:
        self.active.pop(token, None)

    def expire_all(self) -> None:
        """Simula la suspensión forzada del sistema operativo."""
        for token, on_expire in list(self.active.items()):
            on_expire()
            self.active.pop(token, None)


class OutboxCompanionTransport:
    """Transporte que acumula los mensajes salientes hacia el companion."""

    def __init__(self, reachable: bool = False):
        self.reachable = reachable
        self.transfers: List[Dict[str, Any]] = []
        self.messages: List[Dict[str, Any]] = []

    def transfer_user_info(self, message: Dict[str, Any]) -> None:
        self.transfers.append(message)

    def send_message(self, message: Dict[str, Any]) -> None:
        self.messages.append(message)

    def is_reachable(self) -> bool:
        return self.reachable
