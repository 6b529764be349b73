# heartshare/feed.py
"""
HeartbeatFeed: suscripciones del lado viewer sobre el LiveStore.

Cada emisión del store se decodifica a Heartbeat y pasa por la ventana de
validez (staleness): una lectura más vieja que la ventana se emite como None.
Payloads malformados también se emiten como None, nunca rompen al subscriber.
"""
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

from pydantic import ValidationError

from heartshare.config import HEARTBEAT_VALIDITY_SECONDS, STALENESS_CHECK_ENABLED
from heartshare.live_store import LiveStore, ObserverHandle
from heartshare.logger import get_logger
from heartshare.models import Heartbeat, LiveHeartbeatRecord
from heartshare.scheduler import Clock, SystemClock

logger = get_logger(__name__)

SORT_RECENT = "recent"
SORT_BPM = "bpm"
SORT_OPTIONS = (SORT_RECENT, SORT_BPM)

HeartbeatCallback = Callable[[Optional[Heartbeat]], Any]


def decode_record(user_id: str, raw: Optional[Any]) -> Optional[Heartbeat]:
    """Convierte el valor crudo del store en Heartbeat; None si falta o está malformado."""
    if raw is None:
        return None
    if not isinstance(raw, dict):
        logger.warning(f"Registro malformado en LiveStore - user_id: {user_id}")
        return None
    try:
        record = LiveHeartbeatRecord.model_validate(raw)
    except ValidationError as e:
        logger.warning(f"Registro malformado en LiveStore - user_id: {user_id}, error: {e.error_count()} campos")
        return None
    try:
        return Heartbeat.from_record(user_id, record)
    except (ValueError, OverflowError, OSError) as e:
        logger.warning(f"Timestamp fuera de rango en LiveStore - user_id: {user_id}, error: {e}")
        return None


class FeedSubscription:
    """Handle de una suscripción de feed. `unsubscribe()` es idempotente."""

    def __init__(self, user_id: str):
        self.user_id = user_id
        self.latest: Optional[Heartbeat] = None
        self._handle: Optional[ObserverHandle] = None

    @property
    def active(self) -> bool:
        return self._handle is not None and self._handle.active

    def unsubscribe(self) -> None:
        if self._handle is not None:
            self._handle.cancel()


class HeartbeatFeed:
    def __init__(
        self,
        store: LiveStore,
        clock: Optional[Clock] = None,
        validity_window_seconds: float = HEARTBEAT_VALIDITY_SECONDS,
        staleness_enabled: bool = STALENESS_CHECK_ENABLED,
    ):
        self.store = store
        self.clock = clock or SystemClock()
        self.validity_window_seconds = validity_window_seconds
        self.staleness_enabled = staleness_enabled

    def is_fresh(self, heartbeat: Heartbeat, window_seconds: Optional[float] = None) -> bool:
        if not self.staleness_enabled:
            return True
        window = self.validity_window_seconds if window_seconds is None else window_seconds
        now_ms = self.clock.time() * 1000
        return now_ms - heartbeat.timestamp_ms <= window * 1000

    def evaluate(self, user_id: str, raw: Optional[Any], window_seconds: Optional[float] = None) -> Optional[Heartbeat]:
        heartbeat = decode_record(user_id, raw)
        if heartbeat is None:
            return None
        if not self.is_fresh(heartbeat, window_seconds):
            logger.debug(f"Lectura vencida descartada - user_id: {user_id}, ts: {heartbeat.timestamp.isoformat()}")
            return None
        return heartbeat

    # ------------------------------------------------------------------
    # Suscripciones
    # ------------------------------------------------------------------
    def subscribe(
        self,
        user_id: str,
        callback: HeartbeatCallback,
        validity_window_seconds: Optional[float] = None,
    ) -> FeedSubscription:
        subscription, on_value = self._prepare(user_id, callback, validity_window_seconds)
        subscription._handle = self.store.observe(user_id, on_value)
        return subscription

    def subscribe_many(
        self,
        user_ids: Iterable[str],
        callback: Callable[[Dict[str, Heartbeat]], Any],
        validity_window_seconds: Optional[float] = None,
    ) -> "FeedSet":
        """Agrega varios feeds en un dict {user_id: Heartbeat}; las lecturas ausentes se quitan."""
        feed_set = FeedSet(callback)
        subscriptions: Dict[str, FeedSubscription] = {}
        observers = {}
        for user_id in dict.fromkeys(user_ids):
            subscription, on_value = self._prepare(user_id, feed_set._updater(user_id), validity_window_seconds)
            subscriptions[user_id] = subscription
            observers[user_id] = on_value
            feed_set._add(subscription)
        # un solo lote contra el store: snapshot inicial con MGET, canales en una suscripción
        for handle in self.store.observe_many(observers):
            subscriptions[handle.user_id]._handle = handle
        return feed_set

    def _prepare(
        self, user_id: str, callback: HeartbeatCallback, validity_window_seconds: Optional[float]
    ) -> Tuple[FeedSubscription, Callable[[Optional[Any]], None]]:
        subscription = FeedSubscription(user_id)

        def on_value(raw: Optional[Any]) -> None:
            heartbeat = self.evaluate(user_id, raw, validity_window_seconds)
            subscription.latest = heartbeat
            callback(heartbeat)

        return subscription, on_value

    # ------------------------------------------------------------------
    # Lecturas puntuales
    # ------------------------------------------------------------------
    def get_once(self, user_id: str, validity_window_seconds: Optional[float] = None) -> Optional[Heartbeat]:
        return self.evaluate(user_id, self.store.read_once(user_id), validity_window_seconds)

    def get_many(
        self, user_ids: Iterable[str], validity_window_seconds: Optional[float] = None
    ) -> Dict[str, Optional[Heartbeat]]:
        raw_values = self.store.read_many(list(dict.fromkeys(user_ids)))
        return {
            user_id: self.evaluate(user_id, raw, validity_window_seconds)
            for user_id, raw in raw_values.items()
        }

    def active_user_ids(self, validity_window_seconds: Optional[float] = None) -> List[str]:
        active = []
        for user_id, raw in self.store.read_all().items():
            if self.evaluate(user_id, raw, validity_window_seconds) is not None:
                active.append(user_id)
        return sorted(active)

    def following_heartbeats(
        self,
        viewer_id: str,
        follow_graph,
        sort: str = SORT_RECENT,
        validity_window_seconds: Optional[float] = None,
    ) -> List[Tuple[str, Optional[Heartbeat]]]:
        """Snapshot de la lista de seguidos con un solo round trip al store."""
        if sort not in SORT_OPTIONS:
            raise ValueError(f"sort inválido: {sort}")
        following = follow_graph.get_following_ids(viewer_id)
        heartbeats = self.get_many(following, validity_window_seconds)
        return sort_heartbeats(list(heartbeats.items()), sort)


def sort_heartbeats(
    items: List[Tuple[str, Optional[Heartbeat]]], sort: str
) -> List[Tuple[str, Optional[Heartbeat]]]:
    """`recent`: timestamp más nuevo primero; `bpm`: bpm más alto primero. Sin lectura al final."""
    if sort == SORT_BPM:
        key = lambda item: (item[1] is None, -(item[1].bpm if item[1] else 0), item[0])
    else:
        key = lambda item: (item[1] is None, -(item[1].timestamp_ms if item[1] else 0), item[0])
    return sorted(items, key=key)


class FeedSet:
    def __init__(self, callback: Callable[[Dict[str, Heartbeat]], Any]):
        self._callback = callback
        self._subscriptions: List[FeedSubscription] = []
        self.heartbeats: Dict[str, Heartbeat] = {}

    def _add(self, subscription: FeedSubscription) -> None:
        self._subscriptions.append(subscription)

    def _updater(self, user_id: str) -> HeartbeatCallback:
        def update(heartbeat: Optional[Heartbeat]) -> None:
            if heartbeat is None:
                self.heartbeats.pop(user_id, None)
            else:
                self.heartbeats[user_id] = heartbeat
            self._callback(dict(self.heartbeats))

        return update

    @property
    def user_ids(self) -> List[str]:
        return [s.user_id for s in self._subscriptions]

    def unsubscribe(self) -> None:
        for subscription in self._subscriptions:
            subscription.unsubscribe()
