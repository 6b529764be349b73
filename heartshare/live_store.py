# heartshare/live_store.py
"""
LiveStore: store compartido en tiempo real, una clave por usuario con el
último heartbeat (last-write-wins, un solo escritor por clave).

- write/remove son fire-and-forget con callback de finalización
- observe soporta muchos observers por clave y entrega cada escritura a todos
  (fan-out), incluidas las escrituras propias
- read_many resuelve un lote de claves en un solo round trip

Dos backends con el mismo contrato: RedisLiveStore (producción, SET + PUBLISH
en un pipeline, MGET para lotes) y MemoryLiveStore (un solo proceso / pruebas).
"""
import json
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Any, Callable, Dict, Iterable, List, Optional

from redis import Redis
from redis.exceptions import RedisError

from heartshare.config import LIVE_KEY_PREFIX, RANKING_KEY, TRIGGER_KEY_PREFIX
from heartshare.events import ObservableValue
from heartshare.logger import get_logger
from heartshare.models import LiveHeartbeatRecord, NotificationTriggerRecord

logger = get_logger(__name__)

WriteCallback = Callable[[Optional[BaseException]], None]
Post = Callable[..., Any]

STATUS_CONNECTED = "connected"
STATUS_DISCONNECTED = "disconnected"


class ObserverHandle:
    """Handle de un observer sobre una clave. `cancel()` es idempotente."""

    def __init__(self, store: "LiveStore", user_id: str, callback: Callable[[Optional[Any]], Any]):
        self.store = store
        self.user_id = user_id
        self._callback = callback
        self._active = True
        self.delivered = False

    @property
    def active(self) -> bool:
        return self._active

    def cancel(self) -> None:
        if not self._active:
            return
        self._active = False
        self.store._detach(self)

    def _deliver(self, value: Optional[Any]) -> None:
        if not self._active:
            return
        self.delivered = True
        try:
            self._callback(value)
        except Exception:
            logger.exception(f"Error en observer de LiveStore - user_id: {self.user_id}")

    def _deliver_initial(self, value: Optional[Any]) -> None:
        # el snapshot inicial no pisa una escritura que ya llegó por el canal
        if not self.delivered:
            self._deliver(value)


class LiveStore:
    """Registro de observers y fan-out comunes a todos los backends."""

    def __init__(self, post: Optional[Post] = None):
        # post: encola callbacks en el contexto serializado (ej. scheduler.call_soon)
        self._post = post
        self._observers: Dict[str, List[ObserverHandle]] = {}
        self._observers_lock = threading.Lock()
        self.connection_status = ObservableValue("connection_status", STATUS_DISCONNECTED)

    # ------------------------------------------------------------------
    # Contrato de backend
    # ------------------------------------------------------------------
    def write(self, user_id: str, record: LiveHeartbeatRecord, on_complete: Optional[WriteCallback] = None) -> None:
        raise NotImplementedError

    def remove(self, user_id: str, on_complete: Optional[WriteCallback] = None) -> None:
        raise NotImplementedError

    def read_once(self, user_id: str) -> Optional[Any]:
        raise NotImplementedError

    def read_many(self, user_ids: Iterable[str]) -> Dict[str, Optional[Any]]:
        raise NotImplementedError

    def read_all(self) -> Dict[str, Any]:
        raise NotImplementedError

    def set_notification_trigger(
        self, user_id: str, record: NotificationTriggerRecord, on_complete: Optional[WriteCallback] = None
    ) -> None:
        raise NotImplementedError

    def viewer_count(self, user_id: str) -> int:
        raise NotImplementedError

    def ranking(self, limit: int) -> List[str]:
        raise NotImplementedError

    def ping(self) -> bool:
        raise NotImplementedError

    def close(self) -> None:
        pass

    def _on_first_observer(self, user_id: str) -> None:
        pass

    def _on_first_observers(self, user_ids: List[str]) -> None:
        for user_id in user_ids:
            self._on_first_observer(user_id)

    def _on_last_observer(self, user_id: str) -> None:
        pass

    def _initial_snapshots(self, handles: List[ObserverHandle]) -> None:
        values = self.read_many(list(dict.fromkeys(handle.user_id for handle in handles)))
        for handle in handles:
            handle._deliver_initial(values.get(handle.user_id))

    # ------------------------------------------------------------------
    # Observers
    # ------------------------------------------------------------------
    def observe(self, user_id: str, callback: Callable[[Optional[Any]], Any]) -> ObserverHandle:
        """
        Registra un observer para `user_id`. Recibe el valor actual y luego
        cada escritura (dict decodificado) o None cuando la clave no existe.
        """
        return self.observe_many({user_id: callback})[0]

    def observe_many(self, callbacks: Dict[str, Callable[[Optional[Any]], Any]]) -> List[ObserverHandle]:
        """
        Registra un lote de observers ({user_id: callback}) con un costo fijo de
        round trips: un snapshot inicial para todo el lote y una sola
        suscripción a los canales nuevos. Devuelve los handles en el mismo orden.
        """
        handles = []
        first_ids = []
        with self._observers_lock:
            for user_id, callback in callbacks.items():
                handle = ObserverHandle(self, user_id, callback)
                registered = self._observers.setdefault(user_id, [])
                if not registered:
                    first_ids.append(user_id)
                registered.append(handle)
                handles.append(handle)
        if first_ids:
            self._on_first_observers(first_ids)
        if handles:
            self._initial_snapshots(handles)
        return handles

    def observer_count(self, user_id: str) -> int:
        with self._observers_lock:
            return len(self._observers.get(user_id, ()))

    def _detach(self, handle: ObserverHandle) -> None:
        with self._observers_lock:
            handles = self._observers.get(handle.user_id)
            if not handles or handle not in handles:
                return
            handles.remove(handle)
            last = not handles
            if last:
                del self._observers[handle.user_id]
        if last:
            self._on_last_observer(handle.user_id)

    def _dispatch(self, user_id: str, value: Optional[Any]) -> None:
        with self._observers_lock:
            handles = list(self._observers.get(user_id, ()))
        for handle in handles:
            handle._deliver(value)

    def _publish(self, user_id: str, value: Optional[Any]) -> None:
        self._run(self._dispatch, user_id, value)

    def _run(self, callback: Callable[..., Any], *args: Any) -> None:
        if self._post is not None:
            self._post(callback, *args)
        else:
            callback(*args)


class MemoryLiveStore(LiveStore):
    """LiveStore en memoria del proceso, con el mismo contrato que Redis."""

    def __init__(self, post: Optional[Post] = None):
        super().__init__(post)
        self._data: Dict[str, Dict[str, Any]] = {}
        self.triggers: Dict[str, Dict[str, Any]] = {}
        self._connections: Dict[str, int] = {}
        self._max_connections: Dict[str, int] = {}
        self.connection_status.set(STATUS_CONNECTED)

    def write(self, user_id: str, record: LiveHeartbeatRecord, on_complete: Optional[WriteCallback] = None) -> None:
        value = record.to_wire()
        self._data[user_id] = value
        self._publish(user_id, dict(value))
        if on_complete is not None:
            self._run(on_complete, None)

    def remove(self, user_id: str, on_complete: Optional[WriteCallback] = None) -> None:
        self._data.pop(user_id, None)
        self._publish(user_id, None)
        if on_complete is not None:
            self._run(on_complete, None)

    def read_once(self, user_id: str) -> Optional[Any]:
        value = self._data.get(user_id)
        return dict(value) if value is not None else None

    def read_many(self, user_ids: Iterable[str]) -> Dict[str, Optional[Any]]:
        return {user_id: self.read_once(user_id) for user_id in user_ids}

    def read_all(self) -> Dict[str, Any]:
        return {user_id: dict(value) for user_id, value in self._data.items()}

    def set_notification_trigger(
        self, user_id: str, record: NotificationTriggerRecord, on_complete: Optional[WriteCallback] = None
    ) -> None:
        self.triggers[user_id] = record.to_wire()
        if on_complete is not None:
            self._run(on_complete, None)

    def viewer_count(self, user_id: str) -> int:
        return self._connections.get(user_id, 0)

    def ranking(self, limit: int) -> List[str]:
        ordered = sorted(self._max_connections.items(), key=lambda item: (-item[1], item[0]))
        return [user_id for user_id, _ in ordered[:limit]]

    def ping(self) -> bool:
        return True

    def _on_first_observer(self, user_id: str) -> None:
        count = self._connections.get(user_id, 0) + 1
        self._connections[user_id] = count
        self._max_connections[user_id] = max(self._max_connections.get(user_id, 0), count)

    def _on_last_observer(self, user_id: str) -> None:
        self._connections[user_id] = max(0, self._connections.get(user_id, 0) - 1)


def decode_value(raw: Optional[str]) -> Optional[Any]:
    """JSON -> dict; null/ausente -> None; basura se devuelve tal cual (el feed la descarta)."""
    if raw is None:
        return None
    try:
        return json.loads(raw)
    except (TypeError, ValueError):
        logger.warning(f"Valor no-JSON en LiveStore: {raw!r}")
        return raw


class RedisLiveStore(LiveStore):
    """
    LiveStore sobre Redis.

    - clave `{prefix}:{user_id}` con el JSON `{"bpm", "timestamp"}`
    - canal `{prefix}:changes:{user_id}` con cada escritura/borrado
    - `{prefix}_connections:{user_id}` cuenta procesos observando la clave;
      el máximo histórico se guarda en el sorted set de ranking

    Las escrituras corren en un único thread de IO (orden de llegada
    preservado); los callbacks vuelven al contexto serializado con `post`.
    """

    def __init__(
        self,
        redis: Redis,
        post: Optional[Post] = None,
        key_prefix: str = LIVE_KEY_PREFIX,
        trigger_prefix: str = TRIGGER_KEY_PREFIX,
        ranking_key: str = RANKING_KEY,
    ):
        super().__init__(post)
        self.redis = redis
        self.key_prefix = key_prefix
        self.trigger_prefix = trigger_prefix
        self.ranking_key = ranking_key
        self._io = ThreadPoolExecutor(max_workers=1, thread_name_prefix="live-store-io")
        self._pubsub = redis.pubsub(ignore_subscribe_messages=True)
        self._pubsub_lock = threading.Lock()
        self._pubsub_thread = None

    # ------------------------------------------------------------------
    # Claves
    # ------------------------------------------------------------------
    def key(self, user_id: str) -> str:
        return f"{self.key_prefix}:{user_id}"

    def channel(self, user_id: str) -> str:
        return f"{self.key_prefix}:changes:{user_id}"

    def connections_key(self, user_id: str) -> str:
        return f"{self.key_prefix}_connections:{user_id}"

    def trigger_key(self, user_id: str) -> str:
        return f"{self.trigger_prefix}:{user_id}"

    # ------------------------------------------------------------------
    # Escrituras (fire-and-forget)
    # ------------------------------------------------------------------
    def write(self, user_id: str, record: LiveHeartbeatRecord, on_complete: Optional[WriteCallback] = None) -> None:
        payload = json.dumps(record.to_wire())
        self._submit(self._set_and_publish, user_id, payload, on_complete=on_complete)

    def remove(self, user_id: str, on_complete: Optional[WriteCallback] = None) -> None:
        self._submit(self._delete_and_publish, user_id, on_complete=on_complete)

    def set_notification_trigger(
        self, user_id: str, record: NotificationTriggerRecord, on_complete: Optional[WriteCallback] = None
    ) -> None:
        payload = json.dumps(record.to_wire())
        self._submit(self.redis.set, self.trigger_key(user_id), payload, on_complete=on_complete)

    def _set_and_publish(self, user_id: str, payload: str) -> None:
        pipe = self.redis.pipeline(transaction=True)
        pipe.set(self.key(user_id), payload)
        pipe.publish(self.channel(user_id), payload)
        pipe.execute()
        logger.debug(f"LiveStore actualizado - user_id: {user_id}")

    def _delete_and_publish(self, user_id: str) -> None:
        pipe = self.redis.pipeline(transaction=True)
        pipe.delete(self.key(user_id))
        pipe.publish(self.channel(user_id), "null")
        pipe.execute()
        logger.debug(f"LiveStore borrado - user_id: {user_id}")

    def _submit(self, fn: Callable[..., Any], *args: Any, on_complete: Optional[WriteCallback] = None) -> Future:
        future = self._io.submit(fn, *args)
        future.add_done_callback(lambda f: self._complete(f, on_complete))
        return future

    def _complete(self, future: Future, on_complete: Optional[WriteCallback]) -> None:
        error = future.exception()
        if error is not None:
            logger.error(f"Error de escritura en Redis: {error}")
            self.connection_status.set(f"error: {error}")
        else:
            self.connection_status.set(STATUS_CONNECTED)
        if on_complete is not None:
            self._run(on_complete, error)

    def flush(self, timeout: Optional[float] = None) -> None:
        """Espera a que terminen las escrituras encoladas hasta ahora."""
        self._io.submit(lambda: None).result(timeout)

    # ------------------------------------------------------------------
    # Lecturas
    # ------------------------------------------------------------------
    def read_once(self, user_id: str) -> Optional[Any]:
        return decode_value(self.redis.get(self.key(user_id)))

    def read_many(self, user_ids: Iterable[str]) -> Dict[str, Optional[Any]]:
        user_ids = list(user_ids)
        if not user_ids:
            return {}
        # un solo MGET para toda la lista de seguidos
        raw_values = self.redis.mget([self.key(user_id) for user_id in user_ids])
        return {user_id: decode_value(raw) for user_id, raw in zip(user_ids, raw_values)}

    def read_all(self) -> Dict[str, Any]:
        prefix = f"{self.key_prefix}:"
        keys = list(self.redis.scan_iter(match=f"{prefix}*"))
        if not keys:
            return {}
        values = self.redis.mget(keys)
        result = {}
        for key, raw in zip(keys, values):
            if raw is None:
                continue
            result[key[len(prefix):]] = decode_value(raw)
        return result

    def viewer_count(self, user_id: str) -> int:
        raw = self.redis.get(self.connections_key(user_id))
        return int(raw) if raw is not None else 0

    def ranking(self, limit: int) -> List[str]:
        if limit <= 0:
            return []
        return list(self.redis.zrevrange(self.ranking_key, 0, limit - 1))

    def ping(self) -> bool:
        try:
            self.redis.ping()
        except RedisError as e:
            logger.error(f"Health check falló - Redis: {e}")
            self.connection_status.set(f"error: {e}")
            return False
        self.connection_status.set(STATUS_CONNECTED)
        return True

    # ------------------------------------------------------------------
    # Observers (pub/sub)
    # ------------------------------------------------------------------
    def _initial_snapshots(self, handles: List[ObserverHandle]) -> None:
        def fetch():
            # un MGET para todo el lote
            values = self.read_many(list(dict.fromkeys(handle.user_id for handle in handles)))
            for handle in handles:
                self._run(handle._deliver_initial, values.get(handle.user_id))

        future = self._io.submit(fetch)
        future.add_done_callback(self._log_io_error)

    def _on_first_observers(self, user_ids: List[str]) -> None:
        with self._pubsub_lock:
            self._pubsub.subscribe(**{self.channel(user_id): self._on_message for user_id in user_ids})
            if self._pubsub_thread is None:
                self._pubsub_thread = self._pubsub.run_in_thread(sleep_time=0.1, daemon=True)
        self._io.submit(self._acquire_connections, list(user_ids)).add_done_callback(self._log_io_error)

    def _on_last_observer(self, user_id: str) -> None:
        with self._pubsub_lock:
            self._pubsub.unsubscribe(self.channel(user_id))
        self._io.submit(self._release_connection, user_id).add_done_callback(self._log_io_error)

    def _acquire_connections(self, user_ids: List[str]) -> None:
        pipe = self.redis.pipeline(transaction=False)
        for user_id in user_ids:
            pipe.incr(self.connections_key(user_id))
        counts = pipe.execute()

        pipe = self.redis.pipeline(transaction=False)
        for user_id, count in zip(user_ids, counts):
            pipe.zadd(self.ranking_key, {user_id: count}, gt=True)
        pipe.execute()
        logger.debug(f"Conexiones registradas - user_ids: {len(user_ids)}")

    def _release_connection(self, user_id: str) -> None:
        count = self.redis.decr(self.connections_key(user_id))
        if count < 0:
            self.redis.set(self.connections_key(user_id), 0)

    def _on_message(self, message: Dict[str, Any]) -> None:
        channel = message.get("channel")
        if isinstance(channel, bytes):
            channel = channel.decode("utf-8")
        prefix = f"{self.key_prefix}:changes:"
        if not isinstance(channel, str) or not channel.startswith(prefix):
            return
        data = message.get("data")
        if isinstance(data, bytes):
            data = data.decode("utf-8", errors="replace")
        self._publish(channel[len(prefix):], decode_value(data))

    @staticmethod
    def _log_io_error(future: Future) -> None:
        error = future.exception()
        if error is not None:
            logger.error(f"Error de IO en LiveStore: {error}")

    def close(self) -> None:
        with self._pubsub_lock:
            if self._pubsub_thread is not None:
                self._pubsub_thread.stop()
                self._pubsub_thread = None
            try:
                self._pubsub.close()
            except RedisError as e:
                logger.warning(f"Error al cerrar pub/sub: {e}")
        self._io.shutdown(wait=True)
