from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Callable, Dict, List, Optional

from fastapi import Body, FastAPI, HTTPException, Query, Request, status
from fastapi.responses import JSONResponse
from redis import Redis
from redis.exceptions import RedisError

from heartshare.config import DEVICE_USER_ID, DEVICE_USER_NAME, REDIS_URL, STATE_FILE
from heartshare.connectivity import ActivationState, ConnectivityBridge
from heartshare.feed import SORT_OPTIONS, HeartbeatFeed
from heartshare.live_store import LiveStore, RedisLiveStore
from heartshare.logger import get_logger
from heartshare.models import ActivationUpdate, Heartbeat, ReachabilityUpdate, StatusResponse
from heartshare.pipeline import HeartbeatIngestPipeline
from heartshare.ports import (
    LoggingHapticSink,
    NullBackgroundTaskHost,
    OutboxCompanionTransport,
    StaticAuthProvider,
    StaticFollowGraph,
)
from heartshare.pulse import PulseScheduler, VibrationSettings
from heartshare.scheduler import Clock, Scheduler
from heartshare.state import FileStateStore
from heartshare.throttle import NotificationThrottle
from heartshare.timeout_monitor import TimeoutMonitor

logger = get_logger(__name__)

REQUEST_TIMEOUT = 5.0


class Services:
    """Instancias del dispositivo, construidas una vez y pasadas explícitamente."""

    def __init__(
        self,
        store: LiveStore,
        scheduler: Scheduler,
        state: FileStateStore,
        auth: Optional[StaticAuthProvider] = None,
        transport: Optional[OutboxCompanionTransport] = None,
        follow_graph: Optional[StaticFollowGraph] = None,
    ):
        clock = scheduler.clock
        self.store = store
        self.scheduler = scheduler
        self.state = state
        self.auth = auth or StaticAuthProvider(DEVICE_USER_ID, DEVICE_USER_NAME)
        self.transport = transport or OutboxCompanionTransport()
        self.follow_graph = follow_graph or StaticFollowGraph()
        self.throttle = NotificationThrottle(state, clock)
        self.monitor = TimeoutMonitor(scheduler)
        self.pipeline = HeartbeatIngestPipeline(store, self.throttle, self.monitor, clock)
        self.bridge = ConnectivityBridge(
            self.pipeline, scheduler, self.transport, self.auth, host=NullBackgroundTaskHost()
        )
        self.feed = HeartbeatFeed(store, clock)
        # pulso local del propio emisor, sigue al bpm actual
        self.pulse = PulseScheduler(scheduler, LoggingHapticSink("self"), VibrationSettings(state))
        self._bpm_subscription = self.pipeline.current_bpm.subscribe(self._on_current_bpm)

    def _on_current_bpm(self, bpm: int) -> None:
        if bpm > 0:
            self.pulse.start(bpm)
        else:
            self.pulse.stop()

    def start(self) -> None:
        self.scheduler.start()
        self.call(self.bridge.start)
        self.store.ping()

    def stop(self) -> None:
        try:
            self.call(self.bridge.stop)
            self.call(self.pulse.stop)
        finally:
            self._bpm_subscription.cancel()
            self.pipeline.close()
            self.scheduler.stop()
            self.store.close()

    def call(self, fn: Callable[..., Any], *args: Any) -> Any:
        """Corre `fn` en el contexto serializado del scheduler y espera el resultado."""
        return self.scheduler.submit(fn, *args).result(timeout=REQUEST_TIMEOUT)

    def snapshot(self) -> Dict[str, Any]:
        return {
            "current_bpm": self.monitor.bpm,
            "monitor_state": self.monitor.state.value,
            "last_accepted_bpm": self.pipeline.last_accepted_bpm,
            "save_count": self.pipeline.save_count,
            "last_saved_at": self.pipeline.last_saved_at,
            "is_reachable": self.bridge.is_reachable.value,
            "activation_state": self.bridge.activation_state.value,
            "foreground": self.bridge.queue.foreground,
            "queued": len(self.bridge.queue),
            "connection_status": self.store.connection_status.value,
            "pulse": {
                "state": self.pulse.state.value,
                "bpm": self.pulse.bpm,
                "vibration_enabled": self.pulse.settings.enabled,
            },
            "last_notification_sent_at": self.throttle.last_sent_at,
        }


def connect_redis(url: str = REDIS_URL) -> Redis:
    redis = Redis.from_url(
        url,
        decode_responses=True,
        socket_connect_timeout=5,
        socket_keepalive=True, #orientado a conexion persistente
        health_check_interval=30, #revisar conexion
        retry_on_timeout=True
    )
    try:
        redis.ping()
        logger.info("Conexión a Redis establecida correctamente")
    except RedisError as e:
        logger.error(f"Error al conectar con Redis: {e}")
        raise RuntimeError("No se pudo conectar a Redis en startup") from e
    return redis


def build_redis_services(clock: Optional[Clock] = None) -> Services:
    scheduler = Scheduler(clock)
    store = RedisLiveStore(connect_redis(), post=scheduler.call_soon)
    return Services(store, scheduler, FileStateStore(STATE_FILE))


def heartbeat_to_dict(heartbeat: Optional[Heartbeat]) -> Optional[Dict[str, Any]]:
    if heartbeat is None:
        return None
    return {
        "user_id": heartbeat.user_id,
        "bpm": heartbeat.bpm,
        "timestamp": heartbeat.timestamp_ms,
    }


def create_app(services_factory: Callable[[], Services] = build_redis_services) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        logger.info("Iniciando aplicación...")
        services = services_factory()
        services.start()
        app.state.services = services
        logger.info("Aplicación iniciada correctamente")
        yield
        logger.info("Cerrando aplicación...")
        try:
            services.stop()
            logger.info("Servicios detenidos")
        except Exception as e:
            logger.warning(f"Error al detener servicios: {e}")

    app = FastAPI(title="heartshare companion bridge", lifespan=lifespan)

    def get_services(request: Request) -> Services:
        services = getattr(request.app.state, "services", None)
        if services is None:
            raise HTTPException(500, "Servicios no inicializados")
        return services

    @app.get("/health")
    def health_check(request: Request):
        """
        Health check que verifica store, scheduler y estado local.

        Status codes:
            - 200: Service is healthy
            - 503: Service is unhealthy (one or more checks failed)
        """
        services = get_services(request)
        checks = {
            "service": "healthy",
            "store": "healthy" if services.store.ping() else f"unhealthy: {services.store.connection_status.value}",
            "scheduler": "healthy" if services.scheduler.is_running else "unhealthy: thread detenido",
            "state": "healthy" if services.state.is_writable() else "unhealthy: no escribible",
        }
        overall_status = "healthy" if all(v == "healthy" for v in checks.values()) else "unhealthy"
        status_code = 200 if overall_status == "healthy" else 503
        return JSONResponse(status_code=status_code, content={"status": overall_status, "checks": checks})

    # ------------------------------------------------------------------
    # Companion
    # ------------------------------------------------------------------
    @app.post("/companion/messages", response_model=StatusResponse, status_code=status.HTTP_202_ACCEPTED)
    def companion_message(request: Request, message: Dict[str, Any] = Body(...)):
        """Mensaje en tiempo real del companion (heartRate / heartRateStart / heartRateStop)."""
        services = get_services(request)
        return StatusResponse(status=services.call(services.bridge.on_message, message))

    @app.post("/companion/transfers", response_model=StatusResponse, status_code=status.HTTP_202_ACCEPTED)
    def companion_transfer(request: Request, message: Dict[str, Any] = Body(...)):
        """Transferencia encolada: en background pasa por el buffer."""
        services = get_services(request)
        return StatusResponse(status=services.call(services.bridge.on_transfer, message))

    @app.post("/companion/reachability", response_model=StatusResponse)
    def companion_reachability(request: Request, update: ReachabilityUpdate):
        services = get_services(request)
        services.call(services.bridge.on_reachability_changed, update.reachable)
        return StatusResponse(status="reachable" if update.reachable else "unreachable")

    @app.post("/companion/activation", response_model=StatusResponse)
    def companion_activation(request: Request, update: ActivationUpdate):
        try:
            state = ActivationState(update.state)
        except ValueError:
            raise HTTPException(400, f"Estado de activación inválido: {update.state}")
        services = get_services(request)
        services.call(services.bridge.on_activation_complete, state)
        return StatusResponse(status=state.value)

    # ------------------------------------------------------------------
    # Ciclo de vida / ajustes
    # ------------------------------------------------------------------
    @app.post("/lifecycle/{transition}", response_model=StatusResponse)
    def lifecycle(request: Request, transition: str):
        services = get_services(request)
        if transition == "foreground":
            services.call(services.bridge.on_foreground)
        elif transition == "background":
            services.call(services.bridge.on_background)
        else:
            raise HTTPException(404, f"Transición desconocida: {transition}")
        return StatusResponse(status=transition)

    @app.post("/vibration/{action}", response_model=StatusResponse)
    def vibration(request: Request, action: str):
        services = get_services(request)
        actions = {"enable": services.pulse.enable, "disable": services.pulse.disable, "toggle": services.pulse.toggle}
        if action not in actions:
            raise HTTPException(404, f"Acción desconocida: {action}")
        services.call(actions[action])
        return StatusResponse(status="enabled" if services.pulse.settings.enabled else "disabled")

    @app.get("/status")
    def device_status(request: Request):
        services = get_services(request)
        return services.call(services.snapshot)

    # ------------------------------------------------------------------
    # Lecturas (viewer)
    # ------------------------------------------------------------------
    @app.get("/heartbeats/active")
    def active_users(request: Request, window: Optional[float] = Query(None, gt=0)):
        user_ids = get_services(request).feed.active_user_ids(window)
        return {"user_ids": user_ids, "count": len(user_ids)}

    @app.get("/heartbeats/{user_id}")
    def get_heartbeat(request: Request, user_id: str, window: Optional[float] = Query(None, gt=0)):
        heartbeat = get_services(request).feed.get_once(user_id, window)
        return {"user_id": user_id, "heartbeat": heartbeat_to_dict(heartbeat)}

    @app.get("/heartbeats")
    def get_heartbeats(
        request: Request,
        user_id: List[str] = Query(..., description="IDs de usuario (repetible)"),
        window: Optional[float] = Query(None, gt=0),
    ):
        heartbeats = get_services(request).feed.get_many(user_id, window)
        data = {uid: heartbeat_to_dict(hb) for uid, hb in heartbeats.items()}
        return {"data": data, "count": sum(1 for hb in data.values() if hb is not None)}

    @app.get("/following/{viewer_id}/heartbeats")
    def following_heartbeats(request: Request, viewer_id: str, sort: str = Query("recent")):
        if sort not in SORT_OPTIONS:
            raise HTTPException(400, f"sort inválido, opciones: {', '.join(SORT_OPTIONS)}")
        services = get_services(request)
        items = services.feed.following_heartbeats(viewer_id, services.follow_graph, sort)
        return {
            "viewer_id": viewer_id,
            "data": [{"user_id": uid, "heartbeat": heartbeat_to_dict(hb)} for uid, hb in items],
        }

    @app.get("/ranking")
    def ranking(request: Request, limit: int = Query(10, ge=1, le=100)):
        user_ids = get_services(request).store.ranking(limit)
        return {"user_ids": user_ids, "count": len(user_ids)}

    return app


app = create_app()
