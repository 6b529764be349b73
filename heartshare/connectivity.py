# heartshare/connectivity.py
"""
Adapter del companion (reloj) hacia el pipeline de ingesta.

- mensajes en tiempo real: se procesan al instante
- transferencias encoladas (transferUserInfo): pasan por el buffer de background
- control `heartRateStop` y pérdida de sesión/alcance: reset inmediato
- al activarse la sesión se envía el usuario actual al companion
También implementa el puerto de ciclo de vida de la app (foreground/background).
"""
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import ValidationError

from heartshare.buffer import BackgroundDeliveryQueue
from heartshare.config import USER_INFO_DELAY_SECONDS, USER_INFO_REACTIVATION_DELAY_SECONDS
from heartshare.events import ObservableValue, Subscription
from heartshare.logger import get_logger
from heartshare.models import CompanionMessage, HeartRateData
from heartshare.pipeline import HeartbeatIngestPipeline, IngestResult
from heartshare.ports import AuthProvider, BackgroundTaskHost, CompanionTransport
from heartshare.scheduler import ScheduledHandle, Scheduler

logger = get_logger(__name__)

TYPE_HEART_RATE = "heartRate"
TYPE_HEART_RATE_START = "heartRateStart"
TYPE_HEART_RATE_STOP = "heartRateStop"
TYPE_USER_INFO = "userInfo"


class ActivationState(str, Enum):
    NOT_ACTIVATED = "notActivated"
    INACTIVE = "inactive"
    ACTIVATED = "activated"


class ConnectivityBridge:
    def __init__(
        self,
        pipeline: HeartbeatIngestPipeline,
        scheduler: Scheduler,
        transport: CompanionTransport,
        auth: AuthProvider,
        host: Optional[BackgroundTaskHost] = None,
    ):
        self.pipeline = pipeline
        self.scheduler = scheduler
        self.transport = transport
        self.auth = auth
        self.queue = BackgroundDeliveryQueue(scheduler, self.process, host=host)
        self.is_reachable: ObservableValue[bool] = ObservableValue("is_reachable", False)
        self.activation_state = ActivationState.NOT_ACTIVATED
        self._user_info_timer: Optional[ScheduledHandle] = None
        self._user_subscription: Optional[Subscription] = None

    def start(self) -> None:
        self.pipeline.monitor.start()
        self.queue.start()
        self._schedule_user_info(USER_INFO_DELAY_SECONDS)
        if self._user_subscription is None:
            self._user_subscription = self.auth.user.subscribe(self._on_user_changed)
        logger.info("Connectivity bridge iniciado")

    def stop(self) -> None:
        self.queue.stop()
        self.pipeline.monitor.stop()
        if self._user_info_timer is not None:
            self._user_info_timer.cancel()
            self._user_info_timer = None
        if self._user_subscription is not None:
            self._user_subscription.cancel()
            self._user_subscription = None
        logger.info("Connectivity bridge detenido")

    # ------------------------------------------------------------------
    # Entradas desde el companion
    # ------------------------------------------------------------------
    def on_message(self, message: Dict[str, Any]) -> str:
        """Mensaje en tiempo real: control o heartRate, procesado al instante."""
        msg_type = message.get("type") if isinstance(message, dict) else None
        if msg_type == TYPE_HEART_RATE_STOP:
            logger.info("Notificación de stop recibida del companion")
            self.pipeline.reset("stop")
            return IngestResult.RESET.value
        if msg_type == TYPE_HEART_RATE_START:
            logger.info("Notificación de start recibida del companion")
            return "started"
        return self.process(message)

    def on_transfer(self, message: Dict[str, Any], received_at: Optional[float] = None) -> str:
        """Transferencia encolada: directa en foreground, al buffer en background."""
        delivered = self.queue.submit(message, received_at)
        return "processed" if delivered else "queued"

    def process(self, message: Dict[str, Any]) -> str:
        try:
            parsed = CompanionMessage.model_validate(message)
        except ValidationError as e:
            logger.warning(f"Mensaje del companion malformado, descartado: {e.error_count()} errores")
            return IngestResult.DROPPED.value
        if parsed.type != TYPE_HEART_RATE or parsed.data is None:
            logger.debug(f"Mensaje ignorado - type: {parsed.type}")
            return IngestResult.DROPPED.value
        try:
            payload = HeartRateData.model_validate(parsed.data)
        except ValidationError as e:
            logger.warning(f"Payload heartRate malformado, descartado: {e.error_count()} errores")
            return IngestResult.DROPPED.value
        return self.pipeline.ingest(payload).value

    # ------------------------------------------------------------------
    # Estado de la sesión
    # ------------------------------------------------------------------
    def on_activation_complete(self, state: ActivationState, error: Optional[str] = None) -> None:
        self.activation_state = state
        if error:
            logger.warning(f"Activación de sesión con error: {error}")
        self.is_reachable.set(state == ActivationState.ACTIVATED)
        if state != ActivationState.ACTIVATED:
            self.pipeline.reset("disconnected")
        else:
            self._schedule_user_info(USER_INFO_REACTIVATION_DELAY_SECONDS)

    def on_session_inactive(self) -> None:
        self.activation_state = ActivationState.INACTIVE
        self.is_reachable.set(False)
        self.pipeline.reset("disconnected")

    def on_session_deactivated(self) -> None:
        self.activation_state = ActivationState.NOT_ACTIVATED
        self.pipeline.reset("disconnected")

    def on_reachability_changed(self, reachable: bool) -> None:
        self.is_reachable.set(reachable)
        if not reachable:
            self.pipeline.reset("unreachable")

    # ------------------------------------------------------------------
    # Ciclo de vida de la app
    # ------------------------------------------------------------------
    def on_foreground(self) -> None:
        logger.info("App en foreground")
        self.queue.on_foreground()

    def on_background(self) -> None:
        logger.info("App en background")
        self.queue.on_background()

    # ------------------------------------------------------------------
    # Salida hacia el companion
    # ------------------------------------------------------------------
    def send_current_user(self) -> bool:
        user_id = self.auth.current_user_id()
        if not user_id:
            logger.debug("Sin usuario autenticado, no se envía user info")
            return False
        message = {
            "type": TYPE_USER_INFO,
            "data": {
                "userId": user_id,
                "userName": self.auth.current_user_name() or "Unknown User",
            },
        }
        self.transport.transfer_user_info(message)
        if self.transport.is_reachable():
            self.transport.send_message(message)
        logger.info(f"User info enviado al companion - user_id: {user_id}")
        return True

    def _on_user_changed(self, user_id: Optional[str]) -> None:
        if user_id:
            self.send_current_user()

    def _schedule_user_info(self, delay: float) -> None:
        if self._user_info_timer is not None:
            self._user_info_timer.cancel()
        self._user_info_timer = self.scheduler.call_later(delay, self.send_current_user)
