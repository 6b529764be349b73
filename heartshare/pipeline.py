# heartshare/pipeline.py
"""
Lógica de negocio del lado emisor: valida cada muestra del companion,
actualiza el bpm local, persiste solo las transiciones en el LiveStore y
dispara el trigger de notificación respetando el cooldown.
"""
from enum import Enum
from typing import Optional

from heartshare.config import PUBLISH_RESET
from heartshare.events import EventStream, ObservableValue
from heartshare.live_store import LiveStore, WriteCallback
from heartshare.logger import get_logger
from heartshare.models import HeartbeatSample, HeartRateData, LiveHeartbeatRecord, NotificationTriggerRecord
from heartshare.scheduler import Clock, SystemClock
from heartshare.throttle import NotificationThrottle, should_write
from heartshare.timeout_monitor import TimeoutMonitor
from heartshare.util import seconds_to_epoch_ms
from heartshare.validator import Rejected, validate

logger = get_logger(__name__)


class IngestResult(str, Enum):
    WRITTEN = "written"
    UNCHANGED = "unchanged"
    DROPPED = "dropped"
    RESET = "reset"


class HeartbeatIngestPipeline:
    def __init__(
        self,
        store: LiveStore,
        throttle: NotificationThrottle,
        monitor: TimeoutMonitor,
        clock: Optional[Clock] = None,
        publish_reset: bool = PUBLISH_RESET,
    ):
        self.store = store
        self.throttle = throttle
        self.monitor = monitor
        self.clock = clock or SystemClock()
        self.publish_reset = publish_reset

        # una señal por muestra aceptada: anima la UI del propio emisor
        self.heartbeat_signal: EventStream[HeartbeatSample] = EventStream("heartbeat_signal")
        self.save_count = 0
        self.last_saved_at: Optional[float] = None

        self._last_accepted_bpm: Optional[int] = None
        self._last_user_id: Optional[str] = None
        self._has_remote_record = False
        self._idle_subscription = monitor.idle.subscribe(self._on_idle)

    @property
    def current_bpm(self) -> ObservableValue:
        return self.monitor.current_bpm

    @property
    def last_accepted_bpm(self) -> Optional[int]:
        return self._last_accepted_bpm

    def ingest(self, payload: HeartRateData, received_at: Optional[float] = None) -> IngestResult:
        result = validate(payload)
        if isinstance(result, Rejected):
            if result.resets:
                self.reset(result.reason.value, user_id=payload.user_id)
                return IngestResult.RESET
            logger.debug(f"Muestra descartada - user_id: {payload.user_id}, bpm: {payload.heart_num}, motivo: {result.reason.value}")
            return IngestResult.DROPPED

        now = self.clock.time() if received_at is None else received_at
        timestamp_ms = int(payload.timestamp) if payload.timestamp is not None else seconds_to_epoch_ms(now)
        sample = HeartbeatSample(
            user_id=payload.user_id,
            bpm=result.bpm,
            source_timestamp_ms=timestamp_ms,
            received_at=now,
        )
        self._last_user_id = sample.user_id

        # el valor local se actualiza siempre; solo la escritura remota se filtra
        self.monitor.record_sample(sample.bpm)
        self.heartbeat_signal.emit(sample)

        if not should_write(sample.bpm, self._last_accepted_bpm):
            logger.debug(f"BPM sin cambios ({sample.bpm} bpm) - escritura omitida")
            return IngestResult.UNCHANGED

        self._last_accepted_bpm = sample.bpm
        self._has_remote_record = True
        record = LiveHeartbeatRecord(bpm=sample.bpm, timestamp=sample.source_timestamp_ms)
        self.store.write(sample.user_id, record, on_complete=self._write_completion(sample))

        self._maybe_notify(sample.user_id, now)
        return IngestResult.WRITTEN

    def reset(self, reason: str, user_id: Optional[str] = None) -> None:
        """Reset explícito (stop, desconexión, bpm 0): pasa a IDLE sin esperar el timeout."""
        self.monitor.reset(reason)
        target = user_id or self._last_user_id
        if self.publish_reset and self._has_remote_record and target:
            self._has_remote_record = False
            self.store.remove(target, on_complete=self._remove_completion(target))

    def close(self) -> None:
        self._idle_subscription.cancel()

    # ------------------------------------------------------------------
    # Internos
    # ------------------------------------------------------------------
    def _on_idle(self, reason: str) -> None:
        # el siguiente bpm tras un reset siempre se escribe
        self._last_accepted_bpm = None

    def _write_completion(self, sample: HeartbeatSample) -> WriteCallback:
        def done(error: Optional[BaseException]) -> None:
            if error is not None:
                logger.error(f"Error actualizando LiveStore - user_id: {sample.user_id}, bpm: {sample.bpm}, error: {error}")
                if self._last_accepted_bpm == sample.bpm:
                    # la próxima muestra reintenta la escritura
                    self._last_accepted_bpm = None
                return
            self.save_count += 1
            self.last_saved_at = self.clock.time()
            logger.info(f"LiveStore actualizado: {sample.bpm} bpm - user_id: {sample.user_id}")

        return done

    def _remove_completion(self, user_id: str) -> WriteCallback:
        def done(error: Optional[BaseException]) -> None:
            if error is not None:
                logger.warning(f"No se pudo publicar el reset - user_id: {user_id}, error: {error}")

        return done

    def _maybe_notify(self, user_id: str, now: float) -> None:
        decision = self.throttle.maybe_trigger(now)
        if not decision.fire:
            return
        self.throttle.begin()
        trigger = NotificationTriggerRecord(t=now * 1000)
        self.store.set_notification_trigger(
            user_id, trigger, on_complete=lambda error: self.throttle.complete(now, error)
        )
