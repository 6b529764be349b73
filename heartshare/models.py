"""
Modelos de datos (pydantic) para los mensajes del companion, los registros
del LiveStore y el view model que consumen los followers.
"""
from datetime import datetime
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field

from heartshare.config import MAX_TIMESTAMP_MS
from heartshare.util import epoch_ms_to_dt


class HeartRateData(BaseModel):
    """Payload `data` de un mensaje `heartRate` enviado por el companion."""

    model_config = ConfigDict(populate_by_name=True)

    user_id: str = Field(..., alias="userId", examples=["user_123"])
    heart_num: int = Field(..., alias="heartNum", examples=[72])
    timestamp: Optional[float] = Field(
        None, ge=0, le=MAX_TIMESTAMP_MS, allow_inf_nan=False, examples=[1736935200000.0]
    )  # epoch ms
    status: Optional[str] = Field(None, examples=["disconnected"])
    is_valid_reading: Optional[bool] = Field(None, alias="isValidReading")


class CompanionMessage(BaseModel):
    """
    Mensaje del companion: `heartRate` con datos, o control
    (`heartRateStart` / `heartRateStop`) sin datos.
    """

    type: str = Field(..., examples=["heartRate"])
    data: Optional[Dict[str, Any]] = None


class HeartbeatSample(BaseModel):
    """Muestra aceptada por el validador, lista para entrar al pipeline."""

    user_id: str
    bpm: int
    source_timestamp_ms: int
    received_at: float  # epoch segundos (reloj local)


class LiveHeartbeatRecord(BaseModel):
    """Registro en LiveStore: uno por usuario, sobrescrito en cada escritura."""

    bpm: int
    timestamp: float = Field(..., ge=0, le=MAX_TIMESTAMP_MS, allow_inf_nan=False)  # epoch ms provisto por el emisor

    def to_wire(self) -> Dict[str, Any]:
        return {"bpm": self.bpm, "timestamp": int(self.timestamp)}


class NotificationTriggerRecord(BaseModel):
    """Payload minimo; el dispatcher externo relee el bpm actual del LiveStore."""

    t: float

    def to_wire(self) -> Dict[str, Any]:
        return {"t": self.t}


class Heartbeat(BaseModel):
    user_id: str
    bpm: int
    timestamp: datetime

    @classmethod
    def from_record(cls, user_id: str, record: LiveHeartbeatRecord) -> "Heartbeat":
        return cls(user_id=user_id, bpm=record.bpm, timestamp=epoch_ms_to_dt(record.timestamp))

    @property
    def timestamp_ms(self) -> int:
        return int(round(self.timestamp.timestamp() * 1000))


class ReachabilityUpdate(BaseModel):
    reachable: bool


class ActivationUpdate(BaseModel):
    state: str = Field(..., examples=["activated"])


class StatusResponse(BaseModel):
    status: str = Field(default="accepted")
