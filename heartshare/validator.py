"""
Validación de muestras de frecuencia cardíaca antes de entrar al pipeline.
Función pura: no tiene efectos secundarios.
"""
from enum import Enum
from typing import NamedTuple, Union

from heartshare.config import MAX_BPM, MIN_BPM, RESET_STATUSES
from heartshare.models import HeartRateData


class RejectReason(str, Enum):
    OUT_OF_RANGE = "out_of_range"
    EXPLICIT_RESET = "explicit_reset"
    SOURCE_FLAGGED_INVALID = "source_flagged_invalid"


class Accepted(NamedTuple):
    bpm: int


class Rejected(NamedTuple):
    reason: RejectReason
    # True si el caller debe limpiar el valor actual (status de corte o bpm <= 0)
    resets: bool = False


ValidationResult = Union[Accepted, Rejected]


def is_valid_heart_rate(bpm: int) -> bool:
    return MIN_BPM <= bpm <= MAX_BPM


def validate(payload: HeartRateData) -> ValidationResult:
    """
    Clasifica una muestra del companion.

    - status `disconnected` / `stopped` -> Rejected(EXPLICIT_RESET, resets=True)
    - bpm <= 0 -> Rejected(OUT_OF_RANGE, resets=True): el reloj manda 0 al detenerse
    - bpm > 220 -> Rejected(OUT_OF_RANGE), descartado en silencio
    - isValidReading == False -> Rejected(SOURCE_FLAGGED_INVALID), descartado en silencio
    """
    if payload.status is not None and payload.status in RESET_STATUSES:
        return Rejected(RejectReason.EXPLICIT_RESET, resets=True)

    bpm = payload.heart_num
    if bpm <= 0:
        return Rejected(RejectReason.OUT_OF_RANGE, resets=True)
    if not is_valid_heart_rate(bpm):
        return Rejected(RejectReason.OUT_OF_RANGE)

    if payload.is_valid_reading is False:
        return Rejected(RejectReason.SOURCE_FLAGGED_INVALID)

    return Accepted(bpm)
