"""
Utilidades para conversión de fechas y timestamps.
"""
from datetime import datetime, timezone


def epoch_ms_to_dt(ms: float) -> datetime:
    """
    Convierte milisegundos desde epoch a datetime UTC.
    
    Args:
        ms: Milisegundos desde epoch (int o float)
        
    Returns:
        datetime object en UTC
    """
    return datetime.fromtimestamp(ms / 1000.0, tz=timezone.utc)


def seconds_to_epoch_ms(seconds: float) -> int:
    """Convierte segundos epoch (time.time()) a milisegundos enteros."""
    return int(round(seconds * 1000))
