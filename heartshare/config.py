"""
Configuración centralizada del sistema.
Todas las constantes y configuraciones del proyecto están definidas aquí.
"""
import os


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


# ============================================================================
# Logging
# ============================================================================
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

# ============================================================================
# Redis / LiveStore Configuration
# ============================================================================
REDIS_URL = os.getenv("REDIS_URL", "redis://redis:6379/0")
LIVE_KEY_PREFIX = os.getenv("LIVE_KEY_PREFIX", "live_heartbeats")
TRIGGER_KEY_PREFIX = os.getenv("TRIGGER_KEY_PREFIX", "notification_triggers")
RANKING_KEY = os.getenv("RANKING_KEY", "ranking:maxConnections")

# ============================================================================
# Local State Configuration
# ============================================================================
# lastNotificationSentAt y ajustes de vibracion sobreviven reinicios
STATE_FILE = os.getenv("HEARTSHARE_STATE_FILE", "data/device_state.json")

# ============================================================================
# Heart Rate Validation
# ============================================================================
# rango fijo de frecuencia humana valida (0 < bpm <= 220), no configurable
MIN_BPM = 1
MAX_BPM = 220
RESET_STATUSES = ("disconnected", "stopped")
# timestamps en ms: 0 .. fin del año 9999 (lo que datetime puede representar)
MAX_TIMESTAMP_MS = 253_402_300_799_000

# ============================================================================
# Timing Configuration
# ============================================================================
HEARTBEAT_VALIDITY_SECONDS = float(os.getenv("HEARTBEAT_VALIDITY_SECONDS", "300"))  # 5 minutos
STALENESS_CHECK_ENABLED = _env_bool("STALENESS_CHECK_ENABLED", "true")
HEART_RATE_TIMEOUT_SECONDS = float(os.getenv("HEART_RATE_TIMEOUT_SECONDS", "10"))
TIMEOUT_TICK_SECONDS = float(os.getenv("TIMEOUT_TICK_SECONDS", "1"))
NOTIFICATION_COOLDOWN_SECONDS = float(os.getenv("NOTIFICATION_COOLDOWN_SECONDS", "3600"))  # 1 hora
DRAIN_INTERVAL_SECONDS = float(os.getenv("DRAIN_INTERVAL_SECONDS", "2"))
USER_INFO_DELAY_SECONDS = 1.0
USER_INFO_REACTIVATION_DELAY_SECONDS = 0.5

# ============================================================================
# Pulse / Haptics Configuration
# ============================================================================
HRV_JITTER = float(os.getenv("HRV_JITTER", "0.03"))  # +-3%
MIN_EFFECT_INTERVAL_SECONDS = float(os.getenv("MIN_EFFECT_INTERVAL_SECONDS", "0.3"))
SECONDARY_PULSE_DELAY_SECONDS = float(os.getenv("SECONDARY_PULSE_DELAY_SECONDS", "0.12"))
MAX_VIBRATION_BPM = int(os.getenv("MAX_VIBRATION_BPM", "300"))

# ============================================================================
# Ingest Behaviour
# ============================================================================
# escribir un borrado en LiveStore ante un reset explicito (los followers limpian al instante)
PUBLISH_RESET = _env_bool("PUBLISH_RESET", "true")

# ============================================================================
# Device Identity (reemplaza al proveedor de auth en el bridge)
# ============================================================================
DEVICE_USER_ID = os.getenv("DEVICE_USER_ID", "")
DEVICE_USER_NAME = os.getenv("DEVICE_USER_NAME", "Unknown User")

# ============================================================================
# Test/Development Configuration
# ============================================================================
BASE_URL = os.getenv("BASE_URL", "http://localhost:8000")
