# heartshare/state.py
"""
Estado local durable (key-value en un archivo JSON).
Escritura atómica usando archivo temporal + os.replace, igual que los
archivos de datos: un crash a mitad de escritura nunca deja el JSON corrupto.
"""
import json
import os
import tempfile
import threading
from typing import Any, Dict, Optional

from heartshare.logger import get_logger

logger = get_logger(__name__)


def ensure_dir(path: str) -> None:
    """crea el directorio si no existe."""
    if path:
        os.makedirs(path, exist_ok=True)


def atomic_write_json(data: Dict[str, Any], dest_path: str) -> None:
    """
    Escribe un dict a JSON de forma atómica usando archivo temporal.

    Args:
        data: contenido serializable
        dest_path: ruta destino

    Raises:
        Exception: si falla la escritura (el temporal se limpia)
    """
    dest_dir = os.path.dirname(dest_path) or "."
    ensure_dir(dest_dir)
    tmp_fd, tmp_path = tempfile.mkstemp(suffix=".json", dir=dest_dir)
    try:
        with os.fdopen(tmp_fd, "w", encoding="utf-8") as f:
            json.dump(data, f)
        os.replace(tmp_path, dest_path)
    except Exception:
        if os.path.exists(tmp_path):
            os.remove(tmp_path)
        raise


class FileStateStore:
    """Key-value durable respaldado por un archivo JSON."""

    def __init__(self, path: str):
        self.path = path
        self._lock = threading.Lock()
        self._data: Dict[str, Any] = self._load()

    def _load(self) -> Dict[str, Any]:
        if not os.path.exists(self.path):
            return {}
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, ValueError) as e:
            logger.warning(f"Estado local ilegible, se inicia vacío - path: {self.path}, error: {e}")
            return {}
        if not isinstance(data, dict):
            logger.warning(f"Estado local con formato inesperado, se ignora - path: {self.path}")
            return {}
        return data

    def get(self, key: str, default: Optional[Any] = None) -> Any:
        with self._lock:
            return self._data.get(key, default)

    def set(self, key: str, value: Any) -> None:
        with self._lock:
            self._data[key] = value
            atomic_write_json(self._data, self.path)

    def delete(self, key: str) -> None:
        with self._lock:
            if self._data.pop(key, None) is not None:
                atomic_write_json(self._data, self.path)

    def is_writable(self) -> bool:
        """Usado por /health: verifica que el directorio del estado sea escribible."""
        dest_dir = os.path.dirname(self.path) or "."
        try:
            ensure_dir(dest_dir)
            test_file = os.path.join(dest_dir, ".health_check")
            with open(test_file, "w") as f:
                f.write("test")
            os.remove(test_file)
            return True
        except OSError as e:
            logger.error(f"Health check falló - state dir {dest_dir}: {e}")
            return False
