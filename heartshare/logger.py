"""
Logging del bridge y de los scripts (un solo handler a stdout).
"""
import logging
import sys
from typing import Optional

from heartshare.config import LOG_LEVEL

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

# librerías que loguean cada request / reconexión
NOISY_LOGGERS = ("uvicorn.access", "redis", "httpx")


def setup_logging(log_level: Optional[str] = None) -> None:
    level_name = (log_level or LOG_LEVEL).upper()
    numeric_level = getattr(logging, level_name, logging.INFO)

    logging.basicConfig(
        level=numeric_level,
        format=LOG_FORMAT,
        datefmt=DATE_FORMAT,
        handlers=[logging.StreamHandler(sys.stdout)],
    )

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)
