# chatkeep/utils/logging.py

import logging
import os
from pathlib import Path

from chatkeep.config.settings import DEFAULT_LOG_DIR

LOG_DIR = Path(os.getenv("CHATKEEP_LOG_DIR", "").strip() or DEFAULT_LOG_DIR)
LOG_DIR.mkdir(parents=True, exist_ok=True)
LOG_FILE = LOG_DIR / "chatkeep.log"

LOG_FORMAT = "[%(asctime)s] [%(levelname)s] [%(name)s] %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


def _resolve_level() -> int:
    raw = os.getenv("CHATKEEP_LOG_LEVEL", "INFO").strip().upper()
    level = logging.getLevelName(raw)
    return level if isinstance(level, int) else logging.INFO


def get_logger(name: str = "chatkeep") -> logging.Logger:
    """
    Return a logger writing to chatkeep.log and the console.
    Handlers are attached once per logger name, so repeated imports are safe.
    """
    logger = logging.getLogger(name)
    if logger.handlers:
        return logger

    level = _resolve_level()
    logger.setLevel(level)

    fmt = logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT)
    for handler in (logging.FileHandler(LOG_FILE, encoding="utf-8"), logging.StreamHandler()):
        handler.setLevel(level)
        handler.setFormatter(fmt)
        logger.addHandler(handler)

    return logger
