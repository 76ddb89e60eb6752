"""Logger setup shared by the sync services."""
from __future__ import annotations

import logging
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional

from core.settings import SYNC_LOG_PATH

SYNC_LOGGER_NAME = "taskify.sync"


def ensure_sync_logger(path: Optional[Path] = None) -> logging.Logger:
    logger = logging.getLogger(SYNC_LOGGER_NAME)
    if not any(isinstance(h, RotatingFileHandler) for h in logger.handlers):
        target = Path(path or SYNC_LOG_PATH)
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            handler = RotatingFileHandler(target, maxBytes=1_000_000, backupCount=3, encoding="utf-8")
        except OSError as exc:
            logger.warning("Sync log file unavailable (%s): %s", target, exc)
        else:
            formatter = logging.Formatter("%(asctime)s [%(levelname)s] %(name)s: %(message)s")
            handler.setFormatter(formatter)
            logger.addHandler(handler)
    logger.setLevel(logging.INFO)
    return logger


def get_logger(name: str) -> logging.Logger:
    """Child of the sync logger, e.g. ``get_logger("reconciler")``."""
    return logging.getLogger(f"{SYNC_LOGGER_NAME}.{name}")


__all__ = ["SYNC_LOGGER_NAME", "ensure_sync_logger", "get_logger"]
