"""Stable installation identifier, used as the anonymous principal."""
from __future__ import annotations

import os
import uuid
from pathlib import Path
from typing import Optional

from core.logs import get_logger
from core.settings import DEVICE_ID_PATH


ANONYMOUS_PREFIX = "anon-"

logger = get_logger("device")


def _load(path: Path) -> Optional[str]:
    try:
        value = path.read_text(encoding="utf-8").strip()
    except FileNotFoundError:
        return None
    except OSError as exc:
        logger.warning("Cannot read device id from %s: %s", path, exc)
        return None
    return value or None


def _store(path: Path, value: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    staging = path.with_name(path.name + ".tmp")
    staging.write_text(value, encoding="utf-8")
    os.replace(staging, path)


def get_device_id(path: Optional[Path] = None) -> str:
    """Identifier of this installation, created on first use."""
    target = Path(path or DEVICE_ID_PATH)
    existing = _load(target)
    if existing:
        return existing

    device_id = ANONYMOUS_PREFIX + uuid.uuid4().hex
    try:
        _store(target, device_id)
    except OSError as exc:
        # Unpersisted ids change on every start, so tasks synced under it are orphaned.
        logger.warning("Device id not persisted to %s: %s", target, exc)
    return device_id


__all__ = ["ANONYMOUS_PREFIX", "get_device_id"]
