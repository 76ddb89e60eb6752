"""Utility helpers for task priorities."""
from __future__ import annotations

from enum import Enum
from typing import Dict


class Priority(str, Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"


PRIORITY_META: Dict[Priority, Dict[str, object]] = {
    Priority.LOW: {"label": "Low", "rank": 1},
    Priority.MEDIUM: {"label": "Medium", "rank": 2},
    Priority.HIGH: {"label": "High", "rank": 3},
}

DEFAULT_PRIORITY = Priority.MEDIUM

# Older clients stored priorities as 1..3 integers.
_NUMERIC = {1: Priority.LOW, 2: Priority.MEDIUM, 3: Priority.HIGH}


def normalize_priority(value: Priority | int | str | None) -> Priority:
    """Map external values onto :class:`Priority`, falling back to the default."""
    if value is None:
        return DEFAULT_PRIORITY
    if isinstance(value, Priority):
        return value
    if isinstance(value, bool):
        return DEFAULT_PRIORITY
    if isinstance(value, int):
        if value <= 0:
            return DEFAULT_PRIORITY
        return _NUMERIC.get(min(value, 3), DEFAULT_PRIORITY)
    text = str(value).strip().upper()
    if text.isdigit():
        return normalize_priority(int(text))
    try:
        return Priority(text)
    except ValueError:
        return DEFAULT_PRIORITY


def priority_label(value: Priority) -> str:
    meta = PRIORITY_META.get(value, PRIORITY_META[DEFAULT_PRIORITY])
    return str(meta["label"])


def priority_rank(value: Priority) -> int:
    meta = PRIORITY_META.get(value, PRIORITY_META[DEFAULT_PRIORITY])
    return int(meta["rank"])


__all__ = [
    "DEFAULT_PRIORITY",
    "PRIORITY_META",
    "Priority",
    "normalize_priority",
    "priority_label",
    "priority_rank",
]
