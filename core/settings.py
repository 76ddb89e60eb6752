"""Centralized application configuration."""
from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Optional
import os
import sys


def get_default_data_dir(
    app_name: str,
    *,
    platform: Optional[str] = None,
    env: Optional[Mapping[str, str]] = None,
    home: Optional[Path] = None,
) -> Path:
    """Return an OS-specific user data directory for ``app_name``."""

    platform_id = (platform or sys.platform).lower()
    environ = dict(env or os.environ)
    home_dir = Path(home or Path.home())
    sanitized = app_name.strip() or "app"
    sanitized = sanitized.replace("/", "-").replace("\\", "-")

    override = environ.get("TASKIFY_DATA_DIR")
    if override:
        return Path(override).expanduser()

    if platform_id.startswith("win"):
        base = Path(environ.get("APPDATA") or home_dir / "AppData" / "Roaming")
    elif platform_id == "darwin":
        base = Path(home_dir / "Library" / "Application Support")
    else:
        base = Path(environ.get("XDG_DATA_HOME") or home_dir / ".local" / "share")

    return (base.expanduser() / sanitized)


APP_NAME = "Taskify"


DATA_DIR = get_default_data_dir(APP_NAME)
SECRETS_DIR = DATA_DIR / "secrets"
LOG_DIR = DATA_DIR / "logs"

for _dir in (DATA_DIR, SECRETS_DIR, LOG_DIR):
    _dir.mkdir(parents=True, exist_ok=True)


DB_PATH = DATA_DIR / "taskify.db"
TOKEN_PATH = DATA_DIR / "token.json"
CLIENT_SECRET_PATH = SECRETS_DIR / "client_secret.json"
DEVICE_ID_PATH = DATA_DIR / "device_id.txt"
SYNC_LOG_PATH = LOG_DIR / "sync.log"


@dataclass(frozen=True)
class SyncSettings:
    enabled: bool = True
    storage_namespace: str = "taskify-storage"
    owner_id: Optional[str] = os.environ.get("TASKIFY_OWNER_ID") or None
    pending_retry_max_sec: int = 30
    pending_batch_size: int = 50


SYNC = SyncSettings()


@dataclass(frozen=True)
class FirestoreSettings:
    project_id: Optional[str] = os.environ.get("TASKIFY_FIRESTORE_PROJECT") or None
    database: str = "(default)"
    collection: str = os.environ.get("TASKIFY_FIRESTORE_COLLECTION") or "tasks"
    owner_field: str = "ownerId"
    request_timeout_sec: float = 20.0
    poll_interval_sec: float = 15.0
    scopes: tuple[str, ...] = (
        "https://www.googleapis.com/auth/datastore",
    )


FIRESTORE = FirestoreSettings()


@dataclass(frozen=True)
class ConnectivitySettings:
    probe_host: str = "firestore.googleapis.com"
    probe_port: int = 443
    probe_timeout_sec: float = 3.0
    interval_sec: float = 10.0


CONNECTIVITY = ConnectivitySettings()


@dataclass(frozen=True)
class ReminderSettings:
    enabled: bool = True
    lead_minutes: int = 30


REMINDERS = ReminderSettings()


__all__ = [
    "APP_NAME",
    "DATA_DIR",
    "SECRETS_DIR",
    "LOG_DIR",
    "DB_PATH",
    "TOKEN_PATH",
    "CLIENT_SECRET_PATH",
    "DEVICE_ID_PATH",
    "SYNC_LOG_PATH",
    "SYNC",
    "FIRESTORE",
    "CONNECTIVITY",
    "REMINDERS",
    "get_default_data_dir",
]
