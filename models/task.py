# taskify/models/task.py
from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Dict, Mapping, Optional
import uuid

from sqlmodel import SQLModel, Field

from core.priorities import Priority, normalize_priority
from utils.datetime_utils import coerce_datetime, to_rfc3339_utc, utc_now


class Status(str, Enum):
    TODO = "TODO"
    IN_PROGRESS = "IN_PROGRESS"
    DONE = "DONE"


def new_task_id() -> str:
    return uuid.uuid4().hex


class Task(SQLModel):
    id: str = Field(default_factory=new_task_id)
    title: str
    description: Optional[str] = None
    priority: Priority = Priority.MEDIUM
    status: Status = Status.TODO
    due_date: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    owner_id: Optional[str] = None
    notification_id: Optional[str] = None


# attribute name -> record key (local storage and remote documents)
RECORD_KEYS: Dict[str, str] = {
    "id": "id",
    "title": "title",
    "description": "description",
    "priority": "priority",
    "status": "status",
    "due_date": "dueDate",
    "created_at": "createdAt",
    "updated_at": "updatedAt",
    "completed_at": "completedAt",
    "owner_id": "ownerId",
    "notification_id": "notificationId",
}
ATTRIBUTES: Dict[str, str] = {key: attr for attr, key in RECORD_KEYS.items()}

DATETIME_FIELDS = ("due_date", "created_at", "updated_at", "completed_at")

# Fields compared when checking that both sides hold the same task.
CORE_FIELDS = (
    "id",
    "title",
    "description",
    "priority",
    "status",
    "due_date",
    "created_at",
    "updated_at",
    "completed_at",
    "owner_id",
)

IMMUTABLE_FIELDS = frozenset({"id", "created_at"})


def normalize_status(value: Any, fallback: Status = Status.TODO) -> Status:
    if value is None or value == "":
        return fallback
    if isinstance(value, Status):
        return value
    lowered = str(value).strip().lower().replace("-", "_").replace(" ", "_")
    if lowered in {"todo", "pending", "needsaction", "needs_action"}:
        return Status.TODO
    if lowered in {"in_progress", "inprogress", "doing"}:
        return Status.IN_PROGRESS
    if lowered in {"done", "completed", "complete", "finished"}:
        return Status.DONE
    return fallback


def apply_status(task: Task, new_status: Status | str, now: Optional[datetime] = None) -> Task:
    """Return a copy of ``task`` moved to ``new_status``.

    Entering DONE stamps ``completed_at`` (an already finished task keeps its
    original stamp); leaving DONE clears it.
    """
    status = normalize_status(new_status, fallback=task.status)
    moment = now or utc_now()
    if status is Status.DONE:
        completed_at = task.completed_at if task.status is Status.DONE and task.completed_at else moment
    else:
        completed_at = None
    return task.model_copy(update={"status": status, "completed_at": completed_at})


def clean_fields(fields: Mapping[str, Any]) -> Dict[str, Any]:
    """Coerce a partial update given with attribute or record keys."""
    cleaned: Dict[str, Any] = {}
    for key, value in fields.items():
        attr = key if key in RECORD_KEYS else ATTRIBUTES.get(key)
        if attr is None:
            raise ValueError(f"Unknown task field: {key}")
        if attr in DATETIME_FIELDS:
            value = coerce_datetime(value)
        elif attr == "priority":
            value = normalize_priority(value)
        elif attr == "status":
            value = normalize_status(value)
        elif attr == "title":
            value = (value or "").strip()
            if not value:
                raise ValueError("Task title must not be empty")
        elif attr == "description":
            value = value or None
        cleaned[attr] = value
    return cleaned


def task_to_record(task: Task) -> Dict[str, Any]:
    record: Dict[str, Any] = {}
    for attr, key in RECORD_KEYS.items():
        value = getattr(task, attr)
        if attr in DATETIME_FIELDS:
            value = to_rfc3339_utc(value)
        elif isinstance(value, Enum):
            value = value.value
        record[key] = value
    return record


def fields_to_record(fields: Mapping[str, Any]) -> Dict[str, Any]:
    """Record-keyed, serializable form of a partial update."""
    record: Dict[str, Any] = {}
    for attr, value in clean_fields(fields).items():
        if attr in DATETIME_FIELDS:
            value = to_rfc3339_utc(value)
        elif isinstance(value, Enum):
            value = value.value
        record[RECORD_KEYS[attr]] = value
    return record


def task_from_record(record: Mapping[str, Any]) -> Task:
    """Build a task from a stored or remote record, tolerating older shapes."""
    if not record.get("id"):
        raise ValueError("Task record without id")
    fields = {
        attr: record[key]
        for key, attr in ATTRIBUTES.items()
        if key in record and attr not in ("priority", "status")
    }
    for attr in DATETIME_FIELDS:
        if attr in fields:
            fields[attr] = coerce_datetime(fields[attr])
    fields["id"] = str(record["id"])
    fields["title"] = str(record.get("title") or "").strip()
    if not fields["title"]:
        raise ValueError(f"Task {fields['id']} has an empty title")
    fields["priority"] = normalize_priority(record.get("priority"))
    fields["status"] = normalize_status(record.get("status"))
    if fields.get("created_at") is None:
        fields["created_at"] = fields.get("updated_at") or utc_now()
    task = Task(**fields)
    if task.status is Status.DONE and task.completed_at is None:
        task.completed_at = task.updated_at or task.created_at
    return task


def same_core_fields(left: Task, right: Task) -> bool:
    return all(getattr(left, name) == getattr(right, name) for name in CORE_FIELDS)


__all__ = [
    "CORE_FIELDS",
    "IMMUTABLE_FIELDS",
    "Priority",
    "RECORD_KEYS",
    "Status",
    "Task",
    "apply_status",
    "clean_fields",
    "fields_to_record",
    "new_task_id",
    "normalize_status",
    "same_core_fields",
    "task_from_record",
    "task_to_record",
]
