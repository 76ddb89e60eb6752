from __future__ import annotations

import asyncio
from datetime import date
from typing import Any, Dict, List, Mapping, Optional

from sqlalchemy.exc import SQLAlchemyError

from core.logs import get_logger
from models.task import IMMUTABLE_FIELDS, Status, Task, clean_fields, new_task_id
from storage.local_store import LocalTaskStore
from utils.datetime_utils import ensure_utc, utc_now


logger = get_logger("repository")

_PERSIST_ERRORS = (SQLAlchemyError, OSError, ValueError)


class TaskRepository:
    """In-memory authoritative task collection backed by :class:`LocalTaskStore`.

    Reads are served from memory. Every mutation is applied in memory and the
    full collection is persisted before the call returns; mutations are
    serialized so two persistence writes never interleave. A failed write is
    logged and retried with the next mutation or :meth:`flush`.
    """

    def __init__(self, store: LocalTaskStore) -> None:
        self.store = store
        self._tasks: Dict[str, Task] = {}
        self._lock = asyncio.Lock()
        self._persist_failed = False
        self._revision = 0
        self._removed: Dict[str, int] = {}

    # ------------------------------------------------------------------
    # Lifecycle
    def load(self) -> None:
        self._tasks = {task.id: task for task in self.store.load()}
        logger.debug("Loaded %d tasks from local storage", len(self._tasks))

    @property
    def persist_failed(self) -> bool:
        return self._persist_failed

    @property
    def revision(self) -> int:
        """Counter bumped by every mutation."""
        return self._revision

    def removed_after(self, task_id: str, revision: int) -> bool:
        return self._removed.get(task_id, -1) > revision

    # ------------------------------------------------------------------
    # Reads
    def list(self) -> List[Task]:
        return [task.model_copy() for task in self._tasks.values()]

    def get(self, task_id: str) -> Optional[Task]:
        task = self._tasks.get(task_id)
        return task.model_copy() if task else None

    def __contains__(self, task_id: object) -> bool:
        return task_id in self._tasks

    def __len__(self) -> int:
        return len(self._tasks)

    def by_status(self, status: Status | str) -> List[Task]:
        wanted = Status(status)
        return [task for task in self.list() if task.status is wanted]

    def due_on(self, day: date) -> List[Task]:
        return [
            task
            for task in self.list()
            if task.due_date is not None and ensure_utc(task.due_date).date() == day
        ]

    # ------------------------------------------------------------------
    # Mutations
    async def add(self, fields: Mapping[str, Any]) -> Task:
        values = clean_fields(fields)
        if not values.get("title"):
            raise ValueError("Task title must not be empty")
        values["id"] = str(values.get("id") or new_task_id())
        values["created_at"] = values.get("created_at") or utc_now()
        if values.get("status") is None:
            values["status"] = Status.TODO
        if values.get("priority") is None:
            values.pop("priority", None)
        task = Task(**values)
        async with self._lock:
            if task.id in self._tasks:
                raise ValueError(f"Task {task.id} already exists")
            self._tasks[task.id] = task
            self._revision += 1
            await self._persist()
        return task.model_copy()

    async def update(self, task_id: str, fields: Mapping[str, Any]) -> Optional[Task]:
        changes = {k: v for k, v in clean_fields(fields).items() if k not in IMMUTABLE_FIELDS}
        async with self._lock:
            current = self._tasks.get(task_id)
            if current is None:
                logger.debug("Ignoring update of unknown task %s", task_id)
                return None
            updated = current.model_copy(update=changes)
            self._tasks[task_id] = updated
            self._revision += 1
            await self._persist()
        return updated.model_copy()

    async def replace(self, task: Task) -> Task:
        """Store ``task`` as-is, inserting it when the id is new."""
        async with self._lock:
            self._tasks[task.id] = task.model_copy()
            self._revision += 1
            await self._persist()
        return task

    async def remove(self, task_id: str) -> bool:
        async with self._lock:
            if task_id not in self._tasks:
                return False
            del self._tasks[task_id]
            self._revision += 1
            self._removed[task_id] = self._revision
            await self._persist()
        return True

    async def clear(self) -> None:
        async with self._lock:
            self._revision += 1
            for task_id in self._tasks:
                self._removed[task_id] = self._revision
            self._tasks.clear()
            await self._persist()

    async def flush(self) -> bool:
        async with self._lock:
            await self._persist()
        return not self._persist_failed

    # ------------------------------------------------------------------
    async def _persist(self) -> None:
        snapshot = list(self._tasks.values())
        try:
            await asyncio.to_thread(self.store.save, snapshot)
        except _PERSIST_ERRORS as exc:
            self._persist_failed = True
            logger.error("Persisting %d tasks failed: %s", len(snapshot), exc)
            return
        if self._persist_failed:
            logger.info("Local persistence recovered")
        self._persist_failed = False


__all__ = ["TaskRepository"]
