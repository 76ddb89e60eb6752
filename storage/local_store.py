"""Durable storage of the local task collection.

The whole collection is kept as one serialized record (a JSON array of task
records) keyed by an application namespace, written on every mutation and
read once at startup.
"""
from __future__ import annotations

import json
from typing import Iterable, List, Optional

from core.logs import get_logger
from core.settings import SYNC
from models.local_record import LocalRecord
from models.task import Task, task_from_record, task_to_record
from storage.db import SessionFactory, get_session
from utils.datetime_utils import utc_now


logger = get_logger("local_store")


class LocalTaskStore:
    def __init__(
        self,
        session_factory: SessionFactory = get_session,
        namespace: Optional[str] = None,
    ) -> None:
        self._session_factory = session_factory
        self.namespace = namespace or SYNC.storage_namespace

    def load(self) -> List[Task]:
        with self._session_factory() as session:
            record = session.get(LocalRecord, self.namespace)
            raw = record.payload if record else None
        if not raw:
            return []
        try:
            data = json.loads(raw)
        except json.JSONDecodeError as exc:
            logger.error("Stored task collection %r is corrupt: %s", self.namespace, exc)
            return []
        if isinstance(data, dict):
            # zustand-style envelope: {"state": {"tasks": [...]}}
            state = data.get("state", data)
            data = state.get("tasks", []) if isinstance(state, dict) else None
        if not isinstance(data, list):
            logger.error("Stored task collection %r is not a list", self.namespace)
            return []

        tasks: List[Task] = []
        seen = set()
        for item in data:
            if not isinstance(item, dict):
                continue
            try:
                task = task_from_record(item)
            except ValueError as exc:
                logger.warning("Skipping stored task record: %s", exc)
                continue
            if task.id in seen:
                continue
            seen.add(task.id)
            tasks.append(task)
        return tasks

    def save(self, tasks: Iterable[Task]) -> None:
        payload = json.dumps([task_to_record(task) for task in tasks], ensure_ascii=False)
        with self._session_factory() as session:
            record = session.get(LocalRecord, self.namespace)
            if record is None:
                record = LocalRecord(namespace=self.namespace, payload=payload)
            else:
                record.payload = payload
                record.updated_at = utc_now()
            session.add(record)
            session.commit()

    def clear(self) -> None:
        with self._session_factory() as session:
            record = session.get(LocalRecord, self.namespace)
            if record:
                session.delete(record)
                session.commit()


__all__ = ["LocalTaskStore"]
