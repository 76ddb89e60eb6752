import asyncio
import os
import tempfile
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional, Tuple

# Keep settings from creating directories in the real user data dir.
os.environ.setdefault("TASKIFY_DATA_DIR", tempfile.mkdtemp(prefix="taskify-tests-"))

import pytest

from models.task import Task, fields_to_record, task_from_record, task_to_record
from services.connectivity import ConnectivityMonitor
from services.pending_ops_queue import PendingOpsQueue
from services.reconciler import Reconciler
from services.remote import (
    Principal,
    RemoteClient,
    RemoteError,
    RemoteNotFound,
    SnapshotCallback,
    Subscription,
)
from services.task_repository import TaskRepository
from storage.db import create_db_engine, init_db, session_factory_for
from storage.local_store import LocalTaskStore


T0 = datetime(2024, 1, 1, 10, 0, tzinfo=timezone.utc)
OWNER = "owner-1"


def ts(minutes: int = 0) -> datetime:
    return T0 + timedelta(minutes=minutes)


def make_task(task_id: str, title: Optional[str] = None, *, updated: Optional[datetime] = None, **fields) -> Task:
    fields.setdefault("created_at", T0)
    return Task(id=task_id, title=title or f"Task {task_id}", updated_at=updated, **fields)


class FakeRemote(RemoteClient):
    """In-memory remote store that records every call."""

    WRITES = ("upsert", "patch", "delete")

    def __init__(self, owner_id: str = OWNER):
        self.principal = Principal(owner_id)
        self.docs: Dict[str, dict] = {}
        self.calls: List[Tuple[str, str]] = []
        self.failures: Dict[Tuple[str, str], RemoteError] = {}
        self.fetch_error: Optional[RemoteError] = None
        self.auth_error: Optional[RemoteError] = None
        self.fetch_gate: Optional[asyncio.Event] = None
        self.listeners: Dict[int, Tuple[str, SnapshotCallback]] = {}
        self._next_listener = 0

    # ----- test helpers -----
    def seed(self, *tasks: Task) -> None:
        for task in tasks:
            self.docs[task.id] = task_to_record(task)

    def task(self, task_id: str) -> Optional[Task]:
        record = self.docs.get(task_id)
        return task_from_record(record) if record else None

    @property
    def writes(self) -> int:
        return sum(1 for op, _ in self.calls if op in self.WRITES)

    def calls_for(self, op: str) -> List[str]:
        return [task_id for name, task_id in self.calls if name == op]

    async def emit(self) -> None:
        for owner_id, callback in list(self.listeners.values()):
            result = callback(self._snapshot(owner_id))
            if asyncio.iscoroutine(result):
                await result

    def _snapshot(self, owner_id: str) -> List[Task]:
        return [task_from_record(r) for r in self.docs.values() if r.get("ownerId") == owner_id]

    def _check(self, op: str, task_id: str) -> None:
        self.calls.append((op, task_id))
        error = self.failures.get((op, task_id)) or self.failures.get((op, "*"))
        if error is not None:
            raise error

    # ----- RemoteClient -----
    async def authenticate(self) -> Principal:
        self.calls.append(("authenticate", ""))
        if self.auth_error is not None:
            raise self.auth_error
        return self.principal

    async def upsert(self, task: Task) -> None:
        self._check("upsert", task.id)
        self.docs[task.id] = task_to_record(task)

    async def patch(self, task_id, fields) -> None:
        self._check("patch", task_id)
        if task_id not in self.docs:
            raise RemoteNotFound(task_id)
        record = fields_to_record(fields)
        record.pop("id", None)
        self.docs[task_id].update(record)

    async def delete(self, task_id: str) -> None:
        self._check("delete", task_id)
        self.docs.pop(task_id, None)

    async def fetch_all_for_owner(self, owner_id: str) -> List[Task]:
        self.calls.append(("fetch", owner_id))
        if self.fetch_gate is not None:
            await self.fetch_gate.wait()
        if self.fetch_error is not None:
            raise self.fetch_error
        return self._snapshot(owner_id)

    def subscribe(self, owner_id: str, on_change: SnapshotCallback) -> Subscription:
        key = self._next_listener
        self._next_listener += 1
        self.listeners[key] = (owner_id, on_change)
        return Subscription(owner_id, cancel=lambda: self.listeners.pop(key, None))


@pytest.fixture()
def engine():
    return init_db(create_db_engine(":memory:"))


@pytest.fixture()
def session_factory(engine):
    return session_factory_for(engine)


@pytest.fixture()
def store(session_factory):
    return LocalTaskStore(session_factory)


@pytest.fixture()
def repository(store):
    repo = TaskRepository(store)
    repo.load()
    return repo


@pytest.fixture()
def queue(session_factory):
    return PendingOpsQueue(session_factory)


@pytest.fixture()
def remote():
    return FakeRemote()


@pytest.fixture()
def principal(remote):
    return remote.principal


@pytest.fixture()
def reconciler(repository, remote, queue):
    return Reconciler(repository, remote, queue)


@pytest.fixture()
def connectivity():
    return ConnectivityMonitor(online=False)
