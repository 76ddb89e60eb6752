"""Contract of the remote task store used by the sync core."""
from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, List, Mapping, Optional, Union

from models.task import Task


class RemoteError(Exception):
    """Base class for failures talking to the remote store."""


class RemoteUnavailable(RemoteError):
    """Network failure, timeout or a transient server error."""


class RemoteRejected(RemoteError):
    """The request was refused (permissions, authentication, bad payload)."""


class RemoteNotFound(RemoteError):
    """The addressed document does not exist remotely."""


@dataclass(frozen=True)
class Principal:
    owner_id: str
    anonymous: bool = True


SnapshotCallback = Callable[[List[Task]], Union[Awaitable[None], None]]


class Subscription:
    """Handle returned by :meth:`RemoteClient.subscribe`."""

    def __init__(self, owner_id: str, cancel: Optional[Callable[[], None]] = None) -> None:
        self.owner_id = owner_id
        self._cancel = cancel
        self.cancelled = False

    def cancel(self) -> None:
        if self.cancelled:
            return
        self.cancelled = True
        if self._cancel is not None:
            self._cancel()


class RemoteClient(ABC):
    @abstractmethod
    async def authenticate(self) -> Principal:
        """Obtain (or reuse) the identity all remote calls run under."""

    @abstractmethod
    async def upsert(self, task: Task) -> None:
        """Create or replace the document keyed by ``task.id``."""

    @abstractmethod
    async def patch(self, task_id: str, fields: Mapping[str, Any]) -> None:
        """Partially update a document; raises :class:`RemoteNotFound` if absent."""

    @abstractmethod
    async def delete(self, task_id: str) -> None:
        """Delete a document; deleting a missing document is not an error."""

    @abstractmethod
    async def fetch_all_for_owner(self, owner_id: str) -> List[Task]:
        """Full snapshot of the owner's tasks."""

    @abstractmethod
    def subscribe(self, owner_id: str, on_change: SnapshotCallback) -> Subscription:
        """Deliver the owner's full snapshot to ``on_change`` on every change."""


__all__ = [
    "Principal",
    "RemoteClient",
    "RemoteError",
    "RemoteNotFound",
    "RemoteRejected",
    "RemoteUnavailable",
    "SnapshotCallback",
    "Subscription",
]
