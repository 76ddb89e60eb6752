"""Optimistic task mutations: local write first, remote replication after."""
from __future__ import annotations

import asyncio
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional, Set

from core.logs import get_logger
from models.task import IMMUTABLE_FIELDS, Status, Task, apply_status, clean_fields, fields_to_record
from services.connectivity import ConnectivityMonitor
from services.pending_ops_queue import PendingOpsQueue
from services.reminders import ReminderScheduler
from services.remote import Principal, RemoteClient, RemoteError, RemoteNotFound
from services.task_repository import TaskRepository
from utils.datetime_utils import or_epoch, utc_now


logger = get_logger("gateway")

_REMINDER_FIELDS = {"due_date", "title", "status"}
_STAMP_STEP = timedelta(microseconds=1)


class MutationGateway:
    """Entry point for every user-initiated create, update and delete.

    Phase 1 writes the local repository and returns; phase 2 replicates to
    the remote store in a background task when online and authenticated.
    Remote failures are logged and left for the next reconciliation pass.
    """

    def __init__(
        self,
        repository: TaskRepository,
        remote: RemoteClient,
        queue: PendingOpsQueue,
        connectivity: ConnectivityMonitor,
        *,
        reminders: Optional[ReminderScheduler] = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.repository = repository
        self.remote = remote
        self.queue = queue
        self.connectivity = connectivity
        self.reminders = reminders or ReminderScheduler()
        self.principal: Optional[Principal] = None
        self.last_error: Optional[str] = None
        self._clock = clock
        self._inflight: Set[asyncio.Task] = set()

    @property
    def can_replicate(self) -> bool:
        return self.connectivity.online and self.principal is not None

    @property
    def pending_replications(self) -> int:
        return len(self._inflight)

    async def drain(self) -> None:
        """Wait for outstanding remote replications."""
        while self._inflight:
            await asyncio.gather(*list(self._inflight), return_exceptions=True)

    # ------------------------------------------------------------------
    async def create_task(self, fields: Mapping[str, Any]) -> Task:
        now = self._clock()
        values = clean_fields(fields)
        values["updated_at"] = now
        if self.principal is not None:
            values["owner_id"] = self.principal.owner_id
        if values.get("status") is Status.DONE and values.get("completed_at") is None:
            values["completed_at"] = now
        task = await self.repository.add(values)

        notification_id = self.reminders.schedule(task)
        if notification_id:
            task = await self.repository.update(task.id, {"notification_id": notification_id}) or task

        logger.debug("Created task %s", task.id)
        if self.can_replicate:
            self._replicate(task.id, "create", self.remote.upsert(task))
        return task

    async def update_task(self, task_id: str, fields: Mapping[str, Any]) -> Optional[Task]:
        current = self.repository.get(task_id)
        if current is None:
            return None
        now = self._clock()
        changes = {k: v for k, v in clean_fields(fields).items() if k not in IMMUTABLE_FIELDS}
        changes.pop("updated_at", None)
        if "status" in changes:
            moved = apply_status(current, changes["status"], now)
            changes["status"] = moved.status
            changes["completed_at"] = moved.completed_at
        # Strictly newer than the stored stamp, even when this clock lags behind it.
        changes["updated_at"] = max(now, or_epoch(current.updated_at) + _STAMP_STEP)
        if self.principal is not None and current.owner_id is None:
            changes["owner_id"] = self.principal.owner_id

        if _REMINDER_FIELDS & changes.keys():
            changes["notification_id"] = self._reschedule(current.model_copy(update=changes), current.notification_id)

        updated = await self.repository.update(task_id, changes)
        if updated is None:
            return None
        logger.debug("Updated task %s (%s)", task_id, ", ".join(sorted(changes)))
        if self.can_replicate:
            self._replicate(task_id, "update", self._patch_remote(task_id, changes))
        return updated

    async def set_status(self, task_id: str, status: Status | str) -> Optional[Task]:
        return await self.update_task(task_id, {"status": status})

    async def delete_task(self, task_id: str) -> bool:
        current = self.repository.get(task_id)
        if current is None:
            return False
        now = self._clock()
        owner = self.principal.owner_id if self.principal else current.owner_id
        # Queued before the local remove so a pass running meanwhile does not pull the task back.
        await asyncio.to_thread(self.queue.enqueue, "delete", task_id, owner_id=owner, at=now)
        await self.repository.remove(task_id)
        self.reminders.cancel(current.notification_id)
        logger.debug("Deleted task %s", task_id)
        if self.can_replicate:
            self._replicate(task_id, "delete", self._delete_remote(task_id))
        return True

    # ------------------------------------------------------------------
    def _reschedule(self, task: Task, old_notification_id: Optional[str]) -> Optional[str]:
        self.reminders.cancel(old_notification_id)
        return self.reminders.schedule(task)

    async def _patch_remote(self, task_id: str, changes: Dict[str, Any]) -> None:
        try:
            await self.remote.patch(task_id, fields_to_record(changes))
        except RemoteNotFound:
            current = self.repository.get(task_id)
            if current is None:
                return
            logger.info("Remote task %s missing on patch; upserting", task_id)
            if current.owner_id is None and self.principal is not None:
                current = current.model_copy(update={"owner_id": self.principal.owner_id})
            await self.remote.upsert(current)

    async def _delete_remote(self, task_id: str) -> None:
        await self.remote.delete(task_id)
        await asyncio.to_thread(self.queue.discard_task, task_id)

    def _replicate(self, task_id: str, action: str, job: Awaitable[None]) -> asyncio.Task:
        async def runner() -> None:
            try:
                await job
            except RemoteError as exc:
                self.last_error = str(exc)
                logger.warning("Remote %s of task %s failed: %s", action, task_id, exc)
            except Exception as exc:
                self.last_error = repr(exc)
                logger.exception("Remote %s of task %s crashed", action, task_id)

        future = asyncio.get_running_loop().create_task(runner())
        self._inflight.add(future)
        future.add_done_callback(self._inflight.discard)
        return future


__all__ = ["MutationGateway"]
