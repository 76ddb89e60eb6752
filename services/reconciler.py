"""Bidirectional last-write-wins reconciliation of local and remote tasks."""
from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Awaitable, Callable, Dict, Iterable, List, Optional, Tuple

from core.logs import get_logger
from models.task import Task, task_to_record
from services.pending_ops_queue import PendingOperation, PendingOpsQueue
from services.remote import Principal, RemoteClient, RemoteError, RemoteNotFound
from services.task_repository import TaskRepository
from utils.datetime_utils import or_epoch, utc_now


logger = get_logger("reconciler")


class PassOutcome(str, Enum):
    SUCCESS = "success"
    PARTIAL = "partial"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass
class TaskSyncError:
    task_id: str
    action: str
    reason: str


@dataclass
class SyncReport:
    outcome: PassOutcome
    owner_id: Optional[str] = None
    pushed: List[str] = field(default_factory=list)
    pulled: List[str] = field(default_factory=list)
    deleted: List[str] = field(default_factory=list)
    errors: List[TaskSyncError] = field(default_factory=list)
    reason: Optional[str] = None
    started_at: datetime = field(default_factory=utc_now)
    finished_at: Optional[datetime] = None

    @property
    def ok(self) -> bool:
        return self.outcome is PassOutcome.SUCCESS

    @classmethod
    def skipped(cls, reason: str) -> "SyncReport":
        report = cls(outcome=PassOutcome.SKIPPED, reason=reason)
        report.finished_at = report.started_at
        return report

    @classmethod
    def failed(cls, reason: str, owner_id: Optional[str] = None) -> "SyncReport":
        report = cls(outcome=PassOutcome.FAILED, owner_id=owner_id, reason=reason)
        report.finished_at = utc_now()
        return report


@dataclass
class SyncPlan:
    push_new: List[Task] = field(default_factory=list)
    push_newer: List[Task] = field(default_factory=list)
    pull_new: List[Task] = field(default_factory=list)
    pull_newer: List[Task] = field(default_factory=list)

    def is_empty(self) -> bool:
        return not (self.push_new or self.push_newer or self.pull_new or self.pull_newer)


def plan_pass(local: Iterable[Task], remote: Iterable[Task]) -> SyncPlan:
    """Decide, per task id, which side wins.

    A task present on one side only is treated as created there and copied
    over. When both sides hold the id the strictly newer ``updated_at`` wins
    (missing counts as the epoch); equal stamps need no action.
    """
    local_by_id: Dict[str, Task] = {task.id: task for task in local}
    remote_by_id: Dict[str, Task] = {task.id: task for task in remote}
    plan = SyncPlan()

    for task_id, mine in local_by_id.items():
        theirs = remote_by_id.get(task_id)
        if theirs is None:
            plan.push_new.append(mine)
        elif or_epoch(mine.updated_at) > or_epoch(theirs.updated_at):
            plan.push_newer.append(mine)

    for task_id, theirs in remote_by_id.items():
        mine = local_by_id.get(task_id)
        if mine is None:
            plan.pull_new.append(theirs)
        elif or_epoch(theirs.updated_at) > or_epoch(mine.updated_at):
            plan.pull_newer.append(theirs)

    return plan


def _outcome(attempted: int, errors: int) -> PassOutcome:
    if not errors:
        return PassOutcome.SUCCESS
    if errors >= attempted:
        return PassOutcome.FAILED
    return PassOutcome.PARTIAL


class Reconciler:
    """Runs one reconciliation pass at a time.

    A pass requested while another is running is dropped and reported as
    SKIPPED; the next trigger catches up. Remote failures are collected per
    task and never undo local changes already applied.
    """

    def __init__(
        self,
        repository: TaskRepository,
        remote: RemoteClient,
        queue: PendingOpsQueue,
        *,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.repository = repository
        self.remote = remote
        self.queue = queue
        self._clock = clock
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    async def run(self, principal: Principal, remote_snapshot: Optional[List[Task]] = None) -> SyncReport:
        if self._running:
            logger.debug("Reconciliation already in flight; dropping request")
            return SyncReport.skipped("pass already in flight")
        self._running = True
        try:
            return await self._run(principal, remote_snapshot)
        finally:
            self._running = False

    # ------------------------------------------------------------------
    async def _run(self, principal: Principal, remote_snapshot: Optional[List[Task]]) -> SyncReport:
        owner = principal.owner_id
        # Read before any await so a delete made during the pass is not pulled back.
        revision = self.repository.revision
        report = SyncReport(outcome=PassOutcome.SUCCESS, owner_id=owner)

        if remote_snapshot is None:
            try:
                remote_tasks = await self.remote.fetch_all_for_owner(owner)
            except RemoteError as exc:
                logger.warning("Fetching remote tasks for %s failed: %s", owner, exc)
                return SyncReport.failed(f"fetch failed: {exc}", owner)
        else:
            remote_tasks = list(remote_snapshot)

        remote_tasks = [task for task in remote_tasks if task.owner_id in (None, owner)]
        remote_tasks, attempted = await self._flush_pending_deletes(owner, remote_tasks, report)

        local_tasks = [task for task in self.repository.list() if task.owner_id in (None, owner)]
        plan = plan_pass(local_tasks, remote_tasks)

        jobs: List[Awaitable[None]] = []
        jobs += [self._guard(report, t.id, "push", self._push_new(t, owner, report)) for t in plan.push_new]
        jobs += [self._guard(report, t.id, "push", self._push_newer(t, owner, report)) for t in plan.push_newer]
        jobs += [self._guard(report, t.id, "pull", self._pull(t, revision, report)) for t in plan.pull_new]
        jobs += [self._guard(report, t.id, "pull", self._pull(t, revision, report)) for t in plan.pull_newer]
        attempted += len(jobs)
        if jobs:
            await asyncio.gather(*jobs)

        report.outcome = _outcome(attempted, len(report.errors))
        if report.errors:
            report.reason = f"{len(report.errors)} of {attempted} operations failed"
        report.finished_at = self._clock()
        logger.info(
            "Sync pass for %s: %s (pushed=%d pulled=%d deleted=%d errors=%d)",
            owner,
            report.outcome.value,
            len(report.pushed),
            len(report.pulled),
            len(report.deleted),
            len(report.errors),
        )
        return report

    async def _guard(self, report: SyncReport, task_id: str, action: str, job: Awaitable[None]) -> None:
        try:
            await job
        except RemoteError as exc:
            logger.warning("%s of task %s failed: %s", action.capitalize(), task_id, exc)
            report.errors.append(TaskSyncError(task_id, action, str(exc)))
        except Exception as exc:
            logger.exception("%s of task %s crashed", action.capitalize(), task_id)
            report.errors.append(TaskSyncError(task_id, action, repr(exc)))

    # ----- push -----
    async def _push_new(self, task: Task, owner: str, report: SyncReport) -> None:
        outgoing = task.model_copy(update={"owner_id": owner})
        await self.remote.upsert(outgoing)
        report.pushed.append(task.id)
        current = self.repository.get(task.id)
        if current is not None and current.owner_id != owner:
            await self.repository.update(task.id, {"owner_id": owner})

    async def _push_newer(self, task: Task, owner: str, report: SyncReport) -> None:
        stamp = max(self._clock(), or_epoch(task.updated_at))
        outgoing = task.model_copy(update={"owner_id": owner, "updated_at": stamp})
        record = task_to_record(outgoing)
        record.pop("id")
        try:
            await self.remote.patch(task.id, record)
        except RemoteNotFound:
            logger.info("Remote task %s vanished before patch; upserting", task.id)
            await self.remote.upsert(outgoing)
        report.pushed.append(task.id)
        current = self.repository.get(task.id)
        # A local edit made while the push was in flight keeps its own stamp.
        if current is not None and current.updated_at == task.updated_at:
            await self.repository.update(task.id, {"owner_id": owner, "updated_at": stamp})

    # ----- pull -----
    async def _pull(self, task: Task, revision: int, report: SyncReport) -> None:
        current = self.repository.get(task.id)
        if current is None and self.repository.removed_after(task.id, revision):
            logger.debug("Task %s was deleted locally during the pass; not pulling", task.id)
            return
        if current is not None and or_epoch(task.updated_at) <= or_epoch(current.updated_at):
            return
        await self.repository.replace(task)
        report.pulled.append(task.id)

    # ----- pending deletes -----
    async def _flush_pending_deletes(
        self, owner: str, remote_tasks: List[Task], report: SyncReport
    ) -> Tuple[List[Task], int]:
        pending = await asyncio.to_thread(self.queue.all)
        pending = [op for op in pending if op.op == "delete" and op.owner_id in (None, owner)]
        if not pending:
            return remote_tasks, 0

        remote_by_id = {task.id: task for task in remote_tasks}
        # Ops still backing off stay queued and keep suppressing their task.
        due = {op.id for op in await asyncio.to_thread(self.queue.due, now=self._clock())}
        suppressed = set()
        jobs: List[Awaitable[None]] = []
        for op in pending:
            theirs = remote_by_id.get(op.task_id)
            if theirs is not None and or_epoch(theirs.updated_at) > op.created_at:
                # Edited remotely after the local delete: the edit wins.
                logger.info("Task %s changed remotely after local delete; keeping it", op.task_id)
                await asyncio.to_thread(self.queue.remove, op.id)
                continue
            suppressed.add(op.task_id)
            if theirs is None:
                await asyncio.to_thread(self.queue.remove, op.id)
                continue
            if op.id not in due:
                continue
            jobs.append(self._guard(report, op.task_id, "delete", self._delete_remote(op, report)))

        if jobs:
            await asyncio.gather(*jobs)
        return [task for task in remote_tasks if task.id not in suppressed], len(jobs)

    async def _delete_remote(self, op: PendingOperation, report: SyncReport) -> None:
        try:
            await self.remote.delete(op.task_id)
        except RemoteError as exc:
            await asyncio.to_thread(self.queue.requeue, op.id, str(exc))
            raise
        await asyncio.to_thread(self.queue.remove, op.id)
        report.deleted.append(op.task_id)


__all__ = [
    "PassOutcome",
    "Reconciler",
    "SyncPlan",
    "SyncReport",
    "TaskSyncError",
    "plan_pass",
]
