from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Callable, List, Optional

from core.logs import get_logger
from core.settings import SYNC
from models.task import Task
from services.connectivity import ConnectivityMonitor
from services.mutation_gateway import MutationGateway
from services.pending_ops_queue import PendingOpsQueue
from services.reconciler import PassOutcome, Reconciler, SyncReport
from services.remote import Principal, RemoteClient, RemoteError, Subscription
from services.task_repository import TaskRepository
from utils.datetime_utils import to_rfc3339_utc


logger = get_logger("service")


class SyncState(str, Enum):
    SYNCING = "syncing"
    ONLINE = "online"
    OFFLINE = "offline"
    ERROR = "error"


StateListener = Callable[[SyncState], None]


class SyncService:
    """Owns the sync lifecycle and decides when a reconciliation pass runs.

    Passes are triggered on start (once authenticated and online), on every
    offline -> online transition, on each remote snapshot and by
    :meth:`sync_now`. One remote subscription is kept per principal and is
    dropped while offline.
    """

    def __init__(
        self,
        repository: TaskRepository,
        remote: RemoteClient,
        queue: PendingOpsQueue,
        reconciler: Reconciler,
        gateway: MutationGateway,
        connectivity: ConnectivityMonitor,
        *,
        enabled: Optional[bool] = None,
    ) -> None:
        self.repository = repository
        self.remote = remote
        self.queue = queue
        self.reconciler = reconciler
        self.gateway = gateway
        self.connectivity = connectivity
        self.enabled = SYNC.enabled if enabled is None else enabled

        self.principal: Optional[Principal] = None
        self.state = SyncState.OFFLINE
        self.last_report: Optional[SyncReport] = None
        self.last_synced_at: Optional[datetime] = None
        self.last_error: Optional[str] = None

        self._subscription: Optional[Subscription] = None
        self._remove_listener: Optional[Callable[[], None]] = None
        self._state_listeners: List[StateListener] = []
        self._started = False

    # ------------------------------------------------------------------
    # Lifecycle
    async def start(self) -> None:
        if self._started:
            return
        self._started = True
        await self.connectivity.start()
        self._remove_listener = self.connectivity.add_listener(self._on_connectivity)
        if not self.enabled:
            logger.info("Sync disabled; running local-only")
            return
        if self.connectivity.online:
            await self._go_online()
        else:
            self._set_state(SyncState.OFFLINE)

    async def stop(self) -> None:
        if not self._started:
            return
        self._started = False
        if self._remove_listener is not None:
            self._remove_listener()
            self._remove_listener = None
        self._cancel_subscription()
        await self.connectivity.stop()
        await self.gateway.drain()
        if self.repository.persist_failed:
            await self.repository.flush()

    # ------------------------------------------------------------------
    # Triggers
    async def sync_now(self) -> SyncReport:
        if not self.enabled:
            return SyncReport.skipped("sync disabled")
        if not self.connectivity.online:
            report = SyncReport.failed("offline")
            self.last_report = report
            self.last_error = "No internet connection available"
            self._set_state(SyncState.OFFLINE)
            return report
        principal = await self._ensure_principal()
        if principal is None:
            return self.last_report or SyncReport.failed(self.last_error or "not authenticated")
        self._ensure_subscription(principal)
        return await self._run_pass(None)

    async def switch_principal(self, principal: Principal) -> None:
        """Move to another identity: drop its subscription and resync."""
        if self.principal == principal:
            return
        logger.info("Principal changed to %s", principal.owner_id)
        self._cancel_subscription()
        self._set_principal(principal)
        if self.enabled and self.connectivity.online:
            self._ensure_subscription(principal)
            await self._run_pass(None)

    async def _on_connectivity(self, online: bool) -> None:
        if not self.enabled or not self._started:
            return
        if online:
            await self._go_online()
        else:
            self._cancel_subscription()
            self._set_state(SyncState.OFFLINE)

    async def _on_snapshot(self, tasks: List[Task]) -> None:
        if not self.connectivity.online or self.principal is None:
            return
        logger.debug("Remote snapshot with %d tasks", len(tasks))
        await self._run_pass(tasks)

    async def _go_online(self) -> None:
        principal = await self._ensure_principal()
        if principal is None:
            return
        self._ensure_subscription(principal)
        await self._run_pass(None)

    # ------------------------------------------------------------------
    async def _ensure_principal(self) -> Optional[Principal]:
        try:
            principal = await self.remote.authenticate()
        except RemoteError as exc:
            logger.warning("Authentication failed: %s", exc)
            self.last_error = f"authentication failed: {exc}"
            self.last_report = SyncReport.failed(self.last_error)
            self._set_state(SyncState.ERROR)
            return None
        if self.principal is not None and principal != self.principal:
            self._cancel_subscription()
        self._set_principal(principal)
        return principal

    def _set_principal(self, principal: Principal) -> None:
        self.principal = principal
        self.gateway.principal = principal

    def _ensure_subscription(self, principal: Principal) -> None:
        current = self._subscription
        if current is not None and not current.cancelled and current.owner_id == principal.owner_id:
            return
        self._cancel_subscription()
        self._subscription = self.remote.subscribe(principal.owner_id, self._on_snapshot)

    def _cancel_subscription(self) -> None:
        if self._subscription is not None:
            self._subscription.cancel()
            self._subscription = None

    async def _run_pass(self, snapshot: Optional[List[Task]]) -> SyncReport:
        if self.principal is None:
            return SyncReport.failed("not authenticated")
        if self.reconciler.running:
            return SyncReport.skipped("pass already in flight")
        self._set_state(SyncState.SYNCING)
        report = await self.reconciler.run(self.principal, snapshot)
        if report.outcome is PassOutcome.SKIPPED:
            return report
        self.last_report = report
        if report.outcome is PassOutcome.SUCCESS:
            self.last_synced_at = report.finished_at
            self.last_error = None
            self._set_state(SyncState.ONLINE if self.connectivity.online else SyncState.OFFLINE)
        else:
            self.last_error = report.reason
            self._set_state(SyncState.ERROR)
        return report

    # ------------------------------------------------------------------
    # Status
    def add_state_listener(self, listener: StateListener) -> None:
        self._state_listeners.append(listener)

    def _set_state(self, state: SyncState) -> None:
        if state == self.state:
            return
        self.state = state
        for listener in list(self._state_listeners):
            try:
                listener(state)
            except Exception:
                logger.exception("Sync state listener failed")

    @property
    def subscribed(self) -> bool:
        return self._subscription is not None and not self._subscription.cancelled

    def status(self) -> dict:
        report = self.last_report
        return {
            "state": self.state.value,
            "online": self.connectivity.online,
            "ownerId": self.principal.owner_id if self.principal else None,
            "lastSyncedAt": to_rfc3339_utc(self.last_synced_at),
            "lastOutcome": report.outcome.value if report else None,
            "lastError": self.last_error,
            "localTasks": len(self.repository),
            "pendingDeletes": self.queue.count(),
            "persistFailed": self.repository.persist_failed,
        }


__all__ = ["SyncService", "SyncState"]
