# taskify/main.py
"""Headless runner for the Taskify sync core."""
from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from dataclasses import dataclass
from datetime import date
from pathlib import Path
from typing import List, Optional

from core.logs import ensure_sync_logger
from core.priorities import Priority, priority_label
from models.task import Status, Task
from services.connectivity import ConnectivityMonitor, ProbingConnectivityMonitor
from services.firestore_client import FirestoreClient
from services.google_auth import GoogleAuth
from services.mutation_gateway import MutationGateway
from services.pending_ops_queue import PendingOpsQueue
from services.reconciler import Reconciler, SyncReport
from services.reminders import LoggingReminderScheduler, ReminderScheduler
from services.remote import RemoteClient
from services.sync_service import SyncService
from services.task_repository import TaskRepository
from storage.db import create_db_engine, init_db, session_factory_for
from storage.local_store import LocalTaskStore
from utils.datetime_utils import to_rfc3339_utc


@dataclass
class App:
    repository: TaskRepository
    queue: PendingOpsQueue
    gateway: MutationGateway
    sync: SyncService


def build_app(
    *,
    db_path: Optional[Path | str] = None,
    remote: Optional[RemoteClient] = None,
    connectivity: Optional[ConnectivityMonitor] = None,
    reminders: Optional[ReminderScheduler] = None,
) -> App:
    """Create every component once and hand them to each other explicitly."""
    engine = init_db(create_db_engine(db_path))
    sessions = session_factory_for(engine)

    repository = TaskRepository(LocalTaskStore(sessions))
    repository.load()
    queue = PendingOpsQueue(sessions)
    remote = remote or FirestoreClient(GoogleAuth())
    connectivity = connectivity or ProbingConnectivityMonitor()
    gateway = MutationGateway(
        repository,
        remote,
        queue,
        connectivity,
        reminders=reminders or LoggingReminderScheduler(),
    )
    reconciler = Reconciler(repository, remote, queue)
    sync = SyncService(repository, remote, queue, reconciler, gateway, connectivity)
    return App(repository=repository, queue=queue, gateway=gateway, sync=sync)


def create_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="taskify", description="Offline-first task sync")
    parser.add_argument("--db", help="SQLite database path (default: data directory)")
    parser.add_argument("--offline", action="store_true", help="Do not contact the remote store")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging on stderr")

    subparsers = parser.add_subparsers(dest="command", required=True)

    list_parser = subparsers.add_parser("list", help="List local tasks")
    list_parser.add_argument("--status", choices=[s.value for s in Status])
    list_parser.add_argument("--due-on", type=date.fromisoformat, metavar="YYYY-MM-DD", help="Only tasks due that day")

    add_parser = subparsers.add_parser("add", help="Create a task")
    add_parser.add_argument("title")
    add_parser.add_argument("--description")
    add_parser.add_argument("--priority", choices=[p.value for p in Priority], default=Priority.MEDIUM.value)
    add_parser.add_argument("--due", help="Due date/time, RFC3339")

    status_parser = subparsers.add_parser("status", help="Move a task to another status")
    status_parser.add_argument("task_id")
    status_parser.add_argument("status", choices=[s.value for s in Status])

    done_parser = subparsers.add_parser("done", help="Mark a task as done")
    done_parser.add_argument("task_id")

    delete_parser = subparsers.add_parser("delete", help="Delete a task")
    delete_parser.add_argument("task_id")

    subparsers.add_parser("sync", help="Run one reconciliation pass")
    subparsers.add_parser("watch", help="Keep syncing until interrupted")
    subparsers.add_parser("info", help="Show sync status")
    return parser


def format_task(task: Task) -> str:
    due = f"  due {to_rfc3339_utc(task.due_date)}" if task.due_date else ""
    return f"{task.id}  [{task.status.value:<11}] {priority_label(task.priority):<6} {task.title}{due}"


def format_report(report: SyncReport) -> str:
    line = (
        f"{report.outcome.value}: pushed {len(report.pushed)}, pulled {len(report.pulled)}, "
        f"deleted {len(report.deleted)}"
    )
    if report.reason:
        line += f" ({report.reason})"
    for error in report.errors:
        line += f"\n  {error.action} {error.task_id}: {error.reason}"
    return line


async def run_command(args: argparse.Namespace, app: App) -> int:
    gateway = app.gateway
    if args.command == "list":
        tasks: List[Task] = app.repository.by_status(args.status) if args.status else app.repository.list()
        if args.due_on:
            due = {task.id for task in app.repository.due_on(args.due_on)}
            tasks = [task for task in tasks if task.id in due]
        for task in tasks:
            print(format_task(task))
        return 0

    await app.sync.start()
    try:
        if args.command == "add":
            task = await gateway.create_task(
                {
                    "title": args.title,
                    "description": args.description,
                    "priority": args.priority,
                    "due_date": args.due,
                }
            )
            print(format_task(task))
        elif args.command in ("status", "done"):
            status = Status.DONE if args.command == "done" else args.status
            task = await gateway.set_status(args.task_id, status)
            if task is None:
                print(f"No task {args.task_id}", file=sys.stderr)
                return 1
            print(format_task(task))
        elif args.command == "delete":
            if not await gateway.delete_task(args.task_id):
                print(f"No task {args.task_id}", file=sys.stderr)
                return 1
        elif args.command == "sync":
            report = await app.sync.sync_now()
            print(format_report(report))
            return 0 if report.ok else 2
        elif args.command == "watch":
            print(f"Watching ({app.sync.state.value}); Ctrl-C to stop")
            await asyncio.Event().wait()
        elif args.command == "info":
            for key, value in app.sync.status().items():
                print(f"{key}: {value}")
    finally:
        await app.sync.stop()
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    parser = create_parser()
    args = parser.parse_args(argv)

    ensure_sync_logger()
    if args.verbose:
        logging.basicConfig(level=logging.DEBUG, format="%(levelname)s %(name)s: %(message)s")
        logging.getLogger("taskify").setLevel(logging.DEBUG)

    connectivity = ConnectivityMonitor(online=False) if args.offline else None
    app = build_app(db_path=args.db, connectivity=connectivity)
    try:
        return asyncio.run(run_command(args, app))
    except KeyboardInterrupt:
        return 130
    except ValueError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
