from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import List, Optional, Set

from sqlmodel import select
from sqlalchemy import func

from core.settings import SYNC
from models.pending_op import PendingOp
from storage.db import SessionFactory, get_session
from utils.datetime_utils import ensure_utc, utc_now


VALID_OPS = {"delete"}


def _next_try(attempts: int, now: Optional[datetime] = None) -> datetime:
    delay = min(SYNC.pending_retry_max_sec, 2 ** max(attempts, 0))
    return (now or utc_now()) + timedelta(seconds=delay)


@dataclass
class PendingOperation:
    id: int
    op: str
    task_id: str
    owner_id: Optional[str]
    attempts: int
    last_error: Optional[str]
    created_at: datetime
    next_try_at: datetime


def _to_operation(row: PendingOp) -> PendingOperation:
    return PendingOperation(
        id=row.id,
        op=row.op,
        task_id=row.task_id,
        owner_id=row.owner_id,
        attempts=row.attempts,
        last_error=row.last_error,
        created_at=ensure_utc(row.created_at),
        next_try_at=ensure_utc(row.next_try_at),
    )


class PendingOpsQueue:
    """Durable outbox of remote operations that have not reached the server.

    Only deletes are queued: creates and updates are healed by the next
    reconciliation pass, a delete that never reached the server would be
    undone by it.
    """

    def __init__(self, session_factory: SessionFactory = get_session) -> None:
        self._session_factory = session_factory

    def enqueue(
        self,
        op: str,
        task_id: str,
        *,
        owner_id: Optional[str] = None,
        at: Optional[datetime] = None,
    ) -> None:
        if op not in VALID_OPS:
            raise ValueError(f"Unsupported op: {op}")
        moment = at or utc_now()
        with self._session_factory() as session:
            stmt = select(PendingOp).where(PendingOp.op == op, PendingOp.task_id == task_id)
            if session.exec(stmt).first() is not None:
                return
            record = PendingOp(
                op=op,
                task_id=task_id,
                owner_id=owner_id,
                created_at=moment,
                next_try_at=moment,
            )
            session.add(record)
            session.commit()

    def requeue(self, op_id: int, error: str) -> None:
        with self._session_factory() as session:
            record = session.get(PendingOp, op_id)
            if not record:
                return
            record.attempts += 1
            record.last_error = error[:1000]
            record.next_try_at = _next_try(record.attempts)
            session.add(record)
            session.commit()

    def remove(self, op_id: int) -> None:
        with self._session_factory() as session:
            record = session.get(PendingOp, op_id)
            if record:
                session.delete(record)
                session.commit()

    def discard_task(self, task_id: str) -> None:
        with self._session_factory() as session:
            for record in session.exec(select(PendingOp).where(PendingOp.task_id == task_id)).all():
                session.delete(record)
            session.commit()

    def due(self, limit: Optional[int] = None, now: Optional[datetime] = None) -> List[PendingOperation]:
        moment = now or utc_now()
        with self._session_factory() as session:
            stmt = (
                select(PendingOp)
                .where(PendingOp.next_try_at <= moment)
                .order_by(PendingOp.next_try_at.asc())
                .limit(limit or SYNC.pending_batch_size)
            )
            rows = list(session.exec(stmt))
        return [_to_operation(row) for row in rows]

    def all(self) -> List[PendingOperation]:
        with self._session_factory() as session:
            rows = list(session.exec(select(PendingOp).order_by(PendingOp.id.asc())))
        return [_to_operation(row) for row in rows]

    def pending_task_ids(self, op: str = "delete") -> Set[str]:
        with self._session_factory() as session:
            rows = session.exec(select(PendingOp.task_id).where(PendingOp.op == op)).all()
        return set(rows)

    def count(self) -> int:
        with self._session_factory() as session:
            return int(session.exec(select(func.count()).select_from(PendingOp)).one())


__all__ = ["PendingOpsQueue", "PendingOperation"]
