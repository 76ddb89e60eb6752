"""Models exposed by the Taskify sync core."""
from .task import Priority, Status, Task, apply_status
from .local_record import LocalRecord
from .pending_op import PendingOp

__all__ = ["Priority", "Status", "Task", "apply_status", "LocalRecord", "PendingOp"]
