"""Due-date reminders attached to tasks through ``notification_id``."""
from __future__ import annotations

import uuid
from datetime import datetime, timedelta
from typing import Dict, Optional, Tuple

from core.logs import get_logger
from core.settings import REMINDERS
from models.task import Status, Task
from utils.datetime_utils import ensure_utc, utc_now


logger = get_logger("reminders")


def reminder_time(task: Task, now: Optional[datetime] = None, lead_minutes: Optional[int] = None) -> Optional[datetime]:
    """When to remind about ``task``, or ``None`` if no reminder applies."""
    if task.due_date is None or task.status is Status.DONE:
        return None
    lead = REMINDERS.lead_minutes if lead_minutes is None else lead_minutes
    trigger = ensure_utc(task.due_date) - timedelta(minutes=lead)
    if trigger <= (now or utc_now()):
        return None
    return trigger


class ReminderScheduler:
    """Notification service contract; the base class schedules nothing."""

    def schedule(self, task: Task) -> Optional[str]:
        return None

    def cancel(self, notification_id: Optional[str]) -> None:
        return None


NullReminderScheduler = ReminderScheduler


class LoggingReminderScheduler(ReminderScheduler):
    """Keeps scheduled reminders in memory and logs them."""

    def __init__(self, clock=utc_now) -> None:
        self.scheduled: Dict[str, Tuple[str, datetime]] = {}
        self._clock = clock

    def schedule(self, task: Task) -> Optional[str]:
        if not REMINDERS.enabled:
            return None
        trigger = reminder_time(task, self._clock())
        if trigger is None:
            return None
        notification_id = uuid.uuid4().hex
        self.scheduled[notification_id] = (task.id, trigger)
        logger.info('Reminder for "%s" scheduled at %s', task.title, trigger.isoformat())
        return notification_id

    def cancel(self, notification_id: Optional[str]) -> None:
        if not notification_id:
            return
        if self.scheduled.pop(notification_id, None) is not None:
            logger.debug("Reminder %s cancelled", notification_id)


__all__ = [
    "LoggingReminderScheduler",
    "NullReminderScheduler",
    "ReminderScheduler",
    "reminder_time",
]
