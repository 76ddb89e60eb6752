from conftest import make_task, ts
from models.task import Status
from services.reminders import LoggingReminderScheduler, NullReminderScheduler, reminder_time


def test_reminder_time_uses_lead_before_due_date():
    task = make_task("a", due_date=ts(120))
    assert reminder_time(task, now=ts(0), lead_minutes=30) == ts(90)


def test_no_reminder_without_due_date_for_done_or_past_tasks():
    assert reminder_time(make_task("a"), now=ts(0)) is None
    assert reminder_time(make_task("b", due_date=ts(120), status=Status.DONE), now=ts(0)) is None
    assert reminder_time(make_task("c", due_date=ts(10)), now=ts(0), lead_minutes=30) is None


def test_logging_scheduler_tracks_and_cancels():
    scheduler = LoggingReminderScheduler(clock=lambda: ts(0))

    notification_id = scheduler.schedule(make_task("a", due_date=ts(600)))
    assert scheduler.scheduled[notification_id][0] == "a"

    scheduler.cancel(notification_id)
    scheduler.cancel(None)
    assert scheduler.scheduled == {}


def test_null_scheduler_never_schedules():
    assert NullReminderScheduler().schedule(make_task("a", due_date=ts(600))) is None
