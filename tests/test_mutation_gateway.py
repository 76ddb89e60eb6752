import pytest

from conftest import OWNER, make_task, ts
from models.task import Status
from services.connectivity import ConnectivityMonitor
from services.mutation_gateway import MutationGateway
from services.reconciler import Reconciler
from services.reminders import LoggingReminderScheduler
from services.remote import RemoteUnavailable


@pytest.fixture()
def gateway(repository, remote, queue, connectivity):
    return MutationGateway(repository, remote, queue, connectivity)


async def go_online(gateway, principal):
    await gateway.connectivity.set_online(True)
    gateway.principal = principal


@pytest.mark.asyncio
async def test_create_while_offline_is_local_only(gateway, repository, remote):
    task = await gateway.create_task({"title": "X"})

    assert [t.id for t in repository.list()] == [task.id]
    assert task.status is Status.TODO
    assert task.updated_at is not None
    await gateway.drain()
    assert remote.calls == []


@pytest.mark.asyncio
async def test_offline_create_is_pushed_by_next_pass(gateway, repository, remote, queue, principal):
    task = await gateway.create_task({"title": "X"})

    await go_online(gateway, principal)
    report = await Reconciler(repository, remote, queue).run(principal)

    assert report.pushed == [task.id]
    assert remote.task(task.id).title == "X"


@pytest.mark.asyncio
async def test_create_online_replicates_with_owner(gateway, remote, principal):
    await go_online(gateway, principal)

    task = await gateway.create_task({"title": "Online", "priority": "HIGH"})
    await gateway.drain()

    assert task.owner_id == OWNER
    assert remote.calls_for("upsert") == [task.id]
    assert remote.task(task.id).priority.value == "HIGH"


@pytest.mark.asyncio
async def test_remote_failure_does_not_undo_local_write(gateway, repository, remote, principal):
    await go_online(gateway, principal)
    remote.failures[("upsert", "*")] = RemoteUnavailable("timeout")

    task = await gateway.create_task({"title": "Still here"})
    await gateway.drain()

    assert repository.get(task.id).title == "Still here"
    assert gateway.last_error == "timeout"


@pytest.mark.asyncio
async def test_update_stamps_and_patches_remote(gateway, repository, remote, principal):
    await go_online(gateway, principal)
    task = await gateway.create_task({"title": "Draft"})
    await gateway.drain()

    updated = await gateway.update_task(task.id, {"title": "Final", "dueDate": "2030-01-01T09:00:00Z"})
    await gateway.drain()

    assert updated.title == "Final"
    assert updated.updated_at >= task.updated_at
    assert remote.calls_for("patch") == [task.id]
    assert remote.task(task.id).title == "Final"
    assert remote.task(task.id).due_date == updated.due_date


@pytest.mark.asyncio
async def test_update_never_moves_updated_at_backwards(repository, remote, queue, connectivity):
    gateway = MutationGateway(repository, remote, queue, connectivity, clock=lambda: ts(0))
    await repository.replace(make_task("a", updated=ts(90)))

    updated = await gateway.update_task("a", {"title": "Later"})

    assert updated.updated_at > ts(90)


@pytest.mark.asyncio
async def test_offline_edit_of_task_stamped_ahead_of_local_clock_is_pushed(
    repository, remote, queue, connectivity, principal
):
    gateway = MutationGateway(repository, remote, queue, connectivity, clock=lambda: ts(0))
    await repository.replace(make_task("a", "Original", updated=ts(90), owner_id=OWNER))
    remote.seed(make_task("a", "Original", updated=ts(90), owner_id=OWNER))

    await gateway.update_task("a", {"title": "Edited offline"})
    report = await Reconciler(repository, remote, queue).run(principal)

    assert report.pushed == ["a"]
    assert remote.task("a").title == "Edited offline"
    assert repository.get("a").updated_at == remote.task("a").updated_at


@pytest.mark.asyncio
async def test_update_of_unknown_task_is_a_no_op(gateway, repository):
    assert await gateway.update_task("missing", {"title": "x"}) is None
    assert len(repository) == 0


@pytest.mark.asyncio
async def test_patch_of_missing_remote_document_falls_back_to_upsert(gateway, repository, remote, principal):
    await repository.replace(make_task("a", updated=ts(1)))
    await go_online(gateway, principal)

    await gateway.update_task("a", {"title": "Recreated"})
    await gateway.drain()

    assert remote.calls_for("patch") == ["a"]
    assert remote.calls_for("upsert") == ["a"]
    assert remote.task("a").title == "Recreated"
    assert remote.task("a").owner_id == OWNER


@pytest.mark.asyncio
async def test_status_transitions_track_completion(gateway):
    task = await gateway.create_task({"title": "Chore"})

    done = await gateway.set_status(task.id, Status.DONE)
    assert done.completed_at is not None

    again = await gateway.set_status(task.id, "done")
    assert again.completed_at == done.completed_at

    reopened = await gateway.set_status(task.id, Status.IN_PROGRESS)
    assert reopened.completed_at is None


@pytest.mark.asyncio
async def test_delete_offline_records_pending_delete(gateway, repository, remote, queue):
    await repository.replace(make_task("t3", updated=ts(1), owner_id=OWNER))

    assert await gateway.delete_task("t3") is True

    assert "t3" not in repository
    assert queue.pending_task_ids() == {"t3"}
    assert remote.calls == []


@pytest.mark.asyncio
async def test_offline_delete_is_not_resurrected_on_reconnect(gateway, repository, remote, queue, principal):
    await repository.replace(make_task("t3", updated=ts(1), owner_id=OWNER))
    remote.seed(make_task("t3", updated=ts(1), owner_id=OWNER))
    await gateway.delete_task("t3")

    await go_online(gateway, principal)
    report = await Reconciler(repository, remote, queue).run(principal)

    assert report.deleted == ["t3"]
    assert "t3" not in repository
    assert remote.task("t3") is None


@pytest.mark.asyncio
async def test_online_delete_clears_the_pending_entry(gateway, repository, remote, queue, principal):
    await repository.replace(make_task("t3", updated=ts(1), owner_id=OWNER))
    remote.seed(make_task("t3", updated=ts(1), owner_id=OWNER))
    await go_online(gateway, principal)

    await gateway.delete_task("t3")
    await gateway.drain()

    assert remote.task("t3") is None
    assert queue.count() == 0


@pytest.mark.asyncio
async def test_delete_unknown_task_returns_false(gateway, queue):
    assert await gateway.delete_task("nope") is False
    assert queue.count() == 0


@pytest.mark.asyncio
async def test_reminders_follow_due_date_and_completion(repository, remote, queue):
    reminders = LoggingReminderScheduler(clock=lambda: ts(0))
    gateway = MutationGateway(
        repository, remote, queue, ConnectivityMonitor(), reminders=reminders, clock=lambda: ts(0)
    )

    task = await gateway.create_task({"title": "Call", "due_date": ts(120)})
    assert task.notification_id in reminders.scheduled

    moved = await gateway.update_task(task.id, {"due_date": ts(240)})
    assert task.notification_id not in reminders.scheduled
    assert moved.notification_id in reminders.scheduled

    finished = await gateway.set_status(task.id, Status.DONE)
    assert finished.notification_id is None
    assert reminders.scheduled == {}
