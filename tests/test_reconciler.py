import asyncio

import pytest

from conftest import OWNER, make_task, ts
from models.task import same_core_fields
from services.connectivity import ConnectivityMonitor
from services.mutation_gateway import MutationGateway
from services.reconciler import PassOutcome, plan_pass
from services.remote import RemoteRejected, RemoteUnavailable


def test_plan_pass_splits_tasks_by_side_and_stamp():
    local = [
        make_task("only-local", updated=ts(1)),
        make_task("local-newer", updated=ts(5)),
        make_task("remote-newer", updated=ts(1)),
        make_task("tie", updated=ts(3)),
    ]
    remote = [
        make_task("only-remote", updated=ts(1)),
        make_task("local-newer", updated=ts(2)),
        make_task("remote-newer", updated=ts(4)),
        make_task("tie", "different title", updated=ts(3)),
    ]

    plan = plan_pass(local, remote)

    assert [t.id for t in plan.push_new] == ["only-local"]
    assert [t.id for t in plan.push_newer] == ["local-newer"]
    assert [t.id for t in plan.pull_new] == ["only-remote"]
    assert [t.id for t in plan.pull_newer] == ["remote-newer"]


def test_plan_pass_treats_missing_stamp_as_oldest():
    plan = plan_pass([make_task("a", updated=None)], [make_task("a", updated=ts(0))])
    assert [t.id for t in plan.pull_newer] == ["a"]
    assert plan_pass([make_task("b")], [make_task("b")]).is_empty()


@pytest.mark.asyncio
async def test_local_only_task_is_pushed_with_identical_fields(repository, remote, reconciler, principal):
    await repository.replace(make_task("t1", "Buy milk", updated=ts(0)))

    report = await reconciler.run(principal)

    assert report.outcome is PassOutcome.SUCCESS
    assert report.pushed == ["t1"]
    pushed = remote.task("t1")
    assert pushed is not None
    assert pushed.owner_id == OWNER
    local = repository.get("t1")
    assert local.owner_id == OWNER
    assert same_core_fields(local, pushed)


@pytest.mark.asyncio
async def test_newer_remote_task_replaces_local(repository, remote, reconciler, principal):
    await repository.replace(make_task("t2", "Old title", updated=ts(0), owner_id=OWNER))
    remote.seed(make_task("t2", "New title", updated=ts(60), owner_id=OWNER, description="from remote"))

    report = await reconciler.run(principal)

    assert report.pulled == ["t2"]
    local = repository.get("t2")
    assert local.title == "New title"
    assert local.description == "from remote"
    assert local.updated_at == ts(60)
    assert remote.writes == 0


@pytest.mark.asyncio
async def test_remote_only_task_is_pulled(repository, remote, reconciler, principal):
    remote.seed(make_task("r1", "Remote", updated=ts(5), owner_id=OWNER))

    report = await reconciler.run(principal)

    assert report.pulled == ["r1"]
    assert same_core_fields(repository.get("r1"), remote.task("r1"))


@pytest.mark.asyncio
async def test_newer_local_task_wins_and_both_sides_get_the_push_stamp(repository, remote, reconciler, principal):
    await repository.replace(make_task("a", "Local edit", updated=ts(30), owner_id=OWNER))
    remote.seed(make_task("a", "Remote copy", updated=ts(10), owner_id=OWNER))

    report = await reconciler.run(principal)

    assert report.pushed == ["a"]
    assert remote.calls_for("patch") == ["a"]
    local, theirs = repository.get("a"), remote.task("a")
    assert theirs.title == "Local edit"
    assert local.updated_at == theirs.updated_at
    assert local.updated_at >= ts(30)


@pytest.mark.asyncio
async def test_equal_stamps_need_no_action(repository, remote, reconciler, principal):
    await repository.replace(make_task("a", "Local", updated=ts(10), owner_id=OWNER))
    remote.seed(make_task("a", "Remote", updated=ts(10), owner_id=OWNER))

    report = await reconciler.run(principal)

    assert report.outcome is PassOutcome.SUCCESS
    assert remote.writes == 0
    assert report.pulled == []
    assert repository.get("a").title == "Local"
    assert remote.task("a").title == "Remote"


@pytest.mark.asyncio
async def test_second_pass_without_changes_writes_nothing(repository, remote, reconciler, principal):
    await repository.replace(make_task("a", updated=ts(1)))
    await repository.replace(make_task("b", updated=ts(9), owner_id=OWNER))
    remote.seed(make_task("b", updated=ts(2), owner_id=OWNER), make_task("c", updated=ts(3), owner_id=OWNER))

    await reconciler.run(principal)
    writes = remote.writes
    second = await reconciler.run(principal)

    assert remote.writes == writes
    assert second.pushed == [] and second.pulled == []
    for task_id in ("a", "b", "c"):
        assert same_core_fields(repository.get(task_id), remote.task(task_id))


@pytest.mark.asyncio
async def test_updated_at_never_decreases_across_passes(repository, remote, reconciler, principal):
    await repository.replace(make_task("a", updated=ts(50), owner_id=OWNER))
    remote.seed(make_task("a", updated=ts(40), owner_id=OWNER))

    await reconciler.run(principal)
    first = repository.get("a").updated_at
    await reconciler.run(principal)

    assert first >= ts(50)
    assert repository.get("a").updated_at == first


@pytest.mark.asyncio
async def test_failed_push_is_reported_and_local_change_kept(repository, remote, reconciler, principal):
    await repository.replace(make_task("a", "Keep me", updated=ts(1)))
    remote.seed(make_task("b", updated=ts(1), owner_id=OWNER))
    remote.failures[("upsert", "a")] = RemoteUnavailable("offline")

    report = await reconciler.run(principal)

    assert report.outcome is PassOutcome.PARTIAL
    assert [(e.task_id, e.action) for e in report.errors] == [("a", "push")]
    assert report.pulled == ["b"]
    assert repository.get("a").title == "Keep me"
    assert remote.task("a") is None


@pytest.mark.asyncio
async def test_all_operations_failing_fails_the_pass(repository, remote, reconciler, principal):
    await repository.replace(make_task("a", updated=ts(1)))
    remote.failures[("upsert", "*")] = RemoteRejected("permission denied")

    report = await reconciler.run(principal)

    assert report.outcome is PassOutcome.FAILED
    assert "1 of 1" in report.reason


@pytest.mark.asyncio
async def test_fetch_failure_aborts_pass_without_writes(repository, remote, reconciler, principal):
    await repository.replace(make_task("a", updated=ts(1)))
    remote.fetch_error = RemoteUnavailable("timeout")

    report = await reconciler.run(principal)

    assert report.outcome is PassOutcome.FAILED
    assert remote.writes == 0
    assert len(repository) == 1


@pytest.mark.asyncio
async def test_pass_requested_while_running_is_dropped(repository, remote, reconciler, principal):
    remote.fetch_gate = asyncio.Event()
    first = asyncio.create_task(reconciler.run(principal))
    while not remote.calls_for("fetch"):
        await asyncio.sleep(0)

    assert reconciler.running
    skipped = await reconciler.run(principal)
    assert skipped.outcome is PassOutcome.SKIPPED

    remote.fetch_gate.set()
    report = await first
    assert report.outcome is PassOutcome.SUCCESS
    assert not reconciler.running
    assert len(remote.calls_for("fetch")) == 1


@pytest.mark.asyncio
async def test_task_deleted_while_fetching_is_not_pulled_back(repository, remote, reconciler, principal):
    await repository.replace(make_task("t", updated=ts(1), owner_id=OWNER))
    remote.seed(make_task("t", updated=ts(1), owner_id=OWNER))
    remote.fetch_gate = asyncio.Event()
    running = asyncio.create_task(reconciler.run(principal))
    while not remote.calls_for("fetch"):
        await asyncio.sleep(0)

    await repository.remove("t")
    remote.fetch_gate.set()
    report = await running

    assert report.pulled == []
    assert "t" not in repository


@pytest.mark.asyncio
async def test_gateway_delete_during_pass_is_not_resurrected(repository, remote, queue, reconciler, principal):
    gateway = MutationGateway(repository, remote, queue, ConnectivityMonitor())
    await repository.replace(make_task("t", updated=ts(1), owner_id=OWNER))
    remote.seed(make_task("t", updated=ts(1), owner_id=OWNER))
    remote.fetch_gate = asyncio.Event()
    running = asyncio.create_task(reconciler.run(principal))
    while not remote.calls_for("fetch"):
        await asyncio.sleep(0)

    await gateway.delete_task("t")
    remote.fetch_gate.set()
    await running
    remote.fetch_gate = None
    await reconciler.run(principal)

    assert "t" not in repository
    assert remote.task("t") is None
    assert queue.count() == 0


@pytest.mark.asyncio
async def test_snapshot_is_used_instead_of_fetching(repository, remote, reconciler, principal):
    snapshot = [make_task("s", updated=ts(2), owner_id=OWNER)]

    report = await reconciler.run(principal, snapshot)

    assert report.pulled == ["s"]
    assert remote.calls_for("fetch") == []


@pytest.mark.asyncio
async def test_tasks_of_other_owners_are_left_alone(repository, remote, reconciler, principal):
    await repository.replace(make_task("mine", updated=ts(1), owner_id=OWNER))
    await repository.replace(make_task("theirs", updated=ts(1), owner_id="someone-else"))

    report = await reconciler.run(principal, [make_task("foreign", updated=ts(1), owner_id="someone-else")])

    assert report.pushed == ["mine"]
    assert "foreign" not in repository
    assert remote.task("theirs") is None


@pytest.mark.asyncio
async def test_pending_delete_reaches_remote_instead_of_resurrecting(repository, remote, queue, reconciler, principal):
    remote.seed(make_task("t3", updated=ts(10), owner_id=OWNER))
    queue.enqueue("delete", "t3", owner_id=OWNER, at=ts(20))

    report = await reconciler.run(principal)

    assert report.deleted == ["t3"]
    assert remote.task("t3") is None
    assert "t3" not in repository
    assert queue.count() == 0


@pytest.mark.asyncio
async def test_remote_edit_after_local_delete_wins(repository, remote, queue, reconciler, principal):
    remote.seed(make_task("t3", "Edited elsewhere", updated=ts(30), owner_id=OWNER))
    queue.enqueue("delete", "t3", owner_id=OWNER, at=ts(20))

    report = await reconciler.run(principal)

    assert remote.calls_for("delete") == []
    assert report.pulled == ["t3"]
    assert repository.get("t3").title == "Edited elsewhere"
    assert queue.count() == 0


@pytest.mark.asyncio
async def test_failed_pending_delete_stays_queued_and_is_not_pulled(repository, remote, queue, reconciler, principal):
    remote.seed(make_task("t3", updated=ts(10), owner_id=OWNER))
    queue.enqueue("delete", "t3", owner_id=OWNER, at=ts(20))
    remote.failures[("delete", "t3")] = RemoteUnavailable("flaky")

    report = await reconciler.run(principal)

    assert report.errors[0].action == "delete"
    assert "t3" not in repository
    [op] = queue.all()
    assert op.attempts == 1
    assert op.last_error == "flaky"


@pytest.mark.asyncio
async def test_delete_that_bypassed_the_queue_is_resurrected(repository, remote, reconciler, principal):
    # Removing a task without recording a pending delete leaves the remote copy
    # looking like a remote-only task, which the next pass pulls back.
    await repository.replace(make_task("t3", updated=ts(10), owner_id=OWNER))
    remote.seed(make_task("t3", updated=ts(10), owner_id=OWNER))
    await repository.remove("t3")

    report = await reconciler.run(principal)

    assert report.pulled == ["t3"]
    assert "t3" in repository


@pytest.mark.asyncio
async def test_pending_delete_still_backing_off_is_held_back(repository, remote, queue, reconciler, principal):
    remote.seed(make_task("t3", updated=ts(10), owner_id=OWNER))
    queue.enqueue("delete", "t3", owner_id=OWNER, at=ts(20))
    [op] = queue.all()
    queue.requeue(op.id, "flaky")

    report = await reconciler.run(principal)

    assert remote.calls_for("delete") == []
    assert report.deleted == [] and report.pulled == []
    assert "t3" not in repository
    assert [o.task_id for o in queue.all()] == ["t3"]
