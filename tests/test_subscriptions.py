import asyncio

import pytest

from conftest import seed_project, seed_task
from database import ArrayRemove
from schemas import PROJECTS, TASKS
from store import EntityStore
from subscriptions import ALL_CHANGED, DataChanged, SubscriptionManager, SubscriptionState
from toasts import ToastCenter


@pytest.fixture
def manager(backend, settings):
    return SubscriptionManager(backend, EntityStore(), settings, ToastCenter())


@pytest.mark.asyncio
async def test_start_loads_projects_and_their_tasks(backend, manager, alice, bob):
    pid = await seed_project(backend, alice, [bob])
    task_id = await seed_task(backend, pid, title="Write brief")
    await seed_project(backend, bob, name="Not mine")

    manager.start(alice.uid)

    assert list(manager.store.projects) == [pid]
    assert manager.store.get_task(task_id).title == "Write brief"
    assert manager.state(TASKS, pid) == SubscriptionState.ACTIVE


@pytest.mark.asyncio
async def test_at_most_one_stream_per_key(backend, manager, alice):
    pid = await seed_project(backend, alice)
    manager.start(alice.uid)
    before = backend.watch_count(TASKS)

    manager.ensure_tasks(pid)
    manager.ensure_tasks(pid)

    assert backend.watch_count(TASKS) == before == 1


@pytest.mark.asyncio
async def test_project_delete_cascades_out_of_store(backend, manager, alice):
    pid = await seed_project(backend, alice)
    await seed_task(backend, pid)
    manager.start(alice.uid)

    await backend.delete(PROJECTS, pid)

    assert pid not in manager.store.projects
    assert manager.store.project_tasks(pid) == []
    assert manager.state(TASKS, pid) == SubscriptionState.UNSUBSCRIBED
    assert backend.watch_count(TASKS) == 0


@pytest.mark.asyncio
async def test_losing_membership_drops_project(backend, manager, alice, bob):
    pid = await seed_project(backend, bob, [alice])
    await seed_task(backend, pid)
    manager.start(alice.uid)
    assert pid in manager.store.projects

    await backend.update(PROJECTS, pid, {"member_ids": ArrayRemove(alice.uid)})

    assert pid not in manager.store.projects
    assert manager.store.all_project_tasks() == []


@pytest.mark.asyncio
async def test_listeners_receive_change_signals(backend, manager, alice):
    pid = await seed_project(backend, alice)
    signals = []
    manager.add_listener(signals.append)
    manager.start(alice.uid)

    await seed_task(backend, pid)

    assert DataChanged(TASKS, pid) in signals
    manager.teardown()
    assert signals[-1] == ALL_CHANGED


@pytest.mark.asyncio
async def test_teardown_closes_everything(backend, manager, alice):
    await seed_project(backend, alice)
    manager.start(alice.uid)

    manager.teardown()

    assert manager.active_keys() == []
    assert backend.watch_count() == 0
    assert manager.store.projects == {}


@pytest.mark.asyncio
async def test_failed_stream_resubscribes_and_resyncs(backend, manager, alice):
    pid = await seed_project(backend, alice)
    manager.start(alice.uid)

    backend.fail_watches(PROJECTS)
    assert manager.state(PROJECTS, alice.uid) == SubscriptionState.RETRYING

    # Deleted while the stream was down
    await backend.delete(PROJECTS, pid)
    await asyncio.sleep(0.05)

    assert manager.state(PROJECTS, alice.uid) == SubscriptionState.ACTIVE
    assert pid not in manager.store.projects


@pytest.mark.asyncio
async def test_gives_up_after_max_attempts(backend, manager, alice):
    await seed_project(backend, alice)
    manager.start(alice.uid)
    original_watch = backend.watch

    def broken_watch(query, on_changes, on_error=None):
        if query.collection == PROJECTS:
            raise ConnectionError("down")
        return original_watch(query, on_changes, on_error)

    backend.watch = broken_watch
    backend.fail_watches(PROJECTS)
    await asyncio.sleep(0.2)

    assert manager.state(PROJECTS, alice.uid) == SubscriptionState.UNSUBSCRIBED
    assert any(t.kind == "error" for t in manager.toasts.active())
