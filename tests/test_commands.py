import logging

import pytest

import commands
from conftest import seed_project, seed_task, seed_user
from database import collection
from errors import BackendError, NotFound, ValidationFailed
from schemas import PROJECTS, TASKS, Project, Task


async def load_project(backend, pid) -> Project:
    return Project.model_validate(await backend.get(PROJECTS, pid))


async def load_task(backend, tid) -> Task:
    return Task.model_validate(await backend.get(TASKS, tid))


@pytest.mark.asyncio
async def test_create_project_with_default_columns(backend, alice):
    pid = await commands.create_project(backend, alice, "  Website  ", "Relaunch")
    project = await load_project(backend, pid)

    assert project.name == "Website"
    assert [c.name for c in project.sorted_columns()] == ["To do", "In progress", "Done"]
    assert project.owner_id == alice.uid
    assert project.membership_consistent()
    assert project.created_at is not None


@pytest.mark.asyncio
async def test_create_project_requires_name(backend, alice):
    with pytest.raises(ValidationFailed):
        await commands.create_project(backend, alice, "   ")
    assert backend.writes == []


@pytest.mark.asyncio
async def test_delete_project_cascades_to_tasks(backend, alice):
    pid = await seed_project(backend, alice)
    other = await seed_project(backend, alice, name="Other")
    await seed_task(backend, pid)
    await seed_task(backend, pid)
    survivor = await seed_task(backend, other)

    assert await commands.delete_project(backend, pid) == 2

    assert await backend.get(PROJECTS, pid) is None
    remaining = await backend.find(collection(TASKS))
    assert [t["id"] for t in remaining] == [survivor]


@pytest.mark.asyncio
async def test_column_lifecycle(backend, alice):
    pid = await seed_project(backend, alice)
    project = await load_project(backend, pid)

    new_id = await commands.add_column(backend, project, "Review")
    project = await load_project(backend, pid)
    assert project.column(new_id).order == 3

    await commands.update_column(backend, project, new_id, "QA", "#000000")
    project = await load_project(backend, pid)
    assert project.column(new_id).name == "QA"

    await commands.reorder_columns(backend, project, [new_id, "todo"])
    project = await load_project(backend, pid)
    assert [c.id for c in project.sorted_columns()] == [new_id, "todo", "doing", "done"]

    await commands.delete_column(backend, project, new_id)
    project = await load_project(backend, pid)
    assert project.column(new_id) is None

    with pytest.raises(ValidationFailed):
        await commands.add_column(backend, project, "")
    with pytest.raises(NotFound):
        await commands.update_column(backend, project, "missing", "x", "#fff")


@pytest.mark.asyncio
async def test_add_and_remove_member(backend, alice, bob):
    pid = await seed_project(backend, alice)
    await seed_user(backend, bob)
    project = await load_project(backend, pid)

    added = await commands.add_member(backend, project, "bob@example.com")
    assert added["uid"] == "bob"
    project = await load_project(backend, pid)
    assert project.member_ids == ["alice", "bob"]
    assert project.membership_consistent()

    with pytest.raises(ValidationFailed, match="already a member"):
        await commands.add_member(backend, project, "bob@example.com")
    with pytest.raises(ValidationFailed, match="No user"):
        await commands.add_member(backend, project, "nobody@example.com")

    await commands.remove_member(backend, project, "bob")
    project = await load_project(backend, pid)
    assert project.member_ids == ["alice"]
    assert project.membership_consistent()

    with pytest.raises(ValidationFailed):
        await commands.remove_member(backend, project, "alice")


@pytest.mark.asyncio
async def test_create_task_records_creation(backend, alice):
    pid = await seed_project(backend, alice)
    project = await load_project(backend, pid)

    tid = await commands.create_task_in_first_column(backend, alice, project, "")
    task = await load_task(backend, tid)

    assert task.title == "New task"
    assert task.column_id == "todo"
    assert task.status == "open"
    assert [h.action for h in task.history] == ["Task created"]
    assert task.created_by_name == "Alice Owner"


@pytest.mark.asyncio
async def test_create_task_needs_a_column(backend, alice):
    pid = await seed_project(backend, alice, columns=[])
    with pytest.raises(ValidationFailed):
        await commands.create_task_in_first_column(backend, alice, await load_project(backend, pid))


@pytest.mark.asyncio
async def test_move_task_is_noop_when_unchanged(backend, alice):
    pid = await seed_project(backend, alice)
    project = await load_project(backend, pid)
    tid = await seed_task(backend, pid)
    task = await load_task(backend, tid)

    assert await commands.move_task(backend, alice, task, project, "todo") is False
    assert await commands.move_task(backend, alice, task, project, "done") is True

    moved = await load_task(backend, tid)
    assert moved.column_id == "done"
    assert moved.history[-1].action == 'Moved to column "Done"'


@pytest.mark.asyncio
async def test_set_task_done_writes_history(backend, alice):
    pid = await seed_project(backend, alice)
    tid = await seed_task(backend, pid)

    await commands.set_task_done(backend, alice, await load_task(backend, tid), True)
    task = await load_task(backend, tid)
    assert task.status == "done"
    assert task.history[-1].action == "Marked as done"

    await commands.set_task_done(backend, alice, task, False)
    assert (await load_task(backend, tid)).history[-1].action == "Reopened"


@pytest.mark.asyncio
async def test_backend_failures_are_wrapped(backend, alice):
    pid = await seed_project(backend, alice)
    backend.write_failures.append(ConnectionError("offline"))
    with pytest.raises(BackendError) as info:
        await commands.delete_task(backend, "whatever")
    assert info.value.detail == "Could not delete the task"
    assert isinstance(info.value.cause, ConnectionError)
    assert await backend.get(PROJECTS, pid) is not None


@pytest.mark.asyncio
async def test_project_creation_logs_ids(backend, alice, caplog):
    caplog.set_level(logging.INFO, logger="commands")
    pid = await commands.create_project(backend, alice, "Logged")

    record = next(r for r in caplog.records if r.getMessage() == "Project created")
    assert (record.project_id, record.user_id) == (pid, "alice")
