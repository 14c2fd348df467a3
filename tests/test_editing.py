import asyncio

import pytest

import editing
from conftest import seed_project, seed_task, settle
from database import collection
from editing import SaveState, TaskEditingSession, Upload
from errors import NotFound, ValidationFailed
from schemas import INBOX, TASKS
from store import EntityStore
from subscriptions import SubscriptionManager
from toasts import ToastCenter

MB = 1024 * 1024


@pytest.fixture
async def synced(backend, settings, alice, bob):
    store = EntityStore()
    toasts = ToastCenter()
    manager = SubscriptionManager(backend, store, settings, toasts)
    pid = await seed_project(backend, alice, [bob])
    task_id = await seed_task(backend, pid, title="Draft brief")
    manager.start(alice.uid)
    yield store, toasts, pid, task_id
    manager.teardown()


def open_session(backend, settings, alice, synced):
    store, toasts, _, task_id = synced
    return TaskEditingSession(backend, store, settings, alice, task_id, toasts)


async def persisted(backend, task_id):
    return await backend.get(TASKS, task_id)


@pytest.mark.asyncio
async def test_edits_coalesce_into_one_save_with_history(backend, settings, alice, synced):
    session = open_session(backend, settings, alice, synced)

    session.update(title="Final brief")
    session.update(priority="high", due_date="2024-06-01")
    session.update(column_id="doing")
    assert session.state == SaveState.DIRTY
    await settle()

    doc = await persisted(backend, session.task_id)
    assert doc["title"] == "Final brief"
    assert doc["priority"] == "high"
    actions = [h["action"] for h in doc["history"]]
    assert actions == [
        'Changed title to "Final brief"',
        "Changed priority to High",
        'Moved to column "In progress"',
        "Set due date to 2024-06-01",
    ]
    assert len([w for w in backend.writes if w[0] == "update"]) == 1


@pytest.mark.asyncio
async def test_saved_state_returns_to_idle(backend, settings, alice, synced):
    session = open_session(backend, settings, alice, synced)
    session.update(description="More detail")
    await session.flush()
    assert session.state == SaveState.SAVED
    await asyncio.sleep(settings.SAVED_INDICATOR_SECONDS * 2)
    assert session.state == SaveState.IDLE


@pytest.mark.asyncio
async def test_empty_title_keeps_old_one(backend, settings, alice, synced):
    session = open_session(backend, settings, alice, synced)
    session.update(title="   ", assignee_id="bob")
    await session.flush()

    doc = await persisted(backend, session.task_id)
    assert doc["title"] == "Draft brief"
    assert doc["assignee_name"] == "Bob Builder"
    assert [h["action"] for h in doc["history"]] == ["Assigned to Bob Builder"]


@pytest.mark.asyncio
async def test_checklist_edits(backend, settings, alice, synced):
    session = open_session(backend, settings, alice, synced)
    first = session.add_item("Outline")
    session.add_item("Review")
    session.set_item_text(first, "Outline v2")
    assert session.toggle_item(first) is True
    session.remove_item(1)
    await session.flush()

    doc = await persisted(backend, session.task_id)
    assert doc["checklist"] == [{"text": "Outline v2", "done": True}]
    with pytest.raises(NotFound):
        session.toggle_item(5)


@pytest.mark.asyncio
async def test_unknown_fields_are_rejected(backend, settings, alice, synced):
    session = open_session(backend, settings, alice, synced)
    with pytest.raises(ValidationFailed):
        session.update(comments=[])
    with pytest.raises(ValidationFailed):
        session.update(priority="urgent")
    with pytest.raises(ValidationFailed):
        session.update(priority=None)
    with pytest.raises(ValidationFailed):
        session.update(status="archived-ish")
    assert session.state == SaveState.IDLE


@pytest.mark.asyncio
async def test_null_title_does_not_break_autosave(backend, settings, alice, synced):
    session = open_session(backend, settings, alice, synced)
    session.update(title=None)
    await settle()
    session.update(priority="high")
    await settle()

    doc = await persisted(backend, session.task_id)
    assert (doc["title"], doc["priority"]) == ("Draft brief", "high")
    assert session.state in (SaveState.SAVED, SaveState.IDLE)


@pytest.mark.asyncio
async def test_unexpected_save_failure_sets_error_and_toasts(backend, settings, alice, synced, monkeypatch):
    _, toasts, _, _ = synced
    session = open_session(backend, settings, alice, synced)

    def broken(*args):
        raise RuntimeError("boom")

    monkeypatch.setattr(editing, "describe_changes", broken)
    session.update(description="x")
    await settle()

    assert session.state == SaveState.ERROR
    assert toasts.active()[-1].message == "Could not save the task"


@pytest.mark.asyncio
async def test_close_abandons_pending_edits_unless_flushed(backend, settings, alice, synced):
    session = open_session(backend, settings, alice, synced)
    session.update(title="Never saved")
    await session.close()
    await settle()
    assert (await persisted(backend, session.task_id))["title"] == "Draft brief"

    session = open_session(backend, settings, alice, synced)
    session.update(title="Saved on close")
    await session.close(flush=True)
    assert (await persisted(backend, session.task_id))["title"] == "Saved on close"


@pytest.mark.asyncio
async def test_failed_save_reports_error(backend, settings, alice, synced):
    _, toasts, _, _ = synced
    session = open_session(backend, settings, alice, synced)
    backend.write_failures.append(ConnectionError("offline"))
    session.update(title="Lost")
    await settle()

    assert session.state == SaveState.ERROR
    assert toasts.active()[-1].message == "Could not save the task"


# -----------------------------
# Attachments
# -----------------------------
@pytest.mark.asyncio
async def test_oversized_attachment_is_rejected_rest_of_batch_kept(backend, settings, alice, synced):
    _, toasts, _, _ = synced
    session = open_session(backend, settings, alice, synced)

    accepted = await session.add_attachments([
        Upload(name="big.pdf", mime_type="application/pdf", data=b"x" * (2 * MB)),
        Upload(name="small.png", mime_type="image/png", data=b"x" * MB),
    ])

    assert accepted == 1
    doc = await persisted(backend, session.task_id)
    assert [a["name"] for a in doc["attachments"]] == ["small.png"]
    assert doc["attachments"][0]["url"].startswith("data:image/png;base64,")
    assert [h["action"] for h in doc["history"]] == ["Attachment added"]
    assert toasts.active()[-1].message == '"big.pdf" is too large (max 1.5MB)'


@pytest.mark.asyncio
async def test_batch_with_nothing_accepted_writes_nothing(backend, settings, alice, synced):
    session = open_session(backend, settings, alice, synced)
    backend.writes.clear()
    assert await session.add_attachments([Upload(name="huge.mov", data=b"x" * (2 * MB))]) == 0
    assert backend.writes == []


@pytest.mark.asyncio
async def test_remove_attachment(backend, settings, alice, synced):
    session = open_session(backend, settings, alice, synced)
    await session.add_attachments([Upload(name="a.txt", data=b"a"), Upload(name="b.txt", data=b"b")])
    await session.remove_attachment(0)

    doc = await persisted(backend, session.task_id)
    assert [a["name"] for a in doc["attachments"]] == ["b.txt"]
    assert doc["history"][-1]["action"] == 'Removed attachment "a.txt"'


# -----------------------------
# Comments
# -----------------------------
@pytest.mark.asyncio
async def test_comment_notifies_mentioned_members(backend, settings, alice, synced):
    session = open_session(backend, settings, alice, synced)

    notified = await session.add_comment("@Bob can you check?")

    assert notified == ["bob"]
    doc = await persisted(backend, session.task_id)
    assert doc["comments"][0]["author_id"] == "alice"
    assert doc["history"][-1]["action"] == "Comment added"
    inbox = await backend.find(collection(INBOX))
    assert [r["to_uid"] for r in inbox] == ["bob"]


@pytest.mark.asyncio
async def test_empty_comment_is_rejected(backend, settings, alice, synced):
    session = open_session(backend, settings, alice, synced)
    with pytest.raises(ValidationFailed):
        await session.add_comment("   ")


@pytest.mark.asyncio
async def test_only_own_comments_can_be_deleted(backend, settings, alice, bob, synced):
    store, toasts, _, task_id = synced
    await TaskEditingSession(backend, store, settings, bob, task_id, toasts).add_comment("from bob")
    session = open_session(backend, settings, alice, synced)
    await session.add_comment("from alice")

    with pytest.raises(ValidationFailed):
        await session.delete_comment(0)
    history_before = len((await persisted(backend, task_id))["history"])
    await session.delete_comment(1)

    doc = await persisted(backend, task_id)
    assert [c["text"] for c in doc["comments"]] == ["from bob"]
    assert len(doc["history"]) == history_before
