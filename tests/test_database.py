import pytest

from database import (
    ARRAY_CONTAINS,
    EQ,
    SERVER_TIMESTAMP,
    ArrayRemove,
    ArrayUnion,
    ChangeType,
    InMemoryDocumentStore,
    collection,
    get_documents,
)


@pytest.mark.asyncio
async def test_watch_delivers_snapshot_then_changes():
    store = InMemoryDocumentStore()
    first = await store.create("tasks", {"project_id": "p1", "title": "A"})
    await store.create("tasks", {"project_id": "p2", "title": "other"})

    batches = []
    unsubscribe = store.watch(collection("tasks").where("project_id", EQ, "p1"), batches.append)
    assert [(c.type, c.id) for c in batches[0]] == [(ChangeType.ADDED, first)]

    await store.update("tasks", first, {"title": "A2"})
    assert batches[-1][0].type == ChangeType.MODIFIED
    assert batches[-1][0].data["title"] == "A2"

    await store.update("tasks", first, {"project_id": "p2"})
    assert batches[-1][0].type == ChangeType.REMOVED

    unsubscribe()
    await store.create("tasks", {"project_id": "p1", "title": "late"})
    assert len(batches) == 3


@pytest.mark.asyncio
async def test_sentinels_resolve_on_write():
    store = InMemoryDocumentStore()
    doc_id = await store.create("projects", {"member_ids": ["a"], "created_at": SERVER_TIMESTAMP})

    await store.update("projects", doc_id, {"member_ids": ArrayUnion("a", "b")})
    await store.update("projects", doc_id, {"member_ids": ArrayRemove("a")})

    doc = await store.get("projects", doc_id)
    assert doc["member_ids"] == ["b"]
    assert doc["created_at"] is not None


@pytest.mark.asyncio
async def test_array_contains_query_and_find():
    store = InMemoryDocumentStore()
    mine = await store.create("projects", {"member_ids": ["alice", "bob"]})
    await store.create("projects", {"member_ids": ["carol"]})

    found = await store.find(collection("projects").where("member_ids", ARRAY_CONTAINS, "alice"))
    assert [d["id"] for d in found] == [mine]

    users = await get_documents(store, "projects", member_ids=["carol"])
    assert len(users) == 1


@pytest.mark.asyncio
async def test_injected_failures():
    store = InMemoryDocumentStore()
    store.write_failures.append(RuntimeError("offline"))
    with pytest.raises(RuntimeError):
        await store.create("notes", {"title": "x"})

    errors = []
    store.watch(collection("notes"), lambda changes: None, errors.append)
    assert store.fail_watches("notes") == 1
    assert len(errors) == 1
    assert store.watch_count("notes") == 0
