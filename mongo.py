"""
MongoDB implementation of the document store.

Live queries are built on change streams, so the server must run as a
replica set. Each live query reads its stream in a daemon thread and hands
every batch back to the event loop with ``call_soon_threadsafe``; callbacks
never run off the loop thread.
"""
import asyncio
import logging
import threading
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from bson import ObjectId
from pymongo import ASCENDING, DESCENDING, MongoClient
from pymongo.database import Database
from pymongo.errors import PyMongoError

from database import (
    ARRAY_CONTAINS,
    EQ,
    SERVER_TIMESTAMP,
    ArrayRemove,
    ArrayUnion,
    ChangeType,
    DocumentChange,
    DocumentStore,
    OnChanges,
    OnError,
    Query,
    Unsubscribe,
)
from settings import Settings

logger = logging.getLogger(__name__)


def key(doc_id: str) -> Any:
    return ObjectId(doc_id) if ObjectId.is_valid(doc_id) else doc_id


def serialize(doc: Dict[str, Any]) -> Dict[str, Any]:
    if not doc:
        return doc
    d = {**doc}
    if "_id" in d:
        d["id"] = str(d.pop("_id"))
    for k, v in list(d.items()):
        if isinstance(v, datetime) and v.tzinfo is None:
            d[k] = v.replace(tzinfo=timezone.utc)
        if isinstance(v, ObjectId):
            d[k] = str(v)
    return d


def to_mongo_filter(query: Query) -> Dict[str, Any]:
    spec: Dict[str, Any] = {}
    for field_name, op, value in query.filters:
        # Equality on an array field already means "contains" in MongoDB
        if op in (EQ, ARRAY_CONTAINS):
            spec[field_name] = value
    return spec


def to_stream_pipeline(query: Query) -> List[Dict[str, Any]]:
    """Server-side filter for a live query's change stream.

    Passes events for matching documents plus any event that could take a
    visible document out of the result.
    """
    match = to_mongo_filter(query)
    if not match:
        return []
    clauses: List[Dict[str, Any]] = [
        {"operationType": {"$in": ["delete", "replace"]}},
        {f"fullDocument.{field_name}": value for field_name, value in match.items()},
    ]
    for field_name in match:
        clauses.append({f"updateDescription.updatedFields.{field_name}": {"$exists": True}})
        clauses.append({"updateDescription.removedFields": field_name})
    return [{"$match": {"$or": clauses}}]


def to_mongo_sort(query: Query) -> Optional[List[Any]]:
    if not query.order_by:
        return None
    field_name, direction = query.order_by
    return [(field_name, DESCENDING if direction == "desc" else ASCENDING)]


def to_mongo_update(data: Dict[str, Any], now: Optional[datetime] = None) -> Dict[str, Any]:
    now = now or datetime.now(timezone.utc)
    update: Dict[str, Dict[str, Any]] = {}
    for field_name, value in data.items():
        if value is SERVER_TIMESTAMP:
            update.setdefault("$set", {})[field_name] = now
        elif isinstance(value, ArrayUnion):
            update.setdefault("$addToSet", {})[field_name] = {"$each": value.values}
        elif isinstance(value, ArrayRemove):
            update.setdefault("$pull", {})[field_name] = {"$in": value.values}
        else:
            update.setdefault("$set", {})[field_name] = value
    return update


def to_mongo_document(data: Dict[str, Any], now: Optional[datetime] = None) -> Dict[str, Any]:
    now = now or datetime.now(timezone.utc)
    doc: Dict[str, Any] = {}
    for field_name, value in data.items():
        if value is SERVER_TIMESTAMP:
            doc[field_name] = now
        elif isinstance(value, ArrayUnion):
            doc[field_name] = list(value.values)
        elif isinstance(value, ArrayRemove):
            doc[field_name] = []
        else:
            doc[field_name] = value
    return doc


class MongoDocumentStore(DocumentStore):
    def __init__(self, db: Database, max_await_ms: int = 500):
        self.db = db
        self.max_await_ms = max_await_ms

    @classmethod
    def from_settings(cls, settings: Settings) -> "MongoDocumentStore":
        client = MongoClient(settings.DATABASE_URL)
        return cls(client[settings.DATABASE_NAME or "workspace"])

    async def create(self, collection_name: str, data: Dict[str, Any]) -> str:
        res = await asyncio.to_thread(self.db[collection_name].insert_one, to_mongo_document(data))
        return str(res.inserted_id)

    async def get(self, collection_name: str, doc_id: str) -> Optional[Dict[str, Any]]:
        doc = await asyncio.to_thread(self.db[collection_name].find_one, {"_id": key(doc_id)})
        return serialize(doc) if doc else None

    async def update(self, collection_name: str, doc_id: str, data: Dict[str, Any]) -> None:
        res = await asyncio.to_thread(self.db[collection_name].update_one, {"_id": key(doc_id)}, to_mongo_update(data))
        if res.matched_count == 0:
            raise KeyError(f"No document {collection_name}/{doc_id}")

    async def set(self, collection_name: str, doc_id: str, data: Dict[str, Any], merge: bool = True) -> None:
        coll = self.db[collection_name]
        if merge:
            await asyncio.to_thread(coll.update_one, {"_id": key(doc_id)}, to_mongo_update(data), upsert=True)
        else:
            await asyncio.to_thread(coll.replace_one, {"_id": key(doc_id)}, to_mongo_document(data), upsert=True)

    async def delete(self, collection_name: str, doc_id: str) -> None:
        await asyncio.to_thread(self.db[collection_name].delete_one, {"_id": key(doc_id)})

    async def find(self, query: Query) -> List[Dict[str, Any]]:
        def run() -> List[Dict[str, Any]]:
            cursor = self.db[query.collection].find(to_mongo_filter(query), sort=to_mongo_sort(query))
            return [serialize(doc) for doc in cursor]

        return await asyncio.to_thread(run)

    def watch(self, query: Query, on_changes: OnChanges, on_error: Optional[OnError] = None) -> Unsubscribe:
        loop = asyncio.get_running_loop()
        stop = threading.Event()

        def deliver(changes: List[DocumentChange]) -> None:
            if not stop.is_set():
                on_changes(changes)

        def fail(exc: Exception) -> None:
            if not stop.is_set() and on_error is not None:
                on_error(exc)

        def run() -> None:
            coll = self.db[query.collection]
            try:
                # Open the stream before the snapshot so nothing falls in between
                with coll.watch(
                    to_stream_pipeline(query), full_document="updateLookup", max_await_time_ms=self.max_await_ms
                ) as stream:
                    docs = [serialize(doc) for doc in coll.find(to_mongo_filter(query), sort=to_mongo_sort(query))]
                    visible = {doc["id"] for doc in docs}
                    loop.call_soon_threadsafe(
                        deliver, [DocumentChange(ChangeType.ADDED, doc["id"], doc) for doc in docs]
                    )
                    while not stop.is_set() and stream.alive:
                        event = stream.try_next()
                        if event is None:
                            continue
                        change = translate_event(event, query, visible)
                        if change is not None:
                            loop.call_soon_threadsafe(deliver, [change])
            except PyMongoError as exc:
                logger.warning("Change stream on %s failed: %s", query.collection, exc)
                loop.call_soon_threadsafe(fail, exc)

        thread = threading.Thread(target=run, name=f"watch-{query.collection}", daemon=True)
        thread.start()

        def unsubscribe() -> None:
            stop.set()

        return unsubscribe


def translate_event(event: Dict[str, Any], query: Query, visible: set) -> Optional[DocumentChange]:
    """Turn one change-stream event into a change for this live query, tracking which ids it shows."""
    op = event.get("operationType")
    doc_id = str(event.get("documentKey", {}).get("_id"))
    full = event.get("fullDocument")
    if op in ("insert", "update", "replace") and full is not None and query.matches(full):
        change_type = ChangeType.MODIFIED if doc_id in visible else ChangeType.ADDED
        visible.add(doc_id)
        return DocumentChange(change_type, doc_id, serialize(full))
    if op in ("insert", "update", "replace", "delete") and doc_id in visible:
        visible.discard(doc_id)
        return DocumentChange(ChangeType.REMOVED, doc_id, {"id": doc_id})
    return None
