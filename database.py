"""
Document store contract used by the workspace.

Any backend that offers create / point read / partial update / delete and
live queries (equality and array-contains filters, one sort key) can sit
behind :class:`DocumentStore`. Live queries deliver an initial snapshot as a
batch of ``added`` changes, then incremental batches until unsubscribed.
"""
import copy
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple

from bson import ObjectId

logger = logging.getLogger(__name__)


# -----------------------------
# Field sentinels
# -----------------------------
class _ServerTimestamp:
    def __repr__(self) -> str:
        return "SERVER_TIMESTAMP"


SERVER_TIMESTAMP = _ServerTimestamp()


class ArrayUnion:
    """Atomically add values to an array field, skipping ones already present."""

    def __init__(self, *values: Any):
        self.values = list(values)


class ArrayRemove:
    """Atomically remove every occurrence of the values from an array field."""

    def __init__(self, *values: Any):
        self.values = list(values)


# -----------------------------
# Queries and changes
# -----------------------------
EQ = "=="
ARRAY_CONTAINS = "array-contains"


@dataclass(frozen=True)
class Query:
    collection: str
    filters: Tuple[Tuple[str, str, Any], ...] = ()
    order_by: Optional[Tuple[str, str]] = None

    def where(self, field_name: str, op: str, value: Any) -> "Query":
        if op not in (EQ, ARRAY_CONTAINS):
            raise ValueError(f"Unsupported operator {op!r}")
        return Query(self.collection, self.filters + ((field_name, op, value),), self.order_by)

    def ordered(self, field_name: str, direction: str = "asc") -> "Query":
        return Query(self.collection, self.filters, (field_name, direction))

    def matches(self, doc: Dict[str, Any]) -> bool:
        for field_name, op, value in self.filters:
            current = doc.get(field_name)
            if op == EQ and current != value:
                return False
            if op == ARRAY_CONTAINS and (not isinstance(current, list) or value not in current):
                return False
        return True

    def sort(self, docs: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        if not self.order_by:
            return docs
        field_name, direction = self.order_by
        # Missing values sort first, like an absent field in an ascending index
        return sorted(
            docs,
            key=lambda d: (d.get(field_name) is not None, _sort_value(d.get(field_name))),
            reverse=direction == "desc",
        )


def _sort_value(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.timestamp()
    if value is None:
        return 0
    return value


def collection(name: str) -> Query:
    return Query(name)


class ChangeType(str, Enum):
    ADDED = "added"
    MODIFIED = "modified"
    REMOVED = "removed"


@dataclass
class DocumentChange:
    type: ChangeType
    id: str
    data: Dict[str, Any] = field(default_factory=dict)


OnChanges = Callable[[List[DocumentChange]], None]
OnError = Callable[[Exception], None]
Unsubscribe = Callable[[], None]


class DocumentStore:
    """Capability contract of the hosted document database."""

    async def create(self, collection_name: str, data: Dict[str, Any]) -> str:
        raise NotImplementedError

    async def get(self, collection_name: str, doc_id: str) -> Optional[Dict[str, Any]]:
        raise NotImplementedError

    async def update(self, collection_name: str, doc_id: str, data: Dict[str, Any]) -> None:
        """Merge the given fields into an existing document."""
        raise NotImplementedError

    async def set(self, collection_name: str, doc_id: str, data: Dict[str, Any], merge: bool = True) -> None:
        raise NotImplementedError

    async def delete(self, collection_name: str, doc_id: str) -> None:
        raise NotImplementedError

    async def find(self, query: Query) -> List[Dict[str, Any]]:
        raise NotImplementedError

    def watch(self, query: Query, on_changes: OnChanges, on_error: Optional[OnError] = None) -> Unsubscribe:
        raise NotImplementedError


def new_id() -> str:
    return str(ObjectId())


def apply_field_update(doc: Dict[str, Any], key: str, value: Any, now: datetime) -> None:
    """Write one field into ``doc`` resolving sentinels."""
    if value is SERVER_TIMESTAMP:
        doc[key] = now
    elif isinstance(value, ArrayUnion):
        current = list(doc.get(key) or [])
        for item in value.values:
            if item not in current:
                current.append(copy.deepcopy(item))
        doc[key] = current
    elif isinstance(value, ArrayRemove):
        doc[key] = [item for item in (doc.get(key) or []) if item not in value.values]
    else:
        doc[key] = copy.deepcopy(value)


# -----------------------------
# In-memory store
# -----------------------------
@dataclass
class _Watch:
    query: Query
    on_changes: OnChanges
    on_error: Optional[OnError]
    visible: set = field(default_factory=set)
    active: bool = True


class InMemoryDocumentStore(DocumentStore):
    """
    Process-local store with live queries.

    Change batches are delivered synchronously at the end of every write, in
    write order. ``fail_watches`` injects a delivery failure into every live
    query on a collection, and ``fail_writes`` makes the next writes raise.
    """

    def __init__(self):
        self.collections: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self._watches: List[_Watch] = []
        self.write_failures: List[Exception] = []
        self.writes: List[Tuple[str, str, str]] = []

    def _docs(self, collection_name: str) -> Dict[str, Dict[str, Any]]:
        return self.collections.setdefault(collection_name, {})

    def _check_write(self, op: str, collection_name: str, doc_id: str) -> None:
        if self.write_failures:
            raise self.write_failures.pop(0)
        self.writes.append((op, collection_name, doc_id))

    def _snapshot(self, collection_name: str, doc_id: str) -> Optional[Dict[str, Any]]:
        doc = self._docs(collection_name).get(doc_id)
        if doc is None:
            return None
        return {**copy.deepcopy(doc), "id": doc_id}

    async def create(self, collection_name: str, data: Dict[str, Any]) -> str:
        doc_id = new_id()
        self._check_write("create", collection_name, doc_id)
        now = datetime.now(timezone.utc)
        doc: Dict[str, Any] = {}
        for key, value in data.items():
            apply_field_update(doc, key, value, now)
        self._docs(collection_name)[doc_id] = doc
        self._notify(collection_name, doc_id)
        return doc_id

    async def get(self, collection_name: str, doc_id: str) -> Optional[Dict[str, Any]]:
        return self._snapshot(collection_name, doc_id)

    async def update(self, collection_name: str, doc_id: str, data: Dict[str, Any]) -> None:
        docs = self._docs(collection_name)
        if doc_id not in docs:
            raise KeyError(f"No document {collection_name}/{doc_id}")
        self._check_write("update", collection_name, doc_id)
        now = datetime.now(timezone.utc)
        for key, value in data.items():
            apply_field_update(docs[doc_id], key, value, now)
        self._notify(collection_name, doc_id)

    async def set(self, collection_name: str, doc_id: str, data: Dict[str, Any], merge: bool = True) -> None:
        self._check_write("set", collection_name, doc_id)
        docs = self._docs(collection_name)
        doc = docs.get(doc_id) if merge else None
        doc = doc if doc is not None else {}
        now = datetime.now(timezone.utc)
        for key, value in data.items():
            apply_field_update(doc, key, value, now)
        docs[doc_id] = doc
        self._notify(collection_name, doc_id)

    async def delete(self, collection_name: str, doc_id: str) -> None:
        self._check_write("delete", collection_name, doc_id)
        self._docs(collection_name).pop(doc_id, None)
        self._notify(collection_name, doc_id)

    async def find(self, query: Query) -> List[Dict[str, Any]]:
        docs = [
            self._snapshot(query.collection, doc_id)
            for doc_id, doc in self._docs(query.collection).items()
            if query.matches(doc)
        ]
        return query.sort(docs)

    def watch(self, query: Query, on_changes: OnChanges, on_error: Optional[OnError] = None) -> Unsubscribe:
        w = _Watch(query, on_changes, on_error)
        self._watches.append(w)
        initial = query.sort([
            self._snapshot(query.collection, doc_id)
            for doc_id, raw in self._docs(query.collection).items()
            if query.matches(raw)
        ])
        w.visible = {doc["id"] for doc in initial}
        on_changes([DocumentChange(ChangeType.ADDED, doc["id"], doc) for doc in initial])

        def unsubscribe() -> None:
            w.active = False
            if w in self._watches:
                self._watches.remove(w)

        return unsubscribe

    def fail_watches(self, collection_name: str, error: Optional[Exception] = None) -> int:
        """Break every live query on a collection; returns how many were hit."""
        error = error or ConnectionError(f"stream for {collection_name} dropped")
        hit = [w for w in self._watches if w.query.collection == collection_name]
        for w in hit:
            w.active = False
            self._watches.remove(w)
            if w.on_error is not None:
                w.on_error(error)
        return len(hit)

    def watch_count(self, collection_name: Optional[str] = None) -> int:
        return len([w for w in self._watches if collection_name in (None, w.query.collection)])

    def _notify(self, collection_name: str, doc_id: str) -> None:
        raw = self._docs(collection_name).get(doc_id)
        for w in list(self._watches):
            if not w.active or w.query.collection != collection_name:
                continue
            was_visible = doc_id in w.visible
            now_visible = raw is not None and w.query.matches(raw)
            if now_visible:
                change_type = ChangeType.MODIFIED if was_visible else ChangeType.ADDED
                w.visible.add(doc_id)
                change = DocumentChange(change_type, doc_id, self._snapshot(collection_name, doc_id))
            elif was_visible:
                w.visible.discard(doc_id)
                change = DocumentChange(ChangeType.REMOVED, doc_id, {"id": doc_id})
            else:
                continue
            try:
                w.on_changes([change])
            except Exception:
                logger.exception("Live query callback failed for %s/%s", collection_name, doc_id)


# -----------------------------
# Helpers
# -----------------------------
async def create_document(store: DocumentStore, collection_name: str, data: Dict[str, Any]) -> str:
    return await store.create(collection_name, data)


async def get_documents(store: DocumentStore, collection_name: str, **filters: Any) -> List[Dict[str, Any]]:
    query = collection(collection_name)
    for key, value in filters.items():
        query = query.where(key, EQ, value)
    return await store.find(query)
