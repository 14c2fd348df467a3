"""
Live subscriptions feeding the entity store.

At most one live query is open per (collection, scope) key. Task streams are
opened per project the first time the project is touched; chat streams when
a project's chat is first opened. Every applied batch fans out a
``DataChanged`` signal to registered listeners.

A failed stream is retried with exponential backoff. Before it is reopened
the store forgets what that stream delivered, so documents removed while the
stream was down do not linger.
"""
import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, List, Optional, Set, Tuple

from database import ARRAY_CONTAINS, EQ, DocumentChange, DocumentStore, Query, Unsubscribe, collection
from schemas import CHAT, INBOX, NOTES, PROJECTS, TASKS
from settings import Settings
from store import EntityStore
from toasts import ToastCenter

logger = logging.getLogger(__name__)

Key = Tuple[str, str]


class SubscriptionState(str, Enum):
    UNSUBSCRIBED = "unsubscribed"
    SUBSCRIBING = "subscribing"
    ACTIVE = "active"
    RETRYING = "retrying"


@dataclass(frozen=True)
class DataChanged:
    collection: str
    scope: str


ALL_CHANGED = DataChanged("all", "")


@dataclass
class _Subscription:
    key: Key
    query: Query
    apply: Callable[[List[DocumentChange]], None]
    state: SubscriptionState = SubscriptionState.SUBSCRIBING
    unsubscribe: Optional[Unsubscribe] = None
    attempts: int = 0
    retry_handle: Optional[asyncio.TimerHandle] = None
    resync_ids: Optional[Set[str]] = None
    closed: bool = False


class SubscriptionManager:
    def __init__(
        self,
        backend: DocumentStore,
        store: EntityStore,
        settings: Settings,
        toasts: Optional[ToastCenter] = None,
    ):
        self.backend = backend
        self.store = store
        self.settings = settings
        self.toasts = toasts
        self._subs: Dict[Key, _Subscription] = {}
        self._listeners: List[Callable[[DataChanged], None]] = []

    # -----------------------------
    # Listeners
    # -----------------------------
    def add_listener(self, listener: Callable[[DataChanged], None]) -> Callable[[], None]:
        self._listeners.append(listener)

        def remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return remove

    def _emit(self, signal: DataChanged) -> None:
        for listener in list(self._listeners):
            try:
                listener(signal)
            except Exception:
                logger.exception("Change listener failed for %s", signal)

    # -----------------------------
    # Introspection
    # -----------------------------
    def state(self, collection_name: str, scope: str) -> SubscriptionState:
        sub = self._subs.get((collection_name, scope))
        return sub.state if sub else SubscriptionState.UNSUBSCRIBED

    def active_keys(self) -> List[Key]:
        return [k for k, s in self._subs.items() if s.state != SubscriptionState.UNSUBSCRIBED]

    # -----------------------------
    # Opening streams
    # -----------------------------
    def start(self, uid: str) -> None:
        self.ensure_projects(uid)
        self.ensure_notes(uid)
        self.ensure_inbox(uid)

    def ensure_projects(self, uid: str) -> None:
        query = collection(PROJECTS).where("member_ids", ARRAY_CONTAINS, uid)
        self._open((PROJECTS, uid), query, self._apply_projects)

    def ensure_tasks(self, project_id: str) -> None:
        query = collection(TASKS).where("project_id", EQ, project_id)
        self._open((TASKS, project_id), query, lambda changes: self.store.apply_task_changes(project_id, changes))

    def ensure_notes(self, uid: str) -> None:
        query = collection(NOTES).where("user_id", EQ, uid)
        self._open((NOTES, uid), query, self.store.apply_note_changes)

    def ensure_inbox(self, uid: str) -> None:
        query = collection(INBOX).where("to_uid", EQ, uid).ordered("created_at", "desc")
        self._open((INBOX, uid), query, self.store.apply_inbox_changes)

    def ensure_chat(self, project_id: str) -> None:
        query = collection(CHAT).where("project_id", EQ, project_id).ordered("created_at")
        self._open((CHAT, project_id), query, lambda changes: self.store.apply_chat_changes(project_id, changes))

    def _apply_projects(self, changes: List[DocumentChange]) -> None:
        removed = self.store.apply_project_changes(changes)
        for project_id in removed:
            self._close_project_streams(project_id)
        for change in changes:
            if change.id in self.store.projects:
                self.ensure_tasks(change.id)

    def _open(self, key: Key, query: Query, apply: Callable[[List[DocumentChange]], None]) -> None:
        current = self._subs.get(key)
        if current is not None and current.state != SubscriptionState.UNSUBSCRIBED:
            return
        sub = _Subscription(key=key, query=query, apply=apply)
        self._subs[key] = sub
        self._watch(sub)

    def _watch(self, sub: _Subscription) -> None:
        sub.state = SubscriptionState.SUBSCRIBING
        logger.debug("Subscribing to %s/%s", *sub.key)
        try:
            unsubscribe = self.backend.watch(
                sub.query,
                lambda changes: self._on_changes(sub, changes),
                lambda exc: self._on_error(sub, exc),
            )
        except Exception as exc:
            self._on_error(sub, exc)
            return
        if sub.closed or sub.state in (SubscriptionState.RETRYING, SubscriptionState.UNSUBSCRIBED):
            unsubscribe()
        else:
            sub.unsubscribe = unsubscribe

    def _current(self, sub: _Subscription) -> bool:
        return not sub.closed and self._subs.get(sub.key) is sub

    def _on_changes(self, sub: _Subscription, changes: List[DocumentChange]) -> None:
        if not self._current(sub):
            return
        sub.state = SubscriptionState.ACTIVE
        sub.attempts = 0
        sub.apply(changes)
        if sub.resync_ids is not None:
            stale = sub.resync_ids - set(self.store.projects)
            sub.resync_ids = None
            for project_id in stale:
                self.store.drop_project(project_id)
                self._close_project_streams(project_id)
        self._emit(DataChanged(*sub.key))

    # -----------------------------
    # Failure recovery
    # -----------------------------
    def _on_error(self, sub: _Subscription, exc: Exception) -> None:
        if not self._current(sub):
            return
        collection_name, scope = sub.key
        if sub.unsubscribe is not None:
            try:
                sub.unsubscribe()
            except Exception:
                logger.exception("Closing failed stream %s/%s", collection_name, scope)
            sub.unsubscribe = None
        sub.attempts += 1
        if sub.attempts > self.settings.RESUBSCRIBE_MAX_ATTEMPTS:
            logger.error("Giving up on %s/%s after %d attempts: %s", collection_name, scope, sub.attempts - 1, exc)
            sub.state = SubscriptionState.UNSUBSCRIBED
            if self.toasts is not None:
                self.toasts.error("Live updates stopped; reload to reconnect")
            return
        delay = min(
            self.settings.RESUBSCRIBE_BASE_DELAY * 2 ** (sub.attempts - 1),
            self.settings.RESUBSCRIBE_MAX_DELAY,
        )
        logger.warning("Stream %s/%s failed (%s); retrying in %.1fs", collection_name, scope, exc, delay)
        sub.state = SubscriptionState.RETRYING
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.error("No running loop to retry %s/%s", collection_name, scope)
            sub.state = SubscriptionState.UNSUBSCRIBED
            return
        sub.retry_handle = loop.call_later(delay, self._reopen, sub)

    def _reopen(self, sub: _Subscription) -> None:
        sub.retry_handle = None
        if not self._current(sub):
            return
        collection_name, scope = sub.key
        if collection_name == PROJECTS:
            sub.resync_ids = set(self.store.projects)
        self.store.reset_scope(collection_name, scope)
        self._watch(sub)

    # -----------------------------
    # Closing streams
    # -----------------------------
    def close(self, collection_name: str, scope: str) -> None:
        sub = self._subs.pop((collection_name, scope), None)
        if sub is None:
            return
        sub.closed = True
        sub.state = SubscriptionState.UNSUBSCRIBED
        if sub.retry_handle is not None:
            sub.retry_handle.cancel()
        if sub.unsubscribe is not None:
            try:
                sub.unsubscribe()
            except Exception:
                logger.exception("Unsubscribing %s/%s failed", collection_name, scope)

    def _close_project_streams(self, project_id: str) -> None:
        self.close(TASKS, project_id)
        self.close(CHAT, project_id)

    def teardown(self) -> None:
        """Close every stream and clear the store; nothing survives a user switch."""
        for collection_name, scope in list(self._subs):
            self.close(collection_name, scope)
        self.store.clear()
        self._emit(ALL_CHANGED)
