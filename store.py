"""
In-memory entity store.

Holds the latest known state of every subscribed document. Only the
subscription manager writes here; everything else reads. Ingestion validates
raw documents into schema models, which is where timestamps are normalised.
"""
import logging
from datetime import datetime, timezone
from typing import Dict, Iterable, List, Optional, Type, TypeVar

from pydantic import BaseModel, ValidationError

from database import ChangeType, DocumentChange
from schemas import ChatMessage, InboxItem, Note, Project, Task

logger = logging.getLogger(__name__)

M = TypeVar("M", bound=BaseModel)

_EPOCH = datetime.min.replace(tzinfo=timezone.utc)


def _ingest(model: Type[M], change: DocumentChange) -> Optional[M]:
    try:
        return model.model_validate({**change.data, "id": change.id})
    except ValidationError as exc:
        logger.warning("Dropping malformed %s %s: %s", model.__name__, change.id, exc.errors()[:3])
        return None


class EntityStore:
    def __init__(self):
        self.projects: Dict[str, Project] = {}
        self.tasks: Dict[str, Dict[str, Task]] = {}
        self.notes: Dict[str, Note] = {}
        self.inbox: Dict[str, InboxItem] = {}
        self.chat: Dict[str, Dict[str, ChatMessage]] = {}

    # -----------------------------
    # Change application
    # -----------------------------
    def _apply(self, bucket: Dict[str, M], model: Type[M], changes: Iterable[DocumentChange]) -> None:
        for change in changes:
            if change.type == ChangeType.REMOVED:
                bucket.pop(change.id, None)
                continue
            entity = _ingest(model, change)
            if entity is not None:
                bucket[change.id] = entity

    def apply_project_changes(self, changes: Iterable[DocumentChange]) -> List[str]:
        """Apply project changes; returns ids of projects that went away."""
        removed: List[str] = []
        for change in changes:
            if change.type == ChangeType.REMOVED:
                self.drop_project(change.id)
                removed.append(change.id)
                continue
            project = _ingest(Project, change)
            if project is None:
                continue
            if not project.membership_consistent():
                logger.warning("Project %s has inconsistent membership", project.id)
            self.projects[project.id] = project
        return removed

    def apply_task_changes(self, project_id: str, changes: Iterable[DocumentChange]) -> None:
        self._apply(self.tasks.setdefault(project_id, {}), Task, changes)

    def apply_note_changes(self, changes: Iterable[DocumentChange]) -> None:
        self._apply(self.notes, Note, changes)

    def apply_inbox_changes(self, changes: Iterable[DocumentChange]) -> None:
        self._apply(self.inbox, InboxItem, changes)

    def apply_chat_changes(self, project_id: str, changes: Iterable[DocumentChange]) -> None:
        self._apply(self.chat.setdefault(project_id, {}), ChatMessage, changes)

    def drop_project(self, project_id: str) -> None:
        self.projects.pop(project_id, None)
        self.tasks.pop(project_id, None)
        self.chat.pop(project_id, None)

    def reset_scope(self, collection_name: str, scope: str) -> None:
        """Forget everything a single live query delivered before it is reopened."""
        if collection_name == "projects":
            self.projects.clear()
        elif collection_name == "tasks":
            self.tasks.pop(scope, None)
        elif collection_name == "notes":
            self.notes.clear()
        elif collection_name == "inbox":
            self.inbox.clear()
        elif collection_name == "chat":
            self.chat.pop(scope, None)

    def clear(self) -> None:
        self.projects.clear()
        self.tasks.clear()
        self.notes.clear()
        self.inbox.clear()
        self.chat.clear()

    # -----------------------------
    # Readers
    # -----------------------------
    def get_project(self, project_id: Optional[str]) -> Optional[Project]:
        if project_id is None:
            return None
        return self.projects.get(project_id)

    def get_task(self, task_id: Optional[str]) -> Optional[Task]:
        if task_id is None:
            return None
        for project_tasks in self.tasks.values():
            if task_id in project_tasks:
                return project_tasks[task_id]
        return None

    def project_tasks(self, project_id: str) -> List[Task]:
        return list(self.tasks.get(project_id, {}).values())

    def all_project_tasks(self) -> List[Task]:
        return [t for project_tasks in self.tasks.values() for t in project_tasks.values()]

    def my_tasks(self, uid: str) -> List[Task]:
        """Tasks assigned to me, plus unassigned tasks in projects I own."""
        mine = []
        for t in self.all_project_tasks():
            project = self.projects.get(t.project_id)
            i_am_owner = project is not None and project.owner_id == uid
            if t.assignee_id == uid or (not t.assignee_id and i_am_owner):
                mine.append(t)
        return mine

    def active_projects(self) -> List[Project]:
        return [p for p in self.projects.values() if not p.archived]

    def archived_projects(self) -> List[Project]:
        return [p for p in self.projects.values() if p.archived]

    def sorted_notes(self) -> List[Note]:
        return sorted(self.notes.values(), key=lambda n: n.updated_at or _EPOCH, reverse=True)

    def inbox_items(self) -> List[InboxItem]:
        return sorted(self.inbox.values(), key=lambda i: i.created_at or _EPOCH, reverse=True)

    def unread_count(self) -> int:
        return sum(1 for item in self.inbox.values() if not item.read)

    def chat_messages(self, project_id: str) -> List[ChatMessage]:
        return sorted(self.chat.get(project_id, {}).values(), key=lambda m: m.created_at or _EPOCH)
