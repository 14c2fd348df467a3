"""
Task editing session.

Field edits land in a local draft and are autosaved after a quiet period;
comments and attachments are committed straight away against the latest
persisted task.
"""
import asyncio
import base64
import logging
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Iterable, List, Optional

from pydantic import BaseModel, Field, field_validator

from commands import update_task
from database import DocumentStore
from errors import AttachmentTooLarge, BackendError, NotFound, ValidationFailed, WorkspaceError
from mentions import dispatch_mentions
from scheduling import Debouncer
from schemas import PRIORITIES, TASK_STATUSES, ChecklistItem, Identity, Project, Task, TaskStatus
from settings import Settings
from store import EntityStore
from toasts import ToastCenter
from views import PRIORITY_LABELS

logger = logging.getLogger(__name__)


class SaveState(str, Enum):
    IDLE = "idle"
    DIRTY = "dirty"
    SAVING = "saving"
    SAVED = "saved"
    ERROR = "error"


class TaskDraft(BaseModel):
    title: str = ""
    description: str = ""
    priority: str = "medium"
    due_date: Optional[str] = None
    start_date: Optional[str] = None
    column_id: Optional[str] = None
    status: Optional[TaskStatus] = None
    assignee_id: Optional[str] = None
    assignee_name: Optional[str] = None
    checklist: List[ChecklistItem] = Field(default_factory=list)

    @field_validator("status", mode="before")
    @classmethod
    def _known_status(cls, value: Any) -> Optional[str]:
        # Legacy tasks carry no status, or one written by older clients
        return value if value in TASK_STATUSES else None

    @classmethod
    def from_task(cls, task: Task) -> "TaskDraft":
        return cls.model_validate(task.model_dump(include=set(cls.model_fields)))


EDITABLE_FIELDS = frozenset(TaskDraft.model_fields) - {"checklist", "assignee_name"}


class Upload(BaseModel):
    """A file picked or pasted by the user, before it is inlined into the task."""
    name: str
    mime_type: str = "application/octet-stream"
    data: bytes

    @property
    def size(self) -> int:
        return len(self.data)

    def data_url(self) -> str:
        return f"data:{self.mime_type};base64,{base64.b64encode(self.data).decode('ascii')}"


def describe_changes(before: Task, after: TaskDraft, project: Optional[Project]) -> List[str]:
    """One history action per changed tracked field."""
    actions = []
    if after.title != before.title:
        actions.append(f'Changed title to "{after.title}"')
    if after.priority != before.priority:
        actions.append(f"Changed priority to {PRIORITY_LABELS.get(after.priority, after.priority)}")
    if after.column_id != before.column_id:
        column = project.column(after.column_id) if project else None
        actions.append(f'Moved to column "{column.name if column else "—"}"')
    if after.status != before.status:
        actions.append("Marked as done" if after.status == "done" else "Reopened")
    if after.due_date != before.due_date:
        actions.append(f"Set due date to {after.due_date}" if after.due_date else "Cleared due date")
    if after.start_date != before.start_date:
        actions.append(f"Set start date to {after.start_date}" if after.start_date else "Cleared start date")
    if after.assignee_id != before.assignee_id:
        actions.append(f"Assigned to {after.assignee_name or 'User'}" if after.assignee_id else "Unassigned")
    return actions


class TaskEditingSession:
    def __init__(
        self,
        backend: DocumentStore,
        store: EntityStore,
        settings: Settings,
        user: Identity,
        task_id: str,
        toasts: Optional[ToastCenter] = None,
    ):
        task = store.get_task(task_id)
        if task is None:
            raise NotFound("Task not found")
        self.backend = backend
        self.store = store
        self.settings = settings
        self.user = user
        self.task_id = task_id
        self.project_id = task.project_id
        self.toasts = toasts
        self.draft = TaskDraft.from_task(task)
        self.state = SaveState.IDLE
        self.closed = False
        self._autosave = Debouncer(settings.AUTOSAVE_DEBOUNCE, self._autosave_run, f"autosave:{task_id}")
        self._idle_handle: Optional[asyncio.TimerHandle] = None

    @property
    def task(self) -> Optional[Task]:
        return self.store.get_task(self.task_id)

    @property
    def project(self) -> Optional[Project]:
        return self.store.get_project(self.project_id)

    def _persisted(self) -> Task:
        task = self.task
        if task is None:
            raise NotFound("Task not found")
        return task

    def _toast_error(self, message: str) -> None:
        if self.toasts is not None:
            self.toasts.error(message)

    # -----------------------------
    # Draft edits
    # -----------------------------
    def _touch(self) -> None:
        if self.closed:
            return
        if self._idle_handle is not None:
            self._idle_handle.cancel()
            self._idle_handle = None
        self.state = SaveState.DIRTY
        self._autosave.schedule()

    def update(self, **fields: Any) -> None:
        unknown = set(fields) - EDITABLE_FIELDS
        if unknown:
            raise ValidationFailed(f"Unknown task fields: {', '.join(sorted(unknown))}")
        if "priority" in fields and fields["priority"] not in PRIORITIES:
            raise ValidationFailed("Unknown priority")
        if "status" in fields and fields["status"] not in TASK_STATUSES:
            raise ValidationFailed("Unknown status")
        for text_field in ("title", "description"):
            if text_field in fields:
                fields[text_field] = fields[text_field] or ""
        for date_field in ("due_date", "start_date"):
            if date_field in fields:
                fields[date_field] = fields[date_field] or None
        if "assignee_id" in fields:
            fields["assignee_id"] = fields["assignee_id"] or None
            project = self.project
            member = project.member(fields["assignee_id"]) if project else None
            self.draft.assignee_name = member.name if member else None
        for name, value in fields.items():
            setattr(self.draft, name, value)
        self._touch()

    def _item(self, index: int) -> ChecklistItem:
        if not 0 <= index < len(self.draft.checklist):
            raise NotFound("Checklist item not found")
        return self.draft.checklist[index]

    def add_item(self, text: str = "") -> int:
        self.draft.checklist.append(ChecklistItem(text=text))
        self._touch()
        return len(self.draft.checklist) - 1

    def set_item_text(self, index: int, text: str) -> None:
        self._item(index).text = text
        self._touch()

    def toggle_item(self, index: int) -> bool:
        item = self._item(index)
        item.done = not item.done
        self._touch()
        return item.done

    def remove_item(self, index: int) -> None:
        self._item(index)
        del self.draft.checklist[index]
        self._touch()

    # -----------------------------
    # Saving
    # -----------------------------
    async def _autosave_run(self) -> None:
        try:
            await self.save()
        except WorkspaceError as exc:
            self._toast_error(exc.detail)

    async def save(self) -> None:
        """Write the draft over the persisted task, logging what changed."""
        if self.closed:
            return
        self.state = SaveState.SAVING
        try:
            before = self._persisted()
            if not (self.draft.title or "").strip():
                self.draft.title = before.title
            actions = describe_changes(before, self.draft, self.project)
            await update_task(self.backend, before, self.draft.model_dump(), self.user, actions)
        except WorkspaceError:
            self.state = SaveState.ERROR
            raise
        except Exception as exc:
            self.state = SaveState.ERROR
            logger.exception("Task save failed", extra={"task_id": self.task_id})
            raise BackendError("Could not save the task", exc) from exc
        logger.debug("Task saved", extra={"task_id": self.task_id, "changes": len(actions)})
        if self._autosave.pending:
            self.state = SaveState.DIRTY
            return
        self.state = SaveState.SAVED
        self._idle_handle = asyncio.get_running_loop().call_later(
            self.settings.SAVED_INDICATOR_SECONDS, self._back_to_idle
        )

    def _back_to_idle(self) -> None:
        self._idle_handle = None
        if self.state == SaveState.SAVED:
            self.state = SaveState.IDLE

    async def flush(self) -> None:
        await self._autosave.flush()

    async def close(self, flush: bool = False) -> None:
        """End the session; pending edits are dropped unless ``flush`` is set."""
        if self.closed:
            return
        if flush:
            await self._autosave.flush()
        else:
            self._autosave.cancel()
        self.closed = True
        if self._idle_handle is not None:
            self._idle_handle.cancel()
            self._idle_handle = None

    # -----------------------------
    # Immediate commits
    # -----------------------------
    def _accept(self, files: Iterable[Upload]) -> List[Upload]:
        limit = self.settings.MAX_ATTACHMENT_BYTES
        accepted = []
        for f in files:
            if f.size > limit:
                err = AttachmentTooLarge(f.name, f.size, limit)
                logger.info("Rejected upload %s (%d bytes)", f.name, f.size)
                self._toast_error(err.detail)
                continue
            accepted.append(f)
        return accepted

    async def add_comment(self, text: str, images: Iterable[Upload] = ()) -> List[str]:
        """Post a comment and notify mentioned members; returns the notified uids."""
        text = (text or "").strip()
        images = self._accept(images)
        if not text and not images:
            raise ValidationFailed("Comment is empty")
        task = self._persisted()
        comment = {
            "text": text,
            "images": [{"name": img.name, "data_url": img.data_url()} for img in images],
            "author_id": self.user.uid,
            "author_name": self.user.display_name,
            "at": datetime.now(timezone.utc),
        }
        comments = [c.model_dump() for c in task.comments] + [comment]
        await update_task(self.backend, task, {"comments": comments}, self.user, ["Comment added"])
        try:
            return await dispatch_mentions(self.backend, text, task, self.project, self.user)
        except Exception:
            logger.exception("Mention notifications failed", extra={"task_id": self.task_id})
            self._toast_error("Could not notify mentioned people")
            return []

    async def delete_comment(self, index: int) -> None:
        task = self._persisted()
        if not 0 <= index < len(task.comments):
            raise NotFound("Comment not found")
        if task.comments[index].author_id != self.user.uid:
            raise ValidationFailed("You can only delete your own comments")
        comments = [c.model_dump() for i, c in enumerate(task.comments) if i != index]
        await update_task(self.backend, task, {"comments": comments}, self.user)

    async def add_attachments(self, files: Iterable[Upload]) -> int:
        """Inline the files that fit under the size cap; returns how many were stored."""
        accepted = self._accept(files)
        if not accepted:
            return 0
        task = self._persisted()
        attachments = [a.model_dump() for a in task.attachments] + [
            {"name": f.name, "url": f.data_url(), "mime_type": f.mime_type, "size_bytes": f.size}
            for f in accepted
        ]
        await update_task(self.backend, task, {"attachments": attachments}, self.user, ["Attachment added"])
        return len(accepted)

    async def remove_attachment(self, index: int) -> None:
        task = self._persisted()
        if not 0 <= index < len(task.attachments):
            raise NotFound("Attachment not found")
        removed = task.attachments[index]
        attachments = [a.model_dump() for i, a in enumerate(task.attachments) if i != index]
        await update_task(
            self.backend, task, {"attachments": attachments}, self.user, [f'Removed attachment "{removed.name}"']
        )
