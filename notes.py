"""Personal notes, project chat and the mention inbox."""
import logging
from typing import Optional

from commands import guarded
from database import SERVER_TIMESTAMP, DocumentStore
from errors import NotFound, ValidationFailed, WorkspaceError
from scheduling import Debouncer
from schemas import CHAT, INBOX, NOTES, Identity
from settings import Settings
from store import EntityStore
from toasts import ToastCenter

logger = logging.getLogger(__name__)

DEFAULT_NOTE_TITLE = "New note"


# -----------------------------
# Notes
# -----------------------------
async def create_note(backend: DocumentStore, user: Identity, title: Optional[str] = None) -> str:
    doc = {
        "user_id": user.uid,
        "title": (title or "").strip() or DEFAULT_NOTE_TITLE,
        "body": "",
        "created_at": SERVER_TIMESTAMP,
        "updated_at": SERVER_TIMESTAMP,
    }
    return await guarded(backend.create(NOTES, doc), "Could not create the note")


async def delete_note(backend: DocumentStore, note_id: str) -> None:
    await guarded(backend.delete(NOTES, note_id), "Could not delete the note")


class NoteEditor:
    """Debounced editor for one note; the latest title and body win."""

    def __init__(
        self,
        backend: DocumentStore,
        store: EntityStore,
        settings: Settings,
        note_id: str,
        toasts: Optional[ToastCenter] = None,
    ):
        note = store.notes.get(note_id)
        if note is None:
            raise NotFound("Note not found")
        self.backend = backend
        self.note_id = note_id
        self.toasts = toasts
        self.title = note.title
        self.body = note.body
        self._save = Debouncer(settings.NOTE_DEBOUNCE, self._write, f"note:{note_id}")

    def edit(self, title: Optional[str] = None, body: Optional[str] = None) -> None:
        if title is not None:
            self.title = title
        if body is not None:
            self.body = body
        self._save.schedule()

    @property
    def pending(self) -> bool:
        return self._save.pending or self._save.running

    async def _write(self) -> None:
        try:
            await guarded(
                self.backend.update(NOTES, self.note_id, {
                    "title": self.title,
                    "body": self.body,
                    "updated_at": SERVER_TIMESTAMP,
                }),
                "Could not save the note",
            )
        except WorkspaceError as exc:
            if self.toasts is not None:
                self.toasts.error(exc.detail)

    async def flush(self) -> None:
        await self._save.flush()

    def cancel(self) -> None:
        self._save.cancel()


# -----------------------------
# Chat
# -----------------------------
async def send_chat_message(backend: DocumentStore, user: Identity, project_id: str, text: str) -> str:
    text = (text or "").strip()
    if not text:
        raise ValidationFailed("Message is empty")
    doc = {
        "project_id": project_id,
        "sender_id": user.uid,
        "sender_name": user.display_name,
        "text": text,
        "created_at": SERVER_TIMESTAMP,
    }
    return await guarded(backend.create(CHAT, doc), "Could not send the message")


# -----------------------------
# Inbox
# -----------------------------
async def mark_read(backend: DocumentStore, item_id: str) -> None:
    await guarded(backend.update(INBOX, item_id, {"read": True}), "Could not update the inbox")


async def mark_all_read(backend: DocumentStore, store: EntityStore) -> int:
    unread = [item.id for item in store.inbox_items() if not item.read]
    for item_id in unread:
        await mark_read(backend, item_id)
    return len(unread)
