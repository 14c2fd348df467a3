"""
Document schemas for the project workspace

Each Pydantic model mirrors one collection of the document store. Documents
are validated into these models when they enter the entity store, which is
also where every timestamp is normalised into a timezone-aware UTC datetime.
"""
from datetime import date, datetime, timezone
from typing import Annotated, Any, Dict, List, Literal, Optional

from pydantic import BaseModel, BeforeValidator, EmailStr, Field, field_validator

PROJECTS = "projects"
TASKS = "tasks"
NOTES = "notes"
INBOX = "inbox"
CHAT = "chat"
USERS = "users"

DEFAULT_COLOR = "#6B7C5C"


def to_timestamp(value: Any) -> Optional[datetime]:
    """Normalise any timestamp shape the backend hands out; unreadable values become None."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day, tzinfo=timezone.utc)
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        seconds = value / 1000 if abs(value) > 1e11 else value
        return datetime.fromtimestamp(seconds, tz=timezone.utc)
    if isinstance(value, str):
        try:
            parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return None
        return to_timestamp(parsed)
    if isinstance(value, dict) and "seconds" in value:
        seconds = value.get("seconds") or 0
        nanos = value.get("nanoseconds") or 0
        return datetime.fromtimestamp(seconds + nanos / 1e9, tz=timezone.utc)
    return None


Timestamp = Annotated[Optional[datetime], BeforeValidator(to_timestamp)]


def parse_day(value: Optional[str]) -> Optional[date]:
    """Parse a date-only ISO string; anything else is treated as no date."""
    if not value:
        return None
    try:
        return date.fromisoformat(str(value)[:10])
    except ValueError:
        return None


# Identity
class Identity(BaseModel):
    uid: str
    name: Optional[str] = None
    email: Optional[EmailStr] = None

    @property
    def display_name(self) -> str:
        return self.name or "User"


# Projects
MemberRole = Literal["owner", "member"]


class Member(BaseModel):
    uid: str
    name: str = ""
    email: Optional[str] = None
    role: MemberRole = "member"

    @property
    def first_name(self) -> str:
        return self.name.split(" ")[0] if self.name else ""


class Column(BaseModel):
    id: str
    name: str = ""
    color: str = DEFAULT_COLOR
    order: int = 0


class Project(BaseModel):
    id: str
    name: str = ""
    description: Optional[str] = None
    color: str = DEFAULT_COLOR
    deadline: Optional[str] = None
    owner_id: Optional[str] = None
    member_ids: List[str] = Field(default_factory=list, description="User ids that can access the project")
    members: List[Member] = Field(default_factory=list)
    columns: List[Column] = Field(default_factory=list)
    archived: bool = False
    created_at: Timestamp = None

    def sorted_columns(self) -> List[Column]:
        return sorted(self.columns, key=lambda c: c.order)

    def column(self, column_id: Optional[str]) -> Optional[Column]:
        for col in self.columns:
            if col.id == column_id:
                return col
        return None

    def member(self, uid: Optional[str]) -> Optional[Member]:
        for m in self.members:
            if m.uid == uid:
                return m
        return None

    def membership_consistent(self) -> bool:
        if set(self.member_ids) != {m.uid for m in self.members}:
            return False
        owner = self.member(self.owner_id)
        return owner is not None and owner.role == "owner"


# Tasks
TaskStatus = Literal["open", "done"]
Priority = Literal["high", "medium", "low"]
PRIORITIES = ("high", "medium", "low")
TASK_STATUSES = ("open", "done")


class ChecklistItem(BaseModel):
    text: str = ""
    done: bool = False


class Attachment(BaseModel):
    name: str
    url: str = Field("", description="Inline data URL")
    mime_type: str = ""
    size_bytes: int = 0


class CommentImage(BaseModel):
    name: str = "screenshot.png"
    data_url: str


class Comment(BaseModel):
    text: str = ""
    images: List[CommentImage] = Field(default_factory=list)
    author_id: Optional[str] = None
    author_name: str = ""
    at: Timestamp = None


class HistoryEntry(BaseModel):
    action: str
    by: str = ""
    at: Timestamp = None


class Task(BaseModel):
    id: str
    project_id: str
    column_id: Optional[str] = None
    title: str = ""
    description: str = ""
    status: Optional[str] = Field(None, description="open | done; absent on legacy tasks")
    priority: Priority = "medium"
    due_date: Optional[str] = Field(None, description="ISO date string")
    start_date: Optional[str] = Field(None, description="ISO date string")
    assignee_id: Optional[str] = None
    assignee_name: Optional[str] = None
    checklist: List[ChecklistItem] = Field(default_factory=list)
    attachments: List[Attachment] = Field(default_factory=list)
    comments: List[Comment] = Field(default_factory=list)
    history: List[HistoryEntry] = Field(default_factory=list)
    created_at: Timestamp = None
    created_by: Optional[str] = None
    created_by_name: Optional[str] = None

    @field_validator("priority", mode="before")
    @classmethod
    def _known_priority(cls, value: Any) -> str:
        return value if value in PRIORITIES else "medium"

    @field_validator("description", mode="before")
    @classmethod
    def _text(cls, value: Any) -> str:
        return value or ""


# Notes
class Note(BaseModel):
    id: str
    user_id: str
    title: str = ""
    body: str = ""
    created_at: Timestamp = None
    updated_at: Timestamp = None


# Inbox
class InboxItem(BaseModel):
    id: str
    to_uid: str
    from_uid: Optional[str] = None
    from_name: str = ""
    task_id: Optional[str] = None
    task_title: str = ""
    project_id: Optional[str] = None
    project_name: str = ""
    comment_text: str = ""
    read: bool = False
    created_at: Timestamp = None


# Chat
class ChatMessage(BaseModel):
    id: str
    project_id: str
    sender_id: Optional[str] = None
    sender_name: str = ""
    text: str = ""
    created_at: Timestamp = None


# Preferences
class ListColumnPref(BaseModel):
    id: str
    visible: Optional[bool] = None
    width: Optional[int] = None


class UserProfile(BaseModel):
    id: str
    name: str = ""
    email: Optional[str] = None
    list_column_config: Optional[List[ListColumnPref]] = None
    collapsed_sections: Dict[str, List[str]] = Field(default_factory=dict)
