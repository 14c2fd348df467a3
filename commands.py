"""
Project, column, member and task writes.

Commands validate before touching the backend and raise ``WorkspaceError``
subclasses; backend failures are wrapped in ``BackendError``. Nothing here
updates the entity store: writes come back through the live subscriptions.
"""
import logging
from datetime import datetime, timezone
from typing import Any, Awaitable, Dict, Iterable, List, Optional, TypeVar

from database import SERVER_TIMESTAMP, ArrayRemove, ArrayUnion, DocumentStore, get_documents, new_id
from errors import BackendError, NotFound, ValidationFailed, WorkspaceError
from schemas import DEFAULT_COLOR, PROJECTS, TASKS, USERS, Identity, Project, Task

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_COLUMNS = [
    ("To do", "#6B7C5C"),
    ("In progress", "#8B7355"),
    ("Done", "#5C7B7C"),
]
DEFAULT_TASK_TITLE = "New task"


async def guarded(op: Awaitable[T], detail: str) -> T:
    """Await a backend call, turning unexpected failures into ``BackendError``."""
    try:
        return await op
    except WorkspaceError:
        raise
    except Exception as exc:
        logger.warning("%s: %s", detail, exc)
        raise BackendError(detail, exc) from exc


def history_entry(action: str, user: Identity, at: Optional[datetime] = None) -> Dict[str, Any]:
    return {"action": action, "by": user.display_name, "at": at or datetime.now(timezone.utc)}


def history_with(task: Task, actions: Iterable[str], user: Identity) -> List[Dict[str, Any]]:
    """The task's history with one entry appended per action."""
    existing = [h.model_dump() for h in task.history]
    now = datetime.now(timezone.utc)
    return existing + [history_entry(action, user, now) for action in actions]


def _require(value: Optional[str], detail: str) -> str:
    value = (value or "").strip()
    if not value:
        raise ValidationFailed(detail)
    return value


# -----------------------------
# Projects
# -----------------------------
def default_columns() -> List[Dict[str, Any]]:
    return [{"id": new_id(), "name": name, "color": color, "order": i} for i, (name, color) in enumerate(DEFAULT_COLUMNS)]


async def create_project(
    backend: DocumentStore,
    user: Identity,
    name: str,
    description: str = "",
    deadline: Optional[str] = None,
    color: str = DEFAULT_COLOR,
) -> str:
    name = _require(name, "Project name is required")
    doc = {
        "name": name,
        "description": description.strip() if description else "",
        "deadline": deadline or None,
        "color": color,
        "owner_id": user.uid,
        "member_ids": [user.uid],
        "members": [{"uid": user.uid, "name": user.display_name, "email": user.email, "role": "owner"}],
        "columns": default_columns(),
        "archived": False,
        "created_at": SERVER_TIMESTAMP,
    }
    project_id = await guarded(backend.create(PROJECTS, doc), "Could not create the project")
    logger.info("Project created", extra={"project_id": project_id, "user_id": user.uid})
    return project_id


async def update_project(
    backend: DocumentStore,
    project_id: str,
    name: str,
    description: str = "",
    deadline: Optional[str] = None,
    color: str = DEFAULT_COLOR,
) -> None:
    name = _require(name, "Project name is required")
    data = {"name": name, "description": (description or "").strip(), "deadline": deadline or None, "color": color}
    await guarded(backend.update(PROJECTS, project_id, data), "Could not update the project")


async def set_archived(backend: DocumentStore, project_id: str, archived: bool) -> None:
    await guarded(backend.update(PROJECTS, project_id, {"archived": archived}), "Could not update the project")


async def delete_project(backend: DocumentStore, project_id: str) -> int:
    """Delete a project after all of its tasks; returns how many tasks went with it."""
    tasks = await guarded(get_documents(backend, TASKS, project_id=project_id), "Could not delete the project")
    for doc in tasks:
        await guarded(backend.delete(TASKS, doc["id"]), "Could not delete the project")
    await guarded(backend.delete(PROJECTS, project_id), "Could not delete the project")
    logger.info("Project deleted", extra={"project_id": project_id, "tasks": len(tasks)})
    return len(tasks)


# -----------------------------
# Columns
# -----------------------------
def _columns_payload(project: Project) -> List[Dict[str, Any]]:
    return [c.model_dump() for c in project.columns]


async def add_column(backend: DocumentStore, project: Project, name: str, color: str = DEFAULT_COLOR) -> str:
    name = _require(name, "Column name is required")
    column_id = new_id()
    columns = _columns_payload(project) + [{"id": column_id, "name": name, "color": color, "order": len(project.columns)}]
    await guarded(backend.update(PROJECTS, project.id, {"columns": columns}), "Could not add the column")
    return column_id


async def update_column(backend: DocumentStore, project: Project, column_id: str, name: str, color: str) -> None:
    name = _require(name, "Column name is required")
    if project.column(column_id) is None:
        raise NotFound("Column not found")
    columns = [
        {**c, "name": name, "color": color} if c["id"] == column_id else c
        for c in _columns_payload(project)
    ]
    await guarded(backend.update(PROJECTS, project.id, {"columns": columns}), "Could not update the column")


async def delete_column(backend: DocumentStore, project: Project, column_id: str) -> None:
    """Remove a column; its tasks stay and become orphans."""
    columns = [c for c in _columns_payload(project) if c["id"] != column_id]
    await guarded(backend.update(PROJECTS, project.id, {"columns": columns}), "Could not delete the column")


async def reorder_columns(backend: DocumentStore, project: Project, ordered_ids: List[str]) -> None:
    rank = {column_id: i for i, column_id in enumerate(ordered_ids)}
    current = project.sorted_columns()
    ordered = sorted(current, key=lambda c: rank.get(c.id, len(ordered_ids)))
    columns = [{**c.model_dump(), "order": i} for i, c in enumerate(ordered)]
    await guarded(backend.update(PROJECTS, project.id, {"columns": columns}), "Could not reorder columns")


# -----------------------------
# Members
# -----------------------------
async def add_member(backend: DocumentStore, project: Project, email: str) -> Dict[str, Any]:
    email = _require(email, "Email is required")
    users = await guarded(get_documents(backend, USERS, email=email), "Could not look up the user")
    if not users:
        raise ValidationFailed("No user with this email")
    user_doc = users[0]
    if user_doc["id"] in project.member_ids:
        raise ValidationFailed("User is already a member")
    member = {"uid": user_doc["id"], "name": user_doc.get("name", ""), "email": user_doc.get("email"), "role": "member"}
    await guarded(
        backend.update(PROJECTS, project.id, {"member_ids": ArrayUnion(member["uid"]), "members": ArrayUnion(member)}),
        "Could not add the member",
    )
    return member


async def remove_member(backend: DocumentStore, project: Project, uid: str) -> None:
    if uid == project.owner_id:
        raise ValidationFailed("The project owner cannot be removed")
    member = project.member(uid)
    if member is None:
        raise NotFound("Member not found")
    await guarded(
        backend.update(PROJECTS, project.id, {"member_ids": ArrayRemove(uid), "members": ArrayRemove(member.model_dump())}),
        "Could not remove the member",
    )


# -----------------------------
# Tasks
# -----------------------------
async def create_task(
    backend: DocumentStore,
    user: Identity,
    project_id: str,
    column_id: str,
    title: Optional[str] = None,
) -> str:
    title = (title or "").strip() or DEFAULT_TASK_TITLE
    doc = {
        "project_id": project_id,
        "column_id": column_id,
        "title": title,
        "status": "open",
        "description": "",
        "priority": "medium",
        "due_date": None,
        "start_date": None,
        "assignee_id": None,
        "assignee_name": None,
        "checklist": [],
        "attachments": [],
        "comments": [],
        "history": [history_entry("Task created", user)],
        "created_at": SERVER_TIMESTAMP,
        "created_by": user.uid,
        "created_by_name": user.display_name,
    }
    return await guarded(backend.create(TASKS, doc), "Could not add the task")


async def create_task_in_first_column(backend: DocumentStore, user: Identity, project: Project, title: Optional[str] = None) -> str:
    columns = project.sorted_columns()
    if not columns:
        raise ValidationFailed("Add a section first")
    return await create_task(backend, user, project.id, columns[0].id, title)


async def delete_task(backend: DocumentStore, task_id: str) -> None:
    await guarded(backend.delete(TASKS, task_id), "Could not delete the task")


async def update_task(
    backend: DocumentStore,
    task: Task,
    data: Dict[str, Any],
    user: Identity,
    actions: Iterable[str] = (),
) -> None:
    """Write fields of a task, appending a history entry per action."""
    updates = dict(data)
    actions = list(actions)
    if actions:
        updates["history"] = history_with(task, actions, user)
    await guarded(backend.update(TASKS, task.id, updates), "Could not save the task")


async def move_task(backend: DocumentStore, user: Identity, task: Task, project: Optional[Project], column_id: str) -> bool:
    """Re-parent a task onto another column; returns False when it is already there."""
    if task.column_id == column_id:
        return False
    column = project.column(column_id) if project else None
    action = f'Moved to column "{column.name if column else column_id}"'
    await update_task(backend, task, {"column_id": column_id}, user, [action])
    return True


async def set_task_done(backend: DocumentStore, user: Identity, task: Task, done: bool) -> None:
    status = "done" if done else "open"
    action = "Marked as done" if done else "Reopened"
    await update_task(backend, task, {"status": status}, user, [action])
