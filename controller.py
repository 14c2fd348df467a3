"""
The signed-in workspace.

``Workspace`` ties the entity store, live subscriptions, preferences and
toasts to one user, keeps the UI state the views are rendered from, and
exposes the commands the HTTP layer calls. Commands push an error toast for
every ``WorkspaceError`` and re-raise it to the caller.
"""
import logging
from datetime import date
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, TypeVar

import commands
import notes
from dashboard import (
    Dashboard,
    InboxView,
    ChatLine,
    NoteSummary,
    ProjectCard,
    SidebarEntry,
    Statistics,
    StatisticsFilter,
    build_chat,
    build_dashboard,
    build_inbox,
    build_notes_list,
    build_project_cards,
    build_sidebar,
    build_statistics,
)
from database import DocumentStore
from editing import TaskEditingSession, Upload
from errors import NotFound, NotSignedIn, WorkspaceError
from preferences import PreferenceStore
from scheduling import wait_until
from schemas import DEFAULT_COLOR, USERS, Identity, Project, Task
from settings import Settings, get_settings
from store import EntityStore
from subscriptions import DataChanged, SubscriptionManager
from toasts import ToastCenter
from views import (
    CalendarMonth,
    GanttChart,
    KanbanBoard,
    ListSort,
    TaskFilter,
    TaskListView,
    build_calendar_month,
    build_gantt,
    build_kanban,
    build_task_list,
    is_task_done,
    shift_month,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")


class Workspace:
    def __init__(
        self,
        backend: DocumentStore,
        settings: Optional[Settings] = None,
        today: Optional[Callable[[], date]] = None,
    ):
        self.backend = backend
        self.settings = settings or get_settings()
        self._today = today or date.today
        self.store = EntityStore()
        self.toasts = ToastCenter(self.settings.TOAST_SECONDS)
        self.subscriptions = SubscriptionManager(backend, self.store, self.settings, self.toasts)
        self.prefs = PreferenceStore(backend, self.settings)
        self.user: Optional[Identity] = None
        self.session: Optional[TaskEditingSession] = None
        self.note_editor: Optional[notes.NoteEditor] = None
        self._reset_ui()

    def _reset_ui(self) -> None:
        today = self._today()
        self.current_project_id: Optional[str] = None
        self.task_filter = TaskFilter()
        self.list_sort = ListSort()
        self.calendar_month = (today.year, today.month)
        self.mini_calendar_month = (today.year, today.month)
        self.statistics_filter = StatisticsFilter()

    def today(self) -> date:
        return self._today()

    def require_user(self) -> Identity:
        if self.user is None:
            raise NotSignedIn()
        return self.user

    def add_listener(self, listener: Callable[[DataChanged], None]) -> Callable[[], None]:
        return self.subscriptions.add_listener(listener)

    async def _command(self, op: Awaitable[T], success: Optional[str] = None) -> T:
        try:
            result = await op
        except WorkspaceError as exc:
            self.toasts.error(exc.detail)
            raise
        if success:
            self.toasts.success(success)
        return result

    # -----------------------------
    # Identity
    # -----------------------------
    async def sign_in(self, identity: Identity) -> None:
        if self.user is not None:
            if self.user.uid == identity.uid:
                self.user = identity
                return
            await self.sign_out()
        self.user = identity
        await self._register_profile(identity)
        self.subscriptions.start(identity.uid)
        await self.prefs.load(identity.uid)
        logger.info("Signed in", extra={"user_id": identity.uid})

    async def _register_profile(self, identity: Identity) -> None:
        """Keep the profile document current so others can add this user by email."""
        profile = {"name": identity.display_name, "email": identity.email}
        try:
            await self.backend.set(USERS, identity.uid, profile, merge=True)
        except Exception:
            logger.warning("Could not update the profile of %s", identity.uid, exc_info=True)

    async def sign_out(self) -> None:
        uid = self.user.uid if self.user else None
        await self.close_task()
        await self.close_note()
        self.subscriptions.teardown()
        self.prefs.reset()
        self.toasts.clear()
        self.user = None
        self._reset_ui()
        logger.info("Signed out", extra={"user_id": uid})

    # -----------------------------
    # Lookups
    # -----------------------------
    def project(self, project_id: str) -> Project:
        self.require_user()
        project = self.store.get_project(project_id)
        if project is None:
            raise NotFound("Project not found")
        self.subscriptions.ensure_tasks(project_id)
        return project

    def task(self, task_id: str) -> Task:
        self.require_user()
        task = self.store.get_task(task_id)
        if task is None:
            raise NotFound("Task not found")
        return task

    def open_project(self, project_id: str) -> Project:
        project = self.project(project_id)
        self.current_project_id = project_id
        return project

    def _tasks_by_project(self) -> Dict[str, List[Task]]:
        return {pid: self.store.project_tasks(pid) for pid in self.store.projects}

    # -----------------------------
    # Rendering
    # -----------------------------
    def render_dashboard(self) -> Dashboard:
        user = self.require_user()
        year, month = self.mini_calendar_month
        return build_dashboard(
            self.store.my_tasks(user.uid),
            self.store.all_project_tasks(),
            self.store.projects,
            user.uid,
            self.today(),
            year,
            month,
        )

    def render_projects(self, archived: bool = False) -> List[ProjectCard]:
        self.require_user()
        projects = self.store.archived_projects() if archived else self.store.active_projects()
        return build_project_cards(projects, self._tasks_by_project(), self.today())

    def render_sidebar(self) -> List[SidebarEntry]:
        self.require_user()
        return build_sidebar(self.store.projects.values(), self.current_project_id)

    def render_board(self, project_id: str) -> KanbanBoard:
        project = self.open_project(project_id)
        return build_kanban(project, self.store.project_tasks(project_id), self.task_filter, self.today())

    def render_list(self, project_id: str) -> TaskListView:
        project = self.open_project(project_id)
        return build_task_list(
            project,
            self.store.project_tasks(project_id),
            self.task_filter,
            self.list_sort,
            self.prefs.collapsed_for(project_id),
            self.prefs.visible_columns(),
            self.today(),
        )

    def render_calendar(self, project_id: Optional[str] = None) -> CalendarMonth:
        self.require_user()
        year, month = self.calendar_month
        if project_id is not None:
            self.open_project(project_id)
            tasks = self.store.project_tasks(project_id)
        else:
            tasks = self.store.all_project_tasks()
        return build_calendar_month(year, month, tasks, self.store.projects, self.today())

    def render_gantt(self, project_id: str) -> GanttChart:
        project = self.open_project(project_id)
        return build_gantt(project, self.store.project_tasks(project_id), self.today())

    def render_chat(self, project_id: str) -> List[ChatLine]:
        user = self.require_user()
        self.open_project(project_id)
        self.subscriptions.ensure_chat(project_id)
        return build_chat(self.store.chat_messages(project_id), user.uid)

    def render_statistics(self) -> Statistics:
        user = self.require_user()
        return build_statistics(
            self.store.my_tasks(user.uid),
            self._tasks_by_project(),
            self.store.projects,
            self.statistics_filter,
            self.today(),
        )

    def render_notes(self) -> List[NoteSummary]:
        self.require_user()
        current = self.note_editor.note_id if self.note_editor else None
        return build_notes_list(self.store.sorted_notes(), current)

    def render_inbox(self) -> InboxView:
        self.require_user()
        return build_inbox(self.store.inbox_items())

    # -----------------------------
    # View state
    # -----------------------------
    def set_filter(self, **fields: Any) -> TaskFilter:
        self.task_filter = self.task_filter.model_copy(update=fields)
        return self.task_filter

    def sort_by(self, key: str) -> ListSort:
        self.list_sort = self.list_sort.toggled(key)
        return self.list_sort

    def shift_calendar(self, delta: int) -> None:
        self.calendar_month = shift_month(*self.calendar_month, delta)

    def shift_mini_calendar(self, delta: int) -> None:
        self.mini_calendar_month = shift_month(*self.mini_calendar_month, delta)

    def set_statistics_filter(self, **fields: Any) -> StatisticsFilter:
        self.statistics_filter = StatisticsFilter(**{**self.statistics_filter.model_dump(), **fields})
        return self.statistics_filter

    def set_column_visible(self, column_id: str, visible: bool) -> None:
        self.require_user()
        self.prefs.set_column_visible(column_id, visible)

    def move_column(self, from_id: str, to_id: str) -> None:
        self.require_user()
        self.prefs.move_column(from_id, to_id)

    def toggle_section(self, project_id: str, column_id: str) -> bool:
        self.require_user()
        return self.prefs.toggle_section(project_id, column_id)

    # -----------------------------
    # Projects
    # -----------------------------
    async def create_project(self, name: str, description: str = "", deadline: Optional[str] = None, color: str = DEFAULT_COLOR) -> str:
        user = self.require_user()
        return await self._command(
            commands.create_project(self.backend, user, name, description, deadline, color), "Project created"
        )

    async def update_project(self, project_id: str, name: str, description: str = "", deadline: Optional[str] = None, color: str = DEFAULT_COLOR) -> None:
        self.project(project_id)
        await self._command(commands.update_project(self.backend, project_id, name, description, deadline, color))

    async def archive_project(self, project_id: str, archived: bool = True) -> None:
        self.project(project_id)
        await self._command(
            commands.set_archived(self.backend, project_id, archived),
            "Project archived" if archived else "Project restored",
        )
        if archived and self.current_project_id == project_id:
            self.current_project_id = None

    async def delete_project(self, project_id: str) -> int:
        self.project(project_id)
        if self.session is not None and self.session.project_id == project_id:
            await self.close_task()
        if self.current_project_id == project_id:
            self.current_project_id = None
        return await self._command(commands.delete_project(self.backend, project_id), "Project deleted")

    async def add_column(self, project_id: str, name: str, color: str = DEFAULT_COLOR) -> str:
        return await self._command(commands.add_column(self.backend, self.project(project_id), name, color))

    async def update_column(self, project_id: str, column_id: str, name: str, color: str = DEFAULT_COLOR) -> None:
        await self._command(commands.update_column(self.backend, self.project(project_id), column_id, name, color))

    async def delete_column(self, project_id: str, column_id: str) -> None:
        await self._command(commands.delete_column(self.backend, self.project(project_id), column_id))

    async def reorder_columns(self, project_id: str, ordered_ids: List[str]) -> None:
        await self._command(commands.reorder_columns(self.backend, self.project(project_id), ordered_ids))

    async def add_member(self, project_id: str, email: str) -> Dict[str, Any]:
        return await self._command(commands.add_member(self.backend, self.project(project_id), email), "Member added")

    async def remove_member(self, project_id: str, uid: str) -> None:
        await self._command(commands.remove_member(self.backend, self.project(project_id), uid))

    # -----------------------------
    # Tasks
    # -----------------------------
    async def create_task(self, project_id: str, column_id: Optional[str] = None, title: Optional[str] = None, open_editor: bool = True) -> str:
        user = self.require_user()
        project = self.project(project_id)
        if column_id is None:
            task_id = await self._command(commands.create_task_in_first_column(self.backend, user, project, title))
        else:
            task_id = await self._command(commands.create_task(self.backend, user, project_id, column_id, title))
        if open_editor:
            await self.open_task(task_id)
        return task_id

    async def open_task(self, task_id: str) -> TaskEditingSession:
        """Start editing a task, waiting briefly for a just-created one to arrive."""
        user = self.require_user()
        if self.session is not None and self.session.task_id == task_id and not self.session.closed:
            return self.session
        found = await wait_until(
            lambda: self.store.get_task(task_id),
            self.settings.OPEN_TASK_ATTEMPTS,
            self.settings.OPEN_TASK_INTERVAL,
        )
        if found is None:
            raise NotFound("Task not found")
        await self.close_task()
        self.session = TaskEditingSession(self.backend, self.store, self.settings, user, task_id, self.toasts)
        return self.session

    async def close_task(self, flush: bool = False) -> None:
        if self.session is None:
            return
        session, self.session = self.session, None
        await session.close(flush=flush)

    async def delete_task(self, task_id: str) -> None:
        self.task(task_id)
        if self.session is not None and self.session.task_id == task_id:
            await self.close_task()
        await self._command(commands.delete_task(self.backend, task_id), "Task deleted")

    async def move_task(self, task_id: str, column_id: str) -> bool:
        user = self.require_user()
        task = self.task(task_id)
        project = self.store.get_project(task.project_id)
        return await self._command(commands.move_task(self.backend, user, task, project, column_id))

    async def toggle_done(self, task_id: str) -> bool:
        """Flip a task between done and open; returns the new done state."""
        user = self.require_user()
        task = self.task(task_id)
        done = not is_task_done(task, self.store.get_project(task.project_id))
        await self._command(commands.set_task_done(self.backend, user, task, done))
        return done

    async def add_comment(self, task_id: str, text: str, images: Iterable[Upload] = ()) -> List[str]:
        session = await self.open_task(task_id)
        return await self._command(session.add_comment(text, images))

    async def delete_comment(self, task_id: str, index: int) -> None:
        session = await self.open_task(task_id)
        await self._command(session.delete_comment(index))

    async def add_attachments(self, task_id: str, files: Iterable[Upload]) -> int:
        session = await self.open_task(task_id)
        return await self._command(session.add_attachments(files))

    async def remove_attachment(self, task_id: str, index: int) -> None:
        session = await self.open_task(task_id)
        await self._command(session.remove_attachment(index))

    # -----------------------------
    # Notes
    # -----------------------------
    async def create_note(self, title: Optional[str] = None) -> str:
        user = self.require_user()
        note_id = await self._command(notes.create_note(self.backend, user, title))
        await wait_until(
            lambda: self.store.notes.get(note_id),
            self.settings.OPEN_TASK_ATTEMPTS,
            self.settings.OPEN_TASK_INTERVAL,
        )
        if note_id in self.store.notes:
            await self.open_note(note_id)
        return note_id

    async def open_note(self, note_id: str) -> notes.NoteEditor:
        """Switch the note editor; the previous note's pending edits are saved first."""
        self.require_user()
        if self.note_editor is not None and self.note_editor.note_id == note_id:
            return self.note_editor
        await self.close_note(flush=True)
        self.note_editor = notes.NoteEditor(self.backend, self.store, self.settings, note_id, self.toasts)
        return self.note_editor

    async def close_note(self, flush: bool = False) -> None:
        if self.note_editor is None:
            return
        editor, self.note_editor = self.note_editor, None
        if flush:
            await editor.flush()
        else:
            editor.cancel()

    async def edit_note(self, note_id: str, title: Optional[str] = None, body: Optional[str] = None) -> None:
        editor = await self.open_note(note_id)
        editor.edit(title=title, body=body)

    async def delete_note(self, note_id: str) -> None:
        self.require_user()
        if self.note_editor is not None and self.note_editor.note_id == note_id:
            await self.close_note()
        await self._command(notes.delete_note(self.backend, note_id))

    # -----------------------------
    # Chat and inbox
    # -----------------------------
    async def send_chat(self, project_id: str, text: str) -> str:
        user = self.require_user()
        self.project(project_id)
        self.subscriptions.ensure_chat(project_id)
        return await self._command(notes.send_chat_message(self.backend, user, project_id, text))

    async def mark_read(self, item_id: str) -> None:
        self.require_user()
        if item_id not in self.store.inbox:
            raise NotFound("Notification not found")
        await self._command(notes.mark_read(self.backend, item_id))

    async def mark_all_read(self) -> int:
        self.require_user()
        return await self._command(notes.mark_all_read(self.backend, self.store))

    async def flush(self) -> None:
        """Write every pending debounced save now."""
        if self.session is not None:
            await self.session.flush()
        if self.note_editor is not None:
            await self.note_editor.flush()
        await self.prefs.flush()
