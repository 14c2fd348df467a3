"""
Derived view builders for a project: kanban board, sortable list, month
calendar and Gantt timeline.

Every builder is a pure function of entity snapshots plus UI state and
returns a render model; a missing column, member or project degrades to a
placeholder instead of failing.
"""
import calendar
from datetime import date, datetime, timedelta
from functools import cmp_to_key
from typing import Callable, Dict, Iterable, List, Literal, Optional, Set

from pydantic import BaseModel, Field

from preferences import ListColumn
from schemas import DEFAULT_COLOR, Project, Task, parse_day

# Column names that meant "finished" before tasks carried an explicit status
LEGACY_DONE_KEYWORDS = ("gotow", "zako", "done")

REMAINING_SECTION_ID = "__none__"
REMAINING_SECTION_NAME = "Remaining"
PLACEHOLDER = "—"
OVERDUE_COLOR = "overdue"
CALENDAR_EVENTS_PER_DAY = 3
GANTT_BUFFER_DAYS = 14
WEEKDAYS = ["Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday", "Sunday"]

PRIORITY_LABELS = {"high": "High", "medium": "Medium", "low": "Low"}


# -----------------------------
# Predicates
# -----------------------------
def column_name_means_done(name: Optional[str]) -> bool:
    """Compatibility check for tasks created before the status field existed."""
    lowered = (name or "").lower()
    return any(keyword in lowered for keyword in LEGACY_DONE_KEYWORDS)


def is_task_done(task: Task, project: Optional[Project]) -> bool:
    if task.status == "done":
        return True
    if task.status:
        return False
    if project is None:
        return False
    column = project.column(task.column_id)
    return column_name_means_done(column.name if column else None)


def is_past_due(due_date: Optional[str], today: date) -> bool:
    due = parse_day(due_date)
    return due is not None and due < today


def is_overdue(task: Task, project: Optional[Project], today: date) -> bool:
    return is_past_due(task.due_date, today) and not is_task_done(task, project)


def priority_rank(priority: Optional[str]) -> int:
    return {"high": 0, "medium": 1, "low": 2}.get(priority or "", 2)


def initials(name: Optional[str]) -> str:
    if not name:
        return "U"
    return "".join(word[0] for word in name.split(" ") if word).upper()[:2]


def checklist_progress(task: Task) -> int:
    total = len(task.checklist)
    if not total:
        return 0
    return round(sum(1 for item in task.checklist if item.done) / total * 100)


# -----------------------------
# Filters
# -----------------------------
class TaskFilter(BaseModel):
    priority: str = "all"
    assignee: str = "all"
    search: str = ""
    show_done: bool = True


def filter_tasks(tasks: Iterable[Task], project: Optional[Project], flt: TaskFilter) -> List[Task]:
    search = flt.search.strip().lower()
    result = []
    for t in tasks:
        if flt.priority != "all" and t.priority != flt.priority:
            continue
        if flt.assignee != "all" and t.assignee_id != flt.assignee:
            continue
        if not flt.show_done and is_task_done(t, project):
            continue
        if search:
            haystack = (t.title.lower(), t.description.lower(), (t.assignee_name or "").lower())
            if not any(search in field for field in haystack):
                continue
        result.append(t)
    return result


# -----------------------------
# Kanban
# -----------------------------
class TaskCard(BaseModel):
    id: str
    title: str
    priority: str
    due_date: Optional[str] = None
    overdue: bool = False
    done: bool = False
    assignee_name: Optional[str] = None
    assignee_initials: Optional[str] = None
    checklist_done: int = 0
    checklist_total: int = 0
    checklist_progress: int = 0


class KanbanColumn(BaseModel):
    id: str
    name: str
    color: str
    count: int
    cards: List[TaskCard] = Field(default_factory=list)


class KanbanBoard(BaseModel):
    project_id: str
    columns: List[KanbanColumn] = Field(default_factory=list)


def task_card(task: Task, project: Optional[Project], today: date) -> TaskCard:
    return TaskCard(
        id=task.id,
        title=task.title,
        priority=task.priority,
        due_date=task.due_date,
        overdue=is_overdue(task, project, today),
        done=is_task_done(task, project),
        assignee_name=task.assignee_name,
        assignee_initials=initials(task.assignee_name) if task.assignee_name else None,
        checklist_done=sum(1 for item in task.checklist if item.done),
        checklist_total=len(task.checklist),
        checklist_progress=checklist_progress(task),
    )


def build_kanban(project: Project, tasks: Iterable[Task], flt: TaskFilter, today: date) -> KanbanBoard:
    visible = filter_tasks(tasks, project, flt)
    columns = []
    for col in project.sorted_columns():
        cards = [task_card(t, project, today) for t in visible if t.column_id == col.id]
        columns.append(KanbanColumn(id=col.id, name=col.name, color=col.color, count=len(cards), cards=cards))
    return KanbanBoard(project_id=project.id, columns=columns)


# -----------------------------
# Sortable list
# -----------------------------
SortKey = Literal["due", "title", "assignee", "priority", "status", "created"]
SortDirection = Literal["asc", "desc"]


class ListSort(BaseModel):
    key: SortKey = "due"
    direction: SortDirection = "asc"

    def toggled(self, key: SortKey) -> "ListSort":
        """Clicking the active header flips direction; another header starts ascending."""
        if key == self.key:
            return ListSort(key=key, direction="desc" if self.direction == "asc" else "asc")
        return ListSort(key=key, direction="asc")


def _text_cmp(a: str, b: str) -> int:
    a, b = a.casefold(), b.casefold()
    return (a > b) - (a < b)


def _dated_cmp(a: Optional[object], b: Optional[object], direction: int) -> Optional[int]:
    """Dated values first in both directions; None when both are undated."""
    if a is not None and b is not None:
        return ((a > b) - (a < b)) * direction
    if a is not None:
        return -1
    if b is not None:
        return 1
    return None


def _comparator(sort: ListSort) -> Callable[[Task, Task], int]:
    direction = 1 if sort.direction == "asc" else -1

    def by_due(a: Task, b: Task) -> int:
        result = _dated_cmp(parse_day(a.due_date), parse_day(b.due_date), direction)
        return result if result is not None else _text_cmp(a.title, b.title)

    def by_created(a: Task, b: Task) -> int:
        result = _dated_cmp(a.created_at, b.created_at, direction)
        return result if result is not None else 0

    def by_title(a: Task, b: Task) -> int:
        return _text_cmp(a.title, b.title) * direction

    def by_assignee(a: Task, b: Task) -> int:
        return _text_cmp(a.assignee_name or "", b.assignee_name or "") * direction

    def by_priority(a: Task, b: Task) -> int:
        return (priority_rank(a.priority) - priority_rank(b.priority)) * direction

    def by_status(a: Task, b: Task) -> int:
        return _text_cmp(a.status or "", b.status or "") * direction

    return {
        "due": by_due,
        "created": by_created,
        "title": by_title,
        "assignee": by_assignee,
        "priority": by_priority,
        "status": by_status,
    }[sort.key]


def sort_tasks(tasks: Iterable[Task], sort: ListSort) -> List[Task]:
    return sorted(tasks, key=cmp_to_key(_comparator(sort)))


class ListRow(BaseModel):
    id: str
    title: str
    description: str = ""
    column_name: str = PLACEHOLDER
    assignee_name: str = PLACEHOLDER
    due_date: Optional[str] = None
    overdue: bool = False
    done: bool = False
    status: str = "open"
    priority: str = "medium"
    priority_label: str = ""
    created_at: Optional[datetime] = None


class ListSection(BaseModel):
    id: str
    name: str
    color: str
    count: int
    collapsed: bool = False
    rows: List[ListRow] = Field(default_factory=list)


class TaskListView(BaseModel):
    project_id: str
    sort: ListSort
    columns: List[ListColumn] = Field(default_factory=list)
    sections: List[ListSection] = Field(default_factory=list)


def list_row(task: Task, project: Project, today: date) -> ListRow:
    done = is_task_done(task, project)
    column = project.column(task.column_id)
    return ListRow(
        id=task.id,
        title=task.title or "(untitled)",
        description=task.description[:120],
        column_name=column.name if column else PLACEHOLDER,
        assignee_name=task.assignee_name or PLACEHOLDER,
        due_date=task.due_date,
        overdue=is_past_due(task.due_date, today) and not done,
        done=done,
        status="done" if done else "open",
        priority=task.priority,
        priority_label=PRIORITY_LABELS.get(task.priority, PRIORITY_LABELS["low"]),
        created_at=task.created_at,
    )


def build_task_list(
    project: Project,
    tasks: Iterable[Task],
    flt: TaskFilter,
    sort: ListSort,
    collapsed: Set[str],
    columns: List[ListColumn],
    today: date,
) -> TaskListView:
    ordered = sort_tasks(filter_tasks(tasks, project, flt), sort)
    cols = project.sorted_columns()
    groups = [(col.id, col.name, col.color, [t for t in ordered if t.column_id == col.id]) for col in cols]
    known = {col.id for col in cols}
    orphans = [t for t in ordered if t.column_id not in known]
    if orphans:
        groups.append((REMAINING_SECTION_ID, REMAINING_SECTION_NAME, project.color or DEFAULT_COLOR, orphans))
    sections = []
    for section_id, name, color, section_tasks in groups:
        is_collapsed = section_id in collapsed
        sections.append(ListSection(
            id=section_id,
            name=name,
            color=color,
            count=len(section_tasks),
            collapsed=is_collapsed,
            rows=[] if is_collapsed else [list_row(t, project, today) for t in section_tasks],
        ))
    return TaskListView(
        project_id=project.id,
        sort=sort,
        columns=[c for c in columns if c.visible],
        sections=sections,
    )


# -----------------------------
# Calendars
# -----------------------------
class CalendarEvent(BaseModel):
    id: str
    project_id: str
    title: str
    priority: str
    done: bool = False


class CalendarDay(BaseModel):
    on: date
    day: int
    in_month: bool
    today: bool = False
    events: List[CalendarEvent] = Field(default_factory=list)
    overflow: int = 0


class CalendarMonth(BaseModel):
    year: int
    month: int
    weekdays: List[str] = Field(default_factory=lambda: list(WEEKDAYS))
    days: List[CalendarDay] = Field(default_factory=list)


def shift_month(year: int, month: int, delta: int) -> tuple:
    index = year * 12 + (month - 1) + delta
    return index // 12, index % 12 + 1


def month_grid(year: int, month: int) -> List[date]:
    """Monday-first dates covering the month in whole weeks."""
    first = date(year, month, 1)
    days_in_month = calendar.monthrange(year, month)[1]
    start = first - timedelta(days=first.weekday())
    last = date(year, month, days_in_month)
    end = last + timedelta(days=6 - last.weekday())
    return [start + timedelta(days=i) for i in range((end - start).days + 1)]


def build_calendar_month(
    year: int,
    month: int,
    tasks: Iterable[Task],
    projects: Dict[str, Project],
    today: date,
) -> CalendarMonth:
    by_due: Dict[str, List[Task]] = {}
    for t in tasks:
        if t.due_date:
            by_due.setdefault(t.due_date, []).append(t)
    days = []
    for d in month_grid(year, month):
        in_month = d.month == month
        day_tasks = by_due.get(d.isoformat(), []) if in_month else []
        events = [
            CalendarEvent(
                id=t.id,
                project_id=t.project_id,
                title=t.title,
                priority=t.priority,
                done=is_task_done(t, projects.get(t.project_id)),
            )
            for t in day_tasks[:CALENDAR_EVENTS_PER_DAY]
        ]
        days.append(CalendarDay(
            on=d,
            day=d.day,
            in_month=in_month,
            today=d == today,
            events=events,
            overflow=max(0, len(day_tasks) - CALENDAR_EVENTS_PER_DAY),
        ))
    return CalendarMonth(year=year, month=month, days=days)


class MiniCalendarDay(BaseModel):
    day: int
    today: bool = False
    has_tasks: bool = False


class MiniCalendar(BaseModel):
    year: int
    month: int
    leading_blanks: int
    days: List[MiniCalendarDay] = Field(default_factory=list)


def build_mini_calendar(year: int, month: int, tasks: Iterable[Task], today: date) -> MiniCalendar:
    task_days = {parse_day(t.due_date) for t in tasks}
    first = date(year, month, 1)
    days = []
    for n in range(1, calendar.monthrange(year, month)[1] + 1):
        d = date(year, month, n)
        days.append(MiniCalendarDay(day=n, today=d == today, has_tasks=d in task_days))
    return MiniCalendar(year=year, month=month, leading_blanks=first.weekday(), days=days)


# -----------------------------
# Gantt
# -----------------------------
class GanttBar(BaseModel):
    task_id: str
    title: str
    start: date
    end: date
    offset_days: int
    span_days: int
    color: str
    overdue: bool = False
    done: bool = False


class GanttChart(BaseModel):
    project_id: str
    range_start: Optional[date] = None
    range_end: Optional[date] = None
    total_days: int = 0
    bars: List[GanttBar] = Field(default_factory=list)


def build_gantt(project: Project, tasks: Iterable[Task], today: date) -> GanttChart:
    dated = []
    for t in tasks:
        due = parse_day(t.due_date)
        if due is None:
            continue
        start = parse_day(t.start_date) or due
        dated.append((t, min(start, due), due))
    if not dated:
        return GanttChart(project_id=project.id)
    dated.sort(key=lambda item: (item[2], item[0].title))

    earliest = min(start for _, start, _ in dated)
    latest = max(due for _, _, due in dated)
    range_start = min(today, earliest)
    range_start -= timedelta(days=range_start.weekday())
    range_end = latest + timedelta(days=GANTT_BUFFER_DAYS)
    range_end += timedelta(days=6 - range_end.weekday())

    bars = []
    for t, start, due in dated:
        overdue = is_overdue(t, project, today)
        bars.append(GanttBar(
            task_id=t.id,
            title=t.title,
            start=start,
            end=due,
            offset_days=(start - range_start).days,
            span_days=(due - start).days + 1,
            color=OVERDUE_COLOR if overdue else t.priority,
            overdue=overdue,
            done=is_task_done(t, project),
        ))
    return GanttChart(
        project_id=project.id,
        range_start=range_start,
        range_end=range_end,
        total_days=(range_end - range_start).days + 1,
        bars=bars,
    )
