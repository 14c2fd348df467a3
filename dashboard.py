"""Workspace-wide aggregates: dashboard, statistics, project cards, notes, inbox and chat views."""
from datetime import date, datetime, timedelta
from typing import Dict, Iterable, List, Literal, Optional

from pydantic import BaseModel, Field

from schemas import PRIORITIES, ChatMessage, InboxItem, Note, Project, Task, parse_day
from views import MiniCalendar, build_mini_calendar, initials, is_overdue, is_task_done

VISIBLE_MEMBER_CHIPS = 3


class FeedItem(BaseModel):
    id: str
    project_id: str
    project_name: Optional[str] = None
    title: str
    priority: str
    due_date: Optional[str] = None
    overdue: bool = False
    done: bool = False


def feed_item(task: Task, projects: Dict[str, Project], today: date) -> FeedItem:
    project = projects.get(task.project_id)
    return FeedItem(
        id=task.id,
        project_id=task.project_id,
        project_name=project.name if project else None,
        title=task.title,
        priority=task.priority,
        due_date=task.due_date,
        overdue=is_overdue(task, project, today),
        done=is_task_done(task, project),
    )


def count_by_priority(tasks: Iterable[Task]) -> Dict[str, int]:
    counts = {p: 0 for p in PRIORITIES}
    for t in tasks:
        counts[t.priority] = counts.get(t.priority, 0) + 1
    return counts


# -----------------------------
# Dashboard
# -----------------------------
class DashboardStats(BaseModel):
    tasks: int = 0
    overdue: int = 0
    done: int = 0
    projects: int = 0
    by_priority: Dict[str, int] = Field(default_factory=dict)


class Dashboard(BaseModel):
    stats: DashboardStats
    upcoming: List[FeedItem] = Field(default_factory=list)
    today: List[FeedItem] = Field(default_factory=list)
    mini_calendar: MiniCalendar


def dashboard_stats(my_tasks: Iterable[Task], projects: Dict[str, Project], today: date) -> DashboardStats:
    stats = DashboardStats(by_priority={p: 0 for p in PRIORITIES})
    for t in my_tasks:
        project = projects.get(t.project_id)
        stats.tasks += 1
        if is_overdue(t, project, today):
            stats.overdue += 1
        if is_task_done(t, project):
            stats.done += 1
        stats.by_priority[t.priority] = stats.by_priority.get(t.priority, 0) + 1
    stats.projects = sum(1 for p in projects.values() if not p.archived)
    return stats


def _mine_or_unassigned(task: Task, uid: str) -> bool:
    return task.assignee_id == uid or not task.assignee_id


def upcoming_tasks(all_tasks: Iterable[Task], projects: Dict[str, Project], uid: str, today: date) -> List[Task]:
    """Open tasks due from tomorrow on, soonest first."""
    tomorrow = today + timedelta(days=1)
    upcoming = []
    for t in all_tasks:
        due = parse_day(t.due_date)
        if due is None or due < tomorrow:
            continue
        if is_task_done(t, projects.get(t.project_id)) or not _mine_or_unassigned(t, uid):
            continue
        upcoming.append((due, t))
    upcoming.sort(key=lambda item: item[0])
    return [t for _, t in upcoming]


def tasks_due_today(all_tasks: Iterable[Task], projects: Dict[str, Project], uid: str, today: date) -> List[Task]:
    return [
        t for t in all_tasks
        if parse_day(t.due_date) == today
        and not is_task_done(t, projects.get(t.project_id))
        and _mine_or_unassigned(t, uid)
    ]


def build_dashboard(
    my_tasks: List[Task],
    all_tasks: List[Task],
    projects: Dict[str, Project],
    uid: str,
    today: date,
    calendar_year: Optional[int] = None,
    calendar_month: Optional[int] = None,
) -> Dashboard:
    return Dashboard(
        stats=dashboard_stats(my_tasks, projects, today),
        upcoming=[feed_item(t, projects, today) for t in upcoming_tasks(all_tasks, projects, uid, today)],
        today=[feed_item(t, projects, today) for t in tasks_due_today(all_tasks, projects, uid, today)],
        mini_calendar=build_mini_calendar(
            calendar_year or today.year, calendar_month or today.month, all_tasks, today
        ),
    )


# -----------------------------
# Statistics
# -----------------------------
Period = Literal["all", "week", "month"]
ProjectSort = Literal["name", "tasks", "progress"]

PERIOD_DAYS = {"week": 7, "month": 30}


class StatisticsFilter(BaseModel):
    project: str = "all"
    period: Period = "all"
    sort: ProjectSort = "name"


class ProjectStat(BaseModel):
    project_id: str
    name: str
    color: str
    total: int
    done: int
    progress: int
    deadline: Optional[str] = None


class Statistics(BaseModel):
    total: int = 0
    overdue: int = 0
    high_priority: int = 0
    active_projects: int = 0
    by_priority: Dict[str, int] = Field(default_factory=dict)
    projects: List[ProjectStat] = Field(default_factory=list)


def progress_percent(done: int, total: int) -> int:
    return round(done / total * 100) if total else 0


def build_statistics(
    my_tasks: Iterable[Task],
    tasks_by_project: Dict[str, List[Task]],
    projects: Dict[str, Project],
    flt: StatisticsFilter,
    today: date,
) -> Statistics:
    tasks = list(my_tasks)
    if flt.project != "all":
        tasks = [t for t in tasks if t.project_id == flt.project]
    if flt.period in PERIOD_DAYS:
        since = today - timedelta(days=PERIOD_DAYS[flt.period])
        tasks = [t for t in tasks if (parse_day(t.due_date) or date.min) >= since]

    active = [p for p in projects.values() if not p.archived]
    rows = []
    for p in active:
        project_tasks = tasks_by_project.get(p.id, [])
        done = sum(1 for t in project_tasks if is_task_done(t, p))
        rows.append(ProjectStat(
            project_id=p.id,
            name=p.name,
            color=p.color,
            total=len(project_tasks),
            done=done,
            progress=progress_percent(done, len(project_tasks)),
            deadline=p.deadline,
        ))
    if flt.sort == "tasks":
        rows.sort(key=lambda r: r.total, reverse=True)
    elif flt.sort == "progress":
        rows.sort(key=lambda r: r.progress, reverse=True)
    else:
        rows.sort(key=lambda r: r.name.casefold())

    return Statistics(
        total=len(tasks),
        overdue=sum(1 for t in tasks if is_overdue(t, projects.get(t.project_id), today)),
        high_priority=sum(1 for t in tasks if t.priority == "high"),
        active_projects=len(active),
        by_priority=count_by_priority(tasks),
        projects=rows,
    )


# -----------------------------
# Projects overview
# -----------------------------
class ProjectCard(BaseModel):
    id: str
    name: str
    description: str
    color: str
    archived: bool
    total: int
    done: int
    progress: int
    overdue: int
    deadline: Optional[str] = None
    member_initials: List[str] = Field(default_factory=list)
    extra_members: int = 0


def build_project_cards(
    projects: Iterable[Project],
    tasks_by_project: Dict[str, List[Task]],
    today: date,
) -> List[ProjectCard]:
    cards = []
    for p in projects:
        project_tasks = tasks_by_project.get(p.id, [])
        done = sum(1 for t in project_tasks if is_task_done(t, p))
        cards.append(ProjectCard(
            id=p.id,
            name=p.name,
            description=p.description or "",
            color=p.color,
            archived=p.archived,
            total=len(project_tasks),
            done=done,
            progress=progress_percent(done, len(project_tasks)),
            overdue=sum(1 for t in project_tasks if is_overdue(t, p, today)),
            deadline=p.deadline,
            member_initials=[initials(m.name) for m in p.members[:VISIBLE_MEMBER_CHIPS]],
            extra_members=max(0, len(p.members) - VISIBLE_MEMBER_CHIPS),
        ))
    return cards


class SidebarEntry(BaseModel):
    id: str
    name: str
    color: str
    active: bool = False


def build_sidebar(projects: Iterable[Project], current_project_id: Optional[str]) -> List[SidebarEntry]:
    return [
        SidebarEntry(id=p.id, name=p.name, color=p.color, active=p.id == current_project_id)
        for p in projects
        if not p.archived
    ]


# -----------------------------
# Notes, inbox, chat
# -----------------------------
class NoteSummary(BaseModel):
    id: str
    title: str
    preview: str
    updated_at: Optional[datetime] = None
    active: bool = False


def build_notes_list(notes: Iterable[Note], current_note_id: Optional[str]) -> List[NoteSummary]:
    return [
        NoteSummary(
            id=n.id,
            title=n.title or "Untitled",
            preview=n.body[:60],
            updated_at=n.updated_at,
            active=n.id == current_note_id,
        )
        for n in notes
    ]


class InboxView(BaseModel):
    unread: int
    items: List[InboxItem] = Field(default_factory=list)


def build_inbox(items: List[InboxItem]) -> InboxView:
    return InboxView(unread=sum(1 for i in items if not i.read), items=items)


class ChatLine(BaseModel):
    id: str
    sender_name: str
    sender_initials: str
    text: str
    created_at: Optional[datetime] = None
    own: bool = False


def build_chat(messages: Iterable[ChatMessage], uid: str) -> List[ChatLine]:
    return [
        ChatLine(
            id=m.id,
            sender_name=m.sender_name or "User",
            sender_initials=initials(m.sender_name),
            text=m.text,
            created_at=m.created_at,
            own=m.sender_id == uid,
        )
        for m in messages
    ]
