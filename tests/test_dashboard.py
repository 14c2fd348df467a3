from datetime import date

from dashboard import (
    StatisticsFilter,
    build_chat,
    build_dashboard,
    build_inbox,
    build_project_cards,
    build_sidebar,
    build_statistics,
    progress_percent,
)
from schemas import ChatMessage, InboxItem, Project, Task

TODAY = date(2024, 5, 15)


def project(pid: str, name: str, archived: bool = False, members: int = 1) -> Project:
    people = [{"uid": f"u{i}", "name": f"Person {i}"} for i in range(members)]
    return Project.model_validate({
        "id": pid,
        "name": name,
        "owner_id": "u0",
        "member_ids": [p["uid"] for p in people],
        "members": people,
        "archived": archived,
        "columns": [{"id": "todo", "name": "To do"}, {"id": "done", "name": "Done", "order": 1}],
    })


def task(tid: str, pid: str = "p1", **fields) -> Task:
    return Task.model_validate({"id": tid, "project_id": pid, "column_id": "todo", "title": tid, **fields})


def test_dashboard_upcoming_today_and_stats():
    projects = {"p1": project("p1", "Launch")}
    tasks = [
        task("today", due_date="2024-05-15", assignee_id="u0"),
        task("tomorrow", due_date="2024-05-16"),
        task("later", due_date="2024-05-30", assignee_id="u0"),
        task("someone-else", due_date="2024-05-17", assignee_id="u9"),
        task("finished", due_date="2024-05-18", status="done"),
        task("overdue", due_date="2024-05-01", assignee_id="u0", priority="high"),
    ]
    mine = [t for t in tasks if t.assignee_id == "u0"]
    dash = build_dashboard(mine, tasks, projects, "u0", TODAY)

    assert [f.id for f in dash.upcoming] == ["tomorrow", "later"]
    assert [f.id for f in dash.today] == ["today"]
    assert dash.stats.tasks == 3
    assert dash.stats.overdue == 1
    assert dash.stats.by_priority["high"] == 1
    assert dash.stats.projects == 1
    assert dash.mini_calendar.leading_blanks == 2
    assert any(d.has_tasks for d in dash.mini_calendar.days if d.day == 15)


def test_statistics_period_and_project_sort():
    projects = {"p1": project("p1", "Beta"), "p2": project("p2", "alpha"), "p3": project("p3", "Old", archived=True)}
    by_project = {
        "p1": [task("a", status="done"), task("b")],
        "p2": [task("c", "p2", status="done")],
    }
    mine = [
        task("recent", due_date="2024-05-12"),
        task("ancient", due_date="2024-01-01"),
        task("undated"),
    ]

    week = build_statistics(mine, by_project, projects, StatisticsFilter(period="week"), TODAY)
    assert week.total == 1
    assert week.active_projects == 2
    assert [r.name for r in week.projects] == ["alpha", "Beta"]

    by_progress = build_statistics(mine, by_project, projects, StatisticsFilter(sort="progress"), TODAY)
    assert [r.progress for r in by_progress.projects] == [100, 50]
    assert by_progress.total == 3


def test_project_cards_show_first_members():
    cards = build_project_cards(
        [project("p1", "Launch", members=5)],
        {"p1": [task("a", due_date="2024-05-01"), task("b", status="done")]},
        TODAY,
    )
    card = cards[0]
    assert card.progress == 50
    assert card.overdue == 1
    assert card.member_initials == ["P0", "P1", "P2"]
    assert card.extra_members == 2


def test_sidebar_skips_archived():
    entries = build_sidebar([project("p1", "Live"), project("p2", "Gone", archived=True)], "p1")
    assert [(e.id, e.active) for e in entries] == [("p1", True)]


def test_progress_percent_handles_empty():
    assert progress_percent(0, 0) == 0
    assert progress_percent(1, 3) == 33


def test_inbox_and_chat():
    inbox = build_inbox([
        InboxItem(id="1", to_uid="u0", read=False),
        InboxItem(id="2", to_uid="u0", read=True),
    ])
    assert inbox.unread == 1

    lines = build_chat([ChatMessage(id="m", project_id="p1", sender_id="u0", sender_name="Ann Lee", text="hi")], "u0")
    assert lines[0].own and lines[0].sender_initials == "AL"
