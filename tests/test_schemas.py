from datetime import date, datetime, timezone

from schemas import Project, Task, parse_day, to_timestamp


def test_timestamp_shapes_normalise_to_utc():
    expected = datetime(2024, 5, 15, 12, 0, tzinfo=timezone.utc)
    assert to_timestamp(expected) == expected
    assert to_timestamp(datetime(2024, 5, 15, 12, 0)) == expected
    assert to_timestamp("2024-05-15T12:00:00Z") == expected
    assert to_timestamp(expected.timestamp()) == expected
    assert to_timestamp(expected.timestamp() * 1000) == expected
    assert to_timestamp({"seconds": int(expected.timestamp()), "nanoseconds": 0}) == expected


def test_unreadable_timestamps_become_none():
    assert to_timestamp(None) is None
    assert to_timestamp("") is None
    assert to_timestamp("yesterday") is None
    assert to_timestamp(True) is None
    assert to_timestamp(["2024"]) is None


def test_parse_day():
    assert parse_day("2024-05-15") == date(2024, 5, 15)
    assert parse_day("2024-05-15T09:00:00") == date(2024, 5, 15)
    assert parse_day("soon") is None
    assert parse_day(None) is None


def test_task_defaults_and_unknown_priority():
    task = Task.model_validate({
        "id": "t1",
        "project_id": "p1",
        "priority": "urgent",
        "description": None,
        "created_at": "2024-05-01T08:00:00+02:00",
    })
    assert task.priority == "medium"
    assert task.description == ""
    assert task.status is None
    assert task.created_at == datetime(2024, 5, 1, 6, 0, tzinfo=timezone.utc)


def test_membership_consistency():
    project = Project.model_validate({
        "id": "p1",
        "owner_id": "alice",
        "member_ids": ["alice", "bob"],
        "members": [{"uid": "alice", "name": "Alice", "role": "owner"}, {"uid": "bob", "name": "Bob"}],
    })
    assert project.membership_consistent()

    broken = project.model_copy(update={"member_ids": ["alice"]})
    assert not broken.membership_consistent()
