import pytest

from conftest import settle
from preferences import (
    LIST_COLUMNS_DEFAULT,
    PreferenceStore,
    collapsed_from_document,
    collapsed_to_document,
    merge_list_columns,
    parse_saved_columns,
    serialize_list_columns,
)
from schemas import USERS, ListColumnPref


def ids(columns):
    return [c.id for c in columns]


def test_merge_without_saved_returns_defaults():
    assert merge_list_columns(None) == LIST_COLUMNS_DEFAULT


def test_merge_keeps_saved_order_and_visibility_but_default_widths():
    saved = [
        ListColumnPref(id="priority", visible=True, width=999),
        ListColumnPref(id="checkbox", visible=True),
        ListColumnPref(id="desc", visible=True),
        ListColumnPref(id="retired", visible=True),
    ]
    merged = merge_list_columns(saved)

    assert ids(merged)[:3] == ["priority", "checkbox", "desc"]
    assert "retired" not in ids(merged)
    # columns missing from the saved list follow in default order
    assert ids(merged)[3:] == ["title", "assignee", "status", "due", "created"]
    by_id = {c.id: c for c in merged}
    assert by_id["priority"].width == 90
    assert by_id["desc"].visible


def test_round_trip_is_stable():
    columns = merge_list_columns(None)
    columns[2].visible = True
    reloaded = merge_list_columns(parse_saved_columns(serialize_list_columns(columns)))
    assert reloaded == columns


def test_malformed_saved_data():
    assert parse_saved_columns("nope") is None
    assert ids(merge_list_columns(parse_saved_columns([{"visible": True}, {"id": "due", "visible": False}])))[0] == "due"
    assert collapsed_from_document(["x"]) == {}


def test_collapsed_round_trip():
    collapsed = {"p1": {"b", "a"}}
    assert collapsed_from_document(collapsed_to_document(collapsed)) == collapsed


@pytest.mark.asyncio
async def test_store_persists_debounced_changes(backend, settings):
    prefs = PreferenceStore(backend, settings)
    await prefs.load("alice")

    prefs.set_column_visible("desc", True)
    prefs.move_column("due", "title")
    assert prefs.toggle_section("p1", "todo") is True
    await settle()

    profile = await backend.get(USERS, "alice")
    assert profile["collapsed_sections"] == {"p1": ["todo"]}
    saved_ids = [c["id"] for c in profile["list_column_config"]]
    assert saved_ids.index("due") < saved_ids.index("title")

    reloaded = PreferenceStore(backend, settings)
    await reloaded.load("alice")
    assert reloaded.columns() == prefs.columns()
    assert reloaded.is_collapsed("p1", "todo")


@pytest.mark.asyncio
async def test_checkbox_column_is_fixed(backend, settings):
    prefs = PreferenceStore(backend, settings)
    await prefs.load("alice")

    prefs.set_column_visible("checkbox", False)
    prefs.move_column("checkbox", "due")

    assert prefs.columns()[0].id == "checkbox"
    assert prefs.columns()[0].visible
    assert backend.writes == []


@pytest.mark.asyncio
async def test_load_failure_falls_back_to_defaults(backend, settings):
    async def broken_get(collection_name, doc_id):
        raise ConnectionError("offline")

    backend.get = broken_get
    prefs = PreferenceStore(backend, settings)
    await prefs.load("alice")
    assert prefs.columns() == LIST_COLUMNS_DEFAULT
