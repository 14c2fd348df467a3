"""
Per-user list layout and section-collapse preferences.

Stored on the user's profile document (created lazily) and merged with the
code-defined column defaults on every load. Saved entries only contribute
visibility and order; widths always come from the defaults so width changes
ship without migrating stored preferences.
"""
import logging
from typing import Any, Dict, Iterable, List, Optional, Set

from pydantic import BaseModel, ValidationError

from database import DocumentStore
from scheduling import Debouncer
from schemas import USERS, ListColumnPref
from settings import Settings

logger = logging.getLogger(__name__)


class ListColumn(BaseModel):
    id: str
    label: str
    width: Optional[int] = None
    visible: bool = True
    resizable: bool = False
    flex: bool = False


LIST_COLUMNS_DEFAULT: List[ListColumn] = [
    ListColumn(id="checkbox", label="", width=36, visible=True),
    ListColumn(id="title", label="Task name", width=None, visible=True, flex=True),
    ListColumn(id="desc", label="Description", width=200, visible=False),
    ListColumn(id="assignee", label="Assignee", width=130, visible=True),
    ListColumn(id="status", label="Status", width=100, visible=True),
    ListColumn(id="due", label="Due", width=90, visible=True),
    ListColumn(id="priority", label="Priority", width=90, visible=True),
    ListColumn(id="created", label="Created", width=110, visible=False),
]

SORTABLE_COLUMNS = frozenset({"title", "assignee", "status", "due", "priority", "created"})

# Pinned first; cannot be dragged or hidden
FIXED_COLUMN = "checkbox"


def parse_saved_columns(raw: Any) -> Optional[List[ListColumnPref]]:
    if not isinstance(raw, list):
        return None
    saved = []
    for item in raw:
        try:
            saved.append(ListColumnPref.model_validate(item))
        except ValidationError:
            logger.debug("Ignoring malformed column preference %r", item)
    return saved


def merge_list_columns(saved: Optional[Iterable[ListColumnPref]]) -> List[ListColumn]:
    if saved is None:
        return [c.model_copy() for c in LIST_COLUMNS_DEFAULT]
    saved_list = list(saved)
    by_id = {s.id: s for s in saved_list}
    position = {s.id: i for i, s in enumerate(saved_list)}
    merged = []
    for default in LIST_COLUMNS_DEFAULT:
        col = default.model_copy()
        pref = by_id.get(default.id)
        if pref is not None and pref.visible is not None:
            col.visible = pref.visible
        merged.append(col)
    # Stable sort: saved ids in saved order, new defaults appended in default order
    return sorted(merged, key=lambda c: position.get(c.id, len(saved_list)))


def serialize_list_columns(columns: Iterable[ListColumn]) -> List[Dict[str, Any]]:
    return [{"id": c.id, "visible": c.visible, "width": c.width} for c in columns]


def collapsed_to_document(collapsed: Dict[str, Set[str]]) -> Dict[str, List[str]]:
    return {project_id: sorted(ids) for project_id, ids in collapsed.items()}


def collapsed_from_document(raw: Any) -> Dict[str, Set[str]]:
    if not isinstance(raw, dict):
        return {}
    return {
        str(project_id): set(ids) if isinstance(ids, list) else set()
        for project_id, ids in raw.items()
    }


class PreferenceStore:
    def __init__(self, backend: DocumentStore, settings: Settings):
        self.backend = backend
        self.uid: Optional[str] = None
        self.saved_columns: Optional[List[ListColumnPref]] = None
        self.collapsed: Dict[str, Set[str]] = {}
        self._columns_save = Debouncer(settings.PREFERENCE_DEBOUNCE, self._write_columns, "list-columns")
        self._collapsed_save = Debouncer(settings.PREFERENCE_DEBOUNCE, self._write_collapsed, "collapsed-sections")

    async def load(self, uid: str) -> None:
        self.reset()
        self.uid = uid
        try:
            profile = await self.backend.get(USERS, uid) or {}
        except Exception:
            logger.warning("Could not load preferences for %s; using defaults", uid, exc_info=True)
            return
        self.saved_columns = parse_saved_columns(profile.get("list_column_config"))
        self.collapsed = collapsed_from_document(profile.get("collapsed_sections"))

    def reset(self) -> None:
        self._columns_save.cancel()
        self._collapsed_save.cancel()
        self.uid = None
        self.saved_columns = None
        self.collapsed = {}

    # -----------------------------
    # List columns
    # -----------------------------
    def columns(self) -> List[ListColumn]:
        return merge_list_columns(self.saved_columns)

    def visible_columns(self) -> List[ListColumn]:
        return [c for c in self.columns() if c.visible]

    def save_columns(self, columns: List[ListColumn]) -> None:
        self.saved_columns = [ListColumnPref(**entry) for entry in serialize_list_columns(columns)]
        self._columns_save.schedule()

    def set_column_visible(self, column_id: str, visible: bool) -> None:
        if column_id == FIXED_COLUMN:
            return
        cols = self.columns()
        for col in cols:
            if col.id == column_id:
                col.visible = visible
                self.save_columns(cols)
                return

    def move_column(self, from_id: str, to_id: str) -> None:
        """Drop ``from_id`` onto ``to_id``'s position, shifting the rest."""
        if from_id == to_id or FIXED_COLUMN in (from_id, to_id):
            return
        cols = self.columns()
        ids = [c.id for c in cols]
        if from_id not in ids or to_id not in ids:
            return
        moved = cols.pop(ids.index(from_id))
        cols.insert(ids.index(to_id), moved)
        self.save_columns(cols)

    # -----------------------------
    # Collapsed sections
    # -----------------------------
    def collapsed_for(self, project_id: str) -> Set[str]:
        return set(self.collapsed.get(project_id, set()))

    def is_collapsed(self, project_id: str, column_id: str) -> bool:
        return column_id in self.collapsed.get(project_id, set())

    def toggle_section(self, project_id: str, column_id: str) -> bool:
        sections = self.collapsed.setdefault(project_id, set())
        if column_id in sections:
            sections.discard(column_id)
        else:
            sections.add(column_id)
        self._collapsed_save.schedule()
        return column_id in sections

    # -----------------------------
    # Persistence
    # -----------------------------
    async def _write_columns(self) -> None:
        if self.uid is None or self.saved_columns is None:
            return
        payload = [pref.model_dump() for pref in self.saved_columns]
        await self.backend.set(USERS, self.uid, {"list_column_config": payload}, merge=True)

    async def _write_collapsed(self) -> None:
        if self.uid is None:
            return
        await self.backend.set(USERS, self.uid, {"collapsed_sections": collapsed_to_document(self.collapsed)}, merge=True)

    async def flush(self) -> None:
        await self._columns_save.flush()
        await self._collapsed_save.flush()
