"""
Test configuration and fixtures.

Provides:
- In-memory document store with failure injection
- Settings with short timers so debounced work settles quickly
- Seeded projects/tasks and a signed-in Workspace
"""
import asyncio
from datetime import date
from typing import Any, Dict, List, Optional

import pytest

from controller import Workspace
from database import InMemoryDocumentStore
from schemas import PROJECTS, TASKS, USERS, Identity
from settings import Settings

TODAY = date(2024, 5, 15)  # a Wednesday


# =============================================================================
# Configuration
# =============================================================================

@pytest.fixture
def settings() -> Settings:
    return Settings(
        DATABASE_URL=None,
        DATABASE_NAME=None,
        AUTOSAVE_DEBOUNCE=0.02,
        PREFERENCE_DEBOUNCE=0.02,
        NOTE_DEBOUNCE=0.02,
        SAVED_INDICATOR_SECONDS=0.05,
        OPEN_TASK_ATTEMPTS=3,
        OPEN_TASK_INTERVAL=0.01,
        RESUBSCRIBE_BASE_DELAY=0.01,
        RESUBSCRIBE_MAX_DELAY=0.04,
        RESUBSCRIBE_MAX_ATTEMPTS=2,
    )


@pytest.fixture
def backend() -> InMemoryDocumentStore:
    return InMemoryDocumentStore()


@pytest.fixture
def alice() -> Identity:
    return Identity(uid="alice", name="Alice Owner", email="alice@example.com")


@pytest.fixture
def bob() -> Identity:
    return Identity(uid="bob", name="Bob Builder", email="bob@example.com")


async def settle(seconds: float = 0.1) -> None:
    """Let debounced timers fire and their writes finish."""
    await asyncio.sleep(seconds)


# =============================================================================
# Seed helpers
# =============================================================================

def member(identity: Identity, role: str = "member") -> Dict[str, Any]:
    return {"uid": identity.uid, "name": identity.name, "email": identity.email, "role": role}


async def seed_project(
    backend: InMemoryDocumentStore,
    owner: Identity,
    others: Optional[List[Identity]] = None,
    name: str = "Launch",
    columns: Optional[List[Dict[str, Any]]] = None,
) -> str:
    others = others or []
    return await backend.create(PROJECTS, {
        "name": name,
        "description": "",
        "color": "#6B7C5C",
        "owner_id": owner.uid,
        "member_ids": [owner.uid] + [o.uid for o in others],
        "members": [member(owner, "owner")] + [member(o) for o in others],
        "columns": columns if columns is not None else [
            {"id": "todo", "name": "To do", "color": "#111111", "order": 0},
            {"id": "doing", "name": "In progress", "color": "#222222", "order": 1},
            {"id": "done", "name": "Done", "color": "#333333", "order": 2},
        ],
        "archived": False,
    })


async def seed_task(backend: InMemoryDocumentStore, project_id: str, **fields: Any) -> str:
    doc = {
        "project_id": project_id,
        "column_id": "todo",
        "title": "Task",
        "status": "open",
        "priority": "medium",
        "history": [],
    }
    doc.update(fields)
    return await backend.create(TASKS, doc)


async def seed_user(backend: InMemoryDocumentStore, identity: Identity) -> None:
    await backend.set(USERS, identity.uid, {"name": identity.name, "email": identity.email})


# =============================================================================
# Workspace
# =============================================================================

@pytest.fixture
async def workspace(backend, settings, alice):
    ws = Workspace(backend, settings, today=lambda: TODAY)
    await ws.sign_in(alice)
    yield ws
    await ws.sign_out()
