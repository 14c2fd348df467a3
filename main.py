import asyncio
import base64
import binascii
import logging
import secrets
from contextlib import asynccontextmanager
from typing import List, Optional, Dict, Any

from fastapi import FastAPI, HTTPException, Depends, Header, Query, Request, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, EmailStr

from controller import Workspace
from database import DocumentStore, InMemoryDocumentStore
from dashboard import StatisticsFilter
from editing import TaskEditingSession, Upload
from errors import NotSignedIn, ValidationFailed, WorkspaceError
from schemas import DEFAULT_COLOR, Identity
from settings import Settings, get_settings
from subscriptions import DataChanged
from toasts import Toast
from views import TaskFilter

logger = logging.getLogger(__name__)


LOG_CONTEXT_KEYS = ("user_id", "project_id", "task_id")


class LogContextFilter(logging.Filter):
    """Render the ids passed through ``extra=`` as ``key=value`` pairs after the message."""

    def filter(self, record: logging.LogRecord) -> bool:
        pairs = [f"{k}={getattr(record, k)}" for k in LOG_CONTEXT_KEYS if getattr(record, k, None)]
        record.context = f" [{' '.join(pairs)}]" if pairs else ""
        return True


def configure_logging(settings: Settings) -> None:
    logging.basicConfig(
        level=settings.LOG_LEVEL.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s%(context)s",
    )
    for handler in logging.getLogger().handlers:
        if not any(isinstance(f, LogContextFilter) for f in handler.filters):
            handler.addFilter(LogContextFilter())


def make_backend(settings: Settings) -> DocumentStore:
    if settings.DATABASE_URL and settings.DATABASE_NAME:
        from mongo import MongoDocumentStore
        return MongoDocumentStore.from_settings(settings)
    logger.warning("DATABASE_URL/DATABASE_NAME not set; using the in-memory document store")
    return InMemoryDocumentStore()


# -----------------------------
# Schemas (subset for requests)
# -----------------------------
class SessionRequest(BaseModel):
    uid: str
    name: Optional[str] = None
    email: Optional[EmailStr] = None


class ProjectBody(BaseModel):
    name: str
    description: str = ""
    deadline: Optional[str] = None
    color: str = DEFAULT_COLOR


class ColumnBody(BaseModel):
    name: str
    color: str = DEFAULT_COLOR


class ColumnOrder(BaseModel):
    column_ids: List[str]


class MemberBody(BaseModel):
    email: str


class TaskCreate(BaseModel):
    column_id: Optional[str] = None
    title: Optional[str] = None


class TaskUpdate(BaseModel):
    title: Optional[str] = None
    description: Optional[str] = None
    priority: Optional[str] = None
    due_date: Optional[str] = None
    start_date: Optional[str] = None
    column_id: Optional[str] = None
    status: Optional[str] = None
    assignee_id: Optional[str] = None


class ChecklistBody(BaseModel):
    text: str = ""


class ChecklistUpdate(BaseModel):
    text: Optional[str] = None
    toggle: bool = False


class MoveBody(BaseModel):
    column_id: str


class FileBody(BaseModel):
    name: str
    mime_type: str = "application/octet-stream"
    content: str  # base64


class CommentCreate(BaseModel):
    text: str = ""
    images: List[FileBody] = []


class AttachmentsBody(BaseModel):
    files: List[FileBody]


class NoteCreate(BaseModel):
    title: Optional[str] = None


class NoteUpdate(BaseModel):
    title: Optional[str] = None
    body: Optional[str] = None


class ChatCreate(BaseModel):
    text: str


class SortBody(BaseModel):
    key: str


class VisibilityBody(BaseModel):
    visible: bool


class ColumnMove(BaseModel):
    from_id: str
    to_id: str


class CalendarShift(BaseModel):
    delta: int
    mini: bool = False


# -----------------------------
# Helpers
# -----------------------------
def to_uploads(files: List[FileBody]) -> List[Upload]:
    uploads = []
    for f in files:
        try:
            data = base64.b64decode(f.content, validate=True)
        except (binascii.Error, ValueError):
            raise ValidationFailed(f'"{f.name}" is not valid base64')
        uploads.append(Upload(name=f.name, mime_type=f.mime_type, data=data))
    return uploads


def session_payload(session: TaskEditingSession) -> Dict[str, Any]:
    task = session.task
    return {
        "task": task.model_dump(mode="json") if task else None,
        "draft": session.draft.model_dump(mode="json"),
        "save_state": session.state.value,
    }


# -----------------------------
# WebSocket manager per user
# -----------------------------
class ConnectionManager:
    def __init__(self):
        self.user_connections: Dict[str, List[WebSocket]] = {}

    async def connect(self, uid: str, websocket: WebSocket):
        await websocket.accept()
        self.user_connections.setdefault(uid, []).append(websocket)

    def disconnect(self, uid: str, websocket: WebSocket):
        conns = self.user_connections.get(uid, [])
        if websocket in conns:
            conns.remove(websocket)
        if not conns and uid in self.user_connections:
            del self.user_connections[uid]

    async def broadcast(self, uid: str, message: Dict[str, Any]):
        for ws in list(self.user_connections.get(uid, [])):
            try:
                await ws.send_json(message)
            except Exception:
                logger.debug("Dropping websocket for %s", uid, exc_info=True)
                self.disconnect(uid, ws)


class SessionRegistry:
    """Bearer tokens handed out by ``POST /session`` and the workspace behind each."""

    def __init__(self, backend: DocumentStore, settings: Settings, manager: ConnectionManager):
        self.backend = backend
        self.settings = settings
        self.manager = manager
        self.tokens: Dict[str, str] = {}
        self.workspaces: Dict[str, Workspace] = {}
        self._detach: Dict[str, List[Any]] = {}

    def _push(self, uid: str, message: Dict[str, Any]) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        loop.create_task(self.manager.broadcast(uid, message))

    async def open(self, identity: Identity) -> str:
        ws = self.workspaces.get(identity.uid)
        if ws is None:
            ws = Workspace(self.backend, self.settings)
            self.workspaces[identity.uid] = ws
            uid = identity.uid

            def on_change(signal: DataChanged) -> None:
                self._push(uid, {"type": "data_changed", "collection": signal.collection, "scope": signal.scope})

            def on_toast(toast: Toast) -> None:
                self._push(uid, {"type": "toast", "toast": toast.to_dict()})

            self._detach[uid] = [ws.add_listener(on_change), ws.toasts.subscribe(on_toast)]
        await ws.sign_in(identity)
        token = secrets.token_urlsafe(32)
        self.tokens[token] = identity.uid
        return token

    def workspace(self, token: Optional[str]) -> Workspace:
        uid = self.tokens.get(token or "")
        if uid is None or uid not in self.workspaces:
            raise NotSignedIn("Invalid token")
        return self.workspaces[uid]

    async def close(self, token: str) -> None:
        uid = self.tokens.pop(token, None)
        if uid is None:
            raise NotSignedIn("Invalid token")
        if uid in self.tokens.values():
            return
        ws = self.workspaces.pop(uid, None)
        for detach in self._detach.pop(uid, []):
            detach()
        if ws is not None:
            await ws.sign_out()

    async def close_all(self) -> None:
        for token in list(self.tokens):
            if token in self.tokens:
                await self.close(token)


def create_app(backend: Optional[DocumentStore] = None, settings: Optional[Settings] = None) -> FastAPI:
    settings = settings or get_settings()
    configure_logging(settings)
    backend = backend or make_backend(settings)
    manager = ConnectionManager()
    registry = SessionRegistry(backend, settings, manager)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        await registry.close_all()

    app = FastAPI(title="Project Workspace API", lifespan=lifespan)
    app.state.registry = registry

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(WorkspaceError)
    async def workspace_error(request: Request, exc: WorkspaceError):
        return JSONResponse(status_code=exc.status_code, content={"detail": exc.detail})

    # -----------------------------
    # Auth utilities
    # -----------------------------
    def bearer(authorization: Optional[str]) -> str:
        if not authorization or not authorization.lower().startswith("bearer "):
            raise HTTPException(status_code=401, detail="Missing token")
        return authorization.split(" ", 1)[1]

    async def current_workspace(authorization: Optional[str] = Header(default=None)) -> Workspace:
        return registry.workspace(bearer(authorization))

    # -----------------------------
    # Session endpoints
    # -----------------------------
    @app.post("/session")
    async def sign_in(body: SessionRequest):
        identity = Identity(uid=body.uid, name=body.name, email=body.email)
        token = await registry.open(identity)
        return {"token": token, "user": identity.model_dump(mode="json")}

    @app.delete("/session")
    async def sign_out(authorization: Optional[str] = Header(default=None)):
        await registry.close(bearer(authorization))
        return {"signed_out": True}

    # -----------------------------
    # Render endpoints
    # -----------------------------
    @app.get("/dashboard")
    async def dashboard(ws: Workspace = Depends(current_workspace)):
        return ws.render_dashboard()

    @app.get("/sidebar")
    async def sidebar(ws: Workspace = Depends(current_workspace)):
        return ws.render_sidebar()

    @app.get("/projects")
    async def list_projects(archived: bool = False, ws: Workspace = Depends(current_workspace)):
        return ws.render_projects(archived=archived)

    @app.get("/projects/{project_id}")
    async def get_project(project_id: str, ws: Workspace = Depends(current_workspace)):
        return ws.project(project_id)

    @app.get("/projects/{project_id}/board")
    async def board(project_id: str, ws: Workspace = Depends(current_workspace)):
        return ws.render_board(project_id)

    @app.get("/projects/{project_id}/list")
    async def task_list(project_id: str, ws: Workspace = Depends(current_workspace)):
        return ws.render_list(project_id)

    @app.get("/projects/{project_id}/calendar")
    async def project_calendar(project_id: str, ws: Workspace = Depends(current_workspace)):
        return ws.render_calendar(project_id)

    @app.get("/projects/{project_id}/gantt")
    async def gantt(project_id: str, ws: Workspace = Depends(current_workspace)):
        return ws.render_gantt(project_id)

    @app.get("/projects/{project_id}/chat")
    async def chat(project_id: str, ws: Workspace = Depends(current_workspace)):
        return ws.render_chat(project_id)

    @app.get("/calendar")
    async def calendar(ws: Workspace = Depends(current_workspace)):
        return ws.render_calendar()

    @app.get("/statistics")
    async def statistics(ws: Workspace = Depends(current_workspace)):
        return ws.render_statistics()

    @app.get("/notes")
    async def list_notes(ws: Workspace = Depends(current_workspace)):
        return ws.render_notes()

    @app.get("/inbox")
    async def inbox(ws: Workspace = Depends(current_workspace)):
        return ws.render_inbox()

    @app.get("/toasts")
    async def toasts(ws: Workspace = Depends(current_workspace)):
        return [t.to_dict() for t in ws.toasts.active()]

    # -----------------------------
    # Project endpoints
    # -----------------------------
    @app.post("/projects")
    async def create_project(body: ProjectBody, ws: Workspace = Depends(current_workspace)):
        project_id = await ws.create_project(body.name, body.description, body.deadline, body.color)
        return {"id": project_id}

    @app.patch("/projects/{project_id}")
    async def update_project(project_id: str, body: ProjectBody, ws: Workspace = Depends(current_workspace)):
        await ws.update_project(project_id, body.name, body.description, body.deadline, body.color)
        return {"id": project_id}

    @app.post("/projects/{project_id}/archive")
    async def archive_project(project_id: str, ws: Workspace = Depends(current_workspace)):
        await ws.archive_project(project_id, True)
        return {"id": project_id, "archived": True}

    @app.post("/projects/{project_id}/restore")
    async def restore_project(project_id: str, ws: Workspace = Depends(current_workspace)):
        await ws.archive_project(project_id, False)
        return {"id": project_id, "archived": False}

    @app.delete("/projects/{project_id}")
    async def delete_project(project_id: str, ws: Workspace = Depends(current_workspace)):
        deleted_tasks = await ws.delete_project(project_id)
        return {"id": project_id, "deleted_tasks": deleted_tasks}

    @app.post("/projects/{project_id}/columns")
    async def add_column(project_id: str, body: ColumnBody, ws: Workspace = Depends(current_workspace)):
        return {"id": await ws.add_column(project_id, body.name, body.color)}

    @app.patch("/projects/{project_id}/columns/{column_id}")
    async def update_column(project_id: str, column_id: str, body: ColumnBody, ws: Workspace = Depends(current_workspace)):
        await ws.update_column(project_id, column_id, body.name, body.color)
        return {"id": column_id}

    @app.delete("/projects/{project_id}/columns/{column_id}")
    async def delete_column(project_id: str, column_id: str, ws: Workspace = Depends(current_workspace)):
        await ws.delete_column(project_id, column_id)
        return {"id": column_id}

    @app.put("/projects/{project_id}/columns")
    async def reorder_columns(project_id: str, body: ColumnOrder, ws: Workspace = Depends(current_workspace)):
        await ws.reorder_columns(project_id, body.column_ids)
        return {"column_ids": body.column_ids}

    @app.post("/projects/{project_id}/members")
    async def add_member(project_id: str, body: MemberBody, ws: Workspace = Depends(current_workspace)):
        return await ws.add_member(project_id, body.email)

    @app.delete("/projects/{project_id}/members/{uid}")
    async def remove_member(project_id: str, uid: str, ws: Workspace = Depends(current_workspace)):
        await ws.remove_member(project_id, uid)
        return {"uid": uid}

    @app.post("/projects/{project_id}/sections/{column_id}/toggle")
    async def toggle_section(project_id: str, column_id: str, ws: Workspace = Depends(current_workspace)):
        return {"collapsed": ws.toggle_section(project_id, column_id)}

    @app.post("/projects/{project_id}/chat")
    async def send_chat(project_id: str, body: ChatCreate, ws: Workspace = Depends(current_workspace)):
        return {"id": await ws.send_chat(project_id, body.text)}

    # -----------------------------
    # Task endpoints
    # -----------------------------
    @app.post("/projects/{project_id}/tasks")
    async def create_task(project_id: str, body: TaskCreate, ws: Workspace = Depends(current_workspace)):
        task_id = await ws.create_task(project_id, body.column_id, body.title)
        return {"id": task_id}

    @app.get("/tasks/{task_id}")
    async def open_task(task_id: str, ws: Workspace = Depends(current_workspace)):
        return session_payload(await ws.open_task(task_id))

    @app.patch("/tasks/{task_id}")
    async def edit_task(task_id: str, body: TaskUpdate, ws: Workspace = Depends(current_workspace)):
        session = await ws.open_task(task_id)
        session.update(**body.model_dump(exclude_unset=True))
        return session_payload(session)

    @app.post("/tasks/{task_id}/save")
    async def save_task(task_id: str, ws: Workspace = Depends(current_workspace)):
        session = await ws.open_task(task_id)
        await session.flush()
        return session_payload(session)

    @app.post("/tasks/{task_id}/close")
    async def close_task(task_id: str, flush: bool = Query(default=False), ws: Workspace = Depends(current_workspace)):
        if ws.session is not None and ws.session.task_id == task_id:
            await ws.close_task(flush=flush)
        return {"id": task_id, "closed": True}

    @app.post("/tasks/{task_id}/checklist")
    async def add_checklist_item(task_id: str, body: ChecklistBody, ws: Workspace = Depends(current_workspace)):
        session = await ws.open_task(task_id)
        session.add_item(body.text)
        return session_payload(session)

    @app.patch("/tasks/{task_id}/checklist/{index}")
    async def update_checklist_item(task_id: str, index: int, body: ChecklistUpdate, ws: Workspace = Depends(current_workspace)):
        session = await ws.open_task(task_id)
        if body.text is not None:
            session.set_item_text(index, body.text)
        if body.toggle:
            session.toggle_item(index)
        return session_payload(session)

    @app.delete("/tasks/{task_id}/checklist/{index}")
    async def remove_checklist_item(task_id: str, index: int, ws: Workspace = Depends(current_workspace)):
        session = await ws.open_task(task_id)
        session.remove_item(index)
        return session_payload(session)

    @app.post("/tasks/{task_id}/move")
    async def move_task(task_id: str, body: MoveBody, ws: Workspace = Depends(current_workspace)):
        return {"moved": await ws.move_task(task_id, body.column_id)}

    @app.post("/tasks/{task_id}/toggle")
    async def toggle_task(task_id: str, ws: Workspace = Depends(current_workspace)):
        return {"done": await ws.toggle_done(task_id)}

    @app.delete("/tasks/{task_id}")
    async def delete_task(task_id: str, ws: Workspace = Depends(current_workspace)):
        await ws.delete_task(task_id)
        return {"id": task_id}

    # -----------------------------
    # Comment and attachment endpoints
    # -----------------------------
    @app.post("/tasks/{task_id}/comments")
    async def add_comment(task_id: str, body: CommentCreate, ws: Workspace = Depends(current_workspace)):
        notified = await ws.add_comment(task_id, body.text, to_uploads(body.images))
        return {"notified": notified}

    @app.delete("/tasks/{task_id}/comments/{index}")
    async def delete_comment(task_id: str, index: int, ws: Workspace = Depends(current_workspace)):
        await ws.delete_comment(task_id, index)
        return {"deleted": index}

    @app.post("/tasks/{task_id}/attachments")
    async def add_attachments(task_id: str, body: AttachmentsBody, ws: Workspace = Depends(current_workspace)):
        return {"accepted": await ws.add_attachments(task_id, to_uploads(body.files))}

    @app.delete("/tasks/{task_id}/attachments/{index}")
    async def remove_attachment(task_id: str, index: int, ws: Workspace = Depends(current_workspace)):
        await ws.remove_attachment(task_id, index)
        return {"deleted": index}

    # -----------------------------
    # Notes, inbox
    # -----------------------------
    @app.post("/notes")
    async def create_note(body: NoteCreate, ws: Workspace = Depends(current_workspace)):
        return {"id": await ws.create_note(body.title)}

    @app.patch("/notes/{note_id}")
    async def edit_note(note_id: str, body: NoteUpdate, ws: Workspace = Depends(current_workspace)):
        await ws.edit_note(note_id, body.title, body.body)
        return {"id": note_id}

    @app.delete("/notes/{note_id}")
    async def delete_note(note_id: str, ws: Workspace = Depends(current_workspace)):
        await ws.delete_note(note_id)
        return {"id": note_id}

    @app.post("/inbox/read")
    async def mark_all_read(ws: Workspace = Depends(current_workspace)):
        return {"updated": await ws.mark_all_read()}

    @app.post("/inbox/{item_id}/read")
    async def mark_read(item_id: str, ws: Workspace = Depends(current_workspace)):
        await ws.mark_read(item_id)
        return {"updated": 1}

    # -----------------------------
    # View preferences
    # -----------------------------
    @app.put("/preferences/filter")
    async def set_filter(body: TaskFilter, ws: Workspace = Depends(current_workspace)):
        return ws.set_filter(**body.model_dump())

    @app.post("/preferences/sort")
    async def sort_by(body: SortBody, ws: Workspace = Depends(current_workspace)):
        return ws.sort_by(body.key)

    @app.post("/preferences/columns/{column_id}/visibility")
    async def set_column_visible(column_id: str, body: VisibilityBody, ws: Workspace = Depends(current_workspace)):
        ws.set_column_visible(column_id, body.visible)
        return ws.prefs.columns()

    @app.post("/preferences/columns/move")
    async def move_column(body: ColumnMove, ws: Workspace = Depends(current_workspace)):
        ws.move_column(body.from_id, body.to_id)
        return ws.prefs.columns()

    @app.post("/calendar/shift")
    async def shift_calendar(body: CalendarShift, ws: Workspace = Depends(current_workspace)):
        if body.mini:
            ws.shift_mini_calendar(body.delta)
            year, month = ws.mini_calendar_month
        else:
            ws.shift_calendar(body.delta)
            year, month = ws.calendar_month
        return {"year": year, "month": month}

    @app.put("/statistics/filter")
    async def set_statistics_filter(body: StatisticsFilter, ws: Workspace = Depends(current_workspace)):
        return ws.set_statistics_filter(**body.model_dump())

    # -----------------------------
    # Live updates
    # -----------------------------
    @app.websocket("/ws")
    async def workspace_ws(websocket: WebSocket, token: str = ""):
        uid = registry.tokens.get(token)
        if uid is None:
            await websocket.close(code=4401)
            return
        await manager.connect(uid, websocket)
        try:
            while True:
                # Keep alive / receive pings from client if any
                await websocket.receive_text()
        except WebSocketDisconnect:
            manager.disconnect(uid, websocket)

    # -----------------------------
    # Health
    # -----------------------------
    @app.get("/")
    def read_root():
        return {"message": "Project Workspace API running", "backend": type(backend).__name__}

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=get_settings().PORT)
