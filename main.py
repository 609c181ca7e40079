import asyncio
import hashlib
import hmac
import logging
import secrets
from dataclasses import asdict
from datetime import datetime, timedelta, timezone
from functools import lru_cache
from typing import Any, Dict, List, Literal, Optional

from fastapi import Depends, FastAPI, File, Header, Query, Request, UploadFile, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse, JSONResponse
from pydantic import BaseModel, EmailStr

import events
import fanout
import inbox
import workspace
from blobs import FileBlobStore, attachment_path
from config import API_VERSION, CORS_ORIGINS, LOG_LEVEL, MAX_UPLOAD_SIZE_BYTES, SESSION_TTL_DAYS
from database import DocumentStore, db, get_store
from errors import AuthenticationError, StoreError, ValidationError, WorkspaceError
from schemas import (
    SESSIONS, USERS, Attachment, Column, Event, NotificationType, Session, User, UserPublic, new_id, utcnow,
)
from sync import WorkspaceSession

logging.basicConfig(level=LOG_LEVEL, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
logger = logging.getLogger(__name__)

app = FastAPI(title="Event Workspace API", version=API_VERSION)

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# -----------------------------
# Helpers
# -----------------------------

class ErrorResponse(BaseModel):
    error: str
    code: str
    details: List[str] = []


@app.exception_handler(WorkspaceError)
async def workspace_error_handler(request: Request, exc: WorkspaceError):
    return JSONResponse(
        status_code=exc.status_code,
        content=ErrorResponse(error=exc.message, code=exc.code, details=exc.details).model_dump(),
    )


def hash_password(pw: str, salt: Optional[str] = None) -> str:
    salt = salt or secrets.token_hex(16)
    digest = hashlib.pbkdf2_hmac("sha256", pw.encode(), salt.encode(), 100_000).hex()
    return f"{salt}${digest}"


def verify_password(pw: str, stored: str) -> bool:
    salt, _, _ = (stored or "").partition("$")
    return hmac.compare_digest(hash_password(pw, salt), stored or "")


def _as_utc(value: datetime) -> datetime:
    return value.replace(tzinfo=timezone.utc) if value.tzinfo is None else value


def event_out(event: Event) -> Dict[str, Any]:
    return {**event.model_dump(by_alias=True, mode="json"), "startTimeDisplay": event.start_time_display}


def board_out(columns: List[Column], results: Optional[List[fanout.FanoutResult]] = None) -> Dict[str, Any]:
    return {
        "columns": [c.model_dump(by_alias=True, mode="json") for c in columns],
        "notifications": [asdict(r) for r in results or []],
    }


def _column_title(columns: List[Column], column_id: str) -> str:
    return next((c.title for c in columns if c.id == column_id), "")


# -----------------------------
# Dependencies
# -----------------------------

def store_dep() -> DocumentStore:
    return get_store()


@lru_cache()
def blob_dep() -> FileBlobStore:
    return FileBlobStore()


def _session_for_token(store: DocumentStore, token: str) -> Optional[Session]:
    found = store.query(SESSIONS, [("token", "==", token)], limit=1)
    if not found:
        return None
    record = found[0]
    if record.get("expiresAt") and _as_utc(record["expiresAt"]) < utcnow():
        return None
    user = store.get(USERS, record["userId"])
    if not user:
        return None
    display_name = f"{user.get('firstName', '')} {user.get('lastName', '')}".strip()
    return Session(
        user_id=user["id"],
        email=user["email"],
        display_name=display_name,
        email_verified=user.get("emailVerified", False),
    )


async def get_current_user(
    authorization: Optional[str] = Header(default=None),
    store: DocumentStore = Depends(store_dep),
) -> Session:
    if not authorization or not authorization.lower().startswith("bearer "):
        raise AuthenticationError("Missing token")
    session = _session_for_token(store, authorization.split(" ", 1)[1])
    if session is None:
        raise AuthenticationError("Invalid or expired token")
    return session


def _open_workspace(store: DocumentStore, session: Session, event_id: str) -> WorkspaceSession:
    ws = WorkspaceSession(store, session, event_id)
    if ws.load() is None:
        raise StoreError("Could not load the workspace")
    return ws


# -----------------------------
# Schemas (subset for requests)
# -----------------------------
class RegisterRequest(BaseModel):
    email: EmailStr
    password: str
    first_name: str = ""
    last_name: str = ""
    username: Optional[str] = None


class LoginRequest(BaseModel):
    email: EmailStr
    password: str


class EventCreate(BaseModel):
    title: str
    event_type: str
    start_date: datetime
    start_time: Optional[str] = None
    end_date: Optional[datetime] = None
    is_multi_day: bool = False
    location: Optional[str] = None
    description: str = ""
    collaborator_email: Optional[str] = None


class EventUpdate(BaseModel):
    title: Optional[str] = None
    event_type: Optional[str] = None
    start_date: Optional[datetime] = None
    start_time: Optional[str] = None
    end_date: Optional[datetime] = None
    is_multi_day: Optional[bool] = None
    location: Optional[str] = None
    description: Optional[str] = None


class ColumnsReplace(BaseModel):
    columns: List[Column]


class TitleBody(BaseModel):
    title: str


class TextBody(BaseModel):
    text: str


class MoveColumnBody(BaseModel):
    index: int


class MoveTaskBody(BaseModel):
    to_column_id: str
    index: int


class TaskDetailsUpdate(BaseModel):
    text: Optional[str] = None
    priority: Optional[Literal["A", "B", "C"]] = None
    description: Optional[str] = None


class InviteRequest(BaseModel):
    email: str


# -----------------------------
# Auth endpoints
# -----------------------------
@app.post("/auth/register")
def register(body: RegisterRequest, store: DocumentStore = Depends(store_dep)):
    email = body.email.lower()
    if fanout.find_user_by_email(store, email):
        raise ValidationError("Email already registered")
    user = User(
        email=email,
        first_name=body.first_name,
        last_name=body.last_name,
        username=body.username,
        password=hash_password(body.password),
    )
    user_id = store.add_document(USERS, user.to_doc())
    return UserPublic(id=user_id, **user.model_dump(exclude={"password", "email_verified"})).model_dump(by_alias=True)


@app.post("/auth/login")
def login(body: LoginRequest, store: DocumentStore = Depends(store_dep)):
    user = fanout.find_user_by_email(store, body.email)
    if not user or not verify_password(body.password, user.get("password", "")):
        raise AuthenticationError("Invalid credentials")
    token = secrets.token_urlsafe(32)
    store.add_document(SESSIONS, {
        "token": token,
        "userId": user["id"],
        "expiresAt": utcnow() + timedelta(days=SESSION_TTL_DAYS),
    })
    return {"token": token, "user": UserPublic.model_validate(user).model_dump(by_alias=True)}


@app.get("/me")
async def me(session: Session = Depends(get_current_user)):
    return session.model_dump()


# -----------------------------
# Event endpoints
# -----------------------------
@app.post("/events")
async def create_event(body: EventCreate, session=Depends(get_current_user), store=Depends(store_dep)):
    event = events.create_event(store, session, body.model_dump(exclude={"collaborator_email"}, exclude_none=True))
    invitation_id = fanout.invite_on_create(store, session, event, body.collaborator_email)
    return {**event_out(event), "invitationId": invitation_id}


@app.get("/events")
async def list_events(session=Depends(get_current_user), store=Depends(store_dep)):
    return [event_out(e) for e in events.list_events(store, session)]


@app.get("/events/stats")
async def event_stats(session=Depends(get_current_user), store=Depends(store_dep)):
    return events.event_stats(events.list_events(store, session), session)


@app.get("/events/{event_id}")
async def get_event(event_id: str, session=Depends(get_current_user), store=Depends(store_dep)):
    event = events.load_event(store, event_id)
    events.require_member(event, session)
    return event_out(event)


@app.patch("/events/{event_id}")
async def update_event(event_id: str, body: EventUpdate, session=Depends(get_current_user), store=Depends(store_dep)):
    event = events.update_event_details(store, session, event_id, body.model_dump(exclude_unset=True))
    fanout.broadcast_change(store, session, event_id, NotificationType.EVENT_UPDATED, "updated the event details")
    return event_out(event)


@app.delete("/events/{event_id}")
async def delete_event(event_id: str, session=Depends(get_current_user), store=Depends(store_dep)):
    events.delete_event(store, session, event_id)
    return {"deleted": event_id}


# -----------------------------
# Workspace endpoints
# -----------------------------
@app.get("/events/{event_id}/columns")
async def load_columns(event_id: str, session=Depends(get_current_user), store=Depends(store_dep)):
    with _open_workspace(store, session, event_id) as ws:
        return board_out(ws.columns)


@app.put("/events/{event_id}/columns")
async def replace_columns(event_id: str, body: ColumnsReplace, session=Depends(get_current_user), store=Depends(store_dep)):
    with _open_workspace(store, session, event_id) as ws:
        return board_out(ws.replace_columns(body.columns))


@app.post("/events/{event_id}/columns")
async def add_column(event_id: str, body: TitleBody, session=Depends(get_current_user), store=Depends(store_dep)):
    with _open_workspace(store, session, event_id) as ws:
        columns = ws.mutate(lambda cols: workspace.add_column(cols, body.title))
    results = fanout.broadcast_change(store, session, event_id, NotificationType.LIST_ADDED,
                                      f'added the list "{body.title.strip()}"')
    return board_out(columns, results)


@app.patch("/events/{event_id}/columns/{column_id}")
async def rename_column(event_id: str, column_id: str, body: TitleBody, session=Depends(get_current_user), store=Depends(store_dep)):
    with _open_workspace(store, session, event_id) as ws:
        return board_out(ws.mutate(lambda cols: workspace.rename_column(cols, column_id, body.title)))


@app.post("/events/{event_id}/columns/{column_id}/move")
async def move_column(event_id: str, column_id: str, body: MoveColumnBody, session=Depends(get_current_user), store=Depends(store_dep)):
    with _open_workspace(store, session, event_id) as ws:
        return board_out(ws.mutate(lambda cols: workspace.move_column(cols, column_id, body.index)))


@app.delete("/events/{event_id}/columns/{column_id}")
async def remove_column(event_id: str, column_id: str, session=Depends(get_current_user), store=Depends(store_dep)):
    with _open_workspace(store, session, event_id) as ws:
        title = _column_title(ws.columns, column_id)
        columns = ws.mutate(lambda cols: workspace.remove_column(cols, column_id))
    results = fanout.broadcast_change(store, session, event_id, NotificationType.LIST_REMOVED,
                                      f'removed the list "{title}"')
    return board_out(columns, results)


@app.post("/events/{event_id}/columns/{column_id}/tasks")
async def add_task(event_id: str, column_id: str, body: TextBody, session=Depends(get_current_user), store=Depends(store_dep)):
    with _open_workspace(store, session, event_id) as ws:
        columns = ws.mutate(lambda cols: workspace.add_task(cols, column_id, body.text))
    results = fanout.broadcast_change(store, session, event_id, NotificationType.CARD_ADDED,
                                      f'added the card "{body.text.strip()}" to "{_column_title(columns, column_id)}"')
    return board_out(columns, results)


@app.put("/events/{event_id}/columns/{column_id}/tasks/{task_id}")
async def save_task_details(event_id: str, column_id: str, task_id: str, body: TaskDetailsUpdate,
                            session=Depends(get_current_user), store=Depends(store_dep)):
    with _open_workspace(store, session, event_id) as ws:
        current = workspace.find_task(ws.columns, column_id, task_id)
        edited = current.model_copy(update=body.model_dump(exclude_none=True))
        return board_out(ws.mutate(lambda cols: workspace.save_task_details(cols, column_id, edited)))


@app.post("/events/{event_id}/columns/{column_id}/tasks/{task_id}/toggle")
async def toggle_task(event_id: str, column_id: str, task_id: str, session=Depends(get_current_user), store=Depends(store_dep)):
    with _open_workspace(store, session, event_id) as ws:
        columns = ws.mutate(lambda cols: workspace.toggle_task(cols, column_id, task_id))
    task = workspace.find_task(columns, column_id, task_id)
    verb = "checked off" if task.completed else "unchecked"
    results = fanout.broadcast_change(store, session, event_id, NotificationType.ITEM_CHECKED,
                                      f'{verb} "{task.text}"')
    return board_out(columns, results)


@app.post("/events/{event_id}/columns/{column_id}/tasks/{task_id}/move")
async def move_task(event_id: str, column_id: str, task_id: str, body: MoveTaskBody,
                    session=Depends(get_current_user), store=Depends(store_dep)):
    with _open_workspace(store, session, event_id) as ws:
        return board_out(ws.mutate(
            lambda cols: workspace.move_task(cols, column_id, task_id, body.to_column_id, body.index)))


@app.delete("/events/{event_id}/columns/{column_id}/tasks/{task_id}")
async def remove_task(event_id: str, column_id: str, task_id: str, session=Depends(get_current_user), store=Depends(store_dep)):
    with _open_workspace(store, session, event_id) as ws:
        text = workspace.find_task(ws.columns, column_id, task_id).text
        columns = ws.mutate(lambda cols: workspace.remove_task(cols, column_id, task_id))
    results = fanout.broadcast_change(store, session, event_id, NotificationType.CARD_REMOVED,
                                      f'removed the card "{text}"')
    return board_out(columns, results)


@app.post("/events/{event_id}/columns/{column_id}/tasks/{task_id}/subtasks")
async def add_subtask(event_id: str, column_id: str, task_id: str, body: TextBody,
                      session=Depends(get_current_user), store=Depends(store_dep)):
    with _open_workspace(store, session, event_id) as ws:
        return board_out(ws.mutate(lambda cols: workspace.add_subtask(cols, column_id, task_id, body.text)))


@app.post("/events/{event_id}/columns/{column_id}/tasks/{task_id}/subtasks/{subtask_id}/toggle")
async def toggle_subtask(event_id: str, column_id: str, task_id: str, subtask_id: str,
                         session=Depends(get_current_user), store=Depends(store_dep)):
    with _open_workspace(store, session, event_id) as ws:
        return board_out(ws.mutate(lambda cols: workspace.toggle_subtask(cols, column_id, task_id, subtask_id)))


@app.delete("/events/{event_id}/columns/{column_id}/tasks/{task_id}/subtasks/{subtask_id}")
async def remove_subtask(event_id: str, column_id: str, task_id: str, subtask_id: str,
                         session=Depends(get_current_user), store=Depends(store_dep)):
    with _open_workspace(store, session, event_id) as ws:
        return board_out(ws.mutate(lambda cols: workspace.remove_subtask(cols, column_id, task_id, subtask_id)))


@app.post("/events/{event_id}/columns/{column_id}/tasks/{task_id}/attachments")
async def upload_attachment(event_id: str, column_id: str, task_id: str, file: UploadFile = File(...),
                            session=Depends(get_current_user), store=Depends(store_dep),
                            blobs: FileBlobStore = Depends(blob_dep)):
    content = await file.read()
    if len(content) > MAX_UPLOAD_SIZE_BYTES:
        raise ValidationError(f"File exceeds maximum size of {MAX_UPLOAD_SIZE_BYTES // (1024 * 1024)} MB")
    with _open_workspace(store, session, event_id) as ws:
        workspace.find_task(ws.columns, column_id, task_id)
        attachment_id = new_id()
        path = attachment_path(event_id, attachment_id, file.filename)
        blobs.upload(path, content)
        attachment = Attachment(id=attachment_id, url=blobs.get_download_url(path),
                                name=file.filename or "file", size=len(content))
        try:
            columns = ws.mutate(lambda cols: workspace.add_attachment(cols, column_id, task_id, attachment))
        except WorkspaceError:
            blobs.delete(path)
            raise
        return board_out(columns)


@app.delete("/events/{event_id}/columns/{column_id}/tasks/{task_id}/attachments/{attachment_id}")
async def remove_attachment(event_id: str, column_id: str, task_id: str, attachment_id: str,
                            session=Depends(get_current_user), store=Depends(store_dep),
                            blobs: FileBlobStore = Depends(blob_dep)):
    with _open_workspace(store, session, event_id) as ws:
        task = workspace.find_task(ws.columns, column_id, task_id)
        url = next((a.url for a in task.attachments if a.id == attachment_id), None)
        columns = ws.mutate(lambda cols: workspace.remove_attachment(cols, column_id, task_id, attachment_id))
    path = blobs.path_from_url(url) if url else None
    if path:
        blobs.delete(path)
    return board_out(columns)


@app.get("/files/{path:path}")
async def download_file(path: str, blobs: FileBlobStore = Depends(blob_dep)):
    return FileResponse(blobs.open(path))


# -----------------------------
# Collaboration
# -----------------------------
@app.post("/events/{event_id}/collaborators")
async def invite_collaborator(event_id: str, body: InviteRequest, session=Depends(get_current_user), store=Depends(store_dep)):
    notification_id = fanout.invite(store, session, event_id, body.email)
    return {"notificationId": notification_id, "message": "The user will appear once they accept."}


@app.get("/users/search")
async def search_users(q: str = Query(""), session=Depends(get_current_user), store=Depends(store_dep)):
    return [u.model_dump(by_alias=True) for u in fanout.search_users(store, session, q)]


# -----------------------------
# Notifications
# -----------------------------
@app.get("/notifications")
async def list_notifications(session=Depends(get_current_user), store=Depends(store_dep)):
    return [n.model_dump(by_alias=True, mode="json") for n in inbox.pending(store, session)]


@app.post("/notifications/{notification_id}/accept")
async def accept_notification(notification_id: str, session=Depends(get_current_user), store=Depends(store_dep)):
    notification = inbox.get_notification(store, session, notification_id)
    inbox.accept(store, session, notification)
    return {"accepted": notification_id, "eventId": notification.event_id}


@app.post("/notifications/{notification_id}/decline")
async def decline_notification(notification_id: str, session=Depends(get_current_user), store=Depends(store_dep)):
    notification = inbox.get_notification(store, session, notification_id)
    inbox.decline(store, session, notification)
    return {"declined": notification_id}


async def _drain(websocket: WebSocket) -> None:
    while True:
        await websocket.receive_text()


@app.websocket("/ws/notifications")
async def notifications_ws(websocket: WebSocket, token: str = Query(...), store: DocumentStore = Depends(store_dep)):
    session = _session_for_token(store, token)
    if session is None:
        await websocket.close(code=1008)
        return
    await websocket.accept()
    loop = asyncio.get_running_loop()
    queue: asyncio.Queue = asyncio.Queue()

    def on_change(notifications):
        payload = [n.model_dump(by_alias=True, mode="json") for n in notifications]
        loop.call_soon_threadsafe(queue.put_nowait, payload)

    async def pump():
        while True:
            payload = await queue.get()
            await websocket.send_json({"type": "notifications", "notifications": payload})

    subscription = inbox.subscribe(store, session, on_change)
    tasks = {asyncio.create_task(_drain(websocket)), asyncio.create_task(pump())}
    try:
        done, pending = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
        for task in pending:
            task.cancel()
        for task in done:
            exc = task.exception()
            if exc is not None and not isinstance(exc, WebSocketDisconnect):
                logger.error("Inbox socket for %s closed: %s", session.user_id, exc)
    finally:
        subscription.cancel()


# -----------------------------
# Health
# -----------------------------
@app.get("/")
def read_root():
    return {"message": "Event Workspace API running"}


@app.get("/health")
def health(store: DocumentStore = Depends(store_dep)):
    response = {"status": "healthy", "version": API_VERSION, "database": "connected", "timestamp": utcnow().isoformat()}
    try:
        store.database.list_collection_names()
    except Exception as e:
        logger.warning("Health check failed: %s", e)
        response.update(status="unhealthy", database=f"error: {str(e)[:80]}")
        return JSONResponse(status_code=503, content=response)
    return response


if __name__ == "__main__":
    import uvicorn

    from config import PORT

    if db is None:
        logger.warning("DATABASE_URL / DATABASE_NAME not set; requests will fail with 503")
    uvicorn.run(app, host="0.0.0.0", port=PORT)
