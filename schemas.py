"""
Database Schemas for the Event Workspace service

Each top-level Pydantic model represents a MongoDB collection. The collection
name is lowercased from the class name plural, e.g. Event -> "events".
Persisted field names are camelCase; attributes are snake_case.
"""
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import List, Literal, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, EmailStr, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

USERS = "users"
EVENTS = "events"
NOTIFICATIONS = "notifications"
SESSIONS = "session"

DEFAULT_LOCATION = "To be decided"
DISPLAY_TIME_FORMATS = ("%I:%M %p", "%I:%M%p", "%H:%M")


def new_id() -> str:
    """Client-side id assigned before the value is persisted."""
    return uuid.uuid4().hex


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class StoredModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_doc(self) -> dict:
        return self.model_dump(by_alias=True, exclude={"id"})


# Workspace values (nested inside events.columns)
Priority = Literal["A", "B", "C"]


class Subtask(StoredModel):
    id: str = Field(default_factory=new_id)
    text: str
    completed: bool = False


class Attachment(StoredModel):
    id: str = Field(default_factory=new_id)
    url: str
    name: str
    size: int = Field(0, ge=0, description="Size in bytes")


class Task(StoredModel):
    id: str = Field(default_factory=new_id)
    text: str = Field(validation_alias=AliasChoices("text", "title"))
    completed: bool = False
    priority: Priority = "C"
    description: str = ""
    subtasks: List[Subtask] = Field(default_factory=list)
    attachments: List[Attachment] = Field(default_factory=list)

    @field_validator("description", mode="before")
    @classmethod
    def _none_description(cls, value):
        return value or ""


class Column(StoredModel):
    id: str = Field(default_factory=new_id)
    title: str
    tasks: List[Task] = Field(default_factory=list)


# Events
class Event(StoredModel):
    id: Optional[str] = None
    user_id: str = Field(..., description="User id of the event owner")
    title: str
    event_type: str
    start_date: datetime
    start_time: Optional[datetime] = Field(None, description="Canonical start timestamp")
    end_date: Optional[datetime] = None
    is_multi_day: bool = False
    location: str = DEFAULT_LOCATION
    description: str = ""
    collaborators: List[str] = Field(default_factory=list, description="Lowercase emails")
    columns: List[Column] = Field(default_factory=list)
    columns_version: int = 0
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @field_validator("start_time", mode="before")
    @classmethod
    def _parse_display_time(cls, value, info):
        """Older documents store the start time as a display string like '07:30 PM'."""
        if not isinstance(value, str) or not value.strip():
            return value or None
        try:
            return datetime.fromisoformat(value)
        except ValueError:
            pass
        for fmt in DISPLAY_TIME_FORMATS:
            try:
                parsed = datetime.strptime(value.strip().upper(), fmt)
            except ValueError:
                continue
            base = info.data.get("start_date")
            if base is None:
                return parsed
            return base.replace(hour=parsed.hour, minute=parsed.minute, second=0, microsecond=0)
        raise ValueError(f"Unrecognised start time: {value!r}")

    @field_validator("location", "description", mode="before")
    @classmethod
    def _blank_text(cls, value, info):
        if value is None or (isinstance(value, str) and not value.strip()):
            return DEFAULT_LOCATION if info.field_name == "location" else ""
        return value

    @field_validator("collaborators")
    @classmethod
    def _lowercase_emails(cls, value: List[str]) -> List[str]:
        return [email.strip().lower() for email in value]

    @model_validator(mode="after")
    def _single_day_has_no_end(self):
        if not self.is_multi_day:
            self.end_date = None
        return self

    @property
    def start_time_display(self) -> str:
        if self.start_time is None:
            return "Not set"
        return self.start_time.strftime("%I:%M %p")

    def has_member(self, session: "Session") -> bool:
        return self.user_id == session.user_id or session.email in self.collaborators


# Notifications
class NotificationType(str, Enum):
    COLLAB_REQUEST = "COLLAB_REQUEST"
    INVITATION = "invitation"
    LIST_ADDED = "list_added"
    LIST_REMOVED = "list_removed"
    CARD_ADDED = "card_added"
    CARD_REMOVED = "card_removed"
    ITEM_CHECKED = "item_checked"
    EVENT_UPDATED = "event_updated"


INVITATION_TYPES = {NotificationType.COLLAB_REQUEST, NotificationType.INVITATION}


class Notification(StoredModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, use_enum_values=True)

    id: Optional[str] = None
    recipient_id: str
    sender_id: Optional[str] = None
    sender_name: str
    sender_email: Optional[str] = None
    type: NotificationType
    event_id: Optional[str] = None
    event_title: Optional[str] = None
    body: Optional[str] = None
    status: Literal["pending"] = "pending"
    created_at: Optional[datetime] = None

    @property
    def is_invitation(self) -> bool:
        return self.type in {t.value for t in INVITATION_TYPES}


# Auth and Users
class User(StoredModel):
    email: EmailStr = Field(..., description="Unique, lowercase; the collaboration handle")
    first_name: str = ""
    last_name: str = ""
    username: Optional[str] = None
    avatar: Optional[str] = None
    email_verified: bool = False
    password: str = Field(..., description="Password hash; never returned")

    @field_validator("email", mode="before")
    @classmethod
    def _lowercase(cls, value):
        return value.strip().lower() if isinstance(value, str) else value


class UserPublic(StoredModel):
    id: str
    email: EmailStr
    first_name: str = ""
    last_name: str = ""
    username: Optional[str] = None
    avatar: Optional[str] = None


class Session(BaseModel):
    """The signed-in user every core operation acts as."""

    model_config = ConfigDict(frozen=True)

    user_id: str
    email: str
    display_name: str = ""
    email_verified: bool = False

    @field_validator("email")
    @classmethod
    def _lowercase(cls, value: str) -> str:
        return value.strip().lower()

    @property
    def first_name(self) -> str:
        if self.display_name.strip():
            return self.display_name.split()[0]
        return self.email.split("@")[0]
