"""
Event lifecycle: create, edit, delete and list the events a user can see.
"""
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from pydantic import ValidationError as SchemaError
from pydantic.alias_generators import to_camel

from database import DocumentStore
from errors import NotFoundError, PermissionDenied, ValidationError
from schemas import EVENTS, Event, Session, utcnow

logger = logging.getLogger(__name__)

EDITABLE_FIELDS = {
    "title", "event_type", "start_date", "start_time", "end_date",
    "is_multi_day", "location", "description",
}
UPCOMING_WINDOW = timedelta(days=90)


def _event_from_doc(doc: Dict[str, Any]) -> Event:
    return Event.model_validate(doc)


def load_event(store: DocumentStore, event_id: str) -> Event:
    doc = store.get(EVENTS, event_id)
    if doc is None:
        raise NotFoundError("Event not found", [event_id])
    return _event_from_doc(doc)


def require_member(event: Event, session: Session) -> None:
    if not event.has_member(session):
        raise PermissionDenied("You are not part of this workspace")


def require_owner(event: Event, session: Session) -> None:
    if event.user_id != session.user_id:
        raise PermissionDenied("Only the owner can do this")


def _validated(fields: Dict[str, Any]) -> Event:
    if not str(fields.get("title") or "").strip() or not str(fields.get("event_type") or "").strip():
        raise ValidationError("Please fill in the required fields", ["title", "event_type"])
    try:
        return Event.model_validate({**fields, "title": fields["title"].strip(),
                                     "event_type": fields["event_type"].strip()})
    except SchemaError as e:
        raise ValidationError("Invalid event", [err["msg"] for err in e.errors()]) from e


def create_event(store: DocumentStore, session: Session, fields: Dict[str, Any]) -> Event:
    """Store a new event owned by the caller with an empty board and no collaborators."""
    data = {k: v for k, v in fields.items() if k in EDITABLE_FIELDS}
    event = _validated({**data, "user_id": session.user_id, "collaborators": [], "columns": []})
    event.created_at = utcnow()
    event.id = store.add_document(EVENTS, event.to_doc())
    logger.info("Event %s created by %s", event.id, session.user_id)
    return event


def update_event_details(store: DocumentStore, session: Session, event_id: str,
                         changes: Dict[str, Any]) -> Event:
    event = load_event(store, event_id)
    require_owner(event, session)
    current = event.model_dump()
    current.update({k: v for k, v in changes.items() if k in EDITABLE_FIELDS})
    new_date = changes.get("start_date")
    if isinstance(new_date, datetime) and "start_time" not in changes and event.start_time:
        # the time of day moves with the date
        t = event.start_time
        current["start_time"] = new_date.replace(hour=t.hour, minute=t.minute, second=0, microsecond=0)
    updated = _validated(current)
    fields = {k: v for k, v in updated.to_doc().items()
              if k in {to_camel(f) for f in EDITABLE_FIELDS}}
    fields["updatedAt"] = utcnow()
    store.set(EVENTS, event_id, fields)
    updated.updated_at = fields["updatedAt"]
    return updated


def delete_event(store: DocumentStore, session: Session, event_id: str) -> None:
    event = load_event(store, event_id)
    require_owner(event, session)
    # notifications already sent for this event are left in place
    store.delete(EVENTS, event_id)
    logger.info("Event %s deleted by %s", event_id, session.user_id)


def list_events(store: DocumentStore, session: Session) -> List[Event]:
    """Events the user owns or collaborates on, soonest first."""
    docs = store.query_any(EVENTS, [
        [("userId", "==", session.user_id)],
        [("collaborators", "array-contains", session.email)],
    ])
    events = [_event_from_doc(d) for d in docs]
    return sorted(events, key=lambda e: _as_utc(e.start_date))


def _as_utc(value: datetime) -> datetime:
    return value.replace(tzinfo=timezone.utc) if value.tzinfo is None else value


def event_stats(events: List[Event], session: Session, now: Optional[datetime] = None) -> Dict[str, int]:
    now = _as_utc(now or utcnow())
    upcoming = sum(1 for e in events if now <= _as_utc(e.start_date) <= now + UPCOMING_WINDOW)
    shared = sum(1 for e in events if e.user_id != session.user_id)
    return {"total": len(events), "upcoming_three_months": upcoming, "shared": shared}
