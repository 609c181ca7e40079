"""
Collaboration invites and change notifications.

Participants are addressed by email; each email is resolved to a user id
right before its notification is written. Writes happen one participant at a
time and a failure for one participant never stops the others.
"""
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from database import DocumentStore
from errors import NotFoundError, ValidationError, WorkspaceError
from events import load_event, require_member
from schemas import NOTIFICATIONS, USERS, Event, Notification, NotificationType, Session, UserPublic, utcnow

logger = logging.getLogger(__name__)

SEARCH_MIN_CHARS = 3
SEARCH_LIMIT = 5


@dataclass
class FanoutResult:
    email: str
    ok: bool
    notification_id: Optional[str] = None
    reason: Optional[str] = None


def _clean_email(email: Optional[str]) -> str:
    return (email or "").strip().lower()


def find_user_by_email(store: DocumentStore, email: str) -> Optional[Dict[str, Any]]:
    docs = store.query(USERS, [("email", "==", _clean_email(email))], limit=1)
    return docs[0] if docs else None


def _write(store: DocumentStore, notification: Notification) -> str:
    notification.created_at = utcnow()
    return store.add_document(NOTIFICATIONS, notification.to_doc())


def invite(store: DocumentStore, session: Session, event_id: str, email: str) -> str:
    """Send a collaboration request. Membership is only granted when it is accepted."""
    clean = _clean_email(email)
    if not clean:
        raise ValidationError("Enter the email of the person to invite")
    if clean == session.email:
        raise ValidationError("You cannot invite yourself to this workspace")
    event = load_event(store, event_id)
    require_member(event, session)
    user = find_user_by_email(store, clean)
    if user is None:
        raise NotFoundError("User not found. This email is not registered.", [clean])
    notification_id = _write(store, Notification(
        recipient_id=user["id"],
        sender_id=session.user_id,
        sender_name=session.display_name or "A user",
        sender_email=session.email,
        type=NotificationType.COLLAB_REQUEST,
        event_id=event_id,
        event_title=event.title,
    ))
    logger.info("Collaboration request %s sent to %s for event %s", notification_id, clean, event_id)
    return notification_id


def invite_on_create(store: DocumentStore, session: Session, event: Event, email: Optional[str]) -> Optional[str]:
    """Invitation typed into the new-event form; unknown emails are skipped."""
    clean = _clean_email(email)
    if not clean or clean == session.email:
        return None
    user = find_user_by_email(store, clean)
    if user is None:
        logger.info("No user with email %s; invitation for event %s skipped", clean, event.id)
        return None
    return _write(store, Notification(
        recipient_id=user["id"],
        sender_id=session.user_id,
        sender_name=session.display_name or "An organizer",
        sender_email=session.email,
        type=NotificationType.INVITATION,
        event_id=event.id,
        event_title=event.title,
    ))


def participant_emails(store: DocumentStore, event: Event) -> List[str]:
    """Owner email plus collaborator emails, lowercased, first occurrence kept."""
    owner = store.get(USERS, event.user_id)
    emails = ([owner["email"]] if owner else []) + list(event.collaborators)
    seen = set()
    participants = []
    for email in emails:
        clean = _clean_email(email)
        if clean and clean not in seen:
            seen.add(clean)
            participants.append(clean)
    return participants


def broadcast_change(store: DocumentStore, session: Session, event_id: str,
                     change_type: NotificationType, detail: str) -> List[FanoutResult]:
    """Notify every participant, the actor included, that the board changed.

    `detail` completes the sentence started by the actor's name, e.g.
    'added the list "Venue"'. Nothing is deduplicated: calling this twice
    sends everything twice.
    """
    event = load_event(store, event_id)
    results = []
    for email in participant_emails(store, event):
        try:
            user = find_user_by_email(store, email)
            if user is None:
                raise NotFoundError("User not found", [email])
            is_actor = user["id"] == session.user_id
            actor = "You" if is_actor else session.first_name
            notification_id = _write(store, Notification(
                recipient_id=user["id"],
                sender_id=session.user_id,
                sender_name=actor,
                sender_email=session.email,
                type=change_type,
                event_id=event_id,
                event_title=event.title,
                body=f"{actor} {detail}",
            ))
        except WorkspaceError as e:
            logger.warning("Notification to %s for event %s failed: %s", email, event_id, e.message)
            results.append(FanoutResult(email=email, ok=False, reason=e.message))
            continue
        results.append(FanoutResult(email=email, ok=True, notification_id=notification_id))
    failed = sum(1 for r in results if not r.ok)
    if failed:
        logger.warning("%d of %d notifications for event %s failed", failed, len(results), event_id)
    return results


def search_users(store: DocumentStore, session: Session, prefix: str) -> List[UserPublic]:
    clean = _clean_email(prefix)
    if len(clean) < SEARCH_MIN_CHARS:
        return []
    docs = store.query(USERS, [("email", ">=", clean), ("email", "<=", clean + "\uf8ff")], limit=SEARCH_LIMIT)
    return [UserPublic.model_validate(d) for d in docs if d.get("email") != session.email]
