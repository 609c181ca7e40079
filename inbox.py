"""
Notification inbox: pending notifications addressed to the signed-in user.
"""
import logging
from typing import Callable, List

from database import DocumentStore, Subscription
from errors import DocumentMissing, NotFoundError, PermissionDenied, StoreError, ValidationError
from schemas import EVENTS, NOTIFICATIONS, Notification, Session

logger = logging.getLogger(__name__)


def _pending_predicates(session: Session):
    return [("recipientId", "==", session.user_id), ("status", "==", "pending")]


def _to_notifications(docs) -> List[Notification]:
    return sorted((Notification.model_validate(d) for d in docs),
                  key=lambda n: n.created_at.timestamp() if n.created_at else 0, reverse=True)


def pending(store: DocumentStore, session: Session) -> List[Notification]:
    return _to_notifications(store.query(NOTIFICATIONS, _pending_predicates(session)))


def subscribe(store: DocumentStore, session: Session,
              on_change: Callable[[List[Notification]], None]) -> Subscription:
    """Live inbox. The caller must cancel the subscription (or use it as a context manager)."""
    return store.subscribe(NOTIFICATIONS, _pending_predicates(session),
                           lambda docs: on_change(_to_notifications(docs)))


def get_notification(store: DocumentStore, session: Session, notification_id: str) -> Notification:
    doc = store.get(NOTIFICATIONS, notification_id)
    if doc is None:
        raise NotFoundError("Notification not found", [notification_id])
    notification = Notification.model_validate(doc)
    if notification.recipient_id != session.user_id:
        raise PermissionDenied("This notification is not addressed to you")
    return notification


def accept(store: DocumentStore, session: Session, notification: Notification) -> None:
    """Join the event for invitations, then delete the notification.

    The event is not checked first: if it has been deleted the collaborator
    update fails with a StoreError and the notification stays pending.
    """
    if notification.recipient_id != session.user_id:
        raise PermissionDenied("This notification is not addressed to you")
    if not notification.event_id:
        raise ValidationError("Event ID is missing from this invitation.")
    if notification.is_invitation:
        try:
            store.array_union(EVENTS, notification.event_id, "collaborators", session.email)
        except DocumentMissing as e:
            raise StoreError("Could not join the event. Ensure the event still exists.") from e
        logger.info("%s joined event %s", session.email, notification.event_id)
    store.delete(NOTIFICATIONS, notification.id)


def decline(store: DocumentStore, session: Session, notification: Notification) -> None:
    if notification.recipient_id != session.user_id:
        raise PermissionDenied("This notification is not addressed to you")
    store.delete(NOTIFICATIONS, notification.id)
