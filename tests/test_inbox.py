import pytest

import inbox
from errors import PermissionDenied, StoreError, ValidationError
from events import load_event
from fanout import broadcast_change, invite
from schemas import Notification, NotificationType


@pytest.fixture
def invitation(store, owner, event_id, alice):
    notification_id = invite(store, owner, event_id, alice.email)
    return inbox.get_notification(store, alice, notification_id)


def test_pending_lists_only_my_notifications(store, invitation, alice, bob):
    assert [n.id for n in inbox.pending(store, alice)] == [invitation.id]
    assert inbox.pending(store, bob) == []


def test_accept_joins_event_once(store, event_id, invitation, alice):
    inbox.accept(store, alice, invitation)
    inbox.accept(store, alice, invitation)

    assert load_event(store, event_id).collaborators == [alice.email]
    assert inbox.pending(store, alice) == []


def test_decline_leaves_membership_unchanged(store, event_id, invitation, alice):
    inbox.decline(store, alice, invitation)

    assert load_event(store, event_id).collaborators == []
    assert store.get("notifications", invitation.id) is None


def test_accept_requires_event_id(store, alice):
    notification = Notification(id="64b7f0c2a1b2c3d4e5f60718", recipient_id=alice.user_id,
                                sender_name="Someone", type=NotificationType.COLLAB_REQUEST)
    with pytest.raises(ValidationError):
        inbox.accept(store, alice, notification)


def test_accept_after_event_deleted(store, event_id, invitation, alice):
    store.delete("events", event_id)

    with pytest.raises(StoreError):
        inbox.accept(store, alice, invitation)
    assert [n.id for n in inbox.pending(store, alice)] == [invitation.id]


def test_accept_change_notice_only_dismisses(store, shared_event_id, owner, bob):
    broadcast_change(store, owner, shared_event_id, NotificationType.CARD_ADDED, 'added the card "Cake"')
    [notice] = inbox.pending(store, bob)

    inbox.accept(store, bob, notice)

    assert inbox.pending(store, bob) == []
    assert load_event(store, shared_event_id).collaborators == ["alice@example.com", "bob@example.com"]


def test_only_recipient_can_resolve(store, invitation, bob):
    with pytest.raises(PermissionDenied):
        inbox.get_notification(store, bob, invitation.id)
    with pytest.raises(PermissionDenied):
        inbox.accept(store, bob, invitation)
    with pytest.raises(PermissionDenied):
        inbox.decline(store, bob, invitation)


def test_subscription_follows_inbox(store, owner, event_id, alice):
    snapshots = []

    with inbox.subscribe(store, alice, snapshots.append) as subscription:
        assert snapshots == [[]]
        invite(store, owner, event_id, alice.email)
        assert len(snapshots) == 2
        [notification] = snapshots[-1]
        assert notification.type == "COLLAB_REQUEST"

        inbox.decline(store, alice, notification)
        assert snapshots[-1] == []

    assert subscription.active is False
    invite(store, owner, event_id, alice.email)
    assert len(snapshots) == 3


def test_subscription_ignores_other_recipients(store, owner, event_id, alice, bob):
    snapshots = []
    subscription = inbox.subscribe(store, alice, snapshots.append)
    try:
        invite(store, owner, event_id, bob.email)
        assert snapshots == [[]]
    finally:
        subscription.cancel()
    subscription.cancel()


def test_write_only_refreshes_affected_inboxes(store, owner, event_id, alice, bob, monkeypatch):
    real_query = store.query
    refreshed = []

    def spy(collection, predicates=(), limit=None):
        if collection == "notifications":
            refreshed.append(dict((f, v) for f, _, v in predicates)["recipientId"])
        return real_query(collection, predicates, limit)

    with inbox.subscribe(store, alice, lambda notifications: None), \
            inbox.subscribe(store, bob, lambda notifications: None):
        monkeypatch.setattr(store, "query", spy)
        notification_id = invite(store, owner, event_id, bob.email)
        assert refreshed == [bob.user_id]

        inbox.decline(store, bob, inbox.get_notification(store, bob, notification_id))
        assert refreshed == [bob.user_id, bob.user_id]
