import pytest

from errors import NotFoundError, PermissionDenied, StoreError, ValidationError
from events import load_event
from fanout import broadcast_change, invite, invite_on_create, participant_emails, search_users
from schemas import NotificationType


def _notifications(store):
    return store.query("notifications")


def test_self_invite_is_rejected_without_writes(store, owner, event_id):
    with pytest.raises(ValidationError):
        invite(store, owner, event_id, "  Maureen@Example.com ")
    assert _notifications(store) == []


def test_blank_invite_is_rejected(store, owner, event_id):
    with pytest.raises(ValidationError):
        invite(store, owner, event_id, "   ")
    assert _notifications(store) == []


def test_invite_unknown_user(store, owner, event_id):
    with pytest.raises(NotFoundError):
        invite(store, owner, event_id, "nobody@example.com")
    assert _notifications(store) == []


def test_invite_writes_pending_request(store, owner, event_id, alice):
    notification_id = invite(store, owner, event_id, "ALICE@example.com")

    [doc] = _notifications(store)
    assert doc["id"] == notification_id
    assert doc["recipientId"] == alice.user_id
    assert doc["type"] == "COLLAB_REQUEST"
    assert doc["status"] == "pending"
    assert doc["eventId"] == event_id
    assert doc["eventTitle"] == "Maureen's Birthday"
    assert doc["senderName"] == "Maureen Otieno"
    # membership only changes on accept
    assert load_event(store, event_id).collaborators == []


def test_only_members_can_invite(store, event_id, alice, bob):
    with pytest.raises(PermissionDenied):
        invite(store, bob, event_id, alice.email)


def test_invite_on_create_skips_unknown_email(store, owner, event_id, alice):
    event = load_event(store, event_id)

    assert invite_on_create(store, owner, event, "ghost@example.com") is None
    assert invite_on_create(store, owner, event, "") is None
    notification_id = invite_on_create(store, owner, event, alice.email)

    [doc] = _notifications(store)
    assert doc["id"] == notification_id
    assert doc["type"] == "invitation"


def test_participants_are_deduplicated(store, owner, event_id, alice):
    store.array_union("events", event_id, "collaborators", alice.email)
    store.array_union("events", event_id, "collaborators", owner.email)

    assert participant_emails(store, load_event(store, event_id)) == [owner.email, alice.email]


@pytest.mark.parametrize("actor", ["owner", "alice", "bob"])
def test_broadcast_reaches_every_participant(request, store, shared_event_id, owner, alice, bob, actor):
    session = request.getfixturevalue(actor)

    results = broadcast_change(store, session, shared_event_id, NotificationType.LIST_ADDED,
                               'added the list "Venue"')

    assert [r.email for r in results] == [owner.email, alice.email, bob.email]
    assert all(r.ok for r in results)
    docs = _notifications(store)
    assert len(docs) == 3
    assert {d["recipientId"] for d in docs} == {owner.user_id, alice.user_id, bob.user_id}
    own = next(d for d in docs if d["recipientId"] == session.user_id)
    others = [d for d in docs if d["recipientId"] != session.user_id]
    assert own["senderName"] == "You"
    assert own["body"] == 'You added the list "Venue"'
    assert all(d["senderName"] == session.first_name for d in others)
    assert all(d["type"] == "list_added" for d in docs)


def test_broadcast_continues_past_failures(store, owner, event_id, alice):
    store.array_union("events", event_id, "collaborators", "left@example.com")
    store.array_union("events", event_id, "collaborators", alice.email)

    results = broadcast_change(store, owner, event_id, NotificationType.CARD_ADDED, 'added the card "Cake"')

    assert [(r.email, r.ok) for r in results] == [
        (owner.email, True), ("left@example.com", False), (alice.email, True),
    ]
    assert results[1].reason == "User not found"
    assert len(_notifications(store)) == 2


def test_broadcast_write_failure_is_recorded(store, owner, shared_event_id, monkeypatch):
    real_add = store.add_document
    calls = []

    def flaky(collection, fields):
        calls.append(fields["recipientId"])
        if len(calls) == 2:
            raise StoreError("Could not create notifications")
        return real_add(collection, fields)

    monkeypatch.setattr(store, "add_document", flaky)
    results = broadcast_change(store, owner, shared_event_id, NotificationType.ITEM_CHECKED, 'checked off "Cake"')

    assert [r.ok for r in results] == [True, False, True]
    assert len(calls) == 3


def test_broadcast_is_not_deduplicated(store, owner, event_id):
    broadcast_change(store, owner, event_id, NotificationType.CARD_ADDED, 'added the card "Cake"')
    broadcast_change(store, owner, event_id, NotificationType.CARD_ADDED, 'added the card "Cake"')
    assert len(_notifications(store)) == 2


def test_search_users_by_prefix(store, owner, alice, make_user):
    make_user("alicia@example.com", "Alicia")
    make_user("bob@example.com", "Bob")

    assert search_users(store, owner, "al") == []
    found = search_users(store, owner, "ALI")
    assert sorted(u.email for u in found) == ["alice@example.com", "alicia@example.com"]
    assert search_users(store, alice, "alice") == []
