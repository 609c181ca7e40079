"""
Pytest configuration and shared fixtures.
"""
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

import mongomock
import pytest

# Add project root to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from database import DocumentStore  # noqa: E402
from events import create_event  # noqa: E402
from schemas import USERS, Session  # noqa: E402


@pytest.fixture
def store():
    """DocumentStore over an in-memory mongomock database."""
    return DocumentStore(mongomock.MongoClient()["workspace_test"])


@pytest.fixture
def make_user(store):
    def _make(email: str, first_name: str = "", last_name: str = "") -> Session:
        user_id = store.add_document(USERS, {
            "email": email.lower(),
            "firstName": first_name,
            "lastName": last_name,
            "password": "x",
        })
        return Session(user_id=user_id, email=email, display_name=f"{first_name} {last_name}".strip())

    return _make


@pytest.fixture
def owner(make_user):
    return make_user("maureen@example.com", "Maureen", "Otieno")


@pytest.fixture
def alice(make_user):
    return make_user("alice@example.com", "Alice", "Wanjiru")


@pytest.fixture
def bob(make_user):
    return make_user("bob@example.com", "Bob", "Kamau")


@pytest.fixture
def event_fields():
    start = datetime.now(timezone.utc) + timedelta(days=30)
    return {
        "title": "Maureen's Birthday",
        "event_type": "Birthday Party",
        "start_date": start,
        "start_time": "07:30 PM",
        "location": "Garden Hall",
        "description": "Surprise party",
    }


@pytest.fixture
def event_id(store, owner, event_fields):
    return create_event(store, owner, event_fields).id


@pytest.fixture
def shared_event_id(store, event_id, alice, bob):
    """An event owned by `owner` with alice and bob as collaborators."""
    store.array_union("events", event_id, "collaborators", alice.email)
    store.array_union("events", event_id, "collaborators", bob.email)
    return event_id
