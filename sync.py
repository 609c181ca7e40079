"""
Workspace synchronization.

A WorkspaceSession holds one caller's copy of an event board. Every mutation
is applied locally first and then the entire `columns` field is written back.
Writes are not queued and carry no merge: with the default OverwriteWriter the
last write to reach the store wins, and edits computed against an older copy
silently replace newer ones. VersionedWriter is the stricter alternative and
rejects a write whose base version is stale.
"""
import logging
from enum import Enum
from typing import List, Optional

from config import WORKSPACE_WRITE_STRATEGY
from database import DocumentStore
from errors import ConflictError, NotFoundError, PermissionDenied, StoreError, WorkspaceError
from events import load_event, require_member
from schemas import EVENTS, Column, Event, Session
from workspace import Transform, dump_columns

logger = logging.getLogger(__name__)


class SessionState(str, Enum):
    UNLOADED = "unloaded"
    LOADING = "loading"
    READY = "ready"
    MUTATING = "mutating"


class WorkspaceWriter:
    """Persists the whole columns value; returns the version the store now holds."""

    name = "base"

    def persist(self, store: DocumentStore, event_id: str, columns: List[Column], base_version: int) -> int:
        raise NotImplementedError


class OverwriteWriter(WorkspaceWriter):
    name = "overwrite"

    def persist(self, store, event_id, columns, base_version):
        store.set(EVENTS, event_id, {"columns": dump_columns(columns)})
        return base_version


class VersionedWriter(WorkspaceWriter):
    name = "versioned"

    def persist(self, store, event_id, columns, base_version):
        applied = store.compare_and_set(EVENTS, event_id, {"columns": dump_columns(columns)},
                                        "columnsVersion", base_version)
        if not applied:
            raise ConflictError("The workspace was changed by someone else. Reload and try again.")
        return base_version + 1


WRITERS = {w.name: w for w in (OverwriteWriter, VersionedWriter)}


def get_writer(name: str = WORKSPACE_WRITE_STRATEGY) -> WorkspaceWriter:
    try:
        return WRITERS[name]()
    except KeyError:
        raise ValueError(f"Unknown workspace write strategy: {name}") from None


class WorkspaceSession:
    def __init__(self, store: DocumentStore, session: Session, event_id: str,
                 writer: Optional[WorkspaceWriter] = None):
        self.store = store
        self.session = session
        self.event_id = event_id
        self.writer = writer or get_writer()
        self.state = SessionState.UNLOADED
        self.event: Optional[Event] = None
        self.columns: List[Column] = []
        self.version = 0

    def load(self) -> Optional[List[Column]]:
        """Fetch the event and take its columns as the local copy.

        Returns None when the store could not be read; the session is then
        back in UNLOADED and nothing retries.
        """
        self.state = SessionState.LOADING
        try:
            event = load_event(self.store, self.event_id)
            require_member(event, self.session)
        except (NotFoundError, PermissionDenied):
            self.state = SessionState.UNLOADED
            raise
        except StoreError:
            logger.exception("Fetch error for event %s", self.event_id)
            self.state = SessionState.UNLOADED
            return None
        self.event = event
        self.columns = list(event.columns)
        self.version = event.columns_version
        self.state = SessionState.READY
        return self.columns

    def mutate(self, transform: Transform) -> List[Column]:
        """Apply `transform` locally, then write the whole board.

        The local copy keeps the new value even if the write fails.
        """
        if self.state != SessionState.READY:
            raise WorkspaceError(f"Workspace is {self.state.value}, not ready")
        updated = transform(self.columns)
        self.columns = updated
        self.state = SessionState.MUTATING
        try:
            self.version = self.writer.persist(self.store, self.event_id, updated, self.version)
        except StoreError:
            logger.exception("Sync error for event %s", self.event_id)
            raise
        finally:
            self.state = SessionState.READY
        logger.debug("Event %s columns written (%d lists)", self.event_id, len(updated))
        return updated

    def replace_columns(self, columns: List[Column]) -> List[Column]:
        return self.mutate(lambda _: list(columns))

    def close(self) -> None:
        self.state = SessionState.UNLOADED
        self.event = None
        self.columns = []

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()
        return False
