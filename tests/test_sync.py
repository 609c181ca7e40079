import pytest

import workspace
from errors import ConflictError, NotFoundError, PermissionDenied, StoreError, ValidationError, WorkspaceError
from sync import OverwriteWriter, SessionState, VersionedWriter, WorkspaceSession, get_writer


def _stored_titles(store, event_id):
    return [c["title"] for c in store.get("events", event_id)["columns"]]


def test_load_empty_workspace(store, owner, event_id):
    ws = WorkspaceSession(store, owner, event_id)
    assert ws.state == SessionState.UNLOADED

    assert ws.load() == []
    assert ws.state == SessionState.READY
    assert ws.event.title == "Maureen's Birthday"


def test_load_missing_event(store, owner):
    ws = WorkspaceSession(store, owner, "64b7f0c2a1b2c3d4e5f60718")
    with pytest.raises(NotFoundError):
        ws.load()
    assert ws.state == SessionState.UNLOADED


def test_load_requires_membership(store, event_id, bob):
    with pytest.raises(PermissionDenied):
        WorkspaceSession(store, bob, event_id).load()


def test_collaborator_can_load(store, shared_event_id, alice):
    assert WorkspaceSession(store, alice, shared_event_id).load() == []


def test_load_store_failure_returns_to_unloaded(store, owner, event_id, monkeypatch):
    def broken(*args, **kwargs):
        raise StoreError("Could not read events")

    monkeypatch.setattr(store, "get", broken)
    ws = WorkspaceSession(store, owner, event_id)

    assert ws.load() is None
    assert ws.state == SessionState.UNLOADED


def test_mutate_before_load(store, owner, event_id):
    with pytest.raises(WorkspaceError):
        WorkspaceSession(store, owner, event_id).mutate(lambda cols: cols)


def test_mutate_writes_whole_board(store, owner, event_id):
    ws = WorkspaceSession(store, owner, event_id)
    ws.load()
    ws.mutate(lambda cols: workspace.add_column(cols, "Venue"))
    columns = ws.mutate(lambda cols: workspace.add_task(cols, cols[0].id, "Visit halls"))

    assert ws.state == SessionState.READY
    reloaded = WorkspaceSession(store, owner, event_id).load()
    assert [c.title for c in reloaded] == ["Venue"]
    assert reloaded[0].tasks[0].text == "Visit halls"
    assert reloaded[0].tasks[0].id == columns[0].tasks[0].id


def test_invalid_edit_changes_nothing(store, owner, event_id):
    ws = WorkspaceSession(store, owner, event_id)
    ws.load()
    with pytest.raises(ValidationError):
        ws.mutate(lambda cols: workspace.add_column(cols, ""))
    assert ws.columns == []
    assert ws.state == SessionState.READY


def test_concurrent_edits_last_write_wins(store, owner, shared_event_id, alice):
    first = WorkspaceSession(store, owner, shared_event_id)
    second = WorkspaceSession(store, alice, shared_event_id)
    first.load()
    second.load()

    first.mutate(lambda cols: workspace.add_column(cols, "Venue"))
    second.mutate(lambda cols: workspace.add_column(cols, "Budget"))

    # the second write was computed against the empty board and replaces the first
    assert _stored_titles(store, shared_event_id) == ["Budget"]


def test_task_details_round_trip(store, owner, event_id):
    ws = WorkspaceSession(store, owner, event_id)
    ws.load()
    cols = ws.mutate(lambda c: workspace.add_column(c, "Catering"))
    cols = ws.mutate(lambda c: workspace.add_task(c, cols[0].id, "Pick menu"))
    column_id, task = cols[0].id, cols[0].tasks[0]

    edited = task.model_copy(update={"priority": "B", "description": "x"})
    ws.mutate(lambda c: workspace.save_task_details(c, column_id, edited))

    reloaded = WorkspaceSession(store, owner, event_id).load()
    task = workspace.find_task(reloaded, column_id, task.id)
    assert task.priority == "B"
    assert task.description == "x"


def test_failed_write_keeps_local_copy(store, owner, event_id, monkeypatch):
    ws = WorkspaceSession(store, owner, event_id)
    ws.load()

    def broken(*args, **kwargs):
        raise StoreError("Could not update events")

    monkeypatch.setattr(store, "set", broken)
    with pytest.raises(StoreError):
        ws.mutate(lambda cols: workspace.add_column(cols, "Venue"))

    assert [c.title for c in ws.columns] == ["Venue"]
    assert ws.state == SessionState.READY
    monkeypatch.undo()
    assert _stored_titles(store, event_id) == []


def test_write_to_deleted_event_fails(store, owner, event_id):
    ws = WorkspaceSession(store, owner, event_id)
    ws.load()
    store.delete("events", event_id)

    with pytest.raises(StoreError):
        ws.mutate(lambda cols: workspace.add_column(cols, "Venue"))


def test_versioned_writer_rejects_stale_base(store, owner, shared_event_id, alice):
    first = WorkspaceSession(store, owner, shared_event_id, writer=VersionedWriter())
    second = WorkspaceSession(store, alice, shared_event_id, writer=VersionedWriter())
    first.load()
    second.load()

    first.mutate(lambda cols: workspace.add_column(cols, "Venue"))
    with pytest.raises(ConflictError):
        second.mutate(lambda cols: workspace.add_column(cols, "Budget"))

    assert _stored_titles(store, shared_event_id) == ["Venue"]
    assert store.get("events", shared_event_id)["columnsVersion"] == 1

    second.load()
    second.mutate(lambda cols: workspace.add_column(cols, "Budget"))
    assert _stored_titles(store, shared_event_id) == ["Venue", "Budget"]


def test_get_writer():
    assert isinstance(get_writer("overwrite"), OverwriteWriter)
    assert isinstance(get_writer("versioned"), VersionedWriter)
    with pytest.raises(ValueError):
        get_writer("crdt")


def test_close_resets(store, owner, event_id):
    with WorkspaceSession(store, owner, event_id) as ws:
        ws.load()
        assert ws.state == SessionState.READY
    assert ws.state == SessionState.UNLOADED
    assert ws.columns == []
