from datetime import datetime, timedelta, timezone

import pytest
from pydantic import ValidationError

from notesync.config import Settings
from notesync.models import (
    ContentFormat,
    ListFilters,
    Note,
    NoteChanges,
    NoteUpdatedEvent,
    OperationKind,
    PeerJoinedEvent,
    PendingOperation,
    PresenceEvent,
    normalize_tags,
    parse_event,
)


def test_normalize_tags():
    assert normalize_tags(["work", " work ", "", "home", "  "]) == ["work", "home"]


def test_note_wire_form_is_camel_case():
    note = Note.model_validate({
        "id": "n1",
        "userId": "u1",
        "title": "T",
        "contentFormat": "markdown",
        "isPinned": True,
        "createdAt": "2024-01-01T00:00:00Z",
        "updatedAt": "2024-01-01T12:00:00+02:00",
        "unknownServerField": 1,
    })
    assert note.user_id == "u1"
    assert note.content_format is ContentFormat.MARKDOWN
    assert note.updated_at == datetime(2024, 1, 1, 10, tzinfo=timezone.utc)
    assert note.updated_at.tzinfo == timezone.utc

    wire = note.to_wire()
    assert wire["isPinned"] is True
    assert wire["updatedAt"].startswith("2024-01-01T10:00:00")
    assert "unknownServerField" not in wire


def test_naive_timestamps_are_treated_as_utc():
    note = Note(updated_at=datetime(2024, 5, 1, 8, 30))
    assert note.updated_at == datetime(2024, 5, 1, 8, 30, tzinfo=timezone.utc)


def test_diff_and_apply():
    before = Note(title="a", tags=["x"])
    after = before.model_copy(update={"title": "b", "is_archived": True})

    changes = before.diff(after)
    assert changes.as_patch() == {"title": "b", "is_archived": True}
    assert changes.to_wire() == {"title": "b", "isArchived": True}
    assert before.diff(before).is_empty()
    assert before.apply(changes).title == "b"


def test_note_changes_accept_wire_names():
    changes = NoteChanges.model_validate({"isFavorite": True, "tags": ["a", "a"]})
    assert changes.is_favorite
    assert changes.tags == ["a"]
    assert changes.as_patch() == {"is_favorite": True, "tags": ["a"]}


def test_pending_operation_snapshots():
    note = Note(title="n", content="c")
    create = PendingOperation.for_create(note)
    assert create.kind is OperationKind.CREATE
    assert create.changes["title"] == "n"
    assert create.changes["content_format"] == "plaintext"

    delete = PendingOperation(kind="delete", note_id="n1", changes={"title": "ignored"})
    assert delete.changes is None

    update = PendingOperation(kind="update", note_id="n1")
    assert update.changes == {}


def test_list_filters():
    assert ListFilters().is_unfiltered
    assert not ListFilters(search="x").is_unfiltered
    assert not ListFilters(trashed=True).is_unfiltered
    assert ListFilters(trashed=True).to_params()["trashed"] == "true"
    with pytest.raises(ValidationError):
        ListFilters(sort_by="color")


def test_parse_note_updated_event():
    event = parse_event("note:updated", {
        "noteId": "note-42",
        "changes": {"title": "X"},
        "userId": "alice",
        "timestamp": 1704067200000,
    })
    assert isinstance(event, NoteUpdatedEvent)
    assert event.note_id == "note-42"
    assert event.changes.as_patch() == {"title": "X"}
    assert event.timestamp == datetime(2024, 1, 1, tzinfo=timezone.utc)


def test_parse_other_events():
    joined = parse_event("user:joined", {"userId": "bob", "socketId": "s1"})
    assert isinstance(joined, PeerJoinedEvent) and joined.socket_id == "s1"

    presence = parse_event("user:presence", {"noteId": "n1", "cursor": {"line": 1}, "timestamp": 5})
    assert isinstance(presence, PresenceEvent)
    assert presence.status is None


@pytest.mark.parametrize(
    "name, payload",
    [
        ("note:updated", None),
        ("note:updated", "note-42"),
        ("note:updated", {"noteId": "", "changes": {}}),
        ("note:updated", {"noteId": "n1"}),
        ("user:joined", {}),
        ("note:deleted", {"noteId": "n1"}),
    ],
)
def test_malformed_events_raise_value_error(name, payload):
    with pytest.raises(ValueError):
        parse_event(name, payload)


def test_settings_resolve_relative_database_path(monkeypatch):
    monkeypatch.setenv("DATABASE_PATH", "var/replica.db")
    monkeypatch.setenv("SYNC_INTERVAL_SECONDS", "30")
    settings = Settings(_env_file=None)
    assert settings.DATABASE_PATH.endswith("var/replica.db")
    assert settings.DATABASE_PATH.startswith("/")
    assert settings.SYNC_INTERVAL_SECONDS == 30.0

    monkeypatch.setenv("DATABASE_PATH", ":memory:")
    assert Settings(_env_file=None).DATABASE_PATH == ":memory:"


def test_epoch_millis_round_trip():
    from notesync.models.domain.events import to_epoch_millis

    moment = datetime(2024, 1, 1, tzinfo=timezone.utc) + timedelta(milliseconds=250)
    event = parse_event("note:updated", {"noteId": "n", "changes": {}, "timestamp": to_epoch_millis(moment)})
    assert event.timestamp == moment
