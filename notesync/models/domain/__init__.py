"""Domain models: the records the local replica and the wire exchange."""

from notesync.models.domain.note import (
    CONTENT_FIELDS,
    ListFilters,
    Note,
    NoteChanges,
    as_utc,
    utcnow,
)
from notesync.models.domain.pending import PendingOperation
from notesync.models.domain.events import (
    NoteUpdatedEvent,
    PeerJoinedEvent,
    PeerLeftEvent,
    PresenceEvent,
    RealtimeEvent,
    parse_event,
)

__all__ = [
    "CONTENT_FIELDS", "ListFilters", "Note", "NoteChanges", "as_utc", "utcnow",
    "PendingOperation",
    "NoteUpdatedEvent", "PeerJoinedEvent", "PeerLeftEvent", "PresenceEvent",
    "RealtimeEvent", "parse_event",
]
