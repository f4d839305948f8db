"""
notesync models.

Usage:
    from notesync.models import Note, NoteChanges, PendingOperation
    from notesync.models import OperationKind, NoteFlag, normalize_tags
    from notesync.models import SyncResult, SyncStatus
"""

# --- Enums & utilities ---
from notesync.models.enums import (
    ConnectionState,
    ContentFormat,
    NoteFlag,
    OperationKind,
    normalize_tags,
)

# --- Domain models ---
from notesync.models.domain import (
    CONTENT_FIELDS, ListFilters, Note, NoteChanges, as_utc, utcnow,
    PendingOperation,
    NoteUpdatedEvent, PeerJoinedEvent, PeerLeftEvent, PresenceEvent,
    RealtimeEvent, parse_event,
)

# --- Result models ---
from notesync.models.results import PushOutcome, SyncResult, SyncStatus

__all__ = [
    # Enums
    "ConnectionState", "ContentFormat", "NoteFlag", "OperationKind", "normalize_tags",
    # Domain
    "CONTENT_FIELDS", "ListFilters", "Note", "NoteChanges", "as_utc", "utcnow",
    "PendingOperation",
    "NoteUpdatedEvent", "PeerJoinedEvent", "PeerLeftEvent", "PresenceEvent",
    "RealtimeEvent", "parse_event",
    # Results
    "PushOutcome", "SyncResult", "SyncStatus",
]
