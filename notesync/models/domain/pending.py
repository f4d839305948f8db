"""Pending-sync operation model."""

from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, Field, field_validator, model_validator

from notesync.models.domain.note import Note, NoteChanges, as_utc, utcnow
from notesync.models.enums import OperationKind


class PendingOperation(BaseModel):
    """A local mutation that the server has not acknowledged yet."""
    seq: Optional[int] = None
    kind: OperationKind
    note_id: str
    enqueued_at: datetime = Field(default_factory=utcnow)
    changes: Optional[dict[str, Any]] = None

    @field_validator("enqueued_at")
    @classmethod
    def _utc(cls, value: datetime) -> datetime:
        return as_utc(value)

    @model_validator(mode="after")
    def _delete_carries_no_snapshot(self):
        if self.kind is OperationKind.DELETE:
            self.changes = None
        elif self.changes is None:
            self.changes = {}
        return self

    @classmethod
    def for_create(cls, note: Note) -> "PendingOperation":
        return cls(
            kind=OperationKind.CREATE,
            note_id=note.id,
            changes=note.content_changes().to_snapshot(),
        )

    @classmethod
    def for_update(cls, note_id: str, changes: NoteChanges) -> "PendingOperation":
        return cls(
            kind=OperationKind.UPDATE,
            note_id=note_id,
            changes=changes.to_snapshot(),
        )

    @classmethod
    def for_delete(cls, note_id: str) -> "PendingOperation":
        return cls(kind=OperationKind.DELETE, note_id=note_id)

    def note_changes(self) -> NoteChanges:
        return NoteChanges.model_validate(self.changes or {})
