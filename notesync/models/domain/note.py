"""Note domain model.

Python attributes are snake_case; the wire form (server API and realtime
payloads) is the camelCase JSON shape of the server's Note.
"""

from datetime import datetime, timezone
from typing import Any, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from notesync.models.enums import ContentFormat, normalize_tags


CONTENT_FIELDS = (
    "title",
    "content",
    "content_format",
    "tags",
    "color",
    "is_pinned",
    "is_favorite",
    "is_archived",
    "is_trashed",
    "trashed_at",
    "folder_id",
)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class NoteChanges(BaseModel):
    """A partial snapshot of note fields. Only fields that were set are carried."""
    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, extra="ignore"
    )

    title: Optional[str] = None
    content: Optional[str] = None
    content_format: Optional[ContentFormat] = None
    tags: Optional[list[str]] = None
    color: Optional[str] = None
    is_pinned: Optional[bool] = None
    is_favorite: Optional[bool] = None
    is_archived: Optional[bool] = None
    is_trashed: Optional[bool] = None
    trashed_at: Optional[datetime] = None
    folder_id: Optional[str] = None

    @field_validator("tags")
    @classmethod
    def _normalize_tags(cls, value: Optional[list[str]]) -> Optional[list[str]]:
        return normalize_tags(value) if value is not None else None

    @field_validator("trashed_at")
    @classmethod
    def _utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        return as_utc(value) if value is not None else None

    def as_patch(self) -> dict[str, Any]:
        """Fields that were explicitly set, keyed by attribute name."""
        return self.model_dump(exclude_unset=True)

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_unset=True)

    def to_snapshot(self) -> dict[str, Any]:
        """JSON-safe form used for queued operation snapshots."""
        return self.model_dump(mode="json", exclude_unset=True)

    def is_empty(self) -> bool:
        return not self.model_fields_set


class Note(BaseModel):
    """A note in the local replica."""
    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, extra="ignore"
    )

    id: str = Field(default_factory=lambda: str(uuid4()))
    user_id: Optional[str] = None
    title: str = ""
    content: str = ""
    content_format: ContentFormat = ContentFormat.PLAINTEXT
    tags: list[str] = Field(default_factory=list)
    color: Optional[str] = None
    is_pinned: bool = False
    is_favorite: bool = False
    is_archived: bool = False
    is_trashed: bool = False
    trashed_at: Optional[datetime] = None
    folder_id: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    synced_at: Optional[datetime] = None

    @field_validator("tags")
    @classmethod
    def _normalize_tags(cls, value: list[str]) -> list[str]:
        return normalize_tags(value)

    @field_validator("created_at", "updated_at", "synced_at", "trashed_at")
    @classmethod
    def _utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        return as_utc(value) if value is not None else None

    @property
    def is_synced(self) -> bool:
        return self.synced_at is not None

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)

    def content_changes(self) -> NoteChanges:
        """Every content field, as used for a create snapshot."""
        return NoteChanges(**{name: getattr(self, name) for name in CONTENT_FIELDS})

    def diff(self, other: "Note") -> NoteChanges:
        """Content fields whose value in ``other`` differs from this note."""
        changed = {
            name: getattr(other, name)
            for name in CONTENT_FIELDS
            if getattr(other, name) != getattr(self, name)
        }
        return NoteChanges(**changed)

    def apply(self, changes: NoteChanges) -> "Note":
        return self.model_copy(update=changes.as_patch())


class ListFilters(BaseModel):
    """Opaque query parameters forwarded to the server's note listing."""

    search: Optional[str] = None
    archived: Optional[bool] = None
    trashed: Optional[bool] = None
    sort_by: str = Field(default="updatedAt", pattern="^(updatedAt|createdAt|title)$")
    sort_order: str = Field(default="desc", pattern="^(asc|desc)$")

    @property
    def is_unfiltered(self) -> bool:
        """True when the listing returns every note the user owns."""
        return not self.search and self.archived is None and self.trashed is None

    def to_params(self) -> dict[str, str]:
        params = {"sortBy": self.sort_by, "sortOrder": self.sort_order}
        if self.search:
            params["search"] = self.search
        if self.archived is not None:
            params["archived"] = "true" if self.archived else "false"
        if self.trashed is not None:
            params["trashed"] = "true" if self.trashed else "false"
        return params
