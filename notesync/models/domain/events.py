"""Realtime collaboration event models.

Inbound events are a tagged union keyed by the Socket.IO event name and are
validated at the channel boundary before any handler sees them.
"""

from datetime import datetime, timezone
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, field_validator
from pydantic.alias_generators import to_camel

from notesync.models.domain.note import NoteChanges, as_utc, utcnow


# Outbound event names
JOIN_NOTE = "join:note"
LEAVE_NOTE = "leave:note"
NOTE_UPDATE = "note:update"

# Inbound event names
PEER_JOINED = "user:joined"
PEER_LEFT = "user:left"
NOTE_UPDATED = "note:updated"
PRESENCE = "user:presence"

INBOUND_EVENTS = (PEER_JOINED, PEER_LEFT, NOTE_UPDATED, PRESENCE)


def to_epoch_millis(value: datetime) -> int:
    return int(value.timestamp() * 1000)


class _Event(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, extra="ignore"
    )


class PeerJoinedEvent(_Event):
    """Another client joined the room."""
    kind: Literal["user:joined"] = PEER_JOINED
    user_id: str
    note_id: Optional[str] = None
    socket_id: Optional[str] = None


class PeerLeftEvent(_Event):
    """Another client left the room."""
    kind: Literal["user:left"] = PEER_LEFT
    user_id: str
    note_id: Optional[str] = None


class NoteUpdatedEvent(_Event):
    """A room member changed note content."""
    kind: Literal["note:updated"] = NOTE_UPDATED
    note_id: str = Field(min_length=1)
    changes: NoteChanges
    user_id: Optional[str] = None
    timestamp: datetime = Field(default_factory=utcnow)

    @field_validator("timestamp", mode="before")
    @classmethod
    def _from_epoch_millis(cls, value: Any) -> Any:
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            return datetime.fromtimestamp(value / 1000, tz=timezone.utc)
        return value

    @field_validator("timestamp")
    @classmethod
    def _utc(cls, value: datetime) -> datetime:
        return as_utc(value)


class PresenceEvent(_Event):
    """A room member's presence (cursor, typing, idle...)."""
    kind: Literal["user:presence"] = PRESENCE
    note_id: str = Field(min_length=1)
    user_id: Optional[str] = None
    status: Any = None
    timestamp: Optional[int] = None


RealtimeEvent = Annotated[
    Union[PeerJoinedEvent, PeerLeftEvent, NoteUpdatedEvent, PresenceEvent],
    Field(discriminator="kind"),
]

_event_adapter: TypeAdapter[RealtimeEvent] = TypeAdapter(RealtimeEvent)


def parse_event(name: str, payload: Any) -> RealtimeEvent:
    """
    Validate a raw inbound payload into its event model.

    :param name: The Socket.IO event name
    :type name: str
    :param payload: The decoded JSON payload
    :type payload: Any
    :return: The validated event
    :rtype: RealtimeEvent
    :raises ValueError: If the payload is not an object or fails validation
    """
    if not isinstance(payload, dict):
        raise ValueError(f"{name} payload must be an object, got {type(payload).__name__}")
    return _event_adapter.validate_python({**payload, "kind": name})
