"""
Enum definitions for the sync engine.
"""
from enum import Enum


class ContentFormat(str, Enum):
    """How a note's content should be rendered."""
    PLAINTEXT = "plaintext"
    MARKDOWN = "markdown"
    HTML = "html"


class OperationKind(str, Enum):
    """Kind of a queued local mutation."""
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


class NoteFlag(str, Enum):
    """Independent boolean flags on a note."""
    PINNED = "is_pinned"
    FAVORITE = "is_favorite"
    ARCHIVED = "is_archived"
    TRASHED = "is_trashed"


class ConnectionState(str, Enum):
    """Lifecycle of the realtime collaboration channel."""
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"


def normalize_tags(tags: list[str]) -> list[str]:
    """
    Normalize a tag list for storage.

    - Strip whitespace
    - Drop blanks
    - Drop duplicates, keeping the first occurrence

    Examples:
        ["work", " work ", "", "home"] -> ["work", "home"]
    """
    seen: set[str] = set()
    normalized = []
    for tag in tags:
        cleaned = tag.strip()
        if not cleaned or cleaned in seen:
            continue
        seen.add(cleaned)
        normalized.append(cleaned)
    return normalized
