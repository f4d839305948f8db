"""
Error taxonomy for the sync engine.

Storage errors are surfaced to callers. Remote errors are recovered locally by
leaving work queued. Realtime errors are reported through channel status and
never raised past the channel.
"""

import sqlite3
from typing import Optional


class NoteSyncError(Exception):
    """Base class for every error raised by notesync."""


# ── Storage ──

class StorageError(NoteSyncError):
    """The local store rejected an operation."""


class QuotaExceededError(StorageError):
    """Storage capacity is exhausted; the caller must evict or reject."""


class VersionConflictError(StorageError):
    """The on-disk schema is newer than this client; the caller must reload."""

    def __init__(self, on_disk: int, supported: int):
        super().__init__(
            f"Store schema v{on_disk} is newer than supported v{supported}"
        )
        self.on_disk = on_disk
        self.supported = supported


class BlockedError(StorageError):
    """Another connection holds the store and prevents an upgrade."""


class TransactionAbortedError(StorageError):
    """A transaction failed and every write in its scope was rolled back."""


# ── Remote ──

class RemoteError(NoteSyncError):
    """A call to the remote notes API failed."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class RemoteTimeoutError(RemoteError):
    """A remote call exceeded its time budget."""


class RemoteNotFoundError(RemoteError):
    """The remote resource does not exist."""


class RemoteProtocolError(RemoteError):
    """The server answered with a payload that could not be understood."""


# ── Realtime ──

class RealtimeError(NoteSyncError):
    """The realtime channel failed to connect or deliver."""


def translate_sqlite_error(error: sqlite3.Error, *, upgrading: bool = False) -> StorageError:
    """
    Map a raw sqlite3 error onto the storage taxonomy.

    :param error: The error raised by sqlite3
    :type error: sqlite3.Error
    :param upgrading: Whether the error happened during a schema upgrade
    :type upgrading: bool
    :return: The matching StorageError (not raised)
    :rtype: StorageError
    """
    message = str(error).lower()
    if "database or disk is full" in message:
        return QuotaExceededError(str(error))
    if upgrading and ("locked" in message or "busy" in message):
        return BlockedError(str(error))
    return TransactionAbortedError(str(error))
