"""Result models for engine operations."""

from notesync.models.results.sync import PushOutcome, SyncResult, SyncStatus

__all__ = ["PushOutcome", "SyncResult", "SyncStatus"]
