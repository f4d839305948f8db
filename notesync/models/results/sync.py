"""
Result models for reconciliation passes and engine status.
"""

from datetime import datetime
from pydantic import BaseModel, Field
from typing import Optional

from notesync.models.enums import ConnectionState


class SyncResult(BaseModel):
    """Outcome of one reconciliation or flush pass."""
    success: bool = True
    skipped: bool = False
    reason: Optional[str] = None
    pulled_count: int = 0
    kept_local_count: int = 0
    purged_count: int = 0
    discarded_op_count: int = 0
    pushed_count: int = 0
    failed_count: int = 0
    errors: list[str] = Field(default_factory=list)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None


class PushOutcome(BaseModel):
    """Outcome of replaying the queued operations of a single note."""
    note_id: str
    pushed_count: int = 0
    failed_count: int = 0
    error: Optional[str] = None


class SyncStatus(BaseModel):
    """Snapshot of the engine state for status indicators."""
    connection: ConnectionState = ConnectionState.DISCONNECTED
    is_online: bool = False
    is_syncing: bool = False
    pending_count: int = 0
    last_sync_at: Optional[datetime] = None
