"""Note operations exposed to the application layer."""

import inspect
from datetime import datetime, timedelta
from typing import Any, Callable, Optional

from notesync.database.db import LocalStore, StoreTransaction
from notesync.errors import RealtimeError
from notesync.logging import get_logger
from notesync.models import (
    ConnectionState,
    Note,
    NoteChanges,
    NoteFlag,
    OperationKind,
    PendingOperation,
    SyncResult,
    SyncStatus,
    utcnow,
)
from notesync.services.collaboration import CollaborationChannel, NoteCollaboration, Observer
from notesync.services.connectivity import ConnectivityController
from notesync.services.observable import Observable
from notesync.services.pending_queue import PendingQueue
from notesync.services.reconciler import SyncReconciler

logger = get_logger("services.notes")

NotesListener = Callable[[list[Note]], Any]


def _advance(previous: datetime) -> datetime:
    """A write timestamp strictly later than ``previous``."""
    return max(utcnow(), previous + timedelta(milliseconds=1))


class NotesService:
    """
    Local-first note API.

    Every mutation writes the note and its queue entry in one transaction,
    then opportunistically broadcasts to the room and flushes the queue.
    Nothing here waits on the network.
    """

    def __init__(
        self,
        store: LocalStore,
        queue: PendingQueue,
        reconciler: SyncReconciler,
        controller: ConnectivityController,
        channel: Optional[CollaborationChannel] = None,
        *,
        user_id: Optional[str] = None,
    ):
        self.store = store
        self.queue = queue
        self.reconciler = reconciler
        self.controller = controller
        self.channel = channel
        self.user_id = user_id
        self.status: Observable[SyncStatus] = Observable(SyncStatus())
        self._pending_count = 0
        self._unsubscribers: list[Callable[[], None]] = [
            store.subscribe(self._on_queue_commit, families=["pending_ops"]),
            reconciler.syncing.subscribe(lambda _: self._publish_status()),
            reconciler.last_sync_at.subscribe(lambda _: self._publish_status()),
            controller.online.subscribe(lambda _: self._publish_status()),
        ]
        if channel is not None:
            self._unsubscribers.append(channel.state.subscribe(lambda _: self._publish_status()))

    @property
    def last_sync_at(self) -> Observable[Optional[datetime]]:
        return self.reconciler.last_sync_at

    def close(self) -> None:
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers.clear()

    # ── Status ──

    def _publish_status(self) -> None:
        self.status.set(
            SyncStatus(
                connection=self.channel.state.value if self.channel else ConnectionState.DISCONNECTED,
                is_online=self.controller.is_online,
                is_syncing=self.reconciler.syncing.value,
                pending_count=self._pending_count,
                last_sync_at=self.reconciler.last_sync_at.value,
            )
        )

    async def _on_queue_commit(self, touched: frozenset[str]) -> None:
        await self.refresh_status()

    async def refresh_status(self) -> SyncStatus:
        self._pending_count = await self.queue.count()
        self._publish_status()
        return self.status.value

    # ── Reads ──

    async def list_notes(self, include_trashed: bool = False) -> list[Note]:
        notes = await self.store.notes.get_all()
        if include_trashed:
            return notes
        return [note for note in notes if not note.is_trashed]

    async def get_note(self, note_id: str) -> Note | None:
        return await self.store.notes.get(note_id)

    async def is_pending(self, note_id: str) -> bool:
        """Whether the note has local changes the server has not acknowledged."""
        if await self.queue.pending_for(note_id):
            return True
        note = await self.store.notes.get(note_id)
        return note is not None and not note.is_synced

    async def watch(
        self, listener: NotesListener, *, include_trashed: bool = False
    ) -> Callable[[], None]:
        """
        Live query over the local notes.

        ``listener`` receives the current list immediately and again after
        every committed change to the notes family.

        :param listener: Called with the note list; may be a coroutine function
        :type listener: Callable[[list[Note]], Any]
        :param include_trashed: Include notes in the trash
        :type include_trashed: bool
        :return: A callable that stops the live query
        :rtype: Callable[[], None]
        """
        async def emit(_touched: frozenset[str] = frozenset()) -> None:
            result = listener(await self.list_notes(include_trashed=include_trashed))
            if inspect.isawaitable(result):
                await result

        await emit()
        return self.store.subscribe(emit, families=["notes"])

    # ── Writes ──

    async def save(self, note: Note) -> Note:
        """
        Create or update a note locally and queue it for the server.

        A new note without an owner is stored with the service's ``user_id``.
        Otherwise the stored record matches ``note`` except for ``updated_at``
        and ``synced_at``.

        :param note: The desired state of the note
        :type note: Note
        :return: The stored note (``updated_at`` advanced, ``synced_at`` cleared)
        :rtype: Note
        """
        async with self.store.transaction() as tx:
            existing = await tx.notes.get(note.id)
            if existing is None:
                record = note.model_copy(
                    update={
                        "user_id": note.user_id or self.user_id,
                        "updated_at": max(utcnow(), note.updated_at),
                        "synced_at": None,
                    }
                )
                await tx.notes.add(record)
                await self.queue.enqueue(PendingOperation.for_create(record), tx)
                changes = record.content_changes()
                logger.debug(f"Created note {record.id[:8]} locally")
            else:
                changes = existing.diff(note)
                if changes.is_empty():
                    return existing
                record = await self._write_changes(tx, existing, changes)

        await self._after_write(record.id, changes)
        return record

    async def toggle_flag(self, note_id: str, flag: NoteFlag) -> Note:
        """
        Flip one of the note's boolean flags.

        :raises LookupError: If the note does not exist locally
        """
        async with self.store.transaction() as tx:
            existing = await tx.notes.get(note_id)
            if existing is None:
                raise LookupError(f"Note {note_id} not found")
            value = not getattr(existing, flag.value)
            fields: dict[str, Any] = {flag.value: value}
            if flag is NoteFlag.TRASHED:
                fields["trashed_at"] = utcnow() if value else None
            record = await self._write_changes(tx, existing, NoteChanges(**fields))

        await self._after_write(record.id, NoteChanges(**fields))
        return record

    async def delete_note(self, note_id: str) -> bool:
        """
        Delete a note. It stays visible in the trash until the server confirms.

        :return: False if the note does not exist locally
        :rtype: bool
        """
        async with self.store.transaction() as tx:
            existing = await tx.notes.get(note_id)
            if existing is None:
                return False
            record = existing.model_copy(
                update={
                    "is_trashed": True,
                    "trashed_at": existing.trashed_at or utcnow(),
                    "updated_at": _advance(existing.updated_at),
                    "synced_at": None,
                }
            )
            await tx.notes.put(record)
            await self.queue.enqueue(PendingOperation.for_delete(note_id), tx)

        logger.info(f"Note {note_id[:8]} deleted locally")
        await self._request_push()
        return True

    async def _write_changes(
        self, tx: StoreTransaction, existing: Note, changes: NoteChanges
    ) -> Note:
        queued = await self.queue.pending_for(existing.id, tx)
        if any(op.kind is OperationKind.DELETE for op in queued):
            raise ValueError(f"Note {existing.id} is being deleted")
        record = existing.apply(changes).model_copy(
            update={"updated_at": _advance(existing.updated_at), "synced_at": None}
        )
        await tx.notes.put(record)
        await self.queue.enqueue(PendingOperation.for_update(existing.id, changes), tx)
        return record

    async def _after_write(self, note_id: str, changes: NoteChanges) -> None:
        if self.channel is not None and self.channel.is_connected:
            await self.channel.broadcast_change(note_id, changes)
        await self._request_push()

    async def _request_push(self) -> None:
        if self.controller.is_online:
            await self.reconciler.request_sync("local-write", push_only=True)

    async def sync(self) -> SyncResult:
        """Run a full reconciliation now (coalesced with any running pass)."""
        return await self.reconciler.reconcile(reason="manual")

    # ── Collaboration ──

    def collaborate(
        self,
        note_id: str,
        *,
        on_peer_joined: Optional[Observer] = None,
        on_peer_left: Optional[Observer] = None,
        on_note_updated: Optional[Observer] = None,
        on_presence: Optional[Observer] = None,
    ) -> NoteCollaboration:
        """Collaboration handle for an editor open on ``note_id``."""
        if self.channel is None:
            raise RealtimeError("Realtime collaboration is not configured")
        return NoteCollaboration(
            self.channel,
            note_id,
            on_peer_joined=on_peer_joined,
            on_peer_left=on_peer_left,
            on_note_updated=on_note_updated,
            on_presence=on_presence,
        )
