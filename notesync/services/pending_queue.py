"""Ordered log of local mutations awaiting server acknowledgment."""

from typing import Optional

from notesync.database.db import LocalStore, StoreTransaction
from notesync.logging import get_logger
from notesync.models import OperationKind, PendingOperation

logger = get_logger("services.pending_queue")


class PendingQueue:
    """FIFO-per-note queue stored in the pending_ops family.

    Every method accepts an optional open transaction so that a local write
    and its queue entry can commit together.
    """

    def __init__(self, store: LocalStore):
        self.store = store

    async def enqueue(
        self, operation: PendingOperation, tx: Optional[StoreTransaction] = None
    ) -> PendingOperation:
        """
        Append an operation, applying the supersede-on-delete rule.

        :param operation: The operation to queue
        :type operation: PendingOperation
        :param tx: Join this transaction instead of opening one
        :type tx: StoreTransaction | None
        :return: The stored operation with its sequence id
        :rtype: PendingOperation
        """
        if tx is None:
            async with self.store.transaction() as own_tx:
                return await self._enqueue(operation, own_tx)
        return await self._enqueue(operation, tx)

    async def _enqueue(self, operation: PendingOperation, tx: StoreTransaction) -> PendingOperation:
        if operation.kind is OperationKind.DELETE:
            removed = await tx.pending_ops.delete_for_note(operation.note_id)
            if removed:
                logger.debug(
                    f"Delete of note {operation.note_id[:8]} superseded {removed} queued operation(s)"
                )
        stored = await tx.pending_ops.add(operation)
        logger.debug(
            f"Queued {stored.kind.value} #{stored.seq} for note {stored.note_id[:8]}"
        )
        return stored

    async def drain(self) -> list[PendingOperation]:
        """Every queued operation in enqueue order. Entries stay queued until acked."""
        return await self.store.pending_ops.get_all()

    async def ack(self, seq: int, tx: Optional[StoreTransaction] = None) -> bool:
        table = tx.pending_ops if tx is not None else self.store.pending_ops
        return await table.delete(seq)

    async def compact(self, note_id: str, tx: Optional[StoreTransaction] = None) -> int:
        """
        Drop every operation queued before the latest delete of ``note_id``.

        :return: Number of operations removed
        :rtype: int
        """
        if tx is None:
            async with self.store.transaction() as own_tx:
                return await self._compact(note_id, own_tx)
        return await self._compact(note_id, tx)

    async def _compact(self, note_id: str, tx: StoreTransaction) -> int:
        operations = await tx.pending_ops.query("note_id", note_id)
        deletes = [op for op in operations if op.kind is OperationKind.DELETE]
        if not deletes:
            return 0
        removed = await tx.pending_ops.delete_for_note(note_id, before_seq=deletes[-1].seq)
        if removed:
            logger.debug(f"Compacted {removed} operation(s) for note {note_id[:8]}")
        return removed

    async def pending_for(
        self, note_id: str, tx: Optional[StoreTransaction] = None
    ) -> list[PendingOperation]:
        table = tx.pending_ops if tx is not None else self.store.pending_ops
        return await table.query("note_id", note_id)

    async def pending_note_ids(self) -> set[str]:
        return await self.store.pending_ops.note_ids()

    async def count(self) -> int:
        return await self.store.pending_ops.count()

    async def rekey(self, old_note_id: str, new_note_id: str, tx: StoreTransaction) -> int:
        """Point queued operations at a server-assigned note id."""
        return await tx.pending_ops.reassign(old_note_id, new_note_id)
