"""Sync reconciliation: pull server state, then drain the pending queue.

Conflict policy is whole-record last-write-wins on ``updated_at``; ties go to
the server. There is no field-level merge, so concurrent offline edits to
different fields of one note are not combined.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable
from datetime import datetime
from typing import Optional, TypeVar

from notesync.config import settings
from notesync.database.db import LocalStore, StoreTransaction
from notesync.errors import RemoteError, RemoteNotFoundError, RemoteTimeoutError
from notesync.logging import get_logger
from notesync.models import (
    ListFilters,
    Note,
    OperationKind,
    PendingOperation,
    PushOutcome,
    SyncResult,
    utcnow,
)
from notesync.services.observable import Observable
from notesync.services.pending_queue import PendingQueue
from notesync.services.remote_api import RemoteNotesAPI

logger = get_logger("services.reconciler")
_T = TypeVar("_T")

LAST_SYNC_KEY = "last_sync_at"
LAST_PULL_COUNT_KEY = "last_pull_count"


def _parse_iso8601(raw: str | None) -> datetime | None:
    if not raw:
        return None
    try:
        return datetime.fromisoformat(raw)
    except ValueError:
        return None


class SyncReconciler:
    """Bring the local replica and the server back into agreement."""

    def __init__(
        self,
        store: LocalStore,
        queue: PendingQueue,
        remote: RemoteNotesAPI,
        *,
        request_timeout: Optional[float] = None,
        filters: Optional[ListFilters] = None,
    ):
        self.store = store
        self.queue = queue
        self.remote = remote
        self.request_timeout = (
            request_timeout if request_timeout is not None else settings.SYNC_REQUEST_TIMEOUT_SECONDS
        )
        self.default_filters = filters or ListFilters()
        self.syncing: Observable[bool] = Observable(False)
        self.last_sync_at: Observable[Optional[datetime]] = Observable(None)
        self._pass_lock = asyncio.Lock()
        self._push_suspended = False
        self._background: Optional[asyncio.Task] = None
        self._task_guard = asyncio.Lock()
        self._flush_requested = False

    @property
    def is_running(self) -> bool:
        return self._pass_lock.locked()

    @property
    def push_suspended(self) -> bool:
        return self._push_suspended

    def suspend_push(self) -> None:
        if not self._push_suspended:
            logger.info("Push suspended; local writes stay queued")
        self._push_suspended = True

    def resume_push(self) -> None:
        if self._push_suspended:
            logger.info("Push resumed")
        self._push_suspended = False

    async def load_state(self) -> None:
        """Restore the last-sync marker from the metadata family."""
        self.last_sync_at.set(_parse_iso8601(await self.store.metadata.get(LAST_SYNC_KEY)))

    # ── Passes ──

    async def reconcile(
        self, filters: Optional[ListFilters] = None, *, reason: str = "manual"
    ) -> SyncResult:
        """
        Run a full pull + push pass.

        A call made while another pass is running is coalesced: it returns
        immediately with ``skipped=True`` instead of running concurrently.

        :param filters: Listing filters forwarded to the server
        :type filters: ListFilters | None
        :param reason: Why the pass was triggered (for logs)
        :type reason: str
        :return: Counters and errors of the pass
        :rtype: SyncResult
        """
        if self._pass_lock.locked():
            logger.debug(f"Reconciliation already running; coalescing trigger '{reason}'")
            return SyncResult(skipped=True, reason=reason)

        async with self._pass_lock:
            self.syncing.set(True)
            result = SyncResult(reason=reason, started_at=utcnow())
            try:
                await self._pull(filters or self.default_filters, result)
                if self._push_suspended:
                    logger.info("Skipping push phase while offline")
                else:
                    await self._push(result)
            finally:
                self.syncing.set(False)
            result.completed_at = utcnow()
            result.success = not result.errors
            logger.info(
                f"Reconciliation ({reason}) finished: pulled={result.pulled_count} "
                f"kept_local={result.kept_local_count} purged={result.purged_count} "
                f"pushed={result.pushed_count} failed={result.failed_count}"
            )
            return result

    async def flush(self, *, reason: str = "flush") -> SyncResult:
        """Push-only pass, coalesced exactly like reconcile()."""
        if self._pass_lock.locked():
            return SyncResult(skipped=True, reason=reason)
        if self._push_suspended:
            return SyncResult(skipped=True, reason=reason)

        async with self._pass_lock:
            self.syncing.set(True)
            result = SyncResult(reason=reason, started_at=utcnow())
            try:
                await self._push(result)
            finally:
                self.syncing.set(False)
            result.completed_at = utcnow()
            result.success = not result.errors
            return result

    async def request_sync(self, reason: str, *, push_only: bool = False) -> None:
        """
        Schedule a background pass unless one is already in flight.

        A push-only request arriving while a pass is in flight is remembered
        and flushed once that pass ends, so a local write is never stranded
        behind a pass that drained the queue before it.
        """
        async with self._task_guard:
            existing = self._background
            if existing and not existing.done():
                if push_only:
                    self._flush_requested = True
                return
            self._background = asyncio.create_task(self._run_background(reason, push_only))

    async def _run_background(self, reason: str, push_only: bool) -> None:
        try:
            if push_only:
                result = await self.flush(reason=reason)
                while result.skipped and not self._push_suspended:
                    await self._wait_for_pass()
                    result = await self.flush(reason=reason)
            else:
                await self.reconcile(reason=reason)

            while self._flush_requested and not self._push_suspended:
                self._flush_requested = False
                await self._wait_for_pass()
                await self.flush(reason=f"{reason} (follow-up)")
        except Exception:
            logger.exception(f"Background sync failed reason={reason}")

    async def _wait_for_pass(self) -> None:
        async with self._pass_lock:
            pass

    async def wait_idle(self) -> None:
        """Wait for the scheduled background pass and any running pass to end."""
        task = self._background
        if task is not None and not task.done():
            await asyncio.gather(task, return_exceptions=True)
        await self._wait_for_pass()

    async def _call(self, operation: Awaitable[_T]) -> _T:
        try:
            return await asyncio.wait_for(operation, timeout=self.request_timeout)
        except (TimeoutError, asyncio.TimeoutError) as exc:
            raise RemoteTimeoutError(
                f"Remote call timed out after {self.request_timeout:.1f}s"
            ) from exc

    # ── Pull ──

    async def _pull(self, filters: ListFilters, result: SyncResult) -> None:
        try:
            server_notes = await self._call(self.remote.list_notes(filters))
        except RemoteError as exc:
            logger.warning(f"Pull failed: {exc}")
            result.errors.append(f"pull: {exc}")
            return

        pulled_at = utcnow()
        async with self.store.transaction() as tx:
            server_ids: set[str] = set()
            for server_note in server_notes:
                server_ids.add(server_note.id)
                await self._merge_server_note(tx, server_note, pulled_at, result)

            if filters.is_unfiltered:
                await self._purge_missing(tx, server_ids, result)

            await tx.metadata.put(LAST_SYNC_KEY, pulled_at.isoformat())
            await tx.metadata.put(LAST_PULL_COUNT_KEY, len(server_notes))

        self.last_sync_at.set(pulled_at)

    async def _merge_server_note(
        self,
        tx: StoreTransaction,
        server_note: Note,
        pulled_at: datetime,
        result: SyncResult,
    ) -> None:
        local = await tx.notes.get(server_note.id)
        if local is not None and local.updated_at > server_note.updated_at:
            # Local version is strictly newer: it stays until the queue drains
            result.kept_local_count += 1
            return

        pending = await tx.pending_ops.query("note_id", server_note.id)
        if pending:
            removed = await tx.pending_ops.delete_for_note(server_note.id)
            result.discarded_op_count += removed
            logger.info(
                f"Server version of note {server_note.id[:8]} wins; "
                f"discarded {removed} superseded pending operation(s)"
            )

        await tx.notes.put(server_note.model_copy(update={"synced_at": pulled_at}))
        result.pulled_count += 1

    async def _purge_missing(
        self, tx: StoreTransaction, server_ids: set[str], result: SyncResult
    ) -> None:
        for local in await tx.notes.get_all():
            if local.id in server_ids or local.synced_at is None:
                continue
            if await tx.pending_ops.query("note_id", local.id):
                continue
            await tx.notes.delete(local.id)
            result.purged_count += 1
            logger.info(f"Note {local.id[:8]} was purged on the server; removed locally")

    # ── Push ──

    async def _push(self, result: SyncResult) -> None:
        operations = await self.queue.drain()
        if not operations:
            return

        groups: dict[str, list[PendingOperation]] = {}
        for operation in operations:
            groups.setdefault(operation.note_id, []).append(operation)

        # Every group settles before the pass lock is released
        outcomes = await asyncio.gather(
            *(self._push_note(note_id, ops) for note_id, ops in groups.items()),
            return_exceptions=True,
        )
        failure: Optional[BaseException] = None
        for note_id, outcome in zip(groups, outcomes):
            if isinstance(outcome, BaseException):
                logger.error(f"Push of note {note_id[:8]} aborted: {outcome!r}")
                result.errors.append(f"push {note_id[:8]}: {outcome}")
                failure = failure or outcome
                continue
            result.pushed_count += outcome.pushed_count
            result.failed_count += outcome.failed_count
            if outcome.error:
                result.errors.append(f"push {outcome.note_id[:8]}: {outcome.error}")
        if failure is not None:
            raise failure

    async def _push_note(self, note_id: str, operations: list[PendingOperation]) -> PushOutcome:
        outcome = PushOutcome(note_id=note_id)
        current_id = note_id
        for operation in operations:
            try:
                server_note = await self._send(operation, current_id)
            except RemoteError as exc:
                # Leave it queued; later operations for this note must wait behind it
                logger.warning(
                    f"Push of {operation.kind.value} #{operation.seq} for note "
                    f"{current_id[:8]} failed: {exc}"
                )
                outcome.failed_count += 1
                outcome.error = str(exc)
                return outcome

            current_id = await self._acknowledge(operation, current_id, server_note)
            outcome.pushed_count += 1
        return outcome

    async def _send(self, operation: PendingOperation, note_id: str) -> Optional[Note]:
        if operation.kind is OperationKind.CREATE:
            return await self._call(self.remote.create_note(note_id, operation.note_changes()))
        if operation.kind is OperationKind.UPDATE:
            return await self._call(self.remote.update_note(note_id, operation.note_changes()))

        try:
            await self._call(self.remote.delete_note(note_id))
        except RemoteNotFoundError:
            logger.info(f"Note {note_id[:8]} already absent on server; delete acknowledged")
        return None

    async def _acknowledge(
        self,
        operation: PendingOperation,
        note_id: str,
        server_note: Optional[Note],
    ) -> str:
        async with self.store.transaction() as tx:
            await self.queue.ack(operation.seq, tx)

            if operation.kind is OperationKind.DELETE or server_note is None:
                if not await self.queue.pending_for(note_id, tx):
                    await tx.notes.delete(note_id)
                return note_id

            if server_note.id != note_id:
                await self._rekey(tx, note_id, server_note.id)
                note_id = server_note.id

            if await self.queue.pending_for(note_id, tx):
                return note_id

            local = await tx.notes.get(note_id)
            synced_at = utcnow()
            if local is not None and local.updated_at > server_note.updated_at:
                record = local.model_copy(update={"synced_at": synced_at})
            else:
                record = server_note.model_copy(update={"synced_at": synced_at})
            await tx.notes.put(record)
        return note_id

    async def _rekey(self, tx: StoreTransaction, old_id: str, new_id: str) -> None:
        if await tx.notes.get(new_id) is not None:
            await tx.notes.delete(old_id)
        else:
            await tx.notes.rekey(old_id, new_id)
        moved = await self.queue.rekey(old_id, new_id, tx)
        logger.info(
            f"Server assigned id {new_id[:8]} to local note {old_id[:8]} "
            f"({moved} queued operation(s) moved)"
        )
