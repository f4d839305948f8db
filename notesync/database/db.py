"""
Local durable store: connection, schema upgrades and transactions.

The store holds three record families (notes, pending_ops, metadata) in one
SQLite file. Writes are serialized through a single connection, every write
runs inside a transaction scope, and listeners are told about the families a
transaction touched only after it commits.
"""

import asyncio
import inspect
import sqlite3
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncIterator, Awaitable, Callable, Iterable, Optional, Union

import aiosqlite

from notesync.config import settings
from notesync.database.tables import MetadataTable, NotesTable, PendingOpsTable
from notesync.errors import (
    StorageError,
    VersionConflictError,
    translate_sqlite_error,
)
from notesync.logging import get_logger

logger = get_logger('database')

SCHEMA_VERSION = 3
FAMILIES = frozenset({"notes", "pending_ops", "metadata"})

StoreListener = Callable[[frozenset[str]], Union[None, Awaitable[None]]]


async def _table_columns(db: aiosqlite.Connection, table_name: str) -> set[str]:
    cursor = await db.execute(f"PRAGMA table_info({table_name})")
    rows = await cursor.fetchall()
    return {row[1] for row in rows}


async def _user_version(db: aiosqlite.Connection) -> int:
    cursor = await db.execute("PRAGMA user_version")
    row = await cursor.fetchone()
    return int(row[0]) if row else 0


async def _migrate_v1(db: aiosqlite.Connection) -> None:
    await db.execute(
        """CREATE TABLE IF NOT EXISTS notes (
            id TEXT PRIMARY KEY,
            user_id TEXT,
            title TEXT NOT NULL DEFAULT '',
            content TEXT NOT NULL DEFAULT '',
            content_format TEXT NOT NULL DEFAULT 'plaintext'
                CHECK(content_format IN ('plaintext', 'markdown', 'html')),
            tags TEXT NOT NULL DEFAULT '[]',
            color TEXT,
            folder_id TEXT,
            is_pinned INTEGER NOT NULL DEFAULT 0,
            is_archived INTEGER NOT NULL DEFAULT 0,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL,
            synced_at TEXT
        )"""
    )
    await db.execute("CREATE INDEX IF NOT EXISTS idx_notes_user ON notes(user_id)")
    await db.execute("CREATE INDEX IF NOT EXISTS idx_notes_updated ON notes(updated_at)")
    await db.execute("CREATE INDEX IF NOT EXISTS idx_notes_synced ON notes(synced_at)")
    await db.execute(
        """CREATE TABLE IF NOT EXISTS pending_ops (
            seq INTEGER PRIMARY KEY AUTOINCREMENT,
            kind TEXT NOT NULL CHECK(kind IN ('create', 'update', 'delete')),
            note_id TEXT NOT NULL,
            enqueued_at TEXT NOT NULL,
            changes TEXT
        )"""
    )
    await db.execute(
        "CREATE INDEX IF NOT EXISTS idx_pending_ops_note ON pending_ops(note_id, seq)"
    )
    await db.execute("CREATE INDEX IF NOT EXISTS idx_pending_ops_kind ON pending_ops(kind)")
    await db.execute(
        """CREATE TABLE IF NOT EXISTS metadata (
            key TEXT PRIMARY KEY,
            value TEXT
        )"""
    )


async def _migrate_v2(db: aiosqlite.Connection) -> None:
    await db.execute("CREATE INDEX IF NOT EXISTS idx_notes_pinned ON notes(is_pinned)")
    await db.execute("CREATE INDEX IF NOT EXISTS idx_notes_archived ON notes(is_archived)")
    await db.execute(
        """CREATE TABLE IF NOT EXISTS note_tags (
            note_id TEXT NOT NULL REFERENCES notes(id) ON DELETE CASCADE ON UPDATE CASCADE,
            tag TEXT NOT NULL,
            PRIMARY KEY (note_id, tag)
        )"""
    )
    await db.execute("CREATE INDEX IF NOT EXISTS idx_note_tags_tag ON note_tags(tag)")
    # Backfill the multi-entry tag index from existing records
    await db.execute(
        """INSERT OR IGNORE INTO note_tags (note_id, tag)
           SELECT notes.id, json_each.value FROM notes, json_each(notes.tags)"""
    )


async def _migrate_v3(db: aiosqlite.Connection) -> None:
    columns = await _table_columns(db, "notes")
    if "is_favorite" not in columns:
        await db.execute(
            "ALTER TABLE notes ADD COLUMN is_favorite INTEGER NOT NULL DEFAULT 0"
        )
    if "is_trashed" not in columns:
        await db.execute(
            "ALTER TABLE notes ADD COLUMN is_trashed INTEGER NOT NULL DEFAULT 0"
        )
    if "trashed_at" not in columns:
        await db.execute("ALTER TABLE notes ADD COLUMN trashed_at TEXT")
    await db.execute("CREATE INDEX IF NOT EXISTS idx_notes_favorite ON notes(is_favorite)")
    await db.execute("CREATE INDEX IF NOT EXISTS idx_notes_trashed ON notes(is_trashed)")


MIGRATIONS: dict[int, Callable[[aiosqlite.Connection], Awaitable[None]]] = {
    1: _migrate_v1,
    2: _migrate_v2,
    3: _migrate_v3,
}


class StoreTransaction:
    """Family tables bound to one open transaction."""

    def __init__(self, db: aiosqlite.Connection):
        self.db = db
        self.touched: set[str] = set()
        self.notes = NotesTable(self)
        self.pending_ops = PendingOpsTable(self)
        self.metadata = MetadataTable(self)

    def touch(self, family: str) -> None:
        self.touched.add(family)

    def table(self, family: str):
        if family not in FAMILIES:
            raise ValueError(f"Unknown record family: {family}")
        return getattr(self, family)


class _Subscription:
    def __init__(self, listener: StoreListener, families: Optional[frozenset[str]]):
        self.listener = listener
        self.families = families

    def matches(self, touched: frozenset[str]) -> bool:
        return self.families is None or bool(self.families & touched)


class LocalStore:
    """Transactional, indexed, schema-versioned store for the local replica."""

    def __init__(self, db_path: Optional[str] = None, busy_timeout: Optional[float] = None):
        self.db_path = db_path or settings.DATABASE_PATH
        self.busy_timeout = (
            busy_timeout if busy_timeout is not None else settings.STORE_BUSY_TIMEOUT_SECONDS
        )
        self._db: Optional[aiosqlite.Connection] = None
        self._lock = asyncio.Lock()
        self._subscriptions: list[_Subscription] = []
        self.notes = NotesTable(self)
        self.pending_ops = PendingOpsTable(self)
        self.metadata = MetadataTable(self)

    @property
    def is_open(self) -> bool:
        return self._db is not None

    async def open(self) -> None:
        """
        Open the store, upgrading the on-disk schema when it is older.

        :raises VersionConflictError: If the file was written by a newer client
        :raises BlockedError: If another connection prevents the upgrade
        """
        if self._db is not None:
            return

        if self.db_path != ":memory:":
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)

        try:
            db = await aiosqlite.connect(
                self.db_path, isolation_level=None, timeout=self.busy_timeout
            )
        except sqlite3.Error as exc:
            raise translate_sqlite_error(exc) from exc
        db.row_factory = aiosqlite.Row
        try:
            await db.execute("PRAGMA foreign_keys = ON")
            await self._upgrade(db)
        except BaseException:
            await db.close()
            raise
        self._db = db
        logger.info(f"Local store opened at {self.db_path} (schema v{SCHEMA_VERSION})")

    async def close(self) -> None:
        if self._db is None:
            return
        async with self._lock:
            await self._db.close()
            self._db = None
        logger.debug("Local store closed")

    async def _upgrade(self, db: aiosqlite.Connection) -> None:
        on_disk = await _user_version(db)
        if on_disk > SCHEMA_VERSION:
            raise VersionConflictError(on_disk, SCHEMA_VERSION)
        if on_disk == SCHEMA_VERSION:
            return

        try:
            await db.execute("BEGIN IMMEDIATE")
        except sqlite3.Error as exc:
            raise translate_sqlite_error(exc, upgrading=True) from exc

        try:
            # Re-read under the write lock: another connection may have upgraded first
            current = await _user_version(db)
            if current > SCHEMA_VERSION:
                raise VersionConflictError(current, SCHEMA_VERSION)
            for version in range(current + 1, SCHEMA_VERSION + 1):
                logger.info(f"Applying store migration v{version}")
                await MIGRATIONS[version](db)
            await db.execute(f"PRAGMA user_version = {SCHEMA_VERSION}")
            await db.execute(
                "INSERT INTO metadata (key, value) VALUES ('schema_version', ?) "
                "ON CONFLICT(key) DO UPDATE SET value = excluded.value",
                (str(SCHEMA_VERSION),),
            )
            await db.execute("COMMIT")
        except sqlite3.Error as exc:
            await self._rollback(db)
            raise translate_sqlite_error(exc, upgrading=True) from exc
        except BaseException:
            await self._rollback(db)
            raise

    def _require_open(self) -> aiosqlite.Connection:
        if self._db is None:
            raise StorageError("Local store is not open")
        return self._db

    async def _rollback(self, db: aiosqlite.Connection) -> None:
        if db.in_transaction:
            await db.execute("ROLLBACK")

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[StoreTransaction]:
        """
        Open a write scope spanning every family.

        All writes made through the yielded transaction commit together or
        are rolled back together when the body raises.

        :return: The transaction-bound family tables
        :rtype: AsyncIterator[StoreTransaction]
        """
        db = self._require_open()
        async with self._lock:
            try:
                await db.execute("BEGIN IMMEDIATE")
            except sqlite3.Error as exc:
                raise translate_sqlite_error(exc) from exc

            tx = StoreTransaction(db)
            try:
                on_disk = await _user_version(db)
                if on_disk != SCHEMA_VERSION:
                    raise VersionConflictError(on_disk, SCHEMA_VERSION)
                yield tx
                await db.execute("COMMIT")
            except sqlite3.Error as exc:
                await self._rollback(db)
                raise translate_sqlite_error(exc) from exc
            except BaseException:
                await self._rollback(db)
                raise

        if tx.touched:
            await self._notify(frozenset(tx.touched))

    @asynccontextmanager
    async def reader(self) -> AsyncIterator[aiosqlite.Connection]:
        """Read access that never observes another scope's uncommitted writes."""
        db = self._require_open()
        async with self._lock:
            try:
                yield db
            except sqlite3.Error as exc:
                raise translate_sqlite_error(exc) from exc

    def table(self, family: str):
        if family not in FAMILIES:
            raise ValueError(f"Unknown record family: {family}")
        return getattr(self, family)

    async def query(self, family: str, index_name: str, value) -> list:
        """
        Return every record of ``family`` whose ``index_name`` equals ``value``.

        :param family: notes, pending_ops or metadata
        :type family: str
        :param index_name: A declared index of that family
        :type index_name: str
        :param value: The value to match
        :return: Matching records
        :rtype: list
        """
        return await self.table(family).query(index_name, value)

    # ── Subscriptions ──

    def subscribe(
        self,
        listener: StoreListener,
        families: Optional[Iterable[str]] = None,
    ) -> Callable[[], None]:
        """
        Register a listener called after each commit touching ``families``.

        :return: A callable that removes the listener
        :rtype: Callable[[], None]
        """
        watched = frozenset(families) if families is not None else None
        if watched is not None and not watched <= FAMILIES:
            raise ValueError(f"Unknown record families: {sorted(watched - FAMILIES)}")
        subscription = _Subscription(listener, watched)
        self._subscriptions.append(subscription)

        def unsubscribe() -> None:
            if subscription in self._subscriptions:
                self._subscriptions.remove(subscription)

        return unsubscribe

    async def _notify(self, touched: frozenset[str]) -> None:
        for subscription in list(self._subscriptions):
            if not subscription.matches(touched):
                continue
            try:
                result = subscription.listener(touched)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception("Store listener failed after commit")
