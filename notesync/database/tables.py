"""
Record-family tables of the local store.

A table is bound either to the store itself, where every write opens its own
transaction, or to an open StoreTransaction, where writes join that scope.
"""

import json
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, AsyncIterator, Optional

import aiosqlite

from notesync.models import Note, OperationKind, PendingOperation


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def _row_to_note(row: dict) -> Note:
    return Note(
        id=row["id"],
        user_id=row.get("user_id"),
        title=row["title"],
        content=row["content"],
        content_format=row["content_format"],
        tags=json.loads(row["tags"]),
        color=row.get("color"),
        folder_id=row.get("folder_id"),
        is_pinned=bool(row["is_pinned"]),
        is_favorite=bool(row.get("is_favorite", 0)),
        is_archived=bool(row["is_archived"]),
        is_trashed=bool(row.get("is_trashed", 0)),
        trashed_at=row.get("trashed_at"),
        created_at=row["created_at"],
        updated_at=row["updated_at"],
        synced_at=row.get("synced_at"),
    )


def _row_to_operation(row: dict) -> PendingOperation:
    return PendingOperation(
        seq=row["seq"],
        kind=row["kind"],
        note_id=row["note_id"],
        enqueued_at=row["enqueued_at"],
        changes=json.loads(row["changes"]) if row.get("changes") else None,
    )


class _Table:
    family: str = ""
    indexes: dict[str, str] = {}

    def __init__(self, owner):
        self._owner = owner

    @property
    def _in_scope(self) -> bool:
        return getattr(self._owner, "touched", None) is not None

    @asynccontextmanager
    async def _writer(self) -> AsyncIterator[aiosqlite.Connection]:
        if self._in_scope:
            self._owner.touch(self.family)
            yield self._owner.db
            return
        async with self._owner.transaction() as tx:
            tx.touch(self.family)
            yield tx.db

    @asynccontextmanager
    async def _reader(self) -> AsyncIterator[aiosqlite.Connection]:
        if self._in_scope:
            yield self._owner.db
            return
        async with self._owner.reader() as db:
            yield db

    def _index_column(self, index_name: str) -> str:
        column = self.indexes.get(index_name)
        if column is None:
            raise ValueError(f"Unknown index '{index_name}' on {self.family}")
        return column


# ── Notes ──

_NOTE_COLUMNS = (
    "id", "user_id", "title", "content", "content_format", "tags", "color",
    "folder_id", "is_pinned", "is_favorite", "is_archived", "is_trashed",
    "trashed_at", "created_at", "updated_at", "synced_at",
)
_NOTE_INSERT = (
    f"INSERT INTO notes ({', '.join(_NOTE_COLUMNS)}) "
    f"VALUES ({', '.join('?' for _ in _NOTE_COLUMNS)})"
)
_NOTE_UPSERT = _NOTE_INSERT + " ON CONFLICT(id) DO UPDATE SET " + ", ".join(
    f"{column} = excluded.{column}" for column in _NOTE_COLUMNS if column != "id"
)


def _note_params(note: Note) -> tuple:
    return (
        note.id,
        note.user_id,
        note.title,
        note.content,
        note.content_format.value,
        json.dumps(note.tags),
        note.color,
        note.folder_id,
        int(note.is_pinned),
        int(note.is_favorite),
        int(note.is_archived),
        int(note.is_trashed),
        _iso(note.trashed_at),
        _iso(note.created_at),
        _iso(note.updated_at),
        _iso(note.synced_at),
    )


class NotesTable(_Table):
    family = "notes"
    indexes = {
        "user_id": "user_id",
        "updated_at": "updated_at",
        "synced_at": "synced_at",
        "is_pinned": "is_pinned",
        "is_favorite": "is_favorite",
        "is_archived": "is_archived",
        "is_trashed": "is_trashed",
        "tags": "tags",
    }

    async def _fetch(self, db: aiosqlite.Connection, note_id: str) -> Optional[Note]:
        cursor = await db.execute("SELECT * FROM notes WHERE id = ?", (note_id,))
        row = await cursor.fetchone()
        return _row_to_note(dict(row)) if row else None

    async def _replace_tags(self, db: aiosqlite.Connection, note: Note) -> None:
        await db.execute("DELETE FROM note_tags WHERE note_id = ?", (note.id,))
        if note.tags:
            await db.executemany(
                "INSERT OR IGNORE INTO note_tags (note_id, tag) VALUES (?, ?)",
                [(note.id, tag) for tag in note.tags],
            )

    async def add(self, note: Note) -> Note:
        async with self._writer() as db:
            await db.execute(_NOTE_INSERT, _note_params(note))
            await self._replace_tags(db, note)
        return note

    async def put(self, note: Note) -> Note:
        async with self._writer() as db:
            await db.execute(_NOTE_UPSERT, _note_params(note))
            await self._replace_tags(db, note)
        return note

    async def get(self, note_id: str) -> Optional[Note]:
        async with self._reader() as db:
            return await self._fetch(db, note_id)

    async def get_all(self) -> list[Note]:
        async with self._reader() as db:
            cursor = await db.execute("SELECT * FROM notes ORDER BY updated_at DESC, id")
            rows = await cursor.fetchall()
            return [_row_to_note(dict(r)) for r in rows]

    async def update(self, note_id: str, changes: dict[str, Any]) -> Optional[Note]:
        async with self._writer() as db:
            existing = await self._fetch(db, note_id)
            if existing is None:
                return None
            note = existing.model_copy(update=changes)
            await db.execute(_NOTE_UPSERT, _note_params(note))
            await self._replace_tags(db, note)
            return note

    async def delete(self, note_id: str) -> bool:
        async with self._writer() as db:
            cursor = await db.execute("DELETE FROM notes WHERE id = ?", (note_id,))
            return cursor.rowcount > 0

    async def rekey(self, old_id: str, new_id: str) -> bool:
        """Move a note to a new id; the tag index follows through ON UPDATE CASCADE."""
        async with self._writer() as db:
            cursor = await db.execute(
                "UPDATE notes SET id = ? WHERE id = ?", (new_id, old_id)
            )
            return cursor.rowcount > 0

    async def count(self) -> int:
        async with self._reader() as db:
            cursor = await db.execute("SELECT COUNT(*) FROM notes")
            row = await cursor.fetchone()
            return int(row[0])

    async def query(self, index_name: str, value: Any) -> list[Note]:
        column = self._index_column(index_name)
        if column == "tags":
            sql = (
                "SELECT notes.* FROM notes JOIN note_tags ON note_tags.note_id = notes.id "
                "WHERE note_tags.tag = ? ORDER BY notes.updated_at DESC, notes.id"
            )
            params: tuple = (value,)
        elif value is None:
            sql = f"SELECT * FROM notes WHERE {column} IS NULL ORDER BY updated_at DESC, id"
            params = ()
        else:
            if isinstance(value, bool):
                value = int(value)
            elif isinstance(value, datetime):
                value = value.isoformat()
            sql = f"SELECT * FROM notes WHERE {column} = ? ORDER BY updated_at DESC, id"
            params = (value,)
        async with self._reader() as db:
            cursor = await db.execute(sql, params)
            rows = await cursor.fetchall()
            return [_row_to_note(dict(r)) for r in rows]


# ── Pending operations ──

class PendingOpsTable(_Table):
    family = "pending_ops"
    indexes = {"note_id": "note_id", "kind": "kind"}

    async def add(self, operation: PendingOperation) -> PendingOperation:
        async with self._writer() as db:
            cursor = await db.execute(
                """INSERT INTO pending_ops (kind, note_id, enqueued_at, changes)
                   VALUES (?, ?, ?, ?)""",
                (
                    operation.kind.value,
                    operation.note_id,
                    _iso(operation.enqueued_at),
                    json.dumps(operation.changes) if operation.changes is not None else None,
                ),
            )
            return operation.model_copy(update={"seq": cursor.lastrowid})

    async def get(self, seq: int) -> Optional[PendingOperation]:
        async with self._reader() as db:
            cursor = await db.execute("SELECT * FROM pending_ops WHERE seq = ?", (seq,))
            row = await cursor.fetchone()
            return _row_to_operation(dict(row)) if row else None

    async def get_all(self) -> list[PendingOperation]:
        async with self._reader() as db:
            cursor = await db.execute("SELECT * FROM pending_ops ORDER BY seq")
            rows = await cursor.fetchall()
            return [_row_to_operation(dict(r)) for r in rows]

    async def update(self, seq: int, changes: dict[str, Any]) -> bool:
        async with self._writer() as db:
            cursor = await db.execute(
                "UPDATE pending_ops SET changes = ? WHERE seq = ?",
                (json.dumps(changes), seq),
            )
            return cursor.rowcount > 0

    async def delete(self, seq: int) -> bool:
        async with self._writer() as db:
            cursor = await db.execute("DELETE FROM pending_ops WHERE seq = ?", (seq,))
            return cursor.rowcount > 0

    async def delete_for_note(self, note_id: str, before_seq: Optional[int] = None) -> int:
        async with self._writer() as db:
            if before_seq is None:
                cursor = await db.execute(
                    "DELETE FROM pending_ops WHERE note_id = ?", (note_id,)
                )
            else:
                cursor = await db.execute(
                    "DELETE FROM pending_ops WHERE note_id = ? AND seq < ?",
                    (note_id, before_seq),
                )
            return cursor.rowcount

    async def reassign(self, old_note_id: str, new_note_id: str) -> int:
        async with self._writer() as db:
            cursor = await db.execute(
                "UPDATE pending_ops SET note_id = ? WHERE note_id = ?",
                (new_note_id, old_note_id),
            )
            return cursor.rowcount

    async def count(self) -> int:
        async with self._reader() as db:
            cursor = await db.execute("SELECT COUNT(*) FROM pending_ops")
            row = await cursor.fetchone()
            return int(row[0])

    async def note_ids(self) -> set[str]:
        async with self._reader() as db:
            cursor = await db.execute("SELECT DISTINCT note_id FROM pending_ops")
            rows = await cursor.fetchall()
            return {r[0] for r in rows}

    async def query(self, index_name: str, value: Any) -> list[PendingOperation]:
        column = self._index_column(index_name)
        if isinstance(value, OperationKind):
            value = value.value
        async with self._reader() as db:
            cursor = await db.execute(
                f"SELECT * FROM pending_ops WHERE {column} = ? ORDER BY seq", (value,)
            )
            rows = await cursor.fetchall()
            return [_row_to_operation(dict(r)) for r in rows]


# ── Metadata ──

class MetadataTable(_Table):
    family = "metadata"
    indexes = {"key": "key"}

    async def add(self, key: str, value: Any) -> None:
        async with self._writer() as db:
            await db.execute(
                "INSERT INTO metadata (key, value) VALUES (?, ?)", (key, json.dumps(value))
            )

    async def put(self, key: str, value: Any) -> None:
        async with self._writer() as db:
            await db.execute(
                """INSERT INTO metadata (key, value) VALUES (?, ?)
                   ON CONFLICT(key) DO UPDATE SET value = excluded.value""",
                (key, json.dumps(value)),
            )

    async def get(self, key: str, default: Any = None) -> Any:
        async with self._reader() as db:
            cursor = await db.execute("SELECT value FROM metadata WHERE key = ?", (key,))
            row = await cursor.fetchone()
        if not row or row[0] is None:
            return default
        return json.loads(row[0])

    async def get_all(self) -> dict[str, Any]:
        async with self._reader() as db:
            cursor = await db.execute("SELECT key, value FROM metadata ORDER BY key")
            rows = await cursor.fetchall()
        return {r[0]: json.loads(r[1]) if r[1] is not None else None for r in rows}

    async def update(self, key: str, value: Any) -> bool:
        async with self._writer() as db:
            cursor = await db.execute(
                "UPDATE metadata SET value = ? WHERE key = ?", (json.dumps(value), key)
            )
            return cursor.rowcount > 0

    async def delete(self, key: str) -> bool:
        async with self._writer() as db:
            cursor = await db.execute("DELETE FROM metadata WHERE key = ?", (key,))
            return cursor.rowcount > 0

    async def query(self, index_name: str, value: Any) -> list[dict[str, Any]]:
        self._index_column(index_name)
        found = await self.get(value, default=None)
        return [] if found is None else [{"key": value, "value": found}]
