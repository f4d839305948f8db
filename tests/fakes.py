"""In-memory stand-ins for the remote notes API and the Socket.IO transport."""

import asyncio
import inspect
from itertools import count
from typing import Any, Optional

from notesync.errors import RemoteError, RemoteNotFoundError
from notesync.models import ListFilters, Note, NoteChanges, utcnow


class FakeRemoteNotesAPI:
    """Authoritative server replica kept in a dict."""

    def __init__(self, notes: Optional[list[Note]] = None):
        self.notes: dict[str, Note] = {note.id: note for note in notes or []}
        self.calls: list[tuple] = []
        self.fail_ids: set[str] = set()
        self.assign_ids: dict[str, str] = {}
        self.list_error: Optional[Exception] = None

    def _check(self, note_id: str) -> None:
        if note_id in self.fail_ids:
            raise RemoteError(f"Service unavailable for {note_id}", status_code=503)

    async def list_notes(self, filters: ListFilters) -> list[Note]:
        self.calls.append(("list", filters))
        if self.list_error is not None:
            raise self.list_error
        notes = list(self.notes.values())
        if filters.trashed is not None:
            notes = [n for n in notes if n.is_trashed == filters.trashed]
        if filters.archived is not None:
            notes = [n for n in notes if n.is_archived == filters.archived]
        return [n.model_copy() for n in notes]

    async def create_note(self, note_id: str, data: NoteChanges) -> Note:
        self.calls.append(("create", note_id, data.as_patch()))
        self._check(note_id)
        server_id = self.assign_ids.get(note_id, note_id)
        if server_id not in self.notes:
            now = utcnow()
            self.notes[server_id] = Note(
                id=server_id, created_at=now, updated_at=now, **data.as_patch()
            )
        return self.notes[server_id].model_copy()

    async def update_note(self, note_id: str, data: NoteChanges) -> Note:
        self.calls.append(("update", note_id, data.as_patch()))
        self._check(note_id)
        existing = self.notes.get(note_id)
        if existing is None:
            raise RemoteNotFoundError("Note not found", status_code=404)
        updated = existing.apply(data).model_copy(update={"updated_at": utcnow()})
        self.notes[note_id] = updated
        return updated.model_copy()

    async def delete_note(self, note_id: str) -> None:
        self.calls.append(("delete", note_id))
        self._check(note_id)
        if self.notes.pop(note_id, None) is None:
            raise RemoteNotFoundError("Note not found", status_code=404)

    def call_kinds(self) -> list[str]:
        return [call[0] for call in self.calls if call[0] != "list"]


class GatedRemoteNotesAPI(FakeRemoteNotesAPI):
    """Blocks every listing until `release` is set."""

    def __init__(self, notes: Optional[list[Note]] = None):
        super().__init__(notes)
        self.entered = asyncio.Event()
        self.release = asyncio.Event()

    async def list_notes(self, filters: ListFilters) -> list[Note]:
        self.entered.set()
        await self.release.wait()
        return await super().list_notes(filters)


async def _invoke(handler, *args: Any) -> None:
    result = handler(*args)
    if inspect.isawaitable(result):
        await result


class FakeSocket:
    """Socket.IO client double that routes emits through a FakeSocketHub."""

    def __init__(self, hub: "FakeSocketHub", sid: str, *, reconnection: bool = True):
        self.hub = hub
        self.sid = sid
        self.reconnection = reconnection
        self.connected = False
        self.user_id: Optional[str] = None
        self.fail_connect = False
        self.handlers: dict[str, Any] = {}
        self.emitted: list[tuple[str, Any]] = []
        self.connect_calls = 0

    def on(self, event: str, handler=None):
        self.handlers[event] = handler
        return handler

    async def connect(self, url: str, auth: Optional[dict] = None, **kwargs: Any) -> None:
        self.connect_calls += 1
        if self.fail_connect:
            raise ConnectionError("Connection refused")
        self.user_id = (auth or {}).get("userId")
        self.connected = True
        await self.trigger("connect")

    async def disconnect(self) -> None:
        if not self.connected:
            return
        self.connected = False
        await self.hub.drop(self)
        await self.trigger("disconnect", "io client disconnect")

    async def emit(self, event: str, data: Any = None) -> None:
        if not self.connected:
            raise ConnectionError("Not connected")
        self.emitted.append((event, data))
        await self.hub.route(self, event, data)

    async def trigger(self, event: str, *args: Any) -> None:
        handler = self.handlers.get(event)
        if handler is not None:
            await _invoke(handler, *args)

    async def lose_connection(self) -> None:
        """Simulate the server dropping the transport."""
        self.connected = False
        await self.hub.drop(self)
        await self.trigger("disconnect", "transport close")

    async def restore_connection(self) -> None:
        """Simulate a successful automatic reconnect."""
        self.connected = True
        await self.trigger("connect")

    def events(self, name: Optional[str] = None) -> list[tuple[str, Any]]:
        return [e for e in self.emitted if name is None or e[0] == name]


class FakeSocketHub:
    """Relays room events between connected FakeSockets like the realtime server."""

    def __init__(self):
        self.rooms: dict[str, set[FakeSocket]] = {}
        self._ids = count(1)

    def client(self, *, reconnection: bool = True) -> FakeSocket:
        return FakeSocket(self, f"sid-{next(self._ids)}", reconnection=reconnection)

    def members(self, room: str) -> set[FakeSocket]:
        return self.rooms.get(room, set())

    async def drop(self, socket: FakeSocket) -> None:
        for room, members in list(self.rooms.items()):
            if socket in members:
                members.discard(socket)
                await self._broadcast(socket, room, "user:left", {"userId": socket.user_id, "noteId": room})

    async def _broadcast(self, sender: FakeSocket, room: str, event: str, data: Any) -> None:
        for member in list(self.members(room)):
            if member is not sender:
                await member.trigger(event, data)

    async def route(self, sender: FakeSocket, event: str, data: Any) -> None:
        if event == "join:note":
            self.rooms.setdefault(data, set()).add(sender)
            await self._broadcast(
                sender, data, "user:joined",
                {"userId": sender.user_id, "noteId": data, "socketId": sender.sid},
            )
        elif event == "leave:note":
            self.members(data).discard(sender)
            await self._broadcast(sender, data, "user:left", {"userId": sender.user_id, "noteId": data})
        elif event == "note:update":
            await self._broadcast(sender, data["noteId"], "note:updated", data)
        elif event == "user:presence":
            await self._broadcast(sender, data["noteId"], "user:presence", data)
