"""
Realtime collaboration over Socket.IO.

The channel keeps one room membership at a time, relays local edits to the
other members of that room, and applies their edits to the local store
without going through the pending queue (the editing client owns the server
write for its own change).
"""

import asyncio
import inspect
from typing import Any, Callable, Optional

import socketio

from notesync.config import settings
from notesync.database.db import LocalStore
from notesync.logging import get_logger
from notesync.models import ConnectionState, NoteChanges, NoteUpdatedEvent, parse_event, utcnow
from notesync.models.domain.events import (
    INBOUND_EVENTS,
    JOIN_NOTE,
    LEAVE_NOTE,
    NOTE_UPDATE,
    NOTE_UPDATED,
    PEER_JOINED,
    PEER_LEFT,
    PRESENCE,
    PeerJoinedEvent,
    PeerLeftEvent,
    to_epoch_millis,
)
from notesync.services.observable import Observable

logger = get_logger("services.collaboration")

Observer = Callable[[Any], Any]
StatusCallback = Callable[[ConnectionState, Optional[BaseException]], Any]


def _default_transport() -> socketio.AsyncClient:
    return socketio.AsyncClient(
        reconnection=True,
        reconnection_attempts=settings.REALTIME_RECONNECTION_ATTEMPTS,
        reconnection_delay=settings.REALTIME_RECONNECTION_DELAY_SECONDS,
        logger=False,
    )


async def _call_observer(callback: Callable, *args: Any) -> None:
    result = callback(*args)
    if inspect.isawaitable(result):
        await result


class CollaborationChannel:
    """
    One client's realtime connection and room membership.

    Connection problems are reported through ``state``/``on_status`` and are
    never raised to the caller.
    """

    def __init__(
        self,
        url: Optional[str] = None,
        *,
        transport: Any = None,
        store: Optional[LocalStore] = None,
        user_id: Optional[str] = None,
        emit_timeout: Optional[float] = None,
        connect_timeout: Optional[float] = None,
    ):
        self.url = url or settings.REALTIME_URL
        self.transport = transport if transport is not None else _default_transport()
        self.store = store
        self.user_id = user_id
        self.emit_timeout = (
            emit_timeout if emit_timeout is not None else settings.REALTIME_EMIT_TIMEOUT_SECONDS
        )
        self.connect_timeout = (
            connect_timeout if connect_timeout is not None else settings.REALTIME_CONNECT_TIMEOUT_SECONDS
        )

        self.state: Observable[ConnectionState] = Observable(ConnectionState.DISCONNECTED)
        self.last_error: Optional[BaseException] = None
        self.peers: set[str] = set()

        self._desired_room: Optional[str] = None
        self._joined_room: Optional[str] = None
        self._closing = False
        self._closed = False
        self._status_callbacks: list[StatusCallback] = []
        self._observers: dict[str, list[Observer]] = {name: [] for name in INBOUND_EVENTS}
        self._register_handlers()

    # ── Properties ──

    @property
    def is_connected(self) -> bool:
        return self.state.value is ConnectionState.CONNECTED

    @property
    def is_closed(self) -> bool:
        return self._closed

    @property
    def room(self) -> Optional[str]:
        """The room this client wants to be in (re-joined after reconnects)."""
        return self._desired_room

    @property
    def joined_room(self) -> Optional[str]:
        return self._joined_room

    # ── Lifecycle ──

    def _register_handlers(self) -> None:
        self.transport.on("connect", self._on_connect)
        self.transport.on("disconnect", self._on_disconnect)
        self.transport.on("connect_error", self._on_connect_error)
        for name in INBOUND_EVENTS:
            self.transport.on(name, self._inbound_handler(name))

    def _inbound_handler(self, name: str):
        async def handler(payload=None):
            await self._handle_event(name, payload)
        return handler

    async def open(self) -> None:
        """Connect the transport. Failures leave the channel DISCONNECTED."""
        if self._closed:
            logger.warning("Ignoring open() on a closed collaboration channel")
            return
        if self.state.value in (
            ConnectionState.CONNECTED,
            ConnectionState.CONNECTING,
            ConnectionState.RECONNECTING,
        ):
            return

        self._set_state(ConnectionState.CONNECTING)
        logger.info(f"Connecting to realtime server at {self.url}")
        try:
            await self.transport.connect(
                self.url,
                auth={"userId": self.user_id} if self.user_id else None,
                transports=["websocket", "polling"],
                wait_timeout=self.connect_timeout,
            )
        except Exception as exc:
            logger.warning(f"Realtime connection failed: {exc}")
            self._set_state(ConnectionState.DISCONNECTED, exc)
            return

        if self.transport.connected and not self.is_connected:
            await self._on_connect()

    async def close(self) -> None:
        """Leave the room and disconnect for good."""
        if self._closed:
            return
        self._closing = True
        if self._joined_room and self.is_connected:
            await self._emit(LEAVE_NOTE, self._joined_room)
        self._desired_room = None
        self._joined_room = None
        self.peers.clear()
        try:
            await self.transport.disconnect()
        except Exception as exc:
            logger.warning(f"Error while disconnecting realtime transport: {exc}")
        self._closed = True
        self._set_state(ConnectionState.DISCONNECTED)
        logger.info("Collaboration channel closed")

    async def _on_connect(self) -> None:
        logger.info(f"Realtime connected (sid={getattr(self.transport, 'sid', None)})")
        self._set_state(ConnectionState.CONNECTED)
        if self._desired_room and self._joined_room != self._desired_room:
            await self._emit(JOIN_NOTE, self._desired_room)
            self._joined_room = self._desired_room

    async def _on_disconnect(self, *args: Any) -> None:
        reason = args[0] if args else None
        self._joined_room = None
        self.peers.clear()
        if self._closing:
            return
        if getattr(self.transport, "reconnection", False):
            logger.warning(f"Realtime disconnected ({reason}); reconnecting")
            self._set_state(ConnectionState.RECONNECTING)
        else:
            logger.warning(f"Realtime disconnected ({reason})")
            self._set_state(ConnectionState.DISCONNECTED)

    async def _on_connect_error(self, data: Any = None) -> None:
        error = data if isinstance(data, BaseException) else ConnectionError(str(data))
        logger.warning(f"Realtime connection error: {data}")
        self.last_error = error
        self._report(self.state.value, error)

    def _set_state(self, state: ConnectionState, error: Optional[BaseException] = None) -> None:
        if error is not None:
            self.last_error = error
        changed = state is not self.state.value
        self.state.set(state)
        if changed or error is not None:
            self._report(state, error)

    def _report(self, state: ConnectionState, error: Optional[BaseException]) -> None:
        for callback in list(self._status_callbacks):
            try:
                callback(state, error)
            except Exception:
                logger.exception("Realtime status callback failed")

    def on_status(self, callback: StatusCallback) -> Callable[[], None]:
        """Register ``callback(state, error)``; returns an unsubscribe callable."""
        self._status_callbacks.append(callback)

        def unsubscribe() -> None:
            if callback in self._status_callbacks:
                self._status_callbacks.remove(callback)

        return unsubscribe

    # ── Rooms ──

    async def join_room(self, note_id: str) -> None:
        """
        Join the room of ``note_id``, leaving any other room first.

        Joining the current room again is a no-op. While disconnected the
        join is remembered and happens on the next connect.

        :param note_id: The note whose room to join
        :type note_id: str
        """
        self._desired_room = note_id
        if self._joined_room == note_id:
            return
        if not self.is_connected:
            logger.debug(f"Deferring join of room {note_id[:8]} until connected")
            return

        if self._joined_room is not None:
            await self._emit(LEAVE_NOTE, self._joined_room)
            self.peers.clear()
        self._joined_room = note_id
        await self._emit(JOIN_NOTE, note_id)
        logger.info(f"Joined collaboration room {note_id[:8]}")

    async def leave_room(self, note_id: str) -> None:
        if self._desired_room == note_id:
            self._desired_room = None
        if self._joined_room != note_id:
            return
        self._joined_room = None
        self.peers.clear()
        if self.is_connected:
            await self._emit(LEAVE_NOTE, note_id)
        logger.info(f"Left collaboration room {note_id[:8]}")

    # ── Outbound ──

    async def broadcast_change(self, note_id: str, changes: NoteChanges) -> None:
        """Fire-and-forget ``note:update`` to the other members of the room."""
        if not self.is_connected:
            return
        payload = {
            "noteId": note_id,
            "changes": changes.to_wire(),
            "timestamp": to_epoch_millis(utcnow()),
        }
        if self.user_id:
            payload["userId"] = self.user_id
        await self._emit(NOTE_UPDATE, payload)

    async def broadcast_presence(self, note_id: str, status: Any = None) -> None:
        if not self.is_connected:
            return
        payload = {
            "noteId": note_id,
            "status": status,
            "timestamp": to_epoch_millis(utcnow()),
        }
        if self.user_id:
            payload["userId"] = self.user_id
        await self._emit(PRESENCE, payload)

    async def _emit(self, event: str, data: Any) -> bool:
        try:
            await asyncio.wait_for(self.transport.emit(event, data), timeout=self.emit_timeout)
            return True
        except Exception as exc:
            logger.warning(f"Realtime emit of '{event}' failed: {exc}")
            self.last_error = exc
            self._report(self.state.value, exc)
            return False

    # ── Inbound ──

    def _observe(self, name: str, callback: Observer) -> Callable[[], None]:
        observers = self._observers[name]
        observers.append(callback)

        def unsubscribe() -> None:
            if callback in observers:
                observers.remove(callback)

        return unsubscribe

    def on_peer_joined(self, callback: Observer) -> Callable[[], None]:
        return self._observe(PEER_JOINED, callback)

    def on_peer_left(self, callback: Observer) -> Callable[[], None]:
        return self._observe(PEER_LEFT, callback)

    def on_note_updated(self, callback: Observer) -> Callable[[], None]:
        return self._observe(NOTE_UPDATED, callback)

    def on_presence(self, callback: Observer) -> Callable[[], None]:
        return self._observe(PRESENCE, callback)

    async def _handle_event(self, name: str, payload: Any) -> None:
        try:
            event = parse_event(name, payload)
        except ValueError as exc:
            logger.warning(f"Ignoring malformed '{name}' payload: {exc}")
            event = None

        if isinstance(event, PeerJoinedEvent):
            self.peers.add(event.user_id)
        elif isinstance(event, PeerLeftEvent):
            self.peers.discard(event.user_id)
        elif isinstance(event, NoteUpdatedEvent) and self.store is not None:
            try:
                await self._apply_remote_update(event)
            except Exception:
                logger.exception(f"Failed to apply realtime update for note {event.note_id[:8]}")

        for callback in list(self._observers[name]):
            try:
                await _call_observer(callback, payload)
            except Exception:
                logger.exception(f"Observer for '{name}' failed")

    async def _apply_remote_update(self, event: NoteUpdatedEvent) -> bool:
        """
        Merge a peer's edit into the local replica, bypassing the queue.

        :param event: The validated inbound event
        :type event: NoteUpdatedEvent
        :return: Whether the local record changed
        :rtype: bool
        """
        async with self.store.transaction() as tx:
            local = await tx.notes.get(event.note_id)
            if local is None:
                return False
            if local.updated_at > event.timestamp:
                logger.debug(
                    f"Ignoring stale realtime update for note {event.note_id[:8]}"
                )
                return False

            merged = local.apply(event.changes).model_copy(
                update={
                    "updated_at": max(local.updated_at, event.timestamp),
                    "synced_at": utcnow() if local.is_synced else None,
                }
            )
            await tx.notes.put(merged)
        return True


class NoteCollaboration:
    """Per-note collaboration handle used by an open editor."""

    def __init__(
        self,
        channel: CollaborationChannel,
        note_id: str,
        *,
        on_peer_joined: Optional[Observer] = None,
        on_peer_left: Optional[Observer] = None,
        on_note_updated: Optional[Observer] = None,
        on_presence: Optional[Observer] = None,
    ):
        self.channel = channel
        self.note_id = note_id
        self._callbacks = {
            PEER_JOINED: on_peer_joined,
            PEER_LEFT: on_peer_left,
            NOTE_UPDATED: on_note_updated,
            PRESENCE: on_presence,
        }
        self._unsubscribers: list[Callable[[], None]] = []

    @property
    def is_connected(self) -> bool:
        return self.channel.is_connected

    @property
    def peers(self) -> set[str]:
        if self.channel.joined_room != self.note_id:
            return set()
        return set(self.channel.peers)

    def _forwarder(self, callback: Observer) -> Observer:
        async def forward(payload: Any) -> None:
            if isinstance(payload, dict) and payload.get("noteId") not in (None, self.note_id):
                return
            await _call_observer(callback, payload)
        return forward

    async def join(self) -> None:
        if not self._unsubscribers:
            for name, callback in self._callbacks.items():
                if callback is not None:
                    self._unsubscribers.append(
                        self.channel._observe(name, self._forwarder(callback))
                    )
        await self.channel.join_room(self.note_id)

    async def leave(self) -> None:
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers.clear()
        await self.channel.leave_room(self.note_id)

    async def broadcast_update(self, changes: NoteChanges) -> None:
        await self.channel.broadcast_change(self.note_id, changes)

    async def broadcast_presence(self, status: Any = None) -> None:
        await self.channel.broadcast_presence(self.note_id, status)

    async def __aenter__(self) -> "NoteCollaboration":
        await self.join()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.leave()
