"""
notesync client wiring.

Builds the store, queue, reconciler, realtime channel, connectivity
controller and notes service for one user, and owns their lifecycle.
"""

from typing import Any, Optional

from notesync.config import settings
from notesync.database.db import LocalStore
from notesync.logging import get_logger, setup_logging
from notesync.services.collaboration import CollaborationChannel
from notesync.services.connectivity import ConnectivityController
from notesync.services.notes import NotesService
from notesync.services.pending_queue import PendingQueue
from notesync.services.reconciler import SyncReconciler
from notesync.services.remote_api import HttpNotesAPI, RemoteNotesAPI

logger = get_logger('client')


class NoteSyncClient:
    """An offline-first notes replica for one user."""

    def __init__(
        self,
        user_id: Optional[str] = None,
        *,
        remote: Optional[RemoteNotesAPI] = None,
        transport: Any = None,
        db_path: Optional[str] = None,
        api_base_url: Optional[str] = None,
        realtime_url: Optional[str] = None,
        realtime: bool = True,
        online: bool = False,
        request_timeout: Optional[float] = None,
        debounce_seconds: Optional[float] = None,
        sync_interval_seconds: Optional[float] = None,
    ):
        self.user_id = user_id
        self.store = LocalStore(db_path=db_path)
        self.queue = PendingQueue(self.store)

        self._owns_remote = remote is None
        self.remote = remote if remote is not None else HttpNotesAPI(api_base_url, timeout=request_timeout)
        self.reconciler = SyncReconciler(
            self.store, self.queue, self.remote, request_timeout=request_timeout
        )

        self.channel: Optional[CollaborationChannel] = None
        if realtime:
            self.channel = CollaborationChannel(
                realtime_url,
                transport=transport,
                store=self.store,
                user_id=user_id,
            )

        self.controller = ConnectivityController(
            self.reconciler,
            self.channel,
            debounce_seconds=debounce_seconds,
            sync_interval_seconds=sync_interval_seconds,
            initially_online=online,
        )
        self.notes = NotesService(
            self.store,
            self.queue,
            self.reconciler,
            self.controller,
            self.channel,
            user_id=user_id,
        )
        self._opened = False

    async def open(self) -> None:
        if self._opened:
            return
        setup_logging(settings.DEBUG)
        logger.info("Starting notesync client")

        await self.store.open()
        await self.reconciler.load_state()
        await self.notes.refresh_status()
        await self.controller.start()
        self._opened = True
        logger.info("notesync client ready")

    async def close(self) -> None:
        if not self._opened:
            return
        logger.info("Shutting down notesync client")
        await self.controller.stop()
        await self.reconciler.wait_idle()
        if self.channel is not None:
            await self.channel.close()
        self.notes.close()
        if self._owns_remote and isinstance(self.remote, HttpNotesAPI):
            await self.remote.aclose()
        await self.store.close()
        self._opened = False

    def set_online(self, online: bool) -> None:
        self.controller.set_online(online)

    async def set_visible(self, visible: bool) -> None:
        await self.controller.set_visible(visible)

    async def __aenter__(self) -> "NoteSyncClient":
        await self.open()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()


def create_client(user_id: Optional[str] = None, **kwargs: Any) -> NoteSyncClient:
    """
    Build a client from settings, overriding any keyword argument.

    :param user_id: Opaque id of the signed-in user
    :type user_id: str | None
    :return: An unopened client
    :rtype: NoteSyncClient
    """
    return NoteSyncClient(user_id, **kwargs)
