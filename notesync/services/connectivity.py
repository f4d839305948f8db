"""
Connectivity and lifecycle controller.

Turns online/offline and visibility signals into reconciliation passes and
realtime channel lifecycle. Each offline -> online transition yields exactly
one full reconciliation once the signal has been stable for the debounce
window; a flap inside the window cancels it.
"""

import asyncio
from typing import Optional

from notesync.config import settings
from notesync.logging import get_logger
from notesync.services.collaboration import CollaborationChannel
from notesync.services.observable import Observable
from notesync.services.reconciler import SyncReconciler

logger = get_logger("services.connectivity")


class ConnectivityController:
    """Owns the reaction to network and visibility changes."""

    def __init__(
        self,
        reconciler: SyncReconciler,
        channel: Optional[CollaborationChannel] = None,
        *,
        debounce_seconds: Optional[float] = None,
        sync_interval_seconds: Optional[float] = None,
        initially_online: bool = False,
    ):
        self.reconciler = reconciler
        self.channel = channel
        self.debounce_seconds = (
            debounce_seconds if debounce_seconds is not None else settings.CONNECTIVITY_DEBOUNCE_SECONDS
        )
        self.sync_interval_seconds = (
            sync_interval_seconds if sync_interval_seconds is not None else settings.SYNC_INTERVAL_SECONDS
        )
        self.online: Observable[bool] = Observable(initially_online)
        self.visible = True
        self._transition = 0
        self._reconnect_task: Optional[asyncio.Task] = None
        self._passes_started: set[asyncio.Task] = set()
        self._periodic_task: Optional[asyncio.Task] = None
        self._started = False
        if not initially_online:
            reconciler.suspend_push()

    @property
    def is_online(self) -> bool:
        return self.online.value

    async def start(self) -> None:
        """Begin reacting to signals; an already-online start reconciles once."""
        if self._started:
            return
        self._started = True
        if self.is_online:
            self._schedule_reconnect()

    async def stop(self) -> None:
        self._started = False
        self._cancel_reconnect()
        await self._stop_periodic()
        await self._await_cancelled(self._reconnect_task)

    def set_online(self, online: bool) -> None:
        """
        Feed a connectivity signal.

        :param online: Whether the network is reachable
        :type online: bool
        """
        was_online = self.online.value
        self.online.set(online)
        if online == was_online:
            return

        if online:
            logger.info("Connectivity restored")
            self.reconciler.resume_push()
            if self._started:
                self._schedule_reconnect()
        else:
            logger.info("Connectivity lost; local writes will queue")
            self.reconciler.suspend_push()
            self._cancel_reconnect()
            if self._periodic_task is not None:
                self._periodic_task.cancel()
                self._periodic_task = None

    async def set_visible(self, visible: bool) -> None:
        """Feed a visibility signal; becoming visible while online syncs."""
        became_visible = visible and not self.visible
        self.visible = visible
        if became_visible and self.is_online and self._started:
            await self.reconciler.request_sync("visible")

    def _schedule_reconnect(self) -> None:
        self._transition += 1
        self._cancel_reconnect()
        self._reconnect_task = asyncio.create_task(self._reconnect(self._transition))

    def _cancel_reconnect(self) -> None:
        # Only the debounce window is cancellable; a started pass runs to the end
        task = self._reconnect_task
        if task is not None and not task.done() and task not in self._passes_started:
            task.cancel()

    async def _reconnect(self, transition: int) -> None:
        try:
            if self.debounce_seconds > 0:
                await asyncio.sleep(self.debounce_seconds)
            if not self.is_online or transition != self._transition:
                return
            self._passes_started.add(asyncio.current_task())

            if self.channel is not None:
                await self.channel.open()

            result = await self.reconciler.reconcile(reason="reconnect")
            if result.skipped:
                # A pass was already running; this transition still owes one
                await self.reconciler.wait_idle()
                if self.is_online and transition == self._transition:
                    await self.reconciler.reconcile(reason="reconnect")

            self._start_periodic()
        except asyncio.CancelledError:
            logger.debug("Reconnect reconciliation cancelled by a connectivity flap")
            raise
        except Exception:
            logger.exception("Reconnect reconciliation failed")
        finally:
            self._passes_started.discard(asyncio.current_task())

    # ── Periodic sync ──

    def _start_periodic(self) -> None:
        if self.sync_interval_seconds <= 0 or not self._started or not self.is_online:
            return
        if self._periodic_task is not None and not self._periodic_task.done():
            return
        self._periodic_task = asyncio.create_task(self._periodic_loop())

    async def _periodic_loop(self) -> None:
        while self.is_online:
            await asyncio.sleep(self.sync_interval_seconds)
            if not self.is_online:
                break
            await self.reconciler.request_sync("interval")

    async def _stop_periodic(self) -> None:
        task = self._periodic_task
        self._periodic_task = None
        if task is not None:
            task.cancel()
            await self._await_cancelled(task)

    async def _await_cancelled(self, task: Optional[asyncio.Task]) -> None:
        if task is None or task.done():
            return
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def wait_idle(self) -> None:
        """Wait until the pending reconnect pass and background syncs finish."""
        task = self._reconnect_task
        if task is not None and not task.done():
            await asyncio.gather(task, return_exceptions=True)
        await self.reconciler.wait_idle()
