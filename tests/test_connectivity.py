import asyncio

from notesync.database.db import LocalStore
from notesync.models import ConnectionState, Note, PendingOperation
from notesync.services.collaboration import CollaborationChannel
from notesync.services.connectivity import ConnectivityController
from notesync.services.pending_queue import PendingQueue
from notesync.services.reconciler import SyncReconciler
from tests.fakes import FakeRemoteNotesAPI, FakeSocketHub, GatedRemoteNotesAPI


def _build(db_path, remote=None, *, debounce=0.0, interval=0.0, online=False):
    remote = remote if remote is not None else FakeRemoteNotesAPI()
    store = LocalStore(db_path)
    queue = PendingQueue(store)
    reconciler = SyncReconciler(store, queue, remote, request_timeout=1.0)
    socket = FakeSocketHub().client()
    channel = CollaborationChannel("http://realtime.test", transport=socket, store=store)
    controller = ConnectivityController(
        reconciler,
        channel,
        debounce_seconds=debounce,
        sync_interval_seconds=interval,
        initially_online=online,
    )
    return remote, store, queue, channel, controller


def _pulls(remote):
    return len([call for call in remote.calls if call[0] == "list"])


def test_going_online_reconciles_once_and_opens_channel(db_path):
    async def scenario():
        remote, store, queue, channel, controller = _build(db_path)
        await store.open()
        note = Note(id="n1", title="offline")
        await queue.enqueue(PendingOperation.for_create(note))
        await store.notes.add(note)
        await controller.start()
        assert controller.reconciler.push_suspended

        controller.set_online(True)
        controller.set_online(True)
        await controller.wait_idle()

        assert _pulls(remote) == 1
        assert remote.call_kinds() == ["create"]
        assert channel.state.value is ConnectionState.CONNECTED
        assert await queue.count() == 0
        await controller.stop()
        await store.close()

    asyncio.run(scenario())


def test_flapping_inside_debounce_window_cancels_pending_pass(db_path):
    async def scenario():
        remote, store, queue, channel, controller = _build(db_path, debounce=0.05)
        await store.open()
        await controller.start()

        controller.set_online(True)
        controller.set_online(False)
        await asyncio.sleep(0.15)
        assert _pulls(remote) == 0

        controller.set_online(True)
        controller.set_online(False)
        controller.set_online(True)
        await controller.wait_idle()
        await asyncio.sleep(0.1)
        assert _pulls(remote) == 1
        await controller.stop()
        await store.close()

    asyncio.run(scenario())


def test_going_offline_suspends_push_but_accepts_writes(db_path):
    async def scenario():
        remote, store, queue, channel, controller = _build(db_path, online=True)
        await store.open()
        await controller.start()
        await controller.wait_idle()

        controller.set_online(False)
        assert controller.reconciler.push_suspended

        await queue.enqueue(PendingOperation.for_delete("n1"))
        result = await controller.reconciler.flush()
        assert result.skipped
        assert await queue.count() == 1
        await controller.stop()
        await store.close()

    asyncio.run(scenario())


def test_becoming_visible_while_online_requests_sync(db_path):
    async def scenario():
        remote, store, queue, channel, controller = _build(db_path)
        await store.open()
        await controller.start()

        await controller.set_visible(False)
        await controller.set_visible(True)
        await controller.wait_idle()
        assert _pulls(remote) == 0

        controller.set_online(True)
        await controller.wait_idle()
        await controller.set_visible(False)
        await controller.set_visible(True)
        await controller.wait_idle()
        assert _pulls(remote) == 2
        await controller.stop()
        await store.close()

    asyncio.run(scenario())


def test_reconnect_during_running_pass_still_gets_its_own_pass(db_path):
    async def scenario():
        remote = GatedRemoteNotesAPI()
        remote, store, queue, channel, controller = _build(db_path, remote)
        await store.open()
        await controller.start()

        manual = asyncio.create_task(controller.reconciler.reconcile(reason="manual"))
        await remote.entered.wait()
        controller.set_online(True)
        await asyncio.sleep(0.01)
        remote.release.set()

        await manual
        await controller.wait_idle()
        assert _pulls(remote) == 2
        await controller.stop()
        await store.close()

    asyncio.run(scenario())


def test_periodic_sync_runs_only_while_online(db_path):
    async def scenario():
        remote, store, queue, channel, controller = _build(db_path, interval=0.02)
        await store.open()
        await controller.start()

        controller.set_online(True)
        await controller.wait_idle()
        await asyncio.sleep(0.15)
        assert _pulls(remote) >= 2

        controller.set_online(False)
        await controller.wait_idle()
        online_pulls = _pulls(remote)
        await asyncio.sleep(0.1)
        assert _pulls(remote) == online_pulls
        await controller.stop()
        await store.close()

    asyncio.run(scenario())


def test_initially_online_start_reconciles(db_path):
    async def scenario():
        remote, store, queue, channel, controller = _build(db_path, online=True)
        await store.open()
        assert not controller.reconciler.push_suspended

        await controller.start()
        await controller.wait_idle()
        assert _pulls(remote) == 1
        await controller.stop()
        await store.close()

    asyncio.run(scenario())


class _SlowCreateRemote(FakeRemoteNotesAPI):
    """Applies creates on the server, then stalls before answering."""

    def __init__(self):
        super().__init__()
        self.applied = asyncio.Event()

    async def create_note(self, note_id, data):
        note = await super().create_note(note_id, data)
        self.applied.set()
        await asyncio.sleep(0.2)
        return note


def test_going_offline_mid_push_lets_the_pass_finish(db_path):
    async def scenario():
        remote, store, queue, channel, controller = _build(db_path, _SlowCreateRemote())
        await store.open()
        note = Note(id="n1", title="in flight")
        await store.notes.add(note)
        await queue.enqueue(PendingOperation.for_create(note))
        await controller.start()

        controller.set_online(True)
        await remote.applied.wait()
        task = controller._reconnect_task
        controller.set_online(False)
        await controller.wait_idle()

        assert not task.cancelled()
        assert "n1" in remote.notes
        assert await queue.count() == 0
        assert (await store.notes.get("n1")).is_synced
        assert controller.reconciler.push_suspended
        await controller.stop()
        await store.close()

    asyncio.run(scenario())
