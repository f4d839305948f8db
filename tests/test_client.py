import asyncio

import httpx

from notesync.client import create_client
from notesync.models import ConnectionState, Note
from notesync.services.remote_api import HttpNotesAPI
from tests.fake_server import NotesState, create_app


def test_context_manager_opens_and_closes_everything(make_client):
    async def scenario():
        client = make_client(online=True)
        async with client:
            await client.controller.wait_idle()
            assert client.store.is_open
            assert client.channel.state.value is ConnectionState.CONNECTED
            assert client.notes.status.value.is_online

        assert not client.store.is_open
        assert client.channel.is_closed
        # closing twice is a no-op
        await client.close()

    asyncio.run(scenario())


def test_owned_http_client_is_closed(tmp_path):
    async def scenario():
        client = create_client("u1", db_path=str(tmp_path / "owned.db"), realtime=False)
        assert client.channel is None
        async with client:
            assert await client.notes.list_notes() == []
        assert client.remote.client.is_closed

    asyncio.run(scenario())


def test_notes_survive_restart_and_sync_over_http(tmp_path):
    state = NotesState()
    db_path = str(tmp_path / "replica.db")

    def http_remote():
        return HttpNotesAPI(
            "http://notes.test", transport=httpx.ASGITransport(app=create_app(state))
        )

    async def offline_session():
        remote = http_remote()
        async with create_client("u1", db_path=db_path, remote=remote, realtime=False) as client:
            note = await client.notes.save(Note(title="kept offline"))
            assert state.notes == {}
        await remote.aclose()
        return note.id

    async def online_session(note_id):
        remote = http_remote()
        client = create_client(
            "u1",
            db_path=db_path,
            remote=remote,
            realtime=False,
            online=True,
            debounce_seconds=0,
            request_timeout=2.0,
        )
        async with client:
            await client.controller.wait_idle()
            assert state.notes[note_id]["title"] == "kept offline"
            assert (await client.notes.get_note(note_id)).is_synced
            assert client.notes.last_sync_at.value is not None
        # a remote passed in by the caller is left open
        assert not remote.client.is_closed
        await remote.aclose()

    async def reopened_session():
        remote = http_remote()
        async with create_client("u1", db_path=db_path, remote=remote, realtime=False) as client:
            assert client.notes.status.value.last_sync_at is not None
            assert client.notes.status.value.pending_count == 0
        await remote.aclose()

    note_id = asyncio.run(offline_session())
    asyncio.run(online_session(note_id))
    asyncio.run(reopened_session())
