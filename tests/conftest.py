import pytest

from notesync.client import NoteSyncClient
from tests.fakes import FakeRemoteNotesAPI, FakeSocketHub


@pytest.fixture
def db_path(tmp_path):
    return str(tmp_path / "notes.db")


@pytest.fixture
def remote():
    return FakeRemoteNotesAPI()


@pytest.fixture
def hub():
    return FakeSocketHub()


@pytest.fixture
def make_client(tmp_path, remote, hub):
    """Build unopened clients that share one fake server and socket hub."""
    created = 0

    def factory(user_id="user-1", *, online=False, realtime=True, **kwargs):
        nonlocal created
        created += 1
        kwargs.setdefault("db_path", str(tmp_path / f"client-{created}.db"))
        kwargs.setdefault("remote", remote)
        return NoteSyncClient(
            user_id,
            transport=hub.client() if realtime else None,
            realtime=realtime,
            online=online,
            debounce_seconds=0,
            sync_interval_seconds=0,
            request_timeout=2.0,
            **kwargs,
        )

    return factory
