# tests/conftest.py
import pytest

import homies_auth
from HomiesChat import create_app
from homies_backup import BackupWriter
from homies_blobstore import BlobStore
from homies_db import Database
from homies_messages import MessageLog, MessageRelay, PersistencePipeline
from homies_presence import PresenceRegistry
from homies_signaling import SignalingRelay
from homies_status import StatusBroadcaster

PASSWORD = "hunter22"


class RecordingTransport:
    """In-memory stand-in for the socket transport; remembers every emit in order."""

    def __init__(self):
        self.events = []

    def send(self, sid, event, data):
        self.events.append(("send", sid, event, data, None))

    def broadcast(self, event, data, skip=None):
        self.events.append(("broadcast", None, event, data, skip))

    def received(self, sid):
        """What connection ``sid`` would have seen, as (event, data) pairs."""
        out = []
        for kind, target, event, data, skip in self.events:
            if kind == "send" and target == sid:
                out.append((event, data))
            elif kind == "broadcast" and skip != sid:
                out.append((event, data))
        return out

    def named(self, event):
        return [e for e in self.events if e[2] == event]


@pytest.fixture(autouse=True)
def fast_password_hashing(monkeypatch):
    monkeypatch.setattr(homies_auth, "PBKDF2_ITER", 1000)


@pytest.fixture()
def transport():
    return RecordingTransport()


@pytest.fixture()
def registry():
    return PresenceRegistry()


@pytest.fixture()
def db(tmp_path):
    database = Database(str(tmp_path / "homies.db"))
    database.init_db()
    return database


@pytest.fixture()
def backup(tmp_path):
    return BackupWriter(str(tmp_path / "backups"), keep=0)


@pytest.fixture()
def blob_store():
    return BlobStore("http://blobs.test/bucket", token="t0k3n", timeout=2)


@pytest.fixture()
def pipeline(db, blob_store, backup):
    return PersistencePipeline(db, blob_store, backup)


@pytest.fixture()
def message_relay(registry, transport, pipeline):
    return MessageRelay(registry, MessageLog(), transport, pipeline)


@pytest.fixture()
def signaling(registry, transport):
    return SignalingRelay(registry, transport)


@pytest.fixture()
def status(registry, transport, db):
    return StatusBroadcaster(registry, transport, db)


@pytest.fixture()
def app_config(tmp_path):
    return {
        "SECRET_KEY": "test-secret",
        "DB_PATH": str(tmp_path / "app.db"),
        "BACKUP_DIR": str(tmp_path / "app-backups"),
        "BACKUP_KEEP": 0,
        "BLOB_STORE_URL": "",
        "SOCKETIO_ASYNC_MODE": "threading",
        "PERSIST_IN_BACKGROUND": False,
    }


@pytest.fixture()
def app_and_socketio(app_config):
    return create_app(app_config)


@pytest.fixture()
def app(app_and_socketio):
    return app_and_socketio[0]


@pytest.fixture()
def socketio(app_and_socketio):
    return app_and_socketio[1]


@pytest.fixture()
def relay(app):
    return app.extensions["homies"]


@pytest.fixture()
def connect_user(app, socketio, relay):
    """Connect a socket test client and log it in as ``username`` (registering the user first)."""
    clients = []

    def _connect(username, register=True):
        if register and not relay.db.find_user(username):
            relay.auth.register_user(username, PASSWORD)
        client = socketio.test_client(app)
        ack = client.emit("authenticate", {"username": username, "password": PASSWORD}, callback=True)
        assert ack["success"] is True
        client.get_received()
        clients.append(client)
        return client

    yield _connect

    for client in clients:
        if client.is_connected():
            client.disconnect()


def events_named(received, name):
    return [r["args"][0] if r["args"] else None for r in received if r["name"] == name]
