"""Tests for the message relay and its storage tiers."""

import json
import threading
import time
from unittest import mock

import pytest
import requests

from homies_errors import NotAuthenticated, StorageError, ValidationFailed
from homies_messages import MessageLog, MessageRelay, PersistencePipeline


@pytest.fixture()
def two_users(registry):
    registry.register("sid-alice", "alice", user_id=1)
    registry.register("sid-bob", "bob", user_id=2)


def _fail(*args, **kwargs):
    raise StorageError("boom")


def test_message_gets_server_identity_and_reaches_everyone(message_relay, transport, two_users) -> None:
    msg = message_relay.send_message("sid-alice", {"content": "hi", "sender": "mallory", "id": "spoof"})

    assert msg["sender"] == "alice"
    assert msg["senderId"] == 1
    assert msg["id"] != "spoof" and len(msg["id"]) == 32
    assert msg["channel"] == "general"
    assert msg["encrypted"] is False
    for sid in ("sid-alice", "sid-bob"):
        assert ("new-message", msg) in transport.received(sid)


def test_timestamps_non_decreasing_and_order_preserved(registry, transport, pipeline, two_users) -> None:
    # wall clock steps backwards halfway through
    ticks = iter([5.0, 6.0, 4.0, 7.0])
    relay = MessageRelay(registry, MessageLog(), transport, pipeline, clock=lambda: next(ticks))

    sent = [relay.send_message(sid, {"content": f"m{i}"})
            for i, sid in enumerate(["sid-alice", "sid-bob", "sid-alice", "sid-bob"])]

    stamps = [m["timestamp"] for m in sent]
    assert stamps == sorted(stamps)
    assert stamps == [5000, 6000, 6000, 7000]
    for sid in ("sid-alice", "sid-bob"):
        seen = [d["content"] for e, d in transport.received(sid) if e == "new-message"]
        assert seen == ["m0", "m1", "m2", "m3"]
    assert [m["content"] for m in relay.log.list()] == ["m0", "m1", "m2", "m3"]


def test_unauthenticated_send_is_rejected_without_side_effects(message_relay, transport, db, backup) -> None:
    with pytest.raises(NotAuthenticated):
        message_relay.send_message("sid-stranger", {"content": "hi"})

    assert transport.events == []
    assert len(message_relay.log) == 0
    assert db.list_messages() == []
    assert backup.load_latest() is None


@pytest.mark.parametrize("payload", [{}, {"content": ""}, {"content": "   "}, {"content": 42}, "hi"])
def test_invalid_payloads_are_rejected(message_relay, transport, two_users, payload) -> None:
    with pytest.raises(ValidationFailed):
        message_relay.send_message("sid-alice", payload)
    assert transport.events == []
    assert len(message_relay.log) == 0


def test_overlong_message_is_rejected(registry, transport, pipeline, two_users) -> None:
    relay = MessageRelay(registry, MessageLog(), transport, pipeline, max_length=5)
    with pytest.raises(ValidationFailed):
        relay.send_message("sid-alice", {"content": "too long"})


def test_message_written_to_primary_and_backup(message_relay, db, backup, two_users) -> None:
    with mock.patch("homies_blobstore.requests.put") as put:
        msg = message_relay.send_message("sid-alice", {"content": "hi", "encrypted": True})

    put.assert_not_called()
    assert db.list_messages() == [msg]
    assert backup.load_latest() == [msg]


def test_storage_failure_does_not_block_broadcast(message_relay, transport, db, backup, two_users,
                                                  monkeypatch) -> None:
    monkeypatch.setattr(db, "insert_message", _fail)
    with mock.patch("homies_blobstore.requests.put", side_effect=requests.ConnectionError("down")):
        msg = message_relay.send_message("sid-alice", {"content": "still here"})

    for sid in ("sid-alice", "sid-bob"):
        assert ("new-message", msg) in transport.received(sid)
    assert backup.load_latest() == [msg]


def test_secondary_store_mirrors_log_when_primary_fails(pipeline, db, monkeypatch) -> None:
    monkeypatch.setattr(db, "insert_message", _fail)
    message = {"id": "m1", "sender": "alice", "content": "hi", "timestamp": 1}

    with mock.patch("homies_blobstore.requests.put") as put:
        put.return_value.status_code = 200
        result = pipeline.persist(message, [message])

    assert result == {"primary": False, "secondary": True, "backup": True}
    body = json.loads(put.call_args[1]["data"].decode("utf-8"))
    assert body == {"messages": [message]}


def test_backup_failure_is_swallowed(pipeline, backup, monkeypatch) -> None:
    monkeypatch.setattr(backup, "snapshot", mock.Mock(side_effect=OSError("disk full")))
    message = {"id": "m1", "sender": "alice", "content": "hi", "timestamp": 1}

    result = pipeline.persist(message, [message])

    assert result == {"primary": True, "secondary": False, "backup": False}


def test_persistence_runs_after_broadcast(registry, transport, pipeline, two_users) -> None:
    scheduled = []
    relay = MessageRelay(registry, MessageLog(), transport, pipeline,
                         spawn=lambda fn, *args: scheduled.append((fn, args)))

    msg = relay.send_message("sid-alice", {"content": "later"})

    assert transport.named("new-message")
    assert len(scheduled) == 1
    fn, (message, snapshot) = scheduled[0]
    assert message is msg and snapshot == [msg]
    assert pipeline.db.list_messages() == []
    fn(message, snapshot)
    assert pipeline.db.list_messages() == [msg]


def test_history_filters_by_channel(message_relay, transport, two_users) -> None:
    a = message_relay.send_message("sid-alice", {"content": "general chat"})
    b = message_relay.send_message("sid-bob", {"content": "side chat", "channel": "random"})

    full = message_relay.get_history("sid-bob")
    random_only = message_relay.get_history("sid-bob", {"channel": "random"})

    assert full == {"channel": None, "messages": [a, b]}
    assert random_only == {"channel": "random", "messages": [b]}
    assert transport.received("sid-bob")[-1] == ("message-history", random_only)
    assert ("message-history", full) not in transport.received("sid-alice")


def test_rehydrate_prefers_primary_store(message_relay, db, backup) -> None:
    stored = {"id": "p1", "sender": "alice", "senderId": 1, "content": "from db",
              "encrypted": False, "channel": "general", "timestamp": 10}
    db.insert_message(stored)
    backup.snapshot([{"id": "b1", "content": "from backup"}])

    assert message_relay.rehydrate() == 1
    assert message_relay.log.list() == [stored]


def test_rehydrate_falls_back_to_latest_backup(message_relay, backup, db, monkeypatch) -> None:
    backup.snapshot([{"id": "b1", "content": "old", "timestamp": 1}])
    backup.snapshot([{"id": "b1", "content": "old", "timestamp": 1}, {"id": "b2", "content": "new", "timestamp": 2}])
    monkeypatch.setattr(db, "list_messages", _fail)

    assert message_relay.rehydrate() == 2
    assert message_relay.log.last_timestamp == 2


def test_rehydrate_uses_secondary_store_last(pipeline) -> None:
    blob = json.dumps({"messages": [{"id": "s1", "content": "from blob", "timestamp": 3}]}).encode()
    with mock.patch("homies_blobstore.requests.get") as get:
        get.return_value.status_code = 200
        get.return_value.content = blob
        assert pipeline.rehydrate() == [{"id": "s1", "content": "from blob", "timestamp": 3}]


def test_rehydrate_empty_when_every_tier_is_empty(pipeline) -> None:
    with mock.patch("homies_blobstore.requests.get") as get:
        get.return_value.status_code = 404
        assert pipeline.rehydrate() == []


def test_temp_id_is_echoed_on_broadcast_only(message_relay, transport, db, two_users) -> None:
    msg = message_relay.send_message("sid-alice", {"content": "hi", "tempId": "tmp-1"})

    assert ("new-message", dict(msg, tempId="tmp-1")) in transport.received("sid-alice")
    assert "tempId" not in msg
    assert message_relay.log.list() == [msg]
    assert db.list_messages() == [msg]


def test_stale_log_copy_never_replaces_newer_one(pipeline, backup, db, monkeypatch) -> None:
    monkeypatch.setattr(db, "insert_message", _fail)
    first = {"id": "m1", "sender": "alice", "content": "one", "timestamp": 1}
    second = {"id": "m2", "sender": "bob", "content": "two", "timestamp": 2}

    with mock.patch("homies_blobstore.requests.put") as put:
        put.return_value.status_code = 200
        assert pipeline.persist(second, [first, second])["backup"] is True
        assert pipeline.persist(first, [first]) == {"primary": False, "secondary": False, "backup": False}

    assert put.call_count == 1
    assert backup.load_latest() == [first, second]


def test_slow_background_write_does_not_leave_older_backup_newest(registry, transport, pipeline, backup, db,
                                                                  two_users, monkeypatch) -> None:
    monkeypatch.setattr(db, "insert_message", _fail)
    writes = []

    def slow_first_write(key, data):
        writes.append(key)
        if len(writes) == 1:
            time.sleep(0.3)

    monkeypatch.setattr(pipeline.blob_store, "write_blob", slow_first_write)
    threads = []

    def spawn(fn, *args):
        t = threading.Thread(target=fn, args=args)
        threads.append(t)
        t.start()

    relay = MessageRelay(registry, MessageLog(), transport, pipeline, spawn=spawn)
    relay.send_message("sid-alice", {"content": "one"})
    relay.send_message("sid-bob", {"content": "two"})
    for t in threads:
        t.join()

    assert [m["content"] for m in backup.load_latest()] == ["one", "two"]


def _stored(i):
    return {"id": f"old{i}", "sender": "alice", "senderId": 1, "content": f"old {i}",
            "encrypted": False, "channel": "general", "timestamp": i}


def test_backup_history_survives_a_second_restart(registry, transport, pipeline, db, blob_store,
                                                  backup) -> None:
    old = [_stored(1), _stored(2)]
    backup.snapshot(old)

    first = MessageRelay(registry, MessageLog(), transport, pipeline)
    assert first.rehydrate() == 2
    assert db.list_messages() == old
    registry.register("sid-alice", "alice", user_id=1)
    new = first.send_message("sid-alice", {"content": "after restart"})

    second = MessageRelay(registry, MessageLog(), transport, PersistencePipeline(db, blob_store, backup))
    assert second.rehydrate() == 3
    assert second.log.list() == old + [new]


def test_secondary_store_history_is_restored_to_primary(pipeline, db) -> None:
    blob = json.dumps({"messages": [_stored(1), {"id": "broken"}]}).encode()
    with mock.patch("homies_blobstore.requests.get") as get:
        get.return_value.status_code = 200
        get.return_value.content = blob
        pipeline.rehydrate()

    assert db.list_messages() == [_stored(1)]
