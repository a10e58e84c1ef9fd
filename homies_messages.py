"""Chat message relay and its storage tiers.

A message is appended to the in-memory log and broadcast to every connection
(sender included) before any storage write happens. Persistence then runs
independently of the broadcast:

* primary store (SQLite) gets the single message;
* if that fails, the whole log is mirrored to the secondary object store;
* a local backup snapshot of the whole log is written every time.

Writes may run on concurrent background tasks. A log copy that is shorter than
one a tier already holds is stale and is skipped for that tier.

A failing tier is logged and never reaches a client.
"""
import json
import logging
import threading
import time
import uuid

from homies_errors import NotAuthenticated, ValidationFailed

logger = logging.getLogger(__name__)


def _run_inline(fn, *args):
    fn(*args)


class MessageLog:
    """Append-only, insertion-ordered message log for the lifetime of the process."""

    def __init__(self):
        self._messages = []

    def append(self, message):
        self._messages.append(message)

    def load(self, messages):
        self._messages = list(messages)

    def list(self, channel=None):
        if channel is None:
            return list(self._messages)
        return [m for m in self._messages if m.get("channel") == channel]

    @property
    def last_timestamp(self):
        return self._messages[-1]["timestamp"] if self._messages else 0

    def __len__(self):
        return len(self._messages)


class PersistencePipeline:

    def __init__(self, db, blob_store, backup, blob_key="messages.json"):
        self.db = db
        self.blob_store = blob_store
        self.backup = backup
        self.blob_key = blob_key
        self._backup_lock = threading.Lock()
        self._mirror_lock = threading.Lock()
        self._backup_len = 0
        self._mirror_len = 0

    def persist(self, message, snapshot):
        """Write ``message`` through the tiers. Returns which tiers succeeded."""
        result = {"primary": False, "secondary": False, "backup": False}

        try:
            self.db.insert_message(message)
            result["primary"] = True
        except Exception:
            logger.exception("Primary store write failed for message %s", message.get("id"))

        if not result["primary"]:
            result["secondary"] = self.mirror(snapshot)

        result["backup"] = self.write_backup(snapshot)
        return result

    def write_backup(self, snapshot):
        with self._backup_lock:
            if len(snapshot) < self._backup_len:
                logger.debug("Skipping stale backup of %d messages", len(snapshot))
                return False
            try:
                self.backup.snapshot(snapshot)
            except Exception:
                logger.exception("Local backup of %d messages failed", len(snapshot))
                return False
            self._backup_len = len(snapshot)
            return True

    def mirror(self, snapshot):
        if self.blob_store is None or not self.blob_store.enabled:
            logger.debug("Secondary store not configured; skipping mirror")
            return False
        with self._mirror_lock:
            if len(snapshot) < self._mirror_len:
                logger.debug("Skipping stale mirror of %d messages", len(snapshot))
                return False
            try:
                data = json.dumps({"messages": snapshot}).encode("utf-8")
                self.blob_store.write_blob(self.blob_key, data)
            except Exception:
                logger.exception("Secondary store mirror failed")
                return False
            self._mirror_len = len(snapshot)
            logger.info("Mirrored %d messages to secondary store", len(snapshot))
            return True

    def rehydrate(self):
        """Messages to start with: primary store, else newest local backup, else secondary store."""
        try:
            messages = self.db.list_messages()
            if messages:
                logger.info("Loaded %d messages from primary store", len(messages))
                return messages
            logger.info("Primary store holds no messages; trying local backup")
        except Exception:
            logger.exception("Primary store load failed; falling back to local backup")

        messages = self.backup.load_latest()
        if messages:
            self.restore_primary(messages)
            return messages

        if self.blob_store is not None and self.blob_store.enabled:
            try:
                data = json.loads(self.blob_store.read_blob(self.blob_key).decode("utf-8"))
                messages = data.get("messages", []) if isinstance(data, dict) else data
                if isinstance(messages, list):
                    logger.info("Loaded %d messages from secondary store", len(messages))
                    self.restore_primary(messages)
                    return messages
            except Exception:
                logger.exception("Secondary store load failed")

        logger.info("No stored messages found, starting with an empty log")
        return []

    def restore_primary(self, messages):
        """Copy history recovered from a fallback tier back into the primary store."""
        restored = 0
        for message in messages:
            try:
                self.db.insert_message(message)
                restored += 1
            except (KeyError, TypeError):
                logger.warning("Skipping malformed stored message %r", message)
            except Exception:
                logger.exception("Primary store restore stopped after %d messages", restored)
                break
        logger.info("Restored %d of %d messages into primary store", restored, len(messages))
        return restored


class MessageRelay:

    def __init__(self, registry, log, transport, pipeline, spawn=None,
                 default_channel="general", max_length=4000, clock=time.time):
        self.registry = registry
        self.log = log
        self.transport = transport
        self.pipeline = pipeline
        self.spawn = spawn or _run_inline
        self.default_channel = default_channel
        self.max_length = max_length
        self.clock = clock

    def _timestamp(self):
        # never behind the last appended message, even if the wall clock steps back
        return max(int(self.clock() * 1000), self.log.last_timestamp)

    def send_message(self, sid, payload):
        username = self.registry.resolve_user(sid)
        if username is None:
            raise NotAuthenticated("You must be logged in to send messages")

        if not isinstance(payload, dict):
            raise ValidationFailed("Invalid message format")
        content = payload.get("content")
        if not isinstance(content, str) or not content.strip():
            raise ValidationFailed("Message content cannot be empty")
        if len(content) > self.max_length:
            raise ValidationFailed(f"Message content exceeds {self.max_length} characters")
        channel = payload.get("channel") or self.default_channel
        if not isinstance(channel, str):
            raise ValidationFailed("Invalid channel")

        message = {
            "id": uuid.uuid4().hex,
            "sender": username,
            "senderId": self.registry.user_id(username),
            "content": content,
            "timestamp": self._timestamp(),
            "encrypted": bool(payload.get("encrypted", False)),
            "channel": channel,
        }
        self.log.append(message)
        snapshot = self.log.list()

        # the sender's own placeholder id rides along on the broadcast only
        temp_id = payload.get("tempId")
        if isinstance(temp_id, str) and temp_id:
            self.transport.broadcast("new-message", dict(message, tempId=temp_id))
        else:
            self.transport.broadcast("new-message", message)
        logger.debug("Message %s from %s broadcast", message["id"], username)

        self.spawn(self.pipeline.persist, message, snapshot)
        return message

    def get_history(self, sid, payload=None):
        channel = None
        if isinstance(payload, dict):
            channel = payload.get("channel") or None
        history = {"channel": channel, "messages": self.log.list(channel)}
        self.transport.send(sid, "message-history", history)
        return history

    def rehydrate(self):
        self.log.load(self.pipeline.rehydrate())
        return len(self.log)
