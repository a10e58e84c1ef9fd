import logging

from homies_errors import NotAuthenticated, ValidationFailed
from homies_presence import STATUSES

logger = logging.getLogger(__name__)


class StatusBroadcaster:
    """Ephemeral presence traffic: joins/leaves, typing and status changes. Nothing here is stored in the log."""

    def __init__(self, registry, transport, db=None):
        self.registry = registry
        self.transport = transport
        self.db = db

    def _username(self, sid):
        username = self.registry.resolve_user(sid)
        if username is None:
            raise NotAuthenticated()
        return username

    def _record_status(self, username, status):
        if self.db is None:
            return
        try:
            self.db.update_user_status(username, status)
        except Exception:
            logger.exception("Could not store status %s for %s", status, username)

    def broadcast_snapshot(self):
        self.transport.broadcast("user-status-update", self.registry.snapshot())

    # ---------- presence lifecycle ----------
    def user_joined(self, sid, username):
        self.transport.broadcast("user-joined", {"username": username}, skip=sid)
        self.broadcast_snapshot()
        self._record_status(username, "online")

    def user_left(self, username):
        self.transport.broadcast("user-left", {"username": username})
        self.broadcast_snapshot()
        self._record_status(username, "offline")

    # ---------- typing ----------
    def typing_start(self, sid):
        username = self.registry.resolve_user(sid)
        if username is None:
            return False
        self.transport.broadcast("user-typing", {"username": username}, skip=sid)
        return True

    def typing_stop(self, sid):
        username = self.registry.resolve_user(sid)
        if username is None:
            return False
        self.transport.broadcast("user-stopped-typing", {"username": username}, skip=sid)
        return True

    # ---------- status ----------
    def status_update(self, sid, payload):
        username = self._username(sid)
        status = payload.get("status") if isinstance(payload, dict) else None
        if status not in STATUSES:
            raise ValidationFailed(f"Invalid status value, expected one of: {', '.join(STATUSES)}")

        self.registry.set_status(username, status)
        change = {"username": username, "userId": self.registry.user_id(username), "status": status}
        self.transport.broadcast("user-status-change", change, skip=sid)
        logger.info("Status of %s is now %s", username, status)
        self._record_status(username, status)
        return change

    def keep_alive(self, sid):
        username = self.registry.resolve_user(sid)
        if username is not None:
            self.registry.touch(username)
        return username

    def active_users(self, sid):
        users = self.registry.online_users()
        self.transport.send(sid, "active-users", users)
        return users
