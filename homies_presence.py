import time

STATUSES = ("online", "away", "busy", "offline")


class PresenceRegistry:
    """Who is online right now: username <-> connection id, plus status and last seen.

    Both maps are updated together in every mutating call. Callers treat ``None``
    from a lookup as "offline" / "not authenticated".
    """

    def __init__(self, clock=time.time):
        self._clock = clock
        self._sid_by_user = {}   # username -> sid
        self._user_by_sid = {}   # sid -> username
        self._user_ids = {}      # username -> user id
        self._status = {}        # username -> status
        self._last_seen = {}     # username -> epoch millis

    def _now(self):
        return int(self._clock() * 1000)

    def register(self, sid, username, user_id=None):
        """Map ``sid`` to ``username``. Returns the sid this replaced, if any."""
        previous_sid = self._sid_by_user.get(username)
        if previous_sid == sid:
            previous_sid = None
        elif previous_sid is not None:
            self._user_by_sid.pop(previous_sid, None)

        # a connection re-authenticating under another name drops its old entry
        old_user = self._user_by_sid.get(sid)
        if old_user is not None and old_user != username:
            self._sid_by_user.pop(old_user, None)
            self._status.pop(old_user, None)

        self._sid_by_user[username] = sid
        self._user_by_sid[sid] = username
        if user_id is not None:
            self._user_ids[username] = user_id
        self._status[username] = "online"
        self._last_seen[username] = self._now()
        return previous_sid

    def unregister(self, sid):
        """Remove ``sid``; returns the username it belonged to, or None if not found."""
        username = self._user_by_sid.pop(sid, None)
        if username is None:
            return None
        if self._sid_by_user.get(username) == sid:
            del self._sid_by_user[username]
        self._status.pop(username, None)
        self._last_seen[username] = self._now()
        return username

    def resolve_connection(self, username):
        if not username:
            return None
        return self._sid_by_user.get(username)

    def resolve_user(self, sid):
        return self._user_by_sid.get(sid)

    def user_id(self, username):
        return self._user_ids.get(username)

    def status(self, username):
        return self._status.get(username, "offline")

    def last_seen(self, username):
        return self._last_seen.get(username)

    def set_status(self, username, status):
        if status not in STATUSES:
            raise ValueError(f"unknown status {status!r}")
        if username not in self._sid_by_user:
            return False
        self._status[username] = status
        self._last_seen[username] = self._now()
        return True

    def touch(self, username):
        if username in self._sid_by_user:
            self._last_seen[username] = self._now()

    def online_users(self):
        return list(self._sid_by_user)

    def snapshot(self):
        return [{"username": u, "status": self._status.get(u, "online"), "lastSeen": self._last_seen.get(u)}
                for u in self._sid_by_user]

    def __len__(self):
        return len(self._sid_by_user)

    def __contains__(self, username):
        return username in self._sid_by_user
