"""WebRTC call signaling relay.

Offers, answers and ICE candidates are opaque payloads forwarded between two
authenticated users. One call attempt exists per pair of usernames:

    idle --call-offer--> ringing --call-answer--> connected
    ringing --call-declined--> idle
    connected --end-call--> idle

A target that is not connected is a normal outcome, always reported back to the
sender as ``call-error`` (or ``call-ended`` when the peer drops mid-call).
"""
import logging
import time

from homies_errors import NotAuthenticated, ValidationFailed

logger = logging.getLogger(__name__)

IDLE = "idle"
RINGING = "ringing"
CONNECTED = "connected"


def _pair(a, b):
    return frozenset((a, b))


class SignalingRelay:

    def __init__(self, registry, transport, clock=time.time):
        self.registry = registry
        self.transport = transport
        self.clock = clock
        self.calls = {}  # frozenset({caller, callee}) -> call info

    def _sender(self, sid):
        username = self.registry.resolve_user(sid)
        if username is None:
            raise NotAuthenticated("You must be logged in to make calls")
        return username

    def _target(self, sender, payload):
        target = payload.get("target") if isinstance(payload, dict) else None
        if not target or not isinstance(target, str):
            raise ValidationFailed("Missing call target")
        if target == sender:
            raise ValidationFailed("You cannot call yourself")
        return target

    def _call_error(self, sid, target, code, message):
        self.transport.send(sid, "call-error", {"message": message, "code": code, "target": target})

    def _peer_gone(self, sid, sender, target):
        if self.calls.pop(_pair(sender, target), None):
            logger.info("Call %s <-> %s ended: %s is gone", sender, target, target)
        self._call_error(sid, target, "USER_DISCONNECTED", f"User {target} is not available anymore.")

    def state(self, a, b):
        call = self.calls.get(_pair(a, b))
        return call["state"] if call else IDLE

    # ---------- call setup ----------
    def call_offer(self, sid, payload):
        sender = self._sender(sid)
        target = self._target(sender, payload)

        target_sid = self.registry.resolve_connection(target)
        if target_sid is None:
            logger.info("Call offer from %s to offline user %s", sender, target)
            self._call_error(sid, target, "USER_OFFLINE", f"User {target} is offline.")
            return IDLE

        if _pair(sender, target) in self.calls:
            self._call_error(sid, target, "CALL_IN_PROGRESS", f"A call with {target} is already in progress.")
            return self.state(sender, target)

        self.calls[_pair(sender, target)] = {
            "caller": sender, "callee": target, "state": RINGING, "started": self.clock(),
        }
        self.transport.send(target_sid, "call-offer", {
            "offer": payload.get("offer"), "caller": sender, "sender": sender,
        })
        logger.info("Call offer %s -> %s (ringing)", sender, target)
        return RINGING

    def call_answer(self, sid, payload):
        sender = self._sender(sid)
        target = self._target(sender, payload)

        call = self.calls.get(_pair(sender, target))
        if not call or call["state"] != RINGING or call["callee"] != sender:
            self._call_error(sid, target, "NO_ACTIVE_CALL", f"No incoming call from {target} to answer.")
            return self.state(sender, target)

        target_sid = self.registry.resolve_connection(target)
        if target_sid is None:
            self._peer_gone(sid, sender, target)
            return IDLE

        call["state"] = CONNECTED
        self.transport.send(target_sid, "call-answer", {
            "answer": payload.get("answer"), "callee": sender, "sender": sender,
        })
        logger.info("Call %s <-> %s connected", target, sender)
        return CONNECTED

    def ice_candidate(self, sid, payload):
        sender = self._sender(sid)
        target = self._target(sender, payload)

        target_sid = self.registry.resolve_connection(target)
        if target_sid is None:
            self._peer_gone(sid, sender, target)
            return False

        self.transport.send(target_sid, "ice-candidate", {
            "candidate": payload.get("candidate"), "sender": sender,
        })
        logger.debug("ICE candidate %s -> %s", sender, target)
        return True

    # ---------- call teardown ----------
    def call_declined(self, sid, payload):
        sender = self._sender(sid)
        target = self._target(sender, payload)
        self.calls.pop(_pair(sender, target), None)

        target_sid = self.registry.resolve_connection(target)
        if target_sid is None:
            self._call_error(sid, target, "USER_DISCONNECTED", f"User {target} is not available anymore.")
            return IDLE

        self.transport.send(target_sid, "call-declined", {"sender": sender, "reason": payload.get("reason")})
        logger.info("Call from %s declined by %s", target, sender)
        return IDLE

    def end_call(self, sid, payload):
        sender = self._sender(sid)
        target = self._target(sender, payload)
        self.calls.pop(_pair(sender, target), None)

        target_sid = self.registry.resolve_connection(target)
        if target_sid is None:
            self._call_error(sid, target, "USER_DISCONNECTED", f"User {target} is not available anymore.")
            return IDLE

        self.transport.send(target_sid, "call-ended", {"sender": sender, "reason": payload.get("reason")})
        logger.info("Call %s <-> %s ended by %s", sender, target, sender)
        return IDLE

    def user_disconnected(self, username):
        """End every call ``username`` is part of and tell the other side."""
        ended = []
        for key in [k for k in self.calls if username in k]:
            call = self.calls.pop(key)
            peer = call["callee"] if call["caller"] == username else call["caller"]
            ended.append(peer)
            peer_sid = self.registry.resolve_connection(peer)
            if peer_sid is not None:
                self.transport.send(peer_sid, "call-ended", {"sender": username, "reason": "disconnected"})
            logger.info("Call %s <-> %s ended: %s disconnected", username, peer, username)
        return ended
