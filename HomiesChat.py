import functools
import time

from flask import Flask, current_app, jsonify, request
from flask_socketio import SocketIO, disconnect, emit

import homies_config
from homies_auth import Authenticator
from homies_backup import BackupWriter
from homies_blobstore import BlobStore
from homies_db import Database
from homies_errors import AuthError, RelayError
from homies_messages import MessageLog, MessageRelay, PersistencePipeline
from homies_presence import PresenceRegistry
from homies_signaling import SignalingRelay
from homies_status import StatusBroadcaster
from homies_transport import SocketIOTransport


class Relay:
    """Process-wide relay state for one app: presence, message log, calls and storage tiers."""

    def __init__(self, config, socketio):
        self.db = Database(config["DB_PATH"])
        self.db.init_db()

        self.registry = PresenceRegistry()
        self.transport = SocketIOTransport(socketio)
        self.backup = BackupWriter(config["BACKUP_DIR"], config["BACKUP_PREFIX"], config["BACKUP_KEEP"])
        self.blob_store = BlobStore(config["BLOB_STORE_URL"], config["BLOB_STORE_TOKEN"],
                                    config["BLOB_STORE_TIMEOUT"])
        self.pipeline = PersistencePipeline(self.db, self.blob_store, self.backup, config["BLOB_STORE_KEY"])

        spawn = None
        if config["PERSIST_IN_BACKGROUND"]:
            spawn = socketio.start_background_task

        self.auth = Authenticator(self.db, config["SECRET_KEY"], config["SESSION_TOKEN_MAX_AGE"])
        self.messages = MessageRelay(self.registry, MessageLog(), self.transport, self.pipeline, spawn=spawn,
                                     default_channel=config["DEFAULT_CHANNEL"],
                                     max_length=config["MAX_MESSAGE_LENGTH"])
        self.status = StatusBroadcaster(self.registry, self.transport, self.db)
        self.signaling = SignalingRelay(self.registry, self.transport)


def _cors_origins(value):
    if not value or value == "*":
        return "*"
    return [o.strip() for o in value.split(",") if o.strip()]


def create_app(overrides=None):
    app = Flask(__name__)
    app.config.update(homies_config.defaults())
    if overrides:
        app.config.update(overrides)
    app.secret_key = app.config["SECRET_KEY"]

    # SocketIO
    socketio = SocketIO(app, cors_allowed_origins=_cors_origins(app.config["CORS_ALLOWED_ORIGINS"]),
                        async_mode=app.config["SOCKETIO_ASYNC_MODE"])

    relay = Relay(app.config, socketio)
    app.extensions["homies"] = relay
    loaded = relay.messages.rehydrate()
    app.logger.info("Relay ready with %d stored messages", loaded)

    register_socket_handlers(socketio, relay)
    register_routes(app, relay)
    return app, socketio


# --- Socket event handlers ---

def relay_event(fn):
    """Send RelayErrors back to the caller only; log anything unexpected."""
    @functools.wraps(fn)
    def wrapper(*args):
        try:
            return fn(*args)
        except RelayError as e:
            current_app.logger.info("%s rejected for %s: %s", fn.__name__, request.sid, e.message)
            emit("error", e.to_payload(), to=request.sid)
        except Exception:
            current_app.logger.exception("%s failed for %s", fn.__name__, request.sid)
            emit("error", {"message": "Internal server error", "code": "SERVER_ERROR"}, to=request.sid)
    return wrapper


def register_socket_handlers(socketio, relay):

    def establish_session(identity):
        """Register the current socket as ``identity``; evict any older connection of the same user."""
        sid = request.sid
        switched_from = relay.registry.resolve_user(sid)
        previous = relay.registry.register(sid, identity.username, identity.user_id)
        if switched_from and switched_from != identity.username:
            relay.signaling.user_disconnected(switched_from)
            relay.status.user_left(switched_from)
        if previous:
            current_app.logger.info("Session of %s moved from %s to %s", identity.username, previous, sid)
            relay.transport.send(previous, "session-replaced",
                                 {"message": "You signed in from another connection."})
            disconnect(sid=previous, namespace="/")
            # calls of the replaced connection cannot continue on this one
            relay.signaling.user_disconnected(identity.username)
        relay.status.user_joined(sid, identity.username)
        current_app.logger.info("✅ Socket registered for user: %s", identity.username)
        return {
            "success": True,
            "user": {"id": identity.user_id, "username": identity.username,
                     "status": relay.registry.status(identity.username)},
            "token": relay.auth.issue_token(identity),
        }

    @socketio.on("connect")
    def on_connect(auth=None):
        current_app.logger.info("Client connected: %s", request.sid)
        if isinstance(auth, dict) and auth.get("token"):
            try:
                establish_session(relay.auth.authenticate({"token": auth["token"]}))
            except AuthError as e:
                current_app.logger.info("Token on connect rejected for %s: %s", request.sid, e.message)

    @socketio.on("disconnect")
    def on_disconnect(reason=None):
        sid = request.sid
        username = relay.registry.unregister(sid)
        if username is None:
            current_app.logger.debug("Socket disconnected (unmapped sid: %s)", sid)
            return
        relay.signaling.user_disconnected(username)
        relay.status.user_left(username)
        current_app.logger.info("❌ User disconnected: %s (%s)", username, sid)

    def on_authenticate(data=None):
        try:
            identity = relay.auth.authenticate(data)
        except AuthError as e:
            current_app.logger.info("Login rejected for %s: %s", request.sid, e.message)
            return {"success": False, "message": e.message}
        try:
            return establish_session(identity)
        except Exception:
            current_app.logger.exception("authenticate failed for %s", request.sid)
            return {"success": False, "message": "Server error during login"}

    socketio.on_event("authenticate", on_authenticate)
    socketio.on_event("login-user", on_authenticate)

    @socketio.on("register-user")
    def on_register_user(data=None):
        data = data if isinstance(data, dict) else {}
        try:
            identity = relay.auth.register_user(data.get("username"), data.get("password"), data.get("email"))
        except AuthError as e:
            return {"success": False, "message": e.message}
        current_app.logger.info("User registered: %s", identity.username)
        return {"success": True, "user": {"id": identity.user_id, "username": identity.username}}

    # ---------- messages ----------
    @relay_event
    def on_send_message(data=None):
        relay.messages.send_message(request.sid, data)

    socketio.on_event("send-message", on_send_message)
    socketio.on_event("chat-message", on_send_message)

    @socketio.on("get-messages")
    @relay_event
    def on_get_messages(data=None):
        relay.messages.get_history(request.sid, data)

    # ---------- presence / typing ----------
    @socketio.on("typing")
    @relay_event
    def on_typing(data=None):
        relay.status.typing_start(request.sid)

    @socketio.on("stop-typing")
    @relay_event
    def on_stop_typing(data=None):
        relay.status.typing_stop(request.sid)

    @socketio.on("status-update")
    @relay_event
    def on_status_update(data=None):
        relay.status.status_update(request.sid, data)

    @socketio.on("keep-alive")
    def on_keep_alive(data=None):
        relay.status.keep_alive(request.sid)

    @socketio.on("get-active-users")
    @relay_event
    def on_get_active_users(data=None):
        relay.status.active_users(request.sid)

    # ---------- call signaling ----------
    @socketio.on("call-offer")
    @relay_event
    def on_call_offer(data=None):
        relay.signaling.call_offer(request.sid, data)

    @socketio.on("call-answer")
    @relay_event
    def on_call_answer(data=None):
        relay.signaling.call_answer(request.sid, data)

    @socketio.on("ice-candidate")
    @relay_event
    def on_ice_candidate(data=None):
        relay.signaling.ice_candidate(request.sid, data)

    @socketio.on("call-declined")
    @relay_event
    def on_call_declined(data=None):
        relay.signaling.call_declined(request.sid, data)

    @socketio.on("end-call")
    @relay_event
    def on_end_call(data=None):
        relay.signaling.end_call(request.sid, data)


# --- HTTP routes ---

def register_routes(app, relay):

    @app.route("/health")
    def health():
        return jsonify({
            "status": "ok",
            "online": len(relay.registry),
            "messages": len(relay.messages.log),
            "time": int(time.time()),
        })

    @app.route("/messages")
    def messages():
        channel = request.args.get("channel") or None
        return jsonify({"channel": channel, "messages": relay.messages.log.list(channel)})

    @app.route("/api/online_users")
    def online_users():
        return jsonify({"users": relay.registry.snapshot()})
