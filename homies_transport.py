import logging

logger = logging.getLogger(__name__)


class SocketIOTransport:
    """The two outbound primitives the relay core uses, on top of Flask-SocketIO."""

    def __init__(self, socketio, namespace="/"):
        self.socketio = socketio
        self.namespace = namespace

    def send(self, sid, event, data):
        """Emit ``event`` to one connection."""
        self.socketio.emit(event, data, to=sid, namespace=self.namespace)

    def broadcast(self, event, data, skip=None):
        """Emit ``event`` to every connection, optionally skipping the originator."""
        self.socketio.emit(event, data, namespace=self.namespace, skip_sid=skip)
