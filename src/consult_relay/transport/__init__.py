from consult_relay.transport.base import Transport, TransportFactory
from consult_relay.transport.channel import BackoffPolicy, Channel, ConnectionManager
from consult_relay.transport.local import LocalLink, LocalTransport
from consult_relay.transport.socketio_transport import SocketIOTransport

__all__ = [
    "BackoffPolicy",
    "Channel",
    "ConnectionManager",
    "LocalLink",
    "LocalTransport",
    "SocketIOTransport",
    "Transport",
    "TransportFactory",
]
