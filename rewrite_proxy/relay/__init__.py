from .connection import ConnectionState, RelayConnection, generate_connection_id
from .signaling import WebRTCSignaling
from .upstream import ChannelFactory, EchoUpstreamChannel, UpstreamChannel
from .websocket_relay import WebSocketRelay

__all__ = [
    "ConnectionState",
    "RelayConnection",
    "generate_connection_id",
    "WebRTCSignaling",
    "ChannelFactory",
    "EchoUpstreamChannel",
    "UpstreamChannel",
    "WebSocketRelay",
]
