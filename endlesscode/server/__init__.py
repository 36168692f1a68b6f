"""WebSocket/HTTP surface: wire protocol, multiplexer and aiohttp app."""
from .multiplexer import ConnectionMultiplexer
from .protocol import decode_client_message, encode_server_message
from .server import EndlessCodeServer

__all__ = [
    "ConnectionMultiplexer",
    "EndlessCodeServer",
    "decode_client_message",
    "encode_server_message",
]
