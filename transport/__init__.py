"""
transport/ — Duplex channel to the remote assistant service

protocol.py holds the wire format (voice_input out, reply text in);
channel.py runs it over a WebSocket.
"""

from transport.protocol import MessageType, VoiceInput, decode_response, encode_voice_input
from transport.channel import WebSocketChannel

__all__ = [
    "MessageType",
    "VoiceInput",
    "decode_response",
    "encode_voice_input",
    "WebSocketChannel",
]
