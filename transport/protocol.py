"""
transport/protocol.py — Assistant WebSocket Message Protocol

Wire format between the voice panel and the remote assistant service.

Outbound (client → service), one JSON object per final transcript:
    {"type": "voice_input", "message": "<text>", "timestamp": <epoch-ms>}
If structured encoding fails the raw text is sent instead.

Inbound (service → client): parsed as JSON; the spoken reply is the first
non-empty of the `message`, `text`, `response` fields. Anything that does
not parse, or parses without one of those fields, is spoken verbatim.
"""

from __future__ import annotations

import json
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, Union

from observability.logger import get_logger

log = get_logger(__name__)


# ─────────────────────────────────────────────────────────────────────────────
# Constants
# ─────────────────────────────────────────────────────────────────────────────

CLOSE_NORMAL   = 1000
CLOSE_ABNORMAL = 1006   # no close frame received (dropped / refused)

RESPONSE_FIELDS: tuple[str, ...] = ("message", "text", "response")


class MessageType(str, Enum):
    """Message types the panel sends."""

    VOICE_INPUT = "voice_input"


def now_ms() -> int:
    """Milliseconds since the epoch, as the service expects timestamps."""
    return int(time.time() * 1000)


# ─────────────────────────────────────────────────────────────────────────────
# Outbound
# ─────────────────────────────────────────────────────────────────────────────

@dataclass
class VoiceInput:
    """A final transcript on its way to the assistant service."""
    message: str
    timestamp: int = field(default_factory=now_ms)
    type: str = MessageType.VOICE_INPUT.value

    def to_json(self) -> str:
        return json.dumps(
            {"type": self.type, "message": self.message, "timestamp": self.timestamp}
        )


def encode_voice_input(payload: VoiceInput) -> str:
    """
    Encode a transcript for the wire.

    Falls back to the raw text when JSON encoding fails. The fallback is a
    degraded path, not an error: it is logged at debug level only.
    """
    try:
        return payload.to_json()
    except (TypeError, ValueError) as e:
        log.debug("protocol.encode_fallback", error=str(e))
        return str(payload.message)


# ─────────────────────────────────────────────────────────────────────────────
# Inbound
# ─────────────────────────────────────────────────────────────────────────────

def decode_response(raw: Union[str, bytes]) -> str:
    """Extract the text to speak from one inbound frame."""
    if isinstance(raw, (bytes, bytearray)):
        text = bytes(raw).decode("utf-8", errors="replace")
    else:
        text = str(raw)

    try:
        data = json.loads(text)
    except ValueError:
        return text

    if isinstance(data, dict):
        for key in RESPONSE_FIELDS:
            value = data.get(key)
            if value:
                return value if isinstance(value, str) else str(value)
        return text
    if isinstance(data, str):
        return data
    return text


# ─────────────────────────────────────────────────────────────────────────────
# Addressing
# ─────────────────────────────────────────────────────────────────────────────

def new_client_id(prefix: str = "client_") -> str:
    """Opaque per-session identifier, e.g. ``client_3f9a1c07b``."""
    return f"{prefix}{uuid.uuid4().hex[:9]}"


def build_address(base_url: str, client_id: str) -> str:
    """Endpoint for one session: the client id appended to the base URL."""
    return f"{base_url.rstrip('/')}/{client_id}"


def is_normal_close(code: Optional[int]) -> bool:
    return code == CLOSE_NORMAL
