"""
exceptions.py — Folio Assistant Unified Error Hierarchy

All assistant-specific exceptions live here. Adapters raise typed
subclasses of AssistantError at their call boundaries; the
ConversationController catches them and turns them into the session's
last_error field. Nothing here is ever allowed to tear a session down.

Import from here, not from individual modules:
    from exceptions import TransportConnectError, CaptureUnsupportedError

Hierarchy:
    AssistantError
    ├── CaptureError
    │   ├── CaptureUnsupportedError
    │   ├── CaptureStartError
    │   └── CaptureNoSpeechError
    ├── PlaybackError
    └── TransportError
        ├── TransportConnectError
        └── TransportNotConnectedError
"""

from __future__ import annotations


# ─────────────────────────────────────────────────────────────────────────────
# Root
# ─────────────────────────────────────────────────────────────────────────────

class AssistantError(Exception):
    """Base class for all assistant exceptions."""


# ─────────────────────────────────────────────────────────────────────────────
# Speech capture
# ─────────────────────────────────────────────────────────────────────────────

class CaptureError(AssistantError):
    """Base for speech-to-text capture errors."""


class CaptureUnsupportedError(CaptureError):
    """The platform has no usable speech-to-text capability."""


class CaptureStartError(CaptureError):
    """A capture cycle could not be started."""


class CaptureNoSpeechError(CaptureError):
    """A capture cycle heard nothing before its no-speech timeout."""


# ─────────────────────────────────────────────────────────────────────────────
# Speech playback
# ─────────────────────────────────────────────────────────────────────────────

class PlaybackError(AssistantError):
    """Text-to-speech synthesis or audio playback failed."""


# ─────────────────────────────────────────────────────────────────────────────
# Transport
# ─────────────────────────────────────────────────────────────────────────────

class TransportError(AssistantError):
    """Base for transport channel errors."""


class TransportConnectError(TransportError):
    """The channel could not be opened (bad address, refused, handshake)."""

    def __init__(self, address: str, message: str = "") -> None:
        self.address = address
        super().__init__(message or f"Could not connect to '{address}'")


class TransportNotConnectedError(TransportError):
    """send() was called while the channel is not open."""


__all__ = [
    "AssistantError",
    # Capture
    "CaptureError",
    "CaptureUnsupportedError",
    "CaptureStartError",
    "CaptureNoSpeechError",
    # Playback
    "PlaybackError",
    # Transport
    "TransportError",
    "TransportConnectError",
    "TransportNotConnectedError",
]
