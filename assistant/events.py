"""
assistant/events.py — Controller Input Events

Everything the ConversationController reacts to is one of these frozen
dataclasses, delivered through a single queue and processed in arrival
order:

    adapter events   — CaptureStarted, CaptureResult, PlaybackEnded, ...
    user intents     — OpenAssistant, StopMic, StopSpeaking, Reconnect, ...
    timer events     — CaptureStartDue (fired by the controller's own timers)
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Optional, Union


class CaptureErrorKind(str, Enum):
    """Speech capture failure classes."""

    UNSUPPORTED = "unsupported"
    NO_SPEECH   = "no-speech"
    NETWORK     = "network"
    OTHER       = "other"

    @classmethod
    def from_code(cls, code: str) -> "CaptureErrorKind":
        """Map a platform error code ("no-speech", "network", "aborted", ...)."""
        try:
            return cls(code)
        except ValueError:
            return cls.OTHER


# ─────────────────────────────────────────────────────────────────────────────
# Speech capture
# ─────────────────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class CaptureStarted:
    pass


@dataclass(frozen=True)
class CaptureEnded:
    pass


@dataclass(frozen=True)
class CaptureResult:
    text: str
    is_final: bool = False


@dataclass(frozen=True)
class CaptureFailed:
    kind: CaptureErrorKind
    detail: str = ""


# ─────────────────────────────────────────────────────────────────────────────
# Speech playback
# ─────────────────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class PlaybackEnded:
    utterance_id: int


@dataclass(frozen=True)
class PlaybackFailed:
    utterance_id: int
    detail: str = ""


# ─────────────────────────────────────────────────────────────────────────────
# Transport
# ─────────────────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class TransportOpened:
    pass


@dataclass(frozen=True)
class TransportMessage:
    raw: Union[str, bytes]


@dataclass(frozen=True)
class TransportFailed:
    detail: str = ""


@dataclass(frozen=True)
class TransportClosed:
    code: Optional[int] = None


# ─────────────────────────────────────────────────────────────────────────────
# User intents
# ─────────────────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class OpenAssistant:
    pass


@dataclass(frozen=True)
class CloseAssistant:
    pass


@dataclass(frozen=True)
class StartMic:
    pass


@dataclass(frozen=True)
class StopMic:
    pass


@dataclass(frozen=True)
class StopSpeaking:
    pass


@dataclass(frozen=True)
class Reconnect:
    pass


# ─────────────────────────────────────────────────────────────────────────────
# Timers
# ─────────────────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class CaptureStartDue:
    """A delayed capture start, scoped to the session that scheduled it."""
    session_id: str


AdapterEvent = Union[
    CaptureStarted, CaptureEnded, CaptureResult, CaptureFailed,
    PlaybackEnded, PlaybackFailed,
    TransportOpened, TransportMessage, TransportFailed, TransportClosed,
]

Intent = Union[OpenAssistant, CloseAssistant, StartMic, StopMic, StopSpeaking, Reconnect]

Event = Union[AdapterEvent, Intent, CaptureStartDue]
