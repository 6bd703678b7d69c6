"""
assistant/session.py — Conversation Session Record and Snapshot

ConversationSession is the single mutable record behind an open assistant
panel. Only the ConversationController writes to it; the UI reads the
frozen SessionSnapshot produced after every processed event.

Phases
------
    IDLE              — no turn in progress (also: no session at all)
    CONNECTING        — transport opening, nothing else active yet
    LISTENING         — capture cycle active, no reply pending
    AWAITING_RESPONSE — final transcript sent, reply pending
    SPEAKING          — reply being played back
    CLOSED            — session torn down
    ERROR             — display-only overlay: never stored in `phase`,
                        reported by SessionSnapshot.display_phase while
                        last_error is set
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional


class Phase(str, Enum):
    IDLE              = "idle"
    CONNECTING        = "connecting"
    LISTENING         = "listening"
    AWAITING_RESPONSE = "awaiting_response"
    SPEAKING          = "speaking"
    ERROR             = "error"
    CLOSED            = "closed"


class ConnectionStatus(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTED    = "connected"


@dataclass
class ConversationSession:
    """One open assistant panel. Destroyed on close."""

    session_id: str
    client_id: str
    phase: Phase = Phase.CONNECTING
    transcript: str = ""
    auto_listen_enabled: bool = True
    connection_status: ConnectionStatus = ConnectionStatus.DISCONNECTED
    last_error: Optional[str] = None

    # Activity flags, mirrored from adapter events
    listening: bool = False
    utterance_id: Optional[int] = None
    sent_this_cycle: bool = False

    # Resources acquired for this session; released exactly once on close
    capture: Any = None
    playback: Any = None
    transport: Any = None
    subscriptions: list = field(default_factory=list)
    timers: list = field(default_factory=list)

    @property
    def connected(self) -> bool:
        return self.connection_status is ConnectionStatus.CONNECTED

    @property
    def speaking(self) -> bool:
        return self.utterance_id is not None


@dataclass(frozen=True)
class SessionSnapshot:
    """Read-only view of the session handed to the UI projection."""

    phase: Phase
    transcript: str = ""
    connection_status: ConnectionStatus = ConnectionStatus.DISCONNECTED
    last_error: Optional[str] = None
    auto_listen_enabled: bool = True
    is_open: bool = False
    is_listening: bool = False
    is_speaking: bool = False
    capture_supported: bool = True

    @classmethod
    def closed(
        cls,
        phase: Phase = Phase.IDLE,
        capture_supported: bool = True,
        last_error: Optional[str] = None,
    ) -> "SessionSnapshot":
        return cls(phase=phase, capture_supported=capture_supported, last_error=last_error)

    @classmethod
    def of(cls, session: ConversationSession, capture_supported: bool = True) -> "SessionSnapshot":
        return cls(
            phase=session.phase,
            transcript=session.transcript,
            connection_status=session.connection_status,
            last_error=session.last_error,
            auto_listen_enabled=session.auto_listen_enabled,
            is_open=True,
            is_listening=session.listening,
            is_speaking=session.speaking,
            capture_supported=capture_supported,
        )

    @property
    def is_connected(self) -> bool:
        return self.connection_status is ConnectionStatus.CONNECTED

    @property
    def display_phase(self) -> Phase:
        """Phase with the error overlay applied."""
        if self.is_open and self.last_error:
            return Phase.ERROR
        return self.phase

    @property
    def status_line(self) -> str:
        """The one-line panel text: error, transcript, or what we're doing."""
        if self.last_error:
            return f"Error: {self.last_error}"
        if self.transcript:
            return self.transcript
        if self.is_listening:
            return "Listening..."
        if self.phase is Phase.AWAITING_RESPONSE:
            return "Thinking..."
        if self.is_connected:
            return "Ready to listen..."
        return "Connecting..."
