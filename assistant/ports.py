"""
assistant/ports.py — Capability Interfaces for the Conversation Controller

The controller never touches a microphone, speaker or socket directly. It
is handed factories that build one adapter of each kind per session, each
wired to its own Subscription. Tests substitute deterministic fakes.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Callable, Optional, Protocol

from assistant.events import Event

if TYPE_CHECKING:
    from transport.protocol import VoiceInput

EventSink = Callable[[Event], None]


@dataclass(frozen=True)
class VoiceSelector:
    """Preferred playback voice, matched on name and locale together."""
    name: str
    locale: str


class SpeechCapture(Protocol):
    """Speech-to-text: one capture cycle at a time."""

    supported: bool

    @property
    def active(self) -> bool: ...

    def start(self) -> None:
        """Begin a capture cycle. No-op while one is already active."""

    def stop(self) -> None:
        """End the current cycle. Idempotent."""


class SpeechPlayback(Protocol):
    """Text-to-speech: a single utterance at a time, never queued."""

    @property
    def speaking(self) -> bool: ...

    def speak(self, text: str, voice: Optional["VoiceSelector"] = None) -> int:
        """Cancel whatever is playing, start `text`, return its utterance id."""

    def cancel(self) -> None:
        """Stop playback immediately. Idempotent."""


class TransportChannel(Protocol):
    """Duplex message channel to the assistant service."""

    @property
    def is_open(self) -> bool: ...

    def open(self, address: str) -> None: ...

    def send(self, payload: "VoiceInput") -> None:
        """Transmit one message, degrading to raw text if it cannot be encoded."""

    def close(self) -> None:
        """Close gracefully. Idempotent, safe if never opened."""


CaptureFactory   = Callable[[EventSink], SpeechCapture]
PlaybackFactory  = Callable[[EventSink], SpeechPlayback]
TransportFactory = Callable[[EventSink], TransportChannel]


# ─────────────────────────────────────────────────────────────────────────────
# Subscription: scoped event delivery from one adapter
# ─────────────────────────────────────────────────────────────────────────────

class Subscription:
    """
    The event sink handed to one adapter instance.

    While active, events are forwarded to the controller queue tagged with
    this subscription. release() drops everything emitted afterwards, so an
    adapter that fires late (a socket closing after the session is gone)
    can never mutate a newer session.
    """

    def __init__(self, deliver: Callable[["Subscription", Event], None], name: str) -> None:
        self._deliver = deliver
        self.name = name
        self.active = True

    def __call__(self, event: Event) -> None:
        if self.active:
            self._deliver(self, event)

    def release(self) -> None:
        self.active = False

    def __repr__(self) -> str:
        state = "active" if self.active else "released"
        return f"<Subscription {self.name} {state}>"


# ─────────────────────────────────────────────────────────────────────────────
# Timer scheduling
# ─────────────────────────────────────────────────────────────────────────────

class TimerHandle(Protocol):
    def cancel(self) -> Any: ...


class Scheduler(Protocol):
    def call_later(self, delay: float, callback: Callable[[], None]) -> TimerHandle: ...


class LoopScheduler:
    """Schedules on the running asyncio loop."""

    def call_later(self, delay: float, callback: Callable[[], None]) -> asyncio.TimerHandle:
        return asyncio.get_running_loop().call_later(delay, callback)
