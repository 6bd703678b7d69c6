"""
assistant/controller.py — Conversation Controller (turn-taking state machine)

Owns the single ConversationSession behind the assistant panel and drives
turn-taking between three independent event sources:

    SpeechCapture   — started / ended / result(text, is_final) / failed(kind)
    SpeechPlayback  — ended(utterance) / failed(utterance)
    TransportChannel— opened / message(raw) / failed / closed(code)

plus user intents from the UI (open, close, mic start/stop, stop speaking,
reconnect) and the controller's own delayed capture starts.

Concurrency model
-----------------
Everything arrives on one asyncio.Queue and is processed to completion,
one event at a time, in arrival order. Adapters never block the loop;
they report back through their Subscription. Nothing raised while
handling an event escapes the controller: adapter failures become the
session's last_error and the session stays open for a manual retry.

Turn cycle
----------
    open ─► CONNECTING ─(300 ms)─► LISTENING ─(final text)─► AWAITING_RESPONSE
        ─(reply)─► SPEAKING ─(playback end, auto-listen, 400 ms)─► LISTENING ...

Usage::

    controller = ConversationController.from_settings(settings, ...factories)
    task = asyncio.create_task(controller.run())
    controller.open()
    ...
    controller.close()
"""

from __future__ import annotations

import asyncio
import uuid
from functools import partial
from typing import Callable, Optional

from assistant.events import (
    CaptureEnded,
    CaptureErrorKind,
    CaptureFailed,
    CaptureResult,
    CaptureStartDue,
    CaptureStarted,
    CloseAssistant,
    Event,
    OpenAssistant,
    PlaybackEnded,
    PlaybackFailed,
    Reconnect,
    StartMic,
    StopMic,
    StopSpeaking,
    TransportClosed,
    TransportFailed,
    TransportMessage,
    TransportOpened,
)
from assistant.ports import (
    CaptureFactory,
    LoopScheduler,
    PlaybackFactory,
    Scheduler,
    Subscription,
    TransportFactory,
    VoiceSelector,
)
from assistant.session import ConnectionStatus, ConversationSession, Phase, SessionSnapshot
from exceptions import AssistantError, CaptureError, PlaybackError, TransportError
from observability.logger import bind_session, clear_session, get_logger
from transport.protocol import (
    VoiceInput,
    build_address,
    decode_response,
    is_normal_close,
    new_client_id,
    now_ms,
)

log = get_logger(__name__)

# ── User-visible messages ─────────────────────────────────────────────────────

MSG_CAPTURE_UNSUPPORTED = "Speech recognition is not supported on this device."
MSG_CAPTURE_NETWORK     = "Voice recognition failed to connect."
MSG_MIC_START_FAILED    = "Could not start mic."
MSG_CONNECT_FAILED      = "Failed to connect to assistant service"
MSG_CONNECTION_ERROR    = "Connection error occurred"
MSG_CONNECTION_LOST     = "Connection lost"
MSG_PLAYBACK_FAILED     = "Speech playback failed"
MSG_INTERNAL_ERROR      = "Something went wrong"

SnapshotListener = Callable[[SessionSnapshot], None]


def _capture_error_message(kind: CaptureErrorKind, detail: str) -> str:
    if kind is CaptureErrorKind.NETWORK:
        return MSG_CAPTURE_NETWORK
    if kind is CaptureErrorKind.UNSUPPORTED:
        return MSG_CAPTURE_UNSUPPORTED
    return f"Speech recognition error: {detail or kind.value}"


class ConversationController:
    """
    Turn-taking state machine for one assistant panel.

    All mutation happens inside _dispatch(); the public intent methods only
    enqueue. Use run() under asyncio, or drain() to process synchronously
    (tests, embedding in another loop).
    """

    def __init__(
        self,
        *,
        capture_factory: CaptureFactory,
        playback_factory: PlaybackFactory,
        transport_factory: TransportFactory,
        base_url: str,
        voice: Optional[VoiceSelector] = None,
        capture_start_delay: float = 0.3,
        relisten_delay: float = 0.4,
        scheduler: Optional[Scheduler] = None,
        client_id_factory: Optional[Callable[[], str]] = None,
        session_id_factory: Optional[Callable[[], str]] = None,
        on_snapshot: Optional[SnapshotListener] = None,
    ) -> None:
        self._capture_factory = capture_factory
        self._playback_factory = playback_factory
        self._transport_factory = transport_factory
        self._base_url = base_url
        self._voice = voice
        self._capture_start_delay = capture_start_delay
        self._relisten_delay = relisten_delay
        self._scheduler: Scheduler = scheduler or LoopScheduler()
        self._new_client_id = client_id_factory or new_client_id
        self._new_session_id = session_id_factory or (lambda: uuid.uuid4().hex[:12])

        self._queue: asyncio.Queue = asyncio.Queue()
        self._session: Optional[ConversationSession] = None
        self._closed_phase = Phase.IDLE
        self._closed_error: Optional[str] = None
        self._capture_supported = True
        self._snapshot = SessionSnapshot.closed()
        self._listeners: list[SnapshotListener] = [on_snapshot] if on_snapshot else []

        self._handlers: dict[type, Callable[[Event], None]] = {
            OpenAssistant:    self._on_open,
            CloseAssistant:   self._on_close,
            StartMic:         self._on_start_mic,
            StopMic:          self._on_stop_mic,
            StopSpeaking:     self._on_stop_speaking,
            Reconnect:        self._on_reconnect,
            CaptureStartDue:  self._on_capture_start_due,
            CaptureStarted:   self._on_capture_started,
            CaptureEnded:     self._on_capture_ended,
            CaptureResult:    self._on_capture_result,
            CaptureFailed:    self._on_capture_failed,
            PlaybackEnded:    self._on_playback_ended,
            PlaybackFailed:   self._on_playback_failed,
            TransportOpened:  self._on_transport_opened,
            TransportMessage: self._on_transport_message,
            TransportFailed:  self._on_transport_failed,
            TransportClosed:  self._on_transport_closed,
        }

    @classmethod
    def from_settings(
        cls,
        settings,
        *,
        capture_factory: CaptureFactory,
        playback_factory: PlaybackFactory,
        transport_factory: TransportFactory,
        **kwargs,
    ) -> "ConversationController":
        """Build a controller with delays, voice and address from Settings."""
        return cls(
            capture_factory=capture_factory,
            playback_factory=playback_factory,
            transport_factory=transport_factory,
            base_url=settings.base_url,
            voice=VoiceSelector(
                name=settings.playback.voice_name,
                locale=settings.playback.voice_locale,
            ),
            capture_start_delay=settings.capture.start_delay_seconds,
            relisten_delay=settings.capture.relisten_delay_seconds,
            client_id_factory=partial(new_client_id, settings.transport.client_id_prefix),
            **kwargs,
        )

    # ── Read side ─────────────────────────────────────────────────────────────

    @property
    def snapshot(self) -> SessionSnapshot:
        return self._snapshot

    @property
    def session(self) -> Optional[ConversationSession]:
        return self._session

    def add_listener(self, listener: SnapshotListener) -> None:
        self._listeners.append(listener)

    # ── Intents (UI → controller) ─────────────────────────────────────────────

    def open(self) -> None:
        self.post(OpenAssistant())

    def close(self) -> None:
        self.post(CloseAssistant())

    def start_mic(self) -> None:
        self.post(StartMic())

    def stop_mic(self) -> None:
        self.post(StopMic())

    def stop_speaking(self) -> None:
        self.post(StopSpeaking())

    def reconnect(self) -> None:
        self.post(Reconnect())

    def post(self, event: Event) -> None:
        """Enqueue an event that is not tied to an adapter subscription."""
        self._queue.put_nowait((None, event))

    def _deliver(self, subscription: Subscription, event: Event) -> None:
        self._queue.put_nowait((subscription, event))

    # ── Event loop ────────────────────────────────────────────────────────────

    async def run(self) -> None:
        """Process events forever. Cancel the task to stop; the session is torn down."""
        log.info("controller.running")
        try:
            while True:
                subscription, event = await self._queue.get()
                self._dispatch(subscription, event)
        finally:
            if self._session is not None:
                self._teardown(self._session)
                self._publish()
            log.info("controller.stopped")

    def drain(self) -> int:
        """Process every queued event synchronously. Returns how many ran."""
        count = 0
        while True:
            try:
                subscription, event = self._queue.get_nowait()
            except asyncio.QueueEmpty:
                return count
            self._dispatch(subscription, event)
            count += 1

    def _dispatch(self, subscription: Optional[Subscription], event: Event) -> None:
        if subscription is not None and not subscription.active:
            log.debug("controller.stale_event", source=subscription.name,
                      event=type(event).__name__)
            return

        handler = self._handlers.get(type(event))
        if handler is None:
            log.warning("controller.unknown_event", event=type(event).__name__)
            return

        try:
            handler(event)
        except AssistantError as e:
            log.warning("controller.adapter_error", event=type(event).__name__,
                        error=str(e), error_type=type(e).__name__)
            if self._session is not None:
                self._session.last_error = str(e)
        except Exception as e:
            log.exception("controller.handler_crashed", event=type(event).__name__,
                          error=str(e))
            if self._session is not None:
                self._session.last_error = MSG_INTERNAL_ERROR

        self._publish()

    def _publish(self) -> None:
        if self._session is not None:
            snap = SessionSnapshot.of(self._session, self._capture_supported)
        else:
            snap = SessionSnapshot.closed(
                self._closed_phase, self._capture_supported, self._closed_error
            )
        if snap == self._snapshot:
            return
        self._snapshot = snap
        for listener in list(self._listeners):
            try:
                listener(snap)
            except Exception as e:
                log.debug("controller.listener_error", error=str(e))

    # ── Resource scoping ──────────────────────────────────────────────────────

    def _subscribe(self, session: ConversationSession, name: str) -> Subscription:
        sub = Subscription(self._deliver, name)
        session.subscriptions.append(sub)
        return sub

    def _schedule_capture(self, session: ConversationSession, delay: float) -> None:
        session_id = session.session_id

        def due() -> None:
            if handle in session.timers:
                session.timers.remove(handle)
            self.post(CaptureStartDue(session_id))

        handle = self._scheduler.call_later(delay, due)
        session.timers.append(handle)

    def _connect(self, session: ConversationSession) -> None:
        session.transport = self._transport_factory(self._subscribe(session, "transport"))
        session.connection_status = ConnectionStatus.DISCONNECTED
        address = build_address(self._base_url, session.client_id)
        try:
            session.transport.open(address)
            log.info("controller.connecting", address=address)
        except TransportError as e:
            log.warning("controller.connect_failed", address=address, error=str(e))
            session.last_error = MSG_CONNECT_FAILED
            if session.phase is Phase.CONNECTING:
                session.phase = Phase.IDLE

    def _start_capture(self, session: ConversationSession) -> None:
        if not self._capture_supported:
            session.last_error = MSG_CAPTURE_UNSUPPORTED
            return
        try:
            session.capture.start()
        except CaptureError as e:
            log.warning("controller.capture_start_failed", error=str(e))
            session.last_error = MSG_MIC_START_FAILED

    def _teardown(self, session: ConversationSession) -> None:
        """Release every session resource. Safe on partially built sessions."""
        for handle in session.timers:
            handle.cancel()
        session.timers.clear()

        # Playback first: "cancel current, then proceed"
        self._release("playback", session.playback, "cancel")
        self._release("capture", session.capture, "stop")
        self._release("transport", session.transport, "close")

        for sub in session.subscriptions:
            sub.release()
        session.subscriptions.clear()

        session.listening = False
        session.utterance_id = None
        session.connection_status = ConnectionStatus.DISCONNECTED
        session.phase = Phase.CLOSED

        if self._session is session:
            self._session = None
        self._closed_phase = Phase.CLOSED
        log.info("controller.session_closed", session_id=session.session_id)
        clear_session()

    @staticmethod
    def _release(name: str, adapter, method: str) -> None:
        if adapter is None:
            return
        try:
            getattr(adapter, method)()
        except Exception as e:
            log.warning("controller.release_failed", resource=name, error=str(e))

    # ── Intents ───────────────────────────────────────────────────────────────

    def _on_open(self, _event: OpenAssistant) -> None:
        if self._session is not None:
            log.debug("controller.already_open", session_id=self._session.session_id)
            return

        session = ConversationSession(
            session_id=self._new_session_id(),
            client_id=self._new_client_id(),
        )
        self._session = session
        self._closed_error = None
        bind_session(session.session_id, session.client_id)

        try:
            session.capture = self._capture_factory(self._subscribe(session, "capture"))
            session.playback = self._playback_factory(self._subscribe(session, "playback"))
        except AssistantError as e:
            log.error("controller.adapter_unavailable", error=str(e),
                      error_type=type(e).__name__)
            self._teardown(session)
            self._closed_error = str(e)
            return

        self._capture_supported = bool(getattr(session.capture, "supported", True))
        log.info("controller.session_opened", capture_supported=self._capture_supported)

        self._connect(session)

        if self._capture_supported:
            self._schedule_capture(session, self._capture_start_delay)
        else:
            session.last_error = MSG_CAPTURE_UNSUPPORTED

    def _on_close(self, _event: CloseAssistant) -> None:
        if self._session is None:
            self._closed_phase = Phase.CLOSED
            self._closed_error = None
            return
        self._teardown(self._session)

    def _on_start_mic(self, _event: StartMic) -> None:
        session = self._session
        if session is None:
            return
        session.last_error = None
        session.auto_listen_enabled = True
        self._start_capture(session)

    def _on_stop_mic(self, _event: StopMic) -> None:
        session = self._session
        if session is None:
            return
        session.auto_listen_enabled = False
        session.capture.stop()
        session.listening = False
        if session.phase is Phase.LISTENING:
            session.phase = Phase.IDLE

    def _on_stop_speaking(self, _event: StopSpeaking) -> None:
        session = self._session
        if session is None:
            return
        session.playback.cancel()
        session.utterance_id = None
        session.auto_listen_enabled = False
        session.capture.stop()
        session.listening = False
        if session.phase in (Phase.SPEAKING, Phase.LISTENING):
            session.phase = Phase.IDLE

    def _on_reconnect(self, _event: Reconnect) -> None:
        """Close the transport if open and open a fresh one with a new identity."""
        session = self._session
        if session is None:
            return
        session.last_error = None

        old = session.transport
        for sub in session.subscriptions:
            if sub.name == "transport":
                sub.release()
        session.subscriptions = [s for s in session.subscriptions if s.active]
        self._release("transport", old, "close")

        session.client_id = self._new_client_id()
        bind_session(session.session_id, session.client_id)
        if session.phase in (Phase.IDLE, Phase.AWAITING_RESPONSE):
            session.phase = Phase.CONNECTING
        log.info("controller.reconnecting")
        self._connect(session)

    def _on_capture_start_due(self, event: CaptureStartDue) -> None:
        session = self._session
        if session is None or event.session_id != session.session_id:
            return
        if not session.auto_listen_enabled or session.speaking:
            log.debug("controller.auto_listen_skipped",
                      auto_listen=session.auto_listen_enabled, speaking=session.speaking)
            return
        self._start_capture(session)

    # ── Capture events ────────────────────────────────────────────────────────

    def _on_capture_started(self, _event: CaptureStarted) -> None:
        session = self._session
        session.listening = True
        session.sent_this_cycle = False
        session.last_error = None
        session.phase = Phase.LISTENING

    def _on_capture_ended(self, _event: CaptureEnded) -> None:
        session = self._session
        session.listening = False
        if session.phase is Phase.LISTENING:
            session.phase = Phase.IDLE

    def _on_capture_result(self, event: CaptureResult) -> None:
        session = self._session
        if not session.listening or session.speaking:
            # Late result from a cycle already stopped for a reply or a manual stop
            log.debug("controller.result_after_stop", is_final=event.is_final,
                      speaking=session.speaking)
            return
        session.transcript = event.text
        if not event.is_final:
            return

        message = event.text.strip()
        if not message:
            log.debug("controller.final_empty")
            return
        if not session.connected:
            log.info("controller.final_dropped", reason="disconnected")
            return
        if session.sent_this_cycle:
            log.debug("controller.final_duplicate")
            return

        session.sent_this_cycle = True
        session.transport.send(VoiceInput(message=message, timestamp=now_ms()))
        session.phase = Phase.AWAITING_RESPONSE
        log.info("controller.transcript_sent", chars=len(message))

    def _on_capture_failed(self, event: CaptureFailed) -> None:
        session = self._session
        if event.kind is CaptureErrorKind.NO_SPEECH:
            log.debug("controller.no_speech")
        else:
            log.warning("controller.capture_failed", kind=event.kind.value, detail=event.detail)
            session.last_error = _capture_error_message(event.kind, event.detail)
        session.capture.stop()
        session.listening = False
        if session.phase is Phase.LISTENING:
            session.phase = Phase.IDLE

    # ── Playback events ───────────────────────────────────────────────────────

    def _on_playback_ended(self, event: PlaybackEnded) -> None:
        session = self._session
        if event.utterance_id != session.utterance_id:
            log.debug("controller.stale_playback_end", utterance_id=event.utterance_id)
            return
        session.utterance_id = None
        if session.phase is Phase.SPEAKING:
            session.phase = Phase.IDLE
        if session.auto_listen_enabled and self._capture_supported:
            self._schedule_capture(session, self._relisten_delay)

    def _on_playback_failed(self, event: PlaybackFailed) -> None:
        session = self._session
        if event.utterance_id != session.utterance_id:
            return
        log.warning("controller.playback_failed", detail=event.detail)
        session.utterance_id = None
        session.last_error = MSG_PLAYBACK_FAILED
        if session.phase is Phase.SPEAKING:
            session.phase = Phase.IDLE

    # ── Transport events ──────────────────────────────────────────────────────

    def _on_transport_opened(self, _event: TransportOpened) -> None:
        session = self._session
        session.connection_status = ConnectionStatus.CONNECTED
        session.last_error = None
        if session.phase is Phase.CONNECTING:
            session.phase = Phase.LISTENING if session.listening else Phase.IDLE
        log.info("controller.connected")

    def _on_transport_message(self, event: TransportMessage) -> None:
        session = self._session
        text = decode_response(event.raw)

        session.playback.cancel()
        session.utterance_id = None
        if session.phase in (Phase.AWAITING_RESPONSE, Phase.SPEAKING):
            session.phase = Phase.IDLE

        if not text.strip():
            log.debug("controller.reply_empty")
            return

        if session.listening:
            session.capture.stop()
            session.listening = False

        try:
            session.utterance_id = session.playback.speak(text, self._voice)
        except PlaybackError as e:
            log.warning("controller.speak_failed", error=str(e))
            session.last_error = MSG_PLAYBACK_FAILED
            return
        session.phase = Phase.SPEAKING
        log.info("controller.reply_speaking", chars=len(text),
                 utterance_id=session.utterance_id)

    def _on_transport_failed(self, event: TransportFailed) -> None:
        session = self._session
        log.warning("controller.transport_error", detail=event.detail)
        session.connection_status = ConnectionStatus.DISCONNECTED
        session.last_error = MSG_CONNECTION_ERROR
        if session.phase in (Phase.AWAITING_RESPONSE, Phase.CONNECTING):
            session.phase = Phase.IDLE

    def _on_transport_closed(self, event: TransportClosed) -> None:
        session = self._session
        session.connection_status = ConnectionStatus.DISCONNECTED
        if session.phase in (Phase.AWAITING_RESPONSE, Phase.CONNECTING):
            session.phase = Phase.IDLE
        if is_normal_close(event.code):
            log.info("controller.transport_closed", code=event.code)
        else:
            log.warning("controller.connection_lost", code=event.code)
            session.last_error = MSG_CONNECTION_LOST
