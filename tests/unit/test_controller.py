"""
tests/unit/test_controller.py — Conversation Controller Unit Tests

Drives assistant/controller.py with deterministic fakes for capture,
playback, transport, timers and identifiers. Events are processed with
controller.drain(), so no event loop or real I/O is involved.

Test groups
-----------
  Open / close        — session creation, addressing, teardown idempotence
  Capture results     — exactly-once send, empty / disconnected finals
  Capture errors      — NoSpeech suppressed, others surfaced, unsupported
  Replies + playback  — cancel-before-speak, relisten, stale ends
  Manual intents      — mic start/stop, stop speaking, race tie-break
  Transport           — abnormal close, errors, reconnect
  Robustness          — late events after close, listener / handler errors
"""

from __future__ import annotations

import itertools
import json
import sys
import time
from pathlib import Path

import pytest

# ── path setup ────────────────────────────────────────────────────────────────
_ROOT = Path(__file__).parent.parent.parent
if str(_ROOT) not in sys.path:
    sys.path.insert(0, str(_ROOT))

from assistant.controller import (
    MSG_CAPTURE_NETWORK,
    MSG_CAPTURE_UNSUPPORTED,
    MSG_CONNECT_FAILED,
    MSG_CONNECTION_ERROR,
    MSG_CONNECTION_LOST,
    MSG_INTERNAL_ERROR,
    MSG_MIC_START_FAILED,
    MSG_PLAYBACK_FAILED,
    ConversationController,
)
from assistant.events import (
    CaptureEnded,
    CaptureErrorKind,
    CaptureFailed,
    CaptureResult,
    CaptureStarted,
    PlaybackEnded,
    PlaybackFailed,
    TransportClosed,
    TransportFailed,
    TransportMessage,
    TransportOpened,
)
from assistant.ports import VoiceSelector
from assistant.session import ConnectionStatus, Phase
from exceptions import (
    CaptureStartError,
    CaptureUnsupportedError,
    PlaybackError,
    TransportConnectError,
)


# ─────────────────────────────────────────────────────────────────────────────
# Fakes
# ─────────────────────────────────────────────────────────────────────────────

class FakeCapture:
    def __init__(self, emit, supported: bool = True, fail_start: bool = False):
        self.emit = emit
        self.supported = supported
        self.fail_start = fail_start
        self.starts = 0
        self.stops = 0
        self._active = False

    @property
    def active(self) -> bool:
        return self._active

    def start(self) -> None:
        if not self.supported:
            raise CaptureUnsupportedError("no capture")
        if self.fail_start:
            raise CaptureStartError("device busy")
        self.starts += 1
        self._active = True

    def stop(self) -> None:
        self.stops += 1
        self._active = False


class FakePlayback:
    def __init__(self, emit, fail_speak: bool = False):
        self.emit = emit
        self.fail_speak = fail_speak
        self.spoken: list[tuple[str, object]] = []
        self.cancels = 0
        self.log: list[str] = []
        self._ids = itertools.count(1)
        self._current = None

    @property
    def speaking(self) -> bool:
        return self._current is not None

    def speak(self, text, voice=None) -> int:
        self.cancel()
        if self.fail_speak:
            raise PlaybackError("no audio device")
        self._current = next(self._ids)
        self.spoken.append((text, voice))
        self.log.append(f"speak:{text}")
        return self._current

    def cancel(self) -> None:
        self.cancels += 1
        if self._current is not None:
            self.log.append("cancel")
        self._current = None

    def finish(self) -> None:
        """Simulate the current utterance playing to the end."""
        uid, self._current = self._current, None
        self.emit(PlaybackEnded(uid))


class FakeTransport:
    def __init__(self, emit, fail_open: bool = False):
        self.emit = emit
        self.fail_open = fail_open
        self.address = None
        self.sent = []
        self.closes = 0
        self._open = False

    @property
    def is_open(self) -> bool:
        return self._open

    def open(self, address: str) -> None:
        if self.fail_open:
            raise TransportConnectError(address)
        self.address = address

    def send(self, payload) -> None:
        self.sent.append(payload)

    def close(self) -> None:
        self.closes += 1
        self._open = False


class FakeHandle:
    def __init__(self, delay, callback):
        self.delay = delay
        self.callback = callback
        self.cancelled = False

    def cancel(self) -> None:
        self.cancelled = True


class FakeScheduler:
    def __init__(self):
        self.handles: list[FakeHandle] = []

    def call_later(self, delay, callback) -> FakeHandle:
        handle = FakeHandle(delay, callback)
        self.handles.append(handle)
        return handle

    @property
    def pending(self) -> list[FakeHandle]:
        return [h for h in self.handles if not h.cancelled]

    def fire_all(self) -> None:
        handles, self.handles = self.pending, []
        for h in handles:
            h.callback()


VOICE = VoiceSelector(name="Google UK English Male", locale="en-GB")


class Harness:
    """A controller wired to fakes, one fake of each kind per session."""

    def __init__(self, capture_supported=True, fail_open=False,
                 fail_speak=False, fail_start=False, capture_factory=None):
        self.captures: list[FakeCapture] = []
        self.playbacks: list[FakePlayback] = []
        self.transports: list[FakeTransport] = []
        self.scheduler = FakeScheduler()
        self.snapshots = []
        self._capture_supported = capture_supported
        self._fail_open = fail_open
        self._fail_speak = fail_speak
        self._fail_start = fail_start

        client_ids = (f"client_{n:09d}" for n in itertools.count(1))
        session_ids = (f"session{n}" for n in itertools.count(1))

        self.controller = ConversationController(
            capture_factory=capture_factory or self._make_capture,
            playback_factory=self._make_playback,
            transport_factory=self._make_transport,
            base_url="ws://assistant.test/ws",
            voice=VOICE,
            capture_start_delay=0.3,
            relisten_delay=0.4,
            scheduler=self.scheduler,
            client_id_factory=lambda: next(client_ids),
            session_id_factory=lambda: next(session_ids),
            on_snapshot=self.snapshots.append,
        )

    def _make_capture(self, emit):
        c = FakeCapture(emit, self._capture_supported, self._fail_start)
        self.captures.append(c)
        return c

    def _make_playback(self, emit):
        p = FakePlayback(emit, self._fail_speak)
        self.playbacks.append(p)
        return p

    def _make_transport(self, emit):
        t = FakeTransport(emit, self._fail_open)
        self.transports.append(t)
        return t

    @property
    def capture(self) -> FakeCapture:
        return self.captures[-1]

    @property
    def playback(self) -> FakePlayback:
        return self.playbacks[-1]

    @property
    def transport(self) -> FakeTransport:
        return self.transports[-1]

    @property
    def snap(self):
        return self.controller.snapshot

    def step(self) -> None:
        self.controller.drain()

    def emit(self, adapter, event) -> None:
        adapter.emit(event)
        self.step()

    def open_connected(self) -> None:
        """Open, connect and reach Listening."""
        self.controller.open()
        self.step()
        self.emit(self.transport, TransportOpened())
        self.scheduler.fire_all()
        self.step()
        self.emit(self.capture, CaptureStarted())

    def reach_speaking(self, reply: str = "Here are my projects") -> int:
        self.open_connected()
        self.emit(self.capture, CaptureResult("show me your projects", is_final=True))
        self.emit(self.capture, CaptureEnded())
        self.emit(self.transport, TransportMessage(json.dumps({"message": reply})))
        return self.controller.session.utterance_id


@pytest.fixture
def h() -> Harness:
    return Harness()


# ─────────────────────────────────────────────────────────────────────────────
# Open / close
# ─────────────────────────────────────────────────────────────────────────────

class TestOpenClose:

    def test_initial_snapshot_is_closed_idle(self, h):
        assert h.snap.is_open is False
        assert h.snap.phase is Phase.IDLE

    def test_open_connects_to_client_address(self, h):
        h.controller.open()
        h.step()
        assert h.transport.address == "ws://assistant.test/ws/client_000000001"
        assert h.snap.is_open is True
        assert h.snap.phase is Phase.CONNECTING
        assert h.snap.auto_listen_enabled is True
        assert h.snap.connection_status is ConnectionStatus.DISCONNECTED

    def test_capture_starts_after_fixed_delay(self, h):
        h.controller.open()
        h.step()
        assert h.capture.starts == 0
        assert [hd.delay for hd in h.scheduler.pending] == [0.3]
        h.scheduler.fire_all()
        h.step()
        assert h.capture.starts == 1

    def test_transport_opened_sets_connected_and_clears_error(self, h):
        h.controller.open()
        h.step()
        h.controller.session.last_error = "old"
        h.emit(h.transport, TransportOpened())
        assert h.snap.is_connected
        assert h.snap.last_error is None
        assert h.snap.phase is Phase.IDLE

    def test_capture_started_before_connect_then_connected_is_listening(self, h):
        h.controller.open()
        h.step()
        h.scheduler.fire_all()
        h.step()
        h.emit(h.capture, CaptureStarted())
        h.emit(h.transport, TransportOpened())
        assert h.snap.phase is Phase.LISTENING
        assert h.snap.status_line == "Listening..."

    def test_open_twice_keeps_one_session(self, h):
        h.controller.open()
        h.controller.open()
        h.step()
        assert len(h.transports) == 1
        assert len(h.captures) == 1

    def test_close_releases_everything(self, h):
        h.open_connected()
        h.controller.close()
        h.step()
        assert h.snap.phase is Phase.CLOSED
        assert h.snap.is_open is False
        assert h.capture.stops >= 1
        assert h.playback.cancels >= 1
        assert h.transport.closes == 1
        assert h.controller.session is None

    def test_close_is_idempotent(self, h):
        h.open_connected()
        h.controller.close()
        h.controller.close()
        h.step()
        h.controller.close()
        h.step()
        assert h.transport.closes == 1
        assert h.snap.phase is Phase.CLOSED

    def test_close_without_session_is_safe(self, h):
        h.controller.close()
        h.step()
        assert h.snap.phase is Phase.CLOSED

    def test_close_cancels_pending_capture_timer(self, h):
        h.controller.open()
        h.step()
        h.controller.close()
        h.step()
        assert h.scheduler.pending == []

    def test_reopen_gets_fresh_identity_and_resets_state(self, h):
        h.open_connected()
        h.emit(h.capture, CaptureResult("hello", is_final=False))
        h.controller.stop_mic()
        h.controller.close()
        h.controller.open()
        h.step()
        assert len(h.transports) == 2
        assert h.transport.address.endswith("/client_000000002")
        assert h.snap.transcript == ""
        assert h.snap.auto_listen_enabled is True
        assert h.snap.last_error is None

    def test_timer_from_closed_session_does_nothing(self, h):
        h.controller.open()
        h.step()
        stale = h.scheduler.pending[0]
        h.controller.close()
        h.controller.open()
        h.step()
        stale.callback()
        h.step()
        assert h.captures[0].starts == 0
        assert h.captures[1].starts == 0

    def test_connect_failure_surfaces_error_and_stays_open(self):
        h = Harness(fail_open=True)
        h.controller.open()
        h.step()
        assert h.snap.is_open is True
        assert h.snap.last_error == MSG_CONNECT_FAILED
        assert h.snap.display_phase is Phase.ERROR
        assert h.snap.phase is Phase.IDLE

    def test_fatal_adapter_absence_tears_session_down(self):
        def broken(emit):
            raise CaptureUnsupportedError("microphone subsystem missing")

        h = Harness(capture_factory=broken)
        h.controller.open()
        h.step()
        assert h.snap.is_open is False
        assert h.snap.phase is Phase.CLOSED
        assert h.snap.last_error == "microphone subsystem missing"
        assert h.transports == []

    def test_snapshots_published_on_change_only(self, h):
        h.controller.open()
        h.step()
        count = len(h.snapshots)
        h.controller.open()   # no-op
        h.step()
        assert len(h.snapshots) == count


# ─────────────────────────────────────────────────────────────────────────────
# Capture results
# ─────────────────────────────────────────────────────────────────────────────

class TestCaptureResults:

    def test_final_transcript_sent_exactly_once(self, h):
        h.open_connected()
        before = int(time.time() * 1000)
        h.emit(h.capture, CaptureResult("show me your projects", is_final=True))
        after = int(time.time() * 1000)

        assert len(h.transport.sent) == 1
        payload = h.transport.sent[0]
        assert payload.message == "show me your projects"
        assert payload.type == "voice_input"
        assert before <= payload.timestamp <= after
        assert h.snap.phase is Phase.AWAITING_RESPONSE
        assert h.snap.status_line == "show me your projects"

    def test_duplicate_final_in_same_cycle_not_resent(self, h):
        h.open_connected()
        h.emit(h.capture, CaptureResult("hello", is_final=True))
        h.emit(h.capture, CaptureResult("hello", is_final=True))
        assert len(h.transport.sent) == 1

    def test_next_cycle_can_send_again(self, h):
        h.open_connected()
        h.emit(h.capture, CaptureResult("one", is_final=True))
        h.emit(h.capture, CaptureEnded())
        h.controller.start_mic()
        h.step()
        h.emit(h.capture, CaptureStarted())
        h.emit(h.capture, CaptureResult("two", is_final=True))
        assert [p.message for p in h.transport.sent] == ["one", "two"]

    def test_interim_results_update_transcript_only(self, h):
        h.open_connected()
        h.emit(h.capture, CaptureResult("show", is_final=False))
        h.emit(h.capture, CaptureResult("show me", is_final=False))
        assert h.snap.transcript == "show me"
        assert h.transport.sent == []
        assert h.snap.phase is Phase.LISTENING

    def test_final_text_is_trimmed(self, h):
        h.open_connected()
        h.emit(h.capture, CaptureResult("  hi there  ", is_final=True))
        assert h.transport.sent[0].message == "hi there"

    def test_empty_final_discarded(self, h):
        h.open_connected()
        h.emit(h.capture, CaptureResult("   ", is_final=True))
        assert h.transport.sent == []
        assert h.snap.phase is Phase.LISTENING

    def test_late_final_while_speaking_not_sent(self, h):
        h.open_connected()
        h.emit(h.transport, TransportMessage('{"message": "hello"}'))
        h.emit(h.capture, CaptureResult("late words", is_final=True))
        assert h.transport.sent == []
        assert h.snap.phase is Phase.SPEAKING
        assert h.snap.is_speaking is True

        h.playback.finish()
        h.step()
        assert h.snap.phase is Phase.IDLE

    def test_late_final_after_manual_stop_not_sent(self, h):
        h.open_connected()
        h.controller.stop_mic()
        h.step()
        h.emit(h.capture, CaptureResult("half a sentence", is_final=True))
        assert h.transport.sent == []
        assert h.snap.phase is Phase.IDLE
        assert h.snap.transcript == ""

    def test_final_while_disconnected_discarded(self, h):
        h.controller.open()
        h.step()
        h.scheduler.fire_all()
        h.step()
        h.emit(h.capture, CaptureStarted())
        h.emit(h.capture, CaptureResult("hello", is_final=True))
        assert h.transport.sent == []
        assert h.snap.phase is Phase.LISTENING


# ─────────────────────────────────────────────────────────────────────────────
# Capture errors
# ─────────────────────────────────────────────────────────────────────────────

class TestCaptureErrors:

    def test_no_speech_never_sets_error(self, h):
        h.open_connected()
        stops = h.capture.stops
        h.emit(h.capture, CaptureFailed(CaptureErrorKind.NO_SPEECH))
        assert h.snap.last_error is None
        assert h.capture.stops == stops + 1
        assert h.snap.is_listening is False
        assert h.snap.is_open is True
        assert h.snap.is_connected

    def test_network_error_surfaced_session_stays_open(self, h):
        h.open_connected()
        h.emit(h.capture, CaptureFailed(CaptureErrorKind.NETWORK, "dns"))
        assert h.snap.last_error == MSG_CAPTURE_NETWORK
        assert h.snap.is_open is True
        assert h.snap.display_phase is Phase.ERROR

    def test_other_error_includes_detail(self, h):
        h.open_connected()
        h.emit(h.capture, CaptureFailed(CaptureErrorKind.OTHER, "audio-capture"))
        assert h.snap.last_error == "Speech recognition error: audio-capture"

    def test_unsupported_capture_opens_without_scheduling(self):
        h = Harness(capture_supported=False)
        h.controller.open()
        h.step()
        assert h.snap.is_open is True
        assert h.snap.capture_supported is False
        assert h.snap.last_error == MSG_CAPTURE_UNSUPPORTED
        assert h.scheduler.pending == []
        assert len(h.transports) == 1

    def test_unsupported_mic_start_sets_error(self):
        h = Harness(capture_supported=False)
        h.controller.open()
        h.controller.start_mic()
        h.step()
        assert h.snap.last_error == MSG_CAPTURE_UNSUPPORTED
        assert h.capture.starts == 0

    def test_capture_start_failure_is_recoverable(self):
        h = Harness(fail_start=True)
        h.controller.open()
        h.step()
        h.scheduler.fire_all()
        h.step()
        assert h.snap.last_error == MSG_MIC_START_FAILED
        assert h.snap.is_open is True


# ─────────────────────────────────────────────────────────────────────────────
# Replies and playback
# ─────────────────────────────────────────────────────────────────────────────

class TestRepliesAndPlayback:

    def test_reply_spoken_with_configured_voice(self, h):
        h.reach_speaking("Here are my projects")
        assert h.playback.spoken == [("Here are my projects", VOICE)]
        assert h.snap.phase is Phase.SPEAKING
        assert h.snap.is_speaking is True

    def test_reply_cancels_current_utterance_first(self, h):
        h.reach_speaking("first")
        h.emit(h.transport, TransportMessage('{"text": "second"}'))
        assert h.playback.log == ["speak:first", "cancel", "speak:second"]
        assert h.snap.phase is Phase.SPEAKING

    def test_raw_reply_spoken_verbatim(self, h):
        h.open_connected()
        h.emit(h.transport, TransportMessage("plain words"))
        assert h.playback.spoken[0][0] == "plain words"

    def test_reply_stops_active_capture(self, h):
        h.open_connected()
        stops = h.capture.stops
        h.emit(h.transport, TransportMessage("unprompted"))
        assert h.capture.stops == stops + 1
        assert h.snap.is_listening is False

    def test_reply_without_recognised_field_spoken_raw(self, h):
        h.open_connected()
        h.emit(h.capture, CaptureResult("hi", is_final=True))
        h.emit(h.capture, CaptureEnded())
        h.emit(h.transport, TransportMessage('{"message": ""}'))
        assert h.playback.spoken[0][0] == '{"message": ""}'

    def test_whitespace_reply_not_spoken(self, h):
        h.open_connected()
        h.emit(h.capture, CaptureResult("hi", is_final=True))
        h.emit(h.capture, CaptureEnded())
        h.emit(h.transport, TransportMessage("   "))
        assert h.playback.spoken == []
        assert h.snap.phase is Phase.IDLE

    def test_playback_end_schedules_relisten(self, h):
        h.reach_speaking()
        h.scheduler.handles.clear()
        h.playback.finish()
        h.step()
        assert [hd.delay for hd in h.scheduler.pending] == [0.4]
        assert h.snap.phase is Phase.IDLE

        starts = h.capture.starts
        h.scheduler.fire_all()
        h.step()
        assert h.capture.starts == starts + 1
        h.emit(h.capture, CaptureStarted())
        assert h.snap.phase is Phase.LISTENING

    def test_playback_end_without_auto_listen_stays_idle(self, h):
        h.reach_speaking()
        h.controller.stop_mic()
        h.step()
        h.scheduler.handles.clear()
        h.playback.finish()
        h.step()
        assert h.scheduler.pending == []
        assert h.snap.phase is Phase.IDLE
        assert h.snap.is_open is True

    def test_stale_playback_end_ignored(self, h):
        first = h.reach_speaking("first")
        h.emit(h.transport, TransportMessage("second"))
        h.scheduler.handles.clear()
        h.emit(h.playback, PlaybackEnded(first))
        assert h.snap.phase is Phase.SPEAKING
        assert h.scheduler.pending == []

    def test_playback_failure_surfaced(self, h):
        uid = h.reach_speaking()
        h.emit(h.playback, PlaybackFailed(uid, "device lost"))
        assert h.snap.last_error == MSG_PLAYBACK_FAILED
        assert h.snap.phase is Phase.IDLE

    def test_speak_raising_surfaces_error(self):
        h = Harness(fail_speak=True)
        h.open_connected()
        h.emit(h.transport, TransportMessage("hello"))
        assert h.snap.last_error == MSG_PLAYBACK_FAILED
        assert h.snap.is_open is True

    def test_fired_timers_are_dropped_from_session(self, h):
        h.reach_speaking()
        for _ in range(3):
            h.playback.finish()
            h.step()
            h.scheduler.fire_all()
            h.step()
            h.emit(h.capture, CaptureStarted())
            h.emit(h.transport, TransportMessage("again"))
        assert h.controller.session.timers == []

    def test_playback_end_without_capture_never_relistens(self):
        h = Harness(capture_supported=False)
        h.controller.open()
        h.step()
        h.emit(h.transport, TransportOpened())
        assert h.snap.last_error is None

        h.emit(h.transport, TransportMessage("hello"))
        h.scheduler.handles.clear()
        h.playback.finish()
        h.step()
        assert h.scheduler.pending == []
        assert h.snap.last_error is None
        assert h.snap.phase is Phase.IDLE

    def test_relisten_skipped_if_speaking_again(self, h):
        h.reach_speaking("first")
        h.playback.finish()
        h.step()
        h.emit(h.transport, TransportMessage("second"))
        starts = h.capture.starts
        h.scheduler.fire_all()
        h.step()
        assert h.capture.starts == starts


# ─────────────────────────────────────────────────────────────────────────────
# Manual intents
# ─────────────────────────────────────────────────────────────────────────────

class TestManualIntents:

    def test_stop_speaking_cancels_and_disables_auto_listen(self, h):
        h.reach_speaking()
        h.controller.stop_speaking()
        h.step()
        assert h.playback.log[-1] == "cancel"
        assert h.snap.auto_listen_enabled is False
        assert h.snap.phase is Phase.IDLE
        assert h.snap.is_speaking is False

    def test_stop_speaking_then_late_end_never_relistens(self, h):
        uid = h.reach_speaking()
        h.controller.stop_speaking()
        h.step()
        h.scheduler.handles.clear()
        h.emit(h.playback, PlaybackEnded(uid))
        assert h.scheduler.pending == []

    @pytest.mark.parametrize("phase_setup", ["closed_capture", "listening", "awaiting"])
    def test_stop_speaking_disables_auto_listen_in_any_phase(self, h, phase_setup):
        h.open_connected()
        if phase_setup == "awaiting":
            h.emit(h.capture, CaptureResult("hi", is_final=True))
        elif phase_setup == "closed_capture":
            h.emit(h.capture, CaptureEnded())
        h.controller.stop_speaking()
        h.step()
        assert h.snap.auto_listen_enabled is False

    def test_stop_mic_stops_capture(self, h):
        h.open_connected()
        stops = h.capture.stops
        h.controller.stop_mic()
        h.step()
        assert h.capture.stops == stops + 1
        assert h.snap.auto_listen_enabled is False
        assert h.snap.phase is Phase.IDLE

    def test_start_mic_clears_error_and_reenables(self, h):
        h.open_connected()
        h.emit(h.capture, CaptureFailed(CaptureErrorKind.NETWORK))
        h.controller.stop_mic()
        h.controller.start_mic()
        h.step()
        assert h.snap.last_error is None
        assert h.snap.auto_listen_enabled is True
        assert h.capture.starts == 2

    def test_manual_stop_wins_race_with_final_result(self, h):
        h.open_connected()
        h.capture.emit(CaptureResult("hello", is_final=True))
        h.controller.stop_mic()
        h.step()
        assert h.snap.auto_listen_enabled is False
        # The reply still plays but does not lead to a relisten
        h.emit(h.transport, TransportMessage("hi"))
        h.scheduler.handles.clear()
        h.playback.finish()
        h.step()
        assert h.scheduler.pending == []

    def test_manual_stop_beats_pending_start_timer(self, h):
        h.controller.open()
        h.step()
        h.controller.stop_mic()
        h.step()
        h.scheduler.fire_all()
        h.step()
        assert h.capture.starts == 0

    def test_intents_without_session_are_noops(self, h):
        for intent in (h.controller.start_mic, h.controller.stop_mic,
                       h.controller.stop_speaking, h.controller.reconnect):
            intent()
        h.step()
        assert h.snap.is_open is False
        assert h.captures == []


# ─────────────────────────────────────────────────────────────────────────────
# Transport
# ─────────────────────────────────────────────────────────────────────────────

class TestTransport:

    def test_abnormal_close_sets_connection_lost_phase_unchanged(self, h):
        h.open_connected()
        h.emit(h.transport, TransportClosed(1006))
        assert h.snap.last_error == MSG_CONNECTION_LOST
        assert h.snap.connection_status is ConnectionStatus.DISCONNECTED
        assert h.snap.phase is Phase.LISTENING
        assert h.snap.is_open is True

    def test_normal_close_surfaces_nothing(self, h):
        h.open_connected()
        h.emit(h.transport, TransportClosed(1000))
        assert h.snap.last_error is None
        assert not h.snap.is_connected

    def test_abnormal_close_while_awaiting_returns_to_idle(self, h):
        h.open_connected()
        h.emit(h.capture, CaptureResult("hi", is_final=True))
        h.emit(h.capture, CaptureEnded())
        h.emit(h.transport, TransportClosed(1011))
        assert h.snap.phase is Phase.IDLE
        assert h.snap.last_error == MSG_CONNECTION_LOST

    def test_transport_error_surfaced(self, h):
        h.controller.open()
        h.step()
        h.emit(h.transport, TransportFailed("refused"))
        assert h.snap.last_error == MSG_CONNECTION_ERROR
        assert h.snap.phase is Phase.IDLE
        assert h.snap.is_open is True

    def test_reconnect_opens_fresh_channel_with_new_identity(self, h):
        h.open_connected()
        old = h.transport
        h.emit(old, TransportClosed(1006))
        h.controller.reconnect()
        h.step()
        assert old.closes == 1
        assert len(h.transports) == 2
        assert h.transport.address.endswith("/client_000000002")
        assert h.snap.last_error is None
        h.emit(h.transport, TransportOpened())
        assert h.snap.is_connected

    def test_reconnect_ignores_events_from_old_channel(self, h):
        h.open_connected()
        old = h.transport
        h.controller.reconnect()
        h.step()
        h.emit(h.transport, TransportOpened())
        h.emit(old, TransportClosed(1006))
        assert h.snap.last_error is None
        assert h.snap.is_connected

    def test_reconnect_is_repeatable(self, h):
        h.open_connected()
        h.controller.reconnect()
        h.controller.reconnect()
        h.step()
        assert len(h.transports) == 3
        assert [t.closes for t in h.transports] == [1, 1, 0]


# ─────────────────────────────────────────────────────────────────────────────
# Robustness
# ─────────────────────────────────────────────────────────────────────────────

class TestRobustness:

    def test_events_after_close_are_dropped(self, h):
        h.open_connected()
        capture, transport = h.capture, h.transport
        h.controller.close()
        h.step()
        capture.emit(CaptureResult("late", is_final=True))
        transport.emit(TransportClosed(1006))
        assert h.controller.drain() == 0
        assert h.snap.phase is Phase.CLOSED
        assert h.snap.last_error is None

    def test_late_events_do_not_touch_new_session(self, h):
        h.open_connected()
        old_transport = h.transport
        h.controller.close()
        h.controller.open()
        h.step()
        old_transport.emit(TransportClosed(1006))
        h.step()
        assert h.snap.last_error is None

    def test_listener_exception_does_not_break_controller(self, h):
        def bad_listener(_snap):
            raise RuntimeError("ui crashed")

        h.controller.add_listener(bad_listener)
        h.open_connected()
        assert h.snap.phase is Phase.LISTENING

    def test_unexpected_handler_exception_becomes_error(self, h):
        h.open_connected()

        def explode(_text, _voice=None):
            raise KeyError("boom")

        h.playback.speak = explode
        h.emit(h.transport, TransportMessage("hello"))
        assert h.snap.last_error == MSG_INTERNAL_ERROR
        assert h.snap.is_open is True

    def test_release_failures_do_not_block_teardown(self, h):
        h.open_connected()

        def bad_close():
            raise OSError("socket already gone")

        h.transport.close = bad_close
        h.controller.close()
        h.step()
        assert h.snap.phase is Phase.CLOSED
        assert h.capture.stops >= 1
