"""
speech/capture.py — Speech Capture Adapter

Wraps a blocking recogniser (WhisperRecognizer in production) as the
controller's SpeechCapture capability:

    start()  — begin one capture cycle (no-op while one is active; after a
               stop(), the next cycle begins once the stopping one ends)
    stop()   — end the cycle early; idempotent

Events, in order, for every cycle:
    CaptureStarted
    CaptureResult(text, is_final=False) ...   (interim, growing)
    CaptureResult(text, is_final=True)        (at most one)
    CaptureFailed(kind)                       (instead of a final result)
    CaptureEnded                              (always last)

The recogniser runs in an executor thread; its results are marshalled
back onto the event loop with call_soon_threadsafe so the controller only
ever sees events on its own thread.

Capability absence is detected once, here in the constructor: if the
recogniser cannot be built, `supported` is False and start() raises
CaptureUnsupportedError. Nothing else about the session is affected.
"""

from __future__ import annotations

import asyncio
import threading
from typing import Callable, Iterator, Optional, Protocol

from assistant.events import (
    CaptureEnded,
    CaptureErrorKind,
    CaptureFailed,
    CaptureResult,
    CaptureStarted,
)
from assistant.ports import EventSink
from exceptions import CaptureNoSpeechError, CaptureStartError, CaptureUnsupportedError
from observability.logger import get_logger

log = get_logger(__name__)


class Recognizer(Protocol):
    def listen(self, stop: threading.Event) -> Iterator[tuple[str, bool]]: ...


class SpeechCaptureAdapter:
    """SpeechCapture over a blocking Recognizer. One instance per session."""

    def __init__(self, emit: EventSink, recognizer_factory: Callable[[], Recognizer]) -> None:
        self._emit = emit
        self._recognizer: Optional[Recognizer] = None
        self._task: Optional[asyncio.Task] = None
        self._stop_event = threading.Event()
        self._restart_pending = False
        self.supported = False

        try:
            self._recognizer = recognizer_factory()
            self.supported = True
        except (CaptureUnsupportedError, ImportError, OSError) as e:
            log.warning("capture.unsupported", error=str(e))

    @classmethod
    def factory(cls, recognizer_factory: Callable[[], Recognizer]) -> Callable[[EventSink], "SpeechCaptureAdapter"]:
        """A CaptureFactory for the controller."""
        return lambda emit: cls(emit, recognizer_factory)

    @property
    def active(self) -> bool:
        return self._task is not None and not self._task.done()

    # ── Commands ──────────────────────────────────────────────────────────────

    def start(self) -> None:
        if not self.supported:
            raise CaptureUnsupportedError("speech capture is not available")
        if self.active:
            if self._stop_event.is_set():
                # The stopping cycle has not noticed yet; start again once it ends
                self._restart_pending = True
                log.debug("capture.restart_pending")
            else:
                log.debug("capture.already_active")
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError as e:
            raise CaptureStartError("no running event loop") from e
        self._launch(loop)

    def stop(self) -> None:
        self._restart_pending = False
        if self.active and not self._stop_event.is_set():
            log.debug("capture.stopping")
        self._stop_event.set()

    def _launch(self, loop: asyncio.AbstractEventLoop) -> None:
        self._restart_pending = False
        self._stop_event = threading.Event()
        self._task = loop.create_task(self._cycle(self._stop_event))

    # ── Cycle ─────────────────────────────────────────────────────────────────

    async def _cycle(self, stop: threading.Event) -> None:
        loop = asyncio.get_running_loop()
        self._emit(CaptureStarted())
        log.info("capture.started")
        try:
            await loop.run_in_executor(None, self._listen_blocking, stop, loop)
        except CaptureNoSpeechError:
            self._emit(CaptureFailed(CaptureErrorKind.NO_SPEECH))
        except ConnectionError as e:
            log.warning("capture.network_error", error=str(e))
            self._emit(CaptureFailed(CaptureErrorKind.NETWORK, str(e)))
        except Exception as e:
            log.warning("capture.failed", error=str(e), error_type=type(e).__name__)
            self._emit(CaptureFailed(CaptureErrorKind.OTHER, type(e).__name__))
        finally:
            self._emit(CaptureEnded())
            log.info("capture.ended")
            if self._restart_pending:
                self._launch(loop)

    def _listen_blocking(self, stop: threading.Event, loop: asyncio.AbstractEventLoop) -> None:
        """Runs in the executor thread."""
        for text, is_final in self._recognizer.listen(stop):
            loop.call_soon_threadsafe(self._emit, CaptureResult(text, is_final))
            if is_final:
                break
