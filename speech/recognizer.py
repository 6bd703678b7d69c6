"""
speech/recognizer.py — Offline speech-to-text backend (sounddevice + Faster-Whisper)

One call to listen() is one capture cycle:

    mic frames (sounddevice, 30 ms) → VAD (webrtcvad, energy fallback)
        → utterance PCM → Faster-Whisper → growing interim text → final text

listen() is blocking and runs in an executor thread owned by
SpeechCaptureAdapter. It yields (text, is_final) pairs: one interim pair per
transcribed segment when interim results are enabled, then exactly one
final pair. A cycle that hears nothing before the no-speech timeout raises
CaptureNoSpeechError. Setting the stop event ends the cycle early; speech
already heard is still transcribed, silence yields nothing.

Models load once in load(), never per cycle.
"""

from __future__ import annotations

import threading
from typing import Iterable, Iterator, Optional

from config.settings import CaptureConfig
from exceptions import CaptureNoSpeechError, CaptureUnsupportedError
from observability.logger import get_logger

log = get_logger(__name__)

_FRAME_DURATION_MS   = 30     # VAD frame size: must be 10, 20, or 30 ms
_SPEECH_ONSET_FRAMES = 2      # consecutive speech frames before committing
_DTYPE               = "int16"


class WhisperRecognizer:
    """Blocking recogniser used by SpeechCaptureAdapter."""

    def __init__(self, cfg: CaptureConfig) -> None:
        self._cfg = cfg
        self._sd = None              # sounddevice module
        self._whisper_model = None   # faster_whisper.WhisperModel
        self._vad = None             # webrtcvad.Vad (optional)

    # ── Derived sizes ─────────────────────────────────────────────────────────

    @property
    def frame_size(self) -> int:
        """PCM samples per VAD frame."""
        return int(self._cfg.sample_rate * _FRAME_DURATION_MS / 1000)

    @property
    def silence_frames(self) -> int:
        return max(1, self._cfg.silence_duration_ms // _FRAME_DURATION_MS)

    @property
    def max_utterance_frames(self) -> int:
        return int(self._cfg.max_utterance_s * 1000 // _FRAME_DURATION_MS)

    @property
    def no_speech_frames(self) -> int:
        return max(1, int(self._cfg.no_speech_timeout_s * 1000 // _FRAME_DURATION_MS))

    # ── Loading ───────────────────────────────────────────────────────────────

    def load(self) -> "WhisperRecognizer":
        """
        Import audio/model libraries, check for a microphone, load Whisper.
        Raises CaptureUnsupportedError if any of that is unavailable.
        """
        try:
            import sounddevice as sd
            from faster_whisper import WhisperModel
        except ImportError as e:
            raise CaptureUnsupportedError(
                f"speech capture needs sounddevice and faster-whisper: {e}"
            ) from e

        try:
            sd.query_devices(kind="input")
        except (ValueError, OSError, sd.PortAudioError) as e:
            raise CaptureUnsupportedError(f"no microphone available: {e}") from e

        log.info("capture.loading_whisper", model=self._cfg.whisper_model,
                 device=self._cfg.whisper_device)
        self._sd = sd
        self._whisper_model = WhisperModel(
            self._cfg.whisper_model,
            device=self._cfg.whisper_device,
            compute_type="int8",
        )

        try:
            import webrtcvad
            self._vad = webrtcvad.Vad(2)
        except ImportError:
            log.warning("capture.vad_not_installed",
                        hint="pip install webrtcvad — falling back to energy detection")
        return self

    # ── Capture cycle ─────────────────────────────────────────────────────────

    def listen(self, stop: threading.Event) -> Iterator[tuple[str, bool]]:
        pcm = self.detect_utterance(self._mic_frames(stop), stop)
        if pcm is None:
            return

        text = ""
        for segment in self._transcribe(pcm):
            piece = segment.text.strip()
            if not piece:
                continue
            text = f"{text} {piece}".strip()
            if self._cfg.interim_results:
                yield text, False
        yield text, True

    def _mic_frames(self, stop: threading.Event) -> Iterator[bytes]:
        stream = self._sd.InputStream(
            samplerate=self._cfg.sample_rate,
            channels=1,
            dtype=_DTYPE,
            blocksize=self.frame_size,
        )
        with stream:
            while not stop.is_set():
                data, overflowed = stream.read(self.frame_size)
                if overflowed:
                    log.debug("capture.input_overflow")
                yield bytes(data)

    def detect_utterance(self, frames: Iterable[bytes], stop: threading.Event) -> Optional[bytes]:
        """
        Accumulate frames until one utterance is complete.

        Returns the utterance PCM, or None when stopped before any speech.
        Raises CaptureNoSpeechError when the no-speech timeout elapses first.

        VAD state machine:
            WAITING  — listening for speech to begin (onset needs 2 frames)
            SPEAKING — accumulating speech, ends after silence_frames of quiet
        """
        speaking = False
        speech_frames: list[bytes] = []
        onset_buf: list[bytes] = []
        silence_count = 0
        waited = 0

        for frame in frames:
            is_speech = self._is_speech(frame)

            if not speaking:
                if is_speech:
                    onset_buf.append(frame)
                    if len(onset_buf) >= _SPEECH_ONSET_FRAMES:
                        speaking = True
                        speech_frames = onset_buf
                        onset_buf = []
                else:
                    onset_buf = []
                    waited += 1
                    if waited >= self.no_speech_frames:
                        raise CaptureNoSpeechError("no speech detected")
                continue

            speech_frames.append(frame)
            if is_speech:
                silence_count = 0
            else:
                silence_count += 1
                if silence_count >= self.silence_frames:
                    break
            if len(speech_frames) >= self.max_utterance_frames:
                break

        if not speech_frames:
            if stop.is_set():
                return None
            raise CaptureNoSpeechError("input ended before any speech")
        return b"".join(speech_frames)

    def _is_speech(self, frame: bytes) -> bool:
        """True if the frame contains speech (webrtcvad, or RMS energy fallback)."""
        if self._vad is not None:
            try:
                return self._vad.is_speech(frame, self._cfg.sample_rate)
            except Exception as e:
                log.debug("capture.vad_frame_rejected", error=str(e))

        import numpy as np

        samples = np.frombuffer(frame[: len(frame) // 2 * 2], dtype=np.int16)
        if samples.size == 0:
            return False
        rms = float(np.sqrt(np.mean(samples.astype(np.float64) ** 2)))
        return rms > self._cfg.energy_threshold

    # ── Transcription ─────────────────────────────────────────────────────────

    def _transcribe(self, pcm: bytes):
        import numpy as np

        audio_f32 = np.frombuffer(pcm, dtype=np.int16).astype(np.float32) / 32768.0
        segments, _info = self._whisper_model.transcribe(
            audio_f32,
            language=self._cfg.language_code,
            beam_size=1,
            vad_filter=False,
        )
        return segments
