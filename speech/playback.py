"""
speech/playback.py — Speech Playback Adapter (Piper TTS + sounddevice)

Single-utterance policy: speak() always cancels the current utterance
before starting the next one, and nothing is ever queued. Each utterance
gets an increasing id; PlaybackEnded / PlaybackFailed carry it, and a
cancelled utterance never reports anything.

Synthesis and playback are blocking and run in executor threads:
    _run_piper()  — text → float32 audio (cached PiperVoice per model)
    _play_audio() — sounddevice play + wait; cancel() interrupts via sd.stop()
"""

from __future__ import annotations

import asyncio
import io
import wave
from pathlib import Path
from typing import Callable, Optional, Sequence

from assistant.events import PlaybackEnded, PlaybackFailed
from assistant.ports import EventSink, VoiceSelector
from config.settings import PlaybackConfig
from exceptions import PlaybackError
from observability.logger import get_logger
from speech.voices import Voice, discover_voices, select_voice

log = get_logger(__name__)


class SpeechPlaybackAdapter:
    """SpeechPlayback over Piper. One instance per session."""

    def __init__(
        self,
        emit: EventSink,
        cfg: PlaybackConfig,
        voices: Optional[Sequence[Voice]] = None,
    ) -> None:
        self._emit = emit
        self._cfg = cfg
        self._voices = list(voices) if voices is not None else discover_voices(cfg.voices_dir)
        self._loaded: dict[str, object] = {}   # model path → PiperVoice
        self._last_id = 0
        self._current: Optional[int] = None
        self._task: Optional[asyncio.Task] = None

        if not self._voices:
            log.warning("playback.no_voices", voices_dir=cfg.voices_dir,
                        default_model=cfg.default_model_path or None)

    @classmethod
    def factory(cls, cfg: PlaybackConfig) -> Callable[[EventSink], "SpeechPlaybackAdapter"]:
        """A PlaybackFactory for the controller; the catalogue is scanned once."""
        voices = discover_voices(cfg.voices_dir)
        if not voices and not cfg.default_model_path:
            log.warning(
                "playback.unavailable",
                voices_dir=cfg.voices_dir,
                hint="add a Piper voice under playback.voices_dir or set "
                     "playback.default_model_path; replies cannot be spoken until then",
            )
        return lambda emit: cls(emit, cfg, voices)

    @property
    def speaking(self) -> bool:
        return self._current is not None

    def resolve_model(self, preferred: Optional[VoiceSelector]) -> str:
        """Model path for the preferred voice, per the catalogue selection policy."""
        voice = select_voice(self._voices, preferred)
        if voice is not None:
            return str(voice.model_path)
        return self._cfg.default_model_path

    # ── Commands ──────────────────────────────────────────────────────────────

    def speak(self, text: str, voice: Optional[VoiceSelector] = None) -> int:
        self.cancel()
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError as e:
            raise PlaybackError("no running event loop") from e

        self._last_id += 1
        utterance_id = self._last_id
        self._current = utterance_id
        model_path = self.resolve_model(voice)
        self._task = loop.create_task(self._utter(utterance_id, text, model_path))
        log.info("playback.speaking", utterance_id=utterance_id, chars=len(text),
                 model=Path(model_path).name if model_path else None)
        return utterance_id

    def cancel(self) -> None:
        if self._current is None:
            return
        log.debug("playback.cancelled", utterance_id=self._current)
        self._current = None
        try:
            self._stop_audio()
        except Exception as e:
            log.debug("playback.stop_failed", error=str(e))
        if self._task is not None and not self._task.done():
            self._task.cancel()
        self._task = None

    # ── Utterance ─────────────────────────────────────────────────────────────

    async def _utter(self, utterance_id: int, text: str, model_path: str) -> None:
        loop = asyncio.get_running_loop()
        try:
            audio, sample_rate = await loop.run_in_executor(
                None, self._run_piper, text, model_path
            )
            if self._current != utterance_id:
                return
            await loop.run_in_executor(None, self._play_audio, audio, sample_rate)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            if self._current == utterance_id:
                self._current = None
                log.warning("playback.failed", utterance_id=utterance_id,
                            error=str(e), error_type=type(e).__name__)
                self._emit(PlaybackFailed(utterance_id, str(e)))
            return

        if self._current == utterance_id:
            self._current = None
            log.info("playback.ended", utterance_id=utterance_id)
            self._emit(PlaybackEnded(utterance_id))

    def _load_voice(self, model_path: str):
        """Blocking — runs in executor."""
        if not model_path:
            raise PlaybackError("no Piper voice model configured or discovered")
        if model_path not in self._loaded:
            from piper import PiperVoice
            resolved = str(Path(model_path).expanduser().resolve())
            self._loaded[model_path] = PiperVoice.load(resolved)
        return self._loaded[model_path]

    def _run_piper(self, text: str, model_path: str):
        """
        Blocking Piper synthesis — runs in executor.
        Returns (numpy_array, sample_rate).
        """
        import soundfile as sf
        from piper import SynthesisConfig

        voice = self._load_voice(model_path)
        syn_config = SynthesisConfig(
            length_scale=1.0 / self._cfg.rate,
            volume=self._cfg.volume,
        )

        buf = io.BytesIO()
        with wave.open(buf, "wb") as wav_file:
            voice.synthesize_wav(text, wav_file, syn_config=syn_config)

        buf.seek(0)
        data, sr = sf.read(buf, dtype="float32")
        return data, sr

    def _play_audio(self, audio, sample_rate: int) -> None:
        """Blocking sounddevice playback — returns when done or stopped."""
        import sounddevice as sd
        sd.play(audio, samplerate=sample_rate)
        sd.wait()

    def _stop_audio(self) -> None:
        import sounddevice as sd
        sd.stop()
