"""
speech/ — Local speech capture and playback

Capture: sounddevice microphone → VAD → Faster-Whisper.
Playback: Piper TTS → sounddevice speaker.

Audio and model libraries are imported lazily, so this package imports
cleanly on machines without them; capture then reports itself unsupported.
"""

from speech.capture import SpeechCaptureAdapter
from speech.playback import SpeechPlaybackAdapter
from speech.voices import Voice, discover_voices, select_voice

__all__ = [
    "SpeechCaptureAdapter",
    "SpeechPlaybackAdapter",
    "Voice",
    "discover_voices",
    "select_voice",
]
