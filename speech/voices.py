"""
speech/voices.py — Piper voice catalogue and selection

A Piper voice is an ``.onnx`` model with a sibling ``.onnx.json`` config.
The config supplies the voice name (``dataset``) and locale
(``language.code``, e.g. ``en_GB``).

Selection policy:
    1. the voice whose name AND locale match the preference
    2. otherwise the first voice found
    3. otherwise None (the caller falls back to its default model)
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Sequence

from assistant.ports import VoiceSelector
from observability.logger import get_logger

log = get_logger(__name__)


@dataclass(frozen=True)
class Voice:
    name: str
    locale: str
    model_path: Path


def _norm_locale(locale: str) -> str:
    return locale.replace("_", "-").lower()


def discover_voices(voices_dir: str | Path) -> list[Voice]:
    """Every readable Piper voice under voices_dir, in path order."""
    root = Path(voices_dir).expanduser()
    if not root.is_dir():
        return []

    voices: list[Voice] = []
    for model in sorted(root.rglob("*.onnx")):
        config_path = model.with_name(model.name + ".json")
        try:
            config = json.loads(config_path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            log.debug("voices.config_unreadable", model=str(model), error=str(e))
            continue
        language = config.get("language") or {}
        voices.append(
            Voice(
                name=str(config.get("dataset") or model.stem),
                locale=str(language.get("code") or ""),
                model_path=model,
            )
        )
    log.debug("voices.discovered", count=len(voices), root=str(root))
    return voices


def select_voice(voices: Sequence[Voice], preferred: Optional[VoiceSelector]) -> Optional[Voice]:
    if preferred is not None:
        for voice in voices:
            if (
                voice.name.lower() == preferred.name.lower()
                and _norm_locale(voice.locale) == _norm_locale(preferred.locale)
            ):
                return voice
    return voices[0] if voices else None
