"""
config/settings.py — Folio Assistant Runtime Settings

Merges config.yaml (defaults/structure) with .env / environment variables.
Pydantic-powered — all fields are validated and typed.

  - TransportConfig rejects base URLs that are not ws:// or wss://
  - CaptureConfig / PlaybackConfig bound their delays and voice parameters
  - validate_all() performs full startup validation and raises ConfigError
    with a clear, human-readable message listing every problem found
  - load_settings() respects FOLIO_ASSISTANT_CONFIG env var as a fallback
    when no explicit config_path argument is given
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Optional

import yaml
from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


# ─────────────────────────────────────────────────────────────────────────────
# Errors
# ─────────────────────────────────────────────────────────────────────────────

class ConfigError(Exception):
    """Raised by validate_all() when one or more config problems are found."""


# ─────────────────────────────────────────────────────────────────────────────
# Helpers
# ─────────────────────────────────────────────────────────────────────────────

_VALID_LOG_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
_VALID_DEVICES    = {"cpu", "cuda"}
_WS_SCHEMES       = ("ws://", "wss://")


# ─────────────────────────────────────────────────────────────────────────────
# Sub-models
# ─────────────────────────────────────────────────────────────────────────────

class TransportConfig(BaseModel):
    base_url: str = "ws://localhost:8000/ws"
    client_id_prefix: str = "client_"
    max_message_bytes: int = 2**20

    @field_validator("base_url")
    @classmethod
    def _ws_scheme(cls, v: str) -> str:
        v = v.strip()
        if not v.startswith(_WS_SCHEMES):
            raise ValueError(
                f"transport.base_url must start with ws:// or wss://, got '{v}'"
            )
        return v.rstrip("/")

    @field_validator("max_message_bytes")
    @classmethod
    def _positive_size(cls, v: int) -> int:
        if v < 1024:
            raise ValueError("transport.max_message_bytes must be >= 1024")
        return v


class CaptureConfig(BaseModel):
    language: str = "en-US"
    interim_results: bool = True
    start_delay_seconds: float = 0.3
    relisten_delay_seconds: float = 0.4
    whisper_model: str = "base.en"
    whisper_device: str = "cpu"
    sample_rate: int = 16000
    silence_duration_ms: int = 800
    max_utterance_s: int = 30
    no_speech_timeout_s: float = 8.0
    energy_threshold: int = 500

    @field_validator("whisper_device")
    @classmethod
    def _valid_device(cls, v: str) -> str:
        if v not in _VALID_DEVICES:
            raise ValueError(
                f"capture.whisper_device must be one of {sorted(_VALID_DEVICES)}, got '{v}'"
            )
        return v

    @field_validator("start_delay_seconds", "relisten_delay_seconds")
    @classmethod
    def _non_negative_delay(cls, v: float) -> float:
        if v < 0:
            raise ValueError("capture delays must be >= 0")
        return v

    @field_validator("sample_rate")
    @classmethod
    def _known_rate(cls, v: int) -> int:
        if v not in (8000, 16000, 32000, 48000):
            raise ValueError("capture.sample_rate must be 8000, 16000, 32000 or 48000")
        return v

    @property
    def language_code(self) -> str:
        """Whisper wants the bare language ("en"), not the locale ("en-US")."""
        return self.language.split("-")[0].lower()


class PlaybackConfig(BaseModel):
    voice_name: str = "Google UK English Male"
    voice_locale: str = "en-GB"
    voices_dir: str = "~/.local/share/piper"
    default_model_path: str = ""
    rate: float = 1.2
    pitch: float = 0.7
    volume: float = 1.0

    @field_validator("rate")
    @classmethod
    def _valid_rate(cls, v: float) -> float:
        if not (0.1 <= v <= 4.0):
            raise ValueError("playback.rate must be between 0.1 and 4.0")
        return v

    @field_validator("volume")
    @classmethod
    def _valid_volume(cls, v: float) -> float:
        if not (0.0 <= v <= 1.0):
            raise ValueError("playback.volume must be between 0.0 and 1.0")
        return v


class LoggingConfig(BaseModel):
    level: str = "INFO"
    log_dir: str = "./data/logs"
    max_file_size_mb: int = 100
    backup_count: int = 5
    console_output: bool = False
    json_format: bool = True

    @field_validator("level")
    @classmethod
    def _valid_log_level(cls, v: str) -> str:
        upper = v.upper()
        if upper not in _VALID_LOG_LEVELS:
            raise ValueError(
                f"logging.level '{v}' is not valid. "
                f"Must be one of: {sorted(_VALID_LOG_LEVELS)}"
            )
        return upper


# ─────────────────────────────────────────────────────────────────────────────
# Root Settings
# ─────────────────────────────────────────────────────────────────────────────

class Settings(BaseSettings):
    """
    Folio Assistant runtime settings.

    Priority (highest to lowest):
      1. Environment variables
      2. .env file
      3. config.yaml
      4. Field defaults
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        extra="ignore",
        case_sensitive=False,
    )

    # -- Deployment overrides from .env --------------------------------------
    websocket_url: Optional[str] = Field(default=None, alias="ASSISTANT_WEBSOCKET_URL")

    # -- Structured config (from config.yaml) --------------------------------
    transport: TransportConfig = Field(default_factory=TransportConfig)
    capture: CaptureConfig = Field(default_factory=CaptureConfig)
    playback: PlaybackConfig = Field(default_factory=PlaybackConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @field_validator("websocket_url", mode="before")
    @classmethod
    def _blank_url_is_none(cls, v: Any) -> Optional[str]:
        if v in (None, "", "null"):
            return None
        return str(v).strip()

    @field_validator("transport", mode="before")
    @classmethod
    def _coerce_transport(cls, v: Any) -> Any:
        return TransportConfig(**v) if isinstance(v, dict) else v

    @field_validator("capture", mode="before")
    @classmethod
    def _coerce_capture(cls, v: Any) -> Any:
        return CaptureConfig(**v) if isinstance(v, dict) else v

    @field_validator("playback", mode="before")
    @classmethod
    def _coerce_playback(cls, v: Any) -> Any:
        return PlaybackConfig(**v) if isinstance(v, dict) else v

    @field_validator("logging", mode="before")
    @classmethod
    def _coerce_logging(cls, v: Any) -> Any:
        return LoggingConfig(**v) if isinstance(v, dict) else v

    # -- Convenience properties ----------------------------------------------

    @property
    def base_url(self) -> str:
        """The env override wins over config.yaml."""
        if self.websocket_url:
            return self.websocket_url.rstrip("/")
        return self.transport.base_url

    @property
    def log_level(self) -> str:
        return self.logging.level.upper()

    @property
    def log_dir(self) -> Path:
        return Path(self.logging.log_dir)

    @property
    def log_json_format(self) -> bool:
        return self.logging.json_format

    @property
    def log_console_output(self) -> bool:
        return self.logging.console_output

    def validate_all(self) -> None:
        """
        Full startup validation. Raises ConfigError listing every problem found.

        Pydantic field validators catch type/value errors at parse time; this
        method catches cross-field problems (env override URL, voice paths
        that must exist on disk).
        """
        errors: list[str] = []

        # ── Env override URL gets the same scheme check as config.yaml ───────
        if self.websocket_url and not self.websocket_url.startswith(_WS_SCHEMES):
            errors.append(
                f"ASSISTANT_WEBSOCKET_URL must start with ws:// or wss://, "
                f"got '{self.websocket_url}'."
            )

        # ── Voice model locations ────────────────────────────────────────────
        if self.playback.default_model_path:
            model = Path(self.playback.default_model_path).expanduser()
            if not model.is_file():
                errors.append(
                    f"playback.default_model_path '{model}' does not exist."
                )

        voices_dir = Path(self.playback.voices_dir).expanduser()
        if voices_dir.exists() and not voices_dir.is_dir():
            errors.append(
                f"playback.voices_dir '{voices_dir}' exists but is not a directory."
            )

        # ── Capture timing ───────────────────────────────────────────────────
        if self.capture.no_speech_timeout_s <= 0:
            errors.append("capture.no_speech_timeout_s must be > 0.")
        if self.capture.silence_duration_ms >= self.capture.max_utterance_s * 1000:
            errors.append(
                "capture.silence_duration_ms must be shorter than "
                "capture.max_utterance_s."
            )

        # ── Report all errors together ───────────────────────────────────────
        if errors:
            numbered = "\n".join(f"  {i+1}. {e}" for i, e in enumerate(errors))
            raise ConfigError(
                f"\n\nFolio Assistant startup failed — {len(errors)} configuration "
                f"problem(s) found:\n\n{numbered}\n\n"
                f"Fix the issues above in config/config.yaml or your .env file "
                f"and restart.\n"
            )


# ─────────────────────────────────────────────────────────────────────────────
# Loader + singleton
# ─────────────────────────────────────────────────────────────────────────────

import threading as _threading

_singleton: Optional[Settings] = None
_singleton_lock = _threading.Lock()

_KNOWN_SECTIONS = {"transport", "capture", "playback", "logging"}


def _load_yaml(path: Path) -> dict:
    if not path.exists():
        return {}
    with path.open("r", encoding="utf-8") as f:
        return yaml.safe_load(f) or {}


def _resolve_config_path(config_path: str | Path | None) -> Path:
    """
    Resolve the config file path with this priority:
      1. Explicit config_path argument (from --config CLI flag)
      2. FOLIO_ASSISTANT_CONFIG environment variable
      3. Default: config/config.yaml
    """
    if config_path is not None:
        return Path(config_path)
    env_path = os.environ.get("FOLIO_ASSISTANT_CONFIG")
    if env_path:
        return Path(env_path)
    return Path("config/config.yaml")


def load_settings(config_path: str | Path | None = None) -> Settings:
    """Load settings by merging config.yaml with environment variables."""
    global _singleton
    resolved_path = _resolve_config_path(config_path)
    yaml_data = _load_yaml(resolved_path)

    init_kwargs = {k: v for k, v in yaml_data.items() if k in _KNOWN_SECTIONS}

    instance = Settings(**init_kwargs)
    with _singleton_lock:
        _singleton = instance
    return instance


def get_settings() -> Settings:
    """
    Return the global Settings singleton, loading from the default config
    path on first use. Guarded by _singleton_lock against double loading.
    """
    global _singleton
    if _singleton is not None:
        return _singleton
    with _singleton_lock:
        if _singleton is None:
            instance = Settings(
                **{
                    k: v
                    for k, v in _load_yaml(_resolve_config_path(None)).items()
                    if k in _KNOWN_SECTIONS
                }
            )
            _singleton = instance
    return _singleton
