"""
Test conftest — isolate assistant environment variables so settings tests
are not affected by a developer's or CI's ASSISTANT_WEBSOCKET_URL /
FOLIO_ASSISTANT_CONFIG, and disable .env loading for the same reason.
"""
import pytest

_ASSISTANT_ENV_VARS = [
    "ASSISTANT_WEBSOCKET_URL",
    "FOLIO_ASSISTANT_CONFIG",
]


@pytest.fixture(autouse=True)
def _clear_assistant_env(monkeypatch):
    """Remove assistant env vars for every test so Settings() sees only
    what the test explicitly provides. Also disables .env file loading so
    local developer .env files don't leak into tests."""
    for var in _ASSISTANT_ENV_VARS:
        monkeypatch.delenv(var, raising=False)

    import config.settings as settings_module
    from pydantic_settings import SettingsConfigDict
    patched_config = SettingsConfigDict(
        env_file=None,
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        extra="ignore",
        case_sensitive=False,
    )
    monkeypatch.setattr(settings_module.Settings, "model_config", patched_config)
    monkeypatch.setattr(settings_module, "_singleton", None)
