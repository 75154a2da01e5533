"""Tests for the settings persistence layer."""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from bluepencil.context.budget import DEFAULT_DEGRADATION_STEPS
from bluepencil.services.settings import (
    ContextSettings,
    FernetSecretProvider,
    SecretVault,
    Settings,
    SettingsStore,
    redact_secret,
)


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in (
        "BLUEPENCIL_API_KEY",
        "BLUEPENCIL_MODEL",
        "BLUEPENCIL_DEBUG_LOGGING",
        "BLUEPENCIL_TOKEN_BUDGET",
        "BLUEPENCIL_TEMPERATURE",
        "BLUEPENCIL_MAX_TOKENS",
        "BLUEPENCIL_BASE_URL",
        "BLUEPENCIL_ORGANIZATION",
        "BLUEPENCIL_LOG_LEVEL",
        "BLUEPENCIL_DATA_DIR",
        "BLUEPENCIL_REQUEST_TIMEOUT",
    ):
        monkeypatch.delenv(name, raising=False)


def _store(tmp_path: Path) -> SettingsStore:
    return SettingsStore(tmp_path / "settings.json", vault=SecretVault(key_path=tmp_path / "key"))


def test_load_returns_defaults_when_file_missing(tmp_path: Path) -> None:
    assert _store(tmp_path).load() == Settings()


def test_save_and_load_roundtrip(tmp_path: Path) -> None:
    store = _store(tmp_path)
    original = Settings(
        base_url="https://example.com/v1",
        api_key="super-secret",
        model="gpt-4.1-mini",
        organization="acme",
        default_headers={"X-Test": "1"},
        data_dir=str(tmp_path / "projects"),
        context=ContextSettings(token_budget=2_000, degradation_steps=["shorten_sections", "drop_section_summaries"]),
    )

    path = store.save(original)
    raw = json.loads(path.read_text(encoding="utf-8"))

    assert "api_key" not in raw
    assert raw["api_key_ciphertext"].startswith("fernet:")
    assert "super-secret" not in path.read_text(encoding="utf-8")
    assert _store(tmp_path).load() == original


def test_legacy_plaintext_api_key_is_read(tmp_path: Path) -> None:
    target = tmp_path / "settings.json"
    target.write_text(json.dumps({"api_key": "legacy", "model": "old-model", "unknown_field": 1}), encoding="utf-8")

    settings = _store(tmp_path).load()

    assert settings.api_key == "legacy"
    assert settings.model == "old-model"


def test_invalid_json_falls_back_to_defaults(tmp_path: Path) -> None:
    (tmp_path / "settings.json").write_text("{not json", encoding="utf-8")
    assert _store(tmp_path).load() == Settings()


def test_ciphertext_from_another_key_is_dropped(tmp_path: Path) -> None:
    store = _store(tmp_path)
    store.save(Settings(api_key="secret"))
    (tmp_path / "key").unlink()

    assert _store(tmp_path).load().api_key == ""


def test_environment_overrides(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("BLUEPENCIL_API_KEY", "env-key")
    monkeypatch.setenv("BLUEPENCIL_MODEL", "env-model")
    monkeypatch.setenv("BLUEPENCIL_DEBUG_LOGGING", "yes")
    monkeypatch.setenv("BLUEPENCIL_TOKEN_BUDGET", "1500")
    monkeypatch.setenv("BLUEPENCIL_TEMPERATURE", "not-a-number")

    settings = _store(tmp_path).load()

    assert settings.api_key == "env-key"
    assert settings.model == "env-model"
    assert settings.debug_logging is True
    assert settings.context.token_budget == 1500
    assert settings.temperature == Settings().temperature


def test_runtime_overrides_support_sections(tmp_path: Path) -> None:
    settings = _store(tmp_path).load(
        overrides={"model": "cli-model", "context.token_budget": 900, "staleness.stale_seconds": 60.0, "bogus": 1}
    )

    assert settings.model == "cli-model"
    assert settings.context.token_budget == 900
    assert settings.staleness.stale_seconds == 60.0


def test_settings_derive_component_configs() -> None:
    settings = Settings(model="m", api_key="k", context=ContextSettings(token_budget=123))

    client = settings.client_settings()
    builder = settings.builder_config()
    thresholds = settings.staleness_thresholds()

    assert (client.model, client.api_key, client.default_headers) == ("m", "k", None)
    assert builder.token_budget == 123
    assert builder.model_name == "m"
    assert builder.degradation.steps == DEFAULT_DEGRADATION_STEPS
    assert thresholds.outdated == 600.0


def test_vault_rejects_foreign_tokens(tmp_path: Path) -> None:
    vault = SecretVault(provider=FernetSecretProvider(tmp_path / "key"))
    token = vault.encrypt("hunter2")

    assert vault.strategy == "fernet"
    assert vault.decrypt(token) == "hunter2"
    assert vault.encrypt("") == ""
    with pytest.raises(ValueError):
        vault.decrypt("dpapi:abc")
    with pytest.raises(ValueError):
        vault.decrypt("fernet:garbage")


@pytest.mark.parametrize(
    ("secret", "expected"),
    [("", ""), ("abc", "…bc"), ("sk-1234567890", "sk-…7890")],
)
def test_redact_secret(secret: str, expected: str) -> None:
    assert redact_secret(secret) == expected
