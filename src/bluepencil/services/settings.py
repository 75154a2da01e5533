"""Settings dataclasses and persistence helpers."""

from __future__ import annotations

import json
import logging
import os
from dataclasses import asdict, dataclass, field, fields, replace
from pathlib import Path
from typing import Any, Dict, Mapping

from cryptography.fernet import Fernet, InvalidToken

from ..ai.client import ClientSettings
from ..context.budget import DEFAULT_DEGRADATION_STEPS, DEFAULT_TOKEN_BUDGET, DegradationPolicy
from ..context.builder import BuilderConfig
from ..context.tracker import StalenessThresholds

__all__ = [
    "ContextSettings",
    "FernetSecretProvider",
    "SecretVault",
    "Settings",
    "SettingsStore",
    "StalenessSettings",
    "redact_secret",
]

LOGGER = logging.getLogger(__name__)
_SETTINGS_DIR = Path.home() / ".bluepencil"
_DEFAULT_SETTINGS_PATH = _SETTINGS_DIR / "settings.json"
_SETTINGS_VERSION = 1
_API_KEY_FIELD = "api_key_ciphertext"
_ENV_OVERRIDES: Mapping[str, str] = {
    "BLUEPENCIL_API_KEY": "api_key",
    "BLUEPENCIL_BASE_URL": "base_url",
    "BLUEPENCIL_MODEL": "model",
    "BLUEPENCIL_ORGANIZATION": "organization",
    "BLUEPENCIL_LOG_LEVEL": "log_level",
    "BLUEPENCIL_DATA_DIR": "data_dir",
}
_BOOL_ENV_OVERRIDES: Mapping[str, str] = {
    "BLUEPENCIL_DEBUG_LOGGING": "debug_logging",
}
_FLOAT_ENV_OVERRIDES: Mapping[str, str] = {
    "BLUEPENCIL_REQUEST_TIMEOUT": "request_timeout",
    "BLUEPENCIL_TEMPERATURE": "temperature",
}
_INT_ENV_OVERRIDES: Mapping[str, str] = {
    "BLUEPENCIL_MAX_TOKENS": "max_tokens",
    "BLUEPENCIL_TOKEN_BUDGET": "context.token_budget",
}
_TRUE_VALUES = {"1", "true", "yes", "on", "debug"}


@dataclass(slots=True)
class ContextSettings:
    """Context builder and update-queue tuning."""

    token_budget: int = DEFAULT_TOKEN_BUDGET
    recent_edit_limit: int = 5
    edit_snippet_chars: int = 50
    recent_window_chars: int = 2_000
    max_section_summaries: int = 8
    max_unfocused_characters: int = 12
    rebuild_queue_threshold: int = 10
    rebuild_edit_threshold: int = 20
    degradation_steps: list[str] = field(default_factory=lambda: list(DEFAULT_DEGRADATION_STEPS))


@dataclass(slots=True)
class StalenessSettings:
    """Seconds after the last refresh at which a snapshot becomes recent, stale, outdated."""

    recent_seconds: float = 30.0
    stale_seconds: float = 120.0
    outdated_seconds: float = 600.0


@dataclass(slots=True)
class Settings:
    """User-configurable settings persisted between sessions."""

    base_url: str = "https://api.openai.com/v1"
    api_key: str = ""
    model: str = "gpt-4o-mini"
    organization: str | None = None
    temperature: float = 0.7
    max_tokens: int = 4_096
    request_timeout: float = 90.0
    max_retries: int = 3
    retry_min_seconds: float = 0.5
    retry_max_seconds: float = 6.0
    default_headers: dict[str, str] = field(default_factory=dict)
    data_dir: str | None = None
    log_level: str = "INFO"
    debug_logging: bool = False
    context: ContextSettings = field(default_factory=ContextSettings)
    staleness: StalenessSettings = field(default_factory=StalenessSettings)

    def client_settings(self) -> ClientSettings:
        return ClientSettings(
            base_url=self.base_url,
            api_key=self.api_key,
            model=self.model,
            organization=self.organization,
            request_timeout=self.request_timeout,
            max_retries=self.max_retries,
            retry_min_seconds=self.retry_min_seconds,
            retry_max_seconds=self.retry_max_seconds,
            temperature=self.temperature,
            max_tokens=self.max_tokens,
            default_headers=dict(self.default_headers) or None,
            debug_logging=self.debug_logging,
        )

    def builder_config(self) -> BuilderConfig:
        ctx = self.context
        return BuilderConfig(
            token_budget=ctx.token_budget,
            model_name=self.model,
            recent_window_chars=ctx.recent_window_chars,
            max_unfocused_characters=ctx.max_unfocused_characters,
            max_section_summaries=ctx.max_section_summaries,
            degradation=DegradationPolicy.from_names(ctx.degradation_steps),
        )

    def staleness_thresholds(self) -> StalenessThresholds:
        return StalenessThresholds(
            recent=self.staleness.recent_seconds,
            stale=self.staleness.stale_seconds,
            outdated=self.staleness.outdated_seconds,
        )


def redact_secret(secret: str | None) -> str:
    """Return a short hint such as ``sk-…wxyz`` for logs and status output."""

    if not secret:
        return ""
    if len(secret) <= 8:
        return "…" + secret[-2:]
    return f"{secret[:3]}…{secret[-4:]}"


class FernetSecretProvider:
    """Secret provider that uses a symmetric Fernet key stored on disk."""

    name = "fernet"

    def __init__(self, key_path: Path | None = None) -> None:
        self._key_path = key_path or (_SETTINGS_DIR / "settings.key")
        self._fernet: Fernet | None = None

    def encrypt(self, secret: str) -> str:
        return self._get_fernet().encrypt(secret.encode("utf-8")).decode("ascii")

    def decrypt(self, token: str) -> str:
        return self._get_fernet().decrypt(token.encode("ascii")).decode("utf-8")

    def _get_fernet(self) -> Fernet:
        if self._fernet is None:
            self._fernet = Fernet(self._load_or_create_key())
        return self._fernet

    def _load_or_create_key(self) -> bytes:
        path = self._key_path
        path.parent.mkdir(parents=True, exist_ok=True)
        if path.exists():
            return path.read_bytes().strip()
        key = Fernet.generate_key()
        tmp_path = path.with_suffix(".tmp")
        tmp_path.write_bytes(key)
        if os.name != "nt":  # pragma: no cover - depends on OS
            os.chmod(tmp_path, 0o600)
        tmp_path.replace(path)
        return key


class SecretVault:
    """Encrypts and decrypts sensitive strings for settings persistence.

    Tokens are stored as ``"<provider>:<payload>"``.
    """

    def __init__(self, *, key_path: Path | None = None, provider: FernetSecretProvider | None = None) -> None:
        self._provider = provider or FernetSecretProvider(key_path)

    @property
    def strategy(self) -> str:
        return self._provider.name

    def encrypt(self, secret: str) -> str:
        if not secret:
            return ""
        return f"{self._provider.name}:{self._provider.encrypt(secret)}"

    def decrypt(self, token: str | None) -> str:
        if not token:
            return ""
        prefix, _, payload = token.partition(":")
        if not payload or prefix != self._provider.name:
            raise ValueError(f"Unsupported secret token prefix {prefix!r}")
        try:
            return self._provider.decrypt(payload)
        except InvalidToken as exc:
            raise ValueError("Invalid Fernet token") from exc


def _filter_fields(payload: Mapping[str, Any], cls: type) -> Dict[str, Any]:
    allowed = {item.name for item in fields(cls)}
    return {key: value for key, value in payload.items() if key in allowed}


class SettingsStore:
    """Persistence adapter for :class:`Settings`."""

    def __init__(self, path: Path | None = None, *, vault: SecretVault | None = None) -> None:
        self._path = path or _DEFAULT_SETTINGS_PATH
        self._vault = vault or SecretVault(key_path=self._path.with_suffix(".key"))

    @property
    def path(self) -> Path:
        return self._path

    @property
    def vault(self) -> SecretVault:
        return self._vault

    def load(self, *, overrides: Mapping[str, Any] | None = None) -> Settings:
        """Load settings from disk, applying CLI/environment overrides when present."""

        payload = self._read_payload()
        settings = Settings()
        if payload:
            plaintext_key = self._decrypt_api_key(payload.pop(_API_KEY_FIELD, None), payload.pop("api_key", None))
            data = _filter_fields(payload, Settings)
            context_payload = data.get("context")
            if isinstance(context_payload, Mapping):
                data["context"] = ContextSettings(**_filter_fields(context_payload, ContextSettings))
            staleness_payload = data.get("staleness")
            if isinstance(staleness_payload, Mapping):
                data["staleness"] = StalenessSettings(**_filter_fields(staleness_payload, StalenessSettings))
            try:
                settings = Settings(**data)
            except TypeError as exc:
                LOGGER.warning("Settings payload contained unexpected data: %s", exc)
                settings = Settings()
            if plaintext_key:
                settings = replace(settings, api_key=plaintext_key)
        if overrides:
            settings = self._apply_overrides(settings, overrides, source="CLI")
        return self._apply_env_overrides(settings)

    def save(self, settings: Settings) -> Path:
        """Persist settings to disk with atomic file writes."""

        body = json.dumps(self._serialize(settings), indent=2, sort_keys=True)
        self._path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self._path.with_suffix(".tmp")
        tmp_path.write_text(body, encoding="utf-8")
        tmp_path.replace(self._path)
        LOGGER.debug("Settings saved to %s (api key %s)", self._path, redact_secret(settings.api_key) or "unset")
        return self._path

    def _serialize(self, settings: Settings) -> Dict[str, Any]:
        data = asdict(settings)
        api_key = data.pop("api_key", "") or ""
        if api_key:
            data[_API_KEY_FIELD] = self._vault.encrypt(api_key)
        data["version"] = _SETTINGS_VERSION
        data["secret_backend"] = self._vault.strategy
        return data

    def _read_payload(self) -> Dict[str, Any]:
        if not self._path.exists():
            return {}
        try:
            return json.loads(self._path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return {}
        except json.JSONDecodeError as exc:
            LOGGER.warning("Settings file %s is not valid JSON: %s", self._path, exc)
            return {}

    def _apply_overrides(self, settings: Settings, overrides: Mapping[str, Any], *, source: str = "runtime") -> Settings:
        top_level: Dict[str, Any] = {}
        nested: Dict[str, Dict[str, Any]] = {}
        allowed = {item.name for item in fields(Settings)}
        for key, value in overrides.items():
            if value is None:
                continue
            section, _, name = key.partition(".")
            if name:
                nested.setdefault(section, {})[name] = value
            elif key in allowed:
                top_level[key] = value
        for section, values in nested.items():
            current = getattr(settings, section, None)
            if current is None:
                LOGGER.debug("Ignoring %s override for unknown section %s", source, section)
                continue
            top_level[section] = replace(current, **_filter_fields(values, type(current)))
        if top_level:
            LOGGER.debug("Applying %s settings overrides: %s", source, sorted(top_level))
            settings = replace(settings, **top_level)
        return settings

    def _apply_env_overrides(self, settings: Settings) -> Settings:
        overrides: Dict[str, Any] = {}
        for env_name, field_name in _ENV_OVERRIDES.items():
            value = os.environ.get(env_name)
            if value is not None:
                overrides[field_name] = value
        for env_name, field_name in _BOOL_ENV_OVERRIDES.items():
            value = os.environ.get(env_name)
            if value is not None:
                overrides[field_name] = value.strip().lower() in _TRUE_VALUES
        for env_name, field_name in _INT_ENV_OVERRIDES.items():
            value = os.environ.get(env_name)
            if value is None:
                continue
            try:
                overrides[field_name] = int(value, 10)
            except ValueError:
                LOGGER.warning("Environment override %s=%s is not a valid integer", env_name, value)
        for env_name, field_name in _FLOAT_ENV_OVERRIDES.items():
            value = os.environ.get(env_name)
            if value is None:
                continue
            try:
                overrides[field_name] = float(value)
            except ValueError:
                LOGGER.warning("Environment override %s=%s is not a valid float", env_name, value)
        if overrides:
            settings = self._apply_overrides(settings, overrides, source="environment")
        return settings

    def _decrypt_api_key(self, ciphertext: str | None, legacy_plaintext: str | None) -> str:
        if ciphertext:
            try:
                return self._vault.decrypt(ciphertext)
            except ValueError as exc:
                LOGGER.warning("Unable to decrypt API key: %s", exc)
                return ""
        if legacy_plaintext:
            LOGGER.info("Found plaintext API key in settings; it will be encrypted on next save.")
            return str(legacy_plaintext)
        return ""
