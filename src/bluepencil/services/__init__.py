"""Service layer helpers (settings and secret storage)."""

from .settings import ContextSettings, SecretVault, Settings, SettingsStore, StalenessSettings

__all__ = ["ContextSettings", "SecretVault", "Settings", "SettingsStore", "StalenessSettings"]
