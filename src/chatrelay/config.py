"""Server settings for chatrelay.

Settings come from an optional YAML file (path in CHATRELAY_CONFIG) and are
then overridden by CHATRELAY_* environment variables:

    CHATRELAY_DB                       sqlite path, ":memory:" for tests
    CHATRELAY_AUTH_URL                 base URL of the token verification service
    CHATRELAY_ADMIN_VERIFY_PATH        admin authority path (tried first)
    CHATRELAY_USER_VERIFY_PATH         user authority path (tried second)
    CHATRELAY_AUTH_TIMEOUT             per-authority timeout in seconds
    CHATRELAY_TOKEN_CACHE_TTL          seconds a verified token stays cached
    CHATRELAY_PRESENCE_TTL             seconds before an idle presence row expires
    CHATRELAY_PRESENCE_SWEEP_INTERVAL  seconds between presence sweeps (0 = off)
    CHATRELAY_CORS_ORIGINS             comma separated list of allowed origins
    CHATRELAY_LOG_LEVEL                logging level name
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any

import yaml

from .errors import ConfigError

ENV_PREFIX = "CHATRELAY_"


@dataclass
class Settings:
    db_path: str = ":memory:"
    auth_base_url: str | None = None
    admin_verify_path: str = "/admin/verify-token"
    user_verify_path: str = "/api/v2/verify-token"
    auth_timeout: float = 3.0
    token_cache_ttl: float = 300.0
    presence_ttl: float = 3600.0
    presence_sweep_interval: float = 60.0
    cors_origins: list[str] = field(default_factory=list)
    log_level: str = "INFO"

    def __post_init__(self) -> None:
        self._validate()

    def _validate(self) -> None:
        if self.auth_timeout <= 0:
            raise ConfigError("auth_timeout must be positive")
        if self.token_cache_ttl < 0:
            raise ConfigError("token_cache_ttl cannot be negative")
        if self.presence_ttl <= 0:
            raise ConfigError("presence_ttl must be positive")
        if self.presence_sweep_interval < 0:
            raise ConfigError("presence_sweep_interval cannot be negative")
        if self.auth_base_url:
            self.auth_base_url = self.auth_base_url.rstrip("/")
        self.log_level = self.log_level.upper()

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Settings":
        """Build settings from a mapping, ignoring unknown keys."""
        known = {f.name for f in fields(cls)}
        values = {k: v for k, v in data.items() if k in known}
        try:
            return cls(**values)
        except TypeError as e:
            raise ConfigError(f"Invalid settings: {e}") from e

    def to_dict(self) -> dict[str, Any]:
        """Settings as a plain dict (for the CLI and debugging)."""
        return {f.name: getattr(self, f.name) for f in fields(self)}


def _coerce(name: str, raw: str, default: Any) -> Any:
    if isinstance(default, bool):
        return raw.lower() in ("1", "true", "yes")
    if isinstance(default, float):
        try:
            return float(raw)
        except ValueError as e:
            raise ConfigError(f"{ENV_PREFIX}{name.upper()} must be a number, got {raw!r}") from e
    if isinstance(default, list):
        return [item.strip() for item in raw.split(",") if item.strip()]
    return raw


# Env var names that differ from the field name
_ENV_ALIASES = {
    "db_path": "DB",
    "auth_base_url": "AUTH_URL",
}


def load_yaml_settings(path: str | Path) -> dict[str, Any]:
    """Read a YAML settings file. Missing files are a ConfigError."""
    path = Path(path)
    if not path.exists():
        raise ConfigError(f"Config file not found: {path}")
    with open(path) as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ConfigError(f"Config file {path} must contain a mapping")
    return data


def load_settings(config_path: str | Path | None = None) -> Settings:
    """Load settings from YAML (optional) and the environment."""
    config_path = config_path or os.environ.get(f"{ENV_PREFIX}CONFIG")
    data: dict[str, Any] = load_yaml_settings(config_path) if config_path else {}

    defaults = Settings()
    for f in fields(Settings):
        env_name = ENV_PREFIX + _ENV_ALIASES.get(f.name, f.name.upper())
        raw = os.environ.get(env_name)
        if raw is not None:
            data[f.name] = _coerce(f.name, raw, getattr(defaults, f.name))

    return Settings.from_dict(data)


_settings: Settings | None = None


def get_settings() -> Settings:
    """Get the process settings, loading them on first use."""
    global _settings
    if _settings is None:
        _settings = load_settings()
    return _settings


def reset_settings() -> None:
    """Forget cached settings (for testing)."""
    global _settings
    _settings = None
