"""Service settings: YAML profiles under ``config/`` overlaid by environment variables."""

from __future__ import annotations

from pathlib import Path
from typing import Any

import yaml
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

_PROJECT_ROOT = Path(__file__).resolve().parent.parent.parent
_CONFIG_DIR = _PROJECT_ROOT / "config"


def _env_config(prefix: str = "") -> SettingsConfigDict:
    return SettingsConfigDict(
        env_prefix=prefix, env_file=".env", env_file_encoding="utf-8", extra="ignore"
    )


def _read_yaml(path: Path) -> dict[str, Any]:
    if not path.exists():
        return {}
    with path.open() as fh:
        return yaml.safe_load(fh) or {}


def _load_yaml(profile: str = "default") -> dict[str, Any]:
    """``default.yaml`` with ``<profile>.yaml`` merged over it.

    A missing profile file contributes nothing.
    """
    data = _read_yaml(_CONFIG_DIR / "default.yaml")
    if profile != "default":
        data = _deep_merge(data, _read_yaml(_CONFIG_DIR / f"{profile}.yaml"))
    return data


def _deep_merge(base: dict, override: dict) -> dict:
    """Recursively merge *override* into *base* (override wins)."""
    merged = dict(base)
    for key, value in override.items():
        current = merged.get(key)
        merged[key] = (
            _deep_merge(current, value)
            if isinstance(current, dict) and isinstance(value, dict)
            else value
        )
    return merged


class ExchangeSettings(BaseSettings):
    """Venue endpoints and client tuning.

    API credentials are *not* configured here: they live, encrypted, on each
    ``Exchange`` record.
    """

    model_config = _env_config("EXCHANGE_")

    binance_url: str = "https://api.binance.com"
    binance_testnet_url: str = "https://testnet.binance.vision"
    coinbase_url: str = "https://api.pro.coinbase.com"
    coinbase_testnet_url: str = "https://api-public.sandbox.pro.coinbase.com"
    request_timeout: float = 10.0
    recv_window: int = 5000
    rate_limit: int = 50
    client_cache_size: int = 64
    client_cache_ttl: float = 3600.0


class SecuritySettings(BaseSettings):
    model_config = _env_config("DCABOT_")

    encryption_secret: str = "default-key-32-characters-long-1234"
    webhook_secret: str = ""


class SchedulerSettings(BaseSettings):
    poll_interval: float = 60.0
    monitor_interval: float = 5.0
    monitor_max_attempts: int = 12
    lease_ttl: float = 600.0
    reconcile_after: float = 900.0


class NotificationSettings(BaseSettings):
    """Outbound notification channels.

    A channel whose credentials are left empty is not constructed.
    """

    model_config = _env_config("NOTIFY_")

    telegram_bot_token: str = ""
    telegram_api_url: str = "https://api.telegram.org"
    line_access_token: str = ""
    line_api_url: str = "https://api.line.me"
    smtp_host: str = ""
    smtp_port: int = 587
    smtp_user: str = ""
    smtp_password: str = ""
    smtp_sender: str = "noreply@dcabot.local"
    request_timeout: float = 10.0


class DatabaseSettings(BaseSettings):
    path: str = "data/dcabot.db"


class ApiSettings(BaseSettings):
    host: str = "0.0.0.0"
    port: int = 8000
    allowed_origins: list[str] = ["http://localhost:3000"]


class LoggingSettings(BaseSettings):
    level: str = "INFO"
    format: str = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


class Settings(BaseSettings):
    """Root settings object handed to the container and the CLI.

    Precedence, lowest first: ``config/default.yaml``, the profile YAML,
    then environment variables / ``.env`` (per-section prefixes).
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        extra="ignore",
    )

    exchange: ExchangeSettings = Field(default_factory=ExchangeSettings)
    security: SecuritySettings = Field(default_factory=SecuritySettings)
    scheduler: SchedulerSettings = Field(default_factory=SchedulerSettings)
    notifications: NotificationSettings = Field(default_factory=NotificationSettings)
    database: DatabaseSettings = Field(default_factory=DatabaseSettings)
    api: ApiSettings = Field(default_factory=ApiSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)


_SECTIONS: dict[str, type[BaseSettings]] = {
    "exchange": ExchangeSettings,
    "security": SecuritySettings,
    "scheduler": SchedulerSettings,
    "notifications": NotificationSettings,
    "database": DatabaseSettings,
    "api": ApiSettings,
    "logging": LoggingSettings,
}


def load_settings(profile: str = "default") -> Settings:
    """Build ``Settings`` for a profile.

    Parameters
    ----------
    profile:
        Config profile name (maps to ``config/<profile>.yaml``).
        Use ``"testnet"`` for sandbox venues.
    """
    yaml_data = _load_yaml(profile)
    return Settings(
        **{name: model(**(yaml_data.get(name) or {})) for name, model in _SECTIONS.items()}
    )
