"""Configuration management for the karting venue API."""
from __future__ import annotations

import os
import re
from dataclasses import dataclass, field, fields, replace
from datetime import timedelta
from pathlib import Path
from typing import Dict, Mapping, Optional, Tuple

import yaml

DEFAULT_API_PREFIX = "/api/v1"
DEFAULT_JWT_SECRET = "change-me-in-production"
DEFAULT_CORS_ORIGINS = (
    "http://localhost:4200",
    "http://localhost:3000",
    "http://localhost:5173",
)

_DURATION = re.compile(r"^\s*(\d+)\s*([smhdw]?)\s*$", re.IGNORECASE)
_DURATION_UNITS = {
    "": "seconds",
    "s": "seconds",
    "m": "minutes",
    "h": "hours",
    "d": "days",
    "w": "weeks",
}


class ConfigError(ValueError):
    """Raised when a configuration value cannot be interpreted."""


def parse_duration(value: str) -> timedelta:
    """Parse ``7d``/``12h``/``30m``/``3600`` style durations."""

    match = _DURATION.match(value or "")
    if match is None:
        raise ConfigError(f"Invalid duration {value!r}")
    amount, unit = match.groups()
    delta = timedelta(**{_DURATION_UNITS[unit.lower()]: int(amount)})
    if delta.total_seconds() <= 0:
        raise ConfigError(f"Duration {value!r} must be positive")
    return delta


def _parse_int(value: object, name: str) -> int:
    try:
        return int(str(value).strip())
    except ValueError as exc:
        raise ConfigError(f"Invalid integer value {value!r} for {name}") from exc


def _parse_list(value: object) -> Tuple[str, ...]:
    if isinstance(value, (list, tuple)):
        items = [str(item) for item in value]
    else:
        items = str(value).split(",")
    return tuple(item.strip() for item in items if item.strip())


def resolve_database_path(env_value: Optional[str]) -> Path:
    """Resolve the on-disk path for the application database."""

    if env_value:
        return Path(env_value).expanduser().resolve(strict=False)
    base_dir = Path(__file__).resolve().parent.parent / "data"
    return (base_dir / "kart.sqlite3").resolve(strict=False)


@dataclass(frozen=True)
class Settings:
    """Runtime settings for the API process."""

    database_path: Path = field(default_factory=lambda: resolve_database_path(None))
    api_prefix: str = DEFAULT_API_PREFIX
    environment: str = "development"
    jwt_secret: str = DEFAULT_JWT_SECRET
    jwt_expires_in: timedelta = timedelta(days=7)
    bcrypt_rounds: int = 12
    admin_name: str = "Admin Carrera Kart"
    admin_email: str = "admin@carrerakart.com.br"
    admin_password: Optional[str] = None
    cors_origins: Tuple[str, ...] = DEFAULT_CORS_ORIGINS
    trusted_proxies: Tuple[str, ...] = ("*",)
    log_level: str = "INFO"
    rate_limit_max: int = 100
    rate_limit_window: timedelta = timedelta(minutes=15)

    @staticmethod
    def from_dict(data: Mapping[str, object], base: "Settings | None" = None) -> "Settings":
        """Overlay raw key/value data onto ``base`` (or the defaults)."""

        settings = base or Settings()
        known = {item.name for item in fields(Settings)}
        unknown = set(data) - known
        if unknown:
            raise ConfigError(f"Unknown configuration keys: {', '.join(sorted(unknown))}")

        updates: Dict[str, object] = {}
        for key, value in data.items():
            if value is None:
                continue
            if key == "database_path":
                updates[key] = resolve_database_path(str(value))
            elif key in {"jwt_expires_in", "rate_limit_window"}:
                updates[key] = value if isinstance(value, timedelta) else parse_duration(str(value))
            elif key == "bcrypt_rounds":
                rounds = _parse_int(value, key)
                if not 4 <= rounds <= 31:
                    raise ConfigError("bcrypt_rounds must be between 4 and 31")
                updates[key] = rounds
            elif key == "rate_limit_max":
                limit = _parse_int(value, key)
                if limit < 0:
                    raise ConfigError("rate_limit_max must not be negative")
                updates[key] = limit
            elif key in {"cors_origins", "trusted_proxies"}:
                updates[key] = _parse_list(value)
            elif key == "api_prefix":
                prefix = str(value).strip().rstrip("/")
                if prefix and not prefix.startswith("/"):
                    prefix = "/" + prefix
                updates[key] = prefix
            elif key == "log_level":
                updates[key] = str(value).strip().upper()
            else:
                updates[key] = str(value).strip()

        return replace(settings, **updates)

    @property
    def is_production(self) -> bool:
        return self.environment.lower() == "production"


_ENV_KEYS = {
    "KART_DB_PATH": "database_path",
    "KART_API_PREFIX": "api_prefix",
    "KART_ENV": "environment",
    "KART_JWT_SECRET": "jwt_secret",
    "KART_JWT_EXPIRE": "jwt_expires_in",
    "KART_BCRYPT_ROUNDS": "bcrypt_rounds",
    "KART_ADMIN_NAME": "admin_name",
    "KART_ADMIN_EMAIL": "admin_email",
    "KART_ADMIN_PASSWORD": "admin_password",
    "KART_CORS_ORIGINS": "cors_origins",
    "KART_TRUSTED_PROXIES": "trusted_proxies",
    "KART_LOG_LEVEL": "log_level",
    "KART_RATE_LIMIT_MAX": "rate_limit_max",
    "KART_RATE_LIMIT_WINDOW": "rate_limit_window",
}


def load_config_file(config_path: Path) -> Dict[str, object]:
    """Load settings from a YAML file."""

    with config_path.open("r", encoding="utf-8") as handle:
        raw = yaml.safe_load(handle) or {}
    if not isinstance(raw, dict):
        raise ConfigError("Configuration file must contain a mapping at the top level")
    return raw


def load_settings(environ: Optional[Mapping[str, str]] = None) -> Settings:
    """Build settings from defaults, an optional YAML file and the environment."""

    env = os.environ if environ is None else environ
    settings = Settings()

    config_file = env.get("KART_CONFIG")
    if config_file:
        path = Path(config_file).expanduser().resolve(strict=False)
        settings = Settings.from_dict(load_config_file(path), settings)

    overrides = {
        key: env[variable]
        for variable, key in _ENV_KEYS.items()
        if env.get(variable) not in (None, "")
    }
    return Settings.from_dict(overrides, settings)


__all__ = [
    "ConfigError",
    "Settings",
    "load_config_file",
    "load_settings",
    "parse_duration",
    "resolve_database_path",
]
