from __future__ import annotations

import math
import os
from typing import Mapping, Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field, ValidationError


# Environment variable names
ENV_TELEGRAM_TOKEN = "TELEGRAM_TOKEN"
ENV_LOOKUP_API_BASE = "LOOKUP_API_BASE"
ENV_ACCESS_CODE = "ACCESS_CODE"
ENV_SHOW_SENSITIVE = "SHOW_SENSITIVE"
ENV_LOOKUP_TIMEOUT = "LOOKUP_TIMEOUT"
ENV_POLL_TIMEOUT = "POLL_TIMEOUT"
ENV_POLL_WORKERS = "POLL_WORKERS"
ENV_LOG_LEVEL = "LOG_LEVEL"

# Backward-compatible fallbacks (names used by earlier deployments)
FALLBACK_ENV_TELEGRAM_TOKEN = "TELEGRAM_BOT_TOKEN"
FALLBACK_ENV_LOOKUP_API_BASE = "AADHAR_API_BASE"

_TRUTHY = {"true", "1", "yes", "on"}


class ConfigMissingError(RuntimeError):
    """Required configuration is absent or unusable; the bot must not start."""


class Settings(BaseModel):
    """Runtime configuration resolved from the environment."""

    telegram_token: str
    lookup_base_url: str
    access_code: str
    show_sensitive: bool = False
    lookup_timeout: float = Field(default=15.0, gt=0)
    poll_timeout: int = Field(default=30, ge=0)
    poll_workers: int = Field(default=4, ge=1)
    log_level: str = "INFO"


def _getenv(env: Mapping[str, str], name: str, default: Optional[str] = None) -> Optional[str]:
    v = env.get(name)
    return v if v not in (None, "") else default


def _parse_bool(raw: Optional[str]) -> bool:
    return str(raw or "").strip().lower() in _TRUTHY


def _parse_number(env: Mapping[str, str], name: str, default: str, cast):
    raw = _getenv(env, name, default)
    try:
        value = cast(str(raw).strip())
    except ValueError as exc:
        raise ConfigMissingError(f"Invalid value for {name}: {raw!r}") from exc
    # float() accepts "nan" and "inf"
    if not math.isfinite(value):
        raise ConfigMissingError(f"Invalid value for {name}: {raw!r}")
    return value


def load_dotenv_file(path: Optional[str] = None) -> bool:
    """Load KEY=VALUE pairs from `.env` without overriding the real environment."""
    return load_dotenv(dotenv_path=path, override=False)


def load_settings(environ: Optional[Mapping[str, str]] = None) -> Settings:
    """
    Build `Settings` from environment variables.

    Required: TELEGRAM_TOKEN (or TELEGRAM_BOT_TOKEN), LOOKUP_API_BASE (or
    AADHAR_API_BASE), ACCESS_CODE. Raises ConfigMissingError naming every
    missing variable at once.
    """
    env = os.environ if environ is None else environ

    token = _getenv(env, ENV_TELEGRAM_TOKEN) or _getenv(env, FALLBACK_ENV_TELEGRAM_TOKEN)
    base = _getenv(env, ENV_LOOKUP_API_BASE) or _getenv(env, FALLBACK_ENV_LOOKUP_API_BASE)
    code = _getenv(env, ENV_ACCESS_CODE)

    missing = [
        name
        for name, val in (
            (ENV_TELEGRAM_TOKEN, token),
            (ENV_LOOKUP_API_BASE, base),
            (ENV_ACCESS_CODE, code),
        )
        if not val
    ]
    if missing:
        raise ConfigMissingError(
            "Missing required configuration: " + ", ".join(missing)
        )

    lookup_timeout = _parse_number(env, ENV_LOOKUP_TIMEOUT, "15.0", float)
    poll_timeout = _parse_number(env, ENV_POLL_TIMEOUT, "30", int)
    poll_workers = _parse_number(env, ENV_POLL_WORKERS, "4", int)
    try:
        return Settings(
            telegram_token=token,
            lookup_base_url=base,
            access_code=code,
            show_sensitive=_parse_bool(_getenv(env, ENV_SHOW_SENSITIVE)),
            lookup_timeout=lookup_timeout,
            poll_timeout=poll_timeout,
            poll_workers=poll_workers,
            log_level=(_getenv(env, ENV_LOG_LEVEL, "INFO") or "INFO").upper(),
        )
    except ValidationError as exc:
        raise ConfigMissingError(f"Invalid configuration: {exc}") from exc


__all__ = [
    "ConfigMissingError",
    "Settings",
    "load_dotenv_file",
    "load_settings",
]
