"""Runtime configuration helpers for the live console."""
from __future__ import annotations

import os
from typing import Optional

DEFAULT_SESSION_TTL_SECONDS = 24 * 60 * 60
DEFAULT_SESSION_KEY_PREFIX = "agent0:session:"
DEFAULT_APPEND_RETRIES = 5
DEFAULT_REDIS_CONNECTION_RETRIES = 3

_TRUTHY = {"1", "true", "yes", "on"}
_FALSY = {"0", "false", "no", "off"}


def _get_env(name: str, default: Optional[str] = None) -> Optional[str]:
    return os.getenv(name, default)


def _get_bool(name: str, default: bool) -> bool:
    raw = (_get_env(name) or "").strip().lower()
    if not raw:
        return default
    if raw in _TRUTHY:
        return True
    if raw in _FALSY:
        return False
    raise RuntimeError(f"{name} must be a boolean flag, got: {raw}")


def _get_int(name: str, default: int) -> int:
    raw = (_get_env(name) or "").strip()
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError as exc:
        raise RuntimeError(f"{name} must be an integer, got: {raw}") from exc
    if value <= 0:
        raise RuntimeError(f"{name} must be positive, got: {value}")
    return value


def get_env() -> Optional[str]:
    return _get_env("ENV") or _get_env("APP_ENV")


def is_dev_env() -> bool:
    env = (get_env() or "dev").lower()
    return env in {"dev", "local", "test"}


def get_log_level() -> str:
    return (_get_env("LOG_LEVEL") or "INFO").upper()


def get_session_backend() -> Optional[str]:
    return (_get_env("SESSION_BACKEND") or "").lower() or None


def get_session_dir() -> Optional[str]:
    return _get_env("SESSION_DIR")


def get_redis_url() -> Optional[str]:
    return _get_env("REDIS_URL")


def get_session_ttl_seconds() -> int:
    return _get_int("SESSION_TTL_SECONDS", DEFAULT_SESSION_TTL_SECONDS)


def get_session_key_prefix() -> str:
    return _get_env("SESSION_KEY_PREFIX") or DEFAULT_SESSION_KEY_PREFIX


def get_append_retries() -> int:
    return _get_int("SESSION_APPEND_RETRIES", DEFAULT_APPEND_RETRIES)


def get_redis_connection_retries() -> int:
    return _get_int("SESSION_REDIS_RETRIES", DEFAULT_REDIS_CONNECTION_RETRIES)


def allow_anonymous_callers() -> bool:
    """Unauthenticated callers may mutate owned sessions unless disabled."""
    return _get_bool("SESSION_ALLOW_ANONYMOUS_CALLERS", True)


def conceal_denied_sessions() -> bool:
    return _get_bool("SESSION_CONCEAL_DENIED", False)


def get_jwt_signing_secret() -> Optional[str]:
    return _get_env("AUTH_JWT_SIGNING")
