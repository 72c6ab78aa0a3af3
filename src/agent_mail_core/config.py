"""Application configuration loaded via python-decouple with typed helpers."""

from __future__ import annotations

from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import Final, Protocol, cast

from decouple import (
    Config as DecoupleConfig,
    RepositoryEmpty,
    RepositoryEnv,
)

_DOTENV_PATH: Final[Path] = Path(".env")


def _build_decouple_config() -> DecoupleConfig:
    # Missing .env (CI, tests) falls back to os.environ only.
    try:
        return DecoupleConfig(RepositoryEnv(str(_DOTENV_PATH)))
    except FileNotFoundError:
        return DecoupleConfig(RepositoryEmpty())


_decouple_config: Final[DecoupleConfig] = _build_decouple_config()


@dataclass(slots=True, frozen=True)
class DatabaseSettings:
    """Database connectivity settings."""

    url: str
    echo: bool
    pool_size: int | None
    max_overflow: int | None
    pool_timeout: int | None


@dataclass(slots=True, frozen=True)
class StorageSettings:
    """Filesystem/Git archive configuration."""

    root: str
    git_author_name: str
    git_author_email: str
    lock_timeout_seconds: float
    stale_lock_seconds: float
    write_attempts: int
    write_backoff_seconds: float


@dataclass(slots=True, frozen=True)
class Settings:
    """Top-level application settings."""

    environment: str
    database: DatabaseSettings
    storage: StorageSettings
    # Contacts/links
    contact_enforcement_enabled: bool
    contact_auto_ttl_seconds: int
    contact_reservation_window_seconds: int
    contact_link_ttl_seconds: int
    # File reservations
    file_reservation_default_ttl_seconds: int
    file_reservations_cleanup_enabled: bool
    file_reservations_cleanup_interval_seconds: int
    # Messaging
    message_dedupe_window_seconds: int
    # Logging
    log_level: str
    log_json_enabled: bool
    log_rich_enabled: bool


def _bool(value: str, *, default: bool) -> bool:
    normalized = value.strip().lower()
    if normalized in {"1", "true", "t", "yes", "y"}:
        return True
    if normalized in {"0", "false", "f", "no", "n"}:
        return False
    return default


def _int(value: str, *, default: int) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def _int_optional(value: str) -> int | None:
    text = str(value or "").strip()
    if not text:
        return None
    try:
        return int(text)
    except (TypeError, ValueError):
        return None


def _float(value: str, *, default: float) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return cached application settings."""
    environment = _decouple_config("APP_ENVIRONMENT", default="development")

    database_settings = DatabaseSettings(
        url=_decouple_config("DATABASE_URL", default="sqlite+aiosqlite:///./storage.sqlite3"),
        echo=_bool(_decouple_config("DATABASE_ECHO", default="false"), default=False),
        pool_size=_int_optional(_decouple_config("DATABASE_POOL_SIZE", default="")),
        max_overflow=_int_optional(_decouple_config("DATABASE_MAX_OVERFLOW", default="")),
        pool_timeout=_int_optional(_decouple_config("DATABASE_POOL_TIMEOUT", default="")),
    )

    storage_settings = StorageSettings(
        # Global, user-scoped archive directory outside the source tree
        root=_decouple_config("STORAGE_ROOT", default="~/.agent_mail_archive"),
        git_author_name=_decouple_config("GIT_AUTHOR_NAME", default="agent-mail"),
        git_author_email=_decouple_config("GIT_AUTHOR_EMAIL", default="agent-mail@example.com"),
        lock_timeout_seconds=_float(_decouple_config("ARCHIVE_LOCK_TIMEOUT_SECONDS", default="60"), default=60.0),
        stale_lock_seconds=_float(_decouple_config("ARCHIVE_STALE_LOCK_SECONDS", default="180"), default=180.0),
        write_attempts=max(1, _int(_decouple_config("ARCHIVE_WRITE_ATTEMPTS", default="3"), default=3)),
        write_backoff_seconds=_float(_decouple_config("ARCHIVE_WRITE_BACKOFF_SECONDS", default="0.2"), default=0.2),
    )

    return Settings(
        environment=environment,
        database=database_settings,
        storage=storage_settings,
        contact_enforcement_enabled=_bool(_decouple_config("CONTACT_ENFORCEMENT_ENABLED", default="true"), default=True),
        contact_auto_ttl_seconds=_int(_decouple_config("CONTACT_AUTO_TTL_SECONDS", default="86400"), default=86400),
        contact_reservation_window_seconds=_int(
            _decouple_config("CONTACT_RESERVATION_WINDOW_SECONDS", default="3600"), default=3600
        ),
        contact_link_ttl_seconds=_int(_decouple_config("CONTACT_LINK_TTL_SECONDS", default=str(30 * 24 * 3600)), default=30 * 24 * 3600),
        file_reservation_default_ttl_seconds=_int(
            _decouple_config("FILE_RESERVATION_DEFAULT_TTL_SECONDS", default="3600"), default=3600
        ),
        file_reservations_cleanup_enabled=_bool(_decouple_config("FILE_RESERVATIONS_CLEANUP_ENABLED", default="true"), default=True),
        file_reservations_cleanup_interval_seconds=_int(
            _decouple_config("FILE_RESERVATIONS_CLEANUP_INTERVAL_SECONDS", default="60"), default=60
        ),
        message_dedupe_window_seconds=_int(_decouple_config("MESSAGE_DEDUPE_WINDOW_SECONDS", default="600"), default=600),
        log_level=_decouple_config("LOG_LEVEL", default="INFO"),
        log_json_enabled=_bool(_decouple_config("LOG_JSON_ENABLED", default="false"), default=False),
        log_rich_enabled=_bool(_decouple_config("LOG_RICH_ENABLED", default="true"), default=True),
    )


class _CacheClearable(Protocol):
    def cache_clear(self) -> None: ...


def clear_settings_cache() -> None:
    """Clear the lru_cache for get_settings in a type-checker-friendly way."""
    cache_clear = getattr(cast(_CacheClearable, get_settings), "cache_clear", None)
    if callable(cache_clear):
        cache_clear()
