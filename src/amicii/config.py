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
_DEFAULT_DATABASE_PATH: Final[Path] = Path("~/.amicii/storage.sqlite3")
_ACK_POLICIES: Final[frozenset[str]] = frozenset({"overwrite", "first"})


def _build_decouple_config() -> DecoupleConfig:
    # Missing .env (CI, tests, fresh checkouts) falls back to os.environ only.
    try:
        return DecoupleConfig(RepositoryEnv(str(_DOTENV_PATH)))
    except FileNotFoundError:
        return DecoupleConfig(RepositoryEmpty())


_decouple_config: Final[DecoupleConfig] = _build_decouple_config()


@dataclass(slots=True, frozen=True)
class HttpSettings:
    """HTTP boundary settings."""

    host: str
    port: int


@dataclass(slots=True, frozen=True)
class DatabaseSettings:
    """Database connectivity settings."""

    url: str
    echo: bool
    pool_size: int | None
    max_overflow: int | None
    pool_timeout: int | None
    busy_timeout_ms: int


@dataclass(slots=True, frozen=True)
class RetentionSettings:
    """Retention sweeper schedule and horizon."""

    days: int
    sweep_enabled: bool
    interval_seconds: int


@dataclass(slots=True, frozen=True)
class Settings:
    """Top-level application settings."""

    environment: str
    http: HttpSettings
    database: DatabaseSettings
    retention: RetentionSettings
    reservation_default_ttl_seconds: int
    # "overwrite": every acknowledge call stamps a new ack_ts
    # "first": the first ack_ts is kept
    ack_timestamp_policy: str
    log_level: str
    log_json_enabled: bool
    log_rich_enabled: bool

    @property
    def retention_days(self) -> int:
        return self.retention.days


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


def _default_database_url() -> str:
    return f"sqlite+aiosqlite:///{_DEFAULT_DATABASE_PATH.expanduser()}"


def _ack_policy(value: str) -> str:
    v = (value or "").strip().lower()
    if v in _ACK_POLICIES:
        return v
    return "overwrite"


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return cached application settings."""
    environment = _decouple_config("APP_ENVIRONMENT", default="development")

    http_settings = HttpSettings(
        host=_decouple_config("HTTP_HOST", default="127.0.0.1"),
        port=_int(_decouple_config("HTTP_PORT", default="8765"), default=8765),
    )

    database_settings = DatabaseSettings(
        url=_decouple_config("DATABASE_URL", default=_default_database_url()),
        echo=_bool(_decouple_config("DATABASE_ECHO", default="false"), default=False),
        pool_size=_int_optional(_decouple_config("DATABASE_POOL_SIZE", default="")),
        max_overflow=_int_optional(_decouple_config("DATABASE_MAX_OVERFLOW", default="")),
        pool_timeout=_int_optional(_decouple_config("DATABASE_POOL_TIMEOUT", default="")),
        busy_timeout_ms=_int(_decouple_config("DATABASE_BUSY_TIMEOUT_MS", default="5000"), default=5000),
    )

    retention_settings = RetentionSettings(
        days=max(0, _int(_decouple_config("RETENTION_DAYS", default="30"), default=30)),
        sweep_enabled=_bool(_decouple_config("RETENTION_SWEEP_ENABLED", default="true"), default=True),
        interval_seconds=max(
            1, _int(_decouple_config("RETENTION_INTERVAL_SECONDS", default="21600"), default=21600)
        ),
    )

    return Settings(
        environment=environment,
        http=http_settings,
        database=database_settings,
        retention=retention_settings,
        reservation_default_ttl_seconds=_int(
            _decouple_config("RESERVATION_DEFAULT_TTL_SECONDS", default="3600"), default=3600
        ),
        ack_timestamp_policy=_ack_policy(_decouple_config("ACK_TIMESTAMP_POLICY", default="overwrite")),
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
