"""Async database engine, session handling and store-error translation.

SQLite concurrency model:
- WAL mode, so readers proceed while one writer commits
- busy_timeout makes a blocked writer wait before SQLite reports a lock
- lock errors that still surface are retried with exponential backoff + jitter
- once retries are exhausted the caller gets a recoverable DATABASE_BUSY error

The ``Store`` is an explicit handle: every engine receives the instance it
should use, so tests and embedders can run several stores side by side.
"""

from __future__ import annotations

import asyncio
import logging
import random
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager, suppress
from datetime import datetime, timezone
from functools import wraps
from pathlib import Path
from typing import Any, TypeVar

from sqlalchemy import event
from sqlalchemy.engine import make_url
from sqlalchemy.exc import ArgumentError, OperationalError, SQLAlchemyError, TimeoutError as SATimeoutError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlmodel import SQLModel

from . import models as _models  # noqa: F401  (registers tables on SQLModel.metadata)
from .config import DatabaseSettings, Settings, get_settings
from .errors import DATABASE_BUSY, CoordinationError

T = TypeVar("T")
_logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]


def _utcnow_naive() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _is_lock_error(error_msg: str) -> bool:
    """Check if error message indicates a database lock error."""
    lower_msg = error_msg.lower()
    return any(
        phrase in lower_msg
        for phrase in [
            "database is locked",
            "database is busy",
            "locked",
            "unable to open database",  # can happen during checkpoint
            "disk i/o error",
        ]
    )


def _is_pool_exhausted_error(exc: Exception) -> bool:
    """Check if exception indicates connection pool exhaustion."""
    if isinstance(exc, SATimeoutError):
        return True
    error_msg = str(exc).lower()
    return "pool" in error_msg and ("timeout" in error_msg or "exhausted" in error_msg)


def retry_on_db_lock(
    max_retries: int = 5,
    base_delay: float = 0.05,
    max_delay: float = 2.0,
) -> Callable[..., Any]:
    """Decorator to retry async functions on SQLite lock errors with exponential backoff + jitter.

    Delay for attempt ``n`` is ``min(base_delay * 2**n, max_delay)`` with ±25%
    jitter. Non-lock errors, and lock errors after ``max_retries`` attempts,
    are re-raised unchanged.
    """

    def decorator(func: Callable[..., Any]) -> Callable[..., Any]:
        @wraps(func)
        async def wrapper(*args: Any, **kwargs: Any) -> Any:
            func_name = getattr(func, "__qualname__", getattr(func, "__name__", "<callable>"))
            for attempt in range(max_retries + 1):
                try:
                    return await func(*args, **kwargs)
                except (OperationalError, SATimeoutError) as e:
                    error_msg = str(e)
                    is_lock = _is_lock_error(error_msg)
                    is_pool = _is_pool_exhausted_error(e)
                    if not (is_lock or is_pool) or attempt >= max_retries:
                        raise

                    delay = min(base_delay * (2**attempt), max_delay)
                    jitter = delay * 0.25 * (2 * random.random() - 1)
                    total_delay = max(0.01, delay + jitter)

                    error_type = "pool_exhausted" if is_pool else "db_locked"
                    _logger.warning(
                        f"db.{error_type}",
                        extra={
                            "function": func_name,
                            "attempt": attempt + 1,
                            "max_retries": max_retries,
                            "delay_seconds": round(total_delay, 3),
                            "error": error_msg[:200],
                        },
                    )
                    await asyncio.sleep(total_delay)
            raise RuntimeError("Unexpected retry loop exit")

        return wrapper

    return decorator


def store_operation(
    failure_kind: str,
    *,
    max_retries: int = 3,
    base_delay: float = 0.05,
    max_delay: float = 1.0,
) -> Callable[..., Any]:
    """Wrap an engine operation: retry lock contention, then translate store failures.

    Lock contention that outlives the retries becomes a recoverable
    ``DATABASE_BUSY``; every other SQLAlchemy error becomes a non-recoverable
    ``failure_kind``. ``CoordinationError`` passes through untouched.
    """

    def decorator(func: Callable[..., Any]) -> Callable[..., Any]:
        retrying = retry_on_db_lock(max_retries=max_retries, base_delay=base_delay, max_delay=max_delay)(func)

        @wraps(func)
        async def wrapper(*args: Any, **kwargs: Any) -> Any:
            try:
                return await retrying(*args, **kwargs)
            except CoordinationError:
                raise
            except (OperationalError, SATimeoutError) as exc:
                if _is_lock_error(str(exc)) or _is_pool_exhausted_error(exc):
                    raise CoordinationError(
                        DATABASE_BUSY,
                        "The database is busy. Retry the operation shortly.",
                        recoverable=True,
                        data={"operation": func.__name__},
                    ) from exc
                raise CoordinationError(
                    failure_kind, f"{func.__name__} failed: {exc}", recoverable=False
                ) from exc
            except SQLAlchemyError as exc:
                raise CoordinationError(
                    failure_kind, f"{func.__name__} failed: {exc}", recoverable=False
                ) from exc

        return wrapper

    return decorator


def _build_engine(settings: DatabaseSettings) -> AsyncEngine:
    """Build an async SQLAlchemy engine with SQLite-tuned pragmas.

    - journal_mode=WAL: concurrent readers alongside one writer
    - synchronous=NORMAL: durable enough under WAL, much faster than FULL
    - busy_timeout: bounded wait for the write lock
    - foreign_keys=ON: enforce references and ON DELETE CASCADE
    - cache_size=-16384: 16MB page cache
    """
    connect_args: dict[str, Any] = {}
    is_sqlite = "sqlite" in settings.url.lower()
    is_memory = False

    if is_sqlite:
        # SQLite reports "unable to open database file" when the directory is missing.
        try:
            parsed = make_url(settings.url)
        except ArgumentError:
            parsed = None
        if parsed is not None and parsed.database and parsed.database != ":memory:":
            Path(parsed.database).expanduser().resolve().parent.mkdir(parents=True, exist_ok=True)
        is_memory = parsed is None or not parsed.database or parsed.database == ":memory:"
        connect_args = {
            "timeout": max(1.0, settings.busy_timeout_ms / 1000.0),
            "check_same_thread": False,
        }

    engine_kwargs: dict[str, Any] = {
        "echo": settings.echo,
        "pool_pre_ping": True,
        "connect_args": connect_args,
    }
    if not is_memory:
        engine_kwargs.update(
            pool_size=settings.pool_size if settings.pool_size is not None else 10,
            max_overflow=settings.max_overflow if settings.max_overflow is not None else 4,
            pool_timeout=settings.pool_timeout if settings.pool_timeout is not None else 30,
            pool_recycle=1800,
            pool_reset_on_return="rollback",
        )

    engine = create_async_engine(settings.url, **engine_kwargs)

    if is_sqlite:
        busy_timeout_ms = int(settings.busy_timeout_ms)

        @event.listens_for(engine.sync_engine, "connect")
        def set_sqlite_pragma(dbapi_conn: Any, connection_record: Any) -> None:
            cursor = dbapi_conn.cursor()
            try:
                cursor.execute("PRAGMA journal_mode=WAL")
                cursor.execute("PRAGMA synchronous=NORMAL")
                cursor.execute(f"PRAGMA busy_timeout={busy_timeout_ms}")
                cursor.execute("PRAGMA foreign_keys=ON")
                cursor.execute("PRAGMA cache_size=-16384")
                cursor.execute("PRAGMA temp_store=MEMORY")
            finally:
                cursor.close()

        @event.listens_for(engine.sync_engine, "checkin")
        def on_checkin(dbapi_conn: Any, connection_record: Any) -> None:
            # PASSIVE never blocks writers; a failed checkpoint is retried on the next checkin.
            with suppress(Exception):
                cursor = dbapi_conn.cursor()
                try:
                    cursor.execute("PRAGMA wal_checkpoint(PASSIVE)")
                finally:
                    cursor.close()

    return engine


class Store:
    """Handle on one coordination database: engine, session factory and clock."""

    def __init__(self, settings: DatabaseSettings, *, clock: Clock | None = None) -> None:
        self.settings = settings
        self.engine = _build_engine(settings)
        self._session_factory = async_sessionmaker(self.engine, expire_on_commit=False, class_=AsyncSession)
        self._clock: Clock = clock or _utcnow_naive
        self._schema_ready = False
        self._schema_lock = asyncio.Lock()

    @classmethod
    def from_settings(cls, settings: Settings | None = None, *, clock: Clock | None = None) -> Store:
        resolved = settings or get_settings()
        return cls(resolved.database, clock=clock)

    def now(self) -> datetime:
        """Current time as naive UTC, read from the store's clock."""
        current = self._clock()
        if current.tzinfo is not None:
            current = current.astimezone(timezone.utc).replace(tzinfo=None)
        return current

    @property
    def database_path(self) -> Path | None:
        try:
            parsed = make_url(self.settings.url)
        except ArgumentError:
            return None
        if parsed.get_backend_name() != "sqlite":
            return None
        if not parsed.database or parsed.database == ":memory:":
            return None
        return Path(parsed.database)

    @asynccontextmanager
    async def session(self) -> AsyncIterator[AsyncSession]:
        """Provide an async session with guaranteed cleanup.

        Closing is shielded so that task cancellation cannot leave a pooled
        connection checked out mid-transaction.
        """
        session = self._session_factory()
        try:
            yield session
        finally:
            close_task = asyncio.create_task(session.close())
            try:
                await asyncio.shield(close_task)
            except BaseException:
                with suppress(BaseException):
                    await close_task
                raise

    @retry_on_db_lock(max_retries=5, base_delay=0.1, max_delay=2.0)
    async def ensure_schema(self) -> None:
        """Create tables, the FTS index and its triggers if they do not exist yet."""
        if self._schema_ready:
            return
        async with self._schema_lock:
            if self._schema_ready:
                return
            async with self.engine.begin() as conn:
                await conn.run_sync(SQLModel.metadata.create_all)
                await conn.run_sync(_setup_fts)
            self._schema_ready = True

    async def dispose(self) -> None:
        await self.engine.dispose()


def _setup_fts(connection: Any) -> None:
    connection.exec_driver_sql(
        "CREATE VIRTUAL TABLE IF NOT EXISTS fts_messages USING fts5(message_id UNINDEXED, subject, body)"
    )
    connection.exec_driver_sql(
        """
        CREATE TRIGGER IF NOT EXISTS fts_messages_ai
        AFTER INSERT ON messages
        BEGIN
            INSERT INTO fts_messages(rowid, message_id, subject, body)
            VALUES (new.id, new.id, new.subject, new.body_md);
        END;
        """
    )
    connection.exec_driver_sql(
        """
        CREATE TRIGGER IF NOT EXISTS fts_messages_ad
        AFTER DELETE ON messages
        BEGIN
            DELETE FROM fts_messages WHERE rowid = old.id;
        END;
        """
    )
    connection.exec_driver_sql(
        """
        CREATE TRIGGER IF NOT EXISTS fts_messages_au
        AFTER UPDATE ON messages
        BEGIN
            DELETE FROM fts_messages WHERE rowid = old.id;
            INSERT INTO fts_messages(rowid, message_id, subject, body)
            VALUES (new.id, new.id, new.subject, new.body_md);
        END;
        """
    )
    connection.exec_driver_sql(
        "CREATE INDEX IF NOT EXISTS idx_messages_created_ts ON messages(created_ts)"
    )
    connection.exec_driver_sql(
        "CREATE INDEX IF NOT EXISTS idx_messages_importance ON messages(importance)"
    )
    connection.exec_driver_sql(
        "CREATE INDEX IF NOT EXISTS idx_file_reservations_expires_ts ON file_reservations(expires_ts)"
    )
    connection.exec_driver_sql(
        "CREATE INDEX IF NOT EXISTS idx_message_recipients_agent ON message_recipients(agent_id)"
    )
