"""Async database engine and session management utilities.

SQLite is tuned for many concurrent agents sharing one index:

- WAL mode so readers never block on the single writer
- passive checkpoints when connections return to the pool
- exponential backoff with jitter on "database is locked" errors

The FTS5 table ``fts_messages`` is maintained by triggers, so search is
updated inside the same transaction that writes the message row.
"""

from __future__ import annotations

import asyncio
import logging
import random
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager, suppress
from functools import wraps
from pathlib import Path
from typing import Any

from sqlalchemy import event
from sqlalchemy.engine import make_url
from sqlalchemy.exc import ArgumentError, OperationalError, TimeoutError as SATimeoutError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlmodel import SQLModel

from .config import DatabaseSettings, Settings, clear_settings_cache, get_settings

_logger = logging.getLogger(__name__)

_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None
_schema_ready = False
_schema_lock: asyncio.Lock | None = None


def _is_lock_error(error_msg: str) -> bool:
    """Check if error message indicates a database lock error."""
    lower_msg = error_msg.lower()
    return any(
        phrase in lower_msg
        for phrase in (
            "database is locked",
            "database is busy",
            "locked",
        )
    )


def _is_pool_exhausted_error(exc: Exception) -> bool:
    if isinstance(exc, SATimeoutError):
        return True
    error_msg = str(exc).lower()
    return "pool" in error_msg and ("timeout" in error_msg or "exhausted" in error_msg)


def retry_on_db_lock(
    max_retries: int = 7,
    base_delay: float = 0.05,
    max_delay: float = 8.0,
) -> Callable[..., Any]:
    """Retry an async function on SQLite lock/busy errors with exponential backoff + jitter.

    Delay for attempt ``n`` is ``min(base_delay * 2**n, max_delay)`` with +/-25%
    jitter. Non-lock errors and the final failed attempt are re-raised unchanged.
    """

    def decorator(func: Callable[..., Any]) -> Callable[..., Any]:
        @wraps(func)
        async def wrapper(*args: Any, **kwargs: Any) -> Any:
            func_name = getattr(func, "__name__", "<callable>")
            for attempt in range(max_retries + 1):
                try:
                    return await func(*args, **kwargs)
                except (OperationalError, SATimeoutError) as e:
                    error_msg = str(e)
                    is_pool = _is_pool_exhausted_error(e)
                    if not (_is_lock_error(error_msg) or is_pool) or attempt >= max_retries:
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


def _build_engine(settings: DatabaseSettings) -> AsyncEngine:
    """Build the async engine; SQLite connections get WAL and busy-timeout pragmas."""
    connect_args: dict[str, Any] = {}
    is_sqlite = "sqlite" in settings.url.lower()

    if is_sqlite:
        # SQLite reports "unable to open database file" when the directory is missing.
        with suppress(ArgumentError):
            parsed = make_url(settings.url)
            if parsed.database and parsed.database != ":memory:":
                Path(parsed.database).expanduser().resolve().parent.mkdir(parents=True, exist_ok=True)
        connect_args = {
            "timeout": 60.0,
            "check_same_thread": False,
        }

    engine_kwargs: dict[str, Any] = {
        "echo": settings.echo,
        "future": True,
        "pool_pre_ping": True,
        "pool_recycle": 1800,
        "connect_args": connect_args,
    }
    if settings.pool_size is not None:
        engine_kwargs["pool_size"] = settings.pool_size
    if settings.max_overflow is not None:
        engine_kwargs["max_overflow"] = settings.max_overflow
    if settings.pool_timeout is not None:
        engine_kwargs["pool_timeout"] = settings.pool_timeout

    engine = create_async_engine(settings.url, **engine_kwargs)

    if is_sqlite:

        @event.listens_for(engine.sync_engine, "connect")
        def set_sqlite_pragma(dbapi_conn: Any, connection_record: Any) -> None:
            cursor = dbapi_conn.cursor()
            try:
                cursor.execute("PRAGMA journal_mode=WAL")
                cursor.execute("PRAGMA synchronous=NORMAL")
                cursor.execute("PRAGMA busy_timeout=60000")
                cursor.execute("PRAGMA temp_store=MEMORY")
            finally:
                cursor.close()

        @event.listens_for(engine.sync_engine, "checkin")
        def on_checkin(dbapi_conn: Any, connection_record: Any) -> None:
            """Passive WAL checkpoint: only pages that need no waiting are flushed."""
            try:
                cursor = dbapi_conn.cursor()
                try:
                    cursor.execute("PRAGMA wal_checkpoint(PASSIVE)")
                finally:
                    cursor.close()
            except Exception:
                _logger.debug("db.checkpoint_failed", exc_info=True)

    return engine


def init_engine(settings: Settings | None = None) -> None:
    """Initialise global engine and session factory once."""
    global _engine, _session_factory
    if _engine is not None and _session_factory is not None:
        return
    resolved_settings = settings or get_settings()
    engine = _build_engine(resolved_settings.database)
    _engine = engine
    _session_factory = async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)


def get_engine() -> AsyncEngine:
    if _engine is None:
        init_engine()
    assert _engine is not None
    return _engine


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    if _session_factory is None:
        init_engine()
    assert _session_factory is not None
    return _session_factory


@asynccontextmanager
async def get_session() -> AsyncIterator[AsyncSession]:
    """Provide an async database session with guaranteed cleanup.

    The close is shielded so task cancellation cannot leak a pooled connection.
    """
    factory = get_session_factory()
    session = factory()
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


@retry_on_db_lock(max_retries=7, base_delay=0.1, max_delay=8.0)
async def ensure_schema(settings: Settings | None = None) -> None:
    """Create tables from the SQLModel metadata plus the FTS table, triggers and indexes."""
    global _schema_ready, _schema_lock
    if _schema_ready:
        return
    if _schema_lock is None:
        _schema_lock = asyncio.Lock()
    async with _schema_lock:
        if _schema_ready:
            return
        init_engine(settings)
        engine = get_engine()
        async with engine.begin() as conn:
            await conn.run_sync(SQLModel.metadata.create_all)
            await conn.run_sync(_setup_fts)
        _schema_ready = True


def reset_database_state() -> None:
    """Test helper to reset global engine/session state."""
    global _engine, _session_factory, _schema_ready, _schema_lock
    if _engine is not None:
        engine = _engine
        try:
            try:
                running = asyncio.get_running_loop()
            except RuntimeError:
                running = None
            if running is not None and running.is_running():
                # Can't block inside a running loop; dispose the pool synchronously.
                engine.sync_engine.dispose()
            else:
                asyncio.run(engine.dispose())
        except Exception:
            with suppress(Exception):
                engine.sync_engine.dispose()
    _engine = None
    _session_factory = None
    _schema_ready = False
    _schema_lock = None
    clear_settings_cache()


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
        "CREATE INDEX IF NOT EXISTS idx_messages_thread_id ON messages(thread_id)"
    )
    connection.exec_driver_sql(
        "CREATE INDEX IF NOT EXISTS idx_messages_sender_created ON messages(sender_id, created_ts DESC)"
    )
    connection.exec_driver_sql(
        "CREATE INDEX IF NOT EXISTS idx_file_reservations_expires_ts ON file_reservations(expires_ts)"
    )
    connection.exec_driver_sql(
        "CREATE INDEX IF NOT EXISTS idx_message_recipients_agent ON message_recipients(agent_id)"
    )
    connection.exec_driver_sql(
        "CREATE INDEX IF NOT EXISTS idx_agent_links_b_agent ON agent_links(project_id, b_agent_id)"
    )
    connection.exec_driver_sql(
        "CREATE INDEX IF NOT EXISTS idx_agent_links_status ON agent_links(status)"
    )

