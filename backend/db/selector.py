import logging
from pathlib import Path

from sqlalchemy import create_engine
from sqlalchemy.pool import NullPool

from config import Settings, settings as default_settings
from db.context import DatabaseContext
from db.database import BackendHandle, PostgresBackend, SQLiteBackend
from db.errors import BackendUnavailableError, DatabaseInitializationError, MigrationError
from db.migration import migrate_if_needed
from db.schema import ensure_schema

logger = logging.getLogger(__name__)


def _connect_once(settings: Settings) -> None:
    engine = None
    try:
        engine = create_engine(
            settings.postgres_url,
            poolclass=NullPool,
            connect_args={"connect_timeout": settings.DB_CONNECT_TIMEOUT_SECONDS},
        )
        with engine.connect() as conn:
            conn.exec_driver_sql("SELECT 1")
    except Exception as exc:
        raise BackendUnavailableError(f"PostgreSQL at {settings.DB_HOST}:{settings.DB_PORT} unreachable: {exc}") from exc
    finally:
        if engine is not None:
            engine.dispose()


def postgres_reachable(settings: Settings) -> bool:
    """Bounded reachability check of the preferred backend (at most one retry)."""
    if not settings.is_postgres_configured:
        logger.info("DB_HOST not set; using the embedded database")
        return False

    attempts = 1 + max(0, min(settings.DB_CONNECT_RETRIES, 1))
    for attempt in range(1, attempts + 1):
        try:
            _connect_once(settings)
            return True
        except BackendUnavailableError as exc:
            logger.warning("%s (attempt %d/%d)", exc, attempt, attempts)
    return False


def open_postgres(settings: Settings) -> PostgresBackend:
    return PostgresBackend(
        settings.postgres_url,
        connect_timeout=settings.DB_CONNECT_TIMEOUT_SECONDS,
        pool_size=settings.DB_POOL_SIZE,
        max_overflow=settings.DB_MAX_OVERFLOW,
        pool_recycle=settings.DB_POOL_RECYCLE_SECONDS,
        slow_query_ms=settings.DB_SLOW_QUERY_MS,
    )


def open_sqlite(settings: Settings) -> SQLiteBackend:
    return SQLiteBackend(
        Path(settings.DB_PATH),
        slow_query_ms=settings.DB_SLOW_QUERY_MS,
        busy_timeout=settings.DB_BUSY_TIMEOUT_SECONDS,
    )


def initialize(settings: Settings | None = None) -> DatabaseContext:
    """Pick the backend for this process, make its schema current and wrap it in a context.

    PostgreSQL is used when reachable; an existing embedded file is then migrated
    into it once. Otherwise the embedded database at DB_PATH is used.
    """
    settings = settings or default_settings
    source_path = Path(settings.DB_PATH)

    if postgres_reachable(settings):
        try:
            handle = _prepare(open_postgres(settings))
        except Exception as exc:
            raise DatabaseInitializationError(f"Could not initialize PostgreSQL schema: {exc}") from exc
        try:
            report = migrate_if_needed(source_path, handle, migrated_suffix=settings.MIGRATED_SUFFIX)
        except MigrationError:
            handle.close()
            raise
        logger.info("Using PostgreSQL at %s", handle.description)
        return DatabaseContext.create(
            handle,
            development=settings.is_development,
            migration_report=report,
            seed_admin=report is None and not source_path.exists(),
        )

    logger.warning("Falling back to embedded SQLite database at %s", source_path)
    try:
        handle = _prepare(open_sqlite(settings))
    except Exception as exc:
        raise DatabaseInitializationError(f"Could not initialize SQLite database at {source_path}: {exc}") from exc
    return DatabaseContext.create(handle, development=settings.is_development)


def _prepare(handle: BackendHandle) -> BackendHandle:
    try:
        ensure_schema(handle)
    except Exception:
        handle.close()
        raise
    return handle
