"""Database connection and session management.

Worker threads, the orchestrator, and the reconciler all share one engine
and open short-lived sessions through get_session(). Each `with` block is
one transaction.
"""

from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, Generator

from sqlalchemy import create_engine, event, text
from sqlalchemy.engine import Engine, make_url
from sqlalchemy.exc import ArgumentError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from notifier.logging import get_logger

from .exceptions import DatabaseConnectionError, PersistenceError

_engine: Engine | None = None
_session_factory: sessionmaker | None = None

logger = get_logger(__name__, component="database")

SQLITE_BUSY_TIMEOUT_SECONDS = 30


def _is_sqlite_memory(database_url: str) -> bool:
    return database_url == "sqlite://" or database_url.endswith(":memory:")


def _engine_options(database_url: str) -> Dict[str, Any]:
    """Engine keyword arguments for the given URL.

    SQLite connections are shared across consumer threads; an in-memory
    database is pinned to a single connection so every thread sees it.
    """
    options: Dict[str, Any] = {"echo": False, "pool_pre_ping": True, "future": True}
    if database_url.startswith("sqlite"):
        options["connect_args"] = {
            "check_same_thread": False,
            "timeout": SQLITE_BUSY_TIMEOUT_SECONDS,
        }
        if _is_sqlite_memory(database_url):
            options["poolclass"] = StaticPool
    return options


def _ensure_sqlite_directory(database_url: str) -> None:
    if not database_url.startswith("sqlite:///") or _is_sqlite_memory(database_url):
        return
    directory = Path(database_url[len("sqlite:///"):]).parent
    if not directory.exists():
        logger.info(
            f"Creating database directory: {directory}",
            extra={"event": "database.directory_created"},
        )
        directory.mkdir(parents=True, exist_ok=True)


def init_database(database_url: str) -> None:
    """Create the engine, verify it, and create missing tables.

    Args:
        database_url: SQLAlchemy URL (e.g., "sqlite:///./data/notifier.db")

    Raises:
        DatabaseConnectionError: If the URL is unusable or the database
            cannot be reached
    """
    global _engine, _session_factory

    if not database_url or not isinstance(database_url, str):
        raise DatabaseConnectionError("Database URL must be a non-empty string")

    safe_url = _redact_url(database_url)
    logger.info(
        f"Initializing database {safe_url}",
        extra={"event": "database.initializing", "database_url": safe_url},
    )

    try:
        make_url(database_url)
        _ensure_sqlite_directory(database_url)

        engine = create_engine(database_url, **_engine_options(database_url))
        if database_url.startswith("sqlite"):
            _configure_sqlite(engine, wal=not _is_sqlite_memory(database_url))
        _validate_connection(engine)

        from .schema import create_schema

        create_schema(engine)
    except DatabaseConnectionError:
        raise
    except (ArgumentError, SQLAlchemyError, OSError, ImportError, ValueError) as e:
        error_msg = f"Failed to initialize database: {e}"
        logger.error(error_msg, extra={"event": "database.init_failed"}, exc_info=True)
        raise DatabaseConnectionError(error_msg) from e

    _engine = engine
    _session_factory = sessionmaker(
        bind=engine, autoflush=True, expire_on_commit=False, future=True
    )
    logger.info("Database ready", extra={"event": "database.initialised"})


def _configure_sqlite(engine: Engine, wal: bool = True) -> None:
    """Enable foreign keys (and WAL for file databases) on every connection."""

    @event.listens_for(engine, "connect")
    def set_sqlite_pragma(dbapi_conn, connection_record):
        cursor = dbapi_conn.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        if wal:
            cursor.execute("PRAGMA journal_mode=WAL")
        cursor.close()


def _validate_connection(engine: Engine) -> None:
    """Validate database connection by executing a test query.

    Raises:
        DatabaseConnectionError: If connection test fails
    """
    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1")).fetchone()
        logger.debug("Database connection validated successfully")
    except Exception as e:
        raise DatabaseConnectionError(f"Failed to validate database connection: {e}") from e


def _redact_url(url: str) -> str:
    """Hide the password in a database URL so it can be logged."""
    try:
        return make_url(url).render_as_string(hide_password=True)
    except ArgumentError:
        return url


@contextmanager
def get_session() -> Generator[Session, None, None]:
    """Yield a session that commits on clean exit and rolls back otherwise.

    Raises:
        DatabaseConnectionError: If init_database() has not been called
        PersistenceError: If the database rejects the transaction

    Example:
        >>> with get_session() as session:
        ...     notification = NotificationRepository(session).get_by_id(42)
    """
    if _session_factory is None:
        raise DatabaseConnectionError(
            "Database not initialized. Call init_database() before using get_session()"
        )

    session = _session_factory()
    try:
        yield session
        session.commit()
    except Exception as e:
        session.rollback()
        logger.warning(
            f"Transaction rolled back: {e}",
            extra={"event": "database.session.rolled_back", "error_type": type(e).__name__},
        )
        if isinstance(e, SQLAlchemyError):
            raise PersistenceError(f"Database transaction failed: {e}") from e
        raise
    finally:
        session.close()


def get_engine() -> Engine:
    """Get the database engine instance.

    Raises:
        DatabaseConnectionError: If database not initialized
    """
    if _engine is None:
        raise DatabaseConnectionError(
            "Database not initialized. Call init_database() before using get_engine()"
        )

    return _engine


def close_database() -> None:
    """Dispose of the engine. Called during shutdown."""
    global _engine, _session_factory

    if _engine is not None:
        logger.info("Closing database connections", extra={"event": "database.closing"})
        _engine.dispose()
        _engine = None
        _session_factory = None
        logger.info("Database connections closed", extra={"event": "database.closed"})
