"""Persistence layer for notification and dead-letter storage.

Public API:
    # Database initialization and session management
    - init_database(database_url: str) -> None
    - get_session() -> ContextManager[Session]
    - close_database() -> None
    - get_engine() -> Engine

    # Repository classes
    - NotificationRepository: notification rows and read tracking
    - DeadLetterRepository: append-only dead-letter entries

    # Exceptions
    - PersistenceError: Base exception for all persistence errors
    - DatabaseConnectionError: Database connection/initialization failures
    - RecordNotFoundError: Required record not found
    - DataIntegrityError: Constraint violations
    - ConcurrentUpdateError: Row changed since it was loaded

Example usage:
    >>> from notifier.persistence import init_database, get_session, NotificationRepository
    >>>
    >>> init_database("sqlite:///./data/notifier.db")
    >>>
    >>> with get_session() as session:
    ...     repo = NotificationRepository(session)
    ...     notification = repo.get_by_id(42)
"""

from .database import close_database, get_engine, get_session, init_database
from .exceptions import (
    ConcurrentUpdateError,
    DatabaseConnectionError,
    DataIntegrityError,
    PersistenceError,
    RecordNotFoundError,
)
from .repositories import DeadLetterRepository, NotificationRepository

__all__ = [
    # Database functions
    "init_database",
    "get_session",
    "close_database",
    "get_engine",
    # Repositories
    "NotificationRepository",
    "DeadLetterRepository",
    # Exceptions
    "PersistenceError",
    "DatabaseConnectionError",
    "RecordNotFoundError",
    "DataIntegrityError",
    "ConcurrentUpdateError",
]
