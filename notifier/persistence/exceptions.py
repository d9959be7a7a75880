"""Persistence layer exceptions.

All persistence exceptions inherit from PersistenceError so callers can
treat any storage failure uniformly.
"""


class PersistenceError(Exception):
    """Base exception for all persistence layer errors."""

    pass


class DatabaseConnectionError(PersistenceError):
    """Raised when database connection or initialization fails.

    Examples:
    - Invalid database URL format
    - Database file not accessible
    - get_session() called before init_database()
    """

    pass


class RecordNotFoundError(PersistenceError):
    """Raised when an update targets a row that does not exist.

    Lookups return None instead of raising this.
    """

    pass


class DataIntegrityError(PersistenceError):
    """Raised when a database constraint is violated.

    The common case is a second dead-letter entry for the same notification.
    """

    pass


class ConcurrentUpdateError(PersistenceError):
    """Raised when a conditional write finds the row already moved on.

    The row was finalized, or its retry_count changed, after it was loaded.
    """

    pass
