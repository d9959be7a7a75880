"""Context propagation for structured logging.

Fields pushed here (notification_id, channel, user_id, ...) are injected into
every log record emitted within the scope. Context lives in a ContextVar, so
each consumer thread carries its own.
"""

from contextvars import ContextVar, Token
from typing import Any, Dict, Optional


LogContextVar: ContextVar[Dict[str, Any]] = ContextVar("log_context", default={})


def get_log_context() -> Dict[str, Any]:
    """Get a copy of the current logging context."""
    return LogContextVar.get().copy()


def push_log_context(**kwargs) -> Token:
    """Merge fields into the logging context.

    Args:
        **kwargs: Key-value pairs to add to the logging context

    Returns:
        Token for pop_log_context()

    Example:
        >>> token = push_log_context(notification_id=42, channel="EMAIL")
        >>> # ... every log line now carries notification_id and channel ...
        >>> pop_log_context(token)
    """
    current = LogContextVar.get()
    return LogContextVar.set({**current, **kwargs})


def pop_log_context(token: Token) -> None:
    """Restore the logging context to the state captured by token."""
    LogContextVar.reset(token)


def clear_log_context() -> None:
    """Clear all logging context fields. Mainly for tests."""
    LogContextVar.set({})


class log_context:
    """Context manager for scoped logging context.

    Example:
        >>> with log_context(notification_id=42, channel="SMS"):
        ...     logger.info("Dispatching to provider")
    """

    def __init__(self, **kwargs):
        # None values are dropped so optional ids don't clutter every line
        self.kwargs = {key: value for key, value in kwargs.items() if value is not None}
        self.token: Optional[Token] = None

    def __enter__(self):
        self.token = push_log_context(**self.kwargs)
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        if self.token is not None:
            pop_log_context(self.token)
        return False
