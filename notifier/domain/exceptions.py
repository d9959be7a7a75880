"""Domain-level exceptions."""


class InvalidStatusTransition(Exception):
    """Raised when a lifecycle change is attempted on a terminal notification.

    DELIVERED, FAILED_PERMANENT and FAILED_MAX_RETRY are write-once: once a
    notification reaches one of them its status never changes again.
    """

    pass
