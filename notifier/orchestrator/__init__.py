"""Entry point for submitting notifications and reading them back."""

from .exceptions import OrchestratorError, RequestValidationError
from .service import NotificationService, build_request

__all__ = [
    "NotificationService",
    "build_request",
    "OrchestratorError",
    "RequestValidationError",
]
