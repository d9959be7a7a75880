"""Orchestrator exceptions."""

from typing import Optional


class OrchestratorError(Exception):
    """Base exception for notification submission errors."""

    pass


class RequestValidationError(OrchestratorError):
    """Raised when a notification request fails validation.

    Attributes:
        errors: pydantic error details, if the failure came from model validation
    """

    def __init__(self, message: str, errors: Optional[list] = None):
        super().__init__(message)
        self.errors = errors or []

