"""Delivery-side decisions: error classification, retries, workers and reconciliation.

Only the classifier is re-exported here; providers depend on it, and the
worker, retry and reconciler modules depend on providers.
"""

from .classifier import ErrorClassifier, build_error_message, classify_error, is_retriable_exception

__all__ = [
    "ErrorClassifier",
    "classify_error",
    "build_error_message",
    "is_retriable_exception",
]
