"""
Error taxonomy shared by the store, repository and HTTP boundary.

Each error carries the HTTP status the API answers with; the FastAPI
exception handler in app.py renders them as ``{"error": message}``.
"""

from fastapi import status


class OrderingError(Exception):
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(OrderingError):
    """Bad client input: missing order fields, unknown status, bad JSON."""

    status_code = status.HTTP_400_BAD_REQUEST


class AuthError(OrderingError):
    status_code = status.HTTP_401_UNAUTHORIZED


class NotFoundError(OrderingError):
    status_code = status.HTTP_404_NOT_FOUND


class KitchenClosedError(OrderingError):
    status_code = status.HTTP_409_CONFLICT


class ConfigError(OrderingError):
    """Missing backing-store or manager secret configuration."""


class UpstreamError(OrderingError):
    """Backing store failure on the write path."""


class WriteConflictError(UpstreamError):
    """Conditional document write lost against a concurrent writer."""
