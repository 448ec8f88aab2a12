"""
Custom exception classes for unified error handling.
"""

from fastapi import HTTPException, status


class AppBaseError(Exception):
    """Base exception for all application errors."""

    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR

    def __init__(self, message: str, detail: str | None = None):
        self.message = message
        self.detail = detail
        super().__init__(message)


class ConfigurationError(AppBaseError):
    """Raised when a collaborator's required credentials are missing. Never retried."""
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR


class ValidationError(AppBaseError):
    """Raised for malformed or missing request fields, before any work starts."""
    status_code = status.HTTP_400_BAD_REQUEST


class NotFoundError(ValidationError):
    """Raised when a referenced job or source does not exist."""
    status_code = status.HTTP_404_NOT_FOUND


class FetchTimeoutError(AppBaseError):
    """Raised when fetching one source exceeds its deadline."""
    status_code = status.HTTP_504_GATEWAY_TIMEOUT

    def __init__(self, locator: str, timeout: float):
        super().__init__(
            message=f"Fetch timed out after {timeout:g}s",
            detail=locator,
        )


class ExtractionError(AppBaseError):
    """Raised when a source cannot be fetched or decoded into text."""
    status_code = status.HTTP_422_UNPROCESSABLE_ENTITY


class EmbeddingServiceError(AppBaseError):
    """Raised when the embedding service fails or returns malformed vectors."""
    status_code = status.HTTP_502_BAD_GATEWAY


class IndexStoreError(AppBaseError):
    """Raised when a read or write against the metadata/chunk store fails."""
    status_code = status.HTTP_502_BAD_GATEWAY


# ── Utility: convert to HTTPException ────────────────────

def app_error_to_http(error: AppBaseError, status_code: int | None = None) -> HTTPException:
    """Convert an AppBaseError to an HTTPException with consistent JSON body."""
    return HTTPException(
        status_code=status_code or error.status_code,
        detail={
            "error": error.message,
            "detail": error.detail,
            "type": type(error).__name__,
        },
    )
