"""Ingestion error taxonomy.

Errors are recovered at the narrowest scope that keeps the run moving:
item -> phase -> run. Nothing here is allowed to take the process down.
"""
from typing import Optional


class IngestionError(Exception):
    """Base class for collection failures."""

    def __init__(self, message: str, original_error: Optional[Exception] = None):
        super().__init__(message)
        self.original_error = original_error


class TransientItemError(IngestionError):
    """One malformed record. Logged and skipped; never fails the run."""


class NetworkError(IngestionError):
    """Transport failure or unexpected HTTP status. Retried with backoff."""

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        original_error: Optional[Exception] = None,
    ):
        super().__init__(message, original_error)
        self.status_code = status_code


class RateLimited(NetworkError):
    """The source told us to slow down (HTTP 429)."""

    def __init__(self, message: str, retry_after: Optional[float] = None):
        super().__init__(message, status_code=429)
        self.retry_after = retry_after


class SessionError(IngestionError):
    """Browser launch or connection failure. Skips the calling phase."""


class FatalRunError(IngestionError):
    """Anything else that escaped a run. Marks the run failed, never the process."""
