"""Error taxonomy shared by the source adapters, the dispatch queue and the sync engine."""

from typing import Optional


class SyncError(Exception):
    """Base class for every failure the sync pipeline knows how to classify."""

    code = "sync_error"
    retryable = False

    def __init__(
        self,
        message: str,
        status: Optional[int] = None,
        platform: Optional[str] = None
    ):
        super().__init__(message)
        self.message = message
        self.status = status
        self.platform = platform

    def __str__(self) -> str:
        if self.platform:
            return f"[{self.platform}] {self.message}"
        return self.message


class TransportError(SyncError):
    """Network failure, timeout or 5xx response."""

    code = "transport_error"
    retryable = True


class AuthError(SyncError):
    """Session expired or access denied. The user has to re-authenticate."""

    code = "auth_error"

    def __init__(self, message: str = "Session expired, please re-authenticate", **kwargs):
        super().__init__(message, **kwargs)


class RateLimited(SyncError):
    """Remote side asked us to slow down."""

    code = "rate_limited"
    retryable = True

    def __init__(self, message: str = "Rate limited", retry_after: Optional[float] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.retry_after = retry_after


class ValidationError(SyncError):
    """Malformed payload or rejected request. The item is skipped."""

    code = "validation_error"


class NotFound(SyncError):
    """Endpoint or resource missing. Moves the adapter to its next endpoint variant."""

    code = "not_found"


class QueueTimeout(SyncError):
    """Dispatch waited too long in the queue and was discarded."""

    code = "queue_timeout"

    def __init__(self, message: str = "Request timeout: took too long in queue", **kwargs):
        super().__init__(message, **kwargs)


class DegradedExtraction:
    """Marker attached to a result produced by DOM extraction instead of the API.

    Not raised; carried on ThreadDetail so callers can surface the lower fidelity.
    """

    code = "degraded_extraction"

    def __init__(self, extractor: str, reason: Optional[str] = None):
        self.extractor = extractor
        self.reason = reason

    def __repr__(self) -> str:
        return f"DegradedExtraction(extractor={self.extractor!r}, reason={self.reason!r})"

    def __eq__(self, other) -> bool:
        if not isinstance(other, DegradedExtraction):
            return NotImplemented
        return self.extractor == other.extractor and self.reason == other.reason


def error_from_status(
    status: int,
    message: Optional[str] = None,
    platform: Optional[str] = None,
    retry_after: Optional[float] = None
) -> SyncError:
    """
    Map an HTTP status code onto the error taxonomy.

    Args:
        status: HTTP status code of the failed response
        message: Optional message, defaults to "HTTP <status>"
        platform: Platform the request was sent to
        retry_after: Seconds the server asked us to wait (429 only)

    Returns:
        A SyncError subclass instance (not raised)
    """
    message = message or f"HTTP {status}"

    if status in (401, 403):
        return AuthError(f"{message}: session expired, please re-authenticate", status=status, platform=platform)
    if status in (404, 410):
        return NotFound(message, status=status, platform=platform)
    if status == 429:
        return RateLimited(message, retry_after=retry_after, status=status, platform=platform)
    if status in (400, 422):
        return ValidationError(message, status=status, platform=platform)
    return TransportError(message, status=status, platform=platform)
