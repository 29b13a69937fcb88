"""Map Notion API failures onto the sync error taxonomy."""

import logging
from functools import wraps
from typing import Any, Callable, Optional

import httpx
from notion_client.errors import APIResponseError, HTTPResponseError, RequestTimeoutError

from shared.errors import AuthError, NotFound, RateLimited, SyncError, TransportError, ValidationError

logger = logging.getLogger(__name__)

PLATFORM = "notion"

NOTION_ERROR_MESSAGES = {
    "object_not_found": "Database not found. Please verify your Database ID.",
    "unauthorized": "Invalid API key. Please check your Notion integration.",
    "restricted_resource": "This database is not shared with your integration.",
    "rate_limited": "Too many requests. Please wait a moment and try again.",
    "validation_error": "Invalid data format. Check your content.",
    "conflict_error": "A conflict occurred. Please try again.",
    "internal_server_error": "Notion is experiencing issues. Try again later.",
    "service_unavailable": "Notion is experiencing issues. Try again later.",
}

_ERROR_CLASSES = {
    "unauthorized": AuthError,
    "restricted_resource": AuthError,
    "object_not_found": NotFound,
    "rate_limited": RateLimited,
    "validation_error": ValidationError,
    "invalid_json": ValidationError,
    "invalid_request": ValidationError,
    "invalid_request_url": ValidationError,
    "conflict_error": TransportError,
    "internal_server_error": TransportError,
    "service_unavailable": TransportError,
}


def _code_of(error: APIResponseError) -> str:
    code = getattr(error, "code", None)
    return str(getattr(code, "value", code) or "")


def describe_notion_error(error: Exception) -> str:
    """Human readable message for a Notion failure."""
    if isinstance(error, APIResponseError):
        return NOTION_ERROR_MESSAGES.get(_code_of(error), str(error) or "Notion request failed")
    if isinstance(error, (RequestTimeoutError, httpx.TimeoutException)):
        return "Notion request timed out."
    return str(error) or error.__class__.__name__


def to_sync_error(error: Exception) -> SyncError:
    """
    Convert an exception raised by notion-client into a SyncError.

    Args:
        error: Exception from a Notion call

    Returns:
        SyncError subclass instance (not raised)
    """
    if isinstance(error, SyncError):
        return error

    message = describe_notion_error(error)

    if isinstance(error, APIResponseError):
        code = _code_of(error)
        status = getattr(error, "status", None)
        error_class = _ERROR_CLASSES.get(code)
        if error_class is None:
            error_class = RateLimited if status == 429 else (
                ValidationError if status == 400 else TransportError
            )
        if error_class is RateLimited:
            return RateLimited(message, retry_after=_extract_retry_after(error), status=status, platform=PLATFORM)
        return error_class(message, status=status, platform=PLATFORM)

    if isinstance(error, HTTPResponseError):
        status = getattr(error, "status", None)
        if status == 429:
            return RateLimited(message, retry_after=_extract_retry_after(error), status=status, platform=PLATFORM)
        return TransportError(message, status=status, platform=PLATFORM)

    if isinstance(error, (RequestTimeoutError, httpx.HTTPError)):
        return TransportError(message, platform=PLATFORM)

    return TransportError(f"Unexpected Notion failure: {message}", platform=PLATFORM)


def notion_errors(func: Callable) -> Callable:
    """
    Decorator translating notion-client exceptions of an async call into SyncErrors.

    Retrying is left to the dispatch queue's retry policy.
    """
    @wraps(func)
    async def wrapper(*args, **kwargs) -> Any:
        try:
            return await func(*args, **kwargs)
        except SyncError:
            raise
        except (HTTPResponseError, RequestTimeoutError, httpx.HTTPError) as e:
            mapped = to_sync_error(e)
            logger.warning(f"Notion call {func.__name__} failed ({mapped.code}): {mapped}")
            raise mapped from e

    return wrapper


def _extract_retry_after(error: HTTPResponseError) -> Optional[float]:
    """
    Extract retry-after duration from a Notion error.

    Args:
        error: Error raised by the Notion client

    Returns:
        Seconds to wait, or None if the response did not say
    """
    headers = getattr(error, "headers", None)
    if headers is None:
        return None

    retry_after = headers.get("Retry-After") or headers.get("retry-after")
    if not retry_after:
        return None
    try:
        return float(retry_after)
    except ValueError:
        logger.warning(f"Unparseable Retry-After header: {retry_after!r}")
        return None
