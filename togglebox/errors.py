"""
Error types for the ToggleBox SDK.

Only explicit operations (refresh, check_connection, flush_stats) surface
these to callers; evaluation and tracking paths log and fall back instead.
"""

from enum import Enum
from typing import Optional

import httpx


class ErrorCategory(str, Enum):
    """Categories of errors for classification."""

    CONFIGURATION = "configuration"
    AUTH = "auth"
    NETWORK = "network"
    RATE_LIMIT = "rate_limit"
    VALIDATION = "validation"
    NOT_FOUND = "not_found"
    INTERNAL = "internal"
    UNKNOWN = "unknown"


class ToggleBoxError(Exception):
    """
    Base exception for all ToggleBox SDK errors.

    Subclasses fix ``category``, ``retryable`` and a default message as class
    attributes; any of them can still be overridden per instance.
    """

    category = ErrorCategory.UNKNOWN
    retryable = False
    default_message = "ToggleBox request failed"

    def __init__(
        self,
        message: Optional[str] = None,
        *,
        status_code: Optional[int] = None,
        retryable: Optional[bool] = None,
        category: Optional[ErrorCategory] = None,
    ):
        self.message = message or self.default_message
        super().__init__(self.message)
        self.status_code = status_code
        if retryable is not None:
            self.retryable = retryable
        if category is not None:
            self.category = category

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(message={self.message!r}, category={self.category})"


class ConfigurationError(ToggleBoxError):
    """Raised when the client is constructed with an invalid configuration."""

    category = ErrorCategory.CONFIGURATION
    default_message = "Invalid configuration"


class AuthenticationError(ToggleBoxError):
    """The API key was rejected (401/403)."""

    category = ErrorCategory.AUTH
    default_message = "Authentication failed"


class NetworkError(ToggleBoxError):
    """The backend could not be reached or the request timed out."""

    category = ErrorCategory.NETWORK
    retryable = True
    default_message = "Network error"


class RateLimitError(ToggleBoxError):
    """Rate limited (429). ``retry_after`` is in seconds when the server sent it."""

    category = ErrorCategory.RATE_LIMIT
    retryable = True
    default_message = "Rate limit exceeded"

    def __init__(self, message: Optional[str] = None, retry_after: Optional[int] = None):
        super().__init__(message, status_code=429)
        self.retry_after = retry_after


class ValidationError(ToggleBoxError):
    """
    Raised when a payload does not have the expected shape.

    Distinct from transient failures: retrying will not help, and the
    previously adopted definitions stay active.
    """

    category = ErrorCategory.VALIDATION
    default_message = "Validation error"


class NotFoundError(ToggleBoxError):
    """Platform, environment or version does not exist (404)."""

    category = ErrorCategory.NOT_FOUND
    default_message = "Resource not found"


class InternalError(ToggleBoxError):
    """The API failed on its side (5xx)."""

    category = ErrorCategory.INTERNAL
    retryable = True
    default_message = "Internal server error"


def error_for_status(
    status_code: int,
    message: Optional[str] = None,
    retry_after: Optional[int] = None,
) -> ToggleBoxError:
    """
    Map a non-success HTTP status onto the matching error type.

    Request rejections such as 400 and 422 stay plain ``ToggleBoxError``;
    ``ValidationError`` is reserved for payloads the SDK could not accept.
    """
    if status_code in (401, 403):
        return AuthenticationError(message, status_code=status_code)
    if status_code == 404:
        return NotFoundError(message, status_code=404)
    if status_code == 429:
        return RateLimitError(message, retry_after=retry_after)
    if 500 <= status_code < 600:
        return InternalError(message, status_code=status_code)
    return ToggleBoxError(message, status_code=status_code)


def classify_error(error: Exception, status_code: Optional[int] = None) -> ToggleBoxError:
    """
    Classify an exception into a ToggleBoxError.

    Args:
        error: The original exception
        status_code: Optional HTTP status code

    Returns:
        A classified ToggleBoxError
    """
    if isinstance(error, ToggleBoxError):
        return error

    message = str(error) or error.__class__.__name__

    if isinstance(error, (httpx.TransportError, TimeoutError, ConnectionError)):
        return NetworkError(message)

    if status_code:
        return error_for_status(status_code, message)

    return ToggleBoxError(message)
