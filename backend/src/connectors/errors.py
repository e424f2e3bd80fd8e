"""Connector error taxonomy and retry classification.

Adapters raise the typed subclasses where they can tell what went wrong.
Anything else is a plain ConnectorError and is classified by HTTP status,
then by message keywords.
"""

from typing import Optional

from domain.results import ErrorKind, PipelineError


class ConnectorError(Exception):
    """Base exception for marketplace/ERP adapter failures.

    Attributes:
        status_code: HTTP status returned by the remote system, if any
        error_code: Vendor error code, if any
    """

    kind: Optional[ErrorKind] = None
    code: str = "CONNECTOR_ERROR"

    def __init__(self, message: str, status_code: Optional[int] = None, error_code: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.error_code = error_code


# Retryable

class NetworkError(ConnectorError):
    kind = ErrorKind.RETRYABLE
    code = "NETWORK_ERROR"


class ConnectorTimeoutError(ConnectorError):
    kind = ErrorKind.RETRYABLE
    code = "TIMEOUT"


class RateLimitError(ConnectorError):
    kind = ErrorKind.RETRYABLE
    code = "RATE_LIMITED"

    def __init__(self, message: str, retry_after_seconds: Optional[int] = None, **kwargs):
        kwargs.setdefault("status_code", 429)
        super().__init__(message, **kwargs)
        self.retry_after_seconds = retry_after_seconds


class ServerError(ConnectorError):
    kind = ErrorKind.RETRYABLE
    code = "SERVER_ERROR"


# Fatal

class AuthenticationError(ConnectorError):
    kind = ErrorKind.FATAL
    code = "AUTH_FAILED"


class ForbiddenError(ConnectorError):
    kind = ErrorKind.FATAL
    code = "FORBIDDEN"


class MalformedPayloadError(ConnectorError):
    kind = ErrorKind.FATAL
    code = "MALFORMED_PAYLOAD"


RETRYABLE_KEYWORDS = (
    'connection', 'timeout', 'timed out', 'unreachable', 'network',
    'socket', 'rate limit', 'too many requests', 'temporarily', 'unavailable',
)

FATAL_KEYWORDS = (
    'validation', 'invalid', 'authentication', 'unauthorized', 'forbidden',
    'permission', 'not found', 'missing', 'malformed',
)


def classify_status_code(status_code: Optional[int]) -> Optional[ErrorKind]:
    if status_code is None:
        return None
    if status_code in (408, 429) or status_code >= 500:
        return ErrorKind.RETRYABLE
    if 400 <= status_code < 500:
        return ErrorKind.FATAL
    return None


def classify_message(message: str) -> ErrorKind:
    """Classify an error message by keywords.

    Unknown errors are not retried.
    """
    text = (message or "").lower()

    if any(keyword in text for keyword in RETRYABLE_KEYWORDS):
        return ErrorKind.RETRYABLE

    if any(keyword in text for keyword in FATAL_KEYWORDS):
        return ErrorKind.FATAL

    return ErrorKind.FATAL


def classify_error(error: Exception) -> ErrorKind:
    """Determine whether an adapter failure is retryable.

    Args:
        error: Exception raised by an adapter call

    Returns:
        ErrorKind.RETRYABLE or ErrorKind.FATAL
    """
    if isinstance(error, ConnectorError):
        if error.kind is not None:
            return error.kind
        by_status = classify_status_code(error.status_code)
        if by_status is not None:
            return by_status
        return classify_message(error.message)

    # Transport-level failures surfaced by HTTP clients
    if isinstance(error, (TimeoutError, ConnectionError)):
        return ErrorKind.RETRYABLE

    return classify_message(str(error))


def error_code_for(error: Exception) -> str:
    if isinstance(error, ConnectorError):
        return error.error_code or error.code
    if isinstance(error, TimeoutError):
        return ConnectorTimeoutError.code
    if isinstance(error, ConnectionError):
        return NetworkError.code
    return type(error).__name__.upper()


def to_pipeline_error(error: Exception) -> PipelineError:
    """Convert an adapter failure into the structured error recorded on entities."""
    detail = {}
    if isinstance(error, ConnectorError) and error.status_code is not None:
        detail["status_code"] = error.status_code
    if isinstance(error, RateLimitError) and error.retry_after_seconds is not None:
        detail["retry_after_seconds"] = error.retry_after_seconds
    return PipelineError(
        kind=classify_error(error),
        code=error_code_for(error),
        message=str(error),
        detail=detail,
    )
