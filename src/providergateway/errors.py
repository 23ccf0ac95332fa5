"""Error taxonomy for the provider gateway.

Every backend failure is mapped to a :class:`ProviderError` tagged with an
:class:`ErrorKind` at the adapter boundary, so callers never inspect raw HTTP
or JSON errors.  Retryability is derived from the kind alone.
"""

import time
from email.utils import parsedate_to_datetime
from enum import Enum

import httpx


class GatewayError(Exception):
    """Base exception for everything raised by the gateway."""


class ErrorKind(str, Enum):
    AUTHENTICATION = "authentication"
    RATE_LIMIT = "rate_limit"
    QUOTA_EXCEEDED = "quota_exceeded"
    INVALID_REQUEST = "invalid_request"
    SERVER_ERROR = "server_error"
    TIMEOUT = "timeout"
    NETWORK_ERROR = "network_error"
    UNKNOWN = "unknown"


RETRYABLE_KINDS: frozenset[ErrorKind] = frozenset(
    {
        ErrorKind.RATE_LIMIT,
        ErrorKind.SERVER_ERROR,
        ErrorKind.TIMEOUT,
        ErrorKind.NETWORK_ERROR,
    }
)


def is_retryable(kind: ErrorKind, retry_after: float | None = None) -> bool:
    """Return whether an error of *kind* is worth retrying.

    ``quota_exceeded`` is only retryable when the backend (or the local rate
    limiter) told us when the quota resets.
    """
    if kind is ErrorKind.QUOTA_EXCEEDED:
        return retry_after is not None
    return kind in RETRYABLE_KINDS


class ProviderError(GatewayError):
    """A classified backend failure.

    Attributes:
        kind: The :class:`ErrorKind` classification.
        message: Human-readable error description.
        backend: Backend name (e.g. ``"claude"``).  ``None`` when unknown.
        retry_after: Seconds until the backend expects to accept requests
            again, when known.
        status_code: HTTP status returned by the backend, if any.
        request_id: Gateway correlation ID of the failed call, if any.
        original_error: The upstream exception that caused this error.
    """

    def __init__(
        self,
        kind: ErrorKind,
        message: str,
        backend: str | None = None,
        *,
        retry_after: float | None = None,
        status_code: int | None = None,
        request_id: str | None = None,
        original_error: Exception | None = None,
    ) -> None:
        self.kind = ErrorKind(kind)
        self.message = message
        self.backend = backend
        self.retry_after = retry_after
        self.status_code = status_code
        self.request_id = request_id
        self.original_error = original_error
        super().__init__(message)

    @property
    def retryable(self) -> bool:
        return is_retryable(self.kind, self.retry_after)

    def __str__(self) -> str:
        prefix = f"{self.backend} " if self.backend else ""
        return f"{prefix}{self.kind.value}: {self.message}"

    def __repr__(self) -> str:
        return (
            f"{type(self).__name__}(kind={self.kind.value!r}, message={self.message!r}, "
            f"backend={self.backend!r}, retry_after={self.retry_after!r})"
        )


class CircuitOpenError(ProviderError):
    """Raised without contacting the backend while its circuit is open.

    Never retried inside the same call; ``retry_after`` holds the remaining
    cool-down.
    """

    def __init__(self, backend: str, retry_after: float) -> None:
        super().__init__(
            ErrorKind.SERVER_ERROR,
            f"circuit open for backend '{backend}'",
            backend,
            retry_after=retry_after,
        )


class ProviderNotFoundError(GatewayError):
    """Raised when a backend name has no registered constructor or instance."""

    def __init__(self, name: str, known: list[str] | None = None) -> None:
        self.name = name
        detail = f"; known: {sorted(known)}" if known is not None else ""
        super().__init__(f"provider '{name}' not found{detail}")


def invalid_request(message: str, backend: str | None = None) -> ProviderError:
    return ProviderError(ErrorKind.INVALID_REQUEST, message, backend)


# ---------------------------------------------------------------------------
# Classification helpers
# ---------------------------------------------------------------------------

_STATUS_KINDS: dict[int, ErrorKind] = {
    400: ErrorKind.INVALID_REQUEST,
    401: ErrorKind.AUTHENTICATION,
    402: ErrorKind.QUOTA_EXCEEDED,
    403: ErrorKind.AUTHENTICATION,
    404: ErrorKind.INVALID_REQUEST,
    408: ErrorKind.TIMEOUT,
    413: ErrorKind.INVALID_REQUEST,
    422: ErrorKind.INVALID_REQUEST,
    429: ErrorKind.RATE_LIMIT,
    504: ErrorKind.TIMEOUT,
}


def kind_for_status(status_code: int) -> ErrorKind:
    """Classify an HTTP status code.

    Mapping table:

    ================  ===================
    Status            Kind
    ================  ===================
    401, 403          authentication
    402               quota_exceeded
    408, 504          timeout
    429               rate_limit
    400/404/413/422   invalid_request
    other 5xx, 529    server_error
    anything else     unknown
    ================  ===================
    """
    if status_code in _STATUS_KINDS:
        return _STATUS_KINDS[status_code]
    if 500 <= status_code < 600:
        return ErrorKind.SERVER_ERROR
    return ErrorKind.UNKNOWN


def parse_retry_after(value: str | None, now: float | None = None) -> float | None:
    """Parse a ``Retry-After`` header given as seconds or an HTTP date."""
    if not value:
        return None
    value = value.strip()
    try:
        return max(0.0, float(value))
    except ValueError:
        pass
    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    current = time.time() if now is None else now
    return max(0.0, when.timestamp() - current)


def error_from_response(
    response: httpx.Response,
    backend: str,
    message: str | None = None,
) -> ProviderError:
    """Build a :class:`ProviderError` from a non-2xx HTTP response."""
    kind = kind_for_status(response.status_code)
    retry_after = parse_retry_after(response.headers.get("retry-after"))
    if message is None:
        try:
            body = response.text
        except httpx.ResponseNotRead:
            body = ""
        message = f"HTTP {response.status_code}: {body[:500]}" if body else f"HTTP {response.status_code}"
    return ProviderError(
        kind,
        message,
        backend,
        retry_after=retry_after,
        status_code=response.status_code,
    )


def error_from_transport(exc: Exception, backend: str) -> ProviderError:
    """Map an ``httpx`` transport exception to a typed error."""
    if isinstance(exc, ProviderError):
        return exc
    if isinstance(exc, httpx.TimeoutException):
        return ProviderError(
            ErrorKind.TIMEOUT,
            f"request to {backend} timed out: {exc}",
            backend,
            original_error=exc,
        )
    if isinstance(exc, httpx.TransportError):
        return ProviderError(
            ErrorKind.NETWORK_ERROR,
            f"network error talking to {backend}: {exc}",
            backend,
            original_error=exc,
        )
    return ProviderError(
        ErrorKind.UNKNOWN,
        f"unexpected error from {backend}: {exc}",
        backend,
        original_error=exc,
    )


_ERROR_TYPE_KINDS: dict[str, ErrorKind] = {
    "authentication_error": ErrorKind.AUTHENTICATION,
    "permission_error": ErrorKind.AUTHENTICATION,
    "invalid_request_error": ErrorKind.INVALID_REQUEST,
    "not_found_error": ErrorKind.INVALID_REQUEST,
    "request_too_large": ErrorKind.INVALID_REQUEST,
    "rate_limit_error": ErrorKind.RATE_LIMIT,
    "api_error": ErrorKind.SERVER_ERROR,
    "overloaded_error": ErrorKind.SERVER_ERROR,
    "timeout_error": ErrorKind.TIMEOUT,
}


def error_from_payload(error: dict, backend: str, status_code: int | None = None) -> ProviderError:
    """Build a :class:`ProviderError` from an ``{"type": ..., "message": ...}`` body.

    The ``type`` string wins over *status_code* when it is recognised.
    """
    error_type = str(error.get("type") or error.get("status") or "")
    kind = _ERROR_TYPE_KINDS.get(error_type)
    if kind is None:
        kind = kind_for_status(status_code) if status_code is not None else ErrorKind.UNKNOWN
    message = str(error.get("message") or error_type or "unknown error")
    return ProviderError(kind, message, backend, status_code=status_code)
