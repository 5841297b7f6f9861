"""CalDAV transport errors mapped from HTTP status codes and client exceptions."""

from __future__ import annotations

from collections.abc import Mapping

from taskbridge.core.errors import ConfigurationError, TransportError


class CalDAVError(TransportError):
    """A CalDAV request failed."""

    def __init__(self, message: str, status: int | None = None):
        super().__init__(message)
        self.status = status


class CalDAVAuthError(CalDAVError, ConfigurationError):
    """Credentials were rejected (401/403). Fatal to the cycle."""


class CalDAVNetworkError(CalDAVError):
    """The server could not be reached."""


class CalDAVTimeoutError(CalDAVError):
    """The request timed out."""


class CalDAVNotFoundError(CalDAVError):
    """The resource does not exist (404)."""


class CalDAVServerError(CalDAVError):
    """The server answered with an unexpected status, usually 5xx."""


class CalDAVConflictError(CalDAVError):
    """The entry changed on the server since its revision tag was read (412)."""

    def __init__(self, message: str, current_etag: str | None = None):
        super().__init__(message, status=412)
        self.current_etag = current_etag


class CalDAVRateLimitError(CalDAVError):
    """The server asked us to slow down (429)."""

    def __init__(self, message: str, retry_after: float | None = None):
        super().__init__(message, status=429)
        self.retry_after = retry_after


def _parse_retry_after(value: str | None) -> float | None:
    if not value:
        return None
    try:
        return max(0.0, float(value))
    except ValueError:
        return None


def error_for_status(
    status: int,
    message: str,
    headers: Mapping[str, str] | None = None,
) -> CalDAVError:
    """Build the error matching an HTTP status code."""
    headers = headers or {}
    if status in (401, 403):
        return CalDAVAuthError(f"{message}: authentication failed ({status})", status)
    if status == 404:
        return CalDAVNotFoundError(f"{message}: not found", status)
    if status == 412:
        return CalDAVConflictError(f"{message}: entry was modified on the server", headers.get("ETag"))
    if status == 429:
        return CalDAVRateLimitError(
            f"{message}: rate limited",
            _parse_retry_after(headers.get("Retry-After")),
        )
    return CalDAVServerError(f"{message}: server returned {status}", status)


def is_retryable(exc: BaseException) -> bool:
    """Network, timeout, rate-limit and 5xx errors may succeed on a retry."""
    if isinstance(exc, (CalDAVNetworkError, CalDAVTimeoutError, CalDAVRateLimitError)):
        return True
    if isinstance(exc, CalDAVServerError):
        return exc.status is None or exc.status >= 500
    return False
