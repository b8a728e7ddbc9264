"""
Exception taxonomy for the crawler.
"""

from typing import Mapping, Optional

from .models import ErrorType


class CrawlError(Exception):
    """Base class for crawler errors."""
    error_type = ErrorType.UNKNOWN
    elapsed_ms = 0.0


class FetchTimeout(CrawlError):
    error_type = ErrorType.TIMEOUT


class ConnectionFailure(CrawlError):
    error_type = ErrorType.CONNECTION_ERROR


class UnknownFetchError(CrawlError):
    error_type = ErrorType.UNKNOWN


class ItemValidationError(CrawlError):
    """Malformed item or response envelope from the source API."""
    error_type = ErrorType.VALIDATION


class DuplicateKey(CrawlError):
    """Unique constraint conflict on write. Expected, counted and skipped."""
    error_type = ErrorType.DUPLICATE_KEY


class StoreUnavailable(CrawlError):
    """The document store cannot be reached."""
    error_type = ErrorType.STORE_UNAVAILABLE


class CrawlAborted(CrawlError):
    """Raised when an error storm forces the worker to give up the session."""
    error_type = ErrorType.UNKNOWN


class SourceHttpError(CrawlError):
    """
    Non-success HTTP response from the source API.

    Carries status, headers and a body excerpt so the rate controller can
    classify it.
    """

    def __init__(
        self,
        status_code: int,
        url: str,
        headers: Optional[Mapping[str, str]] = None,
        body: str = ""
    ):
        super().__init__(f"HTTP {status_code} from {url}")
        self.status_code = status_code
        self.url = url
        self.headers = dict(headers or {})
        self.body = body[:500]


class RateLimited(SourceHttpError):
    """HTTP 429 or 509."""
    error_type = ErrorType.RATE_LIMIT


class ServiceUnavailable(SourceHttpError):
    """HTTP 502, 503 or 504."""
    error_type = ErrorType.SERVICE_UNAVAILABLE


def http_error(
    status_code: int,
    url: str,
    headers: Optional[Mapping[str, str]] = None,
    body: str = ""
) -> SourceHttpError:
    """Build the SourceHttpError subclass matching a status code."""
    if status_code in (429, 509):
        cls = RateLimited
    elif status_code in (502, 503, 504):
        cls = ServiceUnavailable
    else:
        cls = SourceHttpError
    return cls(status_code, url, headers, body)
