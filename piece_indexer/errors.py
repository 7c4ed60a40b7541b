"""
Piece Indexer Errors

Closed set of failures a chain step can hit:
- HttpStatusError: provider answered with a non-2xx status
- NetworkError: connection refused, DNS failure, reset
- FetchTimeoutError: request exceeded its deadline
- MetadataDecodeError / MalformedResponseError: payload could not be decoded

describe_failure() turns any of them into the human-readable reason stored
in WalkerState.status.
"""

from typing import Optional


class FetchError(Exception):
    """Base class for failures while fetching from an index provider."""

    def __init__(self, url: str, message: str):
        super().__init__(message)
        self.url = url


class HttpStatusError(FetchError):
    """Non-2xx response from an index provider."""

    def __init__(self, status: int, message: str, url: str):
        super().__init__(url, f"Cannot fetch {url} ({status}): {message}")
        self.status = status
        self.server_message = message


class NetworkError(FetchError):
    """Connection-level failure (refused, DNS, reset)."""

    def __init__(self, url: str, cause: Optional[BaseException] = None):
        super().__init__(url, f"Cannot fetch {url}: {cause or 'fetch failed'}")
        self.cause = cause


class FetchTimeoutError(FetchError):
    """Request to an index provider exceeded its timeout."""

    def __init__(self, url: str, timeout: Optional[float] = None):
        detail = f" after {timeout}s" if timeout else ""
        super().__init__(url, f"Request to {url} timed out{detail}")
        self.timeout = timeout


class DecodeError(Exception):
    """Base class for payloads that cannot be decoded."""

    what = "payload"

    def __init__(self, cause):
        super().__init__(f"Cannot decode {self.what}: {cause}")
        self.cause = cause


class MetadataDecodeError(DecodeError):
    """Advertisement metadata is malformed."""

    what = "advertisement metadata"


class MalformedResponseError(DecodeError):
    """Provider response is not the JSON document we expected."""

    what = "provider response"

    def __init__(self, url: str, cause):
        super().__init__(cause)
        self.url = url


def _describe_fetch_error(error: FetchError) -> str:
    if isinstance(error, HttpStatusError):
        if error.server_message:
            return f"{error.status} {error.server_message}"
        return str(error.status)
    if isinstance(error, FetchTimeoutError):
        return "operation timed out"
    if isinstance(error, NetworkError):
        if error.cause is not None and str(error.cause):
            return str(error.cause)
        return "fetch failed"
    return "fetch failed"


def describe_failure(error: BaseException, default_url: Optional[str] = None) -> str:
    """
    Classify a step failure into the reason persisted in the walker status.

    Fetch errors always name the URL that was attempted.
    """
    if isinstance(error, MalformedResponseError):
        return f"HTTP request to {error.url} failed: {error}"
    if isinstance(error, FetchError):
        url = error.url or default_url
        return f"HTTP request to {url} failed: {_describe_fetch_error(error)}"
    if isinstance(error, DecodeError):
        return str(error)
    return "internal error"
