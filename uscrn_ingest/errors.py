"""Exception hierarchy for the ingestion service.

Each stage raises its own error type so the cycle runner can decide, per
file, whether a failure is retried on the next cycle or dropped for good.
"""
from enum import Enum
from typing import Optional


class IngestError(Exception):
    """Base exception for all ingestion failures."""


class ConfigError(IngestError):
    """Raised for invalid runtime configuration."""


class ListingError(IngestError):
    """Raised when a remote directory listing cannot be retrieved."""

    def __init__(self, url: str, message: str):
        super().__init__(f"Failed to list {url}: {message}")
        self.url = url


class FetchFailureKind(Enum):
    """Why a download did not produce content."""
    UNTRUSTED_ORIGIN = "untrusted_origin"
    TIMEOUT = "timeout"
    HTTP_STATUS = "http_status"
    TRANSPORT = "transport"


class FetchError(IngestError):
    """Base class for download failures."""

    kind: FetchFailureKind = FetchFailureKind.TRANSPORT

    def __init__(self, url: str, message: str):
        super().__init__(f"{message} ({url})")
        self.url = url

    @property
    def retryable(self) -> bool:
        """Whether a later cycle could succeed where this attempt failed."""
        return self.kind is not FetchFailureKind.UNTRUSTED_ORIGIN


class UntrustedOriginError(FetchError):
    """URL scheme or host is outside the allow-list; no request was made."""
    kind = FetchFailureKind.UNTRUSTED_ORIGIN


class FetchTimeoutError(FetchError):
    """Connect, read or total transfer deadline exceeded."""
    kind = FetchFailureKind.TIMEOUT


class HTTPStatusError(FetchError):
    """Origin answered with a non-success status."""
    kind = FetchFailureKind.HTTP_STATUS

    def __init__(self, url: str, status_code: Optional[int], message: str = ""):
        super().__init__(url, message or f"HTTP {status_code}")
        self.status_code = status_code


class TransportError(FetchError):
    """DNS, connection refused, reset and other transport failures."""
    kind = FetchFailureKind.TRANSPORT


class ParseRejectedError(IngestError):
    """Raised when a file's parse failure rate exceeds the threshold."""

    def __init__(self, filename: str, failure_rate: float, threshold: float):
        super().__init__(
            f"Parse failure rate {failure_rate:.1%} exceeds threshold "
            f"{threshold:.1%} for {filename}"
        )
        self.filename = filename
        self.failure_rate = failure_rate
        self.threshold = threshold


class PersistenceError(IngestError):
    """Raised when a file's transaction could not be committed."""
