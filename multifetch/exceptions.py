"""
Defines custom exceptions used throughout the application.

Fetch failures carry a ``retryable`` flag so the engine can decide between
the bounded retry loop and an immediate terminal failure without inspecting
the concrete class.
"""

from typing import Optional


class MultifetchError(Exception):
    """Base exception for all application-specific errors."""


class ClassificationError(MultifetchError):
    """Raised when a submitted URL cannot be mapped to any fetch kind."""


class URLExtractionError(MultifetchError):
    """Custom exception for URL probing failures."""


class CorruptStateError(MultifetchError):
    """Raised when the durable state file cannot be parsed or validated."""


class DownloadCancelledError(MultifetchError):
    """Custom exception for cancelled downloads."""


class FetchError(MultifetchError):
    """
    A failure of a single fetch attempt.

    Attributes:
        message: The human-readable, already-classified error message.
        retryable: Whether the engine may schedule another attempt.
    """
    retryable: bool = True

    def __init__(self, message: str, retryable: Optional[bool] = None):
        super().__init__(message)
        self.message = message
        if retryable is not None:
            self.retryable = retryable


class TransientFetchError(FetchError):
    """Network, timeout or non-zero exit during an otherwise valid job."""
    retryable = True


class AccessError(FetchError):
    """Authentication, DRM, geo-block or HTTP 403 style refusals."""
    retryable = False


class ResourceError(FetchError):
    """Disk space or permission failures on the local side."""
    retryable = False


class PeerConnectivityError(FetchError):
    """A torrent job could not find peers before its no-progress deadline."""
    retryable = False
