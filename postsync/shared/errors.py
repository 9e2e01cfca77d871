"""Exception types raised by the sync components."""
from typing import Optional


class SyncError(Exception):
    """Base class for sync errors."""


class PreconditionError(SyncError):
    """A run cannot start: missing credentials, browser or feed unreachable."""


class BrowserError(SyncError):
    """Base class for browser control errors."""


class BrowserConnectionError(BrowserError, ConnectionError):
    """The control channel could not be discovered, opened, or was lost."""


class ProtocolTimeoutError(BrowserError, TimeoutError):
    """No response arrived for a protocol command in time."""

    def __init__(self, method: str, timeout: float):
        super().__init__(f"Timeout after {timeout:g}s waiting for {method}")
        self.method = method
        self.timeout = timeout


class ProtocolCommandError(BrowserError):
    """The browser answered a command with an error."""

    def __init__(self, method: str, message: str, code: Optional[int] = None):
        super().__init__(f"{method} failed: {message}")
        self.method = method
        self.code = code


class FeedFetchError(SyncError):
    """The feed document could not be retrieved."""


class EmbeddingServiceError(SyncError):
    """The embedding service rejected or failed a batch."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class VectorIndexError(SyncError):
    """The vector index rejected or failed an upsert."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code
