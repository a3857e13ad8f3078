"""Error taxonomy shared by the fetch, download and sync paths."""

from typing import Optional


class CastsyncError(Exception):
    """Base class for all engine errors."""


class NetworkTransientError(CastsyncError):
    """Timeout, connection reset, 429 or 5xx. Safe to retry."""

    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.status = status


class NetworkPermanentError(CastsyncError):
    """A network failure that retrying will not fix (4xx, wrong content)."""

    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.status = status


class ContentTypeError(NetworkPermanentError):
    """The server answered with something that is not audio."""


class AuthFailureError(CastsyncError):
    """Credentials were rejected by the remote server."""


class StorageError(CastsyncError):
    """A file could not be written, moved or deleted."""

    def __init__(self, message: str, path: Optional[str] = None):
        super().__init__(message)
        self.path = path


class FetchError(CastsyncError):
    """A feed could not be fetched or parsed.

    Attributes:
        kind: One of "timeout", "connection", "http" or "malformed"
        status: HTTP status code for "http" failures
    """

    TIMEOUT = "timeout"
    CONNECTION = "connection"
    HTTP = "http"
    MALFORMED = "malformed"

    def __init__(self, kind: str, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.kind = kind
        self.status = status

    @property
    def retryable(self) -> bool:
        if self.kind in (self.TIMEOUT, self.CONNECTION):
            return True
        return self.kind == self.HTTP and self.status is not None and (
            self.status == 429 or self.status >= 500
        )


class SyncError(CastsyncError):
    """A sync run could not complete.

    Attributes:
        phase: Phase the run was in when it failed (set by the sync service)
        retryable: Whether trying again later may succeed
    """

    retryable = False

    def __init__(self, message: str, phase: Optional[str] = None):
        super().__init__(message)
        self.phase = phase


class SyncNetworkError(SyncError):
    retryable = True


class SyncAuthError(SyncError, AuthFailureError):
    retryable = False


class SyncProtocolError(SyncError):
    """The server rejected a request for a non-auth reason."""

    def __init__(self, message: str, status: Optional[int] = None, phase: Optional[str] = None):
        super().__init__(message, phase=phase)
        self.status = status


class SyncMalformedResponseError(SyncError):
    """The server answered with JSON we could not understand."""


class SyncInProgressError(SyncError):
    """Another sync run holds the sync lock."""
