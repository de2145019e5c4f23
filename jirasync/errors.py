"""Exception hierarchy shared by the synchronization engine."""


class JiraSyncError(Exception):
    """Base class for all synchronization errors."""


class TransportError(JiraSyncError):
    """Raised when the remote could not be reached (connection reset, timeout, DNS)."""

    retryable = True


class RemoteRejection(JiraSyncError):
    """Raised when the remote answered with an error status."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code

    @property
    def retryable(self) -> bool:
        """Rate limits and server-side errors are worth another attempt."""
        if self.status_code is None:
            return False
        return self.status_code == 429 or self.status_code >= 500


class ParseError(JiraSyncError):
    """Raised when a single change entry cannot be interpreted."""


class PersistenceError(JiraSyncError):
    """Raised when a storage backend fails to read or write."""


class InvalidRange(JiraSyncError, ValueError):
    """Raised when a planning request has an impossible time range or granularity."""


class SyncInProgressError(JiraSyncError):
    """Raised when a sync cycle is started while another one is running."""


def is_retryable(error: BaseException) -> bool:
    """Return True if a fetch failure should be retried with backoff."""
    return bool(getattr(error, "retryable", False))
