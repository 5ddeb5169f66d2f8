"""Exceptions raised by the memctl client."""


class MemctlError(Exception):
    """Base exception for memctl client errors."""


class ProtocolError(MemctlError):
    """Server answered with a non-2xx status.

    Not retried by the client. ``details`` holds the raw response body.
    """

    def __init__(self, status: int, message: str, details: str | None = None):
        super().__init__(message)
        self.status = status
        self.message = message
        self.details = details

    def __repr__(self) -> str:
        return f"ProtocolError(status={self.status}, message={self.message!r})"


class NetworkError(MemctlError):
    """Transport-level failure with no offline answer available."""

    def __init__(self, method: str, path: str, message: str):
        super().__init__(f"{method} {path} failed: {message}")
        self.method = method
        self.path = path


class PersistenceError(MemctlError):
    """Offline store or pending write ledger failure.

    Never raised out of the client; stores convert it to an empty result.
    """
