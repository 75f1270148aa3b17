from typing import Optional


class TrackerError(Exception):
    """Base class for request-tracker errors."""


class RequestApiError(TrackerError):
    """Raised when the upstream request API fails or answers with an error status."""

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        retryable: bool = True,
    ):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.retryable = retryable

    def __str__(self) -> str:
        if self.status_code is None:
            return self.message
        return f"[{self.status_code}] {self.message}"


class StreamTransportError(TrackerError):
    pass
