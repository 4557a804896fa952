"""Exception types shared by the fetcher, bypass session and engine."""

from enum import Enum


class ErrorKind(str, Enum):
    """Why a single fetch attempt failed. Every kind is retryable."""

    NETWORK = "network"  # transport-level failure
    HTTP = "http"  # non-success status
    EMPTY = "empty"  # 2xx with a zero-length body


class FetchError(Exception):
    """One failed fetch attempt."""

    def __init__(
        self,
        kind: ErrorKind,
        message: str,
        *,
        status: int | None = None,
        url: str | None = None,
    ) -> None:
        super().__init__(message)
        self.kind = kind
        self.message = message
        self.status = status
        self.url = url

    def __str__(self) -> str:
        status = f" {self.status}" if self.status is not None else ""
        return f"[{self.kind.value}{status}] {self.message}"


class FetchFailure(FetchError):
    """All attempts for a URL were exhausted. Carries the last attempt's error."""

    def __init__(self, last: FetchError, attempts: int, url: str) -> None:
        super().__init__(
            last.kind,
            f"All {attempts} attempts failed for {url}. Last error: {last.message}",
            status=last.status,
            url=url,
        )
        self.attempts = attempts
        self.last = last


class BypassError(RuntimeError):
    """The bypass proxy could not open or use a session."""


class ConfigError(ValueError):
    """An environment setting could not be parsed."""
