"""Exception hierarchy."""

from __future__ import annotations


class BugscrubError(Exception):
    """Base class for all bugscrub errors."""


class ConfigError(BugscrubError):
    """Invalid configuration value."""

    def __init__(self, key: str, message: str) -> None:
        self.key = key
        super().__init__(f"{key}: {message}")


class MalformedInputError(BugscrubError):
    """Raw capture input that cannot be turned into a report (bad image, unsupported value)."""


class StorageError(BugscrubError):
    """Durable storage is unavailable or rejected a write."""


class DeliveryError(BugscrubError):
    """A transmission attempt failed.

    Attributes:
        retriable: Whether the queue should schedule another attempt.
        status_code: HTTP status of the collector response, if any.
        retry_after: Server-suggested delay in seconds, if any.
    """

    def __init__(
        self,
        message: str,
        *,
        retriable: bool,
        status_code: int | None = None,
        retry_after: float | None = None,
    ) -> None:
        self.retriable = retriable
        self.status_code = status_code
        self.retry_after = retry_after
        super().__init__(message)
