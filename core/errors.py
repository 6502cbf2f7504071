"""Engine exception hierarchy."""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from clients.base import Article


class EngineError(Exception):
    """Base class for every error raised by the engine itself."""


class InvalidTransitionError(EngineError):
    """The record is not in a status that allows the requested operation."""

    def __init__(self, record_id: str, status: str, operation: str):
        self.record_id = record_id
        self.status = status
        self.operation = operation
        super().__init__(f"Cannot {operation} '{record_id}' while it is {status}")


class ScheduleValidationError(EngineError, ValueError):
    """Rejected at the API boundary: bad cron expression, timezone or field."""


class RemoteActionError(EngineError):
    """A remote side-effecting call failed.

    ``transient`` errors (network, timeouts, rate limits, 5xx) may be retried;
    everything else (auth, permissions, validation) is permanent.
    """

    def __init__(self, message: str, transient: bool = False, status_code: int = 0):
        self.transient = transient
        self.status_code = status_code
        super().__init__(message)


class MissingCredentialsError(RemoteActionError):
    """No usable credentials for the target site."""

    def __init__(self, site_id: str, reason: str = "no credentials configured"):
        self.site_id = site_id
        super().__init__(f"Site '{site_id}': {reason}", transient=False)


class GenerationError(EngineError):
    """Content generation failed; ``articles`` holds what was produced first."""

    def __init__(self, message: str, articles: list[Article] | None = None):
        self.articles = list(articles or [])
        super().__init__(message)
