"""Exceptions raised by catalogcue and its collaborators.

The split between transient and permanent errors drives retry decisions:
the task queue retries anything that is not a ``PermanentTaskError``.
"""

from __future__ import annotations


class CatalogCueError(Exception):
    """Base exception for catalogcue."""


class TransientTaskError(CatalogCueError):
    """A failure worth retrying (network, timeout, navigation)."""


class FetchError(TransientTaskError):
    """Fetching or rendering a target failed."""


class FetchTimeoutError(FetchError):
    """The fetch collaborator gave up waiting on a target."""


class PermanentTaskError(CatalogCueError):
    """A failure that retrying cannot fix."""


class NoAdapterError(PermanentTaskError):
    """No adapter is registered for a routing key."""

    def __init__(self, routing_key: str) -> None:
        super().__init__(f"No adapter registered for routing key: {routing_key}")
        self.routing_key = routing_key


class PageGoneError(PermanentTaskError):
    """The target no longer exists (404/410)."""


class InvalidTaskError(PermanentTaskError):
    """Malformed task input (empty target, missing routing key, ...)."""


class RecordValidationError(CatalogCueError):
    """An extracted record failed schema checks."""

    def __init__(self, message: str, record: dict | None = None) -> None:
        super().__init__(message)
        self.record = record


def is_permanent(error: BaseException) -> bool:
    """Return True if ``error`` should never be retried."""
    return isinstance(error, PermanentTaskError)
