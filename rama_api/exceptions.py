"""Error taxonomy shared by the job engine and the task executor.

Every error carries an :class:`ErrorKind` so a failed job can report *why* it
failed without the poller having to parse messages.
"""

from __future__ import annotations

from enum import Enum


class ErrorKind(str, Enum):
    VALIDATION = "validation_error"
    EXECUTION_TIMEOUT = "execution_timeout"
    NAVIGATION_TIMEOUT = "navigation_timeout"
    EXTRACTION = "extraction_error"
    UPSTREAM_UNAVAILABLE = "upstream_unavailable"
    RESOURCE_CREATION = "resource_creation_failure"
    RESOURCE_CLOSED = "resource_closed"
    INTERNAL = "internal_error"


class ScraperError(Exception):
    """Base class; subclasses pin ``kind``."""

    kind: ErrorKind = ErrorKind.INTERNAL

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class InvalidRadicado(ScraperError):
    """Caller input that cannot be a radicación number. Never creates a job."""

    kind = ErrorKind.VALIDATION


class ExecutionTimeout(ScraperError):
    kind = ErrorKind.EXECUTION_TIMEOUT


class NavigationTimeout(ScraperError):
    kind = ErrorKind.NAVIGATION_TIMEOUT


class ExtractionError(ScraperError):
    kind = ErrorKind.EXTRACTION


class UpstreamUnavailable(ScraperError):
    kind = ErrorKind.UPSTREAM_UNAVAILABLE


class ResourceCreationFailure(ScraperError):
    """The shared browser could not be launched. The pool retries on next acquire."""

    kind = ErrorKind.RESOURCE_CREATION


class ResourceClosed(ScraperError):
    kind = ErrorKind.RESOURCE_CLOSED
