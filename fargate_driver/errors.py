"""
Error taxonomy for the Fargate driver.

Every failure inside the driver is raised as a DriverError carrying an
ErrorKind. Errors crossing a component boundary are wrapped with the operation
and identifiers involved while the original error stays reachable through
``__cause__``, so callers match on kind rather than on exception classes.
"""

from enum import Enum
from typing import Iterator, Optional


class ErrorKind(Enum):
    """Closed set of failure kinds the driver distinguishes."""

    NOT_INITIALIZED = "not_initialized"
    NOT_FOUND = "not_found"
    INVALID_CREDENTIAL = "invalid_credential"
    REMOTE_FAILURE = "remote_failure"
    ARGUMENT_ERROR = "argument_error"
    CONFIGURATION = "configuration"
    STORAGE = "storage"
    CANCELLED = "cancelled"
    BUILD_FAILURE = "build_failure"


class FailureClass(Enum):
    """Top-level classification that selects the process exit code."""

    BUILD = "build"
    SYSTEM = "system"


class DriverError(Exception):
    """Base exception for all driver errors."""

    def __init__(self, message: str, kind: ErrorKind = ErrorKind.REMOTE_FAILURE):
        super().__init__(message)
        self.message = message
        self.kind = kind

    def __str__(self) -> str:
        if self.__cause__ is not None:
            return f"{self.message}: {self.__cause__}"
        return self.message

    def __repr__(self) -> str:
        return f"DriverError({self.message!r}, kind={self.kind.name})"


def wrap(
    message: str, cause: BaseException, kind: Optional[ErrorKind] = None
) -> DriverError:
    """
    Wrap an error with context while keeping it as the cause.

    Args:
        message: Description of the operation that failed
        cause: The underlying error
        kind: Kind for the new error; inherited from the cause when omitted

    Returns:
        A DriverError chained to ``cause``. The caller raises it.
    """
    if kind is None:
        kind = cause.kind if isinstance(cause, DriverError) else ErrorKind.REMOTE_FAILURE
    error = DriverError(message, kind)
    error.__cause__ = cause
    return error


def iter_chain(error: BaseException) -> Iterator[BaseException]:
    """Yield the error followed by every error in its cause chain."""
    seen = set()
    current: Optional[BaseException] = error
    while current is not None and id(current) not in seen:
        seen.add(id(current))
        yield current
        current = current.__cause__


def has_kind(error: BaseException, kind: ErrorKind) -> bool:
    """Check whether any error in the chain is a DriverError of ``kind``."""
    return any(
        isinstance(item, DriverError) and item.kind is kind
        for item in iter_chain(error)
    )


def classify(error: BaseException) -> FailureClass:
    """Classify an error as a build failure or a system failure (default)."""
    if has_kind(error, ErrorKind.BUILD_FAILURE):
        return FailureClass.BUILD
    return FailureClass.SYSTEM
