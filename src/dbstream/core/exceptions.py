"""
Exception hierarchy for dbstream.

Consumption-side errors propagate to the caller so the stream offset is
never committed for a failed batch. Polling-side errors are caught per page
by the pollers and turned into status counters.
"""

from typing import Any, List, Optional


class DbStreamError(Exception):
    """Base class for all dbstream errors."""
    pass


class ConfigurationError(DbStreamError):
    """Raised at startup when the configuration cannot work."""
    pass


class MissingImplementationError(DbStreamError):
    """Raised when a subclass does not implement a required hook."""
    pass


class DecodeError(DbStreamError):
    """Raised when a message key or payload cannot be decoded."""
    pass


class PersistenceConflict(DbStreamError):
    """
    Transient contention in the relational store (deadlock, lock wait
    timeout, serialization failure).

    Never retried where it is raised; DeadlockRetry re-runs the whole
    transaction.
    """
    pass


# Substrings identifying transient contention in driver error messages.
DEADLOCK_MESSAGES = (
    # MySQL
    "Deadlock found when trying to get lock",
    "Lock wait timeout exceeded",
    # PostgreSQL
    "deadlock detected",
    "could not serialize access",
    # SQLite
    "database is locked",
)


def is_conflict_error(error: BaseException) -> bool:
    """Check whether an exception signals transient contention."""
    if isinstance(error, PersistenceConflict):
        return True
    message = str(error)
    return any(text in message for text in DEADLOCK_MESSAGES)


class FailedMessage:
    """A message the publisher could not deliver, with its cause code."""

    TOO_LARGE = "message_too_large"

    def __init__(self, message: Any, code: str, reason: Optional[str] = None):
        self.message = message
        self.code = code
        self.reason = reason

    def __repr__(self) -> str:
        return f"<FailedMessage(code={self.code}, reason={self.reason})>"


class PublishError(DbStreamError):
    """Raised when some or all messages of a publish call failed."""

    def __init__(self, message: str, failed_messages: Optional[List[FailedMessage]] = None):
        super().__init__(message)
        self.failed_messages = failed_messages or []

    @property
    def codes(self) -> List[str]:
        return [failed.code for failed in self.failed_messages]


class OversizedMessage(PublishError):
    """Raised when at least one message exceeded the broker's size limit."""
    pass
