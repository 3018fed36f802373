"""
Core utilities for dbstream: logging setup and the exception hierarchy.
"""

from .exceptions import (
    DbStreamError,
    ConfigurationError,
    MissingImplementationError,
    DecodeError,
    PersistenceConflict,
    PublishError,
    OversizedMessage,
    FailedMessage,
    is_conflict_error,
)

__all__ = [
    "DbStreamError",
    "ConfigurationError",
    "MissingImplementationError",
    "DecodeError",
    "PersistenceConflict",
    "PublishError",
    "OversizedMessage",
    "FailedMessage",
    "is_conflict_error",
]
