"""
Database package for dbstream.

Provides the async session manager, the poll checkpoint model and its
repository, and the deadlock-retrying transaction wrapper.
"""

from .models import Base, PollInfo, EPOCH, utc_now
from .session import DatabaseManager
from .repositories import PollInfoRepository
from .deadlock_retry import DeadlockRetry, RETRY_COUNT

__all__ = [
    # Models
    "Base",
    "PollInfo",
    "EPOCH",
    "utc_now",

    # Sessions
    "DatabaseManager",
    "PollInfoRepository",

    # Retry
    "DeadlockRetry",
    "RETRY_COUNT",
]
