"""
Transaction wrapper that re-runs work after transient contention.

Deadlocks and lock wait timeouts are expected under concurrent bulk upserts.
The whole unit of work is retried from scratch in a fresh transaction, a
bounded number of times, with a randomized pause so competing writers
de-synchronize.
"""

import asyncio
import logging
import random
from typing import Awaitable, Callable, List, Optional, TypeVar

from sqlalchemy.ext.asyncio import AsyncSession

from ..core.exceptions import PersistenceConflict, is_conflict_error
from .session import DatabaseManager

logger = logging.getLogger(__name__)

T = TypeVar("T")

RETRY_COUNT = 2


class DeadlockRetry:
    """Runs a unit of work in a transaction, retrying on PersistenceConflict."""

    def __init__(
        self,
        database: DatabaseManager,
        retries: int = RETRY_COUNT,
        delay: float = 0.5,
        jitter: float = 5.0,
        metrics=None,
    ):
        self.database = database
        self.retries = retries
        self.delay = delay
        self.jitter = jitter
        self.metrics = metrics

    async def wrap(
        self,
        work: Callable[[AsyncSession], Awaitable[T]],
        tags: Optional[List[str]] = None,
    ) -> T:
        """
        Run ``work(session)`` inside one transaction.

        With K <= retries conflicts, ``work`` is invoked K + 1 times. When
        retries are exhausted the conflict is raised; any other error is
        raised immediately.
        """
        tags = tags or []
        remaining = self.retries

        while True:
            try:
                async with self.database.transaction() as session:
                    return await work(session)
            except Exception as e:
                if not is_conflict_error(e):
                    raise

                if remaining <= 0:
                    if isinstance(e, PersistenceConflict):
                        raise
                    raise PersistenceConflict(str(e)) from e

                remaining -= 1
                logger.warning(
                    "Deadlock encountered when trying to execute query. Retrying.",
                    extra={"error": str(e), "tags": tags, "retries_left": remaining},
                )
                if self.metrics is not None:
                    self.metrics.increment("deadlock", tags=tags)

                await asyncio.sleep(self.delay + random.uniform(0, self.jitter))
