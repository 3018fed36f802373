"""
Checkpointed database polling.

A poller periodically reads rows from the store and publishes them through a
RowProducer. Progress is kept in a PollInfo row per producer, so a restarted
poller resumes where it stopped.

This module provides:
- PollStatus: per-cycle counters
- DbPoller: the scheduling loop, checkpoint loading and per-page retries
"""

import asyncio
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, List, Optional

from ..config.settings import PollerConfig
from ..core.exceptions import MissingImplementationError, OversizedMessage
from ..database.models import EPOCH, PollInfo, utc_now
from ..database.repositories import PollInfoRepository
from ..database.session import DatabaseManager
from ..monitoring.metrics import MetricsProvider
from ..monitoring.middleware import time_operation
from .producer import RowProducer

logger = logging.getLogger(__name__)

BATCH_SIZE = 1000


@dataclass
class PollStatus:
    batches_processed: int = 0
    batches_errored: int = 0
    messages_processed: int = 0

    @property
    def current_batch(self) -> int:
        return self.batches_processed + 1

    def report(self) -> str:
        return (
            f"{self.batches_processed} batches, {self.batches_errored} errored batches, "
            f"{self.messages_processed} processed messages"
        )


class DbPoller:
    """Base poller; subclasses implement ``process_updates``."""

    def __init__(
        self,
        config: PollerConfig,
        database: DatabaseManager,
        producer: RowProducer,
        metrics: Optional[MetricsProvider] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.id = uuid.uuid4().hex
        self.config = config
        self.database = database
        self.producer = producer
        self.metrics = metrics or MetricsProvider()
        self.clock = clock
        self.info: Optional[PollInfo] = None
        self._signal_to_stop = False

    @property
    def identity(self) -> str:
        """Checkpoint key: the configured producer class path."""
        if self.config.producer_class:
            return self.config.producer_class
        producer_class = type(self.producer)
        return f"{producer_class.__module__}.{producer_class.__qualname__}"

    @property
    def batch_size(self) -> int:
        return self.config.batch_size or BATCH_SIZE

    @property
    def tags(self) -> List[str]:
        return [f"topic:{self.producer.topic}"]

    async def start(self) -> None:
        """Load the checkpoint, then poll until stop() is called."""
        logger.info(f"Starting poller for {self.identity}")
        self._signal_to_stop = False
        await self.retrieve_poll_info()

        while True:
            if self._signal_to_stop:
                logger.info(f"Shutting down poller for {self.identity}")
                break
            if self.should_run():
                await self.process_updates()
            await asyncio.sleep(self.config.idle_sleep_seconds)

    def stop(self) -> None:
        logger.info(f"Received signal to stop poller for {self.identity}")
        self._signal_to_stop = True

    @property
    def stopping(self) -> bool:
        return self._signal_to_stop

    async def retrieve_poll_info(self) -> PollInfo:
        """Load the checkpoint, creating it on first start."""
        async with self.database.transaction() as session:
            repo = PollInfoRepository(session)
            info = await repo.get_by_producer(self.identity)
            if info is None:
                info = await self.create_poll_info(repo)
        self.info = info
        return info

    async def create_poll_info(self, repo: PollInfoRepository) -> PollInfo:
        return await repo.create(self.identity, EPOCH)

    async def save_info(self, **values: Any) -> None:
        async with self.database.transaction() as session:
            await PollInfoRepository(session).update(self.info, **values)

    async def touch_last_sent(self) -> None:
        async with self.database.transaction() as session:
            await PollInfoRepository(session).touch(self.info, self.clock())

    def should_run(self) -> bool:
        elapsed = (self.clock() - self.info.last_sent).total_seconds()
        return elapsed - self.config.delay_time >= self.config.run_every

    async def process_updates(self) -> None:
        """Publish everything that changed since the checkpoint."""
        raise MissingImplementationError(f"{type(self).__name__} must implement process_updates")

    async def fetch_rows(self, query) -> List[Any]:
        async with self.database.session() as session:
            result = await session.execute(query)
            return list(result.scalars().all())

    async def process_batch_with_retry(self, batch: List[Any], status: PollStatus) -> bool:
        """
        Publish one page.

        Oversized messages are skipped when configured, otherwise retried
        until they go through. Other errors are retried ``retries`` times
        (forever when None) before the page is counted as errored.
        """
        retries = 0
        try:
            while True:
                try:
                    async with time_operation("db_poller_batch", self.metrics, tags=self.tags):
                        await self.process_batch(batch)
                    status.batches_processed += 1
                    self.metrics.increment("db_poller", tags=["status:batch_success"] + self.tags)
                    return True
                except OversizedMessage as e:
                    if self.config.skip_too_large_messages:
                        logger.error(
                            f"Message too large for {self.identity}, skipping batch: {e}",
                            extra={"codes": e.codes},
                        )
                        status.batches_processed += 1
                        return True
                    logger.error(f"Error publishing through DB poller: {e}")
                except Exception as e:
                    logger.error(f"Error publishing through DB poller: {e}")
                    if self.config.retries is not None and retries >= self.config.retries:
                        logger.error("Retries exceeded, moving on to next batch")
                        status.batches_errored += 1
                        self.metrics.increment("db_poller", tags=["status:batch_error"] + self.tags)
                        return False
                    retries += 1

                if self._signal_to_stop:
                    status.batches_errored += 1
                    return False
                await asyncio.sleep(self.config.retry_delay_seconds)
        finally:
            status.messages_processed += len(batch)

    async def process_batch(self, batch: List[Any]) -> None:
        await self.producer.send_events(batch)
