"""
Poller that selects rows by a state column and marks them once published.
"""

import logging
from typing import Any, List

from sqlalchemy import update

from ..database.repositories import PollInfoRepository
from .base import DbPoller, PollStatus

logger = logging.getLogger(__name__)


class StateBasedPoller(DbPoller):
    """
    Publishes the rows returned by the producer's ``poll_query()``.

    After each page the rows are stamped with ``published_state`` or
    ``failed_state`` so the next query no longer returns them.
    """

    async def process_updates(self) -> None:
        logger.info(f"Polling {self.producer.topic}")
        status = PollStatus()

        while not self.stopping:
            logger.debug(f"Polling {self.producer.topic}, batch {status.current_batch}")
            batch = await self.fetch_results()
            if not batch:
                await self.touch_last_sent()
                break

            success = await self.process_batch_with_retry(batch, status)
            await self.finalize_batch(batch, success)

        logger.info(f"Poll {self.producer.topic} complete ({status.report()})")

    async def fetch_results(self) -> List[Any]:
        timestamp = self.producer.model.__table__.c[self.config.timestamp_column]
        query = self.producer.poll_query().order_by(timestamp).limit(self.batch_size)
        return await self.fetch_rows(query)

    async def finalize_batch(self, batch: List[Any], success: bool) -> None:
        """Stamp the page's rows and touch the checkpoint in one transaction."""
        now = self.clock()
        state = self.config.published_state if success else self.config.failed_state
        table = self.producer.model.__table__
        primary = self.producer.primary_key_column()

        values = {self.config.timestamp_column: now}
        if state:
            values[self.config.state_column] = state
        if self.config.publish_timestamp_column:
            values[self.config.publish_timestamp_column] = now

        ids = [getattr(row, primary.name) for row in batch]
        async with self.database.transaction() as session:
            await session.execute(update(table).where(primary.in_(ids)).values(**values))
            await PollInfoRepository(session).update(self.info, last_sent=now, state=state)
