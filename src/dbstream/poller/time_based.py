"""
Poller that walks a table in ``(timestamp, id)`` order.
"""

import logging
from datetime import datetime, timedelta
from typing import Any, List

from ..database.models import EPOCH, PollInfo
from ..database.repositories import PollInfoRepository
from .base import DbPoller, PollStatus

logger = logging.getLogger(__name__)


class TimeBasedPoller(DbPoller):
    """
    Publishes rows whose timestamp column moved past the checkpoint.

    Rows newer than ``now - delay_time`` are left for the next cycle, giving
    in-flight transactions time to commit. The checkpoint moves to the last
    row of every page, whether or not the page was published.
    """

    async def create_poll_info(self, repo: PollInfoRepository) -> PollInfo:
        new_time = EPOCH if self.config.start_from_beginning else self.clock()
        return await repo.create(self.identity, new_time, last_sent_id=0)

    async def process_updates(self) -> None:
        time_from = EPOCH if self.config.full_table else self.info.last_sent
        time_to = self.clock() - timedelta(seconds=self.config.delay_time)
        logger.info(f"Polling {self.producer.topic} from {time_from} to {time_to}")
        status = PollStatus()
        first_batch = True

        while not self.stopping:
            logger.debug(f"Polling {self.producer.topic}, batch {status.current_batch}")
            batch = await self.fetch_results(time_from, time_to)
            if not batch:
                break

            first_batch = False
            await self.process_and_touch_info(batch, status)
            time_from = self.last_updated(batch[-1])

        # Nothing at all: still wait a full interval before the next poll
        if first_batch:
            await self.touch_last_sent()
        logger.info(f"Poll {self.producer.topic} complete at {time_to} ({status.report()})")

    async def fetch_results(self, time_from: datetime, time_to: datetime) -> List[Any]:
        timestamp = self.producer.model.__table__.c[self.config.timestamp_column]
        primary = self.producer.primary_key_column()
        query = (
            self.producer.poll_query(
                time_from=time_from,
                time_to=time_to,
                min_id=self.info.last_sent_id,
                column_name=self.config.timestamp_column,
            )
            .order_by(timestamp, primary)
            .limit(self.batch_size)
        )
        return await self.fetch_rows(query)

    async def process_and_touch_info(self, batch: List[Any], status: PollStatus) -> None:
        await self.process_batch_with_retry(batch, status)
        await self.touch_info(batch)

    def last_updated(self, row: Any) -> datetime:
        return getattr(row, self.config.timestamp_column)

    async def touch_info(self, batch: List[Any]) -> None:
        row = batch[-1]
        last_id = getattr(row, self.producer.primary_key_column().name)
        await self.save_info(last_sent=self.last_updated(row), last_sent_id=last_id)
