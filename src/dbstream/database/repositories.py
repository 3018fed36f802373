"""
Repository for poll checkpoints.
"""

import logging
from datetime import datetime
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from .models import PollInfo

logger = logging.getLogger(__name__)


class PollInfoRepository:
    """Reads and writes PollInfo rows inside the caller's session."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get_by_producer(self, producer: str) -> Optional[PollInfo]:
        result = await self.session.execute(
            select(PollInfo).where(PollInfo.producer == producer)
        )
        return result.scalar_one_or_none()

    async def create(
        self,
        producer: str,
        last_sent: datetime,
        last_sent_id: Optional[int] = None,
    ) -> PollInfo:
        info = PollInfo(producer=producer, last_sent=last_sent, last_sent_id=last_sent_id)
        self.session.add(info)
        await self.session.flush()
        logger.info(f"Created poll checkpoint for {producer} at {last_sent}")
        return info

    async def update(self, info: PollInfo, **values) -> None:
        """Write the given columns of one checkpoint row."""
        await self.session.execute(
            update(PollInfo).where(PollInfo.id == info.id).values(**values)
        )
        for key, value in values.items():
            setattr(info, key, value)

    async def touch(self, info: PollInfo, now: datetime) -> None:
        """Move only last_sent forward."""
        await self.update(info, last_sent=now)
