"""
SQLAlchemy models owned by dbstream.

Applications declare their own tables on their own declarative base; the
only table dbstream needs is the poll checkpoint table.
"""

from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import BigInteger, DateTime, Integer, String
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

# Checkpoints are stored as naive UTC timestamps.
EPOCH = datetime(1970, 1, 1)


def utc_now() -> datetime:
    """Current time as a naive UTC datetime."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class Base(DeclarativeBase):
    """Declarative base for dbstream tables."""
    pass


class PollInfo(Base):
    """
    Checkpoint of a DB poller.

    One row per producer identity; created on first start, updated after
    every page and never deleted.
    """
    __tablename__ = "dbstream_poll_info"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    producer: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    last_sent: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    last_sent_id: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)
    state: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)

    def __repr__(self) -> str:
        return (
            f"<PollInfo(producer={self.producer}, last_sent={self.last_sent}, "
            f"last_sent_id={self.last_sent_id})>"
        )
