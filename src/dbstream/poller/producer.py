"""
Row producers: turn table rows into stream messages.

A RowProducer names a topic and a model. Pollers hand it pages of rows; it
builds payloads with ``generate_payload``, encodes them and publishes.
"""

import json
import logging
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from sqlalchemy import and_, or_, select
from sqlalchemy import inspect as sa_inspect
from sqlalchemy.sql import Select

from ..core.exceptions import MissingImplementationError
from .publisher import OutboundMessage, Publisher

logger = logging.getLogger(__name__)


def _json_default(value: Any) -> Any:
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, bytes):
        return value.decode("utf-8", "replace")
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


class Encoder:
    def encode(self, value: Any) -> Optional[bytes]:
        raise NotImplementedError


class JsonEncoder(Encoder):
    """UTF-8 JSON; None stays None so tombstones can be produced."""

    def encode(self, value: Any) -> Optional[bytes]:
        if value is None:
            return None
        return json.dumps(value, default=_json_default, separators=(",", ":")).encode("utf-8")


def row_attributes(row: Any) -> Dict[str, Any]:
    """Column values of an ORM row, keyed by column name."""
    if isinstance(row, dict):
        return dict(row)
    mapper = sa_inspect(row).mapper
    return {attr.columns[0].name: getattr(row, attr.key) for attr in mapper.column_attrs}


class RowProducer:
    """
    Publishes rows of ``model`` to ``topic``.

    Subclasses set ``topic`` and ``model`` and may override
    ``generate_payload``, ``message_key`` and ``poll_query``.
    """

    topic: Optional[str] = None
    model = None
    # Column used as the message key; defaults to the primary key
    key_field: Optional[str] = None

    def __init__(
        self,
        publisher: Publisher,
        encoder: Optional[Encoder] = None,
        key_encoder: Optional[Encoder] = None,
    ):
        if not self.topic or self.model is None:
            raise MissingImplementationError(f"{type(self).__name__} must set topic and model")
        self.publisher = publisher
        self.encoder = encoder or JsonEncoder()
        self.key_encoder = key_encoder or JsonEncoder()

    @classmethod
    def primary_key_column(cls):
        return list(cls.model.__table__.primary_key.columns)[0]

    def generate_payload(self, attributes: Dict[str, Any], row: Any) -> Dict[str, Any]:
        return attributes

    def message_key(self, attributes: Dict[str, Any]) -> Any:
        field = self.key_field or self.primary_key_column().name
        return attributes.get(field)

    async def send_events(self, rows: List[Any]) -> None:
        messages = []
        for row in rows:
            attributes = row_attributes(row)
            payload = self.generate_payload(attributes, row)
            messages.append(OutboundMessage(
                topic=self.topic,
                key=self.key_encoder.encode(self.message_key(attributes)),
                value=self.encoder.encode(payload),
                payload=payload,
            ))
        await self.publisher.publish(messages)
        await self.post_process(rows)

    async def post_process(self, rows: List[Any]) -> None:
        """Called after a page was published."""
        pass

    def poll_query(
        self,
        time_from: Optional[datetime] = None,
        time_to: Optional[datetime] = None,
        min_id: Optional[Any] = None,
        column_name: str = "updated_at",
    ) -> Select:
        """
        Rows changed in ``(time_from, min_id)`` exclusive to ``time_to`` inclusive.

        State-based pollers call this without a time window; producers used
        that way must override it to select their pending rows.
        """
        if time_from is None or time_to is None:
            raise MissingImplementationError(
                f"{type(self).__name__} must override poll_query for state-based polling"
            )
        table = self.model.__table__
        column = table.c[column_name]
        primary = self.primary_key_column()
        return select(self.model).where(
            and_(
                or_(
                    and_(column == time_from, primary > (min_id or 0)),
                    column > time_from,
                ),
                column <= time_to,
            )
        )
