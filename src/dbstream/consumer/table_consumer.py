"""
Batch consumer that mirrors a topic into one table.

Every batch is sliced, and all slices are applied inside one transaction
wrapped in DeadlockRetry. Within a slice, tombstones become one bulk delete
and the rest become bulk upserts, chunked by ``max_db_batch_size``.

Subclasses customize the mapping through hooks:
- record_attributes(payload, key): column values for a payload (None skips it)
- record_key(key): column values identifying the row
- key_columns(model) / columns(model): override upsert key and column sets
- should_consume(record): drop individual records
- pre_process(messages): adjust a chunk of messages before records are built
"""

import logging
from typing import Any, Dict, List, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from ..config.settings import ConsumerConfig
from ..core.exceptions import DecodeError
from ..database.deadlock_retry import DeadlockRetry
from ..database.session import DatabaseManager
from ..monitoring.metrics import MetricsProvider
from .batch_consumption import BatchConsumer, BatchState
from .batch_record import BatchRecord, BatchRecordList, table_of
from .batch_slicer import BatchSlicer
from .decoders import Decoder, JsonDecoder
from .mass_updater import MassUpdater, default_bulk_import_id
from .message import Message

logger = logging.getLogger(__name__)


def chunked(items: List[Any], size: Optional[int]) -> List[List[Any]]:
    if not items:
        return []
    if not size:
        return [items]
    return [items[index:index + size] for index in range(0, len(items), size)]


class TableBatchConsumer(BatchConsumer):
    """Upserts and deletes rows of ``model`` from keyed messages."""

    def __init__(
        self,
        model,
        database: DatabaseManager,
        config: Optional[ConsumerConfig] = None,
        payload_decoder: Optional[Decoder] = None,
        key_decoder: Optional[Decoder] = None,
        metrics: Optional[MetricsProvider] = None,
    ):
        self.config = config or ConsumerConfig()
        if key_decoder is None and not self.config.no_keys:
            key_decoder = JsonDecoder()
        super().__init__(payload_decoder=payload_decoder, key_decoder=key_decoder, metrics=metrics)

        self.model = model
        self.database = database
        self.deadlock_retry = DeadlockRetry(
            database,
            retries=self.config.deadlock_retries,
            delay=self.config.deadlock_retry_delay_seconds,
            jitter=self.config.deadlock_retry_jitter_seconds,
            metrics=self.metrics,
        )

    async def consume_batch(self, payloads: List[Any], metadata: Dict[str, Any]) -> None:
        keys = metadata.get("keys") or [None] * len(payloads)
        messages = [Message(key=key, payload=payload) for payload, key in zip(payloads, keys)]

        self.state = BatchState.SLICING
        slices = BatchSlicer.slice(
            messages, compacted=self.config.compacted, no_keys=self.config.no_keys
        )

        self.state = BatchState.APPLYING

        async def apply_slices(session: AsyncSession) -> None:
            for batch_slice in slices:
                await self.update_database(session, batch_slice)

        await self.deadlock_retry.wrap(apply_slices, tags=[f"topic:{metadata.get('topic')}"])

    async def update_database(self, session: AsyncSession, messages: List[Message]) -> None:
        """Apply one key-disjoint slice."""
        removed = [m for m in messages if m.tombstone]
        upserted = [m for m in messages if not m.tombstone]

        for chunk in chunked(upserted, self.config.max_db_batch_size):
            await self.upsert_records(session, chunk)
        for chunk in chunked(removed, self.config.max_db_batch_size):
            await self.remove_records(session, chunk)

    def mass_updater(self, record_key_columns: Optional[List[str]] = None) -> MassUpdater:
        """
        MassUpdater for this consumer.

        Unless ``key_columns`` says otherwise, rows of ``model`` are upserted
        on the columns of the message keys, ``record_key_columns``.
        """
        def key_col_proc(model):
            columns = self.key_columns(model)
            if columns is None and model is self.model and record_key_columns:
                return record_key_columns
            return columns

        return MassUpdater(
            self.model,
            key_col_proc=key_col_proc,
            col_proc=self.columns,
            replace_associations=self.config.replace_associations,
            bulk_import_id_generator=self.bulk_import_id_generator,
            bulk_import_id_column=self.config.bulk_import_id_column,
            metrics=self.metrics,
        )

    async def upsert_records(self, session: AsyncSession, messages: List[Message]) -> None:
        messages = self.pre_process(messages)
        record_list = self.build_records(messages)
        record_list.filter(self.should_consume)
        if not record_list:
            return
        await self.mass_updater(self.batch_key_columns(messages)).mass_update(session, record_list)

    async def remove_records(self, session: AsyncSession, messages: List[Message]) -> None:
        keys = [self.record_key(m.key) for m in messages]
        keys = [key for key in keys if key]
        if not keys:
            return
        await self.mass_updater().delete_records(session, keys)

    def batch_key_columns(self, messages: List[Message]) -> List[str]:
        """Columns of the first message key; the conflict target of the upsert."""
        for message in messages:
            key = self.record_key(message.key)
            if key:
                return list(key)
        return []

    def build_records(self, messages: List[Message]) -> BatchRecordList:
        table = table_of(self.model)
        column = self.config.bulk_import_id_column
        bulk_import_column = column if column in table.columns else None

        records = []
        for message in messages:
            attributes = self.record_attributes(message.payload, message.key)
            if attributes is None:
                continue
            attributes = {**attributes, **self.record_key(message.key)}
            records.append(BatchRecord(
                self.model,
                attributes,
                bulk_import_column=bulk_import_column,
                bulk_import_id_generator=self.bulk_import_id_generator,
            ))
        return BatchRecordList(records)

    # Hooks

    def bulk_import_id_generator(self) -> str:
        return default_bulk_import_id()

    def record_attributes(self, payload: Any, key: Any = None) -> Optional[Dict[str, Any]]:
        if not isinstance(payload, dict):
            raise DecodeError(f"Expected an object payload, got {type(payload).__name__}")
        return dict(payload)

    def record_key(self, key: Any) -> Dict[str, Any]:
        if key is None or self.config.no_keys:
            return {}
        if isinstance(key, dict):
            return dict(key)
        if self.config.key_field:
            return {self.config.key_field: key}
        pk_columns = list(table_of(self.model).primary_key.columns)
        return {pk_columns[0].name: key}

    def key_columns(self, model) -> Optional[List[str]]:
        return None

    def columns(self, model) -> Optional[List[str]]:
        return None

    def should_consume(self, record: BatchRecord) -> bool:
        return True

    def pre_process(self, messages: List[Message]) -> List[Message]:
        return messages
