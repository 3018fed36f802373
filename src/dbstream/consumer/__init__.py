"""
Consumer package for dbstream.

This package provides:
- Message value objects and default decoders
- Slicing of batches into key-disjoint, ordered slices
- Bulk persistence of parent/child record trees
- The batch consumption lifecycle and a table-mirroring consumer
- The Kafka consumer service loop
"""

from .message import Message
from .decoders import Decoder, JsonDecoder, StringKeyDecoder
from .batch_slicer import BatchSlicer, compact_messages
from .batch_record import BatchRecord, BatchRecordList
from .mass_updater import MassUpdater, default_bulk_import_id
from .batch_consumption import BatchConsumer, BatchHandler, BatchState
from .table_consumer import TableBatchConsumer
from .service import BatchConsumerService, ConsumerMetrics, run_consumer_service

__all__ = [
    # Messages and decoding
    "Message",
    "Decoder",
    "JsonDecoder",
    "StringKeyDecoder",

    # Slicing and persistence
    "BatchSlicer",
    "compact_messages",
    "BatchRecord",
    "BatchRecordList",
    "MassUpdater",
    "default_bulk_import_id",

    # Consumers
    "BatchConsumer",
    "BatchHandler",
    "BatchState",
    "TableBatchConsumer",

    # Service
    "BatchConsumerService",
    "ConsumerMetrics",
    "run_consumer_service",
]
