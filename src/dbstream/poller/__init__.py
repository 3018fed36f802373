"""
Poller package for dbstream.

This package provides:
- Row producers and the JSON encoder
- Kafka and in-memory publishers
- Time-based and state-based DB pollers with persistent checkpoints
- The executor that runs every configured poller
"""

from .publisher import (
    OutboundMessage,
    Publisher,
    KafkaPublisher,
    MemoryPublisher,
)
from .producer import Encoder, JsonEncoder, RowProducer, row_attributes
from .base import BATCH_SIZE, DbPoller, PollStatus
from .time_based import TimeBasedPoller
from .state_based import StateBasedPoller
from .executor import (
    PollerExecutor,
    build_pollers,
    class_for_config,
    resolve_producer_class,
    run_pollers,
)

__all__ = [
    # Publishing
    "OutboundMessage",
    "Publisher",
    "KafkaPublisher",
    "MemoryPublisher",

    # Producers
    "Encoder",
    "JsonEncoder",
    "RowProducer",
    "row_attributes",

    # Pollers
    "BATCH_SIZE",
    "DbPoller",
    "PollStatus",
    "TimeBasedPoller",
    "StateBasedPoller",

    # Execution
    "PollerExecutor",
    "build_pollers",
    "class_for_config",
    "resolve_producer_class",
    "run_pollers",
]
