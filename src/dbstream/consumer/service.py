"""
Kafka consumer service for dbstream.

This module provides:
- Batched polling of a confluent_kafka Consumer with auto-commit disabled
- Per topic-partition batches handed to a BatchHandler in arrival order
- Synchronous offset commit after a batch succeeds
- Seek back to the batch start after a failure, so it is redelivered
- Graceful shutdown with signal handling
"""

import asyncio
import signal
import logging
from datetime import datetime, timezone
from typing import Dict, Any, List, Optional, Tuple
from dataclasses import dataclass

from confluent_kafka import Consumer, KafkaError, KafkaException, TopicPartition

from ..config.settings import KafkaConfig, ConsumerConfig
from ..core.logging import LogContextManager, generate_correlation_id, performance_logger
from .batch_consumption import BatchHandler
from .message import Message

logger = logging.getLogger(__name__)


@dataclass
class ConsumerMetrics:
    """Consumer performance and health counters."""
    messages_consumed: int = 0
    batches_processed: int = 0
    batches_failed: int = 0
    last_batch_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "messages_consumed": self.messages_consumed,
            "batches_processed": self.batches_processed,
            "batches_failed": self.batches_failed,
            "last_batch_at": self.last_batch_at.isoformat() if self.last_batch_at else None,
        }


class BatchConsumerService:
    """
    Feeds Kafka batches to a BatchHandler.

    An offset is committed only after the handler returned for every message
    up to it. A failing batch is seeked back and retried after
    ``retry_delay_seconds``; later partitions of the same poll are seeked back
    as well, so nothing is skipped.
    """

    def __init__(
        self,
        kafka_config: KafkaConfig,
        consumer_config: ConsumerConfig,
        handler: BatchHandler,
        consumer: Optional[Consumer] = None,
    ):
        self.kafka_config = kafka_config
        self.consumer_config = consumer_config
        self.handler = handler
        self.consumer = consumer

        self.running = False
        self.metrics = ConsumerMetrics()
        self._stop_event = asyncio.Event()

    def _initialize_consumer(self) -> None:
        if self.consumer is None:
            self.consumer = Consumer(self.kafka_config.consumer_settings())

        topics = self.consumer_config.topics
        logger.info(f"Subscribing to topics: {topics}")
        self.consumer.subscribe(topics, on_assign=self._on_assign, on_revoke=self._on_revoke)

    def _on_assign(self, consumer: Consumer, partitions: List[TopicPartition]) -> None:
        logger.info(f"Partitions assigned: {partitions}")

    def _on_revoke(self, consumer: Consumer, partitions: List[TopicPartition]) -> None:
        logger.info(f"Partitions revoked: {partitions}")

    async def start(self) -> None:
        """Consume until stop() is called."""
        logger.info("Starting batch consumer service...")
        self._initialize_consumer()
        self.running = True
        try:
            while not self._stop_event.is_set():
                try:
                    await self.poll_once()
                except KafkaException as e:
                    if e.args and e.args[0].fatal():
                        raise
                    logger.error(f"Error in processing loop: {e}")
                    await asyncio.sleep(self.consumer_config.retry_delay_seconds)
        finally:
            self._cleanup()

    async def stop(self) -> None:
        """Ask the loop to finish after the current batch."""
        logger.info("Stopping batch consumer service...")
        self._stop_event.set()

    async def poll_once(self) -> int:
        """Poll one batch from Kafka and process it. Returns messages handled."""
        raw_messages = await asyncio.to_thread(
            self.consumer.consume,
            self.consumer_config.batch_size,
            self.kafka_config.consumer_timeout_ms / 1000,
        )

        batches = self._group_by_partition(raw_messages or [])
        handled = 0
        for index, ((topic, partition), messages) in enumerate(batches):
            ok = await self._process_partition_batch(topic, partition, messages)
            if not ok:
                # Later partitions of this poll must be redelivered too
                for (later_topic, later_partition), later in batches[index + 1:]:
                    self._seek(later_topic, later_partition, later[0].offset())
                await asyncio.sleep(self.consumer_config.retry_delay_seconds)
                break
            handled += len(messages)
        return handled

    def _group_by_partition(self, raw_messages) -> List[Tuple[Tuple[str, int], list]]:
        groups: Dict[Tuple[str, int], list] = {}
        for raw in raw_messages:
            error = raw.error()
            if error is not None:
                if error.code() == KafkaError._PARTITION_EOF:
                    logger.debug(f"Reached end of partition {raw.topic()}:{raw.partition()}")
                    continue
                if error.fatal():
                    raise KafkaException(error)
                logger.error(f"Kafka error: {error}", extra={"topic": raw.topic(), "partition": raw.partition()})
                continue
            groups.setdefault((raw.topic(), raw.partition()), []).append(raw)
        return list(groups.items())

    async def _process_partition_batch(self, topic: str, partition: int, raw_messages: list) -> bool:
        first_offset = raw_messages[0].offset()
        last_offset = raw_messages[-1].offset()
        batch = [Message(key=raw.key(), payload=raw.value(), offset=raw.offset()) for raw in raw_messages]
        metadata = {
            "topic": topic,
            "partition": partition,
            "first_offset": first_offset,
            "last_offset": last_offset,
            "batch_size": len(batch),
        }

        loop = asyncio.get_running_loop()
        started = loop.time()
        with LogContextManager(corr_id=generate_correlation_id()):
            try:
                await self.handler.around_consume_batch(batch, metadata)
            except Exception as e:
                self.metrics.batches_failed += 1
                logger.error(
                    f"Batch {topic}:{partition} [{first_offset}..{last_offset}] failed: {e}",
                    extra={"topic": topic, "partition": partition, "first_offset": first_offset},
                )
                self._seek(topic, partition, first_offset)
                return False

        self.consumer.commit(
            offsets=[TopicPartition(topic, partition, last_offset + 1)],
            asynchronous=False,
        )
        self.metrics.messages_consumed += len(batch)
        self.metrics.batches_processed += 1
        self.metrics.last_batch_at = datetime.now(timezone.utc)
        performance_logger.log_batch(len(batch), (loop.time() - started) * 1000,
                                     extra={"topic": topic, "partition": partition})
        return True

    def _seek(self, topic: str, partition: int, offset: int) -> None:
        self.consumer.seek(TopicPartition(topic, partition, offset))
        logger.info(f"Seeked {topic}:{partition} back to offset {offset}")

    def _cleanup(self) -> None:
        if self.consumer:
            self.consumer.close()
            self.consumer = None
        self.running = False
        logger.info("Consumer cleanup completed")

    async def get_health_status(self) -> Dict[str, Any]:
        """Health check usable by the monitoring service."""
        return {
            "status": "healthy" if self.running and not self._stop_event.is_set() else "unhealthy",
            "running": self.running,
            "metrics": self.metrics.to_dict(),
        }


async def run_consumer_service(
    kafka_config: KafkaConfig,
    consumer_config: ConsumerConfig,
    handler: BatchHandler,
) -> None:
    """
    Run the consumer service until SIGINT or SIGTERM.
    """
    service = BatchConsumerService(kafka_config, consumer_config, handler)
    loop = asyncio.get_running_loop()
    for signum in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(signum, lambda s=signum: asyncio.ensure_future(_on_signal(service, s)))

    try:
        await service.start()
    finally:
        for signum in (signal.SIGINT, signal.SIGTERM):
            loop.remove_signal_handler(signum)


async def _on_signal(service: BatchConsumerService, signum: int) -> None:
    logger.info(f"Received signal {signum}, initiating shutdown...")
    await service.stop()
