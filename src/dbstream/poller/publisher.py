"""
Publishing encoded messages to Kafka.

This module provides:
- OutboundMessage: an encoded record ready to be produced
- Publisher: the interface pollers publish through
- KafkaPublisher: confluent_kafka Producer with per-message delivery reports
- MemoryPublisher: keeps published messages in memory, for tests and dry runs
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from confluent_kafka import KafkaError, KafkaException, Producer

from ..config.settings import KafkaConfig
from ..core.exceptions import FailedMessage, OversizedMessage, PublishError

logger = logging.getLogger(__name__)


@dataclass
class OutboundMessage:
    topic: str
    key: Optional[bytes]
    value: Optional[bytes]
    payload: Any = None


def raise_for_failures(failed: List[FailedMessage], total: int) -> None:
    """Raise the right PublishError for a list of failed messages."""
    if not failed:
        return
    message = f"{len(failed)} of {total} messages failed to publish"
    if any(f.code == FailedMessage.TOO_LARGE for f in failed):
        raise OversizedMessage(message, failed)
    raise PublishError(message, failed)


class Publisher:
    """Publishes a list of messages; raises PublishError on any failure."""

    async def publish(self, messages: List[OutboundMessage]) -> None:
        raise NotImplementedError

    async def close(self) -> None:
        pass


def _failure_code(error: KafkaError) -> str:
    if error.code() == KafkaError.MSG_SIZE_TOO_LARGE:
        return FailedMessage.TOO_LARGE
    return error.name() or str(error.code())


class KafkaPublisher(Publisher):
    """Synchronous-delivery publisher over confluent_kafka."""

    def __init__(
        self,
        kafka_config: Optional[KafkaConfig] = None,
        producer: Optional[Producer] = None,
        flush_timeout: float = 30.0,
    ):
        if producer is None:
            producer = Producer((kafka_config or KafkaConfig()).producer_settings())
        self.producer = producer
        self.flush_timeout = flush_timeout

    def _publish_sync(self, messages: List[OutboundMessage]) -> List[FailedMessage]:
        failed: List[FailedMessage] = []

        def on_delivery(message: OutboundMessage):
            def callback(err, _msg):
                if err is not None:
                    failed.append(FailedMessage(message, _failure_code(err), err.str()))
            return callback

        for message in messages:
            while True:
                try:
                    self.producer.produce(
                        message.topic,
                        value=message.value,
                        key=message.key,
                        on_delivery=on_delivery(message),
                    )
                    break
                except BufferError:
                    # Local queue is full; serve delivery reports and try again
                    self.producer.poll(1.0)
                except KafkaException as e:
                    failed.append(FailedMessage(message, _failure_code(e.args[0]), str(e)))
                    break

        remaining = self.producer.flush(self.flush_timeout)
        if remaining:
            raise PublishError(f"{remaining} messages were not delivered within {self.flush_timeout}s")
        return failed

    async def publish(self, messages: List[OutboundMessage]) -> None:
        if not messages:
            return
        failed = await asyncio.to_thread(self._publish_sync, messages)
        raise_for_failures(failed, len(messages))
        logger.debug(f"Published {len(messages)} messages")

    async def close(self) -> None:
        await asyncio.to_thread(self.producer.flush, self.flush_timeout)


class MemoryPublisher(Publisher):
    """
    Collects messages per topic.

    ``fail_with`` makes the next publish calls raise the given errors in order.
    """

    def __init__(self):
        self.messages: List[OutboundMessage] = []
        self.calls: List[List[OutboundMessage]] = []
        self.fail_with: List[Exception] = []

    async def publish(self, messages: List[OutboundMessage]) -> None:
        self.calls.append(list(messages))
        if self.fail_with:
            raise self.fail_with.pop(0)
        self.messages.extend(messages)

    def by_topic(self) -> Dict[str, List[OutboundMessage]]:
        topics: Dict[str, List[OutboundMessage]] = {}
        for message in self.messages:
            topics.setdefault(message.topic, []).append(message)
        return topics
