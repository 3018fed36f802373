"""
Batch consumption lifecycle.

This module provides:
- BatchHandler: the only interface the consumer service depends on
- BatchConsumer: decodes a raw batch, reports metrics and logs around
  ``consume_batch``, and re-raises failures so the offset is not committed

The state of the current batch moves RECEIVED, DECODING, SLICING, APPLYING,
DONE; any failure moves it to ERROR.
"""

import logging
import time
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Protocol

from ..core.exceptions import MissingImplementationError
from ..monitoring.metrics import MetricsProvider
from .decoders import Decoder, JsonDecoder
from .message import Message

logger = logging.getLogger(__name__)


class BatchState(str, Enum):
    RECEIVED = "received"
    DECODING = "decoding"
    SLICING = "slicing"
    APPLYING = "applying"
    DONE = "done"
    ERROR = "error"


class BatchHandler(Protocol):
    """Anything that can consume one batch of raw messages."""

    async def around_consume_batch(self, batch: List[Message], metadata: Dict[str, Any]) -> None:
        ...


class BatchConsumer:
    """
    Base class for batch consumers.

    ``batch`` holds raw keys and payloads. Keys are decoded only when a key
    decoder is configured; payloads are always decoded, and a None payload
    stays None (tombstone). Subclasses implement ``consume_batch``.
    """

    def __init__(
        self,
        payload_decoder: Optional[Decoder] = None,
        key_decoder: Optional[Decoder] = None,
        metrics: Optional[MetricsProvider] = None,
    ):
        self.payload_decoder = payload_decoder or JsonDecoder()
        self.key_decoder = key_decoder
        self.metrics = metrics or MetricsProvider()
        self.state = BatchState.DONE

    async def around_consume_batch(self, batch: List[Message], metadata: Dict[str, Any]) -> None:
        metadata = dict(metadata)
        metadata.setdefault("batch_size", len(batch))
        payloads: Optional[List[Any]] = None
        start = time.monotonic()

        self.state = BatchState.RECEIVED
        try:
            self.state = BatchState.DECODING
            if self.key_decoder is not None:
                metadata["keys"] = [self.key_decoder.decode(m.key) for m in batch]
            else:
                metadata["keys"] = [m.key for m in batch]
            if batch:
                metadata["first_offset"] = batch[0].offset
            payloads = [self.payload_decoder.decode(m.payload) for m in batch]

            self._received_batch(payloads, metadata)
            await self.consume_batch(payloads, metadata)
        except Exception as e:
            self.state = BatchState.ERROR
            self._handle_batch_error(e, payloads, metadata)
            raise

        self.state = BatchState.DONE
        self._handle_batch_success(time.monotonic() - start, payloads, metadata)

    async def consume_batch(self, payloads: List[Any], metadata: Dict[str, Any]) -> None:
        """Handle decoded payloads; ``metadata['keys']`` holds the matching keys."""
        raise MissingImplementationError(
            f"{type(self).__name__} must implement consume_batch"
        )

    def _received_batch(self, payloads: List[Any], metadata: Dict[str, Any]) -> None:
        topic = metadata.get("topic")
        logger.info(
            "Got Kafka batch event",
            extra={
                "message_ids": _payload_identifiers(payloads, metadata),
                "metadata": _loggable(metadata),
            },
        )
        logger.debug("Kafka batch event payloads", extra={"payloads": payloads})
        self.metrics.increment("handler", tags=["status:batch_received", f"topic:{topic}"])
        self.metrics.increment(
            "handler", by=metadata["batch_size"], tags=["status:received", f"topic:{topic}"]
        )
        for payload in payloads:
            self._report_time_delayed(payload, metadata)

    def _report_time_delayed(self, payload: Any, metadata: Dict[str, Any]) -> None:
        if not isinstance(payload, dict) or "timestamp" not in payload:
            return
        try:
            sent = datetime.fromisoformat(str(payload["timestamp"]))
        except ValueError:
            return
        if sent.tzinfo is None:
            sent = sent.replace(tzinfo=timezone.utc)
        delay = (datetime.now(timezone.utc) - sent).total_seconds()
        self.metrics.histogram(
            "handler", delay, tags=["time:time_delayed", f"topic:{metadata.get('topic')}"]
        )

    def _handle_batch_success(self, elapsed: float, payloads: List[Any], metadata: Dict[str, Any]) -> None:
        topic = metadata.get("topic")
        self.metrics.histogram("handler", elapsed, tags=["time:consume_batch", f"topic:{topic}"])
        self.metrics.increment("handler", tags=["status:batch_success", f"topic:{topic}"])
        self.metrics.increment(
            "handler", by=metadata["batch_size"], tags=["status:success", f"topic:{topic}"]
        )
        logger.info(
            "Finished processing Kafka batch event",
            extra={
                "message_ids": _payload_identifiers(payloads, metadata),
                "time_elapsed": elapsed,
                "metadata": _loggable(metadata),
            },
        )

    def _handle_batch_error(
        self,
        error: Exception,
        payloads: Optional[List[Any]],
        metadata: Dict[str, Any],
    ) -> None:
        topic = metadata.get("topic")
        self.metrics.increment("handler", tags=["status:batch_error", f"topic:{topic}"])
        logger.warning(
            "Error consuming message batch",
            exc_info=error,
            extra={
                "handler": type(self).__name__,
                "metadata": _loggable(metadata),
                "message_ids": _payload_identifiers(payloads, metadata),
                "error_message": str(error),
            },
        )


def _loggable(metadata: Dict[str, Any]) -> Dict[str, Any]:
    return {key: value for key, value in metadata.items() if key != "keys"}


def _payload_identifiers(payloads: Optional[List[Any]], metadata: Dict[str, Any]) -> List[Dict[str, Any]]:
    """Key and message_id of every message, for log correlation."""
    keys = metadata.get("keys") or []
    # Payloads are None when decoding failed
    items = payloads if payloads is not None else keys
    identifiers = []
    for index, _ in enumerate(items):
        ids = {}
        key = keys[index] if index < len(keys) else None
        if key is not None:
            ids["key"] = key if not isinstance(key, bytes) else key.decode("utf-8", "replace")
        if payloads is not None:
            payload = payloads[index]
            if isinstance(payload, dict) and payload.get("message_id"):
                ids["message_id"] = payload["message_id"]
        identifiers.append(ids)
    return identifiers
