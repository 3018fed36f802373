"""
Unit tests for the batch consumption lifecycle.

Tests cover:
- Key and payload decoding
- Metrics and log lines around consume_batch
- Error propagation so offsets are not committed
"""

import json
from datetime import datetime, timezone

import pytest

from dbstream.consumer import BatchConsumer, BatchState, Message, StringKeyDecoder
from dbstream.core import DecodeError, MissingImplementationError


class RecordingConsumer(BatchConsumer):
    """Keeps what consume_batch received."""

    def __init__(self, fail_with=None, **kwargs):
        super().__init__(**kwargs)
        self.fail_with = fail_with
        self.received = []

    async def consume_batch(self, payloads, metadata):
        self.received.append((payloads, metadata))
        if self.fail_with is not None:
            raise self.fail_with


def raw_batch(*items):
    return [
        Message(key=key, payload=json.dumps(payload).encode() if payload is not None else None, offset=offset)
        for offset, (key, payload) in enumerate(items, start=40)
    ]


@pytest.mark.unit
class TestBatchConsumer:
    """Test cases for BatchConsumer.around_consume_batch."""

    async def test_decodes_payloads_and_passes_raw_keys(self, metrics):
        consumer = RecordingConsumer(metrics=metrics)
        batch = raw_batch((b"k1", {"id": 1}), (b"k2", None))

        await consumer.around_consume_batch(batch, {"topic": "widgets"})

        payloads, metadata = consumer.received[0]
        assert payloads == [{"id": 1}, None]
        assert metadata["keys"] == [b"k1", b"k2"]
        assert metadata["batch_size"] == 2
        assert metadata["first_offset"] == 40
        assert consumer.state == BatchState.DONE

    async def test_decodes_keys_with_key_decoder(self, metrics):
        consumer = RecordingConsumer(key_decoder=StringKeyDecoder(), metrics=metrics)

        await consumer.around_consume_batch(raw_batch((b"k1", {"id": 1})), {"topic": "widgets"})

        assert consumer.received[0][1]["keys"] == ["k1"]

    async def test_success_metrics(self, metrics):
        consumer = RecordingConsumer(metrics=metrics)
        batch = raw_batch((b"a", {"id": 1}), (b"b", {"id": 2}), (b"c", {"id": 3}))

        await consumer.around_consume_batch(batch, {"topic": "widgets"})

        assert metrics.count("handler", "status:batch_received", "topic:widgets") == 1
        assert metrics.count("handler", "status:received", "topic:widgets") == 3
        assert metrics.count("handler", "status:batch_success", "topic:widgets") == 1
        assert metrics.count("handler", "status:success", "topic:widgets") == 3
        assert metrics.count("handler", "status:batch_error") == 0
        timings = [tags for name, _, tags in metrics.histograms if name == "handler"]
        assert ["time:consume_batch", "topic:widgets"] in timings

    async def test_reports_time_delayed(self, metrics):
        consumer = RecordingConsumer(metrics=metrics)
        sent = datetime(2024, 1, 1, tzinfo=timezone.utc).isoformat()

        await consumer.around_consume_batch(
            raw_batch((b"a", {"id": 1, "timestamp": sent})), {"topic": "widgets"}
        )

        delays = [value for name, value, tags in metrics.histograms if "time:time_delayed" in tags]
        assert len(delays) == 1
        assert delays[0] > 0

    async def test_logs_received_and_finished(self, metrics, caplog):
        consumer = RecordingConsumer(metrics=metrics)

        with caplog.at_level("INFO", logger="dbstream.consumer.batch_consumption"):
            await consumer.around_consume_batch(
                raw_batch((b"a", {"id": 1, "message_id": "m-1"})), {"topic": "widgets"}
            )

        messages = [record.getMessage() for record in caplog.records]
        assert "Got Kafka batch event" in messages
        assert "Finished processing Kafka batch event" in messages
        received = next(r for r in caplog.records if r.getMessage() == "Got Kafka batch event")
        assert received.message_ids == [{"key": "a", "message_id": "m-1"}]

    async def test_failure_is_reraised(self, metrics, caplog):
        error = RuntimeError("database is down")
        consumer = RecordingConsumer(fail_with=error, metrics=metrics)

        with caplog.at_level("WARNING", logger="dbstream.consumer.batch_consumption"):
            with pytest.raises(RuntimeError):
                await consumer.around_consume_batch(
                    raw_batch((b"a", {"id": 1})), {"topic": "widgets"}
                )

        assert consumer.state == BatchState.ERROR
        assert metrics.count("handler", "status:batch_error", "topic:widgets") == 1
        assert metrics.count("handler", "status:batch_success") == 0
        assert "Error consuming message batch" in caplog.text

    async def test_decode_failure_fails_batch(self, metrics):
        consumer = RecordingConsumer(metrics=metrics)
        batch = [Message(key=b"a", payload=b"{broken", offset=1)]

        with pytest.raises(DecodeError):
            await consumer.around_consume_batch(batch, {"topic": "widgets"})

        assert consumer.received == []
        assert metrics.count("handler", "status:batch_error") == 1

    async def test_base_class_requires_consume_batch(self, metrics):
        consumer = BatchConsumer(metrics=metrics)

        with pytest.raises(MissingImplementationError):
            await consumer.around_consume_batch(raw_batch((b"a", {"id": 1})), {"topic": "widgets"})

    async def test_metadata_is_not_mutated(self, metrics):
        consumer = RecordingConsumer(metrics=metrics)
        metadata = {"topic": "widgets"}

        await consumer.around_consume_batch(raw_batch((b"a", {"id": 1})), metadata)

        assert metadata == {"topic": "widgets"}
