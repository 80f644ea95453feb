"""Tests for the SQS entry points."""
from __future__ import annotations

import json
import signal

from src.queue import worker


class StubMetrics:
    def __init__(self):
        self.closed = False

    def close(self):
        self.closed = True


class StubProcessor:
    def __init__(self, failed):
        self.failed = failed
        self.batches = []
        self.metrics = StubMetrics()

    def process(self, records):
        records = list(records)
        self.batches.append(records)
        return list(self.failed)


class FakeSQS:
    def __init__(self, messages):
        self.messages = messages
        self.deleted = []

    def receive_message(self, **kwargs):
        assert kwargs["MaxNumberOfMessages"] <= 10
        return {"Messages": self.messages}

    def delete_message_batch(self, QueueUrl, Entries):  # noqa: N803
        self.deleted.extend(Entries)
        return {"Successful": Entries, "Failed": []}


def test_handler_reports_batch_item_failures(monkeypatch):
    processor = StubProcessor(failed=["m-2"])
    monkeypatch.setattr(worker, "_processor", processor)

    event = {"Records": [{"messageId": "m-1", "body": "{}"}, {"messageId": "m-2", "body": "{}"}]}
    result = worker.handler(event, None)

    assert result == {"batchItemFailures": [{"itemIdentifier": "m-2"}]}
    assert len(processor.batches[0]) == 2


def test_handler_with_empty_batch(monkeypatch):
    monkeypatch.setattr(worker, "_processor", StubProcessor(failed=[]))
    assert worker.handler({"Records": []}) == {"batchItemFailures": []}


def test_poll_once_deletes_only_consumed_messages():
    messages = [
        {"MessageId": f"m-{index}", "ReceiptHandle": f"r-{index}", "Body": json.dumps({"Type": "Notification"})}
        for index in range(1, 4)
    ]
    sqs = FakeSQS(messages)
    processor = StubProcessor(failed=["m-2"])

    received = worker.poll_once(sqs, "https://sqs.example/queue", processor)

    assert received == 3
    assert [entry["ReceiptHandle"] for entry in sqs.deleted] == ["r-1", "r-3"]
    assert [record.message_id for record in processor.batches[0]] == ["m-1", "m-2", "m-3"]


def test_poll_once_with_no_messages():
    sqs = FakeSQS([])
    processor = StubProcessor(failed=[])
    assert worker.poll_once(sqs, "https://sqs.example/queue", processor) == 0
    assert processor.batches == []


def test_handler_configures_logging_when_building_processor(monkeypatch):
    calls = []
    monkeypatch.setattr(worker, "_processor", None)
    monkeypatch.setattr(worker, "configure_logging", lambda: calls.append("logging"))
    monkeypatch.setattr(worker, "FeedbackProcessor", lambda: StubProcessor(failed=[]))

    worker.handler({"Records": []})
    worker.handler({"Records": []})

    assert calls == ["logging"]


def test_poll_once_skips_message_without_id():
    messages = [
        {"ReceiptHandle": "r-0", "Body": "{}"},
        {"MessageId": "m-1", "ReceiptHandle": "r-1", "Body": "{}"},
    ]
    sqs = FakeSQS(messages)
    processor = StubProcessor(failed=[])

    assert worker.poll_once(sqs, "https://sqs.example/queue", processor) == 2
    assert [record.message_id for record in processor.batches[0]] == ["m-1"]
    assert [entry["ReceiptHandle"] for entry in sqs.deleted] == ["r-1"]


class FlakySQS(FakeSQS):
    """Fails the first receive, then stops the worker after the second."""

    def __init__(self, messages, handlers):
        super().__init__(messages)
        self.handlers = handlers
        self.calls = 0

    def receive_message(self, **kwargs):
        self.calls += 1
        if self.calls == 1:
            raise ConnectionError("connection reset")
        self.handlers[signal.SIGTERM](signal.SIGTERM, None)
        return super().receive_message(**kwargs)


def test_run_worker_keeps_polling_after_receive_error(monkeypatch):
    handlers = {}
    sleeps = []
    sqs = FlakySQS([{"MessageId": "m-1", "ReceiptHandle": "r-1", "Body": "{}"}], handlers)
    processor = StubProcessor(failed=[])

    monkeypatch.setattr(worker.settings, "sqs_queue_url", "https://sqs.example/queue")
    monkeypatch.setattr(worker.settings, "sqs_poll_error_backoff_seconds", 0.5)
    monkeypatch.setattr(worker, "configure_logging", lambda: None)
    monkeypatch.setattr(worker, "init_db", lambda: None)
    monkeypatch.setattr(worker, "_processor", processor)
    monkeypatch.setattr(worker.boto3, "client", lambda *args, **kwargs: sqs)
    monkeypatch.setattr(worker.signal, "signal", lambda signum, handler: handlers.__setitem__(signum, handler))
    monkeypatch.setattr(worker.time, "sleep", sleeps.append)

    worker.run_worker()

    assert sqs.calls == 2
    assert sleeps == [0.5]
    assert [entry["ReceiptHandle"] for entry in sqs.deleted] == ["r-1"]
    assert processor.metrics.closed is True
