"""SQS entry points that feed SES feedback batches to the processor."""
from __future__ import annotations

import signal
import time
from typing import Any

import boto3

from src.core.config import settings
from src.db.session import init_db
from src.services.feedback_processor import FeedbackProcessor, QueueRecord
from src.utils.logger import configure_logging, logger

_processor: FeedbackProcessor | None = None


def _get_processor() -> FeedbackProcessor:
    # One processor per process so certificate and secret caches survive between batches.
    global _processor
    if _processor is None:
        configure_logging()
        _processor = FeedbackProcessor()
    return _processor


def handler(event: dict[str, Any], context: Any = None) -> dict[str, list[dict[str, str]]]:
    """SQS-triggered function entry point with partial batch responses."""

    records = event.get("Records") or []
    request_id = getattr(context, "aws_request_id", None)
    logger.debug("SES event handler invoked request_id=%s record_count=%s", request_id, len(records))
    failed = _get_processor().process(records)
    return {"batchItemFailures": [{"itemIdentifier": message_id} for message_id in failed]}


def poll_once(sqs: Any, queue_url: str, processor: FeedbackProcessor) -> int:
    """Receive one batch, process it and delete what was consumed. Returns the batch size."""

    response = sqs.receive_message(
        QueueUrl=queue_url,
        MaxNumberOfMessages=settings.sqs_max_messages,
        WaitTimeSeconds=settings.sqs_wait_time_seconds,
    )
    messages = response.get("Messages") or []
    if not messages:
        return 0

    records = []
    receipts = {}
    for message in messages:
        if not message.get("MessageId") or not message.get("ReceiptHandle"):
            logger.error("Skipping SQS message without an id or receipt handle keys=%s", sorted(message))
            continue
        records.append(QueueRecord.from_sqs(message))
        receipts[message["MessageId"]] = message["ReceiptHandle"]
    failed = set(processor.process(records))

    # Failed records are left alone and reappear once the visibility timeout lapses.
    entries = [
        {"Id": str(index), "ReceiptHandle": receipts[record.message_id]}
        for index, record in enumerate(records)
        if record.message_id not in failed
    ]
    if entries:
        result = sqs.delete_message_batch(QueueUrl=queue_url, Entries=entries)
        for failure in result.get("Failed") or []:
            logger.warning("Failed to delete SQS message entry=%s code=%s", failure.get("Id"), failure.get("Code"))
    return len(messages)


def run_worker() -> None:
    """Long-poll the feedback queue until SIGINT/SIGTERM."""

    if not settings.sqs_queue_url:
        raise RuntimeError("SQS queue URL is required. Set SQS_QUEUE_URL in the environment.")

    configure_logging()
    # Ensure tables exist for local development. Production schema is provisioned separately.
    init_db()

    sqs = boto3.client("sqs", region_name=settings.aws_region_name)
    processor = _get_processor()
    stopping = False

    def _stop(signum, frame):  # noqa: ARG001
        nonlocal stopping
        logger.info("Stopping SES feedback worker signal=%s", signum)
        stopping = True

    signal.signal(signal.SIGINT, _stop)
    signal.signal(signal.SIGTERM, _stop)

    logger.info("SES feedback worker polling environment=%s", settings.environment)
    try:
        while not stopping:
            try:
                poll_once(sqs, settings.sqs_queue_url, processor)
            except Exception:
                # Unconsumed messages reappear after the visibility timeout.
                logger.exception("SQS poll failed; retrying in %ss", settings.sqs_poll_error_backoff_seconds)
                time.sleep(settings.sqs_poll_error_backoff_seconds)
    finally:
        processor.metrics.close()


if __name__ == "__main__":  # pragma: no cover - manual execution
    run_worker()
