"""Best-effort CloudWatch counters for processed SES events."""
from __future__ import annotations

from concurrent.futures import Future, ThreadPoolExecutor, wait
from typing import Any

import boto3

from src.core.config import settings
from src.utils.datetime import utcnow
from src.utils.logger import logger

METRIC_NAME = "SESEvents"


class MetricEmitter:
    """Dispatches ``put_metric_data`` calls off the record-processing path.

    Failures only show up in the log; they never reach the caller.
    """

    def __init__(
        self,
        environment: str | None = None,
        client: Any | None = None,
        executor: ThreadPoolExecutor | None = None,
        enabled: bool | None = None,
    ) -> None:
        self.environment = environment or settings.environment
        self.namespace = f"{settings.metric_namespace_prefix}/{self.environment}"
        self.enabled = settings.metrics_enabled if enabled is None else enabled
        self._client = client
        self._executor = executor or ThreadPoolExecutor(max_workers=1, thread_name_prefix="metrics")
        self._pending: set[Future] = set()

    def _cloudwatch(self):
        if self._client is None:
            self._client = boto3.client("cloudwatch", region_name=settings.aws_region_name)
        return self._client

    def _put(self, event_type: str) -> None:
        self._cloudwatch().put_metric_data(
            Namespace=self.namespace,
            MetricData=[
                {
                    "MetricName": METRIC_NAME,
                    "Value": 1,
                    "Unit": "Count",
                    "Timestamp": utcnow(),
                    "Dimensions": [{"Name": "EventType", "Value": event_type}],
                }
            ],
        )

    def _on_done(self, future: Future, event_type: str) -> None:
        self._pending.discard(future)
        if future.cancelled():
            return
        error = future.exception()
        if error is not None:
            logger.error("CloudWatch metric emission failed event_type=%s error=%s", event_type, error)

    def emit(self, event_type: str) -> None:
        if not self.enabled:
            return
        try:
            future = self._executor.submit(self._put, event_type)
        except RuntimeError as exc:
            logger.error("CloudWatch metric dispatch failed event_type=%s error=%s", event_type, exc)
            return
        self._pending.add(future)
        future.add_done_callback(lambda done: self._on_done(done, event_type))

    def flush(self, timeout: float | None = None) -> None:
        """Wait for in-flight sends, e.g. before a serverless runtime freezes."""
        pending = list(self._pending)
        if pending:
            wait(pending, timeout=timeout)

    def close(self) -> None:
        self.flush()
        self._executor.shutdown(wait=True)
