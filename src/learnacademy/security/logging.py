"""
Simple structured logging setup using structlog directly.

No wrappers, just standard structlog configuration plus PII redaction,
request-scoped correlation ids and an optional remote HTTP sink.
"""

import logging
import queue
import sys
import threading
import time
from typing import Any

import httpx
import structlog
from pydantic_core import to_jsonable_python

from learnacademy.security.redaction import redact_event_dict
from learnacademy.security.settings import get_settings

# Sink failures go to the plain stdlib logger so they never re-enter the sink.
_fallback_logger = logging.getLogger("learnacademy.security.logging.sink")

_remote_sink: "RemoteLogSink | None" = None


class RemoteLogSink:
    """
    structlog processor that ships log entries to an HTTP endpoint.

    Entries are queued and POSTed in batches from a daemon thread, so a slow
    or unreachable endpoint never blocks the caller. When the queue is full
    new entries are dropped and counted. Delivery errors are counted and
    reported on the stdlib logger; they never raise.
    """

    def __init__(
        self,
        endpoint: str,
        batch_size: int = 50,
        flush_interval: float = 2.0,
        queue_size: int = 10_000,
        timeout: float = 5.0,
        transport: httpx.BaseTransport | None = None,
    ):
        self.endpoint = endpoint
        self.batch_size = batch_size
        self.flush_interval = flush_interval
        self._queue: queue.Queue[dict[str, Any]] = queue.Queue(maxsize=queue_size)
        self._client = httpx.Client(timeout=timeout, transport=transport)
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None
        self._start_lock = threading.Lock()
        self.sent = 0
        self.dropped = 0
        self.failed_batches = 0

    def __call__(self, logger: Any, method_name: str, event_dict: dict[str, Any]) -> dict[str, Any]:
        if self._stop.is_set():
            return event_dict
        self._ensure_worker()
        try:
            self._queue.put_nowait(to_jsonable_python(event_dict, fallback=str))
        except queue.Full:
            self.dropped += 1
        return event_dict

    def _ensure_worker(self) -> None:
        if self._thread is not None:
            return
        with self._start_lock:
            if self._thread is None:
                self._thread = threading.Thread(
                    target=self._run, name="remote-log-sink", daemon=True
                )
                self._thread.start()

    def _run(self) -> None:
        batch: list[dict[str, Any]] = []
        deadline = time.monotonic() + self.flush_interval
        while True:
            # Short polls so close() is noticed promptly.
            timeout = min(0.1, max(0.0, deadline - time.monotonic()))
            try:
                batch.append(self._queue.get(timeout=timeout))
            except queue.Empty:
                if self._stop.is_set():
                    break
            now = time.monotonic()
            if len(batch) >= self.batch_size or (batch and now >= deadline):
                self._send(batch)
                batch = []
            if now >= deadline:
                deadline = now + self.flush_interval
        if batch:
            self._send(batch)

    def _send(self, batch: list[dict[str, Any]]) -> None:
        try:
            response = self._client.post(self.endpoint, json={"logs": batch})
            response.raise_for_status()
        except httpx.HTTPError as e:
            self.failed_batches += 1
            _fallback_logger.warning("remote log sink delivery failed: %s", e)
            return
        self.sent += len(batch)

    def close(self, timeout: float = 5.0) -> None:
        """Flush what is queued and stop the worker."""
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
        self._client.close()

    def stats(self) -> dict[str, int]:
        return {
            "sent": self.sent,
            "dropped": self.dropped,
            "failed_batches": self.failed_batches,
            "queued": self._queue.qsize(),
        }


def setup_logging() -> None:
    """
    Setup structured logging with structlog.

    Uses settings from centralized configuration.
    """
    global _remote_sink
    settings = get_settings()
    observability = settings.observability

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=observability.log_level.value,
    )

    processors: list[Any] = [
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
    ]

    # Correlation ids bound by RequestContextMiddleware
    if observability.enable_correlation_ids:
        processors.insert(0, structlog.contextvars.merge_contextvars)

    if observability.enable_redaction:
        processors.append(redact_event_dict)

    shutdown_logging()
    if observability.log_endpoint:
        _remote_sink = RemoteLogSink(
            observability.log_endpoint,
            batch_size=observability.log_endpoint_batch_size,
            flush_interval=observability.log_endpoint_flush_interval_seconds,
            queue_size=observability.log_endpoint_queue_size,
            timeout=observability.log_endpoint_timeout_seconds,
        )
        processors.append(_remote_sink)

    # Use JSON or console output based on settings
    if observability.log_format == "json":
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def shutdown_logging() -> None:
    """Flush and stop the remote sink, if one is configured."""
    global _remote_sink
    if _remote_sink is not None:
        _remote_sink.close()
        _remote_sink = None


def get_remote_sink() -> RemoteLogSink | None:
    return _remote_sink

