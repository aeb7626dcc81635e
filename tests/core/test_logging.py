"""
Tests for the remote log sink and logging setup.
"""

import json

import httpx
import pytest

from learnacademy.security.logging import (
    RemoteLogSink,
    get_remote_sink,
    setup_logging,
    shutdown_logging,
)
from learnacademy.security.settings import reset_settings

pytestmark = pytest.mark.unit

ENDPOINT = "https://logs.example.test/ingest"


class Collector:
    def __init__(self, status_code=202):
        self.status_code = status_code
        self.batches = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.batches.append(json.loads(request.content)["logs"])
        return httpx.Response(self.status_code)


def test_entries_are_batched_and_flushed_on_close():
    collector = Collector()
    sink = RemoteLogSink(ENDPOINT, batch_size=2, flush_interval=60, transport=httpx.MockTransport(collector))

    for name in ("a", "b", "c"):
        event = {"event": name, "level": "info"}
        assert sink(None, "info", event) is event
    sink.close()

    assert [[e["event"] for e in batch] for batch in collector.batches] == [["a", "b"], ["c"]]
    assert sink.stats()["sent"] == 3


def test_unserializable_values_are_stringified():
    collector = Collector()
    sink = RemoteLogSink(ENDPOINT, flush_interval=60, transport=httpx.MockTransport(collector))
    marker = object()

    sink(None, "info", {"event": "x", "obj": marker})
    sink.close()

    assert collector.batches[0][0]["obj"] == str(marker)


@pytest.mark.parametrize("failure", ["status", "network"])
def test_delivery_failures_never_raise(failure):
    def handler(request):
        if failure == "network":
            raise httpx.ConnectError("unreachable", request=request)
        return httpx.Response(503)

    sink = RemoteLogSink(ENDPOINT, flush_interval=60, transport=httpx.MockTransport(handler))

    sink(None, "error", {"event": "boom"})
    sink.close()

    assert sink.stats()["failed_batches"] == 1
    assert sink.stats()["sent"] == 0


def test_full_queue_drops_entries(monkeypatch):
    sink = RemoteLogSink(ENDPOINT, queue_size=1, transport=httpx.MockTransport(Collector()))
    monkeypatch.setattr(sink, "_ensure_worker", lambda: None)

    sink(None, "info", {"event": "kept"})
    sink(None, "info", {"event": "dropped"})

    assert sink.stats()["dropped"] == 1
    assert sink.stats()["queued"] == 1
    sink.close()


def test_entries_after_close_are_ignored():
    collector = Collector()
    sink = RemoteLogSink(ENDPOINT, transport=httpx.MockTransport(collector))
    sink.close()

    sink(None, "info", {"event": "late"})

    assert sink.stats()["queued"] == 0


@pytest.fixture
def log_endpoint(monkeypatch):
    monkeypatch.setenv("OBSERVABILITY__LOG_ENDPOINT", ENDPOINT)
    reset_settings()
    yield
    shutdown_logging()
    monkeypatch.delenv("OBSERVABILITY__LOG_ENDPOINT")
    reset_settings()
    setup_logging()


def test_setup_logging_installs_sink_from_settings(log_endpoint):
    setup_logging()

    sink = get_remote_sink()
    assert sink is not None
    assert sink.endpoint == ENDPOINT

    shutdown_logging()
    assert get_remote_sink() is None
