"""Tests for dispatcher module."""

import logging
import pytest
import threading
import time
from pathlib import Path
from unittest.mock import MagicMock

import httpx

from src.memwatch.client import MemoryServiceClient
from src.memwatch.config import DirectoryOptions, MemoryServiceOptions
from src.memwatch.dispatcher import DispatchScheduler, SchedulerState
from src.memwatch.exceptions import CircuitOpenError, WatcherAlreadyRunningError
from src.memwatch.models import DispatchMessage, FileEvent, FileEventType
from src.memwatch.store import MessageStore


class Server:
    """MockTransport handler standing in for the memory service."""

    def __init__(self, fail_ids=()):
        self.fail_ids = set(fail_ids)
        self.requests = []
        self._lock = threading.Lock()

    def __call__(self, request):
        request.read()
        with self._lock:
            self.requests.append(request)
        if request.url.params.get("documentId", "") in self.fail_ids:
            return httpx.Response(500)
        return httpx.Response(200)

    def methods(self):
        return sorted(r.method for r in self.requests)


@pytest.fixture
def root(tmp_path):
    data = tmp_path / "data"
    data.mkdir()
    return data


@pytest.fixture
def store(root):
    return MessageStore([DirectoryOptions(path=str(root), index="docs")])


def make_client(server):
    return MemoryServiceClient(
        MemoryServiceOptions(endpoint="http://memory", retries=0),
        transport=httpx.MockTransport(server),
    )


def add(store, root, name, event_type=FileEventType.UPSERT, content="data"):
    path = root / name
    if event_type == FileEventType.UPSERT and content is not None:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content)
    return store.add(FileEvent.from_path(event_type, path, root))


class TestDispatchScheduler:
    """Tests for DispatchScheduler class."""

    def test_run_once_empty(self, store):
        scheduler = DispatchScheduler(store, MagicMock())
        assert scheduler.run_once() == []
        assert scheduler.state == SchedulerState.IDLE

    def test_run_once_uploads_and_deletes(self, store, root):
        server = Server()
        add(store, root, "a.txt")
        add(store, root, "b.txt", FileEventType.DELETE)

        scheduler = DispatchScheduler(store, make_client(server))
        results = scheduler.run_once()

        assert len(results) == 2
        assert all(r.success for r in results)
        assert server.methods() == ["DELETE", "POST"]
        assert len(store) == 0

    def test_coalesced_upsert_delete_sends_only_delete(self, store, root):
        server = Server()
        add(store, root, "a.txt")
        add(store, root, "a.txt", FileEventType.DELETE)

        DispatchScheduler(store, make_client(server)).run_once()

        assert server.methods() == ["DELETE"]

    def test_failure_isolated(self, store, root):
        server = Server(fail_ids={"docs~b.txt"})
        add(store, root, "a.txt", FileEventType.DELETE)
        add(store, root, "b.txt", FileEventType.DELETE)
        add(store, root, "c.txt", FileEventType.DELETE)

        results = DispatchScheduler(store, make_client(server)).run_once()

        by_id = {r.document_id: r for r in results}
        assert by_id["docs~a.txt"].success
        assert by_id["docs~c.txt"].success
        assert not by_id["docs~b.txt"].success
        assert by_id["docs~b.txt"].status_code == 500

    def test_failures_not_requeued(self, store, root):
        server = Server(fail_ids={"docs~a.txt"})
        add(store, root, "a.txt", FileEventType.DELETE)

        scheduler = DispatchScheduler(store, make_client(server))
        scheduler.run_once()

        assert len(store) == 0
        assert scheduler.run_once() == []

    def test_source_missing(self, store, root):
        server = Server()
        add(store, root, "gone.txt", content=None)

        results = DispatchScheduler(store, make_client(server)).run_once()

        assert results[0].success is False
        assert "source missing" in results[0].error
        assert server.requests == []

    def test_circuit_open_reported(self, store, root):
        client = MagicMock()
        client.delete.side_effect = CircuitOpenError("open", retry_after=10)
        add(store, root, "a.txt", FileEventType.DELETE)

        results = DispatchScheduler(store, client).run_once()

        assert results[0].success is False
        assert "circuit open" in results[0].error

    def test_transport_error_reported(self, store, root):
        client = MagicMock()
        client.delete.side_effect = httpx.ConnectError("refused")
        add(store, root, "a.txt", FileEventType.DELETE)

        results = DispatchScheduler(store, client).run_once()
        assert "delivery failed" in results[0].error

    def test_unexpected_error_reported(self, store, root):
        client = MagicMock()
        client.delete.side_effect = RuntimeError("boom")
        add(store, root, "a.txt", FileEventType.DELETE)

        results = DispatchScheduler(store, client).run_once()
        assert results[0].error == "boom"

    def test_dispatch_invalid_message(self, store):
        scheduler = DispatchScheduler(store, MagicMock())
        result = scheduler.dispatch(None)
        assert result.success is False
        assert "invalid message" in result.error

    def test_dispatch_ignore_skipped(self, store, root):
        client = MagicMock()
        event = FileEvent(
            event_type=FileEventType.IGNORE,
            file_name="a.txt",
            directory=str(root),
            relative_path="a.txt",
        )
        message = DispatchMessage(event=event, index="docs", document_id="docs~a.txt")

        result = DispatchScheduler(store, client).dispatch(message)

        assert result.skipped is True
        client.upload.assert_not_called()
        client.delete.assert_not_called()

    def test_state_during_dispatch(self, store, root):
        seen = []
        client = MagicMock()
        scheduler = DispatchScheduler(store, client)

        def record(message):
            seen.append(scheduler.state)
            return httpx.Response(200)

        client.delete.side_effect = record
        add(store, root, "a.txt", FileEventType.DELETE)

        scheduler.run_once()

        assert seen == [SchedulerState.DISPATCHING]
        assert scheduler.state == SchedulerState.IDLE

    def test_bounded_concurrency(self, store, root):
        active = {"now": 0, "max": 0}
        lock = threading.Lock()
        client = MagicMock()

        def slow_delete(message):
            with lock:
                active["now"] += 1
                active["max"] = max(active["max"], active["now"])
            time.sleep(0.05)
            with lock:
                active["now"] -= 1
            return httpx.Response(200)

        client.delete.side_effect = slow_delete
        for i in range(10):
            add(store, root, f"{i}.txt", FileEventType.DELETE)

        DispatchScheduler(store, client, max_workers=3).run_once()

        assert client.delete.call_count == 10
        assert active["max"] <= 3

    def test_start_runs_first_tick_immediately(self, store, root):
        server = Server()
        add(store, root, "a.txt", FileEventType.DELETE)
        scheduler = DispatchScheduler(store, make_client(server), interval_seconds=60)

        scheduler.start()
        try:
            deadline = time.monotonic() + 5.0
            while not server.requests and time.monotonic() < deadline:
                time.sleep(0.01)
            assert len(server.requests) == 1
        finally:
            assert scheduler.stop(grace_period=5.0) is True

        assert scheduler.state == SchedulerState.STOPPED

    def test_start_twice(self, store):
        scheduler = DispatchScheduler(store, MagicMock(), interval_seconds=60)
        scheduler.start()
        try:
            with pytest.raises(WatcherAlreadyRunningError):
                scheduler.start()
        finally:
            scheduler.stop()

    def test_no_ticks_after_stop(self, store, root):
        client = MagicMock()
        scheduler = DispatchScheduler(store, client)
        scheduler.stop()

        add(store, root, "a.txt", FileEventType.DELETE)
        assert scheduler.run_once() == []
        assert len(store) == 1

    def test_restart_after_stop(self, store, root):
        server = Server()
        scheduler = DispatchScheduler(store, make_client(server), interval_seconds=60)
        scheduler.start()
        assert scheduler.stop(grace_period=5.0) is True
        assert scheduler.state == SchedulerState.STOPPED

        add(store, root, "a.txt", FileEventType.DELETE)
        scheduler.start()
        try:
            assert scheduler.is_running
            deadline = time.monotonic() + 5.0
            while not server.requests and time.monotonic() < deadline:
                time.sleep(0.01)
            assert len(server.requests) == 1
        finally:
            assert scheduler.stop(grace_period=5.0) is True


class TestGracefulStop:
    """Tests for stopping while a tick is in flight."""

    def _blocking_client(self):
        entered = threading.Event()
        release = threading.Event()
        client = MagicMock()

        def blocking_delete(message):
            entered.set()
            release.wait(10.0)
            return httpx.Response(200)

        client.delete.side_effect = blocking_delete
        return client, entered, release

    def test_in_flight_tick_completes_within_grace(self, store, root, caplog):
        caplog.set_level(logging.INFO)
        client, entered, release = self._blocking_client()
        add(store, root, "a.txt", FileEventType.DELETE)
        scheduler = DispatchScheduler(store, client, interval_seconds=60)

        scheduler.start()
        assert entered.wait(5.0)
        timer = threading.Timer(0.2, release.set)
        timer.start()

        assert scheduler.stop(grace_period=5.0) is True
        assert "Successfully processed message docs~a.txt" in caplog.text
        assert "did not finish within" not in caplog.text
        assert scheduler.state == SchedulerState.STOPPED

    def test_grace_period_expires(self, store, root, caplog):
        caplog.set_level(logging.INFO)
        client, entered, release = self._blocking_client()
        add(store, root, "a.txt", FileEventType.DELETE)
        scheduler = DispatchScheduler(store, client, interval_seconds=60)

        scheduler.start()
        assert entered.wait(5.0)
        try:
            assert scheduler.stop(grace_period=0.2) is False
            assert "In-flight dispatch did not finish within 0.2s" in caplog.text
            assert scheduler.state == SchedulerState.STOPPED
            with pytest.raises(WatcherAlreadyRunningError):
                scheduler.start()
        finally:
            release.set()
            assert scheduler.stop(grace_period=5.0) is True
