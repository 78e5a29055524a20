"""
Pytest fixtures for liveness tests. Servers bind ephemeral ports on localhost.
"""

from __future__ import annotations

import socket
import threading
import time

import pytest

from scheduler import TaskScheduler
from server_listener import LivenessServer


class RecordingListener:
    """Protocol and message listener that counts what it is told."""

    def __init__(self):
        self.successes = 0
        self.failures: list[str] = []
        self.messages: list[str] = []
        self.first_failure = threading.Event()
        self.first_success = threading.Event()
        self._lock = threading.Lock()

    def on_message(self, text: str) -> None:
        with self._lock:
            self.messages.append(text)

    def on_success(self) -> None:
        with self._lock:
            self.successes += 1
        self.first_success.set()

    def on_failure(self, reason: str) -> None:
        with self._lock:
            self.failures.append(reason)
        self.first_failure.set()


@pytest.fixture
def scheduler():
    """Pool large enough for one server plus many polling clients."""
    pool = TaskScheduler(max_workers=256)
    yield pool
    pool.shutdown(wait=False)


@pytest.fixture
def server(scheduler):
    """A started server on an ephemeral port; stopped after the test."""
    srv = LivenessServer(scheduler, port=0, poll_timeout=0.05, host="127.0.0.1")
    srv.start()
    yield srv
    srv.stop()


@pytest.fixture
def closed_port():
    """A localhost port nothing is listening on."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(("127.0.0.1", 0))
        port = s.getsockname()[1]
    return port


@pytest.fixture
def recorder():
    return RecordingListener()


@pytest.fixture
def make_recorder():
    return RecordingListener


@pytest.fixture
def wait_until():
    """Poll a predicate until it holds or the timeout expires; returns the last result."""

    def _wait(predicate, timeout: float = 5.0, interval: float = 0.02) -> bool:
        deadline = time.monotonic() + timeout
        while time.monotonic() < deadline:
            if predicate():
                return True
            time.sleep(interval)
        return predicate()

    return _wait
