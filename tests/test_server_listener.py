"""
LivenessServer lifecycle: validation, start/stop synchronisation, accept counting.
"""

from __future__ import annotations

import socket
import threading
import time

import pytest

from ping import LivenessClient
from protocol import LivenessStateError
from scheduler import TaskScheduler
from server_listener import LivenessServer


def _connect(port: int) -> None:
    with socket.create_connection(("127.0.0.1", port), timeout=1.0):
        pass


@pytest.mark.parametrize("port", [-1, 65536])
def test_invalid_port_rejected(scheduler, port):
    with pytest.raises(ValueError):
        LivenessServer(scheduler, port=port)


def test_negative_poll_timeout_rejected(scheduler):
    with pytest.raises(ValueError):
        LivenessServer(scheduler, port=0, poll_timeout=-0.1)


def test_null_scheduler_rejected():
    with pytest.raises(ValueError):
        LivenessServer(None, port=0)


def test_ephemeral_port_resolved_on_start(server):
    assert server.is_started()
    assert 1 <= server.get_port() <= 65535
    assert server.port == server.get_port()


def test_not_started_before_start(scheduler):
    srv = LivenessServer(scheduler, port=0)
    assert not srv.is_started()
    assert srv.get_ping_count() == 0
    assert srv.get_port() == 0


def test_double_start_raises_and_leaves_state(server):
    count_before = server.get_ping_count()
    with pytest.raises(LivenessStateError):
        server.start()
    assert server.is_started()
    assert server.get_ping_count() == count_before


def test_stop_never_started_is_noop(scheduler):
    srv = LivenessServer(scheduler, port=0)
    srv.stop()
    srv.stop()
    assert not srv.is_started()


def test_accepted_connections_are_counted(server, wait_until):
    for _ in range(3):
        _connect(server.get_port())
    assert wait_until(lambda: server.get_ping_count() == 3)


def test_stop_halts_accepting(server, wait_until):
    _connect(server.get_port())
    assert wait_until(lambda: server.get_ping_count() == 1)

    server.stop()
    assert not server.is_started()
    with pytest.raises(OSError):
        _connect(server.get_port())
    assert server.get_ping_count() == 1

    # second stop is harmless
    server.stop()


def test_bind_failure_raises_state_error(scheduler):
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as busy:
        busy.bind(("127.0.0.1", 0))
        busy.listen()
        port = busy.getsockname()[1]

        srv = LivenessServer(scheduler, port=port, host="127.0.0.1")
        with pytest.raises(LivenessStateError) as excinfo:
            srv.start()

    assert isinstance(excinfo.value.__cause__, OSError)
    assert not srv.is_started()
    srv.stop()


def test_restart_after_stop(scheduler, wait_until):
    srv = LivenessServer(scheduler, port=0, poll_timeout=0.05, host="127.0.0.1")
    srv.start()
    srv.stop()

    srv.start()
    try:
        assert srv.is_started()
        _connect(srv.get_port())
        assert wait_until(lambda: srv.get_ping_count() == 1)
    finally:
        srv.stop()


def test_zero_poll_timeout_still_stops(scheduler, wait_until):
    srv = LivenessServer(scheduler, port=0, poll_timeout=0, host="127.0.0.1")
    srv.start()
    _connect(srv.get_port())
    assert wait_until(lambda: srv.get_ping_count() == 1)

    srv.stop()
    assert not srv.is_started()
    # the wake-up connection made by stop() is not a ping
    assert srv.get_ping_count() == 1


def test_message_listener_receives_lifecycle_messages(scheduler, recorder):
    srv = LivenessServer(scheduler, port=0, poll_timeout=0.05, host="127.0.0.1")
    srv.set_message_listener(recorder)
    srv.start()
    srv.stop()

    assert any(m.startswith("Server started.") for m in recorder.messages)
    assert any(m.startswith("About to stop server.") for m in recorder.messages)


def test_raising_message_listener_is_ignored(scheduler, wait_until):
    class Broken:
        def on_message(self, text):
            raise RuntimeError("boom")

    srv = LivenessServer(scheduler, port=0, poll_timeout=0.05, host="127.0.0.1")
    srv.set_message_listener(Broken())
    srv.start()
    try:
        _connect(srv.get_port())
        assert wait_until(lambda: srv.get_ping_count() == 1)
    finally:
        srv.stop()
    assert not srv.is_started()


def test_stop_during_start_returns():
    pool = TaskScheduler(max_workers=1)
    try:
        # keep the only worker busy so the accept loop begins late
        pool.submit(time.sleep, 0.4)
        srv = LivenessServer(pool, port=0, poll_timeout=0.05, host="127.0.0.1")

        starter = threading.Thread(target=srv.start)
        starter.start()
        time.sleep(0.1)
        stopper = threading.Thread(target=srv.stop)
        stopper.start()

        starter.join(3)
        stopper.join(3)
        assert not starter.is_alive()
        assert not stopper.is_alive()
        assert not srv.is_started()
    finally:
        pool.shutdown(wait=False)


def test_start_gives_up_without_free_worker():
    pool = TaskScheduler(max_workers=1)
    release = threading.Event()
    try:
        pool.submit(release.wait, 5)
        srv = LivenessServer(pool, port=0, poll_timeout=0.05, host="127.0.0.1", start_timeout=0.3)
        with pytest.raises(LivenessStateError):
            srv.start()
        assert not srv.is_started()
        with pytest.raises(OSError):
            _connect(srv.get_port())
    finally:
        release.set()
        pool.shutdown(wait=False)


def test_invalid_start_timeout_rejected(scheduler):
    with pytest.raises(ValueError):
        LivenessServer(scheduler, port=0, start_timeout=0)


def test_server_starts_while_clients_poll_on_one_worker(closed_port, wait_until):
    pool = TaskScheduler(max_workers=1)
    try:
        client = LivenessClient(closed_port, pool, poll_interval=0.05)
        client.start(None)

        srv = LivenessServer(pool, port=0, poll_timeout=0.05, host="127.0.0.1", start_timeout=3)
        srv.start()
        try:
            assert srv.is_started()
            _connect(srv.get_port())
            assert wait_until(lambda: srv.get_ping_count() == 1)
        finally:
            srv.stop()
            client.stop()
    finally:
        pool.shutdown(wait=False)
