import argparse
import socket
import sys
import threading
import time
from concurrent.futures import Future
from typing import Optional

from loguru import logger

from config import LISTEN_HOST, LISTEN_PORT, LOG_LEVEL, POLL_TIMEOUT, SCHEDULER_WORKERS
from protocol import LivenessStateError, MessageListener, notify_message
from scheduler import TaskScheduler

# How often start() re-checks that the worker is still alive while waiting for it
START_CHECK_INTERVAL = 0.1
WAKE_UP_TIMEOUT = 1.0


class LivenessServer:
    """
    Presence indicator: accepts connections on a port and closes them straight
    away. A client knows the server is gone when connecting fails or times out.

    The accept loop runs on a worker taken from the injected scheduler. Each
    accept() waits at most `poll_timeout` seconds so the loop notices a stop
    request promptly; a `poll_timeout` of 0 means accept() blocks until a
    connection arrives. start() gives up after `start_timeout` seconds if
    the scheduler has no free worker to run the loop.
    """

    def __init__(
        self,
        scheduler: TaskScheduler,
        port: int = 0,
        poll_timeout: float = 0.1,
        host: str = "0.0.0.0",
        start_timeout: float = 5.0,
    ):
        if not (0 <= port <= 65535):
            raise ValueError(f"Invalid port [port={port}]")
        if poll_timeout < 0:
            raise ValueError(f"Invalid poll_timeout [poll_timeout={poll_timeout}]")
        if start_timeout <= 0:
            raise ValueError(f"Invalid start_timeout [start_timeout={start_timeout}]")
        if scheduler is None:
            raise ValueError("Null scheduler")
        self.host = host
        self._port = port
        self.poll_timeout = poll_timeout
        self.start_timeout = start_timeout
        self.scheduler = scheduler
        self.message_listener: Optional[MessageListener] = None

        self._stop_requested = threading.Event()
        self._stop_requested.set()
        self._started = threading.Event()
        self._ready = threading.Event()
        self._ping_count = 0
        self._count_lock = threading.Lock()
        self._lifecycle_lock = threading.Lock()
        self._server_socket: Optional[socket.socket] = None
        self._worker: Optional[Future] = None

    def set_message_listener(self, listener: Optional[MessageListener]) -> None:
        self.message_listener = listener

    @property
    def port(self) -> int:
        """The port the server listens on; the real bound port once started."""
        return self._port

    def get_port(self) -> int:
        return self._port

    def is_started(self) -> bool:
        """True while the worker is actively polling for connections."""
        return self._started.is_set()

    def get_ping_count(self) -> int:
        with self._count_lock:
            return self._ping_count

    def start(self) -> None:
        """
        Open the listening socket and spawn the accept loop. Returns once the
        loop is actually running.

        Raises LivenessStateError if already started, if the socket cannot
        be opened, or if no scheduler worker picks the loop up in time.
        """
        with self._lifecycle_lock:
            if self._started.is_set():
                raise LivenessStateError(f"Server already started. {self}")

            s = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
            try:
                # Allow immediate reuse of the port after restart
                s.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
                s.bind((self.host, self._port))
                s.listen()
                s.settimeout(self.poll_timeout if self.poll_timeout > 0 else None)
            except OSError as e:
                s.close()
                self._stop_requested.set()
                logger.error(f"Failed to bind {self.host}:{self._port}: {e}")
                raise LivenessStateError(f"Unable to open socket on port. {self}") from e

            self._server_socket = s
            self._port = s.getsockname()[1]
            self._ready.clear()
            try:
                self._worker = self.scheduler.submit(self._accept_loop)
            except RuntimeError as e:
                self._close_socket()
                raise LivenessStateError(f"Scheduler refused the server task. {self}") from e

            self._notify(f"Waiting for server to fully complete start. {self}")
            deadline = time.monotonic() + self.start_timeout
            while not self._ready.wait(START_CHECK_INTERVAL):
                if self._worker.done():
                    self._close_socket()
                    raise LivenessStateError(f"Server task ended before starting. {self}")
                # cancel() only succeeds while the task is still queued
                if time.monotonic() > deadline and self._worker.cancel():
                    self._close_socket()
                    logger.error(f"No scheduler worker picked up the server within {self.start_timeout}s")
                    raise LivenessStateError(f"Server task never started. {self}")
            logger.info(f"Listening on {self.host}:{self._port}...")
            self._notify(f"Server started. {self}")

    def _accept_loop(self) -> bool:
        self._notify(f"Starting server thread. {self}")
        self._stop_requested.clear()
        self._started.set()
        self._ready.set()
        while not self._stop_requested.is_set():
            try:
                conn, addr = self._server_socket.accept()
            except socket.timeout:
                self._notify(f"Server accept timed out. Retrying. {self}")
                continue
            except OSError as e:
                self._notify(f"Server accept caused exception [message={e}]. Retrying. {self}")
                continue
            with conn:
                # Immediately close connection (handshake complete)
                self._notify(f"Connection accepted from {addr[0]}:{addr[1]}. {self}")
            if not self._stop_requested.is_set():
                with self._count_lock:
                    self._ping_count += 1
            self._notify(f"Connection closed. {self}")
        self._notify(f"Server loop finished. {self}")
        return True

    def stop(self) -> None:
        """
        Stop the server. Blocks until the accept loop has finished, then closes
        the listening socket. Safe to call repeatedly or on a server that was
        never started.
        """
        self._stop_requested.set()
        with self._lifecycle_lock:
            # the worker clears the flag when it begins looping, which may have
            # happened after the first set() above
            self._stop_requested.set()
            if not self._started.is_set():
                self._notify(f"Server already stopped. {self}")
                return

            self._notify(f"About to stop server. {self}")
            if self.poll_timeout == 0:
                self._wake_up()
            try:
                self._worker.result()
            except Exception as e:
                self._notify(f"Server task caused exception [message={e}]. {self}")
            self._close_socket()
            self._started.clear()
            logger.info(f"Server on port {self._port} stopped after {self.get_ping_count()} pings.")

    def _wake_up(self) -> None:
        """Unblock an accept() that has no timeout by connecting to ourselves."""
        host = "127.0.0.1" if self.host in ("", "0.0.0.0") else self.host
        try:
            with socket.create_connection((host, self._port), timeout=WAKE_UP_TIMEOUT):
                pass
        except OSError as e:
            self._notify(f"Unable to wake up server thread [message={e}]. {self}")

    def _close_socket(self) -> None:
        if self._server_socket is None:
            return
        try:
            self._server_socket.close()
        except OSError as e:
            self._notify(f"Unable to close cleanly the server socket [message={e}]. {self}")
        self._server_socket = None

    def _notify(self, message: str) -> None:
        notify_message(self.message_listener, message)

    def __str__(self) -> str:
        return (
            f"Server@{id(self):x}[port={self._port}, "
            f"stop_requested={self._stop_requested.is_set()}, "
            f"ping_count={self.get_ping_count()}]"
        )


def create_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Accept and drop TCP connections to advertise presence")
    parser.add_argument("--host", type=str, default=LISTEN_HOST,
                        help=f"Interface to listen on (default: {LISTEN_HOST})")
    parser.add_argument("--port", type=int, default=LISTEN_PORT,
                        help=f"Port to listen on, 0 for an ephemeral one (default: {LISTEN_PORT})")
    parser.add_argument("--poll-timeout", type=float, default=POLL_TIMEOUT,
                        help=f"Seconds each accept() waits before re-checking for shutdown (default: {POLL_TIMEOUT})")
    return parser


def run_server():
    args = create_parser().parse_args()
    logger.remove()
    logger.add(sys.stderr, level=LOG_LEVEL)

    with TaskScheduler(max_workers=SCHEDULER_WORKERS) as scheduler:
        server = LivenessServer(scheduler, port=args.port, poll_timeout=args.poll_timeout, host=args.host)
        try:
            server.start()
        except LivenessStateError as e:
            logger.error(f"{e} ({e.__cause__})")
            sys.exit(1)
        try:
            threading.Event().wait()
        except KeyboardInterrupt:
            logger.info("Server stopped by user.")
        finally:
            server.stop()


if __name__ == "__main__":
    run_server()
