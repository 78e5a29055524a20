import socket
import threading
from dataclasses import dataclass
from typing import Optional

from loguru import logger

from protocol import LivenessStateError, MessageListener, ProtocolListener, notify_message
from scheduler import ScheduledTask, TaskScheduler

SERVER_NOT_AVAILABLE = "server not available"


@dataclass
class ClientConfig:
    """Configuration for probing a liveness server."""
    port: int
    host: str = "127.0.0.1"
    poll_interval: float = 1.0     # Seconds between the start of two cycles
    max_retries: int = 1           # Failed probes per cycle before declaring failure
    connect_timeout: float = 1.0   # Seconds a single probe may take to connect

    def __post_init__(self):
        if self.max_retries < 1:
            self.max_retries = 1
        if self.poll_interval <= 0:
            raise ValueError(f"Invalid poll_interval [poll_interval={self.poll_interval}]")
        if self.connect_timeout <= 0:
            raise ValueError(f"Invalid connect_timeout [connect_timeout={self.connect_timeout}]")


class LivenessClient:
    """
    Client of a LivenessServer. Can ping the server once, or poll it
    periodically and report each cycle to a ProtocolListener.
    """

    def __init__(
        self,
        server_port: int,
        scheduler: TaskScheduler,
        poll_interval: float = 1.0,
        max_retries: int = 1,
        host: str = "127.0.0.1",
        connect_timeout: float = 1.0,
    ):
        if scheduler is None:
            raise ValueError("Null scheduler")
        self.config = ClientConfig(
            port=server_port,
            host=host,
            poll_interval=poll_interval,
            max_retries=max_retries,
            connect_timeout=connect_timeout,
        )
        self.scheduler = scheduler
        self.message_listener: Optional[MessageListener] = None
        self._stop_requested = threading.Event()
        self._stop_requested.set()
        self._cycle_lock = threading.Lock()
        self._task: Optional[ScheduledTask] = None

    @property
    def server_port(self) -> int:
        return self.config.port

    @property
    def poll_interval(self) -> float:
        return self.config.poll_interval

    @property
    def max_retries(self) -> int:
        return self.config.max_retries

    def set_message_listener(self, listener: Optional[MessageListener]) -> None:
        self.message_listener = listener

    def ping(self) -> bool:
        """Open and immediately close one connection; True when the connect succeeds."""
        try:
            with socket.create_connection(
                (self.config.host, self.config.port), timeout=self.config.connect_timeout
            ):
                return True
        except socket.timeout as e:
            self._notify(f"Connection to server timed out [message={e}]")
        except OSError as e:
            self._notify(f"Connection to server failed [message={e}]")
        return False

    def start(self, protocol_listener: Optional[ProtocolListener]) -> None:
        """
        Start polling the server every `poll_interval` seconds, notifying
        `protocol_listener` of the outcome of every cycle.
        """
        if self._task is not None and not self._task.done():
            raise LivenessStateError(f"Client already started [port={self.server_port}]")
        self._notify("About to start client")
        self._stop_requested.clear()
        self._task = self.scheduler.schedule_at_fixed_rate(
            lambda: self._run_cycle(protocol_listener), self.poll_interval
        )
        logger.info(
            f"Polling {self.config.host}:{self.server_port} every {self.poll_interval}s "
            f"with up to {self.max_retries} attempt(s) per cycle"
        )

    def _run_cycle(self, protocol_listener: Optional[ProtocolListener]) -> None:
        if self._stop_requested.is_set():
            return
        if not self._cycle_lock.acquire(blocking=False):
            self._notify(f"Previous cycle still running, skipping [port={self.server_port}]")
            return
        try:
            success, reason = self._probe_with_retries()
            self._notify(f"Cycle finished. Success={success}")
            self._notify_protocol_listener(success, reason, protocol_listener)
        finally:
            self._cycle_lock.release()

    def _probe_with_retries(self):
        """
        Ping until the first success or until `max_retries` attempts failed.
        Returns (success, failure reason).
        """
        reason = SERVER_NOT_AVAILABLE
        success = False
        retries = self.max_retries
        while retries > 0:
            attempt = self.max_retries - retries + 1
            self._notify(f"About to ping server [port={self.server_port}, attempt={attempt}]")
            try:
                success = self.ping()
            except Exception as e:
                self._notify(
                    f"Exception when pinging server [port={self.server_port}, attempt={attempt}, message={e}]"
                )
                success = False
            if success:
                break
            retries -= 1
            if retries == 0:
                if self.max_retries > 1:
                    reason = f"Server not contactable after {self.max_retries} retries"
                self._notify(
                    f"No more retries left. [port={self.server_port}, attempt={attempt}, message={reason}]"
                )
                break
            self._notify(f"Retrying to connect. [port={self.server_port}, retries left={retries}]")
        return success, reason

    def _notify_protocol_listener(
        self, success: bool, reason: str, protocol_listener: Optional[ProtocolListener]
    ) -> None:
        if protocol_listener is None:
            return
        try:
            if success:
                self._notify("Server pinged successfully.")
                protocol_listener.on_success()
            else:
                self._notify(f"Failed to ping server [message={reason}]")
                protocol_listener.on_failure(reason)
        except Exception as e:
            logger.debug(f"Protocol listener raised, ignored: {e}")

    def stop(self) -> None:
        """
        Stop polling. Waits for a cycle in progress to finish; returns at once
        when called from inside a cycle (e.g. from a listener callback).
        """
        self._stop_requested.set()
        if self._task is None:
            self._notify("Client never started")
            return
        self._task.cancel()
        try:
            self._task.wait()
        except Exception as e:
            self._notify(f"Error waiting for client task to finish [message={e}]")
        self._notify(f"Client stopped [port={self.server_port}]")

    def _notify(self, message: str) -> None:
        notify_message(self.message_listener, message)
