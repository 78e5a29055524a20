import argparse
import sys
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from loguru import logger

from config import (
    CHECK_INTERVAL,
    CONNECT_TIMEOUT,
    HOST_TO_MONITOR,
    LOG_LEVEL,
    MAX_RETRIES,
    PORT_TO_MONITOR,
    SCHEDULER_WORKERS,
)
from ping import LivenessClient
from scheduler import TaskScheduler
from tg import format_duration, send_telegram_message


@dataclass
class StatusChange:
    is_up: bool
    duration: timedelta
    reason: Optional[str] = None


class MessageBuilder:
    def __init__(self, host: str, port: int):
        self.target = f"{host}:{port}"

    def create_status_message(self, status_change: StatusChange) -> str:
        duration_str = format_duration(status_change.duration)
        if status_change.is_up:
            return f"🟢 {self.target} is reachable again\n🕓 It was down for {duration_str}"
        return (
            f"🔴 {self.target} is unreachable ({status_change.reason})\n"
            f"🕓 It was up for {duration_str}"
        )


class StatusChangeNotifier:
    """
    Protocol listener that announces UP/DOWN transitions of a liveness server.
    The first cycle only records the initial status.
    """

    def __init__(self, host: str, port: int, send: Callable[[str], None] = send_telegram_message):
        self.message_builder = MessageBuilder(host, port)
        self.send = send
        self.last_status: Optional[bool] = None
        self.status_change_time: Optional[datetime] = None
        self._lock = threading.Lock()

    def on_success(self) -> None:
        self.process_status_change(True)

    def on_failure(self, reason: str) -> None:
        self.process_status_change(False, reason)

    def process_status_change(self, current_status: bool, reason: Optional[str] = None) -> None:
        """Record the latest cycle result and announce it when it flips the status."""
        now = datetime.now(timezone.utc)
        with self._lock:
            # nothing to compare against yet
            if self.last_status is None:
                self.last_status = current_status
                self.status_change_time = now
                logger.info(f"Initial status recorded: {'UP' if current_status else 'DOWN'}")
                return

            if current_status == self.last_status:
                return

            logger.info(f"Status changed: {self.last_status} -> {current_status}")
            duration = now - self.status_change_time
            self.last_status = current_status
            self.status_change_time = now

        change_event = StatusChange(is_up=current_status, duration=duration, reason=reason)
        msg = self.message_builder.create_status_message(change_event)
        self._send_notification(msg)
        logger.info(msg)

    def _send_notification(self, message: str) -> None:
        try:
            self.send(message)
        except Exception as e:
            logger.error(f"Failed to send notification: {e}")


def create_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Poll a liveness server and report status changes")
    parser.add_argument("--host", type=str, default=HOST_TO_MONITOR,
                        help=f"Host to monitor (default: {HOST_TO_MONITOR})")
    parser.add_argument("--port", type=int, default=PORT_TO_MONITOR,
                        help=f"Port to monitor (default: {PORT_TO_MONITOR})")
    parser.add_argument("--interval", type=float, default=CHECK_INTERVAL,
                        help=f"Seconds between checks (default: {CHECK_INTERVAL})")
    parser.add_argument("--max-retries", type=int, default=MAX_RETRIES,
                        help=f"Failed probes per check before reporting DOWN (default: {MAX_RETRIES})")
    return parser


def main():
    args = create_parser().parse_args()
    logger.remove()
    logger.add(sys.stderr, level=LOG_LEVEL)

    with TaskScheduler(max_workers=SCHEDULER_WORKERS) as scheduler:
        client = LivenessClient(
            args.port,
            scheduler,
            poll_interval=args.interval,
            max_retries=args.max_retries,
            host=args.host,
            connect_timeout=CONNECT_TIMEOUT,
        )
        logger.info(f"Starting monitoring loop for {args.host}:{args.port}")
        client.start(StatusChangeNotifier(args.host, args.port))
        try:
            threading.Event().wait()
        except KeyboardInterrupt:
            logger.info("Monitoring stopped by user.")
        finally:
            client.stop()


if __name__ == "__main__":
    main()
