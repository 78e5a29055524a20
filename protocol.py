# protocol.py

from typing import Optional, Protocol

from loguru import logger


class LivenessStateError(RuntimeError):
    """Raised when a server or client is used out of lifecycle order."""


class MessageListener(Protocol):
    """Receives diagnostic progress messages. Useful to plug in a logger."""

    def on_message(self, text: str) -> None:
        ...


class ProtocolListener(Protocol):
    """Receives the outcome of each client polling cycle."""

    def on_success(self) -> None:
        ...

    def on_failure(self, reason: str) -> None:
        ...


def notify_message(listener: Optional[MessageListener], text: str) -> None:
    """
    Log a diagnostic message and hand it to the listener, if any.
    Whatever the listener raises is discarded.
    """
    logger.debug(text)
    if listener is None:
        return
    try:
        listener.on_message(text)
    except Exception:
        pass
