"""
Abstract peer-to-peer Channel.

A Channel is a reliable, ordered, message-framed pipe between two peers.
How it negotiates, traverses NATs or encrypts is up to the implementation;
the connection manager only drives it through ``initiate``, ``signal``,
``send`` and ``close`` and listens to five notifications.
"""

import abc
import logging
from typing import Any, Callable, Optional

logger = logging.getLogger(__name__)

SignalCallback = Callable[[Any], None]
ConnectCallback = Callable[[], None]
DataCallback = Callable[[str], None]
ErrorCallback = Callable[[Exception], None]
CloseCallback = Callable[[], None]

# fn(initiator, peer_address) -> Channel
ChannelFactory = Callable[[bool, str], "Channel"]


class Channel(abc.ABC):
    """Base class for Channel implementations."""

    def __init__(self, initiator: bool) -> None:
        self.initiator = initiator
        self._on_signal: Optional[SignalCallback] = None
        self._on_connect: Optional[ConnectCallback] = None
        self._on_data: Optional[DataCallback] = None
        self._on_error: Optional[ErrorCallback] = None
        self._on_close: Optional[CloseCallback] = None

    def bind(
        self,
        on_signal: SignalCallback,
        on_connect: ConnectCallback,
        on_data: DataCallback,
        on_error: ErrorCallback,
        on_close: CloseCallback,
    ) -> None:
        """Attach the owner's notification handlers."""
        self._on_signal = on_signal
        self._on_connect = on_connect
        self._on_data = on_data
        self._on_error = on_error
        self._on_close = on_close

    @abc.abstractmethod
    def initiate(self) -> None:
        """Begin negotiation in this channel's role."""

    @abc.abstractmethod
    def signal(self, payload: Any) -> None:
        """Feed a negotiation payload received from the remote side."""

    @abc.abstractmethod
    def send(self, data: str) -> bool:
        """Queue one message. Returns False if the channel cannot carry it."""

    @abc.abstractmethod
    def close(self) -> None:
        """Tear the channel down. Must be idempotent."""

    # --- Notification helpers for subclasses ---

    def _fire_signal(self, payload: Any) -> None:
        self._fire("signal", self._on_signal, payload)

    def _fire_connect(self) -> None:
        self._fire("connect", self._on_connect)

    def _fire_data(self, data: str) -> None:
        self._fire("data", self._on_data, data)

    def _fire_error(self, exc: Exception) -> None:
        self._fire("error", self._on_error, exc)

    def _fire_close(self) -> None:
        self._fire("close", self._on_close)

    @staticmethod
    def _fire(name: str, callback: Optional[Callable], *args: Any) -> None:
        if callback is None:
            return
        try:
            callback(*args)
        except Exception as e:
            logger.error(f"Channel {name} handler failed: {e}", exc_info=True)
