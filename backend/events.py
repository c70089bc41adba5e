"""
Named-event fan-out shared by every networking component.

Each component owns an EventEmitter and publishes typed pydantic payloads
under the names below. Subscribers register per event with ``on()`` or for
everything with ``on_any()``; coroutine callbacks are scheduled on the
running loop.
"""

import asyncio
import inspect
import logging
from collections import defaultdict
from typing import Any, Callable

logger = logging.getLogger(__name__)

# --- Discovery ---
PEER_DISCOVERED = "peer-discovered"
PEER_LEFT = "peer-left"
PEER_TIMEOUT = "peer-timeout"

# --- Signaling ---
SIGNAL = "signal"

# --- Connections ---
PEER_CONNECTED = "peer-connected"
PEER_DISCONNECTED = "peer-disconnected"
PEER_ERROR = "peer-error"
CONNECTION_REQUEST = "connection-request"

# --- Messages ---
TEXT_MESSAGE = "text-message"
FILE_OFFER = "file-offer"
FILE_ACCEPT = "file-accept"
FILE_REJECT = "file-reject"
FILE_CHUNK = "file-chunk"
UNRECOGNIZED_DATA = "unrecognized-data"

# --- Transfers ---
TRANSFER_INITIATED = "transfer-initiated"
TRANSFER_PROGRESS = "transfer-progress"
TRANSFER_COMPLETE = "transfer-complete"
TRANSFER_REJECTED = "transfer-rejected"
TRANSFER_FAILED = "transfer-failed"
RECEIVE_PROGRESS = "receive-progress"
FILE_RECEIVED = "file-received"
FILE_SAVED = "file-saved"


class EventEmitter:
    """Delivers each emitted payload at most once to every subscriber."""

    def __init__(self) -> None:
        self._callbacks: dict[str, list[Callable]] = defaultdict(list)
        self._any_callbacks: list[Callable] = []

    def on(self, event: str, callback: Callable[[Any], Any]) -> None:
        """Register callback: fn(payload) for a single event name."""
        self._callbacks[event].append(callback)

    def on_any(self, callback: Callable[[str, Any], Any]) -> None:
        """Register callback: fn(event, payload) for every event."""
        self._any_callbacks.append(callback)

    def _emit(self, event: str, payload: Any) -> None:
        for cb in list(self._callbacks.get(event, ())):
            self._invoke(event, cb, payload)
        for cb in list(self._any_callbacks):
            self._invoke(event, cb, event, payload)

    @staticmethod
    def _invoke(event: str, callback: Callable, *args: Any) -> None:
        try:
            result = callback(*args)
            if inspect.isawaitable(result):
                asyncio.ensure_future(result)
        except Exception as e:
            logger.error(f"Event callback error for '{event}': {e}", exc_info=True)
