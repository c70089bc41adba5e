"""
Connection Manager — owns every Channel and its per-peer session state.

Each peer id moves through ``absent -> pending -> active -> absent``. A
peer id is in at most one of the pending/active tables at any time, so
repeated ``connect`` calls never create a second Channel.
"""

import json
import logging
from typing import Any, Callable

from pydantic import BaseModel

from connection.channel import Channel, ChannelFactory
from connection.models import (
    ActiveConnection,
    ConnectionRequest,
    ConnectionRole,
    PeerConnected,
    PeerDisconnected,
    PeerError,
    PendingConnection,
)
from events import (
    CONNECTION_REQUEST,
    PEER_CONNECTED,
    PEER_DISCONNECTED,
    PEER_ERROR,
    SIGNAL,
    EventEmitter,
)
from signaling.models import InboundSignal, SignalMessage
from signaling.service import SignalingRelay

logger = logging.getLogger(__name__)

DataHandler = Callable[[str, str], None]  # fn(peer_id, raw)


class ConnectionManager(EventEmitter):
    """Creates, accepts and tracks Channels to peers."""

    def __init__(
        self,
        signaling: SignalingRelay,
        channel_factory: ChannelFactory,
        self_id: str = "",
    ) -> None:
        super().__init__()
        self._signaling = signaling
        self._channel_factory = channel_factory
        self._self_id = self_id
        self._pending: dict[str, PendingConnection] = {}
        self._active: dict[str, ActiveConnection] = {}
        self._data_handlers: list[DataHandler] = []

        self._signaling.on(SIGNAL, self._handle_signal)

    @property
    def self_id(self) -> str:
        return self._self_id

    def set_self_id(self, self_id: str) -> None:
        self._self_id = self_id

    def on_data(self, handler: DataHandler) -> None:
        """Register the ingestion path for raw inbound Channel data."""
        self._data_handlers.append(handler)

    # --- Queries ---

    def is_connected(self, peer_id: str) -> bool:
        return peer_id in self._active

    def is_pending(self, peer_id: str) -> bool:
        return peer_id in self._pending

    def get_connection(self, peer_id: str) -> ActiveConnection | None:
        return self._active.get(peer_id)

    def list_connections(self) -> list[ActiveConnection]:
        return list(self._active.values())

    def pending_peers(self) -> list[PendingConnection]:
        return list(self._pending.values())

    # --- Lifecycle ---

    def connect(
        self,
        peer_id: str,
        address: str,
        display_name: str,
        initiator: bool = True,
    ) -> Channel | None:
        """
        Start a Channel to ``peer_id`` in the given role.

        Returns the new Channel, or None if the peer is already pending or
        active. Negotiation failures never raise here; they surface through
        the ``peer-error`` event.
        """
        if peer_id in self._active or peer_id in self._pending:
            return None

        role = ConnectionRole.INITIATOR if initiator else ConnectionRole.RESPONDER
        logger.info(
            f"{'Initiating' if initiator else 'Accepting'} connection to "
            f"{display_name} ({peer_id})"
        )

        channel = self._channel_factory(initiator, address)
        self._pending[peer_id] = PendingConnection(
            peer_id=peer_id,
            channel=channel,
            role=role,
            address=address,
            display_name=display_name,
        )
        channel.bind(
            on_signal=lambda payload: self._forward_signal(peer_id, address, payload),
            on_connect=lambda: self._handle_connect(peer_id, channel),
            on_data=lambda data: self._handle_data(peer_id, data),
            on_error=lambda exc: self._handle_error(peer_id, channel, exc),
            on_close=lambda: self._handle_close(peer_id, channel),
        )

        try:
            channel.initiate()
        except Exception as e:
            logger.error(f"Could not start channel to {peer_id}: {e}")
            self._handle_error(peer_id, channel, e)
            self._close_quietly(peer_id, channel)
            return None
        return channel

    def accept_connection(
        self,
        peer_id: str,
        address: str,
        display_name: str,
        initial_payload: Any,
    ) -> Channel | None:
        """Answer a remote connection attempt with its first signal payload."""
        channel = self.connect(peer_id, address, display_name, initiator=False)
        if channel is not None and initial_payload is not None:
            self._feed_signal(peer_id, channel, initial_payload)
        return channel

    def send(self, peer_id: str, message: str | dict | BaseModel) -> bool:
        """Send one message to an active peer. Returns False instead of raising."""
        conn = self._active.get(peer_id)
        if conn is None:
            return False

        if isinstance(message, BaseModel):
            text = message.model_dump_json(by_alias=True)
        elif isinstance(message, str):
            text = message
        else:
            text = json.dumps(message, separators=(",", ":"))

        try:
            return bool(conn.channel.send(text))
        except Exception as e:
            logger.error(f"Error sending data to {peer_id}: {e}")
            return False

    def disconnect(self, peer_id: str) -> None:
        """Close the Channel to ``peer_id`` (best effort) and forget it."""
        conn = self._active.pop(peer_id, None)
        pending = self._pending.pop(peer_id, None)
        for entry in (conn, pending):
            if entry is not None:
                self._close_quietly(peer_id, entry.channel)
        if conn is not None or pending is not None:
            self._emit(PEER_DISCONNECTED, PeerDisconnected(peer_id=peer_id))

    def disconnect_all(self) -> None:
        """Close every active and pending Channel, ignoring close failures."""
        entries = list(self._active.values()) + list(self._pending.values())
        self._active.clear()
        self._pending.clear()
        for entry in entries:
            self._close_quietly(entry.peer_id, entry.channel)
        logger.info(f"Disconnected {len(entries)} channel(s)")

    # --- Signaling ---

    def _forward_signal(self, peer_id: str, address: str, payload: Any) -> None:
        self._signaling.send(
            address,
            SignalMessage(sender_id=self._self_id, receiver_id=peer_id, signal=payload),
        )

    def _handle_signal(self, inbound: InboundSignal) -> None:
        message = inbound.message
        if self._self_id and message.receiver_id != self._self_id:
            logger.debug(f"Ignoring signal addressed to {message.receiver_id}")
            return

        peer_id = message.sender_id
        pending = self._pending.get(peer_id)
        if pending is not None:
            self._feed_signal(peer_id, pending.channel, message.signal)
            return

        if peer_id in self._active:
            logger.debug(f"Ignoring signal for already connected peer {peer_id}")
            return

        # The remote side is initiating; let the application decide.
        self._emit(
            CONNECTION_REQUEST,
            ConnectionRequest(peer_id=peer_id, address=inbound.address, signal=message.signal),
        )

    def _feed_signal(self, peer_id: str, channel: Channel, payload: Any) -> None:
        try:
            channel.signal(payload)
        except Exception as e:
            logger.error(f"Error signaling peer {peer_id}: {e}")
            self._emit(PEER_ERROR, PeerError(peer_id=peer_id, error=str(e)))

    # --- Channel notifications ---

    def _handle_connect(self, peer_id: str, channel: Channel) -> None:
        pending = self._pending.get(peer_id)
        if pending is None or pending.channel is not channel:
            logger.debug(f"Ignoring connect from stale channel for {peer_id}")
            return

        del self._pending[peer_id]
        self._active[peer_id] = ActiveConnection(
            peer_id=peer_id,
            channel=channel,
            address=pending.address,
            display_name=pending.display_name,
        )
        logger.info(f"Connected to {pending.display_name} ({peer_id})")
        self._emit(
            PEER_CONNECTED,
            PeerConnected(
                peer_id=peer_id,
                display_name=pending.display_name,
                address=pending.address,
            ),
        )

    def _handle_data(self, peer_id: str, data: str) -> None:
        for handler in self._data_handlers:
            try:
                handler(peer_id, data)
            except Exception as e:
                logger.error(f"Data handler failed for {peer_id}: {e}", exc_info=True)

    def _handle_error(self, peer_id: str, channel: Channel, exc: Exception) -> None:
        logger.error(f"Connection error with {peer_id}: {exc}")
        pending = self._pending.get(peer_id)
        if pending is not None and pending.channel is channel:
            del self._pending[peer_id]
        self._emit(PEER_ERROR, PeerError(peer_id=peer_id, error=str(exc)))

    def _handle_close(self, peer_id: str, channel: Channel) -> None:
        removed = False
        conn = self._active.get(peer_id)
        if conn is not None and conn.channel is channel:
            del self._active[peer_id]
            removed = True
        pending = self._pending.get(peer_id)
        if pending is not None and pending.channel is channel:
            del self._pending[peer_id]
            removed = True

        if removed:
            logger.info(f"Connection closed with {peer_id}")
            self._emit(PEER_DISCONNECTED, PeerDisconnected(peer_id=peer_id))

    @staticmethod
    def _close_quietly(peer_id: str, channel: Channel) -> None:
        try:
            channel.close()
        except Exception as e:
            logger.warning(f"Error closing channel to {peer_id}: {e}")
